"""Contract between the recommendation engine and a paged movie catalog."""

from __future__ import annotations

from typing import Sequence

from ..models import CatalogItem, ContentType, MediaType, StreamingProvider


class CatalogError(Exception):
    """Base class for failures raised by a catalog source."""


class TransientCatalogError(CatalogError):
    """A single fetch failed because of a network, status or parse problem."""


class UnsupportedQueryError(CatalogError):
    """The source cannot run a server-side filtered (discover) query."""


class ProviderLookupError(TransientCatalogError):
    """Streaming providers for one title could not be resolved."""


class CatalogSource:
    """Read-only catalog queried page by page.

    Implementations must be safe to share between engines; they never see
    engine state.
    """

    async def fetch_trending(
        self, page: int, *, content_type: ContentType = "movie"
    ) -> Sequence[CatalogItem]:
        raise NotImplementedError

    async def fetch_discover(
        self,
        page: int,
        *,
        genre_ids: frozenset[int] | None = None,
        year_range: tuple[int, int] | None = None,
        min_rating: float | None = None,
        provider_ids: frozenset[int] | None = None,
        content_type: ContentType = "movie",
    ) -> Sequence[CatalogItem]:
        raise UnsupportedQueryError(
            f"{type(self).__name__} does not support filtered discovery"
        )

    async def fetch_providers(
        self, item_id: int, *, media_type: MediaType = "movie"
    ) -> Sequence[StreamingProvider]:
        raise NotImplementedError
