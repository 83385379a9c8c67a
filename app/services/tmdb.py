"""Catalog source backed by The Movie Database (TMDB) v3 API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import Settings
from ..models import CatalogItem, ContentType, Genre, MediaType, StreamingProvider
from .catalog_source import (
    CatalogSource,
    ProviderLookupError,
    TransientCatalogError,
    UnsupportedQueryError,
)

logger = logging.getLogger(__name__)

# Shown in the provider picker when TMDB cannot list the region's providers.
COMMON_PROVIDERS: tuple[StreamingProvider, ...] = (
    StreamingProvider(id=8, name="Netflix"),
    StreamingProvider(id=9, name="Amazon Prime Video"),
    StreamingProvider(id=15, name="Hulu"),
    StreamingProvider(id=337, name="Disney Plus"),
    StreamingProvider(id=384, name="HBO Max"),
    StreamingProvider(id=350, name="Apple TV Plus"),
)

_PROVIDER_SECTIONS = ("flatrate", "rent", "buy")


class TMDBClient(CatalogSource):
    """Client responsible for paging through TMDB titles and providers."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client
        self._genre_cache: dict[MediaType, dict[int, str]] = {}

    async def fetch_trending(
        self, page: int, *, content_type: ContentType = "movie"
    ) -> list[CatalogItem]:
        """Return one page of this week's trending titles."""

        scope = "all" if content_type == "both" else content_type
        payload = await self._get(f"/trending/{scope}/week", {"page": page})
        return await self._map_results(payload, default_type=None if scope == "all" else scope)

    async def fetch_discover(
        self,
        page: int,
        *,
        genre_ids: frozenset[int] | None = None,
        year_range: tuple[int, int] | None = None,
        min_rating: float | None = None,
        provider_ids: frozenset[int] | None = None,
        content_type: ContentType = "movie",
    ) -> list[CatalogItem]:
        """Return one page of popular titles filtered server-side."""

        if content_type == "both":
            raise UnsupportedQueryError("TMDB discover needs a single media type")

        date_field = (
            "primary_release_date" if content_type == "movie" else "first_air_date"
        )
        params: dict[str, Any] = {
            "page": page,
            "sort_by": "popularity.desc",
            "include_adult": "false",
        }
        if genre_ids:
            params["with_genres"] = ",".join(str(value) for value in sorted(genre_ids))
        if year_range is not None:
            params[f"{date_field}.gte"] = f"{year_range[0]}-01-01"
            params[f"{date_field}.lte"] = f"{year_range[1]}-12-31"
        if min_rating is not None:
            params["vote_average.gte"] = min_rating
        if provider_ids:
            params["with_watch_providers"] = "|".join(
                str(value) for value in sorted(provider_ids)
            )
            params["watch_region"] = self._settings.tmdb_region

        payload = await self._get(f"/discover/{content_type}", params)
        return await self._map_results(payload, default_type=content_type)

    async def fetch_providers(
        self, item_id: int, *, media_type: MediaType = "movie"
    ) -> list[StreamingProvider]:
        """Return the providers offering the title in the configured region."""

        try:
            payload = await self._get(f"/{media_type}/{item_id}/watch/providers")
        except TransientCatalogError as exc:
            raise ProviderLookupError(
                f"Failed to fetch streaming providers for {media_type} {item_id}"
            ) from exc

        results = payload.get("results")
        region = results.get(self._settings.tmdb_region) if isinstance(results, dict) else None
        if not isinstance(region, dict):
            return []
        return self._extract_providers(region)

    async def fetch_genres(self, media_type: MediaType = "movie") -> list[Genre]:
        """Return every genre TMDB knows for the media type."""

        payload = await self._get(f"/genre/{media_type}/list")
        genres: list[Genre] = []
        for entry in payload.get("genres") or []:
            if not isinstance(entry, dict):
                continue
            try:
                genres.append(Genre.model_validate(entry))
            except ValueError:
                continue
        self._genre_cache[media_type] = {genre.id: genre.name for genre in genres}
        return genres

    async def fetch_popular_providers(self) -> list[StreamingProvider]:
        """Return the region's providers, or a built-in list when TMDB is unavailable."""

        try:
            payload = await self._get(
                "/watch/providers/movie",
                {"watch_region": self._settings.tmdb_region},
            )
        except TransientCatalogError as exc:
            logger.info("Falling back to common providers: %s", exc)
            return list(COMMON_PROVIDERS)

        providers: list[StreamingProvider] = []
        for entry in payload.get("results") or []:
            provider = self._build_provider(entry)
            if provider is not None:
                providers.append(provider)
        return providers or list(COMMON_PROVIDERS)

    async def search(self, query: str, page: int = 1) -> list[CatalogItem]:
        """Search movies by title."""

        normalized = (query or "").strip()
        if not normalized:
            return []
        payload = await self._get(
            "/search/movie",
            {"query": normalized, "page": page, "include_adult": "false"},
        )
        return await self._map_results(payload, default_type="movie")

    async def fetch_details(
        self, item_id: int, media_type: MediaType = "movie"
    ) -> CatalogItem:
        """Return the full record, including runtime and named genres."""

        payload = await self._get(f"/{media_type}/{item_id}")
        item = self._build_item(payload, default_type=media_type, genre_map={})
        if item is None:
            raise TransientCatalogError(
                f"TMDB returned an unusable record for {media_type} {item_id}"
            )
        return item

    async def _get(
        self, path: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        query: dict[str, Any] = {
            "api_key": self._settings.tmdb_api_key,
            "language": self._settings.tmdb_language,
        }
        if params:
            query.update(params)

        try:
            response = await self._client.get(path, params=query)
        except httpx.HTTPError as exc:
            raise TransientCatalogError(
                f"TMDB request {path} failed: {exc.__class__.__name__}"
            ) from exc

        if response.status_code >= 400:
            logger.warning(
                "TMDB request %s failed with %s: %s",
                path,
                response.status_code,
                response.text,
            )
            raise TransientCatalogError(
                f"TMDB request {path} returned HTTP {response.status_code}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise TransientCatalogError(f"TMDB request {path} returned non-JSON") from exc
        if not isinstance(data, dict):
            raise TransientCatalogError(f"Unexpected TMDB response structure for {path}")
        return data

    async def _map_results(
        self, payload: dict[str, Any], *, default_type: MediaType | None
    ) -> list[CatalogItem]:
        raw_results = payload.get("results")
        if not isinstance(raw_results, list):
            raise TransientCatalogError("TMDB response is missing a results list")

        media_types: set[MediaType] = set()
        for entry in raw_results:
            if isinstance(entry, dict):
                media_type = entry.get("media_type") or default_type
                if media_type in ("movie", "tv"):
                    media_types.add(media_type)
        genre_map: dict[int, str] = {}
        for media_type in sorted(media_types):
            genre_map.update(await self._genre_map(media_type))

        items: list[CatalogItem] = []
        for entry in raw_results:
            if not isinstance(entry, dict):
                continue
            item = self._build_item(entry, default_type=default_type, genre_map=genre_map)
            if item is not None:
                items.append(item)
        return items

    async def _genre_map(self, media_type: MediaType) -> dict[int, str]:
        cached = self._genre_cache.get(media_type)
        if cached is not None:
            return cached
        try:
            await self.fetch_genres(media_type)
        except TransientCatalogError as exc:
            # Titles are still usable without genre names.
            logger.info("Genre list for %s unavailable: %s", media_type, exc)
            return {}
        return self._genre_cache.get(media_type, {})

    @staticmethod
    def _build_item(
        entry: dict[str, Any],
        *,
        default_type: MediaType | None,
        genre_map: dict[int, str],
    ) -> CatalogItem | None:
        media_type = entry.get("media_type") or default_type
        if media_type not in ("movie", "tv"):
            return None
        title = entry.get("title") or entry.get("name")
        if entry.get("id") is None or not title:
            return None

        runtime = entry.get("runtime")
        if runtime is None and isinstance(entry.get("episode_run_time"), list):
            runtime = next(iter(entry["episode_run_time"]), None)

        try:
            if isinstance(entry.get("genres"), list):
                genres = [
                    Genre(id=int(genre["id"]), name=str(genre.get("name") or ""))
                    for genre in entry["genres"]
                    if isinstance(genre, dict) and genre.get("id") is not None
                ]
            else:
                genres = [
                    Genre(id=genre_id, name=genre_map[genre_id])
                    for genre_id in entry.get("genre_ids") or []
                    if genre_id in genre_map
                ]
            return CatalogItem(
                id=int(entry["id"]),
                title=str(title),
                media_type=media_type,
                overview=entry.get("overview"),
                poster_path=entry.get("poster_path"),
                release_date=entry.get("release_date") or entry.get("first_air_date"),
                vote_average=entry.get("vote_average"),
                runtime=runtime,
                genres=tuple(genres),
            )
        except (TypeError, ValueError):
            logger.debug("Skipping malformed TMDB entry %s", entry.get("id"))
            return None

    def _extract_providers(self, region: dict[str, Any]) -> list[StreamingProvider]:
        link = region.get("link")
        providers: list[StreamingProvider] = []
        seen: set[int] = set()
        for section in _PROVIDER_SECTIONS:
            for entry in region.get(section) or []:
                provider = self._build_provider(entry, link=link)
                if provider is None or provider.id in seen:
                    continue
                seen.add(provider.id)
                providers.append(provider)
        return providers

    @staticmethod
    def _build_provider(
        entry: object, *, link: str | None = None
    ) -> StreamingProvider | None:
        if not isinstance(entry, dict):
            return None
        provider_id = entry.get("provider_id")
        name = entry.get("provider_name")
        if provider_id is None or not name:
            return None
        return StreamingProvider(
            id=int(provider_id),
            name=str(name),
            logo_path=entry.get("logo_path"),
            deep_link_url=link,
        )
