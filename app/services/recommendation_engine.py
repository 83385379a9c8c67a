"""In-memory recommendation queue fed page by page from a catalog source."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Sequence, TypeVar

from ..config import Settings
from ..models import CatalogItem, PreferenceSet, QueueSnapshot
from .catalog_source import CatalogSource, TransientCatalogError, UnsupportedQueryError

logger = logging.getLogger(__name__)

LOW_WATER_MARK = 5
TARGET_QUEUE_SIZE = 20
MAX_PAGES_PER_REFILL = 10

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RefillTicket:
    """Everything a refill needs, captured while holding the engine lock."""

    generation: int
    preferences: PreferenceSet
    cursor: int
    seen_ids: frozenset[int]


@dataclass(slots=True)
class RefillResult:
    items: list[CatalogItem]
    cursor: int
    error: str | None = None


class RecommendationEngine:
    """Serves catalog items one at a time and keeps the queue topped up.

    Every mutation of the queue, the seen-id set, the page cursor, the loading
    flag and the last error happens while holding ``self._lock``. Catalog I/O
    runs outside the lock. ``initialize`` and ``reset`` bump a generation
    counter; a refill that finishes under an older generation drops its result.
    """

    def __init__(
        self,
        source: CatalogSource,
        *,
        low_water_mark: int = LOW_WATER_MARK,
        target_size: int = TARGET_QUEUE_SIZE,
        max_pages: int = MAX_PAGES_PER_REFILL,
        page_timeout: float | None = None,
        provider_concurrency: int = 8,
    ):
        self._source = source
        self._low_water_mark = low_water_mark
        self._target_size = target_size
        self._max_pages = max_pages
        self._page_timeout = page_timeout
        self._provider_concurrency = provider_concurrency

        self._lock = asyncio.Lock()
        self._queue: deque[CatalogItem] = deque()
        self._seen_ids: set[int] = set()
        self._cursor = 1
        self._preferences: PreferenceSet | None = None
        self._loading = False
        self._last_error: str | None = None
        self._generation = 0
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(
        cls, source: CatalogSource, settings: Settings
    ) -> "RecommendationEngine":
        return cls(
            source,
            low_water_mark=settings.queue_low_water_mark,
            target_size=settings.queue_target_size,
            max_pages=settings.queue_max_pages,
            page_timeout=settings.page_fetch_timeout,
            provider_concurrency=settings.provider_lookup_concurrency,
        )

    @property
    def queue(self) -> tuple[CatalogItem, ...]:
        return tuple(self._queue)

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def preferences(self) -> PreferenceSet | None:
        return self._preferences

    @property
    def cursor(self) -> int:
        return self._cursor

    def get_queue_size(self) -> int:
        return len(self._queue)

    def needs_refill(self) -> bool:
        return len(self._queue) <= self._low_water_mark

    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot.capture(
            self._queue,
            loading=self._loading,
            last_error=self._last_error,
            cursor=self._cursor,
            preferences=self._preferences,
        )

    async def initialize(self, preferences: PreferenceSet) -> None:
        """Reset all state for ``preferences`` and wait for the first refill."""

        async with self._lock:
            self._clear_state()
            self._preferences = preferences
            ticket = self._claim_refill()
        logger.info(
            "Initialising recommendation queue (content=%s, genres=%s, strict=%s)",
            preferences.content_type,
            sorted(preferences.selected_genres),
            preferences.availability_strict,
        )
        await self._refill(ticket)

    async def update_preferences(self, preferences: PreferenceSet) -> None:
        """Re-initialise only when the preferences actually changed."""

        if self._preferences == preferences:
            return
        await self.initialize(preferences)

    async def consume(self) -> CatalogItem | None:
        """Pop the next item, refilling synchronously if the queue is empty."""

        async with self._lock:
            if self._queue:
                item, ticket = self._pop_front()
            else:
                item = None
                ticket = self._claim_refill()

        if item is not None:
            if ticket is not None:
                self._spawn(ticket)
            return item

        if ticket is None:
            # Nothing to refill from, or a refill this call did not start is running.
            return None
        await self._refill(ticket)

        async with self._lock:
            if not self._queue:
                return None
            item, ticket = self._pop_front()
        if ticket is not None:
            self._spawn(ticket)
        return item

    def clear_error(self) -> None:
        self._last_error = None

    async def reset(self) -> None:
        """Drop every piece of state; no refill follows."""

        async with self._lock:
            self._clear_state()

    async def wait_idle(self) -> None:
        """Wait for background refills started by ``consume`` to finish."""

        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel background refills and wipe state."""

        tasks = tuple(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        await self.reset()

    def _clear_state(self) -> None:
        self._generation += 1
        self._queue.clear()
        self._seen_ids.clear()
        self._cursor = 1
        self._preferences = None
        self._loading = False
        self._last_error = None

    def _pop_front(self) -> tuple[CatalogItem, RefillTicket | None]:
        item = self._queue.popleft()
        ticket = None
        if len(self._queue) <= self._low_water_mark:
            ticket = self._claim_refill()
        return item, ticket

    def _claim_refill(self) -> RefillTicket | None:
        if self._loading or self._preferences is None:
            return None
        self._loading = True
        self._last_error = None
        return RefillTicket(
            generation=self._generation,
            preferences=self._preferences,
            cursor=self._cursor,
            seen_ids=frozenset(self._seen_ids),
        )

    def _spawn(self, ticket: RefillTicket) -> None:
        task = asyncio.create_task(self._run_background(ticket))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_background(self, ticket: RefillTicket) -> None:
        try:
            await self._refill(ticket)
        except Exception as exc:  # pragma: no cover - background safety net
            logger.exception("Background refill failed: %s", exc)

    async def _refill(self, ticket: RefillTicket | None) -> None:
        if ticket is None:
            return
        try:
            result = await self._collect(ticket)
        except BaseException:
            # The awaiting caller was cancelled; hand the loading flag back.
            async with self._lock:
                if ticket.generation == self._generation:
                    self._loading = False
            raise

        async with self._lock:
            if ticket.generation != self._generation:
                logger.debug(
                    "Discarding %d items from a refill started before the last reset",
                    len(result.items),
                )
                return
            for item in result.items:
                if item.id in self._seen_ids:
                    continue
                self._seen_ids.add(item.id)
                self._queue.append(item)
            self._cursor = result.cursor
            self._last_error = result.error
            self._loading = False

        logger.debug(
            "Refill added %d items; queue size %d, next page %d",
            len(result.items),
            len(self._queue),
            result.cursor,
        )

    async def _collect(self, ticket: RefillTicket) -> RefillResult:
        preferences = ticket.preferences
        seen = set(ticket.seen_ids)
        accumulated: list[CatalogItem] = []
        cursor = ticket.cursor
        pages_checked = 0
        error: str | None = None

        while len(accumulated) < self._target_size and pages_checked < self._max_pages:
            try:
                page_items = await self._fetch_page(cursor, preferences)
            except Exception as exc:
                # A failed page counts as empty; the cursor still moves past it.
                logger.warning("Skipping page %s: %s", cursor, exc)
                error = f"Failed to load recommendations: {exc}"
                page_items = ()
            for item in await self._filter_page(page_items, preferences):
                if item.id in seen:
                    continue
                seen.add(item.id)
                accumulated.append(item)
            cursor += 1
            pages_checked += 1
        return RefillResult(accumulated, cursor, error)

    async def _fetch_page(
        self, page: int, preferences: PreferenceSet
    ) -> Sequence[CatalogItem]:
        try:
            return await self._bounded(
                self._source.fetch_discover(
                    page,
                    genre_ids=preferences.selected_genres or None,
                    year_range=preferences.year_range,
                    min_rating=preferences.min_rating if preferences.min_rating > 0 else None,
                    provider_ids=(
                        preferences.selected_providers
                        if preferences.filters_providers()
                        else None
                    ),
                    content_type=preferences.content_type,
                ),
                f"discover page {page}",
            )
        except UnsupportedQueryError:
            logger.debug("Discover unsupported for page %s, using trending", page)
        except Exception as exc:
            logger.info(
                "Discover query for page %s failed (%s); falling back to trending",
                page,
                exc,
            )
        return await self._bounded(
            self._source.fetch_trending(page, content_type=preferences.content_type),
            f"trending page {page}",
        )

    async def _filter_page(
        self, items: Sequence[CatalogItem], preferences: PreferenceSet
    ) -> list[CatalogItem]:
        candidates = [item for item in items if preferences.accepts(item)]
        if not preferences.filters_providers():
            # Loose mode treats provider selection as advisory only.
            return candidates

        semaphore = asyncio.Semaphore(self._provider_concurrency)

        async def _available(item: CatalogItem) -> bool:
            try:
                async with semaphore:
                    providers = await self._bounded(
                        self._source.fetch_providers(item.id, media_type=item.media_type),
                        f"providers for {item.id}",
                    )
            except Exception as exc:
                logger.debug("Dropping %s, provider lookup failed: %s", item.id, exc)
                return False
            offered = {provider.id for provider in providers}
            return not offered.isdisjoint(preferences.selected_providers)

        verdicts = await asyncio.gather(*(_available(item) for item in candidates))
        return [item for item, keep in zip(candidates, verdicts) if keep]

    async def _bounded(self, awaitable: Awaitable[T], label: str) -> T:
        if self._page_timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=self._page_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientCatalogError(
                f"{label} timed out after {self._page_timeout:g}s"
            ) from exc
