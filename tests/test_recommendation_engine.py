"""Behaviour tests for the recommendation queue engine."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from app.models import CatalogItem, PreferenceSet, StreamingProvider
from app.services.catalog_source import (
    CatalogSource,
    ProviderLookupError,
    TransientCatalogError,
    UnsupportedQueryError,
)
from app.services.recommendation_engine import RecommendationEngine


def make_item(item_id: int, *, rating: float = 7.5, release_date: str | None = "2015-06-01") -> CatalogItem:
    return CatalogItem(
        id=item_id,
        title=f"Movie {item_id}",
        vote_average=rating,
        release_date=release_date,
    )


def make_page(*ids: int) -> list[CatalogItem]:
    return [make_item(item_id) for item_id in ids]


def preferences(**overrides: Any) -> PreferenceSet:
    base: dict[str, Any] = {"year_range": (1990, 2025), "min_rating": 0.0}
    base.update(overrides)
    return PreferenceSet(**base)


class StubCatalogSource(CatalogSource):
    """In-memory catalog that records every query it receives."""

    def __init__(
        self,
        pages: dict[int, list[CatalogItem]] | None = None,
        *,
        providers: dict[int, set[int]] | None = None,
        trending_pages: dict[int, list[CatalogItem]] | None = None,
        discover_error: Exception | None = None,
        failing_pages: set[int] | None = None,
        provider_failures: set[int] | None = None,
        hanging_pages: set[int] | None = None,
    ) -> None:
        self.pages = pages or {}
        self.trending_pages = trending_pages
        self.providers = providers or {}
        self.discover_error = discover_error
        self.failing_pages = failing_pages or set()
        self.provider_failures = provider_failures or set()
        self.hanging_pages = hanging_pages or set()
        self.discover_calls: list[dict[str, Any]] = []
        self.trending_calls: list[int] = []
        self.provider_calls: list[int] = []

    async def fetch_discover(self, page: int, **filters: Any) -> list[CatalogItem]:  # type: ignore[override]
        self.discover_calls.append({"page": page, **filters})
        if page in self.hanging_pages:
            await asyncio.Event().wait()
        if self.discover_error is not None:
            raise self.discover_error
        if page in self.failing_pages:
            raise TransientCatalogError(f"discover page {page} unavailable")
        return list(self.pages.get(page, []))

    async def fetch_trending(self, page: int, *, content_type: str = "movie") -> list[CatalogItem]:  # type: ignore[override]
        self.trending_calls.append(page)
        if page in self.hanging_pages:
            await asyncio.Event().wait()
        if page in self.failing_pages:
            raise TransientCatalogError(f"trending page {page} unavailable")
        source = self.trending_pages if self.trending_pages is not None else self.pages
        return list(source.get(page, []))

    async def fetch_providers(self, item_id: int, *, media_type: str = "movie") -> list[StreamingProvider]:  # type: ignore[override]
        self.provider_calls.append(item_id)
        if item_id in self.provider_failures:
            raise ProviderLookupError(f"no provider data for {item_id}")
        return [
            StreamingProvider(id=provider_id, name=f"Provider {provider_id}")
            for provider_id in sorted(self.providers.get(item_id, set()))
        ]


def test_initialize_accumulates_pages_until_target() -> None:
    source = StubCatalogSource({page: make_page(*range(page * 10, page * 10 + 8)) for page in range(1, 11)})
    engine = RecommendationEngine(source)

    async def runner() -> None:
        await engine.initialize(preferences())

        assert engine.get_queue_size() == 24
        assert engine.cursor == 4
        assert [call["page"] for call in source.discover_calls] == [1, 2, 3]
        assert engine.is_loading is False
        assert engine.last_error is None

    asyncio.run(runner())


def test_items_are_never_served_twice_across_refills() -> None:
    pages = {page: make_page(*range(4 * page - 3, 4 * page + 5)) for page in range(1, 5)}
    source = StubCatalogSource(pages)
    engine = RecommendationEngine(source)

    async def runner() -> list[int]:
        await engine.initialize(preferences())
        served: list[int] = []
        for _ in range(100):
            item = await engine.consume()
            await engine.wait_idle()
            if item is None:
                break
            served.append(item.id)
        return served

    served = asyncio.run(runner())

    assert served == list(range(1, 21))
    assert len(served) == len(set(served))


def test_consume_triggers_background_refill_at_low_water_mark() -> None:
    source = StubCatalogSource({1: make_page(*range(1, 8))})
    engine = RecommendationEngine(source)

    async def runner() -> None:
        await engine.initialize(preferences())
        assert engine.get_queue_size() == 7
        assert engine.cursor == 11

        first = await engine.consume()
        assert first is not None and first.id == 1
        assert engine.get_queue_size() == 6
        assert engine.is_loading is False

        source.pages[11] = make_page(100, 101, 102)
        second = await engine.consume()
        assert second is not None and second.id == 2
        assert engine.get_queue_size() == 5
        assert engine.is_loading is True
        assert engine.needs_refill() is True

        await engine.wait_idle()
        assert engine.is_loading is False
        assert engine.get_queue_size() == 8
        assert [item.id for item in engine.queue][-3:] == [100, 101, 102]

    asyncio.run(runner())


def test_consume_on_empty_queue_refills_before_returning() -> None:
    source = StubCatalogSource()
    engine = RecommendationEngine(source)

    async def runner() -> None:
        await engine.initialize(preferences())
        assert engine.get_queue_size() == 0

        source.pages[11] = make_page(42, 43)
        item = await engine.consume()

        assert item is not None
        assert item.id == 42
        assert [queued.id for queued in engine.queue] == [43]
        await engine.wait_idle()

    asyncio.run(runner())


def test_strict_mode_keeps_only_titles_on_selected_providers() -> None:
    source = StubCatalogSource(
        {1: make_page(1, 2, 3)},
        providers={1: {8}, 2: set(), 3: {8}},
        provider_failures={3},
    )
    engine = RecommendationEngine(source)

    async def runner() -> None:
        await engine.initialize(
            preferences(selected_providers={8}, availability_strict=True)
        )

    asyncio.run(runner())

    assert [item.id for item in engine.queue] == [1]
    assert source.discover_calls[0]["provider_ids"] == frozenset({8})
    assert sorted(set(source.provider_calls)) == [1, 2, 3]


def test_loose_mode_ignores_provider_availability() -> None:
    source = StubCatalogSource(
        {1: make_page(1, 2)},
        providers={1: {8}, 2: set()},
        provider_failures={2},
    )
    engine = RecommendationEngine(source)

    async def runner() -> None:
        await engine.initialize(
            preferences(selected_providers={8}, availability_strict=False)
        )

    asyncio.run(runner())

    assert [item.id for item in engine.queue] == [1, 2]
    assert source.provider_calls == []
    assert source.discover_calls[0]["provider_ids"] is None


def test_update_preferences_skips_structurally_equal_sets() -> None:
    source = StubCatalogSource({1: make_page(*range(1, 21))})
    engine = RecommendationEngine(source)

    async def runner() -> None:
        await engine.update_preferences(preferences(selected_genres={28, 12}))
        assert len(source.discover_calls) == 1

        await engine.update_preferences(preferences(selected_genres=[12, 28]))
        assert len(source.discover_calls) == 1

        await engine.update_preferences(preferences(selected_genres={35}))
        assert len(source.discover_calls) == 2
        assert source.discover_calls[-1]["genre_ids"] == frozenset({35})

    asyncio.run(runner())


def test_client_side_filters_year_and_rating() -> None:
    page = [
        make_item(1, release_date="1999-03-01"),
        make_item(2, release_date="2000-01-01"),
        make_item(3, release_date=None),
        make_item(4, release_date="TBA"),
        make_item(5, rating=5.9),
        make_item(6, release_date="2026-02-02"),
    ]
    source = StubCatalogSource({1: page})
    engine = RecommendationEngine(source)

    async def runner() -> None:
        await engine.initialize(preferences(year_range=(2000, 2025), min_rating=6.0))

    asyncio.run(runner())

    assert [item.id for item in engine.queue] == [2, 3, 4]
    assert source.discover_calls[0]["year_range"] == (2000, 2025)
    assert source.discover_calls[0]["min_rating"] == 6.0


def test_zero_rating_and_empty_genres_are_not_sent_to_discover() -> None:
    source = StubCatalogSource({1: make_page(*range(1, 21))})
    engine = RecommendationEngine(source)

    asyncio.run(engine.initialize(preferences(min_rating=0.0)))

    assert source.discover_calls[0]["min_rating"] is None
    assert source.discover_calls[0]["genre_ids"] is None
    assert source.discover_calls[0]["content_type"] == "movie"


def test_reset_clears_state_and_disables_consume() -> None:
    source = StubCatalogSource({1: make_page(*range(1, 21))})
    engine = RecommendationEngine(source)

    async def runner() -> None:
        await engine.initialize(preferences())
        assert engine.get_queue_size() == 20

        await engine.reset()
        calls_before = len(source.discover_calls) + len(source.trending_calls)

        assert engine.get_queue_size() == 0
        assert engine.preferences is None
        assert engine.cursor == 1
        assert await engine.consume() is None
        assert len(source.discover_calls) + len(source.trending_calls) == calls_before

        await engine.initialize(preferences())
        assert engine.get_queue_size() == 20
        assert engine.queue[0].id == 1

    asyncio.run(runner())


def test_failed_discover_falls_back_to_trending() -> None:
    source = StubCatalogSource(
        trending_pages={1: make_page(*range(1, 21))},
        discover_error=TransientCatalogError("discover offline"),
    )
    engine = RecommendationEngine(source)

    asyncio.run(engine.initialize(preferences()))

    assert engine.get_queue_size() == 20
    assert source.trending_calls == [1]
    assert engine.last_error is None


def test_unsupported_discover_falls_back_to_trending() -> None:
    source = StubCatalogSource(
        trending_pages={1: make_page(*range(1, 21))},
        discover_error=UnsupportedQueryError("no discover"),
    )
    engine = RecommendationEngine(source)

    asyncio.run(engine.initialize(preferences(content_type="both")))

    assert engine.get_queue_size() == 20
    assert source.discover_calls[0]["content_type"] == "both"


def test_fetch_failure_records_error_and_keeps_partial_progress() -> None:
    source = StubCatalogSource({1: make_page(1, 2, 3)}, failing_pages={2})
    engine = RecommendationEngine(source)

    async def runner() -> None:
        await engine.initialize(preferences())

        assert [item.id for item in engine.queue] == [1, 2, 3]
        assert engine.last_error is not None
        assert engine.last_error.startswith("Failed to load recommendations")
        assert engine.is_loading is False
        assert engine.cursor == 11

        engine.clear_error()
        assert engine.last_error is None
        assert engine.get_queue_size() == 3

    asyncio.run(runner())


def test_failing_page_is_skipped_so_later_pages_are_reached() -> None:
    source = StubCatalogSource(
        {1: make_page(1, 2, 3), 3: make_page(*range(30, 50))},
        failing_pages={2},
    )
    engine = RecommendationEngine(source)

    async def runner() -> list[int]:
        await engine.initialize(preferences())
        assert engine.cursor == 4
        assert engine.last_error is not None

        served: list[int] = []
        for _ in range(30):
            item = await engine.consume()
            await engine.wait_idle()
            if item is None:
                break
            served.append(item.id)
        return served

    served = asyncio.run(runner())

    assert served == [1, 2, 3, *range(30, 50)]
    assert source.trending_calls.count(2) == 1


def test_page_timeout_prevents_stuck_loading_flag() -> None:
    source = StubCatalogSource(hanging_pages={1})
    engine = RecommendationEngine(source, page_timeout=0.05)

    asyncio.run(engine.initialize(preferences()))

    assert engine.is_loading is False
    assert engine.get_queue_size() == 0
    assert engine.last_error is not None
    assert "timed out" in engine.last_error


class GatedCatalogSource(StubCatalogSource):
    """Holds the first request for a page until the test releases it."""

    def __init__(self, pages: dict[int, list[CatalogItem]], gated_page: int, stale_items: list[CatalogItem]):
        super().__init__(pages)
        self.gated_page = gated_page
        self.stale_items = stale_items
        self.gate = asyncio.Event()
        self.gate_reached = asyncio.Event()
        self._gated_once = False

    async def fetch_discover(self, page: int, **filters: Any) -> list[CatalogItem]:  # type: ignore[override]
        if page == self.gated_page and not self._gated_once:
            self._gated_once = True
            self.discover_calls.append({"page": page, **filters})
            self.gate_reached.set()
            await self.gate.wait()
            return list(self.stale_items)
        return await super().fetch_discover(page, **filters)


def test_refill_started_before_initialize_is_discarded() -> None:
    async def runner() -> None:
        source = GatedCatalogSource({1: make_page(*range(1, 7))}, gated_page=11, stale_items=make_page(999))
        engine = RecommendationEngine(source)

        await engine.initialize(preferences(selected_genres={28}))
        assert engine.get_queue_size() == 6

        await engine.consume()
        assert engine.is_loading is True
        await source.gate_reached.wait()

        await engine.initialize(preferences(selected_genres={18}))
        assert [item.id for item in engine.queue] == [1, 2, 3, 4, 5, 6]

        source.gate.set()
        await engine.wait_idle()

        assert 999 not in {item.id for item in engine.queue}
        assert engine.get_queue_size() == 6
        assert engine.is_loading is False
        assert engine.cursor == 11
        assert engine.preferences == preferences(selected_genres={18})

    asyncio.run(runner())


def test_cancelled_consume_releases_loading_flag() -> None:
    async def runner() -> None:
        source = GatedCatalogSource({}, gated_page=11, stale_items=[])
        engine = RecommendationEngine(source)

        await engine.initialize(preferences())
        assert engine.get_queue_size() == 0

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(engine.consume(), timeout=0.05)

        assert engine.is_loading is False
        assert engine.cursor == 11

        source.pages[11] = make_page(42)
        item = await engine.consume()
        assert item is not None and item.id == 42
        await engine.wait_idle()
        assert engine.is_loading is False

    asyncio.run(runner())


def test_consume_on_empty_queue_does_not_wait_for_running_refill() -> None:
    async def runner() -> None:
        source = GatedCatalogSource({1: make_page(*range(1, 7))}, gated_page=11, stale_items=make_page(99))
        engine = RecommendationEngine(source)

        await engine.initialize(preferences())
        first = await engine.consume()
        assert first is not None and first.id == 1
        await source.gate_reached.wait()

        drained = [await engine.consume() for _ in range(5)]
        assert [item.id for item in drained if item is not None] == [2, 3, 4, 5, 6]
        calls_before = len(source.discover_calls)

        item = await asyncio.wait_for(engine.consume(), timeout=1)

        assert item is None
        assert engine.is_loading is True
        assert len(source.discover_calls) == calls_before

        source.gate.set()
        await engine.wait_idle()
        assert [queued.id for queued in engine.queue] == [99]
        assert engine.is_loading is False

    asyncio.run(runner())


def test_reset_during_refill_clears_loading_and_drops_result() -> None:
    async def runner() -> None:
        source = GatedCatalogSource({1: make_page(*range(1, 7))}, gated_page=11, stale_items=make_page(99))
        engine = RecommendationEngine(source)

        await engine.initialize(preferences())
        await engine.consume()
        await source.gate_reached.wait()

        await engine.reset()
        assert engine.is_loading is False
        assert engine.get_queue_size() == 0

        source.gate.set()
        await engine.wait_idle()

        assert engine.get_queue_size() == 0
        assert engine.is_loading is False
        assert engine.cursor == 1
        assert engine.preferences is None
        assert engine.last_error is None
        assert await engine.consume() is None

    asyncio.run(runner())


def test_snapshot_reflects_engine_state() -> None:
    source = StubCatalogSource({1: make_page(1, 2)})
    engine = RecommendationEngine(source)

    asyncio.run(engine.initialize(preferences()))
    snapshot = engine.snapshot()

    assert snapshot.size == 2
    assert [item.id for item in snapshot.items] == [1, 2]
    assert snapshot.loading is False
    assert snapshot.cursor == 11
    assert snapshot.preferences == preferences()
    payload = snapshot.to_payload()
    assert payload["preferences"]["year_range"] == [1990, 2025]
