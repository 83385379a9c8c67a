"""Registry mapping swipe sessions to their recommendation engines."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict

from ..config import Settings
from .catalog_source import CatalogSource
from .recommendation_engine import RecommendationEngine

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Owns one engine per swipe session; engines share a catalog source.

    At most ``settings.max_sessions`` engines are kept. Creating one more
    closes the session that was used least recently.
    """

    def __init__(self, settings: Settings, source: CatalogSource):
        self._settings = settings
        self._source = source
        self._max_sessions = settings.max_sessions
        self._engines: OrderedDict[str, RecommendationEngine] = OrderedDict()
        self._lock = asyncio.Lock()

    @property
    def source(self) -> CatalogSource:
        return self._source

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._engines

    def __len__(self) -> int:
        return len(self._engines)

    def find(self, session_id: str) -> RecommendationEngine | None:
        engine = self._engines.get(session_id)
        if engine is not None:
            self._engines.move_to_end(session_id)
        return engine

    async def get(self, session_id: str) -> RecommendationEngine:
        """Return the session's engine, creating it on first use."""

        evicted: list[tuple[str, RecommendationEngine]] = []
        async with self._lock:
            engine = self._engines.get(session_id)
            if engine is not None:
                self._engines.move_to_end(session_id)
                return engine
            engine = RecommendationEngine.from_settings(self._source, self._settings)
            self._engines[session_id] = engine
            logger.info("Created recommendation engine for session %s", session_id)
            while len(self._engines) > self._max_sessions:
                evicted.append(self._engines.popitem(last=False))

        for stale_id, stale in evicted:
            await stale.aclose()
            logger.info("Evicted idle recommendation engine for session %s", stale_id)
        return engine

    async def drop(self, session_id: str) -> bool:
        async with self._lock:
            engine = self._engines.pop(session_id, None)
        if engine is None:
            return False
        await engine.aclose()
        logger.info("Dropped recommendation engine for session %s", session_id)
        return True

    async def aclose(self) -> None:
        async with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()
        for engine in engines:
            await engine.aclose()
