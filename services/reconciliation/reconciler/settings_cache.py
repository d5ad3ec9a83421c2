"""
Reconciliation Service — site settings cache

Site settings change rarely (admin saves) but are read on every label
request. They are cached per process for a fixed staleness window and
can be invalidated explicitly after an admin save.
"""

import logging
import time
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import queries

logger = logging.getLogger(__name__)


class SettingsCache:
    def __init__(
        self,
        session_factory: sessionmaker,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sessions = session_factory
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._values: dict[str, str] | None = None
        self._loaded_at = 0.0
        self._stale_keys: set[str] = set()

    def _fresh(self) -> bool:
        return self._values is not None and self._clock() - self._loaded_at < self.ttl_seconds

    async def _reload(self) -> dict[str, str]:
        try:
            async with self.sessions() as session:
                values = await queries.load_site_settings(session)
        except SQLAlchemyError:
            if self._values is None:
                raise
            # Serve the previous snapshot rather than failing the caller.
            logger.warning("Site settings reload failed, serving stale values", exc_info=True)
            return dict(self._values)
        self._values = values
        self._loaded_at = self._clock()
        self._stale_keys.clear()
        return dict(values)

    async def all(self) -> dict[str, str]:
        if self._fresh() and not self._stale_keys:
            return dict(self._values)
        return await self._reload()

    async def get(self, key: str, default: str | None = None) -> str | None:
        if not self._fresh() or key in self._stale_keys:
            await self._reload()
        return self._values.get(key, default)

    def invalidate(self, key: str | None = None) -> None:
        """Drop one key (or everything); the next read goes to the store."""
        if key is None:
            self._values = None
            self._stale_keys.clear()
        elif self._values is not None:
            self._stale_keys.add(key)
