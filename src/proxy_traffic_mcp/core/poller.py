from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Sequence

from .cache import LiveCache
from .errors import SourceError
from .models import ConnectionRecord
from .normalize import normalize_snapshot
from .source import ConnectionSource

logger = logging.getLogger(__name__)


class Poller:
    """
    Keeps the live cache in step with the connection source.

    Cycle:
      idle -> fetching -> normalizing -> updating cache -> idle

    A failed fetch leaves the cache exactly as it was. There is no backoff,
    the next tick is the retry. The interval can be sub-second because a
    cycle only touches memory.
    """

    def __init__(
        self,
        source: ConnectionSource,
        cache: LiveCache,
        suffixes: Sequence[str] = (),
        interval_seconds: float = 1.0,
    ):
        self.source = source
        self.cache = cache
        self.suffixes = tuple(suffixes)
        self.interval_seconds = float(interval_seconds)

        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._running = False

        self._polls = 0
        self._failures = 0
        self._last_count = 0
        self._last_error: Optional[str] = None
        self._last_success_ts: Optional[float] = None

    async def poll_once(self) -> int:
        """
        One fetch, normalize and upsert pass. Returns how many records were cached.
        """
        self._polls += 1
        try:
            snapshot = await self.source.fetch()
        except SourceError as exc:
            self._failures += 1
            self._last_error = str(exc)
            logger.warning("fetching connections failed: %s", exc)
            return 0

        snapshot = normalize_snapshot(snapshot, self.suffixes)
        n = self.cache.put_many(ConnectionRecord.from_raw(c) for c in snapshot.connections)

        self._last_count = n
        self._last_error = None
        self._last_success_ts = time.time()
        logger.debug("synced %d connections into the live cache", n)
        return n

    async def start(self) -> str:
        if self._running:
            return "already running"

        self._stop.clear()
        self._task = asyncio.create_task(self._run())
        self._running = True
        return f"poller started, interval {self.interval_seconds}s"

    async def stop(self) -> str:
        if not self._running:
            return "not running"

        self._stop.set()
        if self._task:
            await self._task
        self._running = False
        return "stopped"

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.poll_once()
            except Exception as exc:
                self._failures += 1
                self._last_error = repr(exc)
                logger.exception("poll cycle crashed, retrying next tick")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "polls": self._polls,
            "failures": self._failures,
            "last_count": self._last_count,
            "last_error": self._last_error,
            "last_success_ts": self._last_success_ts,
        }
