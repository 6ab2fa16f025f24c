from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .cache import LiveCache
from .errors import StoreError
from .store import PrimaryStore

logger = logging.getLogger(__name__)


@dataclass
class FlushResult:
    """
    Outcome of one flush cycle.

    drained
      Records taken out of the live cache.

    persisted
      Records inserted or overwritten in the primary store.

    skipped
      Records dropped at the write boundary because host was empty.

    ok
      False when the batch transaction failed. The drained records are not
      re-queued, a live connection comes back with the next poll.
    """

    drained: int = 0
    persisted: int = 0
    skipped: int = 0
    ok: bool = True
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Flusher:
    """
    Periodically writes the live cache behind to the primary store.

    The interval is independent of, and usually much coarser than, the poller.
    Each cycle is one batched upsert transaction. Cycles are serialised so
    the periodic loop, flush_now and the shutdown flush never interleave.
    """

    def __init__(self, cache: LiveCache, primary: PrimaryStore, interval_seconds: float = 180.0):
        self.cache = cache
        self.primary = primary
        self.interval_seconds = float(interval_seconds)

        self._cycle_lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._running = False

        self._flushes = 0
        self._failures = 0
        self._persisted_total = 0
        self._last: Optional[FlushResult] = None
        self._last_flush_ts: Optional[float] = None

    def flush_once(self) -> FlushResult:
        """
        Drain the cache and persist it in a single transaction. Synchronous.
        """
        with self._cycle_lock:
            result = self._flush_locked()
            self._flushes += 1
            self._last = result
            self._last_flush_ts = time.time()
            return result

    def _flush_locked(self) -> FlushResult:
        batch = self.cache.drain_all()
        if not batch:
            logger.debug("live cache is empty, nothing to flush")
            return FlushResult()

        logger.info("flushing %d connections to the primary store", len(batch))
        try:
            persisted, skipped = self.primary.upsert_many(batch)
        except StoreError as exc:
            self._failures += 1
            logger.exception("flush of %d connections failed, batch dropped", len(batch))
            return FlushResult(drained=len(batch), ok=False, error=str(exc))

        self._persisted_total += persisted
        logger.info("flushed %d connections, skipped %d without host", persisted, skipped)
        return FlushResult(drained=len(batch), persisted=persisted, skipped=skipped)

    async def start(self) -> str:
        if self._running:
            return "already running"

        self._stop.clear()
        self._task = asyncio.create_task(self._run())
        self._running = True
        return f"flusher started, interval {self.interval_seconds}s"

    async def stop(self) -> str:
        """
        Stop the periodic loop. Does not flush, the shutdown coordinator does.
        """
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
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                try:
                    await asyncio.to_thread(self.flush_once)
                except Exception:
                    self._failures += 1
                    logger.exception("flush cycle crashed, retrying next interval")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "flushes": self._flushes,
            "failures": self._failures,
            "persisted_total": self._persisted_total,
            "last": self._last.to_dict() if self._last else None,
            "last_flush_ts": self._last_flush_ts,
        }
