from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Sequence

from .cache import LiveCache
from .config import Settings
from .errors import StoreError
from .flusher import Flusher
from .merge import MergeArchiveEngine, MergeResult
from .poller import Poller
from .shutdown import DEFAULT_SIGNALS, ShutdownCoordinator
from .source import ConnectionSource
from .store import ArchiveStore, PrimaryStore

logger = logging.getLogger(__name__)


class TrafficPipeline:
    """
    Owns and wires the core components.

    Everything is passed in explicitly. The cache, the stores and the source
    are plain constructor arguments, so tests can substitute any of them.
    """

    def __init__(
        self,
        source: ConnectionSource,
        cache: LiveCache,
        primary: PrimaryStore,
        archive: ArchiveStore,
        suffixes: Sequence[str] = (),
        poll_interval_seconds: float = 1.0,
        flush_interval_seconds: float = 180.0,
        install_signal_handlers: bool = True,
    ):
        self.source = source
        self.cache = cache
        self.primary = primary
        self.archive = archive

        self.poller = Poller(source, cache, suffixes=suffixes, interval_seconds=poll_interval_seconds)
        self.flusher = Flusher(cache, primary, interval_seconds=flush_interval_seconds)
        self.merger = MergeArchiveEngine(primary, archive)
        self.shutdown = ShutdownCoordinator(
            self.flusher,
            signals=DEFAULT_SIGNALS if install_signal_handlers else (),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "TrafficPipeline":
        return cls(
            source=ConnectionSource(
                settings.source_url,
                token=settings.source_token,
                timeout_seconds=settings.source_timeout_seconds,
            ),
            cache=LiveCache(),
            primary=PrimaryStore(settings.database_path),
            archive=ArchiveStore(settings.archive_database_path),
            suffixes=settings.host_suffix_whitelist,
            poll_interval_seconds=settings.poll_interval_seconds,
            flush_interval_seconds=settings.flush_interval_seconds,
        )

    async def start(self) -> None:
        logger.info(await self.poller.start())
        logger.info(await self.flusher.start())

    async def stop(self) -> None:
        await self.poller.stop()
        await self.flusher.stop()

    @asynccontextmanager
    async def running(self) -> AsyncIterator["TrafficPipeline"]:
        """
        Run poller and flusher for the duration of the block.

        Loops are stopped before the final flush, so the flush happens after
        every earlier poll and flush.
        """
        async with self.shutdown:
            await self.start()
            try:
                yield self
            finally:
                await self.stop()
                await self.source.aclose()

    def merge(self, start_time: int, end_time: int, interval_minutes: int) -> MergeResult:
        """
        Merge and archive, then reclaim space in the primary store.

        A failed VACUUM is only logged, the merge already committed.
        """
        result = self.merger.merge(start_time, end_time, interval_minutes)
        if result.selected:
            try:
                self.primary.vacuum()
            except StoreError as exc:
                logger.warning("vacuum after merge failed: %s", exc)
        return result

    async def merge_async(self, start_time: int, end_time: int, interval_minutes: int) -> MergeResult:
        return await asyncio.to_thread(self.merge, start_time, end_time, interval_minutes)

    def status(self) -> Dict[str, Any]:
        return {
            "cache_size": len(self.cache),
            "poller": self.poller.status(),
            "flusher": self.flusher.status(),
            "shutdown_flushed": self.shutdown.done,
        }
