from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import Any, Dict, Optional, Sequence

from .flusher import FlushResult, Flusher

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    """
    Makes every exit path end with exactly one synchronous flush.

    Paths:
      signal
        The handler flushes the live cache, then exits the process.

      normal return
        Leaving the `with` / `async with` block flushes.

    Both go through final_flush(), an exit guard where the first caller runs
    the flush and later callers are no-ops. Loss is bounded to one flusher
    interval on a clean exit and to nothing still in the cache on a signal.
    Hard crashes and SIGKILL are not intercepted.
    """

    def __init__(
        self,
        flusher: Flusher,
        signals: Sequence[int] = DEFAULT_SIGNALS,
        exit_on_signal: bool = True,
    ):
        self.flusher = flusher
        self.signals = tuple(signals)
        self.exit_on_signal = exit_on_signal

        # Re-entrant: the signal handler runs on the main thread and may
        # interrupt a final_flush already running there.
        self._guard = threading.RLock()
        self._done = False
        self._flushing = False
        self._previous: Dict[int, Any] = {}
        self._received: Optional[int] = None
        self.result: Optional[FlushResult] = None

    @property
    def done(self) -> bool:
        return self._done

    def install(self) -> bool:
        """
        Register the signal handlers. Only possible from the main thread.
        """
        if threading.current_thread() is not threading.main_thread():
            logger.warning("not on the main thread, shutdown signal handlers not installed")
            return False

        for sig in self.signals:
            self._previous[sig] = signal.signal(sig, self._handle_signal)
        return True

    def uninstall(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig, previous in self._previous.items():
            signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
        self._previous.clear()

    def final_flush(self) -> Optional[FlushResult]:
        """
        Run the last flush once. Returns None when it already ran or is running.
        """
        with self._guard:
            if self._done:
                return None
            # _flushing goes up first: a signal landing here must see it.
            self._flushing = True
            self._done = True
            try:
                logger.info("final flush of %d cached connections", len(self.flusher.cache))
                self.result = self.flusher.flush_once()
            finally:
                self._flushing = False

        if self.result.ok:
            logger.info("final flush persisted %d connections", self.result.persisted)
        return self.result

    def _handle_signal(self, signum: int, _frame: Any) -> None:
        self._received = signum
        logger.info("received %s, writing cached connections before exit", signal.Signals(signum).name)

        if self._flushing:
            # The interrupted frame is the final flush itself. Let it finish.
            return

        self.final_flush()
        if self.exit_on_signal:
            sys.exit(0)

    def __enter__(self) -> "ShutdownCoordinator":
        self.install()
        return self

    def __exit__(self, *exc: Any) -> None:
        try:
            self.final_flush()
        finally:
            self.uninstall()

    async def __aenter__(self) -> "ShutdownCoordinator":
        return self.__enter__()

    async def __aexit__(self, *exc: Any) -> None:
        self.__exit__(*exc)

