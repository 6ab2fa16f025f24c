import os
import signal
import time

import pytest

from proxy_traffic_mcp.core.flusher import Flusher
from proxy_traffic_mcp.core.shutdown import ShutdownCoordinator

from helpers import record


def test_final_flush_runs_once(cache, primary):
    coordinator = ShutdownCoordinator(Flusher(cache, primary), signals=())
    cache.put("a", record("a", up=1))

    first = coordinator.final_flush()
    cache.put("b", record("b"))
    second = coordinator.final_flush()

    assert first.persisted == 1
    assert second is None
    assert coordinator.done
    assert primary.get("b") is None


def test_leaving_the_block_flushes(cache, primary):
    with ShutdownCoordinator(Flusher(cache, primary), signals=()):
        cache.put("a", record("a", up=9))

    assert primary.get("a").upload_bytes == 9
    assert len(cache) == 0


def test_leaving_the_block_on_error_still_flushes(cache, primary):
    with pytest.raises(RuntimeError):
        with ShutdownCoordinator(Flusher(cache, primary), signals=()):
            cache.put("a", record("a"))
            raise RuntimeError("crash in the serving loop")

    assert primary.get("a") is not None


def test_signal_flushes_then_exits(cache, primary):
    coordinator = ShutdownCoordinator(Flusher(cache, primary), signals=())
    cache.put("a", record("a", up=4))

    with pytest.raises(SystemExit) as exc:
        coordinator._handle_signal(signal.SIGTERM, None)

    assert exc.value.code == 0
    assert primary.get("a").upload_bytes == 4
    # The normal return path afterwards converges on the same, finished flush.
    assert coordinator.final_flush() is None


def test_signal_without_exit(cache, primary):
    coordinator = ShutdownCoordinator(Flusher(cache, primary), signals=(), exit_on_signal=False)
    cache.put("a", record("a"))

    coordinator._handle_signal(signal.SIGINT, None)

    assert primary.get("a") is not None


def test_signal_during_final_flush_does_not_interrupt_it(cache, primary):
    coordinator = ShutdownCoordinator(Flusher(cache, primary), signals=())
    coordinator._flushing = True

    # Would raise SystemExit if it tried to flush and exit.
    coordinator._handle_signal(signal.SIGTERM, None)

    assert not coordinator.done


def test_install_and_uninstall_restore_handlers(cache, primary):
    before = signal.getsignal(signal.SIGTERM)
    coordinator = ShutdownCoordinator(Flusher(cache, primary), signals=(signal.SIGTERM,))

    assert coordinator.install()
    assert signal.getsignal(signal.SIGTERM) == coordinator._handle_signal
    coordinator.uninstall()

    assert signal.getsignal(signal.SIGTERM) == before


class _SignalAsFlushBegins(ShutdownCoordinator):
    """Delivers SIGTERM the moment final_flush marks itself done."""

    def __setattr__(self, name, value):
        super().__setattr__(name, value)
        if name == "_done" and value:
            self._handle_signal(signal.SIGTERM, None)


def test_signal_while_final_flush_starts_does_not_skip_it(cache, primary):
    coordinator = _SignalAsFlushBegins(Flusher(cache, primary), signals=())
    cache.put("a", record("a", up=6))

    result = coordinator.final_flush()

    assert result.persisted == 1
    assert primary.get("a").upload_bytes == 6


def test_real_sigterm_flushes_then_exits(cache, primary):
    coordinator = ShutdownCoordinator(Flusher(cache, primary), signals=(signal.SIGTERM,))
    cache.put("a", record("a", up=8))

    assert coordinator.install()
    try:
        with pytest.raises(SystemExit) as exc:
            os.kill(os.getpid(), signal.SIGTERM)
            for _ in range(100):
                time.sleep(0.01)
    finally:
        coordinator.uninstall()

    assert exc.value.code == 0
    assert primary.get("a").upload_bytes == 8
    assert coordinator.done
