import asyncio
import logging

import pytest

from proxy_traffic_mcp.core.flusher import Flusher

from helpers import record


def test_empty_cache_is_a_noop(cache, primary):
    result = Flusher(cache, primary).flush_once()

    assert result.drained == 0
    assert result.ok
    assert primary.count() == 0


def test_flush_persists_and_clears_cache(cache, primary):
    cache.put_many([record("a", up=1), record("b", up=2), record("c", host="")])

    result = Flusher(cache, primary).flush_once()

    assert (result.drained, result.persisted, result.skipped) == (3, 2, 1)
    assert len(cache) == 0
    assert sorted(r.id for r in primary.all()) == ["a", "b"]


def test_repeated_observations_overwrite(cache, primary):
    flusher = Flusher(cache, primary)

    cache.put("a", record("a", up=100, down=200))
    flusher.flush_once()
    cache.put("a", record("a", up=300, down=500))
    flusher.flush_once()

    r = primary.get("a")
    assert (r.upload_bytes, r.download_bytes) == (300, 500)


def test_failed_batch_is_dropped_and_logged(cache, primary, caplog):
    cache.put_many([record("a"), record("b", up=object()), record("c")])
    flusher = Flusher(cache, primary)

    with caplog.at_level(logging.ERROR, logger="proxy_traffic_mcp"):
        result = flusher.flush_once()

    assert not result.ok
    assert result.drained == 3
    assert result.error
    assert len(cache) == 0
    assert primary.count() == 0
    assert any("batch dropped" in r.getMessage() for r in caplog.records)
    assert flusher.status()["failures"] == 1


@pytest.mark.asyncio
async def test_periodic_loop_flushes(cache, primary):
    flusher = Flusher(cache, primary, interval_seconds=0.05)
    cache.put("a", record("a", up=7))

    await flusher.start()
    for _ in range(100):
        if primary.count():
            break
        await asyncio.sleep(0.02)
    await flusher.stop()

    assert primary.get("a").upload_bytes == 7
    assert flusher.status()["running"] is False


async def _wait_for(predicate, tries=200):
    for _ in range(tries):
        if predicate():
            return
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_out_of_range_counter_drops_batch_and_loop_keeps_going(cache, primary):
    flusher = Flusher(cache, primary, interval_seconds=0.02)
    cache.put("big", record("big", up=2**63))

    await flusher.start()
    await _wait_for(lambda: flusher.status()["failures"] >= 1)
    cache.put("a", record("a", up=5))
    await _wait_for(lambda: primary.get("a") is not None)
    await flusher.stop()

    assert primary.get("a").upload_bytes == 5
    assert primary.get("big") is None
    assert flusher.status()["failures"] == 1


@pytest.mark.asyncio
async def test_loop_survives_an_unexpected_error(cache, primary, monkeypatch, caplog):
    real_upsert = primary.upsert_many
    calls = []

    def crash_once(records):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("bug in the write path")
        return real_upsert(records)

    monkeypatch.setattr(primary, "upsert_many", crash_once)
    flusher = Flusher(cache, primary, interval_seconds=0.02)
    cache.put("a", record("a"))

    with caplog.at_level(logging.ERROR, logger="proxy_traffic_mcp"):
        await flusher.start()
        await _wait_for(lambda: len(calls) >= 1)
        cache.put("b", record("b", up=2))
        await _wait_for(lambda: primary.get("b") is not None)
        await flusher.stop()

    assert primary.get("b").upload_bytes == 2
    assert flusher.status()["failures"] == 1
    assert any("flush cycle crashed" in r.getMessage() for r in caplog.records)
