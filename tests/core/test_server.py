import pytest

from proxy_traffic_mcp.core.pipeline import TrafficPipeline
from proxy_traffic_mcp.core.server import TrafficMCPServer

from helpers import T0, mock_source, record


def _server(cache, primary, archive):
    pipeline = TrafficPipeline(
        mock_source([{"connections": []}]),
        cache,
        primary,
        archive,
        install_signal_handlers=False,
    )
    return TrafficMCPServer(pipeline)


@pytest.mark.asyncio
async def test_merge_tool_reports_success(cache, primary, archive):
    server = _server(cache, primary, archive)
    primary.upsert_many([record("x", up=10, down=20), record("y", up=5, down=5, start=T0 + 120)])

    out = await server.merge_connections(T0, T0 + 600, 10)

    assert out["ok"] is True
    assert out["selected"] == 2
    assert out["groups"] == 1
    assert primary.count() == 1
    assert archive.count() == 2


@pytest.mark.asyncio
async def test_merge_tool_rejects_bad_range(cache, primary, archive):
    server = _server(cache, primary, archive)
    primary.upsert_many([record("x")])

    out = await server.merge_connections(T0 + 600, T0, 10)

    assert out["ok"] is False
    assert "invalid request" in out["error"]
    assert primary.get("x") is not None


def test_replace_host_tool(cache, primary, archive):
    server = _server(cache, primary, archive)
    primary.upsert_many([record("a", host="r1.googlevideo.com")])

    assert server.replace_host("googlevideo.com") == {
        "ok": True,
        "message": "replace complete",
        "rows_affected": 1,
    }
    assert server.replace_host("")["ok"] is False


def test_flush_now_tool(cache, primary, archive):
    server = _server(cache, primary, archive)
    cache.put("a", record("a"))

    out = server.flush_now()

    assert out["persisted"] == 1
    assert out["ok"] is True
    assert server.pipeline.status()["cache_size"] == 0


@pytest.mark.asyncio
async def test_merge_tool_reports_out_of_range_values(cache, primary, archive):
    server = _server(cache, primary, archive)
    primary.upsert_many([record("x")])

    out = await server.merge_connections(T0, 2**63, 10)

    assert out["ok"] is False
    assert "invalid request" in out["error"]
    assert primary.get("x") is not None


@pytest.mark.asyncio
async def test_merge_tool_reports_overflowing_bucket(cache, primary, archive):
    server = _server(cache, primary, archive)
    primary.upsert_many([record("x", down=2**62), record("y", down=2**62, start=T0 + 30)])

    out = await server.merge_connections(T0, T0 + 600, 10)

    assert out["ok"] is False
    assert "merge failed" in out["error"]
    assert primary.count() == 2
    assert archive.count() == 0


@pytest.mark.asyncio
async def test_list_connections_tool(cache, primary, archive):
    server = _server(cache, primary, archive)
    primary.upsert_many([
        record("a", host="r1.googlevideo.com", up=1, start=T0),
        record("b", host="example.org", up=2, start=T0 + 60),
    ])

    page = server.list_connections(host="googlevideo", page_size=5)

    assert [r["id"] for r in page["data"]] == ["a"]
    assert (page["total"], page["page_size"], page["total_pages"]) == (1, 5, 1)
    tools = {t.name for t in await server.mcp.list_tools()}
    assert {"list_connections", "merge_connections", "replace_host", "flush_now"} <= tools
