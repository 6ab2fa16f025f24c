from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from .config import Settings
from .errors import InvalidMergeRequest, MergeError, StoreError
from .pipeline import TrafficPipeline

logger = logging.getLogger(__name__)


class TrafficMCPServer:
    """
    MCP server in front of the traffic pipeline.

    Responsibilities:
      Run the poller and flusher for the lifetime of the server
      Expose merge/archive as a tool
      Expose a filtered, sorted, paged listing of stored connections
      Expose read-only summaries of the primary store
      Expose pipeline status and a manual flush
    """

    def __init__(self, pipeline: TrafficPipeline, name: str = "proxy_traffic_mcp"):
        self.pipeline = pipeline
        self.mcp = FastMCP(name)
        self._register_tools()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TrafficMCPServer":
        return cls(TrafficPipeline.from_settings(settings))

    async def merge_connections(self, start_date: int, end_date: int, interval: int) -> Dict[str, Any]:
        try:
            result = await self.pipeline.merge_async(start_date, end_date, interval)
        except InvalidMergeRequest as exc:
            return {"ok": False, "error": f"invalid request: {exc}"}
        except MergeError as exc:
            return {"ok": False, "error": f"merge failed: {exc}"}

        out = {"ok": True, "message": "merge complete"}
        out.update(result.to_dict())
        return out

    def replace_host(self, domain_suffix: str) -> Dict[str, Any]:
        if not domain_suffix:
            return {"ok": False, "error": "domain suffix must not be empty"}
        try:
            rows = self.pipeline.primary.replace_host_suffix(domain_suffix)
        except StoreError as exc:
            return {"ok": False, "error": f"update failed: {exc}"}

        logger.info("replaced hosts under %s, %d rows updated", domain_suffix, rows)
        return {"ok": True, "message": "replace complete", "rows_affected": rows}

    def list_connections(
        self,
        start_date: Optional[int] = None,
        end_date: Optional[int] = None,
        **filters: Any,
    ) -> Dict[str, Any]:
        return self.pipeline.primary.list_connections(start_time=start_date, end_time=end_date, **filters)

    def flush_now(self) -> Dict[str, Any]:
        return self.pipeline.flusher.flush_once().to_dict()

    def _register_tools(self) -> None:
        @self.mcp.tool()
        async def merge_connections(start_date: int, end_date: int, interval: int) -> Dict[str, Any]:
            """Merge records started in [start_date, end_date] (Unix seconds) into interval-minute buckets."""
            return await self.merge_connections(start_date, end_date, interval)

        @self.mcp.tool()
        def replace_host(domain_suffix: str) -> Dict[str, Any]:
            """Collapse stored hosts ending in .domain_suffix to domain_suffix."""
            return self.replace_host(domain_suffix)

        @self.mcp.tool()
        def list_connections(
            host: Optional[str] = None,
            source_ip: Optional[str] = None,
            start_date: Optional[int] = None,
            end_date: Optional[int] = None,
            chain: Optional[str] = None,
            sort_by: Optional[str] = None,
            sort_order: str = "asc",
            page: int = 1,
            page_size: int = 20,
        ) -> Dict[str, Any]:
            """Page through stored connections. sort_by: upload, download, start, host or sourceIP."""
            return self.list_connections(
                host=host,
                source_ip=source_ip,
                start_date=start_date,
                end_date=end_date,
                chain=chain,
                sort_by=sort_by,
                sort_order=sort_order,
                page=page,
                page_size=page_size,
            )

        @self.mcp.tool()
        def host_summary(
            limit: int = 10,
            start_date: Optional[int] = None,
            end_date: Optional[int] = None,
        ) -> List[Dict[str, Any]]:
            return self.pipeline.primary.host_summary(limit=limit, start_time=start_date, end_time=end_date)

        @self.mcp.tool()
        def traffic_summary(
            granularity: str = "day",
            host: Optional[str] = None,
            start_date: Optional[int] = None,
            end_date: Optional[int] = None,
        ) -> List[Dict[str, Any]]:
            return self.pipeline.primary.traffic_summary(
                granularity=granularity, host=host, start_time=start_date, end_time=end_date
            )

        @self.mcp.tool()
        def list_hosts() -> List[str]:
            return self.pipeline.primary.hosts()

        @self.mcp.tool()
        def list_chains() -> List[str]:
            return self.pipeline.primary.chains()

        @self.mcp.tool()
        def pipeline_status() -> Dict[str, Any]:
            return self.pipeline.status()

        @self.mcp.tool()
        async def flush_now() -> Dict[str, Any]:
            return await asyncio.to_thread(self.flush_now)

    async def run_async(self, transport: str = "stdio") -> None:
        async with self.pipeline.running():
            if transport == "sse":
                await self.mcp.run_sse_async()
            elif transport == "streamable-http":
                await self.mcp.run_streamable_http_async()
            else:
                await self.mcp.run_stdio_async()

    def run(self, transport: str = "stdio") -> None:
        asyncio.run(self.run_async(transport))
