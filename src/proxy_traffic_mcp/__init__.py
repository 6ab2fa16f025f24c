"""
proxy_traffic_mcp

MCP server that records proxy connection traffic.

Core ideas
1. A poller keeps the latest state of every open proxy connection in memory
2. A flusher writes that state behind to SQLite on a coarse schedule
3. A merge engine rolls old records up into time buckets and archives the originals
"""

__all__ = ["core", "cli"]
