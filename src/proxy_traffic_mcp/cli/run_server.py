from __future__ import annotations

import argparse
from typing import List, Optional

from proxy_traffic_mcp.core.config import TRANSPORTS, Settings, load_env_file
from proxy_traffic_mcp.core.logs import init_logging
from proxy_traffic_mcp.core.server import TrafficMCPServer


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="proxy-traffic-mcp",
        description="Record proxy connection traffic into SQLite and serve it over MCP.",
    )
    p.add_argument("-url", "--url", dest="source_url", help="proxy controller /connections URL")
    p.add_argument("-t", "--token", dest="source_token", help="controller secret (Bearer token)")
    p.add_argument("-db", "--db", dest="database_path", help="primary database file")
    p.add_argument("-adb", "--archive-db", dest="archive_database_path", help="archive database file")
    p.add_argument("-i", "--interval", dest="flush_interval_minutes", type=float, help="database write interval in minutes")
    p.add_argument("--timeout", dest="source_timeout_seconds", type=float, help="source request timeout in seconds")
    p.add_argument("--transport", choices=TRANSPORTS, help="MCP transport")
    p.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING or ERROR")
    return p


def main(argv: Optional[List[str]] = None) -> None:
    """
    Settings come from flags, then environment variables, then a .env file
    in the working directory, then defaults.

    Example:
      export CLASH_API_URL=http://192.168.1.1:9090/connections
      export CLASH_API_TOKEN=secret
      export HOST_SUFFIX_WHITELIST=googlevideo.com,steamcontent.com
      python -m proxy_traffic_mcp.cli.run_server -i 3
    """
    args = build_parser().parse_args(argv)
    overrides = vars(args)
    if overrides.get("flush_interval_minutes") is not None and overrides["flush_interval_minutes"] <= 0:
        overrides["flush_interval_minutes"] = None

    load_env_file()
    settings = Settings.from_env().with_overrides(**overrides)
    logger = init_logging(settings.log_level)
    logger.info(
        "polling %s every %ss, writing to %s every %ss",
        settings.source_url,
        settings.poll_interval_seconds,
        settings.database_path,
        settings.flush_interval_seconds,
    )

    server = TrafficMCPServer.from_settings(settings)
    server.run(settings.transport)


if __name__ == "__main__":
    main()
