"""
Runtime settings.

Precedence: command line > environment > .env file > defaults. Everything
can be set through environment variables so the server runs unchanged under
an MCP host. A .env file (python-dotenv) only fills variables that are unset.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, List, Mapping, Optional, Union

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

TRANSPORTS = ("stdio", "sse", "streamable-http")


def _positive_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "")
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number, using %s", key, raw, default)
        return default
    if value <= 0:
        logger.warning("%s=%r must be positive, using %s", key, raw, default)
        return default
    return value


def load_env_file(path: Optional[Union[str, os.PathLike]] = None) -> bool:
    """
    Load a .env file into os.environ without overriding existing variables.

    With no path, the nearest .env from the working directory upwards is used.
    Returns False when no file was found.
    """
    if path is None:
        path = find_dotenv(usecwd=True)
    if not path or not os.path.isfile(path):
        logger.info("no .env file found, using command line, environment and defaults")
        return False
    load_dotenv(path, override=False)
    logger.debug("loaded settings from %s", path)
    return True


def parse_suffixes(raw: str) -> List[str]:
    """
    Comma separated allow-list. Order is kept, blanks are dropped.
    """
    return [s.strip() for s in raw.split(",") if s.strip()]


@dataclass
class Settings:
    source_url: str = "http://127.0.0.1:9090/connections"
    source_token: str = ""
    source_timeout_seconds: float = 5.0
    database_path: str = "./clash_traffic.db"
    archive_database_path: str = "./clash_traffic_archive.db"
    poll_interval_seconds: float = 1.0
    flush_interval_seconds: float = 180.0
    host_suffix_whitelist: List[str] = field(default_factory=list)
    log_level: str = "INFO"
    transport: str = "stdio"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        d = cls()

        transport = env.get("MCP_TRANSPORT", d.transport)
        if transport not in TRANSPORTS:
            logger.warning("MCP_TRANSPORT=%r is not one of %s, using stdio", transport, TRANSPORTS)
            transport = d.transport

        return cls(
            source_url=env.get("CLASH_API_URL") or d.source_url,
            source_token=env.get("CLASH_API_TOKEN", d.source_token),
            source_timeout_seconds=_positive_float(env, "CLASH_API_TIMEOUT_SECONDS", d.source_timeout_seconds),
            database_path=env.get("DATABASE_PATH") or d.database_path,
            archive_database_path=env.get("ARCHIVE_DATABASE_PATH") or d.archive_database_path,
            poll_interval_seconds=_positive_float(env, "API_SYNC_INTERVAL_SECONDS", d.poll_interval_seconds),
            flush_interval_seconds=60.0 * _positive_float(
                env, "DB_WRITE_INTERVAL_MINUTES", d.flush_interval_seconds / 60.0
            ),
            host_suffix_whitelist=parse_suffixes(env.get("HOST_SUFFIX_WHITELIST", "")),
            log_level=(env.get("LOG_LEVEL") or d.log_level).upper(),
            transport=transport,
        )

    def with_overrides(self, **overrides: Any) -> "Settings":
        """
        Apply command line values. None means the flag was not given.
        """
        given = {k: v for k, v in overrides.items() if v is not None and v != ""}
        if "flush_interval_minutes" in given:
            given["flush_interval_seconds"] = 60.0 * float(given.pop("flush_interval_minutes"))
        return replace(self, **given)
