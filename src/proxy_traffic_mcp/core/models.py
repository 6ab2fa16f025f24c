from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from .errors import SourceError


# RFC 3339 fractions from Go can carry nanoseconds, datetime keeps microseconds.
_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_start_time(value: Any) -> int:
    """
    Convert a source start timestamp to Unix seconds.

    Accepts RFC 3339 strings (with Z or an offset, any fraction length)
    and plain numbers.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return int(value)
        except (OverflowError, ValueError) as exc:
            raise SourceError(f"invalid start time {value!r}") from exc
    if not isinstance(value, str) or not value:
        raise SourceError(f"invalid start time {value!r}")

    text = _FRACTION.sub(r"\1", value.strip())
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    except (OverflowError, ValueError) as exc:
        raise SourceError(f"invalid start time {value!r}") from exc


@dataclass
class RawConnection:
    """
    One entry of the source /connections payload.

    Only the fields the pipeline consumes are typed. Everything else in the
    metadata block is kept in `extra` untouched.

    Fields:
      host
        Destination name, may be empty for plain IP connections.

      remote_destination
        Fallback destination string, used when host is empty.

      upload, download
        Cumulative byte counters since the connection started.
        They are totals, never deltas.

      chains
        Proxy chain hop names as reported by the source.
    """

    id: str
    source_ip: str
    host: str
    remote_destination: str
    upload: int
    download: int
    start: int
    chains: List[str] = field(default_factory=list)
    rule: str = ""
    rule_payload: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RawConnection":
        if not isinstance(d, dict):
            raise SourceError(f"connection entry is not an object: {type(d).__name__}")

        meta = d.get("metadata") or {}
        if not isinstance(meta, dict):
            raise SourceError("connection metadata is not an object")

        try:
            conn_id = str(d["id"])
            upload = int(d.get("upload", 0))
            download = int(d.get("download", 0))
        except (KeyError, TypeError, ValueError, OverflowError) as exc:
            raise SourceError(f"malformed connection entry: {exc}") from exc

        chains = d.get("chains") or []
        if not isinstance(chains, list):
            raise SourceError(f"chains for {conn_id} is not a list")

        known = {"sourceIP", "host", "remoteDestination"}
        return cls(
            id=conn_id,
            source_ip=str(meta.get("sourceIP") or ""),
            host=str(meta.get("host") or ""),
            remote_destination=str(meta.get("remoteDestination") or ""),
            upload=upload,
            download=download,
            start=parse_start_time(d.get("start")),
            chains=[str(c) for c in chains],
            rule=str(d.get("rule") or ""),
            rule_payload=str(d.get("rulePayload") or ""),
            extra={k: v for k, v in meta.items() if k not in known},
        )

    def last_chain(self) -> str:
        """
        The exit hop. Only the last element of the chain is recorded.
        """
        return self.chains[-1] if self.chains else ""


@dataclass
class Snapshot:
    """
    Full point in time listing of open connections.
    """

    connections: List[RawConnection]
    upload_total: int = 0
    download_total: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "Snapshot":
        if not isinstance(payload, dict):
            raise SourceError("snapshot payload is not an object")

        entries = payload.get("connections")
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise SourceError("snapshot connections is not a list")

        try:
            upload_total = int(payload.get("uploadTotal", 0))
            download_total = int(payload.get("downloadTotal", 0))
        except (TypeError, ValueError, OverflowError) as exc:
            raise SourceError(f"malformed snapshot totals: {exc}") from exc

        return cls(
            connections=[RawConnection.from_dict(e) for e in entries],
            upload_total=upload_total,
            download_total=download_total,
        )


@dataclass
class ConnectionRecord:
    """
    Normalized connection record that flows through cache and stores.

    Fields:
      id
        Opaque identifier assigned by the source, stable for the lifetime
        of the connection. Merged records get a fresh uuid.

      source_address
        Originating address. Display and filter only.

      host
        Normalized destination name. Never empty in the primary store.

      upload_bytes, download_bytes
        Cumulative totals. A newer observation overwrites an older one.

      started_at
        Unix seconds when the connection was established.

      chain
        Last hop of the proxy chain.
    """

    id: str
    source_address: str
    host: str
    upload_bytes: int
    download_bytes: int
    started_at: int
    chain: str = ""

    @classmethod
    def from_raw(cls, raw: RawConnection) -> "ConnectionRecord":
        return cls(
            id=raw.id,
            source_address=raw.source_ip,
            host=raw.host,
            upload_bytes=raw.upload,
            download_bytes=raw.download,
            started_at=raw.start,
            chain=raw.last_chain(),
        )


@dataclass
class ArchiveRecord:
    """
    A ConnectionRecord copied into the archive store.

    The archive is append only. The same id can appear once per archival run.
    """

    record: ConnectionRecord
    archived_at: int
