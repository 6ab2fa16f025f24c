from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from .models import RawConnection, Snapshot


def collapse_host(host: str, suffixes: Sequence[str]) -> str:
    """
    Replace host with the first suffix it ends with.

    Suffixes are scanned in configured order and the first match wins, so
    v22.lscache6.googlevideo.com collapses to googlevideo.com when that
    suffix is listed. The result is a fixed point: a suffix ends with itself.
    """
    for suffix in suffixes:
        if suffix and host.endswith(suffix):
            return suffix
    return host


def normalize_connection(conn: RawConnection, suffixes: Sequence[str]) -> RawConnection:
    host = conn.host or conn.remote_destination
    host = collapse_host(host, suffixes)
    if host == conn.host:
        return conn
    return replace(conn, host=host)


def normalize_snapshot(snapshot: Snapshot, suffixes: Sequence[str]) -> Snapshot:
    """
    Clean a raw snapshot. Pure, the input snapshot is not modified.

    Rules:
      1. An empty host takes the remote destination string.
      2. The host suffix allow-list collapses subdomains to one logical host.
    """
    return replace(
        snapshot,
        connections=[normalize_connection(c, suffixes) for c in snapshot.connections],
    )
