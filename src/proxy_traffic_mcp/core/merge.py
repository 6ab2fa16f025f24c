from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import InvalidMergeRequest, MergeError, StoreError
from .models import ConnectionRecord
from .store import SQLITE_MAX_INTEGER, ArchiveStore, PrimaryStore

logger = logging.getLogger(__name__)


def bucket_floor(started_at: int, interval_minutes: int) -> int:
    width = int(interval_minutes) * 60
    return started_at - (started_at % width)


@dataclass
class Bucket:
    """
    Running aggregate for one (host, bucket floor) group.

    representative
      Member whose source_address and chain the merged record inherits.
      The latest started_at wins, ties go to the greatest id, so the choice
      does not depend on row order.
    """

    host: str
    floor: int
    upload_bytes: int = 0
    download_bytes: int = 0
    members: int = 0
    representative: Optional[ConnectionRecord] = None

    def add(self, r: ConnectionRecord) -> None:
        self.upload_bytes += r.upload_bytes
        self.download_bytes += r.download_bytes
        self.members += 1
        rep = self.representative
        if rep is None or (r.started_at, r.id) > (rep.started_at, rep.id):
            self.representative = r

    def to_record(self, record_id: str) -> ConnectionRecord:
        rep = self.representative
        return ConnectionRecord(
            id=record_id,
            source_address=rep.source_address if rep else "",
            host=self.host,
            upload_bytes=self.upload_bytes,
            download_bytes=self.download_bytes,
            started_at=self.floor,
            chain=rep.chain if rep else "",
        )


def group_records(records: List[ConnectionRecord], interval_minutes: int) -> List[Bucket]:
    """
    Group by (host, floor(started_at, interval)) and sum the totals exactly.

    Buckets come back ordered by (floor, host).
    """
    groups: Dict[Tuple[str, int], Bucket] = {}

    for r in records:
        key = (r.host, bucket_floor(r.started_at, interval_minutes))
        b = groups.get(key)
        if b is None:
            b = Bucket(host=key[0], floor=key[1])
            groups[key] = b
        b.add(r)

    return [groups[k] for k in sorted(groups, key=lambda k: (k[1], k[0]))]


@dataclass
class MergeResult:
    selected: int = 0
    groups: int = 0
    archived: int = 0
    inserted_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected": self.selected,
            "groups": self.groups,
            "archived": self.archived,
            "inserted_ids": list(self.inserted_ids),
        }


class MergeArchiveEngine:
    """
    Rolls primary store records in a time window up into coarser buckets.

    Originals are copied into the archive store and deleted from the primary
    store, and one new record per bucket is written back with a fresh id.

    Commit order:
      primary first, archive only after the primary commit succeeded.
      Any earlier failure rolls back both. The two databases cannot commit
      atomically together, so a crash between the two commits leaves the
      primary side merged without its archive copies. That window is accepted.

    Invocations are serialised by an internal lock. Overlapping concurrent
    merges would otherwise double archive or double delete.
    """

    def __init__(
        self,
        primary: PrimaryStore,
        archive: ArchiveStore,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.primary = primary
        self.archive = archive
        self.clock = clock
        self.id_factory = id_factory
        self._lock = threading.Lock()

    @staticmethod
    def validate(start_time: Any, end_time: Any, interval_minutes: Any) -> Tuple[int, int, int]:
        values = []
        for name, v in (("start_time", start_time), ("end_time", end_time), ("interval_minutes", interval_minutes)):
            if isinstance(v, bool) or not isinstance(v, int):
                raise InvalidMergeRequest(f"{name} must be an integer, got {v!r}")
            if v > SQLITE_MAX_INTEGER:
                raise InvalidMergeRequest(f"{name} is out of range, got {v}")
            values.append(v)
        start, end, interval = values

        if start < 0:
            raise InvalidMergeRequest("start_time must not be negative")
        if start > end:
            raise InvalidMergeRequest("start_time must not be after end_time")
        if interval <= 0:
            raise InvalidMergeRequest("interval_minutes must be positive")
        return start, end, interval

    def merge(self, start_time: int, end_time: int, interval_minutes: int) -> MergeResult:
        start, end, interval = self.validate(start_time, end_time, interval_minutes)

        with self._lock:
            try:
                return self._merge_locked(start, end, interval)
            except StoreError as exc:
                logger.error("merge of [%s, %s] failed: %s", start, end, exc)
                raise MergeError(str(exc)) from exc

    def _merge_locked(self, start: int, end: int, interval: int) -> MergeResult:
        result = MergeResult()

        # Nesting order gives the commit order: the inner primary block
        # commits first and the archive commits on the way out.
        with self.archive.transaction() as archive_conn:
            with self.primary.transaction() as primary_conn:
                originals = self.primary.fetch_range(primary_conn, start, end)
                if not originals:
                    logger.info("merge of [%s, %s]: nothing to merge", start, end)
                    return result

                buckets = group_records(originals, interval)
                merged = [b.to_record(self.id_factory()) for b in buckets]
                archived_at = int(self.clock())

                result.archived = self.archive.append_many(archive_conn, originals, archived_at)
                self.primary.delete_ids(primary_conn, (r.id for r in originals))
                self.primary.insert_many(primary_conn, merged)

                result.selected = len(originals)
                result.groups = len(buckets)
                result.inserted_ids = [r.id for r in merged]

        logger.info(
            "merged %d records into %d buckets of %d minutes, archived %d",
            result.selected, result.groups, interval, result.archived,
        )
        return result
