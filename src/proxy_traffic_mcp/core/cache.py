from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional

from .models import ConnectionRecord


class LiveCache:
    """
    In memory write-behind buffer holding the latest record per connection id.

    Why a dict swap:
      put is an unconditional overwrite, so cumulative counters are never summed.
      drain_all replaces the whole map under the lock. A put that arrives after
      the swap lands in the fresh map and is picked up by the next drain.

    Important:
      The lock is re-entrant. The shutdown flush can run from a signal handler
      on the main thread while that same thread was inside put.
    """

    def __init__(self):
        self._entries: Dict[str, ConnectionRecord] = {}
        self._lock = threading.RLock()

    def put(self, record_id: str, record: ConnectionRecord) -> None:
        with self._lock:
            self._entries[record_id] = record

    def put_many(self, records: Iterable[ConnectionRecord]) -> int:
        """
        Overwrite every record in one lock acquisition. Returns how many were written.
        """
        n = 0
        with self._lock:
            for r in records:
                self._entries[r.id] = r
                n += 1
        return n

    def drain_all(self) -> List[ConnectionRecord]:
        """
        Atomically take every held record and leave the cache empty.
        """
        with self._lock:
            drained = self._entries
            self._entries = {}
        return list(drained.values())

    def snapshot(self) -> List[ConnectionRecord]:
        with self._lock:
            return list(self._entries.values())

    def get(self, record_id: str) -> Optional[ConnectionRecord]:
        with self._lock:
            return self._entries.get(record_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
