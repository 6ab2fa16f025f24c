from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .errors import StoreError
from .models import ArchiveRecord, ConnectionRecord

_COLUMNS = "id, sourceIP, host, upload, download, start, chain"

SQLITE_MAX_INTEGER = 2**63 - 1


def _row_to_record(row: Sequence[Any]) -> ConnectionRecord:
    return ConnectionRecord(
        id=row[0],
        source_address=row[1] or "",
        host=row[2] or "",
        upload_bytes=int(row[3] or 0),
        download_bytes=int(row[4] or 0),
        started_at=int(row[5] or 0),
        chain=row[6] or "",
    )


def _record_params(r: ConnectionRecord) -> Tuple[Any, ...]:
    return (r.id, r.source_address, r.host, r.upload_bytes, r.download_bytes, r.started_at, r.chain)


class SqliteStore:
    """
    One SQLite database file with single-database transactions.

    Every operation opens its own connection, so a store object can be used
    from the event loop, worker threads and a signal handler at the same time.
    Connections run in autocommit mode and transactions are explicit
    BEGIN IMMEDIATE ... COMMIT blocks, which take the write lock up front.

    Journal mode is forced to DELETE. WAL has caused lock contention with
    concurrent writers on this workload.
    """

    SCHEMA = ""

    def __init__(self, path: Union[str, Path], busy_timeout_seconds: float = 30.0):
        self.path = str(path)
        self.busy_timeout_seconds = float(busy_timeout_seconds)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=self.busy_timeout_seconds, isolation_level=None)

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=DELETE")
            conn.executescript(self.SCHEMA)
        except sqlite3.Error as exc:
            raise StoreError(f"initializing {self.path} failed: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection inside BEGIN IMMEDIATE.

        Commits when the block exits normally. Any exception rolls back and
        propagates. sqlite3 errors and integers outside the 64 bit
        range sqlite can bind are raised as StoreError.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except (sqlite3.Error, OverflowError) as exc:
            raise StoreError(f"transaction on {self.path} failed: {exc}") from exc
        finally:
            conn.close()

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[Tuple[Any, ...]]:
        conn = self._connect()
        try:
            return conn.execute(sql, tuple(params)).fetchall()
        except (sqlite3.Error, OverflowError) as exc:
            raise StoreError(f"query on {self.path} failed: {exc}") from exc
        finally:
            conn.close()


class PrimaryStore(SqliteStore):
    """
    The connections table: one row per connection id, or per merged bucket.
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS connections (
        "id" TEXT NOT NULL PRIMARY KEY,
        "sourceIP" TEXT,
        "host" TEXT,
        "upload" INTEGER,
        "download" INTEGER,
        "start" INTEGER,
        "chain" TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_connections_start ON connections(start);
    """

    # Only the totals change on conflict. host, sourceIP, start and chain
    # stay as they were first inserted.
    UPSERT_SQL = f"""
    INSERT INTO connections ({_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        upload = excluded.upload,
        download = excluded.download
    """

    def upsert_many(self, records: Iterable[ConnectionRecord]) -> Tuple[int, int]:
        """
        Insert or overwrite totals for a batch in a single transaction.

        Records with an empty host are skipped. Returns (written, skipped).
        On any failure the whole batch is rolled back and StoreError is raised.
        """
        written = 0
        skipped = 0
        with self.transaction() as conn:
            for r in records:
                if not r.host:
                    skipped += 1
                    continue
                try:
                    conn.execute(self.UPSERT_SQL, _record_params(r))
                except (sqlite3.Error, OverflowError) as exc:
                    raise StoreError(f"upsert failed for id {r.id}: {exc}") from exc
                written += 1
        return written, skipped

    def fetch_range(self, conn: sqlite3.Connection, start_time: int, end_time: int) -> List[ConnectionRecord]:
        """
        Rows with start in [start_time, end_time], read on an open transaction.
        """
        rows = conn.execute(
            f"SELECT {_COLUMNS} FROM connections WHERE start >= ? AND start <= ? ORDER BY start, id",
            (int(start_time), int(end_time)),
        ).fetchall()
        return [_row_to_record(row) for row in rows]

    def delete_ids(self, conn: sqlite3.Connection, ids: Iterable[str]) -> int:
        n = 0
        for record_id in ids:
            n += conn.execute("DELETE FROM connections WHERE id = ?", (record_id,)).rowcount
        return n

    def insert_many(self, conn: sqlite3.Connection, records: Iterable[ConnectionRecord]) -> int:
        n = 0
        for r in records:
            conn.execute(f"INSERT INTO connections ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)", _record_params(r))
            n += 1
        return n

    def get(self, record_id: str) -> Optional[ConnectionRecord]:
        rows = self._query(f"SELECT {_COLUMNS} FROM connections WHERE id = ?", (record_id,))
        return _row_to_record(rows[0]) if rows else None

    def all(self) -> List[ConnectionRecord]:
        rows = self._query(f"SELECT {_COLUMNS} FROM connections ORDER BY start, id")
        return [_row_to_record(row) for row in rows]

    def count(self) -> int:
        return int(self._query("SELECT COUNT(*) FROM connections")[0][0])

    def vacuum(self) -> None:
        """
        Reclaim space freed by deletes. Advisory, runs outside any transaction.
        """
        conn = self._connect()
        try:
            conn.execute("VACUUM")
        except sqlite3.Error as exc:
            raise StoreError(f"vacuum on {self.path} failed: {exc}") from exc
        finally:
            conn.close()

    def replace_host_suffix(self, suffix: str) -> int:
        """
        Rewrite hosts equal to suffix or ending in .suffix to the suffix itself.

        Applies the allow-list collapse retroactively to stored rows.
        """
        if not suffix:
            raise ValueError("domain suffix must not be empty")
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE connections SET host = ? WHERE host LIKE ? OR host = ?",
                (suffix, "%." + suffix, suffix),
            )
            return cur.rowcount

    def host_summary(
        self,
        limit: int = 10,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Hosts ranked by upload plus download.
        """
        sql = (
            "SELECT host, SUM(upload), SUM(download), SUM(upload) + SUM(download) AS total "
            "FROM connections WHERE host != ''"
        )
        args: List[Any] = []
        if start_time is not None:
            sql += " AND start >= ?"
            args.append(int(start_time))
        if end_time is not None:
            sql += " AND start <= ?"
            args.append(int(end_time))
        sql += " GROUP BY host ORDER BY total DESC LIMIT ?"
        args.append(int(limit))

        return [
            {"host": h, "upload": int(u or 0), "download": int(d or 0), "total": int(t or 0)}
            for h, u, d, t in self._query(sql, args)
        ]

    def traffic_summary(
        self,
        granularity: str = "day",
        host: Optional[str] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Traffic totals per UTC hour or day.

        Unknown granularity falls back to day.
        """
        fmt = "%Y-%m-%d %H:00:00" if granularity == "hour" else "%Y-%m-%d 00:00:00"
        sql = (
            "SELECT strftime(?, datetime(start, 'unixepoch')) AS time, SUM(upload), SUM(download) "
            "FROM connections WHERE 1=1"
        )
        args: List[Any] = [fmt]
        if host:
            sql += " AND host = ?"
            args.append(host)
        if start_time is not None:
            sql += " AND start >= ?"
            args.append(int(start_time))
        if end_time is not None:
            sql += " AND start <= ?"
            args.append(int(end_time))
        sql += " GROUP BY time ORDER BY time"

        return [
            {"time": t, "upload": int(u or 0), "download": int(d or 0)}
            for t, u, d in self._query(sql, args)
        ]

    # Sort keys a caller may ask for. Dashboard style names map to columns.
    SORT_COLUMNS = {
        "upload": "upload",
        "download": "download",
        "start": "start",
        "host": "host",
        "sourceIP": "sourceIP",
        "metadata.host": "host",
        "metadata.sourceIP": "sourceIP",
    }

    def list_connections(
        self,
        host: Optional[str] = None,
        source_ip: Optional[str] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        chain: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_order: str = "asc",
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        """
        One page of stored connections.

        Filters:
          host, source_ip
            Substring match.

          start_time, end_time
            Inclusive bounds on start. Zero or None means unbounded.

          chain
            Exact match on the recorded exit hop.

        sort_by must be one of SORT_COLUMNS, anything else falls back to
        newest first. page < 1 becomes 1 and page_size <= 0 becomes 20.
        """
        page = max(int(page), 1)
        page_size = int(page_size) if int(page_size) > 0 else 20

        where = " WHERE 1=1"
        args: List[Any] = []
        if host:
            where += " AND host LIKE ?"
            args.append(f"%{host}%")
        if source_ip:
            where += " AND sourceIP LIKE ?"
            args.append(f"%{source_ip}%")
        if start_time:
            where += " AND start >= ?"
            args.append(int(start_time))
        if end_time:
            where += " AND start <= ?"
            args.append(int(end_time))
        if chain:
            where += " AND chain = ?"
            args.append(chain)

        column = self.SORT_COLUMNS.get(sort_by or "")
        if column:
            order = "DESC" if (sort_order or "").lower() == "desc" else "ASC"
            order_by = f" ORDER BY {column} {order}, id"
        else:
            order_by = " ORDER BY start DESC, id"

        total = int(self._query("SELECT COUNT(*) FROM connections" + where, args)[0][0])
        rows = self._query(
            f"SELECT {_COLUMNS} FROM connections{where}{order_by} LIMIT ? OFFSET ?",
            args + [page_size, (page - 1) * page_size],
        )
        return {
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": (total + page_size - 1) // page_size,
            "data": [asdict(_row_to_record(row)) for row in rows],
        }

    def hosts(self) -> List[str]:
        return [r[0] for r in self._query("SELECT DISTINCT host FROM connections WHERE host != '' ORDER BY host")]

    def chains(self) -> List[str]:
        return [r[0] for r in self._query("SELECT DISTINCT chain FROM connections WHERE chain != '' ORDER BY chain")]


class ArchiveStore(SqliteStore):
    """
    Append only copy of every record a merge replaced.

    No primary key on purpose: merging overlapping ranges twice archives the
    same id twice, and rows are never updated or deleted.
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS connections_archive (
        "id" TEXT NOT NULL,
        "sourceIP" TEXT,
        "host" TEXT,
        "upload" INTEGER,
        "download" INTEGER,
        "start" INTEGER,
        "chain" TEXT,
        "archived_at" INTEGER
    );
    """

    def append_many(self, conn: sqlite3.Connection, records: Iterable[ConnectionRecord], archived_at: int) -> int:
        n = 0
        for r in records:
            conn.execute(
                f"INSERT INTO connections_archive ({_COLUMNS}, archived_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                _record_params(r) + (int(archived_at),),
            )
            n += 1
        return n

    def all(self) -> List[ArchiveRecord]:
        rows = self._query(f"SELECT {_COLUMNS}, archived_at FROM connections_archive ORDER BY rowid")
        return [ArchiveRecord(record=_row_to_record(row), archived_at=int(row[7])) for row in rows]

    def count(self) -> int:
        return int(self._query("SELECT COUNT(*) FROM connections_archive")[0][0])
