"""SQLite-backed partition used for the hot tier and by storage nodes."""

from __future__ import annotations

import json
import os
import sqlite3
import threading

from ..model import EventRecord, Filter, is_replaceable
from .base import InsertResult, Partition

_COLUMNS = (
    "event_id, pubkey, kind, created_at, content, tags, sig, "
    "first_seen, deleted_at, expires_at, dedup"
)

_REPLACEABLE_PREDICATE = (
    "kind = 0 OR kind = 3 OR kind = 41"
    " OR (kind >= 10000 AND kind < 20000)"
    " OR (kind >= 30000 AND kind < 40000)"
)


def _range_clause(lo: int | None, hi: int | None) -> tuple[list[str], list]:
    clauses, params = [], []
    if lo is not None:
        clauses.append("created_at >= ?")
        params.append(lo)
    if hi is not None:
        clauses.append("created_at < ?")
        params.append(hi)
    return clauses, params


def _in_clause(column: str, values) -> tuple[str, list]:
    values = list(values)
    marks = ", ".join("?" for _ in values)
    return f"{column} IN ({marks})", values


def _row_to_event(row) -> EventRecord:
    return EventRecord(
        id=row[0],
        pubkey=row[1],
        kind=row[2],
        created_at=row[3],
        content=row[4],
        tags=json.loads(row[5]) if row[5] else [],
        sig=row[6],
        first_seen=row[7],
        deleted_at=row[8],
        expires_at=row[9],
        dedup=row[10],
    )


def _event_params(event: EventRecord) -> tuple:
    return (
        event.id,
        event.pubkey,
        event.kind,
        event.created_at,
        event.content,
        event.tags_json(),
        event.sig,
        event.first_seen,
        event.deleted_at,
        event.expires_at,
        event.dedup,
    )


class SQLitePartition(Partition):
    """Event table stored in one SQLite database file.

    ``enforce_replaceable`` enables the latest-wins rule for replaceable
    events; only the hot tier turns it on.
    """

    def __init__(
        self,
        path: str,
        *,
        name: str = "hot",
        table: str = "events",
        enforce_replaceable: bool = False,
    ) -> None:
        self.name = name
        self.path = path
        self.table = table
        self.enforce_replaceable = enforce_replaceable
        if path != ":memory:":
            directory = os.path.dirname(os.path.abspath(path))
            os.makedirs(directory, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_schema()

    def _create_schema(self) -> None:
        t = self.table
        with self._lock, self._conn:
            self._conn.execute(
                f"""CREATE TABLE IF NOT EXISTS {t} (
                    event_id   TEXT    NOT NULL,
                    pubkey     TEXT    NOT NULL,
                    kind       INTEGER NOT NULL,
                    created_at INTEGER NOT NULL,
                    content    TEXT    NOT NULL,
                    tags       TEXT,
                    sig        TEXT    NOT NULL,
                    first_seen REAL,
                    deleted_at REAL,
                    expires_at INTEGER,
                    dedup      TEXT
                )"""
            )
            self._conn.execute(
                f"CREATE UNIQUE INDEX IF NOT EXISTS {t}_event_id_uidx ON {t} (event_id)"
            )
            self._conn.execute(
                f"CREATE INDEX IF NOT EXISTS {t}_created_at_idx ON {t} (created_at, event_id)"
            )
            self._conn.execute(f"CREATE INDEX IF NOT EXISTS {t}_pubkey_idx ON {t} (pubkey)")
            self._conn.execute(f"CREATE INDEX IF NOT EXISTS {t}_kind_idx ON {t} (kind)")
            if self.enforce_replaceable:
                self._conn.execute(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS {t}_replaceable_idx "
                    f"ON {t} (pubkey, kind, dedup) WHERE {_REPLACEABLE_PREDICATE}"
                )

    # writes -------------------------------------------------------------
    def insert(self, event: EventRecord) -> InsertResult:
        t = self.table
        with self._lock, self._conn:
            replaced: list[str] = []
            if self.enforce_replaceable and is_replaceable(event.kind):
                current = self._conn.execute(
                    f"SELECT event_id, created_at FROM {t} "
                    f"WHERE pubkey = ? AND kind = ? AND dedup = ?",
                    (event.pubkey, event.kind, event.dedup),
                ).fetchone()
                if current is not None:
                    if current[0] == event.id or current[1] >= event.created_at:
                        return InsertResult(False)
                    self._conn.execute(f"DELETE FROM {t} WHERE event_id = ?", (current[0],))
                    replaced.append(current[0])
            cur = self._conn.execute(
                f"INSERT OR IGNORE INTO {t} ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _event_params(event),
            )
            return InsertResult(cur.rowcount == 1, replaced)

    def insert_many(self, events: list[EventRecord]) -> int:
        if not events:
            return 0
        with self._lock, self._conn:
            before = self._conn.total_changes
            self._conn.executemany(
                f"INSERT OR IGNORE INTO {self.table} ({_COLUMNS}) "
                f"VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [_event_params(e) for e in events],
            )
            return self._conn.total_changes - before

    def delete_range(self, lo: int | None, hi: int | None) -> int:
        clauses, params = _range_clause(lo, hi)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock, self._conn:
            cur = self._conn.execute(f"DELETE FROM {self.table}{where}", params)
            return cur.rowcount

    def delete(self, event_id: str) -> EventRecord | None:
        with self._lock, self._conn:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM {self.table} WHERE event_id = ?", (event_id,)
            ).fetchone()
            if row is None:
                return None
            self._conn.execute(f"DELETE FROM {self.table} WHERE event_id = ?", (event_id,))
            return _row_to_event(row)

    # reads --------------------------------------------------------------
    def select(
        self,
        flt: Filter,
        ids: set[str] | None = None,
        *,
        after: tuple[int, str] | None = None,
        page: int | None = None,
    ) -> list[EventRecord]:
        lo, hi = flt.key_bounds()
        clauses, params = _range_clause(lo, hi)
        clauses.append("deleted_at IS NULL")
        for column, values in (
            ("event_id", flt.ids),
            ("event_id", ids),
            ("pubkey", flt.authors),
            ("kind", flt.kinds),
        ):
            if values is None:
                continue
            if not values:
                return []
            clause, extra = _in_clause(column, values)
            clauses.append(clause)
            params.extend(extra)
        if after is not None:
            clauses.append("(created_at < ? OR (created_at = ? AND event_id > ?))")
            params.extend([after[0], after[0], after[1]])
        limit = flt.limit
        if page is not None:
            limit = int(page) if limit is None else min(int(limit), int(page))
        sql = (
            f"SELECT {_COLUMNS} FROM {self.table} WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at DESC, event_id"
        )
        if limit is not None and not flt.tags:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        events = [_row_to_event(r) for r in rows]
        if flt.tags:
            events = [e for e in events if flt.matches(e)]
            if limit is not None:
                events = events[: int(limit)]
        return events

    def count(self, lo: int | None = None, hi: int | None = None) -> int:
        clauses, params = _range_clause(lo, hi)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            return self._conn.execute(f"SELECT COUNT(*) FROM {self.table}{where}", params).fetchone()[0]

    def bounds(self, lo: int | None = None, hi: int | None = None) -> tuple[int | None, int | None]:
        clauses, params = _range_clause(lo, hi)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            row = self._conn.execute(
                f"SELECT MIN(created_at), MAX(created_at) FROM {self.table}{where}", params
            ).fetchone()
        return row[0], row[1]

    def fetch(
        self,
        lo: int | None,
        hi: int | None,
        after: tuple[int, str] | None,
        limit: int,
    ) -> list[EventRecord]:
        clauses, params = _range_clause(lo, hi)
        if after is not None:
            clauses.append("(created_at, event_id) > (?, ?)")
            params.extend(after)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM {self.table}{where} "
                "ORDER BY created_at, event_id LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def ping(self) -> bool:
        with self._lock:
            self._conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        with self._lock:
            self._conn.close()
