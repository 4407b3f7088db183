import os
import sqlite3
import threading
from typing import Iterable

from ..model import tag_pairs


class TagIndex:
    """Coordinator-local secondary index from ``(tag, value)`` to event id.

    Entries are written for events while they live in the hot tier and are
    kept when the events are archived, so tag lookups never need to touch a
    remote partition.
    """

    def __init__(self, path: str = ":memory:") -> None:
        if path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        with self._lock, self._conn:
            self._conn.execute(
                """CREATE TABLE IF NOT EXISTS event_tags (
                    event_id  TEXT NOT NULL,
                    tag_name  TEXT NOT NULL,
                    tag_value TEXT NOT NULL,
                    PRIMARY KEY (event_id, tag_name, tag_value)
                )"""
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS event_tags_name_value_idx "
                "ON event_tags (tag_name, tag_value)"
            )

    def upsert(self, event_id: str, tags: Iterable) -> int:
        """Replace all entries of ``event_id`` with those derived from ``tags``."""
        pairs = tag_pairs(tags)
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM event_tags WHERE event_id = ?", (event_id,))
            self._conn.executemany(
                "INSERT OR IGNORE INTO event_tags (event_id, tag_name, tag_value) VALUES (?, ?, ?)",
                [(event_id, name, value) for name, value in pairs],
            )
        return len(pairs)

    def remove(self, event_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM event_tags WHERE event_id = ?", (event_id,))

    def lookup(self, tag_name: str, tag_value: str) -> set[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT event_id FROM event_tags WHERE tag_name = ? AND tag_value = ?",
                (tag_name, tag_value),
            ).fetchall()
        return {r[0] for r in rows}

    def lookup_filter(self, tags: dict[str, list[str]] | None) -> set[str] | None:
        """Resolve a filter's tag conditions to candidate ids.

        Values of one tag name are OR-ed, distinct names are AND-ed. Returns
        ``None`` when the filter has no tag conditions.
        """
        if not tags:
            return None
        result: set[str] | None = None
        for name, values in tags.items():
            matched: set[str] = set()
            for value in values:
                matched |= self.lookup(name, str(value))
            result = matched if result is None else result & matched
            if not result:
                return set()
        return result

    def entries(self, event_id: str) -> list[tuple[str, str]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT tag_name, tag_value FROM event_tags WHERE event_id = ? "
                "ORDER BY tag_name, tag_value",
                (event_id,),
            ).fetchall()
        return [(r[0], r[1]) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
