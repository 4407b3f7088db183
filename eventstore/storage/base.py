from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ..model import EventRecord, Filter


@dataclass
class InsertResult:
    """Outcome of a single routed insert."""

    inserted: bool
    replaced: list[str] = field(default_factory=list)


class Partition(ABC):
    """Physical storage behind one range of the logical event table.

    Keys passed as ``lo``/``hi`` bound ``created_at`` as ``[lo, hi)``;
    ``None`` leaves that side unbounded.
    """

    name: str
    local: bool = True

    @abstractmethod
    def insert(self, event: EventRecord) -> InsertResult:
        """Insert one event, skipping it if the id is already stored."""

    @abstractmethod
    def insert_many(self, events: list[EventRecord]) -> int:
        """Duplicate-tolerant bulk insert; return the number of new rows."""

    @abstractmethod
    def select(
        self,
        flt: Filter,
        ids: set[str] | None = None,
        *,
        after: tuple[int, str] | None = None,
        page: int | None = None,
    ) -> list[EventRecord]:
        """Return rows matching ``flt`` (restricted to ``ids`` when given).

        Rows come newest first, ties by id. ``after`` resumes past a
        ``(created_at, id)`` row of an earlier page and ``page`` caps the
        rows returned on top of ``flt.limit``.
        """

    @abstractmethod
    def count(self, lo: int | None = None, hi: int | None = None) -> int:
        """Count rows with key in ``[lo, hi)``."""

    @abstractmethod
    def bounds(self, lo: int | None = None, hi: int | None = None) -> tuple[int | None, int | None]:
        """Return the min and max key of rows in ``[lo, hi)``."""

    @abstractmethod
    def fetch(
        self,
        lo: int | None,
        hi: int | None,
        after: tuple[int, str] | None,
        limit: int,
    ) -> list[EventRecord]:
        """Return up to ``limit`` rows in key order after ``(created_at, id)``."""

    @abstractmethod
    def delete_range(self, lo: int | None, hi: int | None) -> int:
        """Delete every row with key in ``[lo, hi)``; return the count."""

    @abstractmethod
    def delete(self, event_id: str) -> EventRecord | None:
        """Delete one row by id and return it, or ``None`` if absent."""

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass
