"""Range-partitioned logical event table spanning local and remote tiers."""

from __future__ import annotations

import logging
import threading
import time
from concurrent import futures
from dataclasses import dataclass, field, replace
from typing import Callable

from ..errors import (
    DuplicateName,
    NoPartition,
    NotFound,
    PartitionUnavailable,
    ProtectedNode,
    RangeOverlap,
)
from ..model import EventRecord, Filter
from ..storage.base import Partition
from ..utils.event_logger import EventLogger
from .ranges import (
    FULL_RANGE,
    KeyRange,
    RangeTable,
    coverage_gaps,
    find_overlaps,
    plan_attach,
    plan_narrow,
)
from .tag_index import TagIndex

logger = logging.getLogger(__name__)

DEFAULT_COPY_BATCH = 5000


@dataclass
class QueryResult:
    events: list[EventRecord]
    visited: list[str]
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.failed)


@dataclass
class NarrowReport:
    lower_bound: int
    extended: str | None
    rows_copied: int
    rows_inserted: int
    rows_deleted: int


@dataclass(frozen=True)
class PartitionInfo:
    name: str
    range: KeyRange
    visible: KeyRange
    local: bool


class PartitionedStore:
    """Routes rows by ``created_at`` and fans queries out over partitions.

    The hot partition is an ordinary routing entry. Rows can remain in the
    hot table below (or above) its owned range after a registration carved
    part of the range away; such residue keeps the hot partition visible to
    queries over that span until it is archived or the hot tier is narrowed.
    """

    def __init__(
        self,
        hot: Partition,
        hot_range: KeyRange = FULL_RANGE,
        *,
        hot_name: str = "hot",
        tag_index: TagIndex | None = None,
        query_timeout: float = 5.0,
        max_workers: int = 16,
        event_logger: EventLogger | None = None,
    ) -> None:
        self.hot_name = hot_name
        self.tag_index = tag_index
        self.query_timeout = query_timeout
        self.event_logger = event_logger
        self._lock = threading.RLock()
        # held by hot-tier writes and for the whole of a narrowing
        self._hot_writes = threading.Lock()
        self._table = RangeTable()
        self._partitions: dict[str, Partition] = {hot_name: hot}
        self._table.add(hot_name, hot_range)
        self._hot_visible = hot_range
        self._executor = futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="partition-query"
        )
        self.refresh_hot_floor()

    @classmethod
    def from_registry(
        cls,
        registry,
        hot: Partition,
        partition_factory: Callable,
        **kwargs,
    ) -> "PartitionedStore":
        """Rebuild routing from the persisted registry."""
        store = cls(hot, registry.hot().range, hot_name=registry.hot_name, **kwargs)
        for node in registry.all():
            if node.name == registry.hot_name:
                continue
            with store._lock:
                store._table.add(node.name, node.range)
                store._partitions[node.name] = partition_factory(node)
        return store

    def _log(self, message: str, level: int = logging.INFO) -> None:
        if self.event_logger:
            self.event_logger.log(message, level)
        else:
            logger.log(level, message)

    # topology -----------------------------------------------------------
    @property
    def hot(self) -> Partition:
        return self._partitions[self.hot_name]

    def partition(self, name: str) -> Partition:
        with self._lock:
            part = self._partitions.get(name)
        if part is None:
            raise NotFound(f"partition {name} is not attached")
        return part

    def range_of(self, name: str) -> KeyRange:
        with self._lock:
            rng = self._table.get(name)
        if rng is None:
            raise NotFound(f"partition {name} is not attached")
        return rng

    def is_attached(self, name: str) -> bool:
        with self._lock:
            return name in self._table

    def ranges(self) -> dict[str, KeyRange]:
        with self._lock:
            return self._table.as_dict()

    def partitions(self) -> list[PartitionInfo]:
        with self._lock:
            return [
                PartitionInfo(
                    name,
                    rng,
                    self._hot_visible if name == self.hot_name else rng,
                    self._partitions[name].local,
                )
                for name, rng in self._table.items()
            ]

    def partition_for(self, key: int) -> str | None:
        with self._lock:
            return self._table.owner(key)

    def coverage_gaps(self) -> list[KeyRange]:
        with self._lock:
            return coverage_gaps([rng for _, rng in self._table.items()])

    def plan_attach(self, name: str, rng: KeyRange) -> tuple[str, KeyRange] | None:
        """Validate an attach without applying it; see ``attach_partition``."""
        with self._lock:
            current = self._table.get(name)
            if current is not None:
                if current == rng:
                    return None
                raise DuplicateName(f"partition {name} is already attached with range {current}")
            return plan_attach(self._table.as_dict(), self.hot_name, rng)

    def attach_partition(
        self, name: str, rng: KeyRange, partition: Partition
    ) -> tuple[str, KeyRange] | None:
        """Route ``rng`` to ``partition``.

        Returns ``(hot, narrowed)`` when the range was carved out of the hot
        partition. Attaching the same name with the same range is a no-op.
        """
        with self._lock:
            if self._table.get(name) == rng:
                return None
            shrink = self.plan_attach(name, rng)
            if shrink is not None:
                self._table.add(shrink[0], shrink[1])
            self._table.add(name, rng)
            self._partitions[name] = partition
            self.refresh_hot_floor()
        self._log(f"Attached partition {name} for {rng}")
        if shrink is not None:
            self._log(f"Hot partition {shrink[0]} narrowed to {shrink[1]}")
        return shrink

    def detach_partition(self, name: str) -> KeyRange:
        """Stop routing to ``name``; its data is left untouched."""
        if name == self.hot_name:
            raise ProtectedNode("the hot partition cannot be detached")
        with self._lock:
            rng = self._table.remove(name)
            if rng is None:
                raise NotFound(f"partition {name} is not attached")
            part = self._partitions.pop(name)
        part.close()
        self._log(f"Detached partition {name} {rng}; remote data left in place")
        return rng

    def resize_partition(self, name: str, rng: KeyRange) -> None:
        """Change the routed range of an attached partition."""
        with self._lock:
            if self._table.get(name) is None:
                raise NotFound(f"partition {name} is not attached")
            ranges = self._table.as_dict()
            ranges[name] = rng
            overlaps = find_overlaps(ranges)
            if overlaps:
                raise RangeOverlap(f"range {rng} for {name} overlaps {overlaps[0]}")
            self._table.add(name, rng)
            if name == self.hot_name:
                self.refresh_hot_floor()
        self._log(f"Partition {name} now routes {rng}")

    def refresh_hot_floor(self) -> KeyRange:
        """Recompute the hot partition's visible range from its contents.

        The visible range is the owned range widened over any residue rows
        the hot table still holds outside it.
        """
        with self._lock:
            owned = self._table.get(self.hot_name)
            low, high = self.hot.bounds()
            if low is None:
                visible = owned
            else:
                start = None if owned.start is None else min(owned.start, low)
                end = None if owned.end is None else max(owned.end, high + 1)
                visible = KeyRange(start, end)
            self._hot_visible = visible
            return visible

    # writes -------------------------------------------------------------
    def insert(self, event: EventRecord) -> bool:
        """Route ``event`` to its partition; return False for a duplicate.

        Hot writes are routed and applied under the lock ``narrow_hot``
        holds, so a narrowing never deletes a row it did not copy.
        """
        with self._hot_writes:
            with self._lock:
                name = self._table.owner(event.created_at)
                if name is None:
                    raise NoPartition(event.created_at)
                part = self._partitions[name]
            if name == self.hot_name:
                result = part.insert(event)
        if name != self.hot_name:
            result = part.insert(event)
        if name == self.hot_name and self.tag_index is not None:
            for old_id in result.replaced:
                self.tag_index.remove(old_id)
            if result.inserted:
                self.tag_index.upsert(event.id, event.tags)
        return result.inserted

    def delete(self, event_id: str) -> bool:
        """Delete an event from the hot tier."""
        with self._hot_writes:
            removed = self.hot.delete(event_id)
        if removed is None:
            return False
        if self.tag_index is not None:
            self.tag_index.remove(event_id)
        return True

    # reads --------------------------------------------------------------
    def targets(self, flt: Filter) -> list[str]:
        """Names of partitions whose visible range meets the filter's bounds."""
        lo, hi = flt.key_bounds()
        with self._lock:
            return [
                info.name
                for info in self.partitions()
                if info.visible.intersects_bounds(lo, hi)
            ]

    def query(self, flt: Filter, *, strict: bool = False) -> QueryResult:
        """Run ``flt`` on every intersecting partition concurrently.

        A partition that errors or misses the deadline is reported in
        ``failed`` and its rows are left out; with ``strict`` the first such
        failure is raised as ``PartitionUnavailable``.
        """
        if flt.is_empty_range():
            return QueryResult([], [])
        candidates = None
        sub_filter = flt
        if flt.tags and self.tag_index is not None:
            candidates = self.tag_index.lookup_filter(flt.tags)
            if not candidates:
                return QueryResult([], [])
            sub_filter = replace(flt, tags=None)

        names = self.targets(flt)
        with self._lock:
            parts = [(name, self._partitions[name]) for name in names]
        pending = {
            self._executor.submit(part.select, sub_filter, candidates): name
            for name, part in parts
        }
        deadline = time.monotonic() + self.query_timeout
        failed: dict[str, str] = {}
        errors: dict[str, BaseException] = {}
        rows: list[EventRecord] = []
        for fut, name in pending.items():
            remaining = max(0.0, deadline - time.monotonic())
            try:
                rows.extend(fut.result(timeout=remaining))
            except futures.TimeoutError as exc:
                fut.cancel()
                failed[name] = f"timed out after {self.query_timeout}s"
                errors[name] = exc
            except Exception as exc:
                failed[name] = str(exc)
                errors[name] = exc
        if failed:
            logger.warning("partial query result; failed partitions: %s", failed)
            if strict:
                name = next(iter(errors))
                raise PartitionUnavailable(name, errors[name])

        seen: set[str] = set()
        merged: list[EventRecord] = []
        for event in sorted(rows, key=lambda e: (-e.created_at, e.id)):
            if event.id in seen:
                continue
            seen.add(event.id)
            merged.append(event)
        if flt.limit is not None:
            merged = merged[: int(flt.limit)]
        return QueryResult(merged, names, failed)

    # hot tier narrowing -------------------------------------------------
    def plan_narrow(self, lower_bound: int) -> dict[str, KeyRange]:
        """Return the range changes ``narrow_hot`` would apply."""
        with self._lock:
            new_hot, extension = plan_narrow(self._table.as_dict(), self.hot_name, lower_bound)
        changes = {self.hot_name: new_hot}
        if extension is not None:
            changes[extension[0]] = extension[1]
        return changes

    def narrow_hot(
        self,
        lower_bound: int,
        *,
        commit: Callable[[dict[str, KeyRange]], None] | None = None,
        batch_size: int = DEFAULT_COPY_BATCH,
    ) -> NarrowReport:
        """Move the hot lower bound up to ``lower_bound``.

        ``commit`` persists the range changes before routing switches. Hot
        rows below the bound are then copied through the table with
        duplicate-tolerant inserts and deleted from the hot tier by range.
        Rerunning with the same bound completes an interrupted copy. Hot
        inserts and deletes wait until the narrowing is done.
        """
        with self._hot_writes:
            with self._lock:
                changes = self.plan_narrow(lower_bound)
                if commit is not None:
                    commit(changes)
                for name, rng in changes.items():
                    self._table.add(name, rng)
            extended = next((n for n in changes if n != self.hot_name), None)
            self._log(
                f"Hot partition narrowed to {changes[self.hot_name]}"
                + (f"; {extended} extended to {changes[extended]}" if extended else "")
            )
            copied, inserted = self._copy_below(lower_bound, batch_size)
            deleted = self.hot.delete_range(None, lower_bound)
            self.refresh_hot_floor()
        if copied != deleted:
            self._log(
                f"Narrowing copied {copied} rows but deleted {deleted} from the hot tier",
                logging.WARNING,
            )
        self._log(f"Narrowing moved {copied} rows ({inserted} new) below {lower_bound}")
        return NarrowReport(lower_bound, extended, copied, inserted, deleted)

    def _copy_below(self, lower_bound: int, batch_size: int) -> tuple[int, int]:
        copied = inserted = 0
        after = None
        while True:
            batch = self.hot.fetch(None, lower_bound, after, batch_size)
            if not batch:
                break
            grouped: dict[str, list[EventRecord]] = {}
            for event in batch:
                owner = self.partition_for(event.created_at)
                if owner is None or owner == self.hot_name:
                    raise NoPartition(event.created_at)
                grouped.setdefault(owner, []).append(event)
            for owner, events in grouped.items():
                inserted += self.partition(owner).insert_many(events)
            copied += len(batch)
            after = (batch[-1].created_at, batch[-1].id)
        return copied, inserted

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        with self._lock:
            parts = list(self._partitions.values())
        for part in parts:
            part.close()
