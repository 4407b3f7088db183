"""Copy-then-delete archival of aged hot rows onto a storage node."""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from ..clustering.partitioned_store import PartitionedStore
from ..clustering.registry import NodeRegistry
from ..config import DEFAULT_BATCH_SIZE, DEFAULT_BATCH_WINDOW
from ..errors import NodeNotRegistered, NothingToArchive, ValidationError
from ..utils.event_logger import EventLogger

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
# conservative throughput of a remote copy plus local delete, rows per minute
FAST_ROWS_PER_MINUTE = 7500
SLOW_ROWS_PER_MINUTE = 3000


class ArchiveState(str, enum.Enum):
    PLANNING = "planning"
    CONFIRMING = "confirming"
    COPYING = "copying"
    DELETING = "deleting"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ArchivePlan:
    node: str
    cutoff: int
    total_rows: int
    min_key: int
    max_key: int
    estimated_duration: tuple[float, float]

    def windows(self, width: int) -> list[tuple[int, int]]:
        """Split ``[min_key, cutoff)`` into windows of ``width`` seconds."""
        out = []
        start = self.min_key
        while start < self.cutoff:
            end = min(start + width, self.cutoff)
            out.append((start, end))
            start = end
        return out

    def to_dict(self) -> dict:
        return {
            "node": self.node,
            "cutoff": self.cutoff,
            "total_rows": self.total_rows,
            "min_key": self.min_key,
            "max_key": self.max_key,
            "estimated_duration": list(self.estimated_duration),
        }


@dataclass(frozen=True)
class ArchiveProgress:
    state: ArchiveState
    window: tuple[int, int]
    rows_copied: int
    rows_deleted: int
    total_rows: int
    elapsed: float
    rate: float
    eta: float | None


@dataclass
class ArchiveReport:
    node: str
    cutoff: int
    state: ArchiveState
    plan: ArchivePlan | None = None
    dry_run: bool = False
    rows_copied: int = 0
    rows_inserted: int = 0
    rows_deleted: int = 0
    windows: int = 0
    elapsed: float = 0.0
    warnings: list[str] = field(default_factory=list)

    @property
    def rows_skipped(self) -> int:
        """Rows already present on the node (left over from an earlier run)."""
        return self.rows_copied - self.rows_inserted

    def to_dict(self) -> dict:
        return {
            "node": self.node,
            "cutoff": self.cutoff,
            "state": self.state.value,
            "plan": self.plan.to_dict() if self.plan else None,
            "dry_run": self.dry_run,
            "rows_copied": self.rows_copied,
            "rows_inserted": self.rows_inserted,
            "rows_skipped": self.rows_skipped,
            "rows_deleted": self.rows_deleted,
            "windows": self.windows,
            "elapsed": self.elapsed,
            "warnings": self.warnings,
        }


def estimate_duration(total_rows: int) -> tuple[float, float]:
    """Return a (low, high) estimate in seconds for moving ``total_rows``."""
    return (
        total_rows / FAST_ROWS_PER_MINUTE * 60,
        total_rows / SLOW_ROWS_PER_MINUTE * 60,
    )


def cutoff_from_days(days: float, now: float | None = None) -> int:
    if days < 0:
        raise ValidationError("older-than must not be negative")
    now = time.time() if now is None else now
    return int(now - days * SECONDS_PER_DAY)


class ArchiveMover:
    """Moves hot rows in ``[node.start, cutoff)`` onto the node's partition.

    Each window is copied in key-ordered sub-batches with duplicate-tolerant
    inserts and only then deleted from the hot tier, so an interrupted run
    loses nothing and a rerun finishes the job.
    """

    def __init__(
        self,
        store: PartitionedStore,
        registry: NodeRegistry,
        *,
        event_logger: EventLogger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.registry = registry
        self.event_logger = event_logger
        self.clock = clock

    def _log(self, message: str, level: int = logging.INFO) -> None:
        if self.event_logger:
            self.event_logger.log(message, level)
        else:
            logger.log(level, message)

    def plan(self, node: str, cutoff: int) -> ArchivePlan:
        if node == self.registry.hot_name or node not in self.registry:
            raise NodeNotRegistered(f"{node} is not a registered storage node")
        rng = self.registry.lookup(node).range
        if not (rng.lo < cutoff <= rng.hi):
            raise NodeNotRegistered(
                f"cutoff {cutoff} is outside the range {rng} owned by {node}"
            )
        hot = self.store.hot
        total = hot.count(rng.start, cutoff)
        if total == 0:
            raise NothingToArchive(f"no hot rows in [{rng.lo}, {cutoff}) to archive to {node}")
        min_key, max_key = hot.bounds(rng.start, cutoff)
        return ArchivePlan(node, cutoff, total, min_key, max_key, estimate_duration(total))

    def run(
        self,
        node: str,
        cutoff: int,
        *,
        batch_window: int = DEFAULT_BATCH_WINDOW,
        batch_size: int = DEFAULT_BATCH_SIZE,
        confirm: Callable[[ArchivePlan], bool] | None = None,
        dry_run: bool = False,
        progress: Callable[[ArchiveProgress], None] | None = None,
    ) -> ArchiveReport:
        if batch_window <= 0 or batch_size <= 0:
            raise ValidationError("batch window and batch size must be positive")
        plan = self.plan(node, cutoff)
        report = ArchiveReport(node, cutoff, ArchiveState.PLANNING, plan, dry_run=dry_run)
        if dry_run:
            return report

        report.state = ArchiveState.CONFIRMING
        if confirm is not None and not confirm(plan):
            report.state = ArchiveState.ABORTED
            self._log(f"Archive to {node} below {cutoff} aborted by operator")
            return report

        try:
            target = self.store.partition(node)
        except Exception as exc:
            raise NodeNotRegistered(f"{node} has no attached partition") from exc
        hot = self.store.hot
        started = self.clock()
        self._log(
            f"Archiving {plan.total_rows} rows [{plan.min_key}, {cutoff}) to {node}"
        )

        def emit(state: ArchiveState, window: tuple[int, int]) -> None:
            report.elapsed = self.clock() - started
            if progress is None:
                return
            rate = report.rows_copied / report.elapsed if report.elapsed > 0 else 0.0
            remaining = max(plan.total_rows - report.rows_copied, 0)
            eta = remaining / rate if rate > 0 else None
            progress(
                ArchiveProgress(
                    state,
                    window,
                    report.rows_copied,
                    report.rows_deleted,
                    plan.total_rows,
                    report.elapsed,
                    rate,
                    eta,
                )
            )

        for window in plan.windows(batch_window):
            lo, hi = window
            report.state = ArchiveState.COPYING
            window_copied = 0
            after = None
            while True:
                batch = hot.fetch(lo, hi, after, batch_size)
                if not batch:
                    break
                report.rows_inserted += target.insert_many(batch)
                report.rows_copied += len(batch)
                window_copied += len(batch)
                after = (batch[-1].created_at, batch[-1].id)
                emit(ArchiveState.COPYING, window)
                if len(batch) < batch_size:
                    break
            if window_copied == 0:
                continue
            report.state = ArchiveState.DELETING
            window_deleted = hot.delete_range(lo, hi)
            report.rows_deleted += window_deleted
            report.windows += 1
            emit(ArchiveState.DELETING, window)
            if window_deleted != window_copied:
                logger.warning(
                    "window %s copied %d rows but deleted %d", window, window_copied, window_deleted
                )

        report.state = ArchiveState.DONE
        report.elapsed = self.clock() - started
        self.store.refresh_hot_floor()
        if report.rows_copied != report.rows_deleted:
            message = (
                f"copied and deleted counts differ ({report.rows_copied} vs "
                f"{report.rows_deleted}); rows may have been inserted into the "
                f"archived range during the run"
            )
            report.warnings.append(message)
            self._log(f"Archive to {node}: {message}", logging.WARNING)
        self._log(
            f"Archived {report.rows_copied} rows to {node} "
            f"({report.rows_skipped} already present, {report.rows_deleted} deleted) "
            f"in {report.elapsed:.1f}s"
        )
        return report

    def archive(
        self,
        node: str,
        cutoff: int | None = None,
        *,
        older_than_days: float | None = None,
        now: float | None = None,
        **kwargs,
    ) -> ArchiveReport:
        """Run with ``cutoff`` or with a cutoff ``older_than_days`` before now."""
        if (cutoff is None) == (older_than_days is None):
            raise ValidationError("give exactly one of cutoff or older_than_days")
        if cutoff is None:
            cutoff = cutoff_from_days(older_than_days, now)
        return self.run(node, cutoff, **kwargs)
