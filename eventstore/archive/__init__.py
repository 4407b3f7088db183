from .mover import (
    ArchiveMover,
    ArchivePlan,
    ArchiveProgress,
    ArchiveReport,
    ArchiveState,
    cutoff_from_days,
    estimate_duration,
)

__all__ = [
    "ArchiveMover",
    "ArchivePlan",
    "ArchiveProgress",
    "ArchiveReport",
    "ArchiveState",
    "cutoff_from_days",
    "estimate_duration",
]
