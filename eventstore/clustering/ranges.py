"""Key-range arithmetic for time-partitioned tables.

Ranges are half open ``[start, end)`` over integer timestamps. ``None`` as
``start`` stands for MINVALUE and as ``end`` for MAXVALUE. Only non-negative
timestamps are representable, so coverage is computed over ``[0, +inf)`` and
``[MINVALUE, x)`` covers exactly what ``[0, x)`` covers.
"""

from __future__ import annotations

import math
from bisect import bisect_right
from dataclasses import dataclass
from typing import Iterable

from ..errors import InvalidRange, RangeGap, RangeOverlap

MIN_KEY = 0
MINVALUE = "MINVALUE"
MAXVALUE = "MAXVALUE"


def parse_bound(value, *, lower: bool) -> int | None:
    """Parse ``MINVALUE``/``MAXVALUE``/integer text into a bound."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.upper() == (MINVALUE if lower else MAXVALUE):
        return None
    try:
        return int(text)
    except ValueError:
        raise InvalidRange(f"invalid range bound: {value!r}") from None


@dataclass(frozen=True)
class KeyRange:
    start: int | None = None
    end: int | None = None

    def __post_init__(self) -> None:
        if self.start is not None and self.end is not None and self.start >= self.end:
            raise InvalidRange(f"invalid range {self}: start must be below end")
        if self.end is not None and self.end <= MIN_KEY:
            raise InvalidRange(f"range {self} holds no representable timestamps")

    @classmethod
    def parse(cls, start, end) -> "KeyRange":
        return cls(parse_bound(start, lower=True), parse_bound(end, lower=False))

    # clamped bounds used for coverage arithmetic
    @property
    def lo(self) -> int:
        return MIN_KEY if self.start is None else max(self.start, MIN_KEY)

    @property
    def hi(self) -> float:
        return math.inf if self.end is None else self.end

    def contains(self, key: int) -> bool:
        if self.start is not None and key < self.start:
            return False
        return self.end is None or key < self.end

    def covers(self, other: "KeyRange") -> bool:
        return self.lo <= other.lo and other.hi <= self.hi

    def intersects(self, other: "KeyRange") -> bool:
        return max(self.lo, other.lo) < min(self.hi, other.hi)

    def intersects_bounds(self, lo: int | None, hi: int | None) -> bool:
        """Return True if ``[lo, hi)`` (``None`` = unbounded) meets this range."""
        low = self.lo if lo is None else max(self.lo, lo)
        high = self.hi if hi is None else min(self.hi, hi)
        return low < high

    def to_dict(self) -> dict:
        return {
            "from": MINVALUE if self.start is None else self.start,
            "to": MAXVALUE if self.end is None else self.end,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "KeyRange":
        return cls.parse(data.get("from"), data.get("to"))

    def __str__(self) -> str:
        start = MINVALUE if self.start is None else self.start
        end = MAXVALUE if self.end is None else self.end
        return f"[{start}, {end})"


FULL_RANGE = KeyRange(None, None)


def coverage_gaps(ranges: Iterable[KeyRange]) -> list[KeyRange]:
    """Return the sub-ranges of ``[0, +inf)`` covered by none of ``ranges``."""
    gaps: list[KeyRange] = []
    cursor: float = MIN_KEY
    for rng in sorted(ranges, key=lambda r: r.lo):
        if rng.lo > cursor:
            gaps.append(KeyRange(int(cursor), rng.lo))
        cursor = max(cursor, rng.hi)
    if cursor != math.inf:
        gaps.append(KeyRange(int(cursor), None))
    return gaps


def find_overlaps(named: dict[str, KeyRange]) -> list[tuple[str, str]]:
    """Return every pair of names whose ranges intersect."""
    items = sorted(named.items(), key=lambda kv: kv[1].lo)
    pairs = []
    for i, (name_a, rng_a) in enumerate(items):
        for name_b, rng_b in items[i + 1:]:
            if rng_b.lo >= rng_a.hi:
                break
            if rng_a.intersects(rng_b):
                pairs.append((name_a, name_b))
    return pairs


def plan_attach(
    named: dict[str, KeyRange], hot: str, new: KeyRange
) -> tuple[str, KeyRange] | None:
    """Validate attaching ``new`` next to ``named``.

    Returns ``(hot, narrowed_range)`` when ``new`` is carved out of an edge of
    the hot range, ``None`` when it only fills free key space.
    """
    shrink = None
    for name, rng in named.items():
        if not rng.intersects(new):
            continue
        if name != hot:
            raise RangeOverlap(f"range {new} overlaps node {name} {rng}")
        if new.covers(rng):
            raise RangeOverlap(f"range {new} would consume the hot range {rng}")
        if new.lo <= rng.lo:
            shrink = (name, KeyRange(new.end, rng.end))
        elif new.hi >= rng.hi:
            shrink = (name, KeyRange(rng.start, new.start))
        else:
            raise RangeGap(f"range {new} would split the hot range {rng} in two")

    after = dict(named)
    if shrink is not None:
        after[shrink[0]] = shrink[1]
    before_gaps = coverage_gaps(named.values())
    after_gaps = coverage_gaps(list(after.values()) + [new])
    if len(after_gaps) > len(before_gaps):
        raise RangeGap(f"range {new} is not adjacent to any attached range")
    return shrink


def plan_narrow(
    named: dict[str, KeyRange], hot: str, lower_bound: int
) -> tuple[KeyRange, tuple[str, KeyRange] | None]:
    """Validate moving the hot lower bound to ``lower_bound``.

    Returns the new hot range and the node directly below it with its range
    extended up to ``lower_bound`` (``None`` when the bound does not move).
    """
    current = named[hot]
    if current.end is not None and lower_bound >= current.end:
        raise InvalidRange(f"lower bound {lower_bound} is not inside the hot range {current}")
    if current.start is not None and lower_bound < current.start:
        raise RangeOverlap(
            f"lower bound {lower_bound} is below the hot range {current}"
        )
    new_hot = KeyRange(lower_bound, current.end)
    if current.start == lower_bound:
        return new_hot, None
    for name, rng in named.items():
        if name != hot and current.start is not None and rng.end == current.start:
            return new_hot, (name, KeyRange(rng.start, lower_bound))
    raise RangeGap(
        f"no node below the hot range {current} can take over [{current.start}, {lower_bound})"
    )


def plan_reclaim(
    named: dict[str, KeyRange], removed: str, extend: str
) -> KeyRange:
    """Return the range of ``extend`` after it absorbs the range of ``removed``."""
    gone = named[removed]
    rng = named[extend]
    if rng.end is not None and rng.end == gone.start:
        return KeyRange(rng.start, gone.end)
    if gone.end is not None and rng.start == gone.end:
        return KeyRange(gone.start, rng.end)
    raise RangeGap(f"node {extend} {rng} is not adjacent to {removed} {gone}")


class RangeTable:
    """Ordered routing table of named, non-overlapping ranges."""

    def __init__(self) -> None:
        self._entries: list[tuple[KeyRange, str]] = []

    def _starts(self) -> list[float]:
        return [-math.inf if r.start is None else r.start for r, _ in self._entries]

    def add(self, name: str, rng: KeyRange) -> None:
        self._entries = [(r, n) for r, n in self._entries if n != name]
        self._entries.append((rng, name))
        self._entries.sort(key=lambda e: -math.inf if e[0].start is None else e[0].start)

    def remove(self, name: str) -> KeyRange | None:
        for rng, n in self._entries:
            if n == name:
                self._entries = [(r, m) for r, m in self._entries if m != name]
                return rng
        return None

    def get(self, name: str) -> KeyRange | None:
        for rng, n in self._entries:
            if n == name:
                return rng
        return None

    def owner(self, key: int) -> str | None:
        """Return the name whose range contains ``key``."""
        idx = bisect_right(self._starts(), key) - 1
        if idx < 0:
            return None
        rng, name = self._entries[idx]
        return name if rng.contains(key) else None

    def as_dict(self) -> dict[str, KeyRange]:
        return {n: r for r, n in self._entries}

    def items(self) -> list[tuple[str, KeyRange]]:
        return [(n, r) for r, n in self._entries]

    def __contains__(self, name: str) -> bool:
        return any(n == name for _, n in self._entries)

    def __len__(self) -> int:
        return len(self._entries)
