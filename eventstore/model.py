"""Event records and query filters."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field


def is_replaceable(kind: int) -> bool:
    """Return True for kinds where the newest event per author wins."""
    return (
        kind in (0, 3, 41)
        or 10000 <= kind < 20000
        or 30000 <= kind < 40000
    )


def is_parameterized(kind: int) -> bool:
    return 30000 <= kind < 40000


def tag_pairs(tags) -> list[tuple[str, str]]:
    """Extract indexable ``(name, value)`` pairs from an event's tags.

    Only single-character names with a non-empty value are kept.
    """
    pairs = []
    seen = set()
    for tag in tags or []:
        if not isinstance(tag, (list, tuple)) or len(tag) < 2:
            continue
        name, value = tag[0], tag[1]
        if not isinstance(name, str) or len(name) != 1:
            continue
        if value is None or value == "":
            continue
        pair = (name, str(value))
        if pair not in seen:
            seen.add(pair)
            pairs.append(pair)
    return pairs


@dataclass
class EventRecord:
    """A signed event as stored in any partition."""

    id: str
    pubkey: str
    kind: int
    created_at: int
    content: str = ""
    tags: list = field(default_factory=list)
    sig: str = ""
    first_seen: float | None = None
    deleted_at: float | None = None
    expires_at: int | None = None
    dedup: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.created_at, int) or self.created_at < 0:
            raise ValueError(f"created_at must be a non-negative integer, got {self.created_at!r}")
        if self.first_seen is None:
            self.first_seen = time.time()
        if self.dedup is None:
            self.dedup = self.dedup_key()

    def dedup_key(self) -> str:
        """Key that identifies the slot a replaceable event occupies."""
        if is_parameterized(self.kind):
            for tag in self.tags:
                if isinstance(tag, (list, tuple)) and tag and tag[0] == "d":
                    return str(tag[1]) if len(tag) > 1 else ""
            return ""
        return ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "EventRecord":
        return cls(
            id=data["id"],
            pubkey=data["pubkey"],
            kind=int(data["kind"]),
            created_at=int(data["created_at"]),
            content=data.get("content", ""),
            tags=list(data.get("tags") or []),
            sig=data.get("sig", ""),
            first_seen=data.get("first_seen"),
            deleted_at=data.get("deleted_at"),
            expires_at=data.get("expires_at"),
            dedup=data.get("dedup"),
        )

    def tags_json(self) -> str:
        return json.dumps(self.tags, separators=(",", ":"))


@dataclass
class Filter:
    """Subscription-style filter over the logical event table.

    ``since`` and ``until`` are inclusive, matching relay filter semantics.
    """

    ids: list[str] | None = None
    authors: list[str] | None = None
    kinds: list[int] | None = None
    since: int | None = None
    until: int | None = None
    tags: dict[str, list[str]] | None = None
    limit: int | None = None

    def key_bounds(self) -> tuple[int | None, int | None]:
        """Return ``[lo, hi)`` bounds on the partition key."""
        hi = self.until + 1 if self.until is not None else None
        return self.since, hi

    def is_empty_range(self) -> bool:
        lo, hi = self.key_bounds()
        return lo is not None and hi is not None and lo >= hi

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "Filter":
        if not isinstance(data, dict):
            raise ValueError("a filter must be a JSON object")
        tags = {}
        for key, value in data.items():
            if key.startswith("#") and len(key) == 2:
                tags[key[1]] = [str(v) for v in value]
        tags.update(data.get("tags") or {})
        return cls(
            ids=data.get("ids"),
            authors=data.get("authors"),
            kinds=[int(k) for k in data["kinds"]] if data.get("kinds") is not None else None,
            since=data.get("since"),
            until=data.get("until"),
            tags=tags or None,
            limit=data.get("limit"),
        )

    def matches(self, event: EventRecord) -> bool:
        """Evaluate the filter in memory (used for rows fetched by id)."""
        if self.ids is not None and event.id not in self.ids:
            return False
        if self.authors is not None and event.pubkey not in self.authors:
            return False
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        if self.tags:
            pairs = set(tag_pairs(event.tags))
            for name, values in self.tags.items():
                if not any((name, v) in pairs for v in values):
                    return False
        return True
