"""Persistent registry of storage nodes and the ranges they own."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field, replace

from ..errors import (
    DuplicateName,
    NotFound,
    ProtectedNode,
    RangeOverlap,
    RegistryCorrupt,
    RegistryUnavailable,
)
from .ranges import FULL_RANGE, KeyRange, find_overlaps, plan_reclaim

logger = logging.getLogger(__name__)

REGISTRY_VERSION = 1
LOCAL_ADDRESS = "local"


@dataclass(frozen=True)
class Credentials:
    user: str
    password: str = field(repr=False)

    def to_dict(self) -> dict:
        return {"user": self.user, "password": self.password}


@dataclass(frozen=True)
class Node:
    name: str
    address: str
    range: KeyRange
    public_key: str | None = None
    credentials: Credentials | None = None

    @property
    def is_local(self) -> bool:
        return self.address == LOCAL_ADDRESS

    def with_range(self, rng: KeyRange) -> "Node":
        return replace(self, range=rng)

    def to_dict(self, *, secrets: bool = True) -> dict:
        data = {
            "name": self.name,
            "address": self.address,
            "public_key": self.public_key,
            "range": self.range.to_dict(),
        }
        if secrets and self.credentials is not None:
            data["credentials"] = self.credentials.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Node":
        creds = data.get("credentials")
        return cls(
            name=data["name"],
            address=data["address"],
            range=KeyRange.from_dict(data["range"]),
            public_key=data.get("public_key"),
            credentials=Credentials(creds["user"], creds["password"]) if creds else None,
        )


class NodeRegistry:
    """Source of truth for the partition topology.

    Every mutation is written to disk with an atomic replace before the
    in-memory view changes, so a crash leaves either the old or the new
    registry, never a mix. The hot node is stored like any other node.
    """

    def __init__(self, path: str, hot_name: str = "hot") -> None:
        self.path = path
        self.hot_name = hot_name
        self._lock = threading.Lock()
        self._nodes: dict[str, Node] = {}
        self._load()

    # persistence ------------------------------------------------------
    def _load(self) -> None:
        if not os.path.exists(self.path):
            hot = Node(self.hot_name, LOCAL_ADDRESS, FULL_RANGE)
            self._persist({hot.name: hot})
            self._nodes = {hot.name: hot}
            logger.info("created registry %s with hot node %s", self.path, hot.name)
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fp:
                raw = fp.read()
        except OSError as exc:
            raise RegistryUnavailable(f"cannot read registry {self.path}: {exc}") from exc
        try:
            data = json.loads(raw)
            nodes = {n["name"]: Node.from_dict(n) for n in data["nodes"]}
        except (ValueError, KeyError, TypeError) as exc:
            raise RegistryCorrupt(f"registry {self.path} is malformed: {exc}") from exc
        if self.hot_name not in nodes:
            raise RegistryCorrupt(f"registry {self.path} has no hot node {self.hot_name!r}")
        overlaps = find_overlaps({n: node.range for n, node in nodes.items()})
        if overlaps:
            raise RegistryCorrupt(f"registry {self.path} holds overlapping ranges: {overlaps}")
        self._nodes = nodes

    def _persist(self, nodes: dict[str, Node]) -> None:
        payload = {
            "version": REGISTRY_VERSION,
            "nodes": [n.to_dict() for n in self._sorted(nodes.values())],
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = f"{self.path}.tmp"
        try:
            os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as fp:
                json.dump(payload, fp, indent=2)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise RegistryUnavailable(f"cannot write registry {self.path}: {exc}") from exc

    @staticmethod
    def _sorted(nodes) -> list[Node]:
        return sorted(nodes, key=lambda n: (n.range.start is not None, n.range.start or 0))

    def _check_overlaps(self, nodes: dict[str, Node]) -> None:
        overlaps = find_overlaps({n: node.range for n, node in nodes.items()})
        if overlaps:
            a, b = overlaps[0]
            raise RangeOverlap(
                f"range of {a} {nodes[a].range} overlaps {b} {nodes[b].range}"
            )

    # mutations --------------------------------------------------------
    def register(self, node: Node, shrink: Node | None = None) -> Node:
        """Add ``node``; ``shrink`` replaces an existing node in the same commit."""
        with self._lock:
            existing = self._nodes.get(node.name)
            if existing is not None:
                if existing == node:
                    return existing
                raise DuplicateName(f"node {node.name} is already registered")
            nodes = dict(self._nodes)
            if shrink is not None:
                if shrink.name not in nodes:
                    raise NotFound(f"node {shrink.name} is not registered")
                nodes[shrink.name] = shrink
            nodes[node.name] = node
            self._check_overlaps(nodes)
            self._persist(nodes)
            self._nodes = nodes
            return node

    def deregister(self, name: str, extend: str | None = None) -> KeyRange:
        """Remove ``name`` and return the range it owned."""
        with self._lock:
            node = self._nodes.get(name)
            if node is None:
                raise NotFound(f"node {name} is not registered")
            if name == self.hot_name:
                raise ProtectedNode("the hot node cannot be removed")
            nodes = dict(self._nodes)
            if extend is not None:
                if extend not in nodes or extend == name:
                    raise NotFound(f"node {extend} is not registered")
                ranges = {n: v.range for n, v in nodes.items()}
                nodes[extend] = nodes[extend].with_range(plan_reclaim(ranges, name, extend))
            del nodes[name]
            self._persist(nodes)
            self._nodes = nodes
            return node.range

    def resize(self, changes: dict[str, KeyRange]) -> None:
        """Atomically change the ranges of several nodes."""
        with self._lock:
            nodes = dict(self._nodes)
            for name, rng in changes.items():
                if name not in nodes:
                    raise NotFound(f"node {name} is not registered")
                nodes[name] = nodes[name].with_range(rng)
            self._check_overlaps(nodes)
            self._persist(nodes)
            self._nodes = nodes

    # queries ----------------------------------------------------------
    def lookup(self, name: str) -> Node:
        with self._lock:
            node = self._nodes.get(name)
        if node is None:
            raise NotFound(f"node {name} is not registered")
        return node

    def all(self) -> list[Node]:
        with self._lock:
            return self._sorted(self._nodes.values())

    def hot(self) -> Node:
        return self.lookup(self.hot_name)

    def ranges(self) -> dict[str, KeyRange]:
        with self._lock:
            return {n: node.range for n, node in self._nodes.items()}

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._nodes
