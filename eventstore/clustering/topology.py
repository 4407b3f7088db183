"""Multi-step topology changes across the mesh, the router and the registry."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Callable

from ..errors import (
    DuplicateName,
    EventStoreError,
    InvalidName,
    InvalidRange,
    NotFound,
    ProtectedNode,
    TopologyInconsistency,
)
from ..mesh.gateway import MeshGateway, validate_public_key
from ..storage.base import Partition
from ..utils.event_logger import EventLogger
from .partitioned_store import NarrowReport, PartitionedStore
from .ranges import KeyRange, coverage_gaps, plan_attach, plan_reclaim
from .registry import Credentials, Node, NodeRegistry

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")


def validate_name(name: str) -> str:
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise InvalidName(f"invalid node name {name!r}: use letters, digits and underscores")
    return name


@dataclass
class StepReport:
    """Where a multi-step topology change stopped."""

    operation: str
    node: str
    failed_step: str
    applied: list[str]
    error: str

    def __str__(self) -> str:
        done = ", ".join(self.applied) or "none"
        return (
            f"{self.operation} {self.node} failed at step {self.failed_step!r} "
            f"(already applied: {done}): {self.error}. Re-run the same command to converge."
        )


@dataclass
class RemovalResult:
    node: Node
    range: KeyRange
    reclaimed_by: str | None = None
    key_kept: bool = False
    mesh_open: bool = False
    gaps: list[KeyRange] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ReconcileReport:
    unknown_keys: list[str] = field(default_factory=list)
    unallowed_nodes: list[str] = field(default_factory=list)
    unattached_nodes: list[str] = field(default_factory=list)
    unregistered_partitions: list[str] = field(default_factory=list)
    range_mismatches: list[str] = field(default_factory=list)
    gaps: list[KeyRange] = field(default_factory=list)
    unhealthy: list[str] = field(default_factory=list)
    mesh_open: bool = False
    mesh_error: str | None = None

    @property
    def ok(self) -> bool:
        return not (
            self.unknown_keys
            or self.unallowed_nodes
            or self.unattached_nodes
            or self.unregistered_partitions
            or self.range_mismatches
            or self.gaps
            or self.unhealthy
            or self.mesh_error
        )

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "unknown_keys": self.unknown_keys,
            "unallowed_nodes": self.unallowed_nodes,
            "unattached_nodes": self.unattached_nodes,
            "unregistered_partitions": self.unregistered_partitions,
            "range_mismatches": self.range_mismatches,
            "gaps": [g.to_dict() for g in self.gaps],
            "unhealthy": self.unhealthy,
            "mesh_open": self.mesh_open,
            "mesh_error": self.mesh_error,
        }


class TopologyManager:
    """Applies node additions and removals as ordered, idempotent steps.

    Steps are not rolled back. When a later step fails the earlier ones stay
    applied and ``TopologyInconsistency`` reports which; every step is
    skipped when already in place, so repeating the call converges.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        store: PartitionedStore,
        mesh: MeshGateway,
        partition_factory: Callable[[Node], Partition],
        *,
        event_logger: EventLogger | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.mesh = mesh
        self.partition_factory = partition_factory
        self.event_logger = event_logger
        self._lock = threading.Lock()

    def _log(self, message: str, level: int = logging.INFO) -> None:
        if self.event_logger:
            self.event_logger.log(message, level)
        else:
            logger.log(level, message)

    # ------------------------------------------------------------------
    def add_node(
        self,
        name: str,
        address: str,
        credentials: Credentials | None,
        rng: KeyRange,
        public_key: str | None = None,
    ) -> Node:
        validate_name(name)
        if not isinstance(rng, KeyRange):
            raise InvalidRange(f"invalid range {rng!r}")
        if not address:
            raise InvalidName("node address must not be empty")
        key = validate_public_key(public_key) if public_key else None
        node = Node(name, address, rng, key, credentials)

        with self._lock:
            hot_name = self.registry.hot_name
            if name == hot_name:
                raise DuplicateName(f"{name} is the hot node")
            registered = name in self.registry
            if registered and self.registry.lookup(name) != node:
                raise DuplicateName(f"node {name} is already registered")
            shrink = None
            if not registered:
                carve = plan_attach(self.registry.ranges(), hot_name, rng)
                if carve is not None:
                    shrink = self.registry.lookup(carve[0]).with_range(carve[1])
            self.store.plan_attach(name, rng)

            applied: list[str] = []

            def fail(step: str, exc: Exception) -> TopologyInconsistency:
                report = StepReport("add_node", name, step, list(applied), str(exc))
                self._log(str(report), logging.ERROR)
                return TopologyInconsistency(report)

            if key is not None:
                self.mesh.allow(key)
                applied.append("mesh_allow")
            else:
                self._log(
                    f"Node {name} registered without a public key; "
                    "it can only peer while the mesh allow-list is open",
                    logging.WARNING,
                )

            if not self.store.is_attached(name):
                try:
                    self.store.attach_partition(name, rng, self.partition_factory(node))
                except Exception as exc:
                    raise fail("attach_partition", exc) from exc
            applied.append("attach_partition")

            if not registered:
                try:
                    self.registry.register(node, shrink=shrink)
                except Exception as exc:
                    raise fail("register", exc) from exc
            applied.append("register")

        self._log(f"Added node {name} at {address} for {rng}")
        return node

    def remove_node(self, name: str, reclaim_by: str | None = None) -> RemovalResult:
        with self._lock:
            if name == self.registry.hot_name:
                raise ProtectedNode("the hot node cannot be removed")
            node = self.registry.lookup(name)
            reclaimed = None
            if reclaim_by is not None:
                if reclaim_by == name or reclaim_by not in self.registry:
                    raise NotFound(f"node {reclaim_by} is not registered")
                reclaimed = plan_reclaim(self.registry.ranges(), name, reclaim_by)

            result = RemovalResult(node=node, range=node.range, reclaimed_by=reclaim_by)
            applied: list[str] = []

            def fail(step: str, exc: Exception) -> TopologyInconsistency:
                report = StepReport("remove_node", name, step, list(applied), str(exc))
                self._log(str(report), logging.ERROR)
                return TopologyInconsistency(report)

            if self.store.is_attached(name):
                self.store.detach_partition(name)
            applied.append("detach_partition")

            if node.public_key:
                shared = [
                    n.name
                    for n in self.registry.all()
                    if n.name != name and n.public_key == node.public_key
                ]
                if shared:
                    result.key_kept = True
                    result.warnings.append(
                        f"public key kept in allow-list; still used by {', '.join(shared)}"
                    )
                else:
                    try:
                        change = self.mesh.disallow(node.public_key)
                    except Exception as exc:
                        raise fail("mesh_disallow", exc) from exc
                    if change.open:
                        result.mesh_open = True
                        result.warnings.append(
                            "mesh allow-list is empty; any mesh node can peer"
                        )
            applied.append("mesh_disallow")

            try:
                self.registry.deregister(name, extend=reclaim_by)
            except Exception as exc:
                raise fail("deregister", exc) from exc
            applied.append("deregister")

            if reclaimed is not None:
                try:
                    self.store.resize_partition(reclaim_by, reclaimed)
                except Exception as exc:
                    raise fail("reclaim", exc) from exc
                applied.append("reclaim")

            result.gaps = coverage_gaps(self.registry.ranges().values())

        for warning in result.warnings:
            self._log(f"Removing {name}: {warning}", logging.WARNING)
        if result.gaps:
            gaps = ", ".join(str(g) for g in result.gaps)
            result.warnings.append(f"key space not covered by any node: {gaps}")
            self._log(
                f"Removed {name} leaves keys without a partition: {gaps}", logging.WARNING
            )
        self._log(f"Removed node {name} {node.range}; remote data left in place")
        return result

    def narrow_hot(self, lower_bound: int, *, batch_size: int | None = None) -> NarrowReport:
        with self._lock:
            kwargs = {"batch_size": batch_size} if batch_size else {}
            return self.store.narrow_hot(lower_bound, commit=self.registry.resize, **kwargs)

    def check(self, *, probe: bool = True) -> ReconcileReport:
        """Compare registry, router and mesh allow-list without changing them."""
        report = ReconcileReport()
        nodes = self.registry.all()
        try:
            allowed = set(self.mesh.allowed())
        except EventStoreError as exc:
            allowed = None
            report.mesh_error = str(exc)
        node_keys = {n.public_key for n in nodes if n.public_key}
        if allowed is not None:
            report.mesh_open = not allowed
            report.unknown_keys = sorted(allowed - node_keys)
            report.unallowed_nodes = [
                n.name for n in nodes if n.public_key and n.public_key not in allowed
            ]
        routed = self.store.ranges()
        for n in nodes:
            if n.name not in routed:
                report.unattached_nodes.append(n.name)
            elif routed[n.name] != n.range:
                report.range_mismatches.append(
                    f"{n.name}: registry {n.range}, router {routed[n.name]}"
                )
        report.unregistered_partitions = [p for p in routed if p not in self.registry]
        report.gaps = coverage_gaps(n.range for n in nodes)
        if probe:
            for info in self.store.partitions():
                if info.local:
                    continue
                try:
                    healthy = self.store.partition(info.name).ping()
                except EventStoreError:
                    healthy = False
                if not healthy:
                    report.unhealthy.append(info.name)
        return report
