"""Wiring of the coordinator components from a :class:`CoordinatorConfig`."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .archive.mover import ArchiveMover
from .clustering.partitioned_store import PartitionedStore
from .clustering.registry import Node, NodeRegistry
from .clustering.tag_index import TagIndex
from .clustering.topology import TopologyManager
from .config import CoordinatorConfig
from .mesh.gateway import MeshGateway
from .storage.replica.client import RemotePartition, grpc_target
from .storage.sqlite_partition import SQLitePartition
from .utils.event_logger import EventLogger

logger = logging.getLogger(__name__)


def remote_partition_factory(config: CoordinatorConfig):
    """Return a factory building the gRPC partition client of a node."""

    def build(node: Node) -> RemotePartition:
        creds = node.credentials
        return RemotePartition(
            node.name,
            grpc_target(node.address, config.storage_port),
            user=creds.user if creds else config.db_user,
            password=creds.password if creds else None,
            timeout=config.remote_timeout,
            fetch_size=config.fetch_size,
        )

    return build


@dataclass
class Coordinator:
    config: CoordinatorConfig
    registry: NodeRegistry
    store: PartitionedStore
    mesh: MeshGateway
    topology: TopologyManager
    archiver: ArchiveMover
    event_logger: EventLogger

    @classmethod
    def from_config(
        cls,
        config: CoordinatorConfig,
        *,
        mesh: MeshGateway | None = None,
        partition_factory=None,
    ) -> "Coordinator":
        os.makedirs(config.data_dir, exist_ok=True)
        event_logger = EventLogger(config.event_log_path)
        registry = NodeRegistry(config.registry_path, hot_name=config.hot_node_name)
        factory = partition_factory or remote_partition_factory(config)
        hot = SQLitePartition(
            config.hot_db_path, name=config.hot_node_name, enforce_replaceable=True
        )
        store = PartitionedStore.from_registry(
            registry,
            hot,
            factory,
            tag_index=TagIndex(config.tags_db_path),
            query_timeout=config.query_timeout,
            event_logger=event_logger,
        )
        mesh = mesh or MeshGateway.from_config(config, event_logger)
        topology = TopologyManager(
            registry, store, mesh, factory, event_logger=event_logger
        )
        archiver = ArchiveMover(store, registry, event_logger=event_logger)
        logger.info(
            "coordinator ready with %d partition(s) from %s",
            len(store.partitions()),
            config.registry_path,
        )
        return cls(config, registry, store, mesh, topology, archiver, event_logger)

    def close(self) -> None:
        self.store.close()
        if self.store.tag_index is not None:
            self.store.tag_index.close()
        self.event_logger.close()
