"""Tiered event store: a local hot tier plus range-partitioned storage nodes."""

__version__ = "0.1.0"
