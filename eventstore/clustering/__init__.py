"""Range routing, node registry and topology management."""

# Re-export commonly used names without importing modules to avoid
# circular dependencies during package initialization.
from importlib import import_module

_EXPORTS = {
    "KeyRange": "ranges",
    "RangeTable": "ranges",
    "FULL_RANGE": "ranges",
    "coverage_gaps": "ranges",
    "Credentials": "registry",
    "Node": "registry",
    "NodeRegistry": "registry",
    "TagIndex": "tag_index",
    "PartitionedStore": "partitioned_store",
    "QueryResult": "partitioned_store",
    "NarrowReport": "partitioned_store",
    "TopologyManager": "topology",
    "ReconcileReport": "topology",
    "RemovalResult": "topology",
    "StepReport": "topology",
}


def __getattr__(name):
    if name in _EXPORTS:
        mod = import_module(f"{__name__}.{_EXPORTS[name]}")
        return getattr(mod, name)
    raise AttributeError(name)
