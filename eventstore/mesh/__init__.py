from .gateway import (
    AllowListChange,
    AllowListStore,
    DaemonControl,
    MeshGateway,
    SelfIdentity,
    validate_public_key,
)

__all__ = [
    "AllowListChange",
    "AllowListStore",
    "DaemonControl",
    "MeshGateway",
    "SelfIdentity",
    "validate_public_key",
]
