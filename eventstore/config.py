"""Coordinator configuration.

Values default to environment variables so the same settings drive the CLI,
the API and the storage node launcher:

    EVENTSTORE_DATA_DIR   directory for registry.json, hot.db, tags.db, log
    HOT_NODE_NAME         name of the local hot partition (default ``hot``)
    YGG_CONFIG            mesh daemon JSON config holding AllowedPublicKeys
    YGG_CONTAINER         container restarted to reload the daemon
    YGG_RELOAD_CMD        reload command, overrides the container restart
    YGGDRASILCTL          control binary used to query self identity
    MESH_TIMEOUT          seconds allowed for daemon commands
    REMOTE_TIMEOUT        seconds allowed per remote partition call
    QUERY_TIMEOUT         seconds allowed per partition during fan-out
    STORAGE_PORT          default gRPC port of storage nodes
    FETCH_SIZE            rows fetched per round trip from a storage node
    DB_USER               user presented to storage nodes
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field

DEFAULT_STORAGE_PORT = 7100
DEFAULT_FETCH_SIZE = 1000
DEFAULT_BATCH_SIZE = 5000
DEFAULT_BATCH_WINDOW = 86400


def _env_float(env, name: str, default: float) -> float:
    value = env.get(name)
    return float(value) if value not in (None, "") else default


def _env_int(env, name: str, default: int) -> int:
    value = env.get(name)
    return int(value) if value not in (None, "") else default


@dataclass
class CoordinatorConfig:
    data_dir: str = "."
    hot_node_name: str = "hot"
    ygg_config: str = "./yggdrasil-config/yggdrasil.conf"
    ygg_container: str = "nostream-yggdrasil"
    reload_command: list[str] = field(default_factory=list)
    ctl_command: list[str] = field(default_factory=lambda: ["yggdrasilctl", "-json", "getself"])
    mesh_timeout: float = 30.0
    remote_timeout: float = 10.0
    query_timeout: float = 5.0
    storage_port: int = DEFAULT_STORAGE_PORT
    fetch_size: int = DEFAULT_FETCH_SIZE
    db_user: str = "nostr_ts_relay"

    def __post_init__(self) -> None:
        if not self.reload_command:
            self.reload_command = ["docker", "restart", self.ygg_container]

    @property
    def registry_path(self) -> str:
        return os.path.join(self.data_dir, "registry.json")

    @property
    def hot_db_path(self) -> str:
        return os.path.join(self.data_dir, "hot.db")

    @property
    def tags_db_path(self) -> str:
        return os.path.join(self.data_dir, "tags.db")

    @property
    def event_log_path(self) -> str:
        return os.path.join(self.data_dir, "event_log.txt")

    @classmethod
    def from_env(cls, env=None, **overrides) -> "CoordinatorConfig":
        env = os.environ if env is None else env
        reload_cmd = env.get("YGG_RELOAD_CMD")
        ctl = env.get("YGGDRASILCTL", "yggdrasilctl")
        values = dict(
            data_dir=env.get("EVENTSTORE_DATA_DIR", "."),
            hot_node_name=env.get("HOT_NODE_NAME", "hot"),
            ygg_config=env.get("YGG_CONFIG", "./yggdrasil-config/yggdrasil.conf"),
            ygg_container=env.get("YGG_CONTAINER", "nostream-yggdrasil"),
            reload_command=shlex.split(reload_cmd) if reload_cmd else [],
            ctl_command=[ctl, "-json", "getself"],
            mesh_timeout=_env_float(env, "MESH_TIMEOUT", 30.0),
            remote_timeout=_env_float(env, "REMOTE_TIMEOUT", 10.0),
            query_timeout=_env_float(env, "QUERY_TIMEOUT", 5.0),
            storage_port=_env_int(env, "STORAGE_PORT", DEFAULT_STORAGE_PORT),
            fetch_size=_env_int(env, "FETCH_SIZE", DEFAULT_FETCH_SIZE),
            db_user=env.get("DB_USER", "nostr_ts_relay"),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
