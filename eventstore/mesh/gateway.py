"""Control of the mesh daemon's peer allow-list.

The daemon keeps its allow-list in ``AllowedPublicKeys`` of a JSON config
file and only applies changes after a reload. An empty list means the daemon
accepts any peer.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import threading
from dataclasses import dataclass

from ..errors import ConfigCorrupt, DaemonUnreachable, InvalidPublicKey
from ..utils.event_logger import EventLogger

logger = logging.getLogger(__name__)

ALLOWED_KEYS_FIELD = "AllowedPublicKeys"
_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def validate_public_key(key: str) -> str:
    """Return ``key`` normalized to lower case, or raise ``InvalidPublicKey``."""
    if not isinstance(key, str) or not _KEY_RE.match(key.strip()):
        raise InvalidPublicKey(f"public key must be 64 hex characters: {key!r}")
    return key.strip().lower()


@dataclass(frozen=True)
class SelfIdentity:
    address: str
    public_key: str


@dataclass(frozen=True)
class AllowListChange:
    key: str
    changed: bool
    remaining: int

    @property
    def open(self) -> bool:
        """True when the allow-list is empty and any peer may connect."""
        return self.remaining == 0


class AllowListStore:
    """Allow-list persisted inside the daemon's JSON config.

    Writes go to a temporary file that replaces the config only once fully
    written; all other config keys are preserved.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    @property
    def pending_marker(self) -> str:
        return f"{self.path}.reload-pending"

    def read_config(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as fp:
                config = json.load(fp)
        except FileNotFoundError as exc:
            raise ConfigCorrupt(
                f"mesh config not found at {self.path}; has the daemon started at least once?"
            ) from exc
        except (OSError, ValueError) as exc:
            raise ConfigCorrupt(f"mesh config {self.path} is unreadable: {exc}") from exc
        if not isinstance(config, dict):
            raise ConfigCorrupt(f"mesh config {self.path} is not a JSON object")
        keys = config.get(ALLOWED_KEYS_FIELD, [])
        if keys is None:
            keys = []
        if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
            raise ConfigCorrupt(f"{ALLOWED_KEYS_FIELD} in {self.path} is not a list of keys")
        config[ALLOWED_KEYS_FIELD] = keys
        return config

    def keys(self) -> list[str]:
        return list(self.read_config()[ALLOWED_KEYS_FIELD])

    def write_keys(self, keys: list[str]) -> None:
        config = self.read_config()
        config[ALLOWED_KEYS_FIELD] = list(keys)
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as fp:
                json.dump(config, fp, indent=2)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise ConfigCorrupt(f"cannot write mesh config {self.path}: {exc}") from exc

    def mark_reload_pending(self) -> None:
        with open(self.pending_marker, "w", encoding="utf-8"):
            pass

    def clear_reload_pending(self) -> None:
        try:
            os.remove(self.pending_marker)
        except FileNotFoundError:
            pass

    def reload_pending(self) -> bool:
        return os.path.exists(self.pending_marker)


class DaemonControl:
    """Runs the daemon's reload and self-identity commands with a timeout."""

    def __init__(self, reload_command: list[str], ctl_command: list[str], timeout: float = 30.0) -> None:
        self.reload_command = list(reload_command)
        self.ctl_command = list(ctl_command)
        self.timeout = timeout

    def _run(self, cmd: list[str]) -> str:
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout, check=True
            )
        except subprocess.TimeoutExpired as exc:
            raise DaemonUnreachable(f"{cmd[0]} timed out after {self.timeout}s") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip()
            raise DaemonUnreachable(f"{cmd[0]} exited with {exc.returncode}: {detail}") from exc
        except OSError as exc:
            raise DaemonUnreachable(f"cannot run {cmd[0]}: {exc}") from exc
        return result.stdout

    def reload(self) -> None:
        self._run(self.reload_command)

    def get_self(self) -> dict:
        output = self._run(self.ctl_command)
        try:
            data = json.loads(output)
        except ValueError as exc:
            raise DaemonUnreachable(f"unexpected output from {self.ctl_command[0]}") from exc
        if not isinstance(data, dict):
            raise DaemonUnreachable(f"unexpected output from {self.ctl_command[0]}")
        return data


class MeshGateway:
    """Idempotent allow-list management for the mesh daemon.

    A reload briefly interrupts mesh connections. If a reload fails after the
    config was written, the next call reloads again even when the key change
    itself is already applied.
    """

    def __init__(
        self,
        store: AllowListStore,
        control: DaemonControl,
        *,
        event_logger: EventLogger | None = None,
    ) -> None:
        self.store = store
        self.control = control
        self.event_logger = event_logger
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, event_logger: EventLogger | None = None) -> "MeshGateway":
        return cls(
            AllowListStore(config.ygg_config),
            DaemonControl(config.reload_command, config.ctl_command, config.mesh_timeout),
            event_logger=event_logger,
        )

    def _log(self, message: str, level: int = logging.INFO) -> None:
        if self.event_logger:
            self.event_logger.log(message, level)
        else:
            logger.log(level, message)

    def _reload(self) -> None:
        self.control.reload()
        self.store.clear_reload_pending()

    def _apply(self, keys: list[str]) -> None:
        self.store.mark_reload_pending()
        self.store.write_keys(keys)
        self._reload()

    def allow(self, public_key: str) -> AllowListChange:
        key = validate_public_key(public_key)
        with self._lock:
            keys = self.store.keys()
            if key in keys:
                if self.store.reload_pending():
                    self._reload()
                self._log(f"Key {key} already in mesh allow-list; skipping update")
                return AllowListChange(key, False, len(keys))
            keys.append(key)
            self._apply(keys)
        self._log(f"Added {key} to mesh allow-list; {len(keys)} key(s) allowed")
        return AllowListChange(key, True, len(keys))

    def disallow(self, public_key: str) -> AllowListChange:
        key = validate_public_key(public_key)
        with self._lock:
            keys = self.store.keys()
            if key not in keys:
                if self.store.reload_pending():
                    self._reload()
                return AllowListChange(key, False, len(keys))
            keys = [k for k in keys if k != key]
            self._apply(keys)
        self._log(f"Removed {key} from mesh allow-list; {len(keys)} key(s) allowed")
        change = AllowListChange(key, True, len(keys))
        if change.open:
            self._log(
                "Mesh allow-list is now empty; any mesh node can peer with this coordinator",
                logging.WARNING,
            )
        return change

    def allowed(self) -> list[str]:
        return self.store.keys()

    def is_open(self) -> bool:
        return not self.store.keys()

    def self_identity(self) -> SelfIdentity:
        data = self.control.get_self()
        address = data.get("address")
        key = data.get("key") or data.get("public_key")
        if not address or not key:
            raise DaemonUnreachable("daemon did not report its address and key")
        return SelfIdentity(address=address, public_key=key)
