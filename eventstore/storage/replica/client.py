from __future__ import annotations

import os

import grpc
from grpc_health.v1 import health_pb2, health_pb2_grpc

from ...errors import PartitionUnavailable
from ...model import EventRecord, Filter
from ...sql.serialization import RowSerializer
from ..base import InsertResult, Partition
from . import METHODS, PASSWORD_HEADER, SERVICE_NAME, USER_HEADER, method_path, pack_rows


def grpc_target(address: str, default_port: int) -> str:
    """Turn a mesh address (optionally with port) into a gRPC target."""
    if address.startswith("["):
        return address if "]:" in address else f"{address}:{default_port}"
    if address.count(":") > 1:
        return f"[{address}]:{default_port}"
    if ":" in address:
        return address
    return f"{address}:{default_port}"


class RemotePartition(Partition):
    """Partition whose rows live on a storage node reached over gRPC.

    Every call carries a deadline so a hung node cannot block callers
    indefinitely; transport failures surface as ``PartitionUnavailable``.
    """

    local = False

    def __init__(
        self,
        name: str,
        target: str,
        *,
        user: str | None = None,
        password: str | None = None,
        timeout: float = 10.0,
        fetch_size: int = 1000,
    ) -> None:
        self.name = name
        self.target = target
        self.timeout = timeout
        self.fetch_size = max(1, int(fetch_size))
        self._metadata = []
        if user is not None:
            self._metadata.append((USER_HEADER, user))
        if password is not None:
            self._metadata.append((PASSWORD_HEADER, password))
        self.channel = None
        self._calls = {}
        self._ensure_channel()
        if hasattr(os, "register_at_fork"):
            os.register_at_fork(after_in_child=self._reset_channel)

    def _ensure_channel(self):
        if self.channel is None:
            self.channel = grpc.insecure_channel(self.target)
            self._calls = {
                m: self.channel.unary_unary(
                    method_path(m),
                    request_serializer=RowSerializer.dumps,
                    response_deserializer=RowSerializer.loads,
                )
                for m in METHODS
            }

    def _reset_channel(self):
        if self.channel is not None:
            self.channel.close()
        self.channel = None
        self._calls = {}

    def _call(self, method: str, payload: dict, timeout: float | None = None) -> dict:
        self._ensure_channel()
        try:
            return self._calls[method](
                payload,
                timeout=timeout if timeout is not None else self.timeout,
                metadata=self._metadata,
            )
        except grpc.RpcError as exc:
            raise PartitionUnavailable(self.name, exc) from exc

    # writes -------------------------------------------------------------
    def insert(self, event: EventRecord) -> InsertResult:
        return InsertResult(self.insert_many([event]) == 1)

    def insert_many(self, events: list[EventRecord]) -> int:
        inserted = 0
        start = 0
        while start < len(events):
            chunk, _ = pack_rows(events[start:start + self.fetch_size])
            resp = self._call("Insert", {"events": chunk})
            inserted += int(resp.get("inserted", 0))
            start += len(chunk)
        return inserted

    def delete_range(self, lo: int | None, hi: int | None) -> int:
        return int(self._call("Delete", {"lo": lo, "hi": hi}).get("deleted", 0))

    def delete(self, event_id: str) -> EventRecord | None:
        data = self._call("DeleteOne", {"id": event_id}).get("event")
        return EventRecord.from_dict(data) if data else None

    # reads --------------------------------------------------------------
    def select(
        self,
        flt: Filter,
        ids: set[str] | None = None,
        *,
        after: tuple[int, str] | None = None,
        page: int | None = None,
    ) -> list[EventRecord]:
        """Page through matching rows, ``fetch_size`` rows per round trip."""
        wanted = flt.limit
        if page is not None:
            wanted = page if wanted is None else min(wanted, page)
        payload = {"filter": flt.to_dict(), "ids": sorted(ids) if ids is not None else None}
        rows: list[EventRecord] = []
        while wanted is None or len(rows) < wanted:
            size = self.fetch_size if wanted is None else min(self.fetch_size, wanted - len(rows))
            payload["after"] = list(after) if after else None
            payload["page"] = size
            resp = self._call("Select", payload)
            batch = [EventRecord.from_dict(d) for d in resp.get("events", [])]
            rows.extend(batch)
            if not batch or (len(batch) < size and not resp.get("truncated")):
                break
            after = (batch[-1].created_at, batch[-1].id)
        return rows

    def count(self, lo: int | None = None, hi: int | None = None) -> int:
        return int(self._call("Count", {"lo": lo, "hi": hi}).get("count", 0))

    def bounds(self, lo: int | None = None, hi: int | None = None) -> tuple[int | None, int | None]:
        resp = self._call("Bounds", {"lo": lo, "hi": hi})
        return resp.get("min"), resp.get("max")

    def fetch(
        self,
        lo: int | None,
        hi: int | None,
        after: tuple[int, str] | None,
        limit: int,
    ) -> list[EventRecord]:
        rows: list[EventRecord] = []
        while len(rows) < limit:
            size = min(self.fetch_size, limit - len(rows))
            resp = self._call(
                "Fetch",
                {"lo": lo, "hi": hi, "after": list(after) if after else None, "limit": size},
            )
            batch = [EventRecord.from_dict(d) for d in resp.get("events", [])]
            rows.extend(batch)
            if not batch or (len(batch) < size and not resp.get("truncated")):
                break
            after = (batch[-1].created_at, batch[-1].id)
        return rows

    def ping(self) -> bool:
        """Return True if the node's health service reports SERVING."""
        self._ensure_channel()
        stub = health_pb2_grpc.HealthStub(self.channel)
        try:
            resp = stub.Check(
                health_pb2.HealthCheckRequest(service=SERVICE_NAME), timeout=self.timeout
            )
        except grpc.RpcError:
            return False
        return resp.status == health_pb2.HealthCheckResponse.SERVING

    def close(self) -> None:
        self._reset_channel()
