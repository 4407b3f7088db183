"""gRPC storage node serving one partition of the event table."""

from __future__ import annotations

import hmac
import logging
from concurrent import futures

import grpc
from grpc_health.v1 import health, health_pb2, health_pb2_grpc

from ...model import EventRecord, Filter
from ...sql.serialization import RowSerializer
from ...utils.event_logger import EventLogger
from ..base import Partition
from . import METHODS, PASSWORD_HEADER, SERVICE_NAME, USER_HEADER, pack_rows

logger = logging.getLogger(__name__)


class StorageService:
    """Service exposing partition operations to the coordinator."""

    def __init__(
        self,
        partition: Partition,
        *,
        user: str | None = None,
        password: str | None = None,
        event_logger: EventLogger | None = None,
    ) -> None:
        self._partition = partition
        self._user = user
        self._password = password
        self.event_logger = event_logger

    # ------------------------------------------------------------------
    def _authorize(self, context) -> None:
        if self._password is None:
            return
        metadata = dict(context.invocation_metadata() or ())
        user_ok = self._user is None or metadata.get(USER_HEADER) == self._user
        password_ok = hmac.compare_digest(
            str(metadata.get(PASSWORD_HEADER, "")), self._password
        )
        if not (user_ok and password_ok):
            context.abort(grpc.StatusCode.UNAUTHENTICATED, "invalid storage credentials")

    def Insert(self, request, context):
        events = [EventRecord.from_dict(d) for d in request.get("events", [])]
        inserted = self._partition.insert_many(events)
        if self.event_logger and inserted:
            self.event_logger.log(f"Inserted {inserted} of {len(events)} rows")
        return {"inserted": inserted}

    def Select(self, request, context):
        flt = Filter.from_dict(request.get("filter") or {})
        ids = request.get("ids")
        after = request.get("after")
        rows = self._partition.select(
            flt,
            set(ids) if ids is not None else None,
            after=tuple(after) if after else None,
            page=request.get("page"),
        )
        events, truncated = pack_rows(rows)
        return {"events": events, "truncated": truncated}

    def Count(self, request, context):
        return {"count": self._partition.count(request.get("lo"), request.get("hi"))}

    def Bounds(self, request, context):
        lo, hi = self._partition.bounds(request.get("lo"), request.get("hi"))
        return {"min": lo, "max": hi}

    def Fetch(self, request, context):
        after = request.get("after")
        rows = self._partition.fetch(
            request.get("lo"),
            request.get("hi"),
            tuple(after) if after else None,
            int(request.get("limit", 1000)),
        )
        events, truncated = pack_rows(rows)
        return {"events": events, "truncated": truncated}

    def Delete(self, request, context):
        deleted = self._partition.delete_range(request.get("lo"), request.get("hi"))
        if self.event_logger:
            self.event_logger.log(
                f"Deleted {deleted} rows in [{request.get('lo')}, {request.get('hi')})"
            )
        return {"deleted": deleted}

    def DeleteOne(self, request, context):
        event = self._partition.delete(request["id"])
        return {"event": event.to_dict() if event else None}

    def Ping(self, request, context):
        return {"ok": self._partition.ping()}


def _guarded(service: StorageService, method):
    def handler(request, context):
        service._authorize(context)
        return method(request, context)

    return handler


def build_server(
    service: StorageService,
    host: str = "localhost",
    port: int = 0,
    *,
    max_workers: int = 10,
) -> tuple[grpc.Server, int]:
    """Create (but do not start) a server; return it with its bound port."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=max_workers))
    handlers = {
        name: grpc.unary_unary_rpc_method_handler(
            _guarded(service, getattr(service, name)),
            request_deserializer=RowSerializer.loads,
            response_serializer=RowSerializer.dumps,
        )
        for name in METHODS
    }
    server.add_generic_rpc_handlers(
        (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
    )
    health_servicer = health.HealthServicer()
    health_pb2_grpc.add_HealthServicer_to_server(health_servicer, server)
    health_servicer.set(SERVICE_NAME, health_pb2.HealthCheckResponse.SERVING)
    health_servicer.set("", health_pb2.HealthCheckResponse.SERVING)
    bound = server.add_insecure_port(f"{host}:{port}")
    return server, bound


def run_storage_node(
    partition: Partition,
    host: str = "[::]",
    port: int = 7100,
    *,
    user: str | None = None,
    password: str | None = None,
    event_logger: EventLogger | None = None,
) -> None:
    """Serve ``partition`` until the process is terminated."""
    service = StorageService(partition, user=user, password=password, event_logger=event_logger)
    server, bound = build_server(service, host, port)
    server.start()
    logger.info("storage node %s serving on %s:%s", partition.name, host, bound)
    if event_logger:
        event_logger.log(f"Storage node {partition.name} started on port {bound}")
    try:
        server.wait_for_termination()
    finally:
        partition.close()
