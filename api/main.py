import os
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from eventstore.archive.mover import cutoff_from_days
from eventstore.clustering.ranges import KeyRange
from eventstore.clustering.registry import Credentials
from eventstore.config import DEFAULT_BATCH_SIZE, DEFAULT_BATCH_WINDOW, CoordinatorConfig
from eventstore.coordinator import Coordinator
from eventstore.errors import (
    DaemonUnreachable,
    DuplicateName,
    EventStoreError,
    NodeNotRegistered,
    NoPartition,
    NothingToArchive,
    NotFound,
    PartitionUnavailable,
    RangeGap,
    RangeOverlap,
    TopologyInconsistency,
    ValidationError,
)
from eventstore.model import EventRecord, Filter

app = FastAPI()

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class NodeIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: str
    name: str
    password: str
    range_from: str | int = Field("MINVALUE", alias="from")
    range_to: str | int = Field("MAXVALUE", alias="to")
    public_key: str | None = None
    user: str | None = None


class EventIn(BaseModel):
    id: str
    pubkey: str
    kind: int
    created_at: int
    content: str = ""
    tags: list[list[str]] = []
    sig: str = ""
    expires_at: int | None = None


class QueryIn(BaseModel):
    filter: dict = {}
    strict: bool = False


class ArchiveIn(BaseModel):
    node: str
    cutoff: int | None = None
    older_than_days: float | None = None
    batch_size: int = DEFAULT_BATCH_SIZE
    batch_window: int = DEFAULT_BATCH_WINDOW
    dry_run: bool = False


class NarrowIn(BaseModel):
    lower_bound: int


_STATUS = [
    (TopologyInconsistency, 500),
    ((DuplicateName, RangeOverlap, RangeGap, NothingToArchive), 409),
    ((NotFound, NodeNotRegistered), 404),
    ((ValidationError, NoPartition), 422),
    ((DaemonUnreachable, PartitionUnavailable), 503),
]


@app.exception_handler(EventStoreError)
def eventstore_error_handler(request: Request, exc: EventStoreError) -> JSONResponse:
    """Translate coordinator errors into HTTP responses."""
    status = next((code for types, code in _STATUS if isinstance(exc, types)), 500)
    body = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, TopologyInconsistency):
        body["failed_step"] = exc.report.failed_step
        body["applied"] = exc.report.applied
    return JSONResponse(status_code=status, content=body)


@app.on_event("startup")
def startup_event() -> None:
    """Open the coordinator state when the API starts."""
    app.state.started = time.time()
    if getattr(app.state, "coordinator", None) is None:
        app.state.coordinator = Coordinator.from_config(CoordinatorConfig.from_env())


@app.on_event("shutdown")
def shutdown_event() -> None:
    """Close the coordinator when the API stops."""
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        coordinator.close()
        app.state.coordinator = None


def _coordinator() -> Coordinator:
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="coordinator not initialized")
    return coordinator


@app.get("/nodes")
def list_nodes() -> dict:
    """Return registered nodes with their owned and visible ranges."""
    coordinator = _coordinator()
    visible = {p.name: p.visible for p in coordinator.store.partitions()}
    nodes = []
    for node in coordinator.registry.all():
        info = node.to_dict(secrets=False)
        info["hot"] = node.name == coordinator.registry.hot_name
        info["attached"] = node.name in visible
        if node.name in visible:
            info["visible"] = visible[node.name].to_dict()
        nodes.append(info)
    return {"nodes": nodes}


@app.post("/nodes")
def add_node(body: NodeIn) -> dict:
    """Register a storage node for a key range."""
    coordinator = _coordinator()
    rng = KeyRange.parse(body.range_from, body.range_to)
    creds = Credentials(body.user or coordinator.config.db_user, body.password)
    node = coordinator.topology.add_node(body.name, body.address, creds, rng, body.public_key)
    return {"status": "ok", "node": node.to_dict(secrets=False)}


@app.delete("/nodes/{name}")
def remove_node(name: str, reclaim_by: str | None = None) -> dict:
    """Deregister a storage node; its remote data is left in place."""
    result = _coordinator().topology.remove_node(name, reclaim_by=reclaim_by)
    return {
        "status": "ok",
        "removed": result.node.name,
        "range": result.range.to_dict(),
        "reclaimed_by": result.reclaimed_by,
        "key_kept": result.key_kept,
        "mesh_open": result.mesh_open,
        "gaps": [g.to_dict() for g in result.gaps],
        "warnings": result.warnings,
    }


@app.post("/events")
def insert_event(body: EventIn) -> dict:
    """Store an event in the partition that owns its ``created_at``."""
    store = _coordinator().store
    event = EventRecord.from_dict(body.model_dump())
    inserted = store.insert(event)
    return {"inserted": inserted, "partition": store.partition_for(event.created_at)}


@app.delete("/events/{event_id}")
def delete_event(event_id: str) -> dict:
    """Remove an event from the hot tier."""
    if not _coordinator().store.delete(event_id):
        raise HTTPException(status_code=404, detail="event not found in hot tier")
    return {"status": "ok"}


@app.post("/query")
def query_events(body: QueryIn) -> dict:
    """Evaluate a filter across every partition it can touch."""
    result = _coordinator().store.query(Filter.from_dict(body.filter), strict=body.strict)
    return {
        "events": [e.to_dict() for e in result.events],
        "visited": result.visited,
        "failed": result.failed,
        "partial": result.partial,
    }


def _cutoff(body: ArchiveIn) -> int:
    if body.cutoff is not None:
        return body.cutoff
    if body.older_than_days is None:
        raise HTTPException(status_code=422, detail="cutoff or older_than_days is required")
    return cutoff_from_days(body.older_than_days)


@app.post("/archive/plan")
def plan_archive(body: ArchiveIn) -> dict:
    """Describe what an archive run would move."""
    plan = _coordinator().archiver.plan(body.node, _cutoff(body))
    return plan.to_dict()


@app.post("/archive/run")
def run_archive(body: ArchiveIn) -> dict:
    """Move aged hot rows onto the node, window by window."""
    report = _coordinator().archiver.run(
        body.node,
        _cutoff(body),
        batch_window=body.batch_window,
        batch_size=body.batch_size,
        dry_run=body.dry_run,
    )
    return report.to_dict()


@app.post("/hot/narrow")
def narrow_hot(body: NarrowIn) -> dict:
    """Raise the hot lower bound and hand the range below it on."""
    report = _coordinator().topology.narrow_hot(body.lower_bound)
    return {
        "lower_bound": report.lower_bound,
        "extended": report.extended,
        "rows_copied": report.rows_copied,
        "rows_inserted": report.rows_inserted,
        "rows_deleted": report.rows_deleted,
    }


@app.get("/check")
def check(probe: bool = True) -> dict:
    """Compare registry, routing table and mesh allow-list."""
    return _coordinator().topology.check(probe=probe).to_dict()


@app.get("/mesh/self")
def mesh_self() -> dict:
    """Return the coordinator's own mesh address and public key."""
    ident = _coordinator().mesh.self_identity()
    return {"address": ident.address, "public_key": ident.public_key}


@app.get("/cluster/events")
def cluster_events(offset: int = 0, limit: int | None = None) -> dict:
    """Return recent coordinator log entries."""
    event_logger = _coordinator().event_logger
    event_logger.sync()
    return {"events": event_logger.get_events(offset=offset, limit=limit)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=os.environ.get("API_HOST", "0.0.0.0"),
        port=int(os.environ.get("API_PORT", "8000")),
        reload=False,
    )
