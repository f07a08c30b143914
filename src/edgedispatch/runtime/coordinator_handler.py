"""FastAPI app exposing job submission, job status and node heartbeats.

Endpoints:
    POST /jobs              submit {task, arguments}, returns the PENDING job
    GET  /jobs              list jobs, optional ?status= filter
    GET  /jobs/{job_id}     current snapshot of one job
    POST /nodes/heartbeat   node self-registration {address}
    GET  /nodes             known nodes with derived liveness
    GET  /health            queue depth and live node count

When a dispatcher is given, the app lifespan starts and stops it together
with the node eviction loop.
"""

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, field_validator

from edgedispatch.config import DispatchConfig
from edgedispatch.exceptions import JobNotFoundError, PersistenceError
from edgedispatch.models import Job, JobStatus, normalize_node_address, utc_now

from .dispatcher import Dispatcher
from .execution_client import HttpExecutionClient
from .job_store import FileJobStore, InMemoryJobStore, JobStore
from .node_registry import NodeRegistry

logger = logging.getLogger(__name__)


class SubmitJobRequest(BaseModel):
    task: str = Field(min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)


class HeartbeatRequest(BaseModel):
    """Heartbeat carrying the node's own callable address."""

    address: str

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        return normalize_node_address(value)


class NodeView(BaseModel):
    address: str
    last_heartbeat: datetime
    alive: bool


async def evict_stale_nodes(
    registry: NodeRegistry,
    config: DispatchConfig,
    clock: Callable[[], datetime] = utc_now,
) -> None:
    """Periodically drop node records older than the eviction age."""
    while True:
        await asyncio.sleep(config.liveness_timeout)
        await registry.forget_stale(clock(), config.node_eviction_age)


def create_coordinator_app(
    store: JobStore,
    registry: NodeRegistry,
    dispatcher: Optional[Dispatcher] = None,
    config: Optional[DispatchConfig] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """Create the coordinator FastAPI app around injected components.

    Args:
        store: Job store backing submission and status lookups
        registry: Node registry fed by heartbeats
        dispatcher: Optional dispatcher run for the lifetime of the app
        config: Dispatch configuration (liveness timeout, eviction age)
        clock: Time source for heartbeats and liveness

    Returns:
        Configured FastAPI application
    """
    config = config or DispatchConfig()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        eviction = asyncio.create_task(evict_stale_nodes(registry, config, clock))
        if dispatcher is not None:
            await dispatcher.start()
        try:
            yield
        finally:
            if dispatcher is not None:
                await dispatcher.stop()
                await dispatcher.client.close()
            eviction.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await eviction

    app = FastAPI(title="Edge Dispatch Coordinator", lifespan=lifespan)

    @app.post("/jobs", status_code=201, response_model=Job)
    async def submit_job(request: SubmitJobRequest) -> Job:
        job = Job.create(request.task, request.arguments, now=clock())
        try:
            await store.enqueue(job)
        except PersistenceError as e:
            logger.error(f"Failed to enqueue job {job.id}: {e}")
            raise HTTPException(
                status_code=503,
                detail=f"Job store unavailable, retry later: {e}",
                headers={"Retry-After": "1"},
            )
        return job

    @app.get("/jobs", response_model=List[Job])
    async def list_jobs(status: Optional[JobStatus] = None) -> List[Job]:
        return await store.list_jobs(status)

    @app.get("/jobs/{job_id}", response_model=Job)
    async def get_job(job_id: str) -> Job:
        try:
            return await store.get(job_id)
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/nodes/heartbeat")
    async def heartbeat(request: HeartbeatRequest) -> Dict[str, Any]:
        record = await registry.record_heartbeat(request.address, clock())
        return {
            "address": record.address,
            "last_heartbeat": record.last_heartbeat.isoformat(),
        }

    @app.get("/nodes", response_model=List[NodeView])
    async def list_nodes() -> List[NodeView]:
        now = clock()
        return [
            NodeView(
                address=record.address,
                last_heartbeat=record.last_heartbeat,
                alive=record.is_alive(now, config.liveness_timeout),
            )
            for record in await registry.nodes()
        ]

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        live = await registry.live_nodes(clock(), config.liveness_timeout)
        return {
            "status": "ok",
            "pending": await store.pending_count(),
            "live_nodes": len(live),
        }

    return app


def create_app_from_env() -> FastAPI:
    """Build the full coordinator (store, registry, client, dispatcher) from env.

    Used as a uvicorn app factory by ``edgedispatch serve``.
    """
    config = DispatchConfig.from_env()
    if config.store_path:
        store: JobStore = FileJobStore(config.store_path)
    else:
        store = InMemoryJobStore()
    registry = NodeRegistry()
    client = HttpExecutionClient(timeout=config.execution_timeout)
    dispatcher = Dispatcher(store, registry, client, config)
    logger.info(
        f"Coordinator configured: liveness timeout {config.liveness_timeout}s, "
        f"{config.workers} worker(s), store "
        f"{config.store_path or 'in-memory'}"
    )
    return create_coordinator_app(store, registry, dispatcher, config)
