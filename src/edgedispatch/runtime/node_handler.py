"""Edge node agent: runs dispatched jobs and heartbeats to the coordinator.

The agent registers itself by heartbeating its own advertised address, so
the coordinator never has to guess a callback address from the inbound
connection.
"""

import asyncio
import contextlib
import inspect
import logging
import os
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import FastAPI, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from edgedispatch.config import DEFAULT_HEARTBEAT_INTERVAL, DispatchConfig
from edgedispatch.exceptions import ExecutionFailure
from edgedispatch.models import normalize_node_address

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Dict[str, Any]], Any]


class ExecuteRequest(BaseModel):
    id: str
    task: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


def echo_task(arguments: Dict[str, Any]) -> Dict[str, Any]:
    return dict(arguments)


async def sleep_task(arguments: Dict[str, Any]) -> Dict[str, Any]:
    seconds = arguments.get("seconds", 1)
    if not isinstance(seconds, (int, float)) or seconds < 0:
        raise ExecutionFailure(f"'seconds' must be a non-negative number, got {seconds!r}")
    await asyncio.sleep(seconds)
    return {"slept": seconds}


BUILTIN_TASKS: Dict[str, TaskHandler] = {
    "echo": echo_task,
    "sleep": sleep_task,
}


async def run_task(handler: TaskHandler, arguments: Dict[str, Any]) -> Any:
    """Run a sync or async task handler without blocking the event loop."""
    if inspect.iscoroutinefunction(handler):
        return await handler(arguments)
    return await asyncio.to_thread(handler, arguments)


def create_node_app(
    tasks: Optional[Dict[str, TaskHandler]] = None,
    heartbeat: Optional["HeartbeatSender"] = None,
    auth_token: Optional[str] = None,
) -> FastAPI:
    """Create the edge node FastAPI app.

    Args:
        tasks: Mapping of task name -> handler taking the arguments dict.
            Defaults to the built-in ``echo`` and ``sleep`` tasks.
        heartbeat: Optional heartbeat loop run for the lifetime of the app
        auth_token: Bearer token required on /execute. Defaults to the
            EDGEDISPATCH_NODE_TOKEN environment variable.

    Returns:
        Configured FastAPI application
    """
    registry = dict(BUILTIN_TASKS if tasks is None else tasks)
    auth_token = auth_token or os.getenv("EDGEDISPATCH_NODE_TOKEN")

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        if heartbeat is not None:
            heartbeat.start()
        try:
            yield
        finally:
            if heartbeat is not None:
                await heartbeat.stop()

    app = FastAPI(title="Edge Dispatch Node", lifespan=lifespan)

    @app.post("/execute")
    async def execute(
        request: ExecuteRequest, authorization: Optional[str] = Header(None)
    ):
        """Run one job and report the outcome.

        Returns:
            {"success": true, "result": ...}
            or
            {"success": false, "error": "error message"}
        """
        if auth_token and authorization != f"Bearer {auth_token}":
            return JSONResponse(
                status_code=401, content={"success": False, "error": "unauthorized"}
            )

        handler = registry.get(request.task)
        if handler is None:
            return {
                "success": False,
                "error": f"Task '{request.task}' not found. "
                f"Available: {sorted(registry)}",
            }

        logger.info(f"Running job {request.id} ({request.task})")
        try:
            result = await run_task(handler, request.arguments)
        except ExecutionFailure as e:
            logger.warning(f"Job {request.id} failed: {e.detail}")
            return {"success": False, "error": e.detail}
        except Exception as e:
            logger.error(f"Job {request.id} raised: {e}", exc_info=True)
            return {"success": False, "error": f"{type(e).__name__}: {e}"}

        return {"success": True, "result": result}

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "tasks": sorted(registry)}

    return app


class HeartbeatSender:
    """Posts ``{"address": advertise_address}`` to the coordinator periodically.

    A failed heartbeat is logged and retried on the next tick; the
    coordinator's liveness timeout absorbs a few misses.
    """

    def __init__(
        self,
        coordinator_url: str,
        advertise_address: str,
        interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.coordinator_url = coordinator_url.rstrip("/")
        self.advertise_address = advertise_address.rstrip("/")
        self.interval = interval
        self._transport = transport
        self._task: Optional[asyncio.Task] = None

    async def send_once(self, client: httpx.AsyncClient) -> bool:
        """Send a single heartbeat.

        Returns:
            True if the coordinator accepted it
        """
        try:
            response = await client.post(
                f"{self.coordinator_url}/nodes/heartbeat",
                json={"address": self.advertise_address},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Heartbeat to {self.coordinator_url} failed: {e}")
            return False

        if response.status_code >= 400:
            logger.warning(
                f"Heartbeat rejected by {self.coordinator_url}: "
                f"{response.status_code} - {response.text[:200]}"
            )
            return False
        return True

    async def run(self) -> None:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.interval), transport=self._transport
        ) as client:
            while True:
                await self.send_once(client)
                await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="heartbeat-sender")
            logger.info(
                f"Heartbeating {self.advertise_address} to {self.coordinator_url} "
                f"every {self.interval}s"
            )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None


def create_node_app_from_env() -> FastAPI:
    """Build the edge node app from environment variables.

    Environment Variables:
        EDGEDISPATCH_COORDINATOR_URL: Coordinator base URL. Heartbeats are
            disabled when unset.
        EDGEDISPATCH_ADVERTISE_ADDRESS: Address the coordinator should call
            this node on (e.g. http://10.0.0.5:9000).
        EDGEDISPATCH_HEARTBEAT_INTERVAL: Seconds between heartbeats.
    """
    config = DispatchConfig.from_env()
    coordinator_url = os.getenv("EDGEDISPATCH_COORDINATOR_URL")
    advertise_address = os.getenv("EDGEDISPATCH_ADVERTISE_ADDRESS")

    heartbeat = None
    if coordinator_url:
        if not advertise_address:
            raise ValueError(
                "EDGEDISPATCH_ADVERTISE_ADDRESS is required when "
                "EDGEDISPATCH_COORDINATOR_URL is set"
            )
        heartbeat = HeartbeatSender(
            coordinator_url,
            normalize_node_address(advertise_address),
            config.heartbeat_interval,
        )
    else:
        logger.warning("EDGEDISPATCH_COORDINATOR_URL not set, heartbeats disabled")

    return create_node_app(heartbeat=heartbeat)
