"""
Test configuration and fixtures for edgedispatch tests.

Provides shared fixtures for:
- Job stores and node registries
- A controllable clock
- A scripted execution client
- Environment variable management
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from edgedispatch.config import DispatchConfig
from edgedispatch.models import Failure, Job, Outcome, Success
from edgedispatch.runtime.execution_client import ExecutionClient
from edgedispatch.runtime.job_store import InMemoryJobStore
from edgedispatch.runtime.node_registry import NodeRegistry

T0 = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class ScriptedExecutionClient(ExecutionClient):
    """Execution client returning outcomes chosen per task name.

    Records every (job id, node) call. Tasks without a scripted outcome
    succeed with the job's arguments as result.
    """

    def __init__(self, outcomes: Optional[Dict[str, Outcome]] = None, delay: float = 0):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.calls: List[Tuple[str, str]] = []
        self.closed = False

    async def execute(
        self, job: Job, node_address: str, timeout: Optional[float] = None
    ) -> Outcome:
        self.calls.append((job.id, node_address))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.outcomes.get(job.task, Success(job.arguments))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def registry() -> NodeRegistry:
    return NodeRegistry()


@pytest.fixture
def fast_config() -> DispatchConfig:
    """Dispatch config with tiny delays so loops turn quickly in tests."""
    return DispatchConfig(
        liveness_timeout=5.0,
        execution_timeout=2.0,
        workers=2,
        poll_interval=0.01,
        backoff_base=0.001,
        backoff_max=0.01,
    )


@pytest.fixture
def scripted_client() -> ScriptedExecutionClient:
    return ScriptedExecutionClient(outcomes={"broken": Failure("node error")})


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove every EDGEDISPATCH_* variable for the duration of a test."""
    import os

    for key in list(os.environ):
        if key.startswith("EDGEDISPATCH_"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def client_factory():
    """Build scripted execution clients with custom outcomes."""
    return ScriptedExecutionClient
