"""Job and node records shared by the store, registry and dispatcher."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_node_address(address: str) -> str:
    """Validate a node's callable address and strip any trailing slash.

    Raises:
        ValueError: If ``address`` is not an http(s) URL with a host.
    """
    parsed = urlparse(address)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(
            "node address must be an http(s) URL such as http://host:port, "
            f"got {address!r}"
        )
    return address.rstrip("/")


class JobStatus(str, Enum):
    """Lifecycle of a job: PENDING -> RUNNING -> COMPLETED | FAILED."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    def can_transition_to(self, target: "JobStatus") -> bool:
        """Check whether a stored job in this status may be updated to ``target``.

        Non-terminal statuses may be rewritten in place (same status). Terminal
        statuses accept nothing.
        """
        if self.is_terminal:
            return False
        if target == self:
            return True
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class Job(BaseModel):
    """Snapshot of a submitted unit of work.

    ``id``, ``task``, ``arguments`` and ``created_at`` are fixed at submission.
    Updated snapshots are produced with :meth:`with_status`.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=128)
    task: str = Field(min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    result: Optional[Any] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        task: str,
        arguments: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> "Job":
        """Build a new PENDING job with a fresh id, as the submission boundary does."""
        now = now or utc_now()
        return cls(
            id=uuid.uuid4().hex,
            task=task,
            arguments=arguments or {},
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    def with_status(self, status: JobStatus, result: Any = None) -> "Job":
        return self.model_copy(update={"status": status, "result": result})

    def to_payload(self) -> Dict[str, Any]:
        """Body sent to an edge node."""
        return {"id": self.id, "task": self.task, "arguments": self.arguments}


@dataclass
class NodeRecord:
    """Last heartbeat seen from an edge node. Liveness is derived, never stored."""

    address: str
    last_heartbeat: datetime

    def age(self, now: datetime) -> float:
        return (now - self.last_heartbeat).total_seconds()

    def is_alive(self, now: datetime, timeout: float) -> bool:
        return self.age(now) < timeout


@dataclass(frozen=True)
class Success:
    """Edge node ran the job and returned a result payload."""

    result: Any = None


@dataclass(frozen=True)
class Failure:
    """Edge node reported an error, or the call failed or timed out."""

    error: str


Outcome = Union[Success, Failure]
