"""Job records and the pending-work queue.

The store exclusively owns job snapshots and the FIFO of pending job ids.
All mutations run under one ``asyncio.Lock`` so ``dequeue_next`` hands each
job to at most one dispatch worker.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Set

from pydantic import ValidationError

from edgedispatch.core.utils.file_lock import FileLockError, file_lock
from edgedispatch.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    PersistenceError,
)
from edgedispatch.models import Job, JobStatus, utc_now

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Contract shared by every job store backend."""

    @abstractmethod
    async def enqueue(self, job: Job) -> None:
        """Persist a new PENDING job and append it to the pending queue.

        Raises:
            PersistenceError: If the backend fails or the id already exists.
        """

    @abstractmethod
    async def dequeue_next(self) -> Optional[Job]:
        """Atomically pop the head of the pending queue, or None when empty."""

    @abstractmethod
    async def requeue_front(self, job: Job) -> None:
        """Put a dequeued PENDING job back at the head of the queue."""

    @abstractmethod
    async def get(self, job_id: str) -> Job:
        """Current snapshot of a job.

        Raises:
            JobNotFoundError: If the id is unknown.
        """

    @abstractmethod
    async def update(self, job: Job) -> Job:
        """Overwrite the stored job, stamping ``updated_at``.

        Raises:
            JobNotFoundError: If the id is unknown.
            InvalidTransitionError: If the status change breaks the lifecycle.
            PersistenceError: If the backend fails.
        """

    @abstractmethod
    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        """Snapshots of all jobs, oldest first, optionally filtered by status."""

    @abstractmethod
    async def pending_count(self) -> int:
        """Number of job ids waiting in the pending queue."""

    @abstractmethod
    async def wait_for_work(self, timeout: float) -> bool:
        """Suspend until the queue is non-empty or ``timeout`` elapses.

        Returns:
            True if work is available, False on timeout.
        """


class InMemoryJobStore(JobStore):
    """Process-local job store.

    Subclasses add durability by overriding :meth:`_persist`, which runs
    under the store lock after every mutation. A failing ``_persist`` rolls
    the mutation back before the error propagates.
    """

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._pending: Deque[str] = deque()
        self._queued: Set[str] = set()
        self._lock = asyncio.Lock()
        self._work_available = asyncio.Event()

    async def _persist(self) -> None:
        pass

    def _signal_work(self) -> None:
        if self._pending:
            self._work_available.set()
        else:
            self._work_available.clear()

    async def enqueue(self, job: Job) -> None:
        if job.status != JobStatus.PENDING:
            raise InvalidTransitionError(
                job.id, f"only pending jobs can be enqueued, got {job.status.value}"
            )

        async with self._lock:
            if job.id in self._jobs:
                raise PersistenceError(f"Job '{job.id}' already exists")

            self._jobs[job.id] = job.model_copy(deep=True)
            self._pending.append(job.id)
            self._queued.add(job.id)
            try:
                await self._persist()
            except PersistenceError:
                del self._jobs[job.id]
                self._pending.pop()
                self._queued.discard(job.id)
                raise

            self._signal_work()

        logger.info(f"Job {job.id} ({job.task}) enqueued")

    async def dequeue_next(self) -> Optional[Job]:
        async with self._lock:
            if not self._pending:
                self._signal_work()
                return None

            job_id = self._pending.popleft()
            self._queued.discard(job_id)
            try:
                await self._persist()
            except PersistenceError:
                self._pending.appendleft(job_id)
                self._queued.add(job_id)
                raise

            self._signal_work()
            return self._jobs[job_id].model_copy(deep=True)

    async def requeue_front(self, job: Job) -> None:
        async with self._lock:
            current = self._jobs.get(job.id)
            if current is None:
                raise JobNotFoundError(job.id)
            if current.status != JobStatus.PENDING:
                raise InvalidTransitionError(
                    job.id,
                    f"only pending jobs can be requeued, stored status is "
                    f"{current.status.value}",
                )
            if job.id in self._queued:
                logger.debug(f"Job {job.id} already queued, requeue ignored")
                return

            self._pending.appendleft(job.id)
            self._queued.add(job.id)
            try:
                await self._persist()
            except PersistenceError:
                self._pending.popleft()
                self._queued.discard(job.id)
                raise

            self._signal_work()

        logger.debug(f"Job {job.id} requeued at front")

    async def get(self, job_id: str) -> Job:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.model_copy(deep=True)

    async def update(self, job: Job) -> Job:
        async with self._lock:
            current = self._jobs.get(job.id)
            if current is None:
                raise JobNotFoundError(job.id)

            if (
                job.task != current.task
                or job.arguments != current.arguments
                or job.created_at != current.created_at
            ):
                raise InvalidTransitionError(
                    job.id, "task, arguments and created_at cannot change"
                )

            if not current.status.can_transition_to(job.status):
                raise InvalidTransitionError(
                    job.id,
                    f"cannot move from {current.status.value} to {job.status.value}",
                )

            # updated_at never moves backward, even if the wall clock does
            updated_at = max(utc_now(), current.updated_at)
            stored = job.model_copy(update={"updated_at": updated_at}, deep=True)
            self._jobs[job.id] = stored

            queue_index = None
            if stored.status != JobStatus.PENDING and job.id in self._queued:
                queue_index = self._pending.index(job.id)
                del self._pending[queue_index]
                self._queued.discard(job.id)

            try:
                await self._persist()
            except PersistenceError:
                self._jobs[job.id] = current
                if queue_index is not None:
                    self._pending.insert(queue_index, job.id)
                    self._queued.add(job.id)
                raise

            self._signal_work()
            return stored.model_copy(deep=True)

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        async with self._lock:
            jobs = [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if status is None or job.status == status
            ]
        return sorted(jobs, key=lambda j: j.created_at)

    async def pending_count(self) -> int:
        async with self._lock:
            return len(self._pending)

    async def wait_for_work(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._work_available.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False


class FileJobStore(InMemoryJobStore):
    """Job store that keeps a JSON snapshot on disk.

    Snapshot layout::

        {"jobs": {"<id>": {...job...}}, "pending": ["<id>", ...]}

    Every mutation rewrites the snapshot under an exclusive file lock and
    swaps it in with ``os.replace``. On load, PENDING jobs missing from the
    queue (dequeued when the process died) go back to its front.
    """

    def __init__(self, path: Path, lock_timeout: float = 10.0):
        super().__init__()
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug(f"No job snapshot at {self.path}, starting empty")
            return

        try:
            with file_lock(self.path, exclusive=False, timeout=self.lock_timeout):
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            jobs = {
                job_id: Job.model_validate(data)
                for job_id, data in raw.get("jobs", {}).items()
            }
            pending = list(raw.get("pending", []))
        except (OSError, FileLockError, ValueError, ValidationError) as e:
            raise PersistenceError(
                f"Failed to load job snapshot from {self.path}: {e}"
            ) from e

        queued: List[str] = []
        for job_id in pending:
            job = jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING or job_id in queued:
                logger.warning(f"Dropping stale pending entry {job_id} from snapshot")
                continue
            queued.append(job_id)

        orphans = sorted(
            (
                job
                for job in jobs.values()
                if job.status == JobStatus.PENDING and job.id not in queued
            ),
            key=lambda j: j.created_at,
        )
        if orphans:
            logger.info(f"Restoring {len(orphans)} in-flight pending job(s) to queue")

        self._jobs = jobs
        self._pending = deque([job.id for job in orphans] + queued)
        self._queued = set(self._pending)
        self._signal_work()
        logger.info(
            f"Loaded {len(self._jobs)} job(s), {len(self._pending)} pending, "
            f"from {self.path}"
        )

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "jobs": {
                job_id: job.model_dump(mode="json") for job_id, job in self._jobs.items()
            },
            "pending": list(self._pending),
        }

    def _write_snapshot(self, snapshot: Dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with file_lock(self.path, exclusive=True, timeout=self.lock_timeout):
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(snapshot, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)

    async def _persist(self) -> None:
        try:
            snapshot = self._snapshot()
        except (TypeError, ValueError) as e:
            # PydanticSerializationError is a ValueError
            logger.error(f"Job snapshot for {self.path} is not serializable: {e}")
            raise PersistenceError(f"Job snapshot is not serializable: {e}") from e

        try:
            await asyncio.to_thread(self._write_snapshot, snapshot)
        except (OSError, FileLockError) as e:
            logger.error(f"Failed to save job snapshot to {self.path}: {e}")
            raise PersistenceError(f"Failed to save job snapshot: {e}") from e
