"""Dispatch loop that matches pending jobs to live edge nodes.

Each pass of a worker:
    1. dequeue the next pending job (idle until work arrives if none)
    2. select a live node; with none, put the job back at the queue front
       and back off, the job stays PENDING
    3. mark the job RUNNING and execute it on the node
    4. record COMPLETED or FAILED from the outcome, both terminal

Store failures are retried with backoff and never change a job's status.
Execution failures (including timeouts) are terminal and never retried.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Set

from edgedispatch.config import DispatchConfig
from edgedispatch.core.utils.backoff import get_backoff_delay
from edgedispatch.exceptions import (
    DispatchError,
    InvalidTransitionError,
    JobNotFoundError,
    NoAvailableNodeError,
    PersistenceError,
)
from edgedispatch.models import Failure, Job, JobStatus, Outcome, Success, utc_now

from .execution_client import ExecutionClient
from .job_store import JobStore
from .node_registry import NodeRegistry
from .retry_manager import retry_with_backoff

logger = logging.getLogger(__name__)

INTERRUPTED_RESULT = "interrupted: coordinator restarted"


class DispatchResult(Enum):
    """What a single dispatch pass did."""

    IDLE = "idle"
    NO_NODE = "no_node"
    COMPLETED = "completed"
    FAILED = "failed"


class Dispatcher:
    """Pool of dispatch workers sharing one job store and node registry.

    The dispatcher keeps no job or node state of its own. All collaborators
    are injected.
    """

    def __init__(
        self,
        store: JobStore,
        registry: NodeRegistry,
        client: ExecutionClient,
        config: Optional[DispatchConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.registry = registry
        self.client = client
        self.config = config or DispatchConfig()
        self._clock = clock
        self._tasks: List[asyncio.Task] = []
        self._busy: Set[int] = set()
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def _persist(self, func, *args):
        """Run a store call, retrying PersistenceError until it goes through."""
        return await retry_with_backoff(
            func,
            *args,
            max_attempts=None,
            base_delay=self.config.backoff_base,
            max_delay=self.config.backoff_max,
        )

    async def dispatch_next(self) -> DispatchResult:
        """Run one pass of the dispatch state machine.

        Raises:
            PersistenceError: If the job could not be dequeued.
            InvalidTransitionError: If the store rejects a status change. A job
                rejected on its way to RUNNING is put back at the queue front
                while it is still PENDING.
        """
        job = await self.store.dequeue_next()
        if job is None:
            return DispatchResult.IDLE

        try:
            node = await self.registry.select_node(
                self._clock(), self.config.liveness_timeout
            )
        except NoAvailableNodeError as e:
            await self._persist(self.store.requeue_front, job)
            logger.debug(f"Job {job.id} stays pending: {e}")
            return DispatchResult.NO_NODE

        try:
            running = await self._persist(
                self.store.update, job.with_status(JobStatus.RUNNING)
            )
        except InvalidTransitionError:
            await self._restore_pending(job)
            raise

        logger.info(f"Job {job.id}: pending -> running on {node}")

        outcome = await self._execute(running, node)
        final, result = self._apply_outcome(running, outcome)

        await self._persist(self.store.update, final)

        if result == DispatchResult.COMPLETED:
            logger.info(f"Job {job.id}: running -> completed on {node}")
        else:
            logger.warning(
                f"Job {job.id}: running -> failed on {node}: {final.result}"
            )
        return result

    async def _restore_pending(self, job: Job) -> None:
        try:
            current = await self._persist(self.store.get, job.id)
        except JobNotFoundError:
            return
        if current.status == JobStatus.PENDING:
            await self._persist(self.store.requeue_front, current)
            logger.warning(f"Job {job.id} could not start, returned to the queue")

    async def _execute(self, job: Job, node: str) -> Outcome:
        timeout = self.config.execution_timeout
        try:
            # Bound the call even if a client ignores its own timeout
            return await asyncio.wait_for(
                self.client.execute(job, node, timeout=timeout), timeout
            )
        except asyncio.TimeoutError:
            return Failure(f"execution timed out after {timeout}s")
        except Exception as e:
            logger.error(
                f"Execution client raised for job {job.id} on {node}: {e}",
                exc_info=True,
            )
            return Failure(f"execution client error: {type(e).__name__}: {e}")

    @staticmethod
    def _apply_outcome(job: Job, outcome: Outcome) -> tuple[Job, DispatchResult]:
        if isinstance(outcome, Success):
            completed = job.with_status(JobStatus.COMPLETED, outcome.result)
            try:
                completed.model_dump_json()
            except ValueError as e:
                outcome = Failure(f"result is not JSON serializable: {e}")
            else:
                return completed, DispatchResult.COMPLETED
        elif not isinstance(outcome, Failure):
            outcome = Failure(f"unknown execution outcome: {outcome!r}")

        return job.with_status(JobStatus.FAILED, outcome.error), DispatchResult.FAILED

    async def recover_interrupted(self) -> List[str]:
        """Fail jobs left RUNNING by a previous dispatcher.

        A RUNNING job with no live dispatcher may or may not have run on its
        node; it is closed out as FAILED rather than executed again.

        Returns:
            Ids of the jobs that were failed
        """
        recovered = []
        for job in await self._persist(self.store.list_jobs, JobStatus.RUNNING):
            await self._persist(
                self.store.update, job.with_status(JobStatus.FAILED, INTERRUPTED_RESULT)
            )
            logger.warning(f"Job {job.id}: running -> failed ({INTERRUPTED_RESULT})")
            recovered.append(job.id)
        return recovered

    async def start(self) -> None:
        """Recover interrupted jobs and launch the worker pool."""
        if self.running:
            raise RuntimeError("Dispatcher already running")

        self._stopping.clear()
        await self.recover_interrupted()
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"dispatch-worker-{i}")
            for i in range(self.config.workers)
        ]
        logger.info(f"Dispatcher started with {self.config.workers} worker(s)")

    async def stop(self, grace_period: Optional[float] = None) -> None:
        """Stop the worker pool.

        Idle workers are cancelled right away. Workers in the middle of a
        dispatch get ``grace_period`` seconds to record their outcome before
        they are cancelled too. The default covers a full execution plus one
        maximum backoff for the terminal write.
        """
        if not self._tasks:
            return

        self._stopping.set()
        for index, task in enumerate(self._tasks):
            if index not in self._busy:
                task.cancel()

        if grace_period is None:
            grace_period = self.config.execution_timeout + self.config.backoff_max
        _, still_running = await asyncio.wait(self._tasks, timeout=grace_period)
        for task in still_running:
            logger.warning(f"Cancelling {task.get_name()} mid-dispatch")
            task.cancel()

        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._busy.clear()
        logger.info("Dispatcher stopped")

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), delay)
        except asyncio.TimeoutError:
            pass

    def _backoff(self, attempt: int) -> float:
        return get_backoff_delay(
            attempt, self.config.backoff_base, self.config.backoff_max
        )

    async def _worker(self, index: int) -> None:
        store_failures = 0
        no_node_attempts = 0

        while not self._stopping.is_set():
            self._busy.add(index)
            try:
                result = await self.dispatch_next()
            except PersistenceError as e:
                result = None
                delay = self._backoff(store_failures)
                store_failures += 1
                logger.warning(
                    f"Worker {index}: job store unavailable ({e}), "
                    f"retrying in {delay:.2f}s"
                )
            except DispatchError as e:
                # Consistency faults: InvalidTransitionError, JobNotFoundError
                logger.error(f"Worker {index}: dispatch aborted: {e}")
                continue
            except Exception as e:
                result = None
                delay = self._backoff(store_failures)
                store_failures += 1
                logger.error(
                    f"Worker {index}: unexpected error during dispatch: {e}",
                    exc_info=True,
                )
            finally:
                self._busy.discard(index)

            if result is None:
                await self._sleep(delay)
                continue

            store_failures = 0
            if result == DispatchResult.IDLE:
                await self.store.wait_for_work(self.config.poll_interval)
            elif result == DispatchResult.NO_NODE:
                delay = self._backoff(no_node_attempts)
                no_node_attempts += 1
                logger.debug(f"Worker {index}: no live node, backing off {delay:.2f}s")
                await self._sleep(delay)
            else:
                no_node_attempts = 0
