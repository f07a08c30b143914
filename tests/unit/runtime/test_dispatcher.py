"""Tests for the dispatch state machine and worker pool."""

import asyncio
import json
import logging
from typing import List

import pytest

from edgedispatch.config import DispatchConfig
from edgedispatch.exceptions import InvalidTransitionError, PersistenceError
from edgedispatch.models import Failure, Job, JobStatus, Success
from edgedispatch.runtime.dispatcher import (
    INTERRUPTED_RESULT,
    DispatchResult,
    Dispatcher,
)
from edgedispatch.runtime.execution_client import ExecutionClient
from edgedispatch.runtime.job_store import FileJobStore, InMemoryJobStore

NODE_A = "http://node-a:9000"
NODE_B = "http://node-b:9000"


class RecordingStore(InMemoryJobStore):
    """In-memory store that remembers every accepted update."""

    def __init__(self):
        super().__init__()
        self.updates: List[Job] = []

    async def update(self, job: Job) -> Job:
        stored = await super().update(job)
        self.updates.append(stored)
        return stored

    def statuses_of(self, job_id: str) -> List[JobStatus]:
        return [j.status for j in self.updates if j.id == job_id]


class FlakyStore(RecordingStore):
    """Store whose next ``fail_updates`` updates raise PersistenceError."""

    def __init__(self, fail_updates: int):
        super().__init__()
        self.fail_updates = fail_updates
        self.update_attempts = 0

    async def update(self, job: Job) -> Job:
        self.update_attempts += 1
        if self.fail_updates > 0:
            self.fail_updates -= 1
            raise PersistenceError("store unreachable")
        return await super().update(job)


class RejectingStore(RecordingStore):
    """Store that refuses the first move to RUNNING."""

    def __init__(self):
        super().__init__()
        self.rejected = False

    async def update(self, job: Job) -> Job:
        if job.status == JobStatus.RUNNING and not self.rejected:
            self.rejected = True
            raise InvalidTransitionError(job.id, "concurrent modification")
        return await super().update(job)


class BrokenOnceStore(InMemoryJobStore):
    """Store whose first dequeue fails with an unexpected error."""

    def __init__(self):
        super().__init__()
        self.broken = True

    async def dequeue_next(self):
        if self.broken:
            self.broken = False
            raise RuntimeError("corrupted queue entry")
        return await super().dequeue_next()


class RaisingClient(ExecutionClient):
    async def execute(self, job, node_address, timeout=None):
        raise RuntimeError("socket exploded")


async def wait_for_status(store, job_id: str, status: JobStatus, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        job = await store.get(job_id)
        if job.status == status:
            return job
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"job {job_id} stuck in {job.status}, wanted {status}")
        await asyncio.sleep(0.01)


@pytest.fixture
def recording_store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def dispatcher(recording_store, registry, scripted_client, fast_config, clock):
    return Dispatcher(recording_store, registry, scripted_client, fast_config, clock)


class TestDispatchNext:
    """Single passes of the dispatch state machine."""

    @pytest.mark.asyncio
    async def test_idle_when_queue_empty(self, dispatcher, scripted_client):
        assert await dispatcher.dispatch_next() == DispatchResult.IDLE
        assert scripted_client.calls == []

    @pytest.mark.asyncio
    async def test_no_live_node_keeps_job_pending(
        self, dispatcher, recording_store, scripted_client
    ):
        job = Job.create("resize", {"w": 100})
        await recording_store.enqueue(job)

        for _ in range(3):
            assert await dispatcher.dispatch_next() == DispatchResult.NO_NODE

        stored = await recording_store.get(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.result is None
        assert await recording_store.pending_count() == 1
        assert recording_store.updates == []
        assert scripted_client.calls == []

    @pytest.mark.asyncio
    async def test_success_walks_running_then_completed(
        self, dispatcher, recording_store, registry, scripted_client, clock
    ):
        await registry.record_heartbeat(NODE_A, clock())
        clock.advance(1)
        job = Job.create("resize", {"w": 100}, now=clock())
        await recording_store.enqueue(job)

        assert await dispatcher.dispatch_next() == DispatchResult.COMPLETED

        stored = await recording_store.get(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result == {"w": 100}
        assert recording_store.statuses_of(job.id) == [
            JobStatus.RUNNING,
            JobStatus.COMPLETED,
        ]
        assert scripted_client.calls == [(job.id, NODE_A)]

    @pytest.mark.asyncio
    async def test_failure_outcome_is_terminal(
        self, dispatcher, recording_store, registry, clock
    ):
        await registry.record_heartbeat(NODE_A, clock())
        job = Job.create("broken")
        await recording_store.enqueue(job)

        assert await dispatcher.dispatch_next() == DispatchResult.FAILED

        stored = await recording_store.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.result == "node error"

        with pytest.raises(InvalidTransitionError):
            await recording_store.update(stored.with_status(JobStatus.COMPLETED, "late"))
        assert (await recording_store.get(job.id)).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_stale_node_is_not_used(
        self, dispatcher, recording_store, registry, scripted_client, clock
    ):
        await registry.record_heartbeat(NODE_A, clock())
        clock.advance(10)
        job = Job.create("resize")
        await recording_store.enqueue(job)

        assert await dispatcher.dispatch_next() == DispatchResult.NO_NODE
        assert (await recording_store.get(job.id)).status == JobStatus.PENDING
        assert scripted_client.calls == []

    @pytest.mark.asyncio
    async def test_requeued_job_keeps_its_place(
        self, dispatcher, recording_store, registry, scripted_client, clock
    ):
        first = Job.create("resize", {"n": 1})
        second = Job.create("resize", {"n": 2})
        await recording_store.enqueue(first)
        await recording_store.enqueue(second)

        assert await dispatcher.dispatch_next() == DispatchResult.NO_NODE

        await registry.record_heartbeat(NODE_A, clock())
        await dispatcher.dispatch_next()
        await dispatcher.dispatch_next()

        assert [job_id for job_id, _ in scripted_client.calls] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_dispatch_is_fifo_and_round_robin(
        self, dispatcher, recording_store, registry, scripted_client, clock
    ):
        await registry.record_heartbeat(NODE_A, clock())
        await registry.record_heartbeat(NODE_B, clock())
        jobs = [Job.create("resize", {"n": i}) for i in range(4)]
        for job in jobs:
            await recording_store.enqueue(job)

        for _ in jobs:
            await dispatcher.dispatch_next()

        assert scripted_client.calls == [
            (jobs[0].id, NODE_A),
            (jobs[1].id, NODE_B),
            (jobs[2].id, NODE_A),
            (jobs[3].id, NODE_B),
        ]

    @pytest.mark.asyncio
    async def test_execution_timeout_becomes_failure(
        self, recording_store, registry, client_factory, clock
    ):
        config = DispatchConfig(execution_timeout=0.05, backoff_base=0.001)
        client = client_factory(delay=5)
        dispatcher = Dispatcher(recording_store, registry, client, config, clock)
        await registry.record_heartbeat(NODE_A, clock())
        job = Job.create("slow")
        await recording_store.enqueue(job)

        assert await dispatcher.dispatch_next() == DispatchResult.FAILED

        stored = await recording_store.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert "timed out" in stored.result
        assert recording_store.statuses_of(job.id) == [
            JobStatus.RUNNING,
            JobStatus.FAILED,
        ]

    @pytest.mark.asyncio
    async def test_client_exception_becomes_failure(
        self, recording_store, registry, fast_config, clock
    ):
        dispatcher = Dispatcher(
            recording_store, registry, RaisingClient(), fast_config, clock
        )
        await registry.record_heartbeat(NODE_A, clock())
        job = Job.create("resize")
        await recording_store.enqueue(job)

        assert await dispatcher.dispatch_next() == DispatchResult.FAILED

        stored = await recording_store.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert "socket exploded" in stored.result

    def test_unknown_outcome_type_is_failure(self):
        job = Job.create("resize").with_status(JobStatus.RUNNING)

        final, result = Dispatcher._apply_outcome(job, "done")

        assert result == DispatchResult.FAILED
        assert final.status == JobStatus.FAILED
        assert "unknown execution outcome" in final.result

    def test_unserializable_result_is_failure(self):
        job = Job.create("resize").with_status(JobStatus.RUNNING)

        final, result = Dispatcher._apply_outcome(job, Success(object()))

        assert result == DispatchResult.FAILED
        assert "not JSON serializable" in final.result

    @pytest.mark.asyncio
    async def test_rejected_start_returns_job_to_queue(
        self, registry, scripted_client, fast_config, clock
    ):
        store = RejectingStore()
        dispatcher = Dispatcher(store, registry, scripted_client, fast_config, clock)
        await registry.record_heartbeat(NODE_A, clock())
        job = Job.create("resize")
        await store.enqueue(job)

        with pytest.raises(InvalidTransitionError):
            await dispatcher.dispatch_next()

        assert (await store.get(job.id)).status == JobStatus.PENDING
        assert await store.pending_count() == 1
        assert scripted_client.calls == []

        assert await dispatcher.dispatch_next() == DispatchResult.COMPLETED

    @pytest.mark.asyncio
    async def test_store_failures_are_retried_without_status_change(
        self, registry, scripted_client, fast_config, clock
    ):
        store = FlakyStore(fail_updates=2)
        dispatcher = Dispatcher(store, registry, scripted_client, fast_config, clock)
        await registry.record_heartbeat(NODE_A, clock())
        job = Job.create("resize", {"w": 1})
        await store.enqueue(job)

        assert await dispatcher.dispatch_next() == DispatchResult.COMPLETED

        assert store.update_attempts == 4
        assert store.statuses_of(job.id) == [JobStatus.RUNNING, JobStatus.COMPLETED]
        assert len(scripted_client.calls) == 1

    @pytest.mark.asyncio
    async def test_dequeue_failure_propagates(
        self, registry, scripted_client, fast_config, clock
    ):
        class BrokenQueue(InMemoryJobStore):
            async def dequeue_next(self):
                raise PersistenceError("store unreachable")

        dispatcher = Dispatcher(
            BrokenQueue(), registry, scripted_client, fast_config, clock
        )
        with pytest.raises(PersistenceError):
            await dispatcher.dispatch_next()


class TestRecovery:
    """Jobs left RUNNING by an earlier dispatcher."""

    @pytest.mark.asyncio
    async def test_running_jobs_are_failed(self, dispatcher, recording_store):
        interrupted = Job.create("resize")
        untouched = Job.create("resize")
        await recording_store.enqueue(interrupted)
        await recording_store.enqueue(untouched)
        await recording_store.dequeue_next()
        await recording_store.update(interrupted.with_status(JobStatus.RUNNING))

        assert await dispatcher.recover_interrupted() == [interrupted.id]

        stored = await recording_store.get(interrupted.id)
        assert stored.status == JobStatus.FAILED
        assert stored.result == INTERRUPTED_RESULT
        assert (await recording_store.get(untouched.id)).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_nothing_to_recover(self, dispatcher):
        assert await dispatcher.recover_interrupted() == []


class TestWorkerPool:
    """Dispatcher start/stop and concurrent workers."""

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, dispatcher):
        await dispatcher.start()
        try:
            assert dispatcher.running
            with pytest.raises(RuntimeError, match="already running"):
                await dispatcher.start()
        finally:
            await dispatcher.stop()
        assert not dispatcher.running

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, dispatcher):
        await dispatcher.stop()
        assert not dispatcher.running

    @pytest.mark.asyncio
    async def test_workers_pick_up_submitted_jobs(
        self, dispatcher, recording_store, registry, clock
    ):
        await registry.record_heartbeat(NODE_A, clock())
        await dispatcher.start()
        try:
            job = Job.create("resize", {"w": 100})
            await recording_store.enqueue(job)
            stored = await wait_for_status(recording_store, job.id, JobStatus.COMPLETED)
        finally:
            await dispatcher.stop()

        assert stored.result == {"w": 100}

    @pytest.mark.asyncio
    async def test_job_waits_for_a_node_then_runs(
        self, dispatcher, recording_store, registry, clock
    ):
        await dispatcher.start()
        try:
            job = Job.create("resize")
            await recording_store.enqueue(job)
            await asyncio.sleep(0.05)
            assert (await recording_store.get(job.id)).status == JobStatus.PENDING

            await registry.record_heartbeat(NODE_A, clock())
            await wait_for_status(recording_store, job.id, JobStatus.COMPLETED)
        finally:
            await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_each_job_runs_exactly_once(self, registry, client_factory, clock):
        store = RecordingStore()
        client = client_factory(delay=0.005)
        config = DispatchConfig(
            workers=4, poll_interval=0.01, backoff_base=0.001, backoff_max=0.01
        )
        dispatcher = Dispatcher(store, registry, client, config, clock)
        await registry.record_heartbeat(NODE_A, clock())
        await registry.record_heartbeat(NODE_B, clock())

        jobs = [Job.create("resize", {"n": i}) for i in range(20)]
        for job in jobs:
            await store.enqueue(job)

        await dispatcher.start()
        try:
            for job in jobs:
                await wait_for_status(store, job.id, JobStatus.COMPLETED, timeout=5.0)
        finally:
            await dispatcher.stop()

        executed = [job_id for job_id, _ in client.calls]
        assert sorted(executed) == sorted(job.id for job in jobs)
        running = [j for j in store.updates if j.status == JobStatus.RUNNING]
        assert len(running) == len(jobs)
        for job in jobs:
            assert store.statuses_of(job.id) == [
                JobStatus.RUNNING,
                JobStatus.COMPLETED,
            ]

    @pytest.mark.asyncio
    async def test_stop_lets_busy_worker_finish(
        self, recording_store, registry, client_factory, fast_config, clock
    ):
        client = client_factory(delay=0.2)
        dispatcher = Dispatcher(recording_store, registry, client, fast_config, clock)
        await registry.record_heartbeat(NODE_A, clock())
        job = Job.create("resize")
        await recording_store.enqueue(job)

        await dispatcher.start()
        while not client.calls:
            await asyncio.sleep(0.005)
        await dispatcher.stop(grace_period=2.0)

        assert (await recording_store.get(job.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_start_recovers_interrupted_jobs(self, dispatcher, recording_store):
        job = Job.create("resize")
        await recording_store.enqueue(job)
        await recording_store.dequeue_next()
        await recording_store.update(job.with_status(JobStatus.RUNNING))

        await dispatcher.start()
        await dispatcher.stop()

        assert (await recording_store.get(job.id)).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_unserializable_result_does_not_stall_pool(
        self, tmp_path, registry, client_factory, clock
    ):
        path = tmp_path / "jobs.json"
        store = FileJobStore(path)
        client = client_factory(outcomes={"opaque": Success(object())})
        config = DispatchConfig(
            workers=1, poll_interval=0.01, backoff_base=0.001, backoff_max=0.01
        )
        dispatcher = Dispatcher(store, registry, client, config, clock)
        await registry.record_heartbeat(NODE_A, clock())
        bad = Job.create("opaque")
        good = Job.create("resize", {"ok": 1})
        await store.enqueue(bad)
        await store.enqueue(good)

        await dispatcher.start()
        try:
            await wait_for_status(store, good.id, JobStatus.COMPLETED)
            assert dispatcher.running
        finally:
            await dispatcher.stop()

        stored_bad = await store.get(bad.id)
        assert stored_bad.status == JobStatus.FAILED
        assert "not JSON serializable" in stored_bad.result
        on_disk = json.loads(path.read_text())["jobs"]
        assert on_disk[bad.id]["status"] == "failed"
        assert on_disk[good.id]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_worker_survives_unexpected_error(
        self, registry, scripted_client, clock, caplog
    ):
        store = BrokenOnceStore()
        config = DispatchConfig(
            workers=1, poll_interval=0.01, backoff_base=0.001, backoff_max=0.01
        )
        dispatcher = Dispatcher(store, registry, scripted_client, config, clock)
        await registry.record_heartbeat(NODE_A, clock())
        job = Job.create("resize")
        await store.enqueue(job)

        with caplog.at_level(logging.ERROR, logger="edgedispatch.runtime.dispatcher"):
            await dispatcher.start()
            try:
                await wait_for_status(store, job.id, JobStatus.COMPLETED)
                assert dispatcher.running
            finally:
                await dispatcher.stop()

        assert "unexpected error during dispatch" in caplog.text
        assert "corrupted queue entry" in caplog.text

    @pytest.mark.asyncio
    async def test_default_grace_covers_terminal_write(
        self, registry, client_factory, clock
    ):
        store = FlakyStore(fail_updates=0)
        client = client_factory(delay=5)
        config = DispatchConfig(
            workers=1,
            execution_timeout=0.2,
            poll_interval=0.01,
            backoff_base=0.1,
            backoff_max=1.0,
        )
        dispatcher = Dispatcher(store, registry, client, config, clock)
        await registry.record_heartbeat(NODE_A, clock())
        job = Job.create("slow")
        await store.enqueue(job)

        await dispatcher.start()
        while not client.calls:
            await asyncio.sleep(0.005)
        # Terminal write needs two retries after the execution times out
        store.fail_updates = 2
        await dispatcher.stop()

        stored = await store.get(job.id)
        assert stored.status == JobStatus.FAILED
        assert "timed out" in stored.result
