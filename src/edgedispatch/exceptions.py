"""Error taxonomy for the dispatch engine."""


class DispatchError(Exception):
    """Base exception for job dispatch and node liveness errors."""

    pass


class PersistenceError(DispatchError):
    """Raised when the backing job store is unreachable or a write fails.

    Transient: the dispatcher retries with backoff, the submission boundary
    reports it as retryable.
    """

    pass


class JobNotFoundError(DispatchError):
    """Raised when a referenced job id does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class InvalidTransitionError(DispatchError):
    """Raised when an update would violate the job lifecycle.

    Internal-consistency fault: the dispatcher never requests such an update
    in normal operation.
    """

    def __init__(self, job_id: str, detail: str):
        self.job_id = job_id
        self.detail = detail
        super().__init__(f"Job '{job_id}': {detail}")


class NoAvailableNodeError(DispatchError):
    """Raised when no edge node has a fresh enough heartbeat."""

    pass


class ExecutionFailure(DispatchError):
    """A job failed on (or on the way to) an edge node. Terminal for the job."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)
