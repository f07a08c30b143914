"""Configuration for the dispatch engine, coordinator and edge node agent."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Liveness: three missed heartbeats at the default 5s interval
DEFAULT_LIVENESS_TIMEOUT = 15.0  # seconds
DEFAULT_HEARTBEAT_INTERVAL = 5.0  # seconds
DEFAULT_EVICTION_FACTOR = 10

# Dispatch loop
DEFAULT_EXECUTION_TIMEOUT = 30.0  # seconds
DEFAULT_WORKERS = 4
DEFAULT_POLL_INTERVAL = 1.0  # seconds
DEFAULT_BACKOFF_BASE = 0.5  # seconds
DEFAULT_BACKOFF_MAX = 10.0  # seconds


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {raw!r}")
    return value


@dataclass
class DispatchConfig:
    """Tunables shared by the dispatcher, node registry and boundaries."""

    liveness_timeout: float = DEFAULT_LIVENESS_TIMEOUT
    execution_timeout: float = DEFAULT_EXECUTION_TIMEOUT
    workers: int = DEFAULT_WORKERS
    poll_interval: float = DEFAULT_POLL_INTERVAL
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_max: float = DEFAULT_BACKOFF_MAX
    node_eviction_age: Optional[float] = None
    store_path: Optional[Path] = None
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL

    def __post_init__(self):
        if self.node_eviction_age is None:
            self.node_eviction_age = self.liveness_timeout * DEFAULT_EVICTION_FACTOR
        if self.node_eviction_age < self.liveness_timeout:
            raise ValueError(
                f"node_eviction_age ({self.node_eviction_age}s) must not be shorter "
                f"than liveness_timeout ({self.liveness_timeout}s)"
            )

    @classmethod
    def from_env(cls) -> "DispatchConfig":
        """Load configuration from environment variables.

        Environment variables:
        - EDGEDISPATCH_LIVENESS_TIMEOUT: Max heartbeat age of a live node (default: 15)
        - EDGEDISPATCH_EXECUTION_TIMEOUT: Bound on one remote execution (default: 30)
        - EDGEDISPATCH_WORKERS: Concurrent dispatch workers (default: 4)
        - EDGEDISPATCH_POLL_INTERVAL: Idle wait before re-checking the queue (default: 1)
        - EDGEDISPATCH_BACKOFF_BASE: Base delay for infrastructure backoff (default: 0.5)
        - EDGEDISPATCH_BACKOFF_MAX: Ceiling for infrastructure backoff (default: 10)
        - EDGEDISPATCH_NODE_EVICTION_AGE: Age after which node records are dropped
          (default: 10 x liveness timeout)
        - EDGEDISPATCH_STORE_PATH: JSON snapshot file; unset keeps jobs in memory
        - EDGEDISPATCH_HEARTBEAT_INTERVAL: Edge node heartbeat period (default: 5)

        Returns:
            DispatchConfig initialized from environment variables.

        Raises:
            ValueError: If a variable holds an unusable value.
        """
        liveness_timeout = _env_float(
            "EDGEDISPATCH_LIVENESS_TIMEOUT", DEFAULT_LIVENESS_TIMEOUT
        )
        eviction_raw = os.getenv("EDGEDISPATCH_NODE_EVICTION_AGE")
        node_eviction_age = (
            _env_float("EDGEDISPATCH_NODE_EVICTION_AGE", 0.0) if eviction_raw else None
        )
        store_path = os.getenv("EDGEDISPATCH_STORE_PATH")

        return cls(
            liveness_timeout=liveness_timeout,
            execution_timeout=_env_float(
                "EDGEDISPATCH_EXECUTION_TIMEOUT", DEFAULT_EXECUTION_TIMEOUT
            ),
            workers=_env_int("EDGEDISPATCH_WORKERS", DEFAULT_WORKERS),
            poll_interval=_env_float(
                "EDGEDISPATCH_POLL_INTERVAL", DEFAULT_POLL_INTERVAL
            ),
            backoff_base=_env_float("EDGEDISPATCH_BACKOFF_BASE", DEFAULT_BACKOFF_BASE),
            backoff_max=_env_float("EDGEDISPATCH_BACKOFF_MAX", DEFAULT_BACKOFF_MAX),
            node_eviction_age=node_eviction_age,
            store_path=Path(store_path) if store_path else None,
            heartbeat_interval=_env_float(
                "EDGEDISPATCH_HEARTBEAT_INTERVAL", DEFAULT_HEARTBEAT_INTERVAL
            ),
        )
