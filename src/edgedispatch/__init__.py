# Load .env vars from file before everything else
from dotenv import load_dotenv

load_dotenv()

from .logger import setup_logging  # noqa: E402

setup_logging()

from typing import TYPE_CHECKING  # noqa: E402

if TYPE_CHECKING:
    from .config import DispatchConfig
    from .models import Failure, Job, JobStatus, NodeRecord, Success
    from .runtime.dispatcher import Dispatcher
    from .runtime.execution_client import HttpExecutionClient
    from .runtime.job_store import FileJobStore, InMemoryJobStore
    from .runtime.node_registry import NodeRegistry

_LAZY_IMPORTS = {
    "DispatchConfig": ".config",
    "Failure": ".models",
    "Job": ".models",
    "JobStatus": ".models",
    "NodeRecord": ".models",
    "Success": ".models",
    "Dispatcher": ".runtime.dispatcher",
    "HttpExecutionClient": ".runtime.execution_client",
    "FileJobStore": ".runtime.job_store",
    "InMemoryJobStore": ".runtime.job_store",
    "NodeRegistry": ".runtime.node_registry",
}


def __getattr__(name):
    """Lazily import core modules only when accessed."""
    module_name = _LAZY_IMPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    import importlib

    module = importlib.import_module(module_name, __name__)
    return getattr(module, name)


__all__ = list(_LAZY_IMPORTS)
