import logging
import os
import sys
from typing import Optional, Union


def is_rich_enabled() -> bool:
    """Check if rich log rendering was requested through the environment."""
    return os.environ.get("EDGEDISPATCH_RICH_UI", "false").lower() in (
        "true",
        "1",
        "yes",
    )


def setup_logging(
    level: Union[int, str] = logging.INFO, stream=sys.stdout, fmt: Optional[str] = None
):
    """
    Sets up the root logger with a stream handler and basic formatting.
    Uses rich's RichHandler when EDGEDISPATCH_RICH_UI is set.
    Does nothing if handlers are already configured.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    if not root_logger.hasHandlers():
        if is_rich_enabled():
            from rich.logging import RichHandler

            handler = RichHandler(rich_tracebacks=True, show_path=False)
            handler.setFormatter(logging.Formatter("%(message)s"))
        else:
            if fmt is None:
                if level == logging.DEBUG:
                    fmt = "%(asctime)s | %(levelname)-5s | %(name)s | %(filename)s:%(lineno)d | %(message)s"
                else:
                    fmt = "%(asctime)s | %(levelname)-5s | %(message)s"

            handler = logging.StreamHandler(stream)
            handler.setFormatter(logging.Formatter(fmt))

        root_logger.setLevel(level)
        root_logger.addHandler(handler)

    # Optionally allow log level override via env var
    env_level = os.environ.get("LOG_LEVEL")
    if env_level:
        root_logger.setLevel(env_level.upper())

    # httpx logs every request at INFO, too noisy next to heartbeats
    logging.getLogger("httpx").setLevel(logging.WARNING)
