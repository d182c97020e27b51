"""
Proctoring logger - console setup and one-line session event records.
"""

import logging
import sys
from typing import Any

_FORMAT = "[%(asctime)s] %(levelname)s %(name)s :: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Attach a stdout handler to the package logger once."""
    root = logging.getLogger("proctoring")
    root.setLevel(level.upper())
    if root.handlers:
        return
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    root.addHandler(handler)


def log_proctor_event(session_id: str, event: str, level: str = "info", **details: Any) -> None:
    """
    Log a proctoring event as a single key=value line.

    Args:
        session_id: Session the event belongs to
        event: Short event name (session_start, event_recorded, late_event_dropped, ...)
        level: Log level (debug, info, warning, error)
        details: Extra fields appended to the line
    """
    message = f"[PROCTOR] session={session_id} event={event}"
    if details:
        message += " " + " ".join(f"{k}={v}" for k, v in details.items())

    if level == "debug":
        logger.debug(message)
    elif level == "warning":
        logger.warning(message)
    elif level == "error":
        logger.error(message)
    else:
        logger.info(message)
