"""Logging setup for vodclip.

Call ``setup_logging()`` once from the entry point; modules just use
``logging.getLogger(__name__)``. Records carry the id of the clip job being
served (``%(job_id)s``), or ``-`` outside a job.
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import Dict, Iterable, Optional

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [job=%(job_id)s]: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# uvicorn's own loggers get the same handlers so server output is uniform.
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

_current_job: ContextVar[str] = ContextVar("vodclip_job_id", default="-")
_CONFIGURED = False


def bind_job(job_id: str) -> None:
    """Tag log records from the current task (and tasks it spawns) with ``job_id``."""
    _current_job.set(job_id)


class JobIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "job_id"):
            record.job_id = _current_job.get()
        return True


def _parse_module_levels(spec: str) -> Dict[str, int]:
    """Parse ``VC_LOG_MODULE_LEVELS``.

    Example: ``"ffmpeg=DEBUG;vodclip.server:WARNING"``. Bare names are taken
    relative to the ``vodclip`` package; unknown levels are skipped.
    """
    levels: Dict[str, int] = {}
    for part in spec.replace(";", ",").split(","):
        name, sep, level_name = part.replace(":", "=", 1).partition("=")
        name, level_name = name.strip(), level_name.strip().upper()
        if not sep or not name or not level_name:
            continue
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            continue
        if name != "vodclip" and not name.startswith("vodclip."):
            name = f"vodclip.{name}"
        levels[name] = level
    return levels


def _make_handlers(log_file: Optional[Path], format_string: str) -> Iterable[logging.Handler]:
    formatter = logging.Formatter(format_string, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        # Permissive so per-module overrides can enable DEBUG selectively.
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(formatter)
        handler.addFilter(JobIdFilter())
    return handlers


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    format_string: Optional[str] = None,
) -> None:
    """Configure the ``vodclip`` and uvicorn loggers.

    Args:
        level: Level for the vodclip package (default: INFO)
        log_file: Optional file to mirror log output into
        format_string: Custom format; may use ``%(job_id)s``
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    handlers = list(_make_handlers(log_file, format_string or DEFAULT_FORMAT))
    for name in ("vodclip",) + _SERVER_LOGGERS:
        logger = logging.getLogger(name)
        logger.handlers.clear()
        for handler in handlers:
            logger.addHandler(handler)
        logger.propagate = False
    logging.getLogger("vodclip").setLevel(level)

    for name, lvl in _parse_module_levels(os.getenv("VC_LOG_MODULE_LEVELS", "")).items():
        logging.getLogger(name).setLevel(lvl)

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``vodclip`` namespace (``"cli"`` -> ``"vodclip.cli"``)."""
    if name != "vodclip" and not name.startswith("vodclip."):
        name = f"vodclip.{name}"
    return logging.getLogger(name)
