"""Logging for the engine.

All loggers live under the ``agentcore`` namespace. Nothing is written
until ``init_logging()`` installs the file handler, so embedding the
engine does not create files behind the host's back. Records carry the
id of the task that produced them (see ``bind_task``), which keeps
interleaved tasks apart in one log file.

Usage in any module:
    from .logger import get_logger
    log = get_logger("tools")
    log.info("ran %s", name)
"""

import contextvars
import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_DIR_NAME = ".agentcore_output"
LOG_FILE_NAME = "agentcore.log"
LOG_FORMAT = "%(asctime)s.%(msecs)03d | %(levelname)-5s | %(task_id)s | %(name)s | %(message)s"

_current_task: contextvars.ContextVar = contextvars.ContextVar("agentcore_task", default="-")

_root = logging.getLogger("agentcore")
_root.addHandler(logging.NullHandler())

_file_handler: Optional[RotatingFileHandler] = None


class _TaskFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.task_id = _current_task.get()
        return True


def bind_task(task_id: str) -> contextvars.Token:
    """Tag records from the current context (and tasks spawned from it) with ``task_id``."""
    return _current_task.set(task_id)


def unbind_task(token: contextvars.Token) -> None:
    _current_task.reset(token)


def log_path() -> Optional[Path]:
    """Where the file handler writes, or None before init_logging()."""
    if _file_handler is None:
        return None
    return Path(_file_handler.baseFilename)


def init_logging(workspace: Optional[str] = None, level: int = logging.DEBUG) -> Path:
    """Write ``<workspace>/.agentcore_output/agentcore.log`` (5 MB x 5 rotations).

    Calling again with another workspace moves the file handler there.
    Set AGENTCORE_DEBUG to mirror everything to stderr.
    """
    global _file_handler

    log_dir = Path(workspace or Path.cwd()) / LOG_DIR_NAME
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / LOG_FILE_NAME

    _root.setLevel(level)
    if _file_handler is not None:
        if _file_handler.baseFilename == os.path.abspath(str(path)):
            return path
        _root.removeHandler(_file_handler)
        _file_handler.close()

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    _file_handler = RotatingFileHandler(str(path), maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8")
    _file_handler.setLevel(level)
    _file_handler.setFormatter(fmt)
    _file_handler.addFilter(_TaskFilter())
    _root.addHandler(_file_handler)

    if os.environ.get("AGENTCORE_DEBUG") and not any(
        getattr(h, "_agentcore_stderr", False) for h in _root.handlers
    ):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(fmt)
        stderr_handler.addFilter(_TaskFilter())
        stderr_handler._agentcore_stderr = True
        _root.addHandler(stderr_handler)

    _root.info("logging to %s (pid=%d python=%s)", path, os.getpid(), sys.version.split()[0])
    return path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"agentcore.{name}")


# ── Convenience helpers ──────────────────────────────────────

def log_exception(logger: logging.Logger, msg: str, exc: BaseException) -> None:
    """Log an exception with full traceback."""
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("%s: %s\n%s", msg, exc, "".join(tb))


def truncate(text: str, max_len: int = 200) -> str:
    """Shorten a value for a single log line."""
    if not text:
        return "(empty)"
    text = text.replace("\n", "\\n")
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"...[{len(text)} chars]"
