"""Loguru setup for memlink.

Every module asks for a logger with ``get_logger("<area>.<module>")``; the
first dotted segment selects the level override:

- MEMLINK_LOG_LEVEL: default level for everything (INFO)
- MEMLINK_LOG_TRANSPORT: level for ``mcp.*`` (transports, manager)
- MEMLINK_LOG_LOCAL: level for ``local.*`` (server process management)

A debug-level copy of every record goes to MEMLINK_LOG_DIR
(~/.memlink/logs by default), rotated daily or at 10 MB.
"""

import os
import sys
from contextlib import contextmanager
from pathlib import Path
from time import perf_counter

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[name]}:{function}:{line} | {message}"

_default_level = os.getenv("MEMLINK_LOG_LEVEL", "INFO").upper()
_area_levels: dict[str, str] = {
    "mcp": os.getenv("MEMLINK_LOG_TRANSPORT", "").upper(),
    "local": os.getenv("MEMLINK_LOG_LOCAL", "").upper(),
}


def _threshold(name: str) -> int:
    area = name.split(".", 1)[0]
    for level in (_area_levels.get(area), _default_level):
        if not level:
            continue
        try:
            return logger.level(level).no
        except ValueError:
            continue  # Unknown level name
    return 0


def _console_filter(record) -> bool:
    return record["level"].no >= _threshold(record["extra"].get("name", ""))


logger.remove()

_log_dir = Path(os.getenv("MEMLINK_LOG_DIR", str(Path.home() / ".memlink" / "logs")))
_log_dir.mkdir(parents=True, exist_ok=True)

logger.add(sys.stderr, level=0, filter=_console_filter, format=CONSOLE_FORMAT, colorize=True)
logger.add(
    _log_dir / "memlink_{time:YYYY-MM-DD}.log",
    level="DEBUG",
    format=FILE_FORMAT,
    rotation="10 MB",
    retention="7 days",
    compression="zip",
    enqueue=True,
)

logger.configure(extra={"name": "memlink"})


def get_logger(name: str):
    """Logger bound to a dotted component name, e.g. ``"mcp.manager"``."""
    return logger.bind(name=name)


@contextmanager
def log_timing(operation: str, log_instance=None, level: str = "debug"):
    """Log how long the block took.

    Yields a dict whose ``elapsed_ms`` is filled in when the block exits,
    whether or not it raised.

    Example:
        with log_timing("websocket connect", log):
            await transport.connect()
    """
    log_fn = log_instance or logger
    timing = {"elapsed_ms": 0.0}
    start = perf_counter()
    try:
        yield timing
    finally:
        timing["elapsed_ms"] = (perf_counter() - start) * 1000
        getattr(log_fn, level)(f"{operation}: {timing['elapsed_ms']:.1f}ms")


__all__ = ["logger", "get_logger", "log_timing"]
