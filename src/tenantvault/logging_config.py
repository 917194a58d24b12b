"""
Logging sinks for the tenantvault CLI.

The library only emits through loguru's ``logger``. The CLI decides where
those messages go: a stderr sink sized by ``--verbose``, and an optional
log file kept next to the store it is operating on.
"""

import os
import sys
from pathlib import Path

from loguru import logger

from tenantvault.schema import StoreConfig

_TRUTHY = ("1", "true", "yes")

_console_sink: int | None = None
_file_sinks: dict[Path, int] = {}
_default_removed = False


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in _TRUTHY


def setup_logging(level: str = "INFO", suppress_console: bool | None = None) -> None:
    """
    Point the console sink at the current stderr with the given level.

    Calling again replaces the previous console sink, so each CLI
    invocation gets its own level. ``TENANTVAULT_QUIET`` silences the
    console when ``suppress_console`` is not given.
    """
    global _console_sink, _default_removed

    if not _default_removed:
        logger.remove()
        _default_removed = True
    if _console_sink is not None:
        logger.remove(_console_sink)
        _console_sink = None

    if suppress_console is None:
        suppress_console = _env_flag("TENANTVAULT_QUIET")
    if suppress_console:
        return

    _console_sink = logger.add(
        sys.stderr,
        level=level,
        format="<level>{level: <7}</level> {name} | {message}",
        colorize=None,
    )


def store_log_path(config: StoreConfig) -> Path | None:
    """The log file for a store, ``<db_path>.log``; None for in-memory stores."""
    if config.db_path == ":memory:":
        return None
    db_path = Path(config.db_path)
    return db_path.with_name(db_path.name + ".log")


def attach_store_log(config: StoreConfig, enable: bool | None = None) -> Path | None:
    """
    Add a rotating file sink beside the store.

    Off unless ``enable`` is True or ``TENANTVAULT_FILE_LOGGING`` is set.
    A path already attached is not attached twice.

    Returns:
        The log file path, or None when no file sink is active
    """
    if enable is None:
        enable = _env_flag("TENANTVAULT_FILE_LOGGING")
    path = store_log_path(config)
    if not enable or path is None:
        return None
    if path in _file_sinks:
        return path

    path.parent.mkdir(parents=True, exist_ok=True)
    _file_sinks[path] = logger.add(
        path,
        level="DEBUG",
        rotation="5 MB",
        retention=3,
        encoding="utf-8",
    )
    return path


def reset_logging() -> None:
    """Remove every sink this module added."""
    global _console_sink
    if _console_sink is not None:
        logger.remove(_console_sink)
        _console_sink = None
    for sink_id in _file_sinks.values():
        logger.remove(sink_id)
    _file_sinks.clear()
