"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

import loguru
from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<6} | {name}:{function}:{line} | {extra[session]} | {message}"
_CONFIGURED_LEVEL: str | None = None
_session_context: ContextVar[str] = ContextVar("session")


def current_session() -> str:
    """Get the id of the session running in the current context."""
    return _session_context.get("-")


@contextmanager
def session_scope(session_id: str) -> Iterator[None]:
    token = _session_context.set(session_id)
    try:
        yield
    finally:
        _session_context.reset(token)


def _write_stderr(message: str) -> None:
    sys.stderr.write(message)


def configure_logging(*, level: str | None = None) -> None:
    """Configure process-level logging; repeated calls only change the level."""

    def inject_context(record: loguru.Record) -> None:
        record["extra"]["session"] = current_session()

    global _CONFIGURED_LEVEL
    resolved_level = (level or os.getenv("WINLOCK_LOG_LEVEL", "INFO")).upper()
    if resolved_level == _CONFIGURED_LEVEL:
        return

    logger.remove()
    logger.add(
        _write_stderr,
        level=resolved_level,
        format=LOG_FORMAT,
        backtrace=False,
        diagnose=False,
    )
    logger.configure(patcher=inject_context)
    _CONFIGURED_LEVEL = resolved_level
