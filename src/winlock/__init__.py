"""Winlock - agentic coding assistant orchestration engine."""

__version__ = "0.1.0"

from winlock.controller import SessionController  # noqa: E402
from winlock.runtime import SessionRuntime  # noqa: E402
from winlock.session import CancellationToken, Session  # noqa: E402

__all__ = ["CancellationToken", "Session", "SessionController", "SessionRuntime", "__version__"]
