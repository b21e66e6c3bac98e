"""Shared enumerations."""

from __future__ import annotations

from enum import StrEnum


class SessionState(StrEnum):
    IDLE = "idle"
    AWAITING_BACKEND = "awaiting_backend"
    AWAITING_TOOLS = "awaiting_tools"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED})


class FinishReason(StrEnum):
    DONE = "done"
    NEEDS_TOOLS = "needs_tools"


class ToolErrorKind(StrEnum):
    UNKNOWN_TOOL = "unknown_tool"
    TIMEOUT = "timeout"
    SERVER_UNAVAILABLE = "server_unavailable"
    EXECUTION_FAILED = "execution_failed"


class ConnectionState(StrEnum):
    """Lifecycle of one capability server connection."""

    DISCONNECTED = "disconnected"
    NEGOTIATING = "negotiating"
    READY = "ready"
    UNAVAILABLE = "unavailable"
