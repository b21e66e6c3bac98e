"""Application-level exception types for Winlock."""

from __future__ import annotations


class WinlockError(Exception):
    """Base exception for Winlock."""

    kind = "error"


class ConfigError(WinlockError):
    """Raised when session configuration is invalid."""

    kind = "config"


class TranscriptError(ConfigError):
    """Raised when a stored transcript cannot be replayed in order."""

    kind = "transcript"


class ContextOverflowError(WinlockError):
    """Raised when a context bundle cannot fit its budget even after truncation."""

    kind = "context_overflow"

    def __init__(self, size: int, budget: int) -> None:
        super().__init__(f"context bundle needs {size} chars, budget is {budget}")
        self.size = size
        self.budget = budget


class BackendError(WinlockError):
    """Raised by backend adapters; ``transient`` errors are worth retrying."""

    kind = "backend"

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient

    @classmethod
    def retryable(cls, message: str) -> BackendError:
        return cls(message, transient=True)

    @classmethod
    def fatal(cls, message: str) -> BackendError:
        return cls(message, transient=False)


class MaxStepsError(WinlockError):
    """Raised when a session exceeds its backend turn budget."""

    kind = "max_steps"


class UnresolvedToolCallsError(WinlockError):
    """Raised when tool calls are left without an outcome."""

    kind = "unresolved_tool_calls"


class ProtocolError(WinlockError):
    """Raised when a capability server breaks the message contract."""

    kind = "protocol"


class TransportClosedError(WinlockError):
    """Raised when a capability server connection goes away."""

    kind = "transport"


class ServerUnavailableError(WinlockError):
    """Raised when a capability server cannot take requests."""

    kind = "server_unavailable"


class IncompatibleVersionError(WinlockError):
    """Raised when a capability server speaks a protocol outside the compatibility window."""

    kind = "incompatible_version"


class RemoteError(WinlockError):
    """Raised when a capability server answers a request with an error object."""

    kind = "remote"

    def __init__(self, code: int, message: str, data: object = None) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class CancellationError(WinlockError):
    """Raised at a suspension point once the session was cancelled."""

    kind = "cancelled"

