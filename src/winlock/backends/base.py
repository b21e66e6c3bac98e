"""Backend contract."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from winlock.context import ContextBundle
from winlock.transcript import ToolCall
from winlock.types import FinishReason


@dataclass(frozen=True)
class BackendResponse:
    """One complete backend answer."""

    content: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    finish: FinishReason = FinishReason.DONE


class Backend(Protocol):
    """Sends one bundle and returns one complete response.

    Implementations raise ``BackendError`` with ``transient`` set for network
    failures, rate limits and timeouts, and unset for authentication or
    malformed requests. They keep no per-session state.
    """

    name: str

    async def send(self, bundle: ContextBundle) -> BackendResponse: ...
