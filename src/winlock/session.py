"""Session state and cooperative cancellation."""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Awaitable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, TypeVar

from winlock.config import SessionConfig
from winlock.errors import CancellationError
from winlock.transcript import PromptTurn, Transcript
from winlock.types import SessionState

T = TypeVar("T")


class CancellationToken:
    """Cancellation flag observable from asyncio code and settable from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Request cancellation; returns ``False`` when it was already requested."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            loop, event = self._loop, self._event
        if loop is None or event is None:
            return True
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
        else:
            with suppress(RuntimeError):
                loop.call_soon_threadsafe(event.set)
        return True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError("session cancelled")

    async def wait(self) -> None:
        await self._bind().wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless cancellation fires first.

        On cancellation the work keeps running in the background and its
        result is discarded; ``CancellationError`` is raised immediately.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.add_done_callback(_discard)
        raise CancellationError("session cancelled")

    def _bind(self) -> asyncio.Event:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._event is None or self._loop is not loop:
                self._loop = loop
                self._event = asyncio.Event()
                if self._cancelled:
                    self._event.set()
            return self._event


def _discard(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        task.exception()


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Session:
    """One conversation: configuration, transcript, state and cancellation token."""

    config: SessionConfig
    transcript: Transcript = field(default_factory=Transcript)
    id: str = field(default_factory=new_session_id)
    state: SessionState = SessionState.IDLE
    token: CancellationToken = field(default_factory=CancellationToken)

    @classmethod
    def new(
        cls,
        config: SessionConfig,
        prompt: str,
        *,
        transcript: Transcript | None = None,
        session_id: str | None = None,
    ) -> Session:
        """Fresh session whose transcript opens with the prompt turn."""
        transcript = transcript if transcript is not None else Transcript()
        if len(transcript):
            raise ValueError("a new session needs an empty transcript")
        transcript.append(PromptTurn(text=prompt))
        return cls(config=config, transcript=transcript, id=session_id or new_session_id())

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled
