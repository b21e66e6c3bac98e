"""Routes tool calls to capability servers and collects their outcomes."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager, nullcontext
from dataclasses import dataclass
from typing import Any

from loguru import logger

from winlock.capability.client import CallResult, CapabilityServerClient
from winlock.capability.protocol import ToolSpec
from winlock.errors import (
    CancellationError,
    ProtocolError,
    RemoteError,
    ServerUnavailableError,
    TransportClosedError,
)
from winlock.session import CancellationToken
from winlock.transcript import ToolCall, ToolError, ToolOutcome, ToolResult
from winlock.types import ToolErrorKind

DEFAULT_TOOL_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_IN_FLIGHT = 8


@dataclass(frozen=True)
class TraceEvent:
    """``start`` when a request is issued to a server, ``end`` when it settles."""

    event: str
    call_id: str
    server: str


class ToolDispatcher:
    """Resolves every call of a backend turn to exactly one outcome.

    Servers are consulted in configuration order; when several advertise the
    same tool name the first one wins. A global semaphore bounds requests in
    flight across servers and servers without the concurrent-requests
    capability see at most one outstanding request at a time.
    """

    def __init__(
        self,
        clients: Sequence[CapabilityServerClient],
        *,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        default_timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        self._clients = list(clients)
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._server_locks = {client.name: asyncio.Lock() for client in self._clients}
        self._default_timeout = default_timeout
        self._reported_collisions: set[str] = set()
        self.trace: list[TraceEvent] = []

    @property
    def clients(self) -> list[CapabilityServerClient]:
        return list(self._clients)

    def catalog(self) -> list[ToolSpec]:
        """Merged catalog in configuration order; shadowed names appear once."""
        merged: dict[str, ToolSpec] = {}
        for client in self._clients:
            for name, spec in client.catalog.items():
                merged.setdefault(name, spec)
        return list(merged.values())

    def route(self, tool_name: str) -> CapabilityServerClient | None:
        owners = [client for client in self._clients if client.has_tool(tool_name)]
        if not owners:
            return None
        if len(owners) > 1 and tool_name not in self._reported_collisions:
            self._reported_collisions.add(tool_name)
            logger.warning(
                "tool.route.collision name={} chosen={} shadowed={}",
                tool_name,
                owners[0].name,
                [client.name for client in owners[1:]],
            )
        return owners[0]

    async def dispatch(
        self,
        calls: Sequence[ToolCall],
        deadline: float | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> list[ToolOutcome]:
        """One outcome per call, in call order, once every call has settled."""
        timeout = self._default_timeout if deadline is None else deadline
        if cancel is not None:
            cancel.raise_if_cancelled()
        tasks = [asyncio.create_task(self._run(call, timeout, cancel)) for call in calls]
        for task in tasks:
            task.add_done_callback(_discard)
        if not tasks:
            return []
        gathered = asyncio.gather(*tasks)
        if cancel is None:
            return list(await gathered)
        try:
            return list(await cancel.guard(gathered))
        except CancellationError:
            logger.info("tool.dispatch.cancelled calls={}", len(calls))
            raise

    async def _run(self, call: ToolCall, timeout: float, cancel: CancellationToken | None) -> ToolOutcome:
        client = self.route(call.name)
        if client is None:
            logger.info("tool.call.unknown name={} call_id={}", call.name, call.id)
            return ToolError(call_id=call.id, kind=ToolErrorKind.UNKNOWN_TOOL, message=f"no server provides {call.name}")

        logger.info("tool.call.start name={} call_id={} server={}", call.name, call.id, client.name)
        start = time.monotonic()
        sent = asyncio.Event()
        request = asyncio.create_task(self._invoke(client, call, cancel, sent))
        try:
            result = await asyncio.wait_for(asyncio.shield(request), timeout)
        except TimeoutError:
            if sent.is_set():
                # An issued request keeps its server slot until the server answers.
                request.add_done_callback(_discard)
            else:
                request.cancel()
            outcome: ToolOutcome = ToolError(
                call_id=call.id, kind=ToolErrorKind.TIMEOUT, message=f"{call.name} exceeded {timeout}s"
            )
        except (ServerUnavailableError, TransportClosedError, ProtocolError) as exc:
            outcome = ToolError(call_id=call.id, kind=ToolErrorKind.SERVER_UNAVAILABLE, message=str(exc))
        except RemoteError as exc:
            outcome = ToolError(call_id=call.id, kind=ToolErrorKind.EXECUTION_FAILED, message=exc.message)
        else:
            outcome = _outcome(call, result)
        logger.info(
            "tool.call.end name={} call_id={} outcome={} duration={:.3f}ms",
            call.name,
            call.id,
            outcome.kind.value if isinstance(outcome, ToolError) else "ok",
            (time.monotonic() - start) * 1000,
        )
        return outcome

    async def _invoke(
        self,
        client: CapabilityServerClient,
        call: ToolCall,
        cancel: CancellationToken | None,
        sent: asyncio.Event,
    ) -> CallResult:
        async with self._serialize(client), self._semaphore:
            if cancel is not None:
                cancel.raise_if_cancelled()
            sent.set()
            self.trace.append(TraceEvent("start", call.id, client.name))
            try:
                return await client.call_tool(call.name, call.arguments)
            finally:
                self.trace.append(TraceEvent("end", call.id, client.name))

    def _serialize(self, client: CapabilityServerClient) -> AbstractAsyncContextManager[Any]:
        if client.concurrent:
            return nullcontext()
        return self._server_locks[client.name]


def _outcome(call: ToolCall, result: CallResult) -> ToolOutcome:
    if result.is_error:
        return ToolError(call_id=call.id, kind=ToolErrorKind.EXECUTION_FAILED, message=_text(result.content))
    return ToolResult(call_id=call.id, content=result.content)


def _text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False, sort_keys=True)


def _discard(task: asyncio.Task[Any]) -> None:
    if not task.cancelled():
        task.exception()
