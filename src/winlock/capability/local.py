"""In-process capability server host.

``LocalCapabilityServer`` serves Python callables as tools over any transport:
an in-memory pipe (``connector()``), the process's own stdio (``serve_stdio``)
or TCP (``serve_tcp``). It speaks the same protocol as external servers, so the
client, dispatcher and controller treat it like any other endpoint.
"""

from __future__ import annotations

import asyncio
import inspect
import sys
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any, TypeAlias

from loguru import logger

from winlock import __version__
from winlock.capability.protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_INITIALIZE,
    METHOD_NOT_FOUND,
    METHOD_TOOLS_CALL,
    METHOD_TOOLS_CHANGED,
    METHOD_TOOLS_LIST,
    PARSE_ERROR,
    PROTOCOL_VERSION,
    ErrorObject,
    Notification,
    Request,
    Response,
    ToolSpec,
    decode,
    encode,
)
from winlock.capability.transport import STREAM_LIMIT, Connector, StreamTransport, Transport, memory_pipe
from winlock.errors import ProtocolError, TransportClosedError

ToolHandler: TypeAlias = Callable[[dict[str, Any]], Any | Awaitable[Any]]


class ToolFailure(Exception):
    """Raised by a handler to report a tool-level failure with a clean message."""


class _Peer:
    def __init__(self, transport: Transport) -> None:
        self.transport = transport
        self._write_lock = asyncio.Lock()

    async def send(self, message: Response | Notification) -> None:
        async with self._write_lock:
            await self.transport.send(encode(message))


class LocalCapabilityServer:
    def __init__(
        self,
        name: str = "local",
        *,
        protocol_version: int = PROTOCOL_VERSION,
        concurrent: bool = True,
    ) -> None:
        self.name = name
        self.protocol_version = protocol_version
        self.concurrent = concurrent
        self._tools: dict[str, tuple[ToolSpec, ToolHandler]] = {}
        self._peers: set[_Peer] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        spec = ToolSpec(name=name, description=description, input_schema=input_schema or {"type": "object"})
        self._tools[name] = (spec, handler)

    def tool(
        self, name: str, *, description: str = "", input_schema: dict[str, Any] | None = None
    ) -> Callable[[ToolHandler], ToolHandler]:
        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(name, handler, description=description, input_schema=input_schema)
            return handler

        return decorator

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def specs(self) -> list[ToolSpec]:
        return [spec for spec, _ in self._tools.values()]

    @property
    def connections(self) -> int:
        return len(self._peers)

    def connector(self) -> Connector:
        """Connector that opens a fresh in-memory connection per call."""

        async def connect() -> Transport:
            client_end, server_end = memory_pipe()
            task = asyncio.create_task(self.serve(server_end))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return client_end

        return connect

    async def notify_tools_changed(self, *, include_catalog: bool = True) -> None:
        params: dict[str, Any] = {}
        if include_catalog:
            params["tools"] = [spec.to_payload() for spec in self.specs()]
        for peer in list(self._peers):
            with suppress(TransportClosedError):
                await peer.send(Notification(METHOD_TOOLS_CHANGED, params))

    async def drop_connections(self) -> None:
        for peer in list(self._peers):
            await peer.transport.close()

    async def serve(self, transport: Transport) -> None:
        """Answer requests on ``transport`` until the peer goes away."""
        peer = _Peer(transport)
        self._peers.add(peer)
        logger.debug("capability.local.connected name={}", self.name)
        try:
            while True:
                try:
                    line = await transport.receive()
                except ProtocolError as exc:
                    await peer.send(Response(id=None, error=ErrorObject(PARSE_ERROR, str(exc))))
                    continue
                if line is None:
                    return
                if not line.strip():
                    continue
                await self._handle_line(peer, line)
        except TransportClosedError:
            return
        finally:
            self._peers.discard(peer)
            with suppress(TransportClosedError, OSError):
                await transport.close()

    async def serve_stdio(self) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=STREAM_LIMIT)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        write_transport, write_protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
        writer = asyncio.StreamWriter(write_transport, write_protocol, reader, loop)
        await self.serve(StreamTransport(reader, writer, name="stdio"))

    async def serve_tcp(self, host: str, port: int) -> asyncio.Server:
        async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await self.serve(StreamTransport(reader, writer, name=f"{host}:{port}"))

        return await asyncio.start_server(on_connect, host, port, limit=STREAM_LIMIT)

    async def _handle_line(self, peer: _Peer, line: str) -> None:
        try:
            message = decode(line)
        except ProtocolError as exc:
            await peer.send(Response(id=None, error=ErrorObject(PARSE_ERROR, str(exc))))
            return
        if not isinstance(message, Request):
            return
        if message.method == METHOD_TOOLS_CALL and self.concurrent:
            task = asyncio.create_task(self._answer(peer, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return
        await self._answer(peer, message)

    async def _answer(self, peer: _Peer, request: Request) -> None:
        try:
            result = await self._dispatch(request)
            response = Response(id=request.id, result=result)
        except _RequestError as exc:
            response = Response(id=request.id, error=exc.error)
        with suppress(TransportClosedError):
            await peer.send(response)

    async def _dispatch(self, request: Request) -> Any:
        if request.method == METHOD_INITIALIZE:
            return {
                "protocolVersion": self.protocol_version,
                "serverInfo": {"name": self.name, "version": __version__},
                "capabilities": {"concurrentRequests": self.concurrent},
                "tools": [spec.to_payload() for spec in self.specs()],
            }
        if request.method == METHOD_TOOLS_LIST:
            return {"tools": [spec.to_payload() for spec in self.specs()]}
        if request.method == METHOD_TOOLS_CALL:
            return await self._call(request.params)
        raise _RequestError(ErrorObject(METHOD_NOT_FOUND, f"unknown method {request.method}"))

    async def _call(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(name, str) or name not in self._tools:
            raise _RequestError(ErrorObject(INVALID_PARAMS, f"unknown tool {name!r}"))
        if not isinstance(arguments, dict):
            raise _RequestError(ErrorObject(INVALID_PARAMS, "arguments must be an object"))

        _, handler = self._tools[name]
        self.calls.append(name)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(arguments)
            else:
                # Sync handlers run in a worker thread, off the event loop.
                result = await asyncio.to_thread(handler, arguments)
                if inspect.isawaitable(result):
                    result = await result
        except ToolFailure as exc:
            return {"content": str(exc), "isError": True}
        except Exception as exc:
            logger.exception("capability.local.tool_error name={} tool={}", self.name, name)
            raise _RequestError(ErrorObject(INTERNAL_ERROR, f"{name} failed: {exc!s}")) from exc
        finally:
            self.in_flight -= 1
        return {"content": result, "isError": False}


class _RequestError(Exception):
    def __init__(self, error: ErrorObject) -> None:
        super().__init__(error.message)
        self.error = error
