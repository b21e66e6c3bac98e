"""Client side of one capability server connection."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from loguru import logger

from winlock import __version__
from winlock.capability.protocol import (
    METHOD_INITIALIZE,
    METHOD_INITIALIZED,
    METHOD_NOT_FOUND,
    METHOD_TOOLS_CALL,
    METHOD_TOOLS_CHANGED,
    METHOD_TOOLS_LIST,
    PROTOCOL_VERSION,
    ErrorObject,
    Notification,
    Request,
    Response,
    ToolSpec,
    decode,
    encode,
    is_compatible,
    parse_catalog,
)
from winlock.capability.transport import Connector, Transport
from winlock.errors import (
    IncompatibleVersionError,
    ProtocolError,
    RemoteError,
    ServerUnavailableError,
    TransportClosedError,
    WinlockError,
)
from winlock.retry import Backoff
from winlock.types import ConnectionState

DEFAULT_HANDSHAKE_TIMEOUT_SECONDS = 30.0

Sleep: TypeAlias = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class CallResult:
    """Payload of a successful ``tools/call`` round trip."""

    content: Any
    is_error: bool = False


@dataclass
class _Connection:
    transport: Transport
    pending: dict[int, asyncio.Future[Any]] = field(default_factory=dict)
    abandoned: set[int] = field(default_factory=set)
    reader: asyncio.Task[None] | None = None
    lost: bool = False


class CapabilityServerClient:
    """Owns one connection: negotiation, correlation, notifications and reconnects.

    States move ``disconnected -> negotiating -> ready``; a transport failure or
    protocol violation drops back to ``disconnected`` and the reconnect policy
    runs before negotiating again. Once the policy is exhausted, or the server
    speaks an incompatible protocol version, the client is ``unavailable`` for
    good and every call fails immediately.
    """

    def __init__(
        self,
        name: str,
        connector: Connector,
        *,
        reconnect: Backoff | None = None,
        queue_while_disconnected: bool = True,
        version_window: int = 0,
        client_version: int = PROTOCOL_VERSION,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.name = name
        self._connector = connector
        self._reconnect = reconnect or Backoff()
        self._queue_while_disconnected = queue_while_disconnected
        self._version_window = version_window
        self._client_version = client_version
        self._handshake_timeout = handshake_timeout
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._settled = asyncio.Event()
        self._connection: _Connection | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._next_id = 0
        self._closed = False
        self._catalog: dict[str, ToolSpec] = {}
        self.server_version: int | None = None
        self.server_info: dict[str, Any] = {}
        self.concurrent = False
        self.unavailable_reason: str | None = None
        self.connect_attempts = 0
        self.backoff_delays: list[float] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def catalog(self) -> dict[str, ToolSpec]:
        return dict(self._catalog)

    def has_tool(self, name: str) -> bool:
        return name in self._catalog

    async def connect(self) -> ConnectionState:
        """Connect once, then keep retrying under the reconnect policy until settled."""
        await self._connect_loop(initial=True)
        return self._state

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallResult:
        await self._wait_ready()
        result = await self._request(METHOD_TOOLS_CALL, {"name": name, "arguments": arguments})
        if not isinstance(result, dict) or "content" not in result:
            error = ProtocolError(f"tools/call result from {self.name} is missing content")
            self._connection_lost(self._connection, error)
            raise error
        return CallResult(content=result["content"], is_error=bool(result.get("isError", False)))

    async def refresh_catalog(self) -> dict[str, ToolSpec]:
        result = await self._request(METHOD_TOOLS_LIST, {})
        if not isinstance(result, dict):
            raise ProtocolError("tools/list result must be an object")
        self._set_catalog(parse_catalog(result.get("tools")))
        return self.catalog

    async def close(self) -> None:
        self._closed = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._reconnect_task
            self._reconnect_task = None
        connection = self._connection
        self._connection = None
        if connection is not None:
            await self._teardown(connection, ServerUnavailableError(f"{self.name} closed"))
        for task in list(self._background):
            task.cancel()
        self._set_state(ConnectionState.DISCONNECTED)
        self._settled.set()

    # Lifecycle

    async def _connect_loop(self, *, initial: bool) -> None:
        if initial and (await self._attempt() or self._state is ConnectionState.UNAVAILABLE):
            return
        for attempt, delay in enumerate(self._reconnect.delays(), start=1):
            if self._closed:
                return
            self.backoff_delays.append(delay)
            logger.info("capability.reconnect.wait name={} attempt={} delay={:.2f}s", self.name, attempt, delay)
            await self._sleep(delay)
            if self._closed:
                return
            if await self._attempt():
                return
            if self._state is ConnectionState.UNAVAILABLE:
                return
        self._mark_unavailable(f"gave up after {self._reconnect.max_attempts} reconnect attempts")

    async def _attempt(self) -> bool:
        self.connect_attempts += 1
        try:
            await self._establish()
        except IncompatibleVersionError as exc:
            self._mark_unavailable(str(exc))
            return False
        except (WinlockError, OSError, TimeoutError) as exc:
            logger.warning("capability.connect.failed name={} attempt={} error={}", self.name, self.connect_attempts, exc)
            self._set_state(ConnectionState.DISCONNECTED)
            return False
        return True

    async def _establish(self) -> None:
        self._set_state(ConnectionState.NEGOTIATING)
        transport = await self._connector()
        connection = _Connection(transport=transport)
        self._connection = connection
        connection.reader = asyncio.create_task(self._read_loop(connection))
        try:
            async with asyncio.timeout(self._handshake_timeout):
                result = await self._request(
                    METHOD_INITIALIZE,
                    {
                        "protocolVersion": self._client_version,
                        "clientInfo": {"name": "winlock", "version": __version__},
                    },
                )
            self._apply_handshake(result)
            await transport.send(encode(Notification(METHOD_INITIALIZED)))
        except BaseException as exc:
            self._connection = None
            await self._teardown(connection, exc if isinstance(exc, WinlockError) else TransportClosedError(str(exc)))
            raise
        self._set_state(ConnectionState.READY)
        self._settled.set()
        logger.info(
            "capability.ready name={} version={} tools={} concurrent={}",
            self.name,
            self.server_version,
            len(self._catalog),
            self.concurrent,
        )

    def _apply_handshake(self, result: object) -> None:
        if not isinstance(result, dict):
            raise ProtocolError("initialize result must be an object")
        version = result.get("protocolVersion")
        if isinstance(version, bool) or not isinstance(version, int):
            raise ProtocolError("initialize result is missing an integer protocolVersion")
        if not is_compatible(version, self._client_version, window=self._version_window):
            raise IncompatibleVersionError(
                f"{self.name} speaks protocol {version}, client speaks {self._client_version} "
                f"(window={self._version_window})"
            )
        capabilities = result.get("capabilities") or {}
        if not isinstance(capabilities, dict):
            raise ProtocolError("initialize capabilities must be an object")
        server_info = result.get("serverInfo") or {}
        self.server_version = version
        self.server_info = dict(server_info) if isinstance(server_info, dict) else {}
        self.concurrent = bool(capabilities.get("concurrentRequests", False))
        self._set_catalog(parse_catalog(result.get("tools", [])))

    async def _wait_ready(self) -> None:
        while True:
            if self._closed or self._state is ConnectionState.UNAVAILABLE:
                raise ServerUnavailableError(self.unavailable_reason or f"{self.name} is unavailable")
            if self._state is ConnectionState.READY:
                return
            if not self._queue_while_disconnected:
                raise ServerUnavailableError(f"{self.name} is {self._state.value}")
            if self._reconnect_task is None and self._state is ConnectionState.DISCONNECTED:
                self._schedule_reconnect(initial=self.connect_attempts == 0)
            await self._settled.wait()

    def _schedule_reconnect(self, *, initial: bool = False) -> None:
        if self._closed or (self._reconnect_task is not None and not self._reconnect_task.done()):
            return
        self._settled.clear()
        self._reconnect_task = asyncio.create_task(self._run_reconnect(initial=initial))

    async def _run_reconnect(self, *, initial: bool) -> None:
        try:
            await self._connect_loop(initial=initial)
        finally:
            self._reconnect_task = None
            self._settled.set()

    def _mark_unavailable(self, reason: str) -> None:
        logger.error("capability.unavailable name={} reason={}", self.name, reason)
        self.unavailable_reason = f"{self.name}: {reason}"
        self._set_state(ConnectionState.UNAVAILABLE)
        self._settled.set()

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        if self._state is ConnectionState.UNAVAILABLE and state is not ConnectionState.UNAVAILABLE:
            return
        logger.debug("capability.state name={} {} -> {}", self.name, self._state.value, state.value)
        self._state = state

    def _set_catalog(self, catalog: dict[str, ToolSpec]) -> None:
        added = sorted(set(catalog) - set(self._catalog))
        removed = sorted(set(self._catalog) - set(catalog))
        self._catalog = catalog
        if added or removed:
            logger.info("capability.catalog name={} added={} removed={}", self.name, added, removed)

    # Messaging

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        connection = self._connection
        if connection is None or connection.lost:
            raise TransportClosedError(f"{self.name} is not connected")
        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        connection.pending[request_id] = future
        try:
            try:
                await connection.transport.send(encode(Request(id=request_id, method=method, params=params)))
            except TransportClosedError as exc:
                self._connection_lost(connection, exc)
                raise
            return await future
        except asyncio.CancelledError:
            # The answer may still arrive; it is dropped instead of tripping correlation checks.
            connection.abandoned.add(request_id)
            raise
        finally:
            connection.pending.pop(request_id, None)

    async def _read_loop(self, connection: _Connection) -> None:
        try:
            while True:
                line = await connection.transport.receive()
                if line is None:
                    raise TransportClosedError(f"{self.name} closed the connection")
                if not line.strip():
                    continue
                self._handle_message(connection, decode(line))
        except WinlockError as exc:
            self._connection_lost(connection, exc)

    def _handle_message(self, connection: _Connection, message: Request | Notification | Response) -> None:
        if isinstance(message, Response):
            self._resolve(connection, message)
        elif isinstance(message, Notification):
            self._handle_notification(message)
        else:
            reply = Response(id=message.id, error=ErrorObject(METHOD_NOT_FOUND, f"client does not serve {message.method}"))
            self._spawn(connection.transport.send(encode(reply)))

    def _resolve(self, connection: _Connection, response: Response) -> None:
        if not isinstance(response.id, int):
            raise ProtocolError(f"{self.name} answered with non-correlated id {response.id!r}")
        future = connection.pending.get(response.id)
        if future is None:
            if response.id in connection.abandoned:
                connection.abandoned.discard(response.id)
                logger.debug("capability.response.discarded name={} id={}", self.name, response.id)
                return
            raise ProtocolError(f"{self.name} answered unknown request id {response.id}")
        if future.done():
            return
        if response.error is not None:
            future.set_exception(RemoteError(response.error.code, response.error.message, response.error.data))
        else:
            future.set_result(response.result)

    def _handle_notification(self, notification: Notification) -> None:
        if notification.method != METHOD_TOOLS_CHANGED:
            logger.debug("capability.notification.ignored name={} method={}", self.name, notification.method)
            return
        tools = notification.params.get("tools")
        if tools is not None:
            self._set_catalog(parse_catalog(tools))
            return
        self._spawn(self._refresh_after_notification())

    async def _refresh_after_notification(self) -> None:
        try:
            await self.refresh_catalog()
        except WinlockError as exc:
            logger.warning("capability.catalog.refresh_failed name={} error={}", self.name, exc)

    def _connection_lost(self, connection: _Connection | None, error: WinlockError) -> None:
        if connection is None or connection.lost:
            return
        connection.lost = True
        was_ready = self._state is ConnectionState.READY and connection is self._connection
        if connection is self._connection:
            self._connection = None
            self._set_state(ConnectionState.DISCONNECTED)
        logger.warning("capability.connection.lost name={} error={}", self.name, error)
        self._spawn(self._teardown(connection, error))
        if was_ready and not self._closed:
            self._schedule_reconnect()

    async def _teardown(self, connection: _Connection, error: BaseException) -> None:
        connection.lost = True
        for future in connection.pending.values():
            if not future.done():
                future.set_exception(ServerUnavailableError(f"{self.name}: {error!s}"))
        connection.pending.clear()
        current = asyncio.current_task()
        if connection.reader is not None and connection.reader is not current and not connection.reader.done():
            connection.reader.cancel()
        with suppress(WinlockError, OSError):
            await connection.transport.close()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_log_task_failure)


def _log_task_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).warning("capability.background.error")
