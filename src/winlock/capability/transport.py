"""Line-oriented byte-stream transports for capability servers."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import suppress
from pathlib import Path
from typing import Protocol, TypeAlias

from loguru import logger

from winlock.errors import ProtocolError, TransportClosedError

STREAM_LIMIT = 16 * 1024 * 1024
TERMINATE_TIMEOUT_SECONDS = 2.0


class Transport(Protocol):
    """Carries newline-framed messages in both directions."""

    async def send(self, line: str) -> None: ...

    async def receive(self) -> str | None:
        """Next framed line without its terminator, or ``None`` at end of stream."""
        ...

    async def close(self) -> None: ...


Connector: TypeAlias = Callable[[], Awaitable[Transport]]


class StreamTransport:
    """Transport over an asyncio reader/writer pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, *, name: str = "stream") -> None:
        self._reader = reader
        self._writer = writer
        self.name = name

    async def send(self, line: str) -> None:
        if self._writer.is_closing():
            raise TransportClosedError(f"{self.name} is closed")
        try:
            self._writer.write(line.encode("utf-8"))
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            raise TransportClosedError(f"{self.name} write failed: {exc!s}") from exc

    async def receive(self) -> str | None:
        try:
            raw = await self._reader.readline()
        except (asyncio.LimitOverrunError, ValueError) as exc:
            raise ProtocolError(f"{self.name} frame exceeds {STREAM_LIMIT} bytes") from exc
        except (ConnectionError, OSError):
            return None
        if not raw:
            return None
        try:
            return raw.decode("utf-8").rstrip("\r\n")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"{self.name} sent invalid utf-8") from exc

    async def close(self) -> None:
        if self._writer.is_closing():
            return
        self._writer.close()
        with suppress(ConnectionError, OSError):
            await self._writer.wait_closed()


class StdioTransport(StreamTransport):
    """Transport over the stdin/stdout of a spawned capability server process."""

    def __init__(self, process: asyncio.subprocess.Process, *, name: str) -> None:
        if process.stdout is None or process.stdin is None:
            raise TransportClosedError(f"{name} was spawned without stdio pipes")
        super().__init__(process.stdout, process.stdin, name=name)
        self._process = process

    async def close(self) -> None:
        await super().close()
        if self._process.returncode is not None:
            return
        self._process.terminate()
        try:
            await asyncio.wait_for(self._process.wait(), timeout=TERMINATE_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning("capability.stdio.kill name={} pid={}", self.name, self._process.pid)
            self._process.kill()
            await self._process.wait()


class MemoryTransport:
    """One end of an in-process pipe."""

    def __init__(self, inbound: asyncio.Queue[str | None], outbound: asyncio.Queue[str | None]) -> None:
        self._inbound = inbound
        self._outbound = outbound
        self._closed = False

    async def send(self, line: str) -> None:
        if self._closed:
            raise TransportClosedError("memory transport is closed")
        await self._outbound.put(line.rstrip("\n"))

    async def receive(self) -> str | None:
        if self._closed:
            return None
        line = await self._inbound.get()
        if line is None:
            self._closed = True
        return line

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._outbound.put(None)
        await self._inbound.put(None)


def memory_pipe() -> tuple[MemoryTransport, MemoryTransport]:
    """Two connected transports; closing either end ends both streams."""
    left: asyncio.Queue[str | None] = asyncio.Queue()
    right: asyncio.Queue[str | None] = asyncio.Queue()
    return MemoryTransport(left, right), MemoryTransport(right, left)


def stdio_connector(
    command: str,
    args: Sequence[str] = (),
    *,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    name: str | None = None,
) -> Connector:
    label = name or command

    async def connect() -> Transport:
        merged_env = {**os.environ, **(env or {})}
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=merged_env,
                cwd=str(cwd) if cwd else None,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise TransportClosedError(f"{label}: failed to spawn {command!r}: {exc!s}") from exc
        logger.info("capability.stdio.spawn name={} pid={}", label, process.pid)
        return StdioTransport(process, name=label)

    return connect


def tcp_connector(host: str, port: int, *, name: str | None = None) -> Connector:
    label = name or f"{host}:{port}"

    async def connect() -> Transport:
        try:
            reader, writer = await asyncio.open_connection(host, port, limit=STREAM_LIMIT)
        except OSError as exc:
            raise TransportClosedError(f"{label}: connect failed: {exc!s}") from exc
        return StreamTransport(reader, writer, name=label)

    return connect
