"""Per-session wiring of capability clients, dispatcher, backend and rule sources."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from types import TracebackType

from loguru import logger

from winlock.backends import Backend, build_backend
from winlock.capability import (
    CapabilityServerClient,
    Connector,
    build_workspace_server,
    stdio_connector,
    tcp_connector,
)
from winlock.config import ServerConfig, SessionConfig
from winlock.context import ContextSource, workspace_rule_sources
from winlock.controller import SessionController
from winlock.dispatcher import ToolDispatcher
from winlock.errors import ConfigError
from winlock.session import Session
from winlock.transcript import Turn


def build_connector(server: ServerConfig, workspace: Path) -> Connector:
    if server.transport == "builtin":
        return build_workspace_server(workspace, name=server.name).connector()
    if server.transport == "tcp":
        if server.host is None or server.port is None:
            raise ConfigError(f"server {server.name} needs host and port for tcp")
        return tcp_connector(server.host, server.port, name=server.name)
    if server.command is None:
        raise ConfigError(f"server {server.name} needs a command for stdio")
    return stdio_connector(server.command, server.args, env=server.env, cwd=server.cwd or workspace, name=server.name)


def build_clients(config: SessionConfig) -> list[CapabilityServerClient]:
    return [
        CapabilityServerClient(
            server.name,
            build_connector(server, config.workspace),
            reconnect=server.reconnect.backoff(),
            queue_while_disconnected=server.queue_while_disconnected,
            version_window=server.version_window,
        )
        for server in config.servers
    ]


class SessionRuntime:
    """Owns the connections of one session for the duration of an ``async with`` block."""

    def __init__(
        self,
        config: SessionConfig,
        *,
        backend: Backend | None = None,
        clients: Sequence[CapabilityServerClient] | None = None,
        sources: Sequence[ContextSource] | None = None,
    ) -> None:
        self.config = config
        self.backend = backend if backend is not None else build_backend(config)
        self.clients = list(clients) if clients is not None else build_clients(config)
        self.sources = list(sources) if sources is not None else workspace_rule_sources(config.workspace, config.rule_files)
        self.dispatcher = ToolDispatcher(
            self.clients,
            max_in_flight=config.max_in_flight,
            default_timeout=config.tool_timeout,
        )
        self.controller = SessionController(self.backend, self.dispatcher, sources=self.sources)

    async def __aenter__(self) -> SessionRuntime:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def connect(self) -> None:
        states = await asyncio.gather(*(client.connect() for client in self.clients))
        for client, state in zip(self.clients, states, strict=True):
            logger.info("runtime.server name={} state={} tools={}", client.name, state.value, len(client.catalog))

    async def close(self) -> None:
        await asyncio.gather(*(client.close() for client in self.clients))

    def run(self, session: Session) -> AsyncIterator[Turn]:
        return self.controller.start(session)

    def cancel(self, session: Session) -> None:
        self.controller.cancel(session)
