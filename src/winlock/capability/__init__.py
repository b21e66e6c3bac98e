"""Capability server protocol, transports, client and local server host."""

from winlock.capability.builtin import build_workspace_server
from winlock.capability.client import CallResult, CapabilityServerClient
from winlock.capability.local import LocalCapabilityServer, ToolFailure
from winlock.capability.protocol import PROTOCOL_VERSION, ToolSpec
from winlock.capability.transport import Connector, Transport, memory_pipe, stdio_connector, tcp_connector

__all__ = [
    "PROTOCOL_VERSION",
    "CallResult",
    "CapabilityServerClient",
    "Connector",
    "LocalCapabilityServer",
    "ToolFailure",
    "ToolSpec",
    "Transport",
    "build_workspace_server",
    "memory_pipe",
    "stdio_connector",
    "tcp_connector",
]
