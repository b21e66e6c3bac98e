from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

from winlock.capability import (
    CallResult,
    CapabilityServerClient,
    LocalCapabilityServer,
    ToolFailure,
    memory_pipe,
    stdio_connector,
    tcp_connector,
)
from winlock.capability.protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PROTOCOL_VERSION,
    Request,
    Response,
    decode,
    encode,
)
from winlock.types import ConnectionState


async def _exchange(server: LocalCapabilityServer, *lines: str) -> list[Response]:
    client_end, server_end = memory_pipe()
    serving = asyncio.create_task(server.serve(server_end))
    responses: list[Response] = []
    try:
        for line in lines:
            await client_end.send(line)
            message = decode(await asyncio.wait_for(client_end.receive(), timeout=1) or "")
            assert isinstance(message, Response)
            responses.append(message)
    finally:
        await client_end.close()
        await asyncio.wait_for(serving, timeout=1)
    return responses


def _call(request_id: int, name: str, arguments: dict[str, Any] | None = None) -> str:
    return encode(Request(id=request_id, method="tools/call", params={"name": name, "arguments": arguments or {}}))


@pytest.mark.asyncio
async def test_initialize_advertises_version_capabilities_and_tools() -> None:
    server = LocalCapabilityServer("local", concurrent=False)

    @server.tool("add", description="Add two numbers")
    def add(arguments: dict[str, Any]) -> int:
        return int(arguments["a"]) + int(arguments["b"])

    (response,) = await _exchange(server, encode(Request(id=1, method="initialize", params={})))

    assert response.result["protocolVersion"] == PROTOCOL_VERSION
    assert response.result["capabilities"] == {"concurrentRequests": False}
    assert response.result["serverInfo"]["name"] == "local"
    assert response.result["tools"] == [
        {"name": "add", "description": "Add two numbers", "inputSchema": {"type": "object"}}
    ]


@pytest.mark.asyncio
async def test_tool_results_and_failures() -> None:
    server = LocalCapabilityServer("local", concurrent=False)

    async def add(arguments: dict[str, Any]) -> int:
        await asyncio.sleep(0)
        return int(arguments["a"]) + int(arguments["b"])

    def refuse(arguments: dict[str, Any]) -> str:
        raise ToolFailure("read-only workspace")

    server.register("add", add)
    server.register("refuse", refuse)

    ok, failed, crashed = await _exchange(
        server,
        _call(1, "add", {"a": 2, "b": 3}),
        _call(2, "refuse"),
        _call(3, "add", {"a": 1}),
    )

    assert ok.result == {"content": 5, "isError": False}
    assert failed.result == {"content": "read-only workspace", "isError": True}
    assert crashed.error is not None
    assert crashed.error.code == INTERNAL_ERROR
    assert crashed.error.message.startswith("add failed")
    assert server.calls == ["add", "refuse", "add"]


@pytest.mark.asyncio
async def test_request_errors_use_json_rpc_codes() -> None:
    server = LocalCapabilityServer("local")
    server.register("echo", lambda arguments: arguments)

    unknown_method, unknown_tool, bad_arguments, garbage = await _exchange(
        server,
        encode(Request(id=1, method="resources/list")),
        _call(2, "missing"),
        encode(Request(id=3, method="tools/call", params={"name": "echo", "arguments": [1]})),
        "{not json\n",
    )

    assert unknown_method.error is not None and unknown_method.error.code == METHOD_NOT_FOUND
    assert unknown_tool.error is not None and unknown_tool.error.code == INVALID_PARAMS
    assert bad_arguments.error is not None and bad_arguments.error.code == INVALID_PARAMS
    assert garbage.id is None
    assert garbage.error is not None and garbage.error.code == PARSE_ERROR
    assert server.calls == []


@pytest.mark.asyncio
async def test_tools_list_reflects_registration_changes() -> None:
    server = LocalCapabilityServer("local")
    server.register("a", lambda arguments: "a")
    server.register("b", lambda arguments: "b")
    server.unregister("a")

    (response,) = await _exchange(server, encode(Request(id=1, method="tools/list")))

    assert [tool["name"] for tool in response.result["tools"]] == ["b"]


@pytest.mark.asyncio
async def test_tcp_round_trip() -> None:
    server = LocalCapabilityServer("tcp-tools")
    server.register("echo", lambda arguments: arguments.get("text"))
    listener = await server.serve_tcp("127.0.0.1", 0)
    port = listener.sockets[0].getsockname()[1]
    client = CapabilityServerClient("tcp-tools", tcp_connector("127.0.0.1", port))
    try:
        assert await client.connect() is ConnectionState.READY
        assert (await client.call_tool("echo", {"text": "over tcp"})).content == "over tcp"
    finally:
        await client.close()
        listener.close()
        await listener.wait_closed()


@pytest.mark.asyncio
async def test_serve_tools_over_stdio(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("from disk\n", encoding="utf-8")
    connector = stdio_connector(
        sys.executable,
        ["-m", "winlock", "serve-tools", "--workspace", str(tmp_path)],
        env={"WINLOCK_LOG_LEVEL": "WARNING", "WINLOCK_HOME": str(tmp_path / "home")},
        cwd=tmp_path,
        name="stdio-tools",
    )
    client = CapabilityServerClient("stdio-tools", connector, handshake_timeout=30)
    try:
        assert await client.connect() is ConnectionState.READY
        assert "read_file" in client.catalog
        result = await client.call_tool("read_file", {"path": "a.txt"})
        assert result == CallResult(content="from disk", is_error=False)
    finally:
        await client.close()
