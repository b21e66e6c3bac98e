"""Reference backend over the republic LLM client."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from loguru import logger
from republic import LLM, Tool

from winlock.backends.base import BackendResponse
from winlock.context import ContextBundle
from winlock.errors import BackendError
from winlock.transcript import ToolCall
from winlock.types import FinishReason

TRANSIENT_STATUS = frozenset({408, 409, 425, 429, 500, 502, 503, 504})
TRANSIENT_KINDS = frozenset({"temporary", "timeout", "rate_limit", "network"})
TRANSIENT_NAME_MARKERS = ("timeout", "ratelimit", "connection", "unavailable", "overloaded")


class RepublicBackend:
    """Sends bundles as chat messages; tool specs are offered as function tools."""

    name = "republic"

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        max_tokens: int = 4096,
        llm: Any | None = None,
    ) -> None:
        self._llm = llm if llm is not None else LLM(model=model, api_key=api_key, api_base=api_base)
        self._max_tokens = max_tokens

    async def send(self, bundle: ContextBundle) -> BackendResponse:
        tools = [
            Tool(name=spec.name, description=spec.description, parameters=spec.input_schema, handler=None)
            for spec in bundle.tools
        ]
        try:
            response = await asyncio.to_thread(
                self._llm.chat.raw,
                messages=bundle.to_messages(),
                tools=tools,
                max_tokens=self._max_tokens,
            )
        except Exception as exc:
            raise classify_error(exc) from exc
        return parse_response(response)


def classify_error(exc: Exception) -> BackendError:
    """Map a provider exception to a transient or fatal ``BackendError``."""
    if isinstance(exc, BackendError):
        return exc
    message = f"{type(exc).__name__}: {exc!s}"
    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if isinstance(status, int):
        transient = status in TRANSIENT_STATUS
    else:
        kind = getattr(exc, "kind", None)
        kind_value = str(getattr(kind, "value", kind) or "").lower()
        name = type(exc).__name__.lower()
        transient = (
            kind_value in TRANSIENT_KINDS
            or isinstance(exc, (TimeoutError, ConnectionError))
            or any(marker in name for marker in TRANSIENT_NAME_MARKERS)
        )
    logger.debug("backend.error.classified transient={} error={}", transient, message)
    return BackendError(message, transient=transient)


def parse_response(response: Any) -> BackendResponse:
    choices = getattr(response, "choices", None)
    if not choices:
        raise BackendError.fatal("backend response has no choices")
    message = getattr(choices[0], "message", None)
    if message is None:
        raise BackendError.fatal("backend response has no message")

    content = getattr(message, "content", None) or None
    calls: list[ToolCall] = []
    for idx, tool_call in enumerate(getattr(message, "tool_calls", None) or []):
        function = getattr(tool_call, "function", None)
        if function is None:
            continue
        call_id = getattr(tool_call, "id", None) or f"call_{idx}"
        calls.append(
            ToolCall(
                id=str(call_id),
                name=str(getattr(function, "name", "") or ""),
                arguments=_parse_arguments(getattr(function, "arguments", None)),
            )
        )
    finish = FinishReason.NEEDS_TOOLS if calls else FinishReason.DONE
    return BackendResponse(content=content, tool_calls=tuple(calls), finish=finish)


def _parse_arguments(arguments: object) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return dict(arguments)
    if not isinstance(arguments, str) or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise BackendError.fatal(f"tool call arguments are not valid json: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise BackendError.fatal("tool call arguments must be a json object")
    return parsed
