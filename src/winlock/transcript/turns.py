"""Transcript turn types and their JSON payloads."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from winlock.types import FinishReason, SessionState, ToolErrorKind


@dataclass(frozen=True)
class ToolCall:
    """One tool invocation requested by the backend."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    content: Any


@dataclass(frozen=True)
class ToolError:
    call_id: str
    kind: ToolErrorKind
    message: str


ToolOutcome: TypeAlias = ToolResult | ToolError


@dataclass(frozen=True)
class PromptTurn:
    """The task that opens a session."""

    text: str
    seq: int = 0


@dataclass(frozen=True)
class BackendTurn:
    content: str | None
    tool_calls: tuple[ToolCall, ...] = ()
    finish: FinishReason = FinishReason.DONE
    seq: int = 0


@dataclass(frozen=True)
class ToolResultTurn:
    """Outcomes for every call of the preceding backend turn, in call order."""

    outcomes: tuple[ToolOutcome, ...]
    seq: int = 0

    def call_ids(self) -> list[str]:
        return [outcome.call_id for outcome in self.outcomes]


@dataclass(frozen=True)
class TerminalTurn:
    state: SessionState
    error_kind: str | None = None
    message: str | None = None
    seq: int = 0


Turn: TypeAlias = PromptTurn | BackendTurn | ToolResultTurn | TerminalTurn


def turn_kind(turn: Turn) -> str:
    if isinstance(turn, PromptTurn):
        return "prompt"
    if isinstance(turn, BackendTurn):
        return "backend"
    if isinstance(turn, ToolResultTurn):
        return "tool_results"
    return "terminal"


def turn_to_payload(turn: Turn) -> dict[str, Any]:
    payload: dict[str, Any] = {"seq": turn.seq, "kind": turn_kind(turn)}
    if isinstance(turn, PromptTurn):
        payload["text"] = turn.text
    elif isinstance(turn, BackendTurn):
        payload["content"] = turn.content
        payload["finish"] = turn.finish.value
        payload["tool_calls"] = [
            {"id": call.id, "name": call.name, "arguments": dict(call.arguments)} for call in turn.tool_calls
        ]
    elif isinstance(turn, ToolResultTurn):
        payload["outcomes"] = [outcome_to_payload(outcome) for outcome in turn.outcomes]
    else:
        payload["state"] = turn.state.value
        payload["error_kind"] = turn.error_kind
        payload["message"] = turn.message
    return payload


def turn_to_json(turn: Turn) -> str:
    return json.dumps(turn_to_payload(turn), ensure_ascii=False)


def turn_from_json(line: str) -> Turn:
    turn = turn_from_payload(json.loads(line))
    if turn is None:
        raise ValueError(f"not a transcript turn: {line[:80]}")
    return turn


def outcome_to_payload(outcome: ToolOutcome) -> dict[str, Any]:
    if isinstance(outcome, ToolResult):
        return {"call_id": outcome.call_id, "status": "ok", "content": outcome.content}
    return {
        "call_id": outcome.call_id,
        "status": "error",
        "kind": outcome.kind.value,
        "message": outcome.message,
    }


def turn_from_payload(payload: object) -> Turn | None:
    """Rebuild a turn from its payload; malformed payloads yield ``None``."""
    if not isinstance(payload, dict):
        return None
    seq = payload.get("seq")
    kind = payload.get("kind")
    if not isinstance(seq, int):
        return None
    try:
        if kind == "prompt":
            return PromptTurn(text=str(payload["text"]), seq=seq)
        if kind == "backend":
            calls = tuple(
                ToolCall(id=str(item["id"]), name=str(item["name"]), arguments=dict(item.get("arguments") or {}))
                for item in payload.get("tool_calls") or []
            )
            return BackendTurn(
                content=payload.get("content"),
                tool_calls=calls,
                finish=FinishReason(payload.get("finish", FinishReason.DONE.value)),
                seq=seq,
            )
        if kind == "tool_results":
            outcomes = tuple(_outcome_from_payload(item) for item in payload.get("outcomes") or [])
            return ToolResultTurn(outcomes=outcomes, seq=seq)
        if kind == "terminal":
            return TerminalTurn(
                state=SessionState(payload["state"]),
                error_kind=payload.get("error_kind"),
                message=payload.get("message"),
                seq=seq,
            )
    except (KeyError, TypeError, ValueError):
        return None
    return None


def _outcome_from_payload(item: dict[str, Any]) -> ToolOutcome:
    if item.get("status") == "ok":
        return ToolResult(call_id=str(item["call_id"]), content=item.get("content"))
    return ToolError(call_id=str(item["call_id"]), kind=ToolErrorKind(item["kind"]), message=str(item.get("message", "")))
