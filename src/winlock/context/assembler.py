"""Context bundle assembly with oldest-first truncation."""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger

from winlock.capability.protocol import ToolSpec
from winlock.context.sources import RuleSnippet
from winlock.errors import ContextOverflowError
from winlock.transcript.turns import (
    BackendTurn,
    PromptTurn,
    TerminalTurn,
    ToolCall,
    ToolOutcome,
    ToolResult,
    ToolResultTurn,
    Turn,
    turn_to_payload,
)

DEFAULT_BUDGET_CHARS = 200_000
DEFAULT_PREVIEW_CHARS = 240


@dataclass(frozen=True)
class TruncationPolicy:
    """Character budget for one bundle and the preview size used when summarizing."""

    budget_chars: int = DEFAULT_BUDGET_CHARS
    preview_chars: int = DEFAULT_PREVIEW_CHARS


@dataclass(frozen=True)
class ContextBundle:
    """Materialized input of one backend call."""

    rules: tuple[RuleSnippet, ...]
    turns: tuple[Turn, ...]
    omitted: int = 0
    tools: tuple[ToolSpec, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "rules": [{"label": rule.label, "text": rule.text} for rule in self.rules],
            "omitted": self.omitted,
            "turns": [turn_to_payload(turn) for turn in self.turns],
            "tools": [tool.to_payload() for tool in self.tools],
        }

    def render(self) -> str:
        """Canonical rendering; identical bundles render to identical strings."""
        return json.dumps(self.to_payload(), ensure_ascii=False, sort_keys=True, separators=(",", ":"))

    def size(self) -> int:
        """Characters counted against the budget (tool schemas excluded)."""
        payload = self.to_payload()
        payload.pop("tools")
        return len(json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":")))

    def to_messages(self) -> list[dict[str, Any]]:
        """Render as OpenAI-style chat messages."""
        messages: list[dict[str, Any]] = []
        if self.rules:
            rules_text = "\n\n".join(f"<rules source=\"{rule.label}\">\n{rule.text}\n</rules>" for rule in self.rules)
            messages.append({"role": "system", "content": rules_text})
        if self.omitted:
            messages.append({"role": "system", "content": f"[{self.omitted} earlier turns omitted]"})

        pending: dict[str, ToolCall] = {}
        for turn in self.turns:
            if isinstance(turn, PromptTurn):
                messages.append({"role": "user", "content": turn.text})
            elif isinstance(turn, BackendTurn):
                messages.append(_assistant_message(turn))
                pending = {call.id: call for call in turn.tool_calls}
            elif isinstance(turn, ToolResultTurn):
                for outcome in turn.outcomes:
                    message: dict[str, Any] = {
                        "role": "tool",
                        "tool_call_id": outcome.call_id,
                        "content": render_outcome(outcome),
                    }
                    call = pending.get(outcome.call_id)
                    if call is not None:
                        message["name"] = call.name
                    messages.append(message)
                pending = {}
        return messages


class ContextAssembler:
    """Builds bundles from transcript snapshots; holds no mutable state."""

    def __init__(self, policy: TruncationPolicy | None = None) -> None:
        self.policy = policy or TruncationPolicy()

    def assemble(
        self,
        snapshot: Sequence[Turn],
        rules: Iterable[RuleSnippet],
        *,
        tools: Iterable[ToolSpec] = (),
    ) -> ContextBundle:
        return assemble(snapshot, rules, self.policy, tools=tools)


def assemble(
    snapshot: Sequence[Turn],
    rules: Iterable[RuleSnippet],
    policy: TruncationPolicy,
    *,
    tools: Iterable[ToolSpec] = (),
) -> ContextBundle:
    rule_items = tuple(rules)
    tool_items = tuple(tools)
    groups = _group_turns([turn for turn in snapshot if not isinstance(turn, TerminalTurn)])

    bundle = _bundle(rule_items, groups, 0, tool_items)
    if bundle.size() <= policy.budget_chars:
        return bundle

    protected = _protected_groups(groups)
    groups = [
        group if index in protected else [_summarize(turn, policy.preview_chars) for turn in group]
        for index, group in enumerate(groups)
    ]
    bundle = _bundle(rule_items, groups, 0, tool_items)
    if bundle.size() <= policy.budget_chars:
        logger.debug("context.truncate summarized size={} budget={}", bundle.size(), policy.budget_chars)
        return bundle

    kept = list(range(len(groups)))
    omitted = 0
    for index in range(len(groups)):
        if index in protected:
            continue
        kept.remove(index)
        omitted += len(groups[index])
        bundle = _bundle(rule_items, [groups[i] for i in kept], omitted, tool_items)
        if bundle.size() <= policy.budget_chars:
            logger.debug("context.truncate dropped={} size={} budget={}", omitted, bundle.size(), policy.budget_chars)
            return bundle

    raise ContextOverflowError(bundle.size(), policy.budget_chars)


def render_outcome(outcome: ToolOutcome) -> str:
    if isinstance(outcome, ToolResult):
        return _render_content(outcome.content)
    return f"error[{outcome.kind.value}]: {outcome.message}"


def _assistant_message(turn: BackendTurn) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": turn.content or ""}
    if turn.tool_calls:
        message["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": json.dumps(call.arguments, ensure_ascii=False, sort_keys=True),
                },
            }
            for call in turn.tool_calls
        ]
    return message


def _group_turns(turns: list[Turn]) -> list[list[Turn]]:
    """A backend turn and the result turn answering it form one group."""
    groups: list[list[Turn]] = []
    for turn in turns:
        if isinstance(turn, ToolResultTurn) and groups and isinstance(groups[-1][-1], BackendTurn):
            groups[-1].append(turn)
            continue
        groups.append([turn])
    return groups


def _protected_groups(groups: list[list[Turn]]) -> set[int]:
    protected: set[int] = set()
    for index, group in enumerate(groups):
        if isinstance(group[0], PromptTurn):
            protected.add(index)
            break
    for index in range(len(groups) - 1, -1, -1):
        if isinstance(groups[index][0], BackendTurn):
            protected.add(index)
            break
    if groups:
        protected.add(len(groups) - 1)
    return protected


def _bundle(
    rules: tuple[RuleSnippet, ...],
    groups: list[list[Turn]],
    omitted: int,
    tools: tuple[ToolSpec, ...],
) -> ContextBundle:
    turns = tuple(turn for group in groups for turn in group)
    return ContextBundle(rules=rules, turns=turns, omitted=omitted, tools=tools)


def _summarize(turn: Turn, limit: int) -> Turn:
    if isinstance(turn, ToolResultTurn):
        outcomes = tuple(
            ToolResult(call_id=outcome.call_id, content=_preview(_render_content(outcome.content), limit))
            if isinstance(outcome, ToolResult)
            else outcome
            for outcome in turn.outcomes
        )
        return dataclasses.replace(turn, outcomes=outcomes)
    if isinstance(turn, BackendTurn) and turn.content:
        return dataclasses.replace(turn, content=_preview(turn.content, limit))
    return turn


def _preview(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    suffix = f"... [{len(text)} chars summarized]"
    return text[: max(limit - len(suffix), 0)] + suffix


def _render_content(content: object) -> str:
    if isinstance(content, str):
        return content
    try:
        return json.dumps(content, ensure_ascii=False, sort_keys=True)
    except TypeError:
        return str(content)
