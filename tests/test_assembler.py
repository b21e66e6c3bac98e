from __future__ import annotations

import pytest

from winlock.capability.protocol import ToolSpec
from winlock.context import ContextAssembler, RuleSnippet, TruncationPolicy
from winlock.errors import ContextOverflowError
from winlock.transcript import (
    BackendTurn,
    PromptTurn,
    TerminalTurn,
    ToolCall,
    ToolError,
    ToolResult,
    ToolResultTurn,
    Transcript,
    Turn,
)
from winlock.types import FinishReason, SessionState, ToolErrorKind

RULES = (RuleSnippet(label="AGENTS.md", text="be careful"),)


def _snapshot(rounds: int, *, payload: str = "x" * 400) -> tuple[Turn, ...]:
    transcript = Transcript()
    transcript.append(PromptTurn(text="task"))
    for index in range(rounds):
        call = ToolCall(id=f"c{index}", name="read_file", arguments={"path": f"f{index}"})
        transcript.append(
            BackendTurn(content=f"step {index}", tool_calls=(call,), finish=FinishReason.NEEDS_TOOLS)
        )
        transcript.append(ToolResultTurn(outcomes=(ToolResult(call_id=call.id, content=payload),)))
    return transcript.snapshot()


def test_bundle_within_budget_is_verbatim() -> None:
    snapshot = _snapshot(2)
    bundle = ContextAssembler().assemble(snapshot, RULES)

    assert bundle.turns == snapshot
    assert bundle.omitted == 0
    assert bundle.rules == RULES


def test_rendering_is_deterministic() -> None:
    tools = (ToolSpec(name="read_file", description="read"),)
    first = ContextAssembler().assemble(_snapshot(3), RULES, tools=tools)
    second = ContextAssembler().assemble(_snapshot(3), RULES, tools=tools)

    assert first == second
    assert first.render() == second.render()


def test_terminal_turns_are_not_sent() -> None:
    transcript = Transcript()
    transcript.append(PromptTurn(text="task"))
    transcript.append(TerminalTurn(state=SessionState.COMPLETED))
    bundle = ContextAssembler().assemble(transcript.snapshot(), ())
    assert [type(turn) for turn in bundle.turns] == [PromptTurn]


def test_old_results_are_summarized_before_anything_is_dropped() -> None:
    snapshot = _snapshot(3, payload="y" * 2_000)
    full = ContextAssembler().assemble(snapshot, RULES).size()
    policy = TruncationPolicy(budget_chars=full - 2_000, preview_chars=100)

    bundle = ContextAssembler(policy).assemble(snapshot, RULES)

    assert bundle.omitted == 0
    assert len(bundle.turns) == len(snapshot)
    assert bundle.size() <= policy.budget_chars
    first_result = bundle.turns[2]
    assert isinstance(first_result, ToolResultTurn)
    summarized = first_result.outcomes[0]
    assert isinstance(summarized, ToolResult)
    assert "[2000 chars summarized]" in summarized.content
    assert bundle.turns[-1] == snapshot[-1]


def test_oldest_groups_are_dropped_but_prompt_and_latest_round_stay() -> None:
    snapshot = _snapshot(6, payload="z" * 1_000)
    latest = ContextAssembler().assemble((snapshot[0], *snapshot[-2:]), RULES).size()
    policy = TruncationPolicy(budget_chars=latest + 300, preview_chars=50)

    bundle = ContextAssembler(policy).assemble(snapshot, RULES)

    assert bundle.omitted > 0
    assert bundle.omitted % 2 == 0
    assert bundle.turns[0] == snapshot[0]
    assert bundle.turns[-2:] == snapshot[-2:]
    assert len(bundle.turns) + bundle.omitted == len(snapshot)
    assert bundle.size() <= policy.budget_chars
    kept_seqs = [turn.seq for turn in bundle.turns]
    assert kept_seqs == sorted(kept_seqs)


def test_overflow_when_protected_turns_do_not_fit() -> None:
    snapshot = _snapshot(1, payload="w" * 5_000)
    with pytest.raises(ContextOverflowError) as excinfo:
        ContextAssembler(TruncationPolicy(budget_chars=500)).assemble(snapshot, RULES)
    assert excinfo.value.budget == 500
    assert excinfo.value.size > 500


def test_tool_schemas_do_not_count_against_the_budget() -> None:
    snapshot = _snapshot(0)
    bare = ContextAssembler().assemble(snapshot, RULES)
    big_schema = {"type": "object", "description": "q" * 10_000}
    with_tools = ContextAssembler(TruncationPolicy(budget_chars=bare.size())).assemble(
        snapshot, RULES, tools=(ToolSpec(name="huge", input_schema=big_schema),)
    )
    assert with_tools.size() == bare.size()


def test_to_messages_pairs_tool_results_with_calls() -> None:
    transcript = Transcript()
    transcript.append(PromptTurn(text="task"))
    call = ToolCall(id="c1", name="grep", arguments={"pattern": "todo"})
    transcript.append(BackendTurn(content=None, tool_calls=(call,), finish=FinishReason.NEEDS_TOOLS))
    transcript.append(
        ToolResultTurn(outcomes=(ToolError(call_id="c1", kind=ToolErrorKind.TIMEOUT, message="grep exceeded 1s"),))
    )
    messages = ContextAssembler().assemble(transcript.snapshot(), RULES).to_messages()

    assert [message["role"] for message in messages] == ["system", "user", "assistant", "tool"]
    assert "be careful" in messages[0]["content"]
    assert messages[2]["tool_calls"][0]["function"] == {"name": "grep", "arguments": '{"pattern": "todo"}'}
    assert messages[3] == {
        "role": "tool",
        "tool_call_id": "c1",
        "content": "error[timeout]: grep exceeded 1s",
        "name": "grep",
    }
