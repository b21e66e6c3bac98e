from __future__ import annotations

import json
from pathlib import Path

import pytest

from winlock.errors import ConfigError, TranscriptError
from winlock.transcript import (
    BackendTurn,
    FileTranscriptStore,
    PromptTurn,
    TerminalTurn,
    ToolCall,
    ToolError,
    ToolResult,
    ToolResultTurn,
    Transcript,
)
from winlock.types import FinishReason, SessionState, ToolErrorKind


def _conversation(transcript: Transcript) -> None:
    transcript.append(PromptTurn(text="fix the bug"))
    transcript.append(
        BackendTurn(
            content="looking",
            tool_calls=(ToolCall(id="c1", name="read_file", arguments={"path": "a.py"}), ToolCall(id="c2", name="x")),
            finish=FinishReason.NEEDS_TOOLS,
        )
    )
    transcript.append(
        ToolResultTurn(
            outcomes=(
                ToolResult(call_id="c1", content={"lines": ["a", "b"]}),
                ToolError(call_id="c2", kind=ToolErrorKind.UNKNOWN_TOOL, message="no server provides x"),
            )
        )
    )


def test_append_stamps_consecutive_sequence_numbers() -> None:
    transcript = Transcript()
    _conversation(transcript)

    assert [turn.seq for turn in transcript.snapshot()] == [1, 2, 3]
    assert transcript.counts() == {"turns": 3, "backend": 1, "tool_results": 1}


def test_snapshot_is_unaffected_by_later_appends() -> None:
    transcript = Transcript()
    transcript.append(PromptTurn(text="one"))
    snapshot = transcript.snapshot()
    transcript.append(BackendTurn(content="two"))

    assert len(snapshot) == 1
    assert len(transcript.snapshot()) == 2


def test_unresolved_calls_only_for_trailing_backend_turn() -> None:
    transcript = Transcript()
    transcript.append(PromptTurn(text="go"))
    calls = (ToolCall(id="c1", name="echo"),)
    transcript.append(BackendTurn(content=None, tool_calls=calls, finish=FinishReason.NEEDS_TOOLS))
    assert transcript.unresolved_calls() == calls

    transcript.append(ToolResultTurn(outcomes=(ToolResult(call_id="c1", content="ok"),)))
    assert transcript.unresolved_calls() == ()
    assert transcript.last_backend_turn() is not None


def test_terminal_turn_closes_the_transcript() -> None:
    transcript = Transcript()
    transcript.append(PromptTurn(text="go"))
    transcript.append(TerminalTurn(state=SessionState.CANCELLED, error_kind="cancelled"))

    assert transcript.terminal_state() is SessionState.CANCELLED
    with pytest.raises(ValueError):
        transcript.append(BackendTurn(content="late"))


def test_out_of_order_turns_are_rejected() -> None:
    with pytest.raises(TranscriptError, match="seq=2"):
        Transcript([PromptTurn(text="a", seq=2)])


def test_store_replays_an_identical_transcript(tmp_path: Path) -> None:
    store = FileTranscriptStore(tmp_path / "home", tmp_path / "ws")
    transcript = store.create("s1")
    _conversation(transcript)
    transcript.append(TerminalTurn(state=SessionState.FAILED, error_kind="backend", message="nope"))

    loaded = store.load("s1")

    assert loaded is not None
    assert loaded.snapshot() == transcript.snapshot()


def test_loaded_transcript_keeps_appending_to_the_same_file(tmp_path: Path) -> None:
    store = FileTranscriptStore(tmp_path / "home", tmp_path / "ws")
    first = store.create("s1")
    first.append(PromptTurn(text="start"))

    resumed = FileTranscriptStore(tmp_path / "home", tmp_path / "ws").load("s1")
    assert resumed is not None
    resumed.append(BackendTurn(content="continued"))

    again = store.load("s1")
    assert again is not None
    assert [turn.seq for turn in again.snapshot()] == [1, 2]


def test_store_skips_corrupt_lines(tmp_path: Path) -> None:
    store = FileTranscriptStore(tmp_path / "home", tmp_path / "ws")
    transcript = store.create("s1")
    transcript.append(PromptTurn(text="start"))
    (record,) = store.list_sessions()
    with record.path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n")
        handle.write(json.dumps({"seq": "x", "kind": "prompt"}) + "\n")

    loaded = store.load("s1")
    assert loaded is not None
    assert len(loaded) == 1


def test_create_refuses_existing_session(tmp_path: Path) -> None:
    store = FileTranscriptStore(tmp_path / "home", tmp_path / "ws")
    store.create("s1")
    with pytest.raises(FileExistsError):
        store.create("s1")


def test_list_and_remove_sessions(tmp_path: Path) -> None:
    home = tmp_path / "home"
    store_a = FileTranscriptStore(home, tmp_path / "a")
    store_b = FileTranscriptStore(home, tmp_path / "b")
    done = store_a.create("done")
    done.append(PromptTurn(text="x"))
    done.append(TerminalTurn(state=SessionState.COMPLETED))
    store_a.create("open").append(PromptTurn(text="y"))
    store_b.create("other/id").append(PromptTurn(text="z"))

    records = {record.session_id: record for record in store_a.list_sessions()}
    assert set(records) == {"done", "open"}
    assert records["done"].state is SessionState.COMPLETED
    assert records["done"].turns == 2
    assert records["open"].state is None
    assert {record.session_id for record in store_a.list_all_sessions()} == {"done", "open", "other/id"}

    assert store_a.remove("done") is True
    assert store_a.remove("done") is False
    assert store_a.load("done") is None
    assert [record.session_id for record in store_a.list_sessions()] == ["open"]


def test_returned_turns_cannot_rewrite_history() -> None:
    transcript = Transcript()
    arguments = {"path": "a.txt"}
    appended = transcript.append(
        BackendTurn(content=None, tool_calls=(ToolCall(id="c1", name="read_file", arguments=arguments),))
    )
    arguments["path"] = "changed by caller"
    appended.tool_calls[0].arguments["path"] = "changed by consumer"
    snapshot = transcript.snapshot()
    snapshot[0].tool_calls[0].arguments["extra"] = True  # type: ignore[union-attr]
    transcript.append(ToolResultTurn(outcomes=(ToolResult(call_id="c1", content={"lines": ["a"]}),)))
    transcript.last().outcomes[0].content["lines"].append("b")  # type: ignore[union-attr]

    stored_call, stored_result = transcript.snapshot()
    assert stored_call.tool_calls[0].arguments == {"path": "a.txt"}  # type: ignore[union-attr]
    assert stored_result.outcomes[0].content == {"lines": ["a"]}  # type: ignore[union-attr]


def test_resume_after_a_torn_write_keeps_later_turns(tmp_path: Path) -> None:
    store = FileTranscriptStore(tmp_path / "home", tmp_path / "ws")
    transcript = store.create("s1")
    transcript.append(PromptTurn(text="start"))
    transcript.append(BackendTurn(content=None, tool_calls=(ToolCall(id="c1", name="x"),)))
    (record,) = store.list_sessions()
    with record.path.open("a", encoding="utf-8") as handle:
        handle.write('{"seq": 3, "kind": "backe')

    resumed = store.load("s1")
    assert resumed is not None
    assert len(resumed) == 2
    resumed.append(ToolResultTurn(outcomes=(ToolResult(call_id="c1", content="ok"),)))
    resumed.append(BackendTurn(content="after resume"))

    again = store.load("s1")
    assert again is not None
    assert [turn.seq for turn in again.snapshot()] == [1, 2, 3, 4]
    last = again.last()
    assert isinstance(last, BackendTurn)
    assert last.content == "after resume"


def test_complete_last_line_without_newline_is_kept(tmp_path: Path) -> None:
    store = FileTranscriptStore(tmp_path / "home", tmp_path / "ws")
    store.create("s1").append(PromptTurn(text="start"))
    (record,) = store.list_sessions()
    with record.path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps({"seq": 2, "kind": "backend", "content": "kept", "finish": "done"}))

    loaded = store.load("s1")
    assert loaded is not None
    loaded.append(TerminalTurn(state=SessionState.COMPLETED))

    again = store.load("s1")
    assert again is not None
    assert [turn.seq for turn in again.snapshot()] == [1, 2, 3]
    assert again.terminal_state() is SessionState.COMPLETED


def test_gap_in_stored_turns_is_a_config_error(tmp_path: Path) -> None:
    store = FileTranscriptStore(tmp_path / "home", tmp_path / "ws")
    store.create("s1").append(PromptTurn(text="start"))
    (record,) = store.list_sessions()
    with record.path.open("a", encoding="utf-8") as handle:
        handle.write("{broken\n")
        handle.write(json.dumps({"seq": 3, "kind": "backend", "content": "orphan", "finish": "done"}) + "\n")

    with pytest.raises(ConfigError, match="cannot be replayed"):
        store.load("s1")
