"""Append-only transcript and its persistent JSONL store."""

from __future__ import annotations

import dataclasses
import json
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from hashlib import md5
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, unquote

from loguru import logger

from winlock.errors import TranscriptError
from winlock.transcript.turns import (
    BackendTurn,
    TerminalTurn,
    ToolCall,
    Turn,
    turn_from_json,
    turn_from_payload,
    turn_kind,
    turn_to_json,
)
from winlock.types import SessionState

SESSION_FILE_SUFFIX = ".jsonl"
HEADER_KIND = "session"


class TranscriptSink(Protocol):
    """Receives every turn right after it is appended."""

    def write(self, turn: Turn) -> None: ...


class Transcript:
    """Ordered, append-only log of turns owned by one session.

    Turns are kept as their canonical JSON lines and every read decodes a fresh
    copy, so callers holding a returned turn cannot reach the stored history.
    """

    def __init__(self, turns: tuple[Turn, ...] | list[Turn] = (), *, sink: TranscriptSink | None = None) -> None:
        self._lines: list[str] = []
        self._kinds: list[str] = []
        for turn in turns:
            if turn.seq != len(self._lines) + 1:
                raise TranscriptError(f"transcript out of order at seq={turn.seq}, expected {len(self._lines) + 1}")
            self._store(turn)
        self._sink = sink

    def __len__(self) -> int:
        return len(self._lines)

    def append(self, turn: Turn) -> Turn:
        """Stamp the next sequence number on ``turn`` and append it."""
        if self._kinds and self._kinds[-1] == "terminal":
            raise ValueError("transcript is closed by a terminal turn")
        self._store(dataclasses.replace(turn, seq=len(self._lines) + 1))
        if self._sink is not None:
            self._sink.write(self._decode(-1))
        return self._decode(-1)

    def snapshot(self) -> tuple[Turn, ...]:
        return tuple(turn_from_json(line) for line in self._lines)

    def last(self) -> Turn | None:
        return self._decode(-1) if self._lines else None

    def last_backend_turn(self) -> BackendTurn | None:
        for index in range(len(self._kinds) - 1, -1, -1):
            if self._kinds[index] == "backend":
                turn = self._decode(index)
                if isinstance(turn, BackendTurn):
                    return turn
        return None

    def unresolved_calls(self) -> tuple[ToolCall, ...]:
        """Calls of the last backend turn that have no result turn yet."""
        last = self.last()
        if isinstance(last, BackendTurn):
            return last.tool_calls
        return ()

    def terminal_state(self) -> SessionState | None:
        last = self.last()
        if isinstance(last, TerminalTurn):
            return last.state
        return None

    def counts(self) -> dict[str, int]:
        return {
            "turns": len(self._kinds),
            "backend": self._kinds.count("backend"),
            "tool_results": self._kinds.count("tool_results"),
        }

    def _store(self, turn: Turn) -> None:
        self._lines.append(turn_to_json(turn))
        self._kinds.append(turn_kind(turn))

    def _decode(self, index: int) -> Turn:
        return turn_from_json(self._lines[index])


@dataclass(frozen=True)
class SessionRecord:
    """Stored session summary."""

    session_id: str
    workspace: Path
    path: Path
    created_at: str
    turns: int
    state: SessionState | None


class SessionFile:
    """One session's JSONL file: a header line followed by one line per turn."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def write_header(self, session_id: str, workspace: Path) -> None:
        header = {
            "kind": HEADER_KIND,
            "session_id": session_id,
            "workspace": str(workspace),
            "created_at": datetime.now(UTC).isoformat(),
        }
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as handle:
                handle.write(json.dumps(header, ensure_ascii=False) + "\n")

    def write(self, turn: Turn) -> None:
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(turn_to_json(turn) + "\n")

    def repair(self) -> None:
        """Settle a last line left unterminated by an interrupted write.

        A complete record only lost its newline and gets one; a torn record is
        cut off so later appends start on a line of their own.
        """
        with self._lock:
            if not self.path.exists():
                return
            data = self.path.read_bytes()
            if not data or data.endswith(b"\n"):
                return
            keep = data.rfind(b"\n") + 1
            tail = data[keep:]
            try:
                complete = isinstance(json.loads(tail), dict)
            except ValueError:
                complete = False
            if not complete:
                with self.path.open("r+b") as handle:
                    handle.truncate(keep)
                logger.warning("transcript.repair path={} dropped_bytes={}", self.path, len(tail))
                return
            with self.path.open("ab") as handle:
                handle.write(b"\n")
            logger.info("transcript.repair path={} terminated_last_line=true", self.path)

    def read(self) -> tuple[dict[str, object], list[Turn]]:
        header: dict[str, object] = {}
        turns: list[Turn] = []
        with self._lock:
            if not self.path.exists():
                return header, turns
            with self.path.open("r", encoding="utf-8") as handle:
                for raw_line in handle:
                    line = raw_line.strip()
                    if not line:
                        continue
                    try:
                        payload = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning("transcript.read.skip path={} reason=invalid_json", self.path)
                        continue
                    if isinstance(payload, dict) and payload.get("kind") == HEADER_KIND:
                        header = payload
                        continue
                    turn = turn_from_payload(payload)
                    if turn is not None:
                        turns.append(turn)
        return header, turns


class FileTranscriptStore:
    """Persists session transcripts per workspace under ``<home>/sessions``."""

    def __init__(self, home: Path, workspace: Path) -> None:
        self.workspace = workspace.resolve()
        self._root = (home / "sessions").resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._workspace_hash = _workspace_hash(self.workspace)
        self._files: dict[str, SessionFile] = {}

    def create(self, session_id: str) -> Transcript:
        session_file = self._session_file(session_id)
        if session_file.path.exists():
            raise FileExistsError(session_id)
        session_file.write_header(session_id, self.workspace)
        return Transcript(sink=session_file)

    def load(self, session_id: str) -> Transcript | None:
        """Replay a stored session; new turns keep appending to the same file."""
        session_file = self._session_file(session_id)
        if not session_file.path.exists():
            return None
        session_file.repair()
        _, turns = session_file.read()
        try:
            return Transcript(turns, sink=session_file)
        except TranscriptError as exc:
            raise TranscriptError(f"session {session_id} cannot be replayed: {exc}") from exc

    def exists(self, session_id: str) -> bool:
        return self._session_file(session_id).path.exists()

    def list_sessions(self) -> list[SessionRecord]:
        """Sessions recorded for this store's workspace."""
        return self._collect(f"{self._workspace_hash}__*{SESSION_FILE_SUFFIX}")

    def list_all_sessions(self) -> list[SessionRecord]:
        """Sessions recorded for every workspace sharing this home."""
        return self._collect(f"*{SESSION_FILE_SUFFIX}")

    def remove(self, session_id: str) -> bool:
        path = self._session_file(session_id).path
        self._files.pop(session_id, None)
        if not path.exists():
            return False
        path.unlink()
        return True

    def _collect(self, pattern: str) -> list[SessionRecord]:
        records: list[SessionRecord] = []
        for path in sorted(self._root.glob(pattern)):
            header, turns = SessionFile(path).read()
            session_id = header.get("session_id")
            if not isinstance(session_id, str):
                session_id = unquote(path.name.split("__", 1)[-1].removesuffix(SESSION_FILE_SUFFIX))
            state = None
            if turns and isinstance(turns[-1], TerminalTurn):
                state = turns[-1].state
            records.append(
                SessionRecord(
                    session_id=session_id,
                    workspace=Path(str(header.get("workspace", "-"))),
                    path=path,
                    created_at=str(header.get("created_at", "")),
                    turns=len(turns),
                    state=state,
                )
            )
        return sorted(records, key=lambda record: (str(record.workspace), record.created_at, record.session_id))

    def _session_file(self, session_id: str) -> SessionFile:
        if session_id not in self._files:
            encoded = quote(session_id, safe="")
            self._files[session_id] = SessionFile(self._root / f"{self._workspace_hash}__{encoded}{SESSION_FILE_SUFFIX}")
        return self._files[session_id]


def _workspace_hash(workspace: Path) -> str:
    return md5(str(workspace).encode("utf-8")).hexdigest()  # noqa: S324
