"""Transcript package."""

from winlock.transcript.store import FileTranscriptStore, SessionRecord, Transcript, TranscriptSink
from winlock.transcript.turns import (
    BackendTurn,
    PromptTurn,
    TerminalTurn,
    ToolCall,
    ToolError,
    ToolOutcome,
    ToolResult,
    ToolResultTurn,
    Turn,
)

__all__ = [
    "BackendTurn",
    "FileTranscriptStore",
    "PromptTurn",
    "SessionRecord",
    "TerminalTurn",
    "ToolCall",
    "ToolError",
    "ToolOutcome",
    "ToolResult",
    "ToolResultTurn",
    "Transcript",
    "TranscriptSink",
    "Turn",
]
