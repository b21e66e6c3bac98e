"""Static rule sources feeding the context bundle."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from loguru import logger

from winlock.errors import ConfigError

DEFAULT_RULE_FILES = ("AGENTS.md",)
MAX_RULE_CHARS = 12_000


@dataclass(frozen=True)
class RuleSnippet:
    label: str
    text: str


class ContextSource(Protocol):
    """Read-only provider of ``(label, text)`` rule snippets."""

    label: str
    required: bool

    def list(self) -> list[tuple[str, str]]: ...


class FileContextSource:
    """A rule file in the workspace; its format is never interpreted."""

    def __init__(self, path: Path, *, label: str | None = None, required: bool = False) -> None:
        self.path = path
        self.label = label or path.name
        self.required = required

    def list(self) -> list[tuple[str, str]]:
        if not self.path.is_file():
            if self.required:
                raise FileNotFoundError(str(self.path))
            return []
        return [(self.label, self.path.read_text(encoding="utf-8"))]


class StaticContextSource:
    def __init__(self, snippets: Iterable[tuple[str, str]], *, label: str = "static", required: bool = False) -> None:
        self._snippets = [(str(name), str(text)) for name, text in snippets]
        self.label = label
        self.required = required

    def list(self) -> list[tuple[str, str]]:
        return list(self._snippets)


def workspace_rule_sources(workspace: Path, names: Iterable[str] = DEFAULT_RULE_FILES) -> list[ContextSource]:
    return [FileContextSource(workspace / name) for name in names]


def collect_rule_snippets(sources: Iterable[ContextSource]) -> tuple[RuleSnippet, ...]:
    """Read every source in order, skipping optional sources that fail."""
    snippets: list[RuleSnippet] = []
    for source in sources:
        try:
            items = source.list()
        except Exception as exc:
            if source.required:
                raise ConfigError(f"required context source {source.label!r} failed: {exc!s}") from exc
            logger.warning("context.source.skip label={} error={}", source.label, exc)
            continue
        for label, text in items:
            normalized = normalize_rule_text(text)
            if normalized:
                snippets.append(RuleSnippet(label=label, text=normalized))
    return tuple(snippets)


def normalize_rule_text(text: str, *, limit: int = MAX_RULE_CHARS) -> str:
    content = text.replace("\r\n", "\n").strip()
    if len(content) <= limit:
        return content

    marker = "\n\n[rule source truncated: middle content removed]\n\n"
    head_len = (limit - len(marker)) // 2
    tail_len = limit - len(marker) - head_len
    if head_len <= 0 or tail_len <= 0:
        return content[:limit]
    return f"{content[:head_len]}{marker}{content[-tail_len:]}"
