"""Context assembly package."""

from winlock.context.assembler import ContextAssembler, ContextBundle, TruncationPolicy, assemble
from winlock.context.sources import (
    ContextSource,
    FileContextSource,
    RuleSnippet,
    StaticContextSource,
    collect_rule_snippets,
    workspace_rule_sources,
)

__all__ = [
    "ContextAssembler",
    "ContextBundle",
    "ContextSource",
    "FileContextSource",
    "RuleSnippet",
    "StaticContextSource",
    "TruncationPolicy",
    "assemble",
    "collect_rule_snippets",
    "workspace_rule_sources",
]
