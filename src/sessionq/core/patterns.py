"""Catalogue of commonly used query expressions."""

import json
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from .query_shapes import find_forbidden
from ..utils.exceptions import InvalidQuery


@dataclass(frozen=True)
class QueryPattern:
    name: str
    category: str
    expression: str
    description: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


CATEGORIES = ("messages", "content", "statistics", "time", "search")

PATTERNS: List[QueryPattern] = [
    QueryPattern("user_messages", "messages",
                 '.[] | select(.type == "user")',
                 "Messages sent by the user"),
    QueryPattern("assistant_messages", "messages",
                 '.[] | select(.type == "assistant")',
                 "Messages produced by the assistant"),
    QueryPattern("system_messages", "messages",
                 '.[] | select(.type == "system")',
                 "System records"),
    QueryPattern("message_content", "content",
                 '.[] | .message | objects | .content',
                 "Raw message content of every message"),
    QueryPattern("tool_uses", "content",
                 '.[] | select(.tool_use) | .tool_use',
                 "Tool invocations"),
    QueryPattern("tool_results", "content",
                 '.[] | select(.tool_use_result) | .tool_use_result',
                 "Tool results"),
    QueryPattern("message_count", "statistics",
                 'group_by(.type) | map({type: .[0].type, count: length})',
                 "Number of records per type"),
    QueryPattern("session_summary", "statistics",
                 '{total: length, types: (group_by(.type) | map({type: .[0].type, count: length}))}',
                 "Total records and per-type counts"),
    QueryPattern("recent", "time",
                 '.[] | select(.timestamp | strings | (.[0:19] + "Z" | try fromdateiso8601 catch 0) > (now - 86400))',
                 "Records from the last 24 hours"),
    QueryPattern("today", "time",
                 '.[] | select(.timestamp | strings | .[0:10] == (now | strftime("%Y-%m-%d")))',
                 "Records from today (UTC)"),
]


def get_patterns(category: Optional[str] = None) -> List[QueryPattern]:
    """List catalogue entries, optionally restricted to one category."""
    if category is None:
        return list(PATTERNS)
    if category not in CATEGORIES:
        raise InvalidQuery(f"Unknown pattern category '{category}'",
                           {"categories": list(CATEGORIES)})
    return [p for p in PATTERNS if p.category == category]


def get_pattern(name: str) -> QueryPattern:
    for pattern in PATTERNS:
        if pattern.name == name:
            return pattern
    raise InvalidQuery(f"Unknown pattern '{name}'")


def _literal(value: str, kind: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidQuery(f"{kind} must be a non-empty string")
    literal = json.dumps(value, ensure_ascii=False)
    forbidden = find_forbidden(literal)
    if forbidden:
        raise InvalidQuery(f"{kind} cannot contain {forbidden}")
    return literal


def content_search(term: str) -> str:
    """Expression selecting messages whose string content contains ``term``."""
    literal = _literal(term, "Search term")
    return f'.[] | select(.message | objects | .content | type == "string" and contains({literal}))'


def tool_search(tool_name: str) -> str:
    """Expression selecting records that invoked the named tool."""
    literal = _literal(tool_name, "Tool name")
    return f'.[] | select(.tool_use.name == {literal})'
