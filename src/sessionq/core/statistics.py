"""Summary statistics over logs and collections."""

import math
from typing import Any, Dict, List, Optional

import pandas as pd

from .models import JsonKind, LogEntry, LogInfo

SIZE_BINS = [0, 10_000, 100_000, math.inf]
SIZE_LABELS = ["small", "medium", "large"]


def extract_message_content(payload: Any) -> Optional[str]:
    """
    Extract text content from a conversation record.

    Handles both ``message.content`` as a plain string and as a list of
    content blocks carrying ``text`` or ``content``.
    """
    if JsonKind.of(payload) is not JsonKind.OBJECT:
        return None

    message = payload.get("message")
    if JsonKind.of(message) is not JsonKind.OBJECT:
        return None

    content = message.get("content")
    kind = JsonKind.of(content)
    if kind is JsonKind.STRING:
        return content or None
    if kind is JsonKind.ARRAY:
        parts = []
        for block in content:
            if JsonKind.of(block) is JsonKind.OBJECT:
                text = block.get("text") or block.get("content") or ""
                parts.append(text if isinstance(text, str) else "")
        return " ".join(parts) or None
    return None


def log_statistics(entries: List[LogEntry]) -> Dict[str, Any]:
    """
    Get statistics for one log.

    Args:
        entries: Parsed entries of the log

    Returns:
        Dictionary with totals, per-type counts, timespan, average message
        length and tool use/result counts
    """
    stats: Dict[str, Any] = {
        "total": len(entries),
        "types": {},
        "timespan": None,
        "average_message_length": 0,
        "tool_uses": 0,
        "tool_results": 0,
    }

    if not entries:
        return stats

    objects = [e.payload if e.kind is JsonKind.OBJECT else {} for e in entries]
    contents = [extract_message_content(p) for p in objects]

    frame = pd.DataFrame({
        "type": [e.type if isinstance(e.type, str) else "unknown" for e in entries],
        "timestamp": [e.timestamp for e in entries],
        "content_length": [len(c) if c else None for c in contents],
        "tool_use": [bool(p.get("tool_use")) for p in objects],
        "tool_result": [bool(p.get("tool_use_result")) for p in objects],
    })

    stats["types"] = {str(k): int(v) for k, v in frame["type"].value_counts().items()}
    stats["tool_uses"] = int(frame["tool_use"].sum())
    stats["tool_results"] = int(frame["tool_result"].sum())

    times = pd.to_datetime(frame["timestamp"], errors="coerce", utc=True, format="ISO8601").dropna()
    if len(times) > 1:
        start, end = times.min(), times.max()
        stats["timespan"] = {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "duration_ms": int((end - start).total_seconds() * 1000),
        }

    lengths = frame["content_length"].dropna()
    if not lengths.empty:
        stats["average_message_length"] = int(round(lengths.mean()))

    return stats


def collection_statistics(logs: List[LogInfo]) -> Dict[str, Any]:
    """Size and age statistics for the logs of one collection."""
    if not logs:
        return {
            "log_count": 0,
            "total_size": 0,
            "average_size": 0,
            "oldest_log": None,
            "newest_log": None,
            "size_distribution": {label: 0 for label in SIZE_LABELS},
        }

    frame = pd.DataFrame({
        "size": [info.size for info in logs],
        "created": [info.created for info in logs],
        "modified": [info.modified for info in logs],
    })

    buckets = pd.cut(frame["size"], bins=SIZE_BINS, labels=SIZE_LABELS, right=False)
    distribution = buckets.value_counts()

    return {
        "log_count": len(frame),
        "total_size": int(frame["size"].sum()),
        "average_size": int(round(frame["size"].mean())),
        "oldest_log": frame["created"].min().isoformat(),
        "newest_log": frame["modified"].max().isoformat(),
        "size_distribution": {label: int(distribution.get(label, 0)) for label in SIZE_LABELS},
    }
