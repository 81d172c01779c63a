"""Test log and collection statistics."""

from datetime import datetime, timedelta

import pytest

from sessionq.core.models import LogEntry, LogHandle, LogInfo
from sessionq.core.statistics import (
    collection_statistics,
    extract_message_content,
    log_statistics,
)


def _entries(payloads):
    return [LogEntry(i + 1, payload) for i, payload in enumerate(payloads)]


@pytest.mark.parametrize("payload,expected", [
    ({"message": {"content": "hello"}}, "hello"),
    ({"message": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}}, "a b"),
    ({"message": {"content": [{"type": "tool_result", "content": "done"}]}}, "done"),
    ({"message": {"content": ""}}, None),
    ({"message": "plain"}, None),
    ({"type": "user"}, None),
    (["not", "an", "object"], None),
])
def test_extract_message_content(payload, expected):
    """Test content extraction from both content shapes."""
    assert extract_message_content(payload) == expected


def test_log_statistics():
    """Test per-log statistics."""
    entries = _entries([
        {"type": "user", "timestamp": "2024-01-01T10:00:00Z", "message": {"content": "abcd"}},
        {"type": "assistant", "timestamp": "2024-01-01T10:00:05Z",
         "message": {"content": [{"type": "text", "text": "ab"}]}, "tool_use": {"name": "Bash"}},
        {"type": "user", "timestamp": "not a time", "tool_use_result": {"ok": True}},
        "a bare string",
    ])

    stats = log_statistics(entries)

    assert stats["total"] == 4
    assert stats["types"] == {"user": 2, "assistant": 1, "unknown": 1}
    assert stats["tool_uses"] == 1
    assert stats["tool_results"] == 1
    assert stats["average_message_length"] == 3
    assert stats["timespan"]["duration_ms"] == 5000


def test_log_statistics_empty():
    """Test statistics for a log without entries."""
    stats = log_statistics([])
    assert stats["total"] == 0
    assert stats["timespan"] is None


def test_collection_statistics():
    """Test size buckets and age bounds."""
    now = datetime(2024, 1, 2)
    logs = [
        LogInfo(LogHandle("demo", "a"), 500, now - timedelta(days=1), now),
        LogInfo(LogHandle("demo", "b"), 50_000, now, now),
        LogInfo(LogHandle("demo", "c"), 200_000, now, now + timedelta(hours=1)),
    ]

    stats = collection_statistics(logs)

    assert stats["log_count"] == 3
    assert stats["total_size"] == 250_500
    assert stats["size_distribution"] == {"small": 1, "medium": 1, "large": 1}
    assert stats["oldest_log"] == (now - timedelta(days=1)).isoformat()
    assert stats["newest_log"] == (now + timedelta(hours=1)).isoformat()


def test_collection_statistics_empty():
    """Test an empty collection."""
    stats = collection_statistics([])
    assert stats["log_count"] == 0
    assert stats["oldest_log"] is None
