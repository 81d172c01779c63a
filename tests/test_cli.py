"""Test the command line interface."""

import json

import pytest
from click.testing import CliRunner

from sessionq.cli.main import main

from conftest import write_log


@pytest.fixture
def invoke(log_root, tmp_path):
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "engine.yaml").write_text("logging:\n  level: ERROR\n", encoding="utf-8")
    runner = CliRunner()

    def run(*args):
        return runner.invoke(main, ["--config-dir", str(config_dir), "--root", str(log_root), *args])
    return run


def test_projects_json(invoke):
    """Test listing collections as JSON."""
    result = invoke("projects", "-f", "json")

    assert result.exit_code == 0
    assert [c["name"] for c in json.loads(result.output)] == ["demo"]


def test_projects_table(invoke):
    """Test the human-readable listing."""
    result = invoke("projects")
    assert result.exit_code == 0
    assert "demo" in result.output


def test_logs_json(invoke):
    """Test listing the logs of a collection."""
    result = invoke("logs", "demo", "-f", "json")

    assert result.exit_code == 0
    logs = json.loads(result.output)
    assert logs[0]["id"] == "abc"
    assert logs[0]["path"] == "demo/abc"


def test_read(invoke):
    """Test printing log entries."""
    result = invoke("read", "demo/abc")
    assert result.exit_code == 0
    assert [json.loads(line) for line in result.output.splitlines()] == [
        {"type": "user"}, {"type": "assistant"}, {"type": "user"}
    ]

    limited = invoke("read", "abc", "--limit", "1", "--offset", "1")
    assert [json.loads(line) for line in limited.output.splitlines()] == [{"type": "assistant"}]


def test_read_unknown_log(invoke):
    """Test errors exit with status 1."""
    assert invoke("read", "nope").exit_code == 1
    assert invoke("read", "demo/..").exit_code == 1


def test_stats(invoke):
    """Test collection and log statistics."""
    result = invoke("stats", "demo")
    assert result.exit_code == 0
    assert json.loads(result.output)["log_count"] == 1

    details = invoke("stats", "--log", "abc")
    assert json.loads(details.output)["entry_count"] == 3

    assert invoke("stats").exit_code == 1


def test_query_json(invoke):
    """Test a query with JSON output."""
    result = invoke("query", '.[] | select(.type == "user")', "-c", "demo", "-f", "json")

    assert result.exit_code == 0
    response = json.loads(result.output)
    assert response["total_results"] == 2
    assert response["strategy"] == "per_record"


def test_query_pattern(invoke):
    """Test running a built-in pattern."""
    result = invoke("query", "--pattern", "message_count", "-f", "json")

    assert result.exit_code == 0
    counts = {r["type"]: r["count"] for r in json.loads(result.output)["results"]}
    assert counts == {"user": 2, "assistant": 1}


def test_query_needs_exactly_one_source(invoke):
    """Test EXPRESSION and --pattern are exclusive."""
    assert invoke("query").exit_code == 1
    assert invoke("query", ".type", "--pattern", "message_count").exit_code == 1
    assert invoke("query", "--pattern", "nope").exit_code == 1


def test_query_invalid_expression(invoke):
    """Test a denylisted expression."""
    assert invoke("query", "$ENV").exit_code == 1


def test_query_stream(invoke):
    """Test NDJSON envelopes on stdout."""
    result = invoke("query", ".type", "--log", "demo/abc", "--stream")

    assert result.exit_code == 0
    envelopes = [json.loads(line) for line in result.output.splitlines()]
    assert [e["type"] for e in envelopes] == ["start", "data", "data", "data", "end"]
    assert [e["payload"] for e in envelopes[1:4]] == ["user", "assistant", "user"]


def test_search(invoke, log_root):
    """Test content and tool search."""
    write_log(log_root / "demo" / "talk.jsonl", [
        {"type": "user", "message": {"content": "please deploy the service"}},
        {"type": "assistant", "tool_use": {"name": "Bash"}},
    ])

    found = invoke("search", "deploy", "-f", "json")
    assert found.exit_code == 0
    assert json.loads(found.output)["total_results"] == 1

    tools = invoke("search", "Bash", "--tool", "-f", "json")
    assert json.loads(tools.output)["results"] == [{"type": "assistant", "tool_use": {"name": "Bash"}}]


def test_validate(invoke):
    """Test expression validation."""
    result = invoke("validate", 'select(.type == "user")')
    assert result.exit_code == 0
    assert "Valid" in result.output

    assert invoke("validate", ".[").exit_code == 1


def test_patterns(invoke):
    """Test the pattern listing."""
    result = invoke("patterns", "--category", "messages")
    assert result.exit_code == 0
    assert "user_messages" in result.output

    assert invoke("patterns", "--category", "nope").exit_code == 1


def test_test_config(invoke):
    """Test the configuration check."""
    result = invoke("test-config")
    assert result.exit_code == 0
    assert "Configuration test passed" in result.output
