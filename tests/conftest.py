"""Shared fixtures and path setup for the test suite.

Makes ``src`` importable so ``import sessionq`` works without installing
the package first.
"""

import json
import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
SRC_DIR = os.path.join(PROJECT_ROOT, "src")

if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from sessionq.core.cache import LRUCache  # noqa: E402
from sessionq.core.jq_workers import JqWorkerPool  # noqa: E402
from sessionq.core.log_store import LogStore  # noqa: E402
from sessionq.core.query_evaluator import QueryEvaluator  # noqa: E402

FAKE_CLI = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fixtures", "fake_cli.py")

DEMO_LINES = [{"type": "user"}, {"type": "assistant"}, {"type": "user"}]


def write_log(path: Path, lines) -> Path:
    """Write JSON values (or raw strings) one per line."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for line in lines:
            f.write((line if isinstance(line, str) else json.dumps(line)) + "\n")
    return path


@pytest.fixture
def log_root(tmp_path):
    """Log root holding collection ``demo`` with log ``abc``."""
    root = tmp_path / "projects"
    write_log(root / "demo" / "abc.jsonl", DEMO_LINES)
    return root


@pytest.fixture
def store(log_root):
    return LogStore(str(log_root))


@pytest.fixture(scope="session")
def jq_pool():
    """jq workers shared by the whole run so each test skips worker startup."""
    pool = JqWorkerPool(2)
    yield pool
    pool.close()


@pytest.fixture
def evaluator(jq_pool):
    evaluator = QueryEvaluator(LRUCache(100, name="test-results"), timeout=10.0, pool=jq_pool)
    yield evaluator
    evaluator.close()


@pytest.fixture
def fake_cli_command():
    """Command line that runs the stand-in conversational tool."""
    return [sys.executable, FAKE_CLI]
