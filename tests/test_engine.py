"""Test the engine facade end to end."""

import pytest

from sessionq.core.engine import ChatRequest, Engine, QueryRequest
from sessionq.core.process_orchestrator import ProcessOrchestrator
from sessionq.core.streaming import StreamTransport
from sessionq.utils.config import ConfigManager
from sessionq.utils.exceptions import InvalidQuery, LogNotFound, PathViolation

from conftest import write_log


@pytest.fixture
def make_engine(store, evaluator, fake_cli_command):
    def factory(mode="echo", chunks=3, delay=0.05, stderr="", **kwargs):
        env = {"FAKE_CLI_MODE": mode, "FAKE_CLI_CHUNKS": str(chunks), "FAKE_CLI_DELAY": str(delay),
               "FAKE_CLI_STDERR": stderr}
        orchestrator = ProcessOrchestrator(fake_cli_command, env=env, kill_grace=1.0,
                                           redact=(str(store.root),))
        return Engine(store, evaluator, orchestrator, StreamTransport(), **kwargs)
    return factory


async def _collect(iterator):
    return [item async for item in iterator]


def test_query_demo(make_engine):
    """Test a per-record query over one collection."""
    engine = make_engine()

    response = engine.query(QueryRequest('.[] | select(.type == "user")', collections=["demo"]))

    assert response.total_results == 2
    assert response.strategy == "per_record"
    assert response.logs_processed == 1
    assert response.to_dict()["results"] == [{"type": "user"}, {"type": "user"}]


def test_query_defaults_to_every_collection(make_engine, log_root):
    """Test a query without collections or logs."""
    write_log(log_root / "other" / "x.jsonl", [{"type": "user"}, {"type": "system"}])
    engine = make_engine()

    response = engine.query(QueryRequest('length'))

    assert response.strategy == "aggregate"
    assert response.results == [5]
    assert response.logs_processed == 2


def test_query_by_bare_log_id(make_engine):
    """Test logs named without their collection."""
    engine = make_engine()

    assert engine.query(QueryRequest('.type', logs=["abc"])).total_results == 3
    with pytest.raises(LogNotFound):
        engine.query(QueryRequest('.type', logs=["nope"]))
    with pytest.raises(PathViolation):
        engine.query(QueryRequest('.type', logs=["demo/.."]))


def test_query_log_cap(make_engine, log_root):
    """Test the per-query log limit."""
    for name in ("a", "b", "c"):
        write_log(log_root / "demo" / f"{name}.jsonl", [{"type": "user"}])
    engine = make_engine(max_logs_per_query=2)

    response = engine.query(QueryRequest('.type', collections=["demo"]))

    assert response.logs_processed == 2
    assert response.logs_dropped == 2


@pytest.mark.parametrize("limit", [0, -1, 10_001])
def test_query_limit_bounds(make_engine, limit):
    """Test result limits outside the allowed range."""
    with pytest.raises(InvalidQuery):
        make_engine().query(QueryRequest('.type', limit=limit))


def test_query_rejects_invalid_expression(make_engine):
    """Test validation runs before any log is read."""
    with pytest.raises(InvalidQuery):
        make_engine().query(QueryRequest('.[', collections=["demo"]))


def test_query_cache(make_engine):
    """Test cached responses and cache control."""
    engine = make_engine()
    request = QueryRequest('.type', collections=["demo"])

    assert not engine.query(request).cached
    assert engine.query(request).cached
    assert engine.cache_stats()["size"] == 1

    engine.clear_cache()
    assert engine.cache_stats()["size"] == 0
    assert not engine.query(request).cached


def test_append_invalidates_cached_query(make_engine):
    """Test the store notifies the query cache."""
    engine = make_engine()
    request = QueryRequest('.type', collections=["demo"])
    engine.query(request)

    engine.store.append(engine.store.find_log("abc"), [{"type": "system"}])

    response = engine.query(request)
    assert not response.cached
    assert response.results[-1] == "system"


def test_validate_describes_strategy(make_engine):
    """Test the validation report."""
    engine = make_engine()

    record = engine.validate('.[] | select(.type == "user")')
    assert record["strategy"] == "per_record"
    assert record["per_record_expression"] == 'select(.type == "user")'
    assert "array" in record["shapes"]

    grouped = engine.validate('group_by(.type)')
    assert grouped["strategy"] == "aggregate"
    assert grouped["shapes"] == ["array"]


def test_patterns(make_engine):
    """Test the pattern catalogue through the engine."""
    names = [p["name"] for p in make_engine().patterns("statistics")]
    assert names == ["message_count", "session_summary"]


@pytest.mark.asyncio
async def test_stream_query(make_engine):
    """Test query results as envelopes."""
    engine = make_engine()

    envelopes = await _collect(engine.stream_query(
        QueryRequest('.[] | select(.type == "user")', collections=["demo"])
    ))

    assert [e.kind.value for e in envelopes] == ["start", "data", "data", "end"]
    assert envelopes[0].payload["logs"] == ["demo/abc"]
    assert envelopes[-1].payload["results"] == 2
    assert envelopes[-1].payload["strategy"] == "per_record"


@pytest.mark.asyncio
async def test_stream_query_limit(make_engine):
    """Test the limit applies to streamed results."""
    envelopes = await _collect(make_engine().stream_query(
        QueryRequest('.type', collections=["demo"], limit=1)
    ))
    assert [e.kind.value for e in envelopes] == ["start", "data", "end"]


@pytest.mark.asyncio
async def test_stream_query_rejects_before_start(make_engine):
    """Test an invalid expression never opens a stream."""
    with pytest.raises(InvalidQuery):
        await make_engine().stream_query(QueryRequest('import "x" as x; .')).__anext__()


@pytest.mark.asyncio
async def test_chat_runs_in_collection_directory(make_engine, log_root):
    """Test the working directory follows the collection."""
    engine = make_engine()

    response = await engine.chat(ChatRequest("hello", collection="demo"))

    assert response.exit_code == 0
    assert response.output["cwd"] == str(log_root / "demo")
    assert response.output["session_id"] == response.resume_token


@pytest.mark.asyncio
async def test_chat_resume_uses_log_collection(make_engine, log_root):
    """Test a resumed conversation runs where its log lives."""
    response = await make_engine().chat(ChatRequest("again", resume_token="abc"))

    assert response.resume_token == "abc"
    assert response.output["resumed"] is True
    assert response.output["cwd"] == str(log_root / "demo")


@pytest.mark.asyncio
async def test_chat_unknown_collection(make_engine):
    """Test chatting in a collection that does not exist."""
    with pytest.raises(LogNotFound):
        await make_engine().chat(ChatRequest("hi", collection="nope"))


@pytest.mark.asyncio
async def test_stream_chat(make_engine, log_root):
    """Test start, one data envelope per output line, then end."""
    engine = make_engine(mode="chunks", chunks=3, stderr="warning: slow start in {cwd}")

    envelopes = await _collect(engine.stream_chat(ChatRequest("hi", collection="demo", stream=True)))

    assert [e.kind.value for e in envelopes] == ["start", "data", "data", "data", "end"]
    token = envelopes[0].payload["resume_token"]
    assert [e.payload["index"] for e in envelopes[1:4]] == [0, 1, 2]
    assert all(e.payload["session_id"] == token for e in envelopes[1:4])
    assert envelopes[-1].payload["exit_code"] == 0
    assert envelopes[-1].payload["resume_token"] == token
    assert envelopes[-1].payload["stderr"] == "warning: slow start in <root>\n"
    assert str(log_root) not in envelopes[-1].payload["stderr"]
    assert engine.process_stats()["active"] == 0


@pytest.mark.asyncio
async def test_stream_chat_failure_ends_with_error(make_engine):
    """Test a failing tool ends the stream with an error envelope."""
    engine = make_engine(mode="fail")

    envelopes = await _collect(engine.stream_chat(ChatRequest("hi", stream=True)))

    assert [e.kind.value for e in envelopes] == ["start", "error"]
    assert envelopes[-1].payload["code"] == "PROCESS_EXIT_FAILURE"
    assert envelopes[-1].payload["details"]["exit_code"] == 3


@pytest.mark.asyncio
async def test_stream_chat_disconnect_terminates_process(make_engine):
    """Test a client that stops reading after two chunks."""
    engine = make_engine(mode="chunks", chunks=100, delay=0.2)

    envelopes = engine.stream_chat(ChatRequest("hi", stream=True))
    start = await envelopes.__anext__()
    await envelopes.__anext__()
    await envelopes.__anext__()
    process = engine.orchestrator.get(start.payload["process_id"]).process
    assert process.returncode is None
    await envelopes.aclose()

    assert process.returncode is not None
    assert engine.orchestrator.get(start.payload["process_id"]) is None
    assert engine.process_stats()["active"] == 0


def test_from_settings(log_root, tmp_path):
    """Test building an engine from configuration."""
    settings = ConfigManager(str(tmp_path / "config"), environ={"SESSIONQ_ROOT": str(log_root)}).settings
    engine = Engine.from_settings(settings)
    try:
        assert engine.store.root == log_root.resolve()
        assert engine.query(QueryRequest('.type', logs=["demo/abc"])).total_results == 3
    finally:
        engine.evaluator.close()
