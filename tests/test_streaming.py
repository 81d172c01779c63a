"""Test the streaming transport and its stages."""

import asyncio
import json

import pytest

from sessionq.core.models import EnvelopeKind
from sessionq.core.streaming import (
    StreamTransport,
    TokenBucket,
    encode_ndjson,
    jsonl_decode,
    map_records,
    pipeline,
    take,
)
from sessionq.utils.exceptions import QueryExecutionError


async def _collect(iterator):
    return [item async for item in iterator]


def _kinds(envelopes):
    return [e.kind.value for e in envelopes]


@pytest.mark.asyncio
async def test_envelope_order():
    """Test start, data, end with increasing sequence numbers."""
    transport = StreamTransport()

    envelopes = await _collect(transport.envelopes([1, 2, 3], {"query": "."}))

    assert _kinds(envelopes) == ["start", "data", "data", "data", "end"]
    assert [e.sequence for e in envelopes] == [0, 1, 2, 3, 4]
    assert envelopes[0].payload == {"query": "."}
    assert [e.payload for e in envelopes[1:4]] == [1, 2, 3]
    assert envelopes[-1].payload["data_count"] == 3
    assert envelopes[-1].payload["envelopes"] == 5


@pytest.mark.asyncio
async def test_empty_producer():
    """Test a producer with no items."""
    envelopes = await _collect(StreamTransport().envelopes([]))
    assert _kinds(envelopes) == ["start", "end"]


@pytest.mark.asyncio
async def test_end_payload_is_evaluated_at_the_end():
    """Test a callable end payload sees the final state."""
    seen = []

    def producer():
        for i in range(3):
            seen.append(i)
            yield i

    envelopes = await _collect(StreamTransport().envelopes(
        producer(), end_payload=lambda: {"produced": len(seen)}
    ))
    assert envelopes[-1].payload["produced"] == 3


@pytest.mark.asyncio
async def test_error_envelope_on_engine_error():
    """Test a failing producer ends the stream with an error envelope."""
    async def producer():
        yield {"n": 1}
        raise QueryExecutionError("boom")

    envelopes = await _collect(StreamTransport().envelopes(producer()))

    assert _kinds(envelopes) == ["start", "data", "error"]
    assert envelopes[-1].payload == {"code": "QUERY_EXECUTION_ERROR", "message": "boom"}


@pytest.mark.asyncio
async def test_error_envelope_on_unexpected_error():
    """Test unexpected exceptions are contained."""
    def producer():
        yield 1
        raise KeyError("missing")

    envelopes = await _collect(StreamTransport().envelopes(producer()))

    assert _kinds(envelopes) == ["start", "data", "error"]
    assert envelopes[-1].payload["code"] == "STREAM_ERROR"


@pytest.mark.asyncio
async def test_stream_timeout():
    """Test the overall stream deadline."""
    async def slow():
        yield 1
        await asyncio.sleep(5)
        yield 2

    envelopes = await _collect(StreamTransport(timeout=0.2).envelopes(slow()))

    assert _kinds(envelopes) == ["start", "data", "error"]
    assert envelopes[-1].payload["code"] == "STREAM_TIMEOUT"


@pytest.mark.asyncio
async def test_take_closes_upstream():
    """Test that a limit stops the producer."""
    state = {"closed": False}

    async def producer():
        try:
            for i in range(100):
                yield i
        finally:
            state["closed"] = True

    assert await _collect(pipeline(producer(), take(2))) == [0, 1]
    assert state["closed"]


@pytest.mark.asyncio
async def test_closing_transport_closes_sync_producer():
    """Test a consumer that stops early releases a blocking producer."""
    state = {"closed": False}

    def producer():
        try:
            for i in range(100):
                yield i
        finally:
            state["closed"] = True

    envelopes = StreamTransport().envelopes(producer())
    assert (await envelopes.__anext__()).kind is EnvelopeKind.START
    assert (await envelopes.__anext__()).payload == 0
    await envelopes.aclose()

    assert state["closed"]


@pytest.mark.asyncio
async def test_jsonl_decode_across_chunks():
    """Test lines split across chunks and a malformed line."""
    diagnostics = []
    chunks = ['{"a": 1}\n{"b"', ': 2}\nnot json\n', '\n{"c": 3}']

    values = await _collect(pipeline(chunks, jsonl_decode(diagnostics)))

    assert values == [{"a": 1}, {"b": 2}, {"c": 3}]
    assert len(diagnostics) == 1
    assert diagnostics[0].line == 3
    assert diagnostics[0].excerpt == "not json"


@pytest.mark.asyncio
async def test_map_records():
    """Test stage composition."""
    values = await _collect(pipeline([1, 2, 3], map_records(lambda n: n * 10), take(2)))
    assert values == [10, 20]


@pytest.mark.asyncio
async def test_token_bucket_delays_instead_of_dropping():
    """Test the limiter sleeps and reports once tokens run out."""
    warnings = []
    bucket = TokenBucket(rate=2, window=0.02, clock=lambda: 0.0)
    bucket.add_warning_callback(warnings.append)

    assert await bucket.acquire() == 0.0
    assert await bucket.acquire() == 0.0
    delay = await bucket.acquire()

    assert delay == pytest.approx(0.01)
    assert bucket.warnings == 1
    assert warnings == [{"limit": 2, "window": 0.02, "delay": delay}]


@pytest.mark.asyncio
async def test_transport_rate_limit_delivers_everything():
    """Test rate limiting never drops data."""
    warnings = []
    transport = StreamTransport(rate_limit=2, window=0.05)

    envelopes = await _collect(transport.envelopes(range(6), on_rate_limit=warnings.append))

    assert [e.payload for e in envelopes if e.kind is EnvelopeKind.DATA] == list(range(6))
    assert envelopes[-1].payload["rate_limit_warnings"] == len(warnings) > 0


@pytest.mark.asyncio
async def test_encode_ndjson():
    """Test the wire format."""
    lines = await _collect(encode_ndjson(StreamTransport().envelopes(["x"])))

    assert all(line.endswith("\n") for line in lines)
    decoded = [json.loads(line) for line in lines]
    assert [d["type"] for d in decoded] == ["start", "data", "end"]
    assert decoded[1]["payload"] == "x"
    assert "timestamp" in decoded[0]
