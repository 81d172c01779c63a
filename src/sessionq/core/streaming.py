"""
Streaming transport: typed NDJSON envelopes over any incremental producer.

A stream is exactly one ``start`` envelope, any number of ``data``
envelopes, then exactly one terminal envelope (``end`` or ``error``).
Producers may be async iterables (process output) or plain iterables
(query results), which are pulled from a worker thread.
"""

import asyncio
import json
import logging
import time
from itertools import count
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Union,
)

from .models import Diagnostic, EnvelopeKind, StreamEnvelope
from ..utils.exceptions import SessionQError, StreamTimeout
from ..utils.logger import LoggerMixin
from ..utils.validators import excerpt

logger = logging.getLogger(__name__)

Stage = Callable[[AsyncIterator[Any]], AsyncIterator[Any]]
Producer = Union[AsyncIterable[Any], Iterable[Any]]

_DONE = object()


async def _aclose(iterator: Any) -> None:
    close = getattr(iterator, "aclose", None)
    if close is not None:
        await close()


class TokenBucket:
    """
    Rate limiter that delays items instead of dropping them.

    Holds up to ``rate`` tokens, refilled at ``rate`` per ``window`` seconds.
    Every delay fires the rate-limit warning callbacks.
    """

    def __init__(self, rate: int = 100, window: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.rate = rate
        self.window = window
        self._clock = clock
        self._tokens = float(rate)
        self._updated = clock()
        self._callbacks: List[Callable[[Dict[str, Any]], Any]] = []
        self.warnings = 0

    def add_warning_callback(self, callback: Callable[[Dict[str, Any]], Any]) -> None:
        self._callbacks.append(callback)

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.rate, self._tokens + (now - self._updated) * self.rate / self.window)
        self._updated = now

    async def acquire(self) -> float:
        """Take one token, sleeping if none is available. Returns the delay."""
        self._refill()
        delay = 0.0
        if self._tokens < 1:
            delay = (1 - self._tokens) * self.window / self.rate
            self._warn(delay)
            await asyncio.sleep(delay)
            self._refill()
        self._tokens -= 1
        return delay

    def _warn(self, delay: float) -> None:
        self.warnings += 1
        info = {"limit": self.rate, "window": self.window, "delay": delay}
        if self.warnings == 1:
            logger.warning(f"Stream rate limit reached ({self.rate}/{self.window:g}s), delaying output")
        else:
            logger.debug(f"Rate limit delay {delay * 1000:.1f}ms")
        for callback in self._callbacks:
            callback(info)


# ---------------------------------------------------------------- producers

async def iterate_sync(iterable: Iterable[Any]) -> AsyncIterator[Any]:
    """Pull a blocking iterable from a worker thread."""
    loop = asyncio.get_running_loop()
    iterator = iter(iterable)
    pending: Optional[asyncio.Future] = None
    try:
        while True:
            pending = loop.run_in_executor(None, next, iterator, _DONE)
            item = await asyncio.shield(pending)
            if item is _DONE:
                return
            yield item
    finally:
        # A generator cannot be closed while another thread is running it.
        if pending is not None and not pending.done():
            await asyncio.wait({pending})
        if pending is not None and pending.done() and not pending.cancelled():
            pending.exception()
        close = getattr(iterator, "close", None)
        if close is not None:
            close()


def as_async(producer: Producer) -> AsyncIterator[Any]:
    if hasattr(producer, "__aiter__"):
        return producer.__aiter__()
    return iterate_sync(producer)


# ------------------------------------------------------------------- stages

def jsonl_decode(diagnostics: Optional[List[Diagnostic]] = None) -> Stage:
    """
    Decode a stream of text chunks into JSON values, one per line.

    Lines may be split across chunks. Lines that are not valid JSON are
    recorded in ``diagnostics`` and skipped.
    """
    async def stage(source: AsyncIterator[str]) -> AsyncIterator[Any]:
        buffer = ""
        line_number = 0

        def decode(line: str):
            try:
                return json.loads(line), True
            except json.JSONDecodeError as e:
                logger.debug(f"Skipping non-JSON output line {line_number}: {e.msg}")
                if diagnostics is not None:
                    diagnostics.append(Diagnostic(f"JSON parse error: {e.msg}", line_number, excerpt(line)))
                return None, False

        try:
            async for chunk in source:
                buffer += chunk
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    line_number += 1
                    if line.strip():
                        value, ok = decode(line.strip())
                        if ok:
                            yield value
            if buffer.strip():
                line_number += 1
                value, ok = decode(buffer.strip())
                if ok:
                    yield value
        finally:
            await _aclose(source)

    return stage


def map_records(function: Callable[[Any], Any]) -> Stage:
    """Apply ``function`` to every item."""
    async def stage(source: AsyncIterator[Any]) -> AsyncIterator[Any]:
        try:
            async for item in source:
                yield function(item)
        finally:
            await _aclose(source)

    return stage


def take(limit: Optional[int]) -> Stage:
    """Pass through at most ``limit`` items, then close upstream."""
    async def stage(source: AsyncIterator[Any]) -> AsyncIterator[Any]:
        try:
            if limit is not None and limit <= 0:
                return
            emitted = 0
            async for item in source:
                yield item
                emitted += 1
                if limit is not None and emitted >= limit:
                    return
        finally:
            await _aclose(source)

    return stage


def pipeline(source: Producer, *stages: Stage) -> AsyncIterator[Any]:
    """Compose stages left to right over a producer."""
    stream = as_async(source)
    for stage in stages:
        stream = stage(stream)
    return stream


async def encode_ndjson(envelopes: AsyncIterable[StreamEnvelope]) -> AsyncIterator[str]:
    """Render envelopes as newline-delimited JSON."""
    iterator = envelopes.__aiter__()
    try:
        async for envelope in iterator:
            yield envelope.to_json_line()
    finally:
        await _aclose(iterator)


# ---------------------------------------------------------------- transport

class StreamTransport(LoggerMixin):
    """Wraps producers in the start/data/terminal envelope protocol."""

    def __init__(self, rate_limit: int = 100, window: float = 1.0, timeout: Optional[float] = None):
        self.rate_limit = rate_limit
        self.window = window
        self.timeout = timeout

    async def envelopes(
        self,
        producer: Producer,
        start_payload: Optional[Dict[str, Any]] = None,
        stages: Sequence[Stage] = (),
        end_payload: Union[Dict[str, Any], Callable[[], Dict[str, Any]], None] = None,
        on_rate_limit: Optional[Callable[[Dict[str, Any]], Any]] = None
    ) -> AsyncIterator[StreamEnvelope]:
        """
        Stream a producer as envelopes.

        Args:
            producer: Async or sync iterable of data items
            start_payload: Payload of the ``start`` envelope
            stages: Transforms applied to the producer, in order
            end_payload: Extra ``end`` payload, or a callable evaluated at the end
            on_rate_limit: Called with details whenever output is delayed

        Yields:
            StreamEnvelope objects. Failures end the stream with one ``error``
            envelope instead of raising. Closing the generator closes the
            producer.
        """
        sequence = count()
        started = time.monotonic()
        deadline = started + self.timeout if self.timeout else None
        limiter = TokenBucket(self.rate_limit, self.window)
        if on_rate_limit is not None:
            limiter.add_warning_callback(on_rate_limit)

        stream = pipeline(producer, *stages)
        data_count = 0
        terminal: Optional[StreamEnvelope] = None

        yield StreamEnvelope(EnvelopeKind.START, start_payload or {}, next(sequence))

        try:
            while True:
                try:
                    if deadline is None:
                        item = await stream.__anext__()
                    else:
                        item = await asyncio.wait_for(stream.__anext__(), max(0.0, deadline - time.monotonic()))
                except StopAsyncIteration:
                    break

                await limiter.acquire()
                data_count += 1
                yield StreamEnvelope(EnvelopeKind.DATA, item, next(sequence))

            summary = {
                "duration_ms": int((time.monotonic() - started) * 1000),
                "envelopes": data_count + 2,
                "data_count": data_count,
                "rate_limit_warnings": limiter.warnings,
            }
            extra = end_payload() if callable(end_payload) else end_payload
            summary.update(extra or {})
            terminal = StreamEnvelope(EnvelopeKind.END, summary, next(sequence))
        except asyncio.TimeoutError:
            error = StreamTimeout(f"Stream exceeded {self.timeout:g}s", {"data_count": data_count})
            self.logger.warning(error.message)
            terminal = StreamEnvelope(EnvelopeKind.ERROR, error.to_dict(), next(sequence))
        except SessionQError as e:
            self.logger.warning(f"Stream failed after {data_count} items: {e.message}")
            terminal = StreamEnvelope(EnvelopeKind.ERROR, e.to_dict(), next(sequence))
        except Exception as e:
            self.logger.exception("Unexpected error while streaming")
            payload = {"code": "STREAM_ERROR", "message": str(e) or type(e).__name__}
            terminal = StreamEnvelope(EnvelopeKind.ERROR, payload, next(sequence))
        finally:
            await _aclose(stream)

        yield terminal
