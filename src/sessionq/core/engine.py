"""
Engine facade: the query, chat and cache-control protocols.

Components are built once (``Engine.from_settings``) and passed in
explicitly; nothing here is a module-level singleton.
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from .cache import LRUCache
from .log_store import LogStore
from .models import EvaluationProgress, LogHandle, QueryOptions, StreamEnvelope
from .patterns import get_patterns
from .process_orchestrator import ProcessOrchestrator, ProcessRequest
from .query_evaluator import QueryEvaluator
from .query_shapes import is_aggregating, per_record_expression
from .streaming import StreamTransport, jsonl_decode, take
from ..utils.config import EngineSettings
from ..utils.exceptions import InvalidQuery, LogNotFound

logger = logging.getLogger(__name__)


@dataclass
class QueryRequest:
    expression: str
    collections: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    limit: Optional[int] = None
    timeout: Optional[float] = None


@dataclass
class QueryResponse:
    results: List[Any]
    diagnostics: List[Dict[str, Any]]
    logs_processed: int
    lines_processed: int
    total_results: int
    strategy: str
    ordered: bool
    elapsed_ms: float
    cached: bool = False
    logs_dropped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ChatRequest:
    message: str
    resume_token: Optional[str] = None
    collection: Optional[str] = None
    stream: bool = False
    model: Optional[str] = None
    output_format: Optional[str] = None
    input_format: str = "text"
    verbose: bool = False
    flags: List[str] = field(default_factory=list)
    timeout: Optional[float] = None


@dataclass
class ChatResponse:
    resume_token: str
    output: Any
    raw_output: str
    exit_code: Optional[int]
    process_id: str
    elapsed_ms: float
    parse_error: Optional[str] = None
    stderr: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Engine:
    """Serves queries over logs and conversations with the external tool."""

    def __init__(
        self,
        store: LogStore,
        evaluator: QueryEvaluator,
        orchestrator: ProcessOrchestrator,
        transport: StreamTransport,
        max_logs_per_query: int = 100,
        default_limit: int = 1000,
        max_limit: int = 10000,
        default_workdir: Optional[Path] = None
    ):
        self.store = store
        self.evaluator = evaluator
        self.orchestrator = orchestrator
        self.transport = transport
        self.max_logs_per_query = max_logs_per_query
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.default_workdir = default_workdir

        store.add_invalidation_listener(evaluator.invalidate)

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "Engine":
        """Build every component from resolved settings."""
        store = LogStore(
            str(settings.store.root),
            suffix=settings.store.suffix,
            details_cache_size=settings.store.details_cache_size,
        )
        evaluator = QueryEvaluator(
            LRUCache(settings.query.cache_size, name="query-results"),
            timeout=settings.query.timeout_seconds,
            validation_timeout=settings.query.validation_timeout_seconds,
            workers=settings.query.workers,
        )
        orchestrator = ProcessOrchestrator(
            settings.process.command,
            ceiling=settings.process.ceiling,
            timeout=settings.process.timeout_seconds,
            kill_grace=settings.process.kill_grace_seconds,
            redact=(str(store.root),),
        )
        transport = StreamTransport(
            rate_limit=settings.stream.rate_limit,
            window=settings.stream.window_seconds,
            timeout=settings.stream.timeout_seconds,
        )
        return cls(
            store,
            evaluator,
            orchestrator,
            transport,
            max_logs_per_query=settings.query.max_logs_per_query,
            default_limit=settings.query.default_limit,
            max_limit=settings.query.max_limit,
            default_workdir=settings.process.default_workdir,
        )

    # ----------------------------------------------------------------- query

    def resolve_handles(self, collections: List[str], logs: List[str]):
        """
        Turn collection names and log references into handles.

        Logs are named ``collection/log_id`` or by bare id. With neither
        collections nor logs given, every log of every readable collection
        is used. At most ``max_logs_per_query`` handles are returned.

        Returns:
            (handles, number of handles dropped by the cap)
        """
        handles: List[LogHandle] = []

        if not collections and not logs:
            collections = [c.name for c in self.store.list_collections() if not c.error]

        for name in collections:
            handles.extend(info.handle for info in self.store.list_logs(name))

        for reference in logs:
            if "/" in reference:
                handles.append(LogHandle.parse(reference))
                continue
            handle = self.store.find_log(reference)
            if handle is None:
                raise LogNotFound(f"Log '{reference}' not found")
            handles.append(handle)

        unique = list(dict.fromkeys(handles))
        dropped = max(0, len(unique) - self.max_logs_per_query)
        if dropped:
            logger.warning(f"Query touches {len(unique)} logs; only the first "
                           f"{self.max_logs_per_query} are read")
        return unique[: self.max_logs_per_query], dropped

    def _limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_limit
        if limit < 1 or limit > self.max_limit:
            raise InvalidQuery(f"limit must be between 1 and {self.max_limit}")
        return limit

    def query(self, request: QueryRequest) -> QueryResponse:
        """Run a query over logs and return every result at once."""
        start = time.monotonic()
        options = QueryOptions(timeout=request.timeout, limit=self._limit(request.limit))
        self.evaluator.validate(request.expression)
        handles, dropped = self.resolve_handles(request.collections, request.logs)

        result = self.evaluator.evaluate_across_logs(self.store, handles, request.expression, options)
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(f"Query over {len(handles)} logs returned {len(result.results)} results "
                    f"in {elapsed_ms:.0f}ms ({result.strategy}{', cached' if result.cached else ''})")

        return QueryResponse(
            results=result.results,
            diagnostics=[d.to_dict() for d in result.diagnostics],
            logs_processed=result.logs_processed,
            lines_processed=result.lines_processed,
            total_results=len(result.results),
            strategy=result.strategy,
            ordered=result.ordered,
            elapsed_ms=elapsed_ms,
            cached=result.cached,
            logs_dropped=dropped,
        )

    async def stream_query(self, request: QueryRequest) -> AsyncIterator[StreamEnvelope]:
        """
        Stream query results as envelopes.

        Invalid expressions and bad log references raise before the stream
        starts; failures after that end the stream with an ``error`` envelope.
        """
        limit = self._limit(request.limit)
        self.evaluator.validate(request.expression)
        handles, dropped = self.resolve_handles(request.collections, request.logs)

        progress = EvaluationProgress()
        producer = self.evaluator.iter_across_logs(
            self.store, handles, request.expression, QueryOptions(timeout=request.timeout), progress
        )
        start_payload = {
            "expression": request.expression,
            "logs": [str(h) for h in handles],
            "logs_dropped": dropped,
            "limit": limit,
        }

        envelopes = self.transport.envelopes(
            producer, start_payload, stages=[take(limit)], end_payload=progress.summary
        )
        try:
            async for envelope in envelopes:
                yield envelope
        finally:
            await envelopes.aclose()

    def validate(self, expression: str) -> Dict[str, Any]:
        """Validate an expression and describe how it would be evaluated."""
        shapes = self.evaluator.validate(expression)
        aggregating = is_aggregating(expression)
        return {
            "expression": expression,
            "valid": True,
            "strategy": "aggregate" if aggregating else "per_record",
            "per_record_expression": None if aggregating else per_record_expression(expression),
            "shapes": [name for name, error in shapes.items() if error is None],
        }

    def patterns(self, category: Optional[str] = None) -> List[Dict[str, str]]:
        return [p.to_dict() for p in get_patterns(category)]

    def clear_cache(self) -> None:
        self.evaluator.clear_cache()

    def cache_stats(self) -> Dict[str, Any]:
        return self.evaluator.cache_stats()

    # ------------------------------------------------------------------ chat

    def _workdir(self, request: ChatRequest) -> Optional[str]:
        if request.collection:
            path = self.store.collection_path(request.collection)
            if not path.is_dir():
                raise LogNotFound(f"Collection '{request.collection}' not found")
            return str(path)

        if request.resume_token:
            handle = self.store.find_log(request.resume_token)
            if handle is not None:
                return str(self.store.collection_path(handle.collection))

        return str(self.default_workdir) if self.default_workdir else None

    def _process_request(self, request: ChatRequest, stream: bool) -> ProcessRequest:
        return ProcessRequest(
            message=request.message,
            resume_token=request.resume_token,
            workdir=self._workdir(request),
            stream=stream,
            output_format=request.output_format,
            input_format=request.input_format,
            model=request.model,
            verbose=request.verbose,
            flags=list(request.flags),
            timeout=request.timeout,
        )

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Send one message and wait for the complete reply."""
        result = await self.orchestrator.execute(self._process_request(request, stream=False))
        return ChatResponse(
            resume_token=result.resume_token,
            output=result.output,
            raw_output=result.raw_output,
            exit_code=result.exit_code,
            process_id=result.process_id,
            elapsed_ms=result.elapsed_ms,
            parse_error=result.parse_error,
            stderr=result.stderr,
        )

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamEnvelope]:
        """
        Send one message and stream the reply as envelopes.

        The ``start`` envelope carries the resume token. ``Overloaded`` and
        spawn failures raise before the stream starts.
        """
        process_request = self._process_request(request, stream=True)
        stream = await self.orchestrator.execute(process_request)

        diagnostics = []
        stages = []
        if process_request.effective_output_format == "stream-json":
            stages.append(jsonl_decode(diagnostics))

        def end_payload() -> Dict[str, Any]:
            result = stream.status.result()
            return {
                "resume_token": result.resume_token,
                "exit_code": result.exit_code,
                "process_id": result.process_id,
                "stderr": result.stderr,
                "diagnostics": [d.to_dict() for d in diagnostics],
            }

        start_payload = {"resume_token": stream.resume_token, "process_id": stream.handle.id}
        envelopes = self.transport.envelopes(stream, start_payload, stages, end_payload)
        try:
            async for envelope in envelopes:
                yield envelope
        finally:
            await envelopes.aclose()
            await stream.aclose()

    # ----------------------------------------------------------------- admin

    def process_stats(self) -> Dict[str, Any]:
        return self.orchestrator.stats()

    def cancel(self, process_id: str) -> bool:
        return self.orchestrator.cancel(process_id)

    async def shutdown(self) -> None:
        """Terminate live processes and stop the query workers."""
        await self.orchestrator.shutdown()
        self.evaluator.close()
        logger.info("Engine shut down")
