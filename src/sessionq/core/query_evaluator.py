"""
Query evaluator: validate and run jq expressions over log records.

Expressions are untrusted. Each one passes a denylist and a dummy-shape
check before it runs, and every run happens in a jq worker process that is
killed when it overruns its wall-clock timeout.
"""

import json
import logging
import time
from dataclasses import replace
from typing import Any, Dict, Iterable, Iterator, List, Optional

import jq

from .cache import LRUCache
from .jq_workers import JqWorkerPool, jq_message
from .models import (
    AggregateResult,
    Diagnostic,
    EvaluationProgress,
    LogHandle,
    QueryOptions,
    QueryResult,
    StreamEvaluation,
)
from .query_shapes import (
    MAX_EXPRESSION_LENGTH,
    find_forbidden,
    is_aggregating,
    per_record_expression,
)
from ..utils.exceptions import (
    InvalidQuery,
    LineParseError,
    LogStoreError,
    PathViolation,
    QueryExecutionError,
    QueryTimeout,
    SessionQError,
)
from ..utils.logger import security_event
from ..utils.validators import excerpt

logger = logging.getLogger(__name__)

DUMMY_OBJECT = {"type": "test", "message": "test data"}
DUMMY_ARRAY = [
    {"type": "test", "message": "test data"},
    {"type": "test2", "message": "test data 2"},
]

# Outputs pulled from a dummy run; enough to surface errors without running forever.
DUMMY_RUN_OUTPUTS = 100


class QueryEvaluator:
    """
    Runs validated jq programs against documents, single logs and sets of logs.

    A log source is any object with ``open_for_read(handle)`` returning a
    LogReader and ``fingerprint(handle)`` returning a hashable content key;
    ``LogStore`` is the production one. Pass ``pool`` to share jq workers
    between evaluators; an evaluator only closes a pool it created.
    """

    def __init__(
        self,
        cache: Optional[LRUCache] = None,
        timeout: float = 30.0,
        validation_timeout: float = 2.0,
        workers: int = 4,
        pool: Optional[JqWorkerPool] = None
    ):
        self.cache = cache if cache is not None else LRUCache(100, name="query-results")
        self.timeout = timeout
        self.validation_timeout = validation_timeout
        self._validated = LRUCache(256, name="validated-expressions")
        self._owns_pool = pool is None
        self._pool = pool if pool is not None else JqWorkerPool(workers)

    # ------------------------------------------------------------ validation

    def validate(self, expression: str) -> Dict[str, Optional[str]]:
        """
        Validate an expression before it touches any log.

        After the length and denylist checks the expression is compiled and
        run against an object-shaped and an array-shaped dummy. A record
        expression usually fails on the array and a collection expression on
        the object, so failing on one shape is fine. Failing on both rejects
        the expression with the object-shape error. A dummy run that overruns
        the validation timeout counts as a pass.

        Returns:
            Mapping of shape name to the runtime error it raised, or None if
            it ran cleanly

        Raises:
            InvalidQuery: empty, oversized, denylisted, syntactically invalid,
                or failing on both dummy shapes
        """
        if not isinstance(expression, str) or not expression.strip():
            raise InvalidQuery("Query expression must be a non-empty string")
        if len(expression) > MAX_EXPRESSION_LENGTH:
            raise InvalidQuery(f"Query expression exceeds {MAX_EXPRESSION_LENGTH} characters")

        shapes = self._validated.get(expression)
        if shapes is not None:
            return shapes

        self._check(expression)
        shapes = {
            "object": self._dummy_run(expression, DUMMY_OBJECT),
            "array": self._dummy_run(expression, DUMMY_ARRAY),
        }
        if shapes["object"] and shapes["array"]:
            logger.debug(f"Rejected query failing on both dummy shapes: {excerpt(expression, 60)!r}")
            raise InvalidQuery(f"Invalid query syntax: {shapes['object']}",
                               {"expression": excerpt(expression), "shapes": shapes})

        self._validated.put(expression, shapes)
        return shapes

    def shapes(self, expression: str) -> Dict[str, Optional[str]]:
        """Per-shape dummy-run errors of a valid expression (None where it ran cleanly)."""
        return dict(self.validate(expression))

    def _check(self, expression: str) -> None:
        forbidden = find_forbidden(expression)
        if forbidden:
            security_event(f"Rejected query using forbidden construct: {forbidden}")
            raise InvalidQuery(f"Query uses a forbidden construct: {forbidden}",
                               {"expression": excerpt(expression)})

        try:
            jq.compile(expression)
        except ValueError as e:
            raise InvalidQuery(f"Invalid query syntax: {jq_message(e)}",
                               {"expression": excerpt(expression)})

    def _dummy_run(self, expression: str, dummy: Any) -> Optional[str]:
        try:
            self._pool.run(expression, dummy, DUMMY_RUN_OUTPUTS, self.validation_timeout)
        except QueryTimeout:
            logger.debug("Dummy run timed out; treating the shape as accepted")
            return None
        except QueryExecutionError as e:
            return e.details.get("jq_error", e.message)
        return None

    # ------------------------------------------------------------- execution

    def _run(self, expression: str, value: Any, timeout: float, limit: Optional[int] = None) -> List[Any]:
        return self._pool.run(expression, value, limit, timeout)

    def _timeout(self, options: QueryOptions) -> float:
        return options.timeout if options.timeout else self.timeout

    def evaluate(self, expression: str, document: Any, options: Optional[QueryOptions] = None) -> QueryResult:
        """
        Evaluate an expression against one JSON document.

        Returns:
            QueryResult with every output value, in emission order
        """
        options = options or QueryOptions()
        self.validate(expression)

        start = time.monotonic()
        values = self._run(expression, document, self._timeout(options), options.limit)
        return QueryResult(values=values, elapsed_ms=(time.monotonic() - start) * 1000)

    def iter_stream(
        self,
        reader,
        expression: str,
        options: Optional[QueryOptions] = None,
        progress: Optional[EvaluationProgress] = None
    ) -> Iterator[Any]:
        """Evaluate the per-record form of an expression over one open reader."""
        options = options or QueryOptions()
        progress = progress if progress is not None else EvaluationProgress()
        self.validate(expression)
        record_expression = per_record_expression(expression)
        self._check(record_expression)
        deadline = time.monotonic() + self._timeout(options)

        yield from self._evaluate_entries(reader, record_expression, deadline, options.limit, progress)

    def evaluate_stream(self, reader, expression: str, options: Optional[QueryOptions] = None) -> StreamEvaluation:
        """
        Evaluate an expression record by record over a log reader.

        Malformed lines and per-record evaluation errors become diagnostics.
        If every non-blank line failed, the first error is raised instead.
        """
        progress = EvaluationProgress()
        results = list(self.iter_stream(reader, expression, options, progress))
        return StreamEvaluation(results, progress.diagnostics, progress.lines_processed)

    def _evaluate_entries(self, reader, expression: str, deadline: float,
                          limit: Optional[int], progress: EvaluationProgress) -> Iterator[Any]:
        failures: List[Diagnostic] = []
        first_error: Optional[SessionQError] = None
        log = str(reader.handle)

        for entry in reader:
            if limit is not None and progress.results_emitted >= limit:
                break
            try:
                values = self._run(expression, entry.payload, deadline - time.monotonic())
            except QueryExecutionError as e:
                failures.append(Diagnostic(
                    error=e.message,
                    line=entry.line_number,
                    excerpt=excerpt(json.dumps(entry.payload, ensure_ascii=False)),
                    log=log,
                ))
                first_error = first_error or e
                continue

            for value in values:
                if limit is not None and progress.results_emitted >= limit:
                    break
                progress.results_emitted += 1
                yield value

        diagnostics = sorted(list(reader.diagnostics) + failures, key=lambda d: d.line or 0)
        progress.diagnostics.extend(diagnostics)
        progress.lines_processed += reader.lines_read

        if reader.lines_read and len(diagnostics) == reader.lines_read:
            first = diagnostics[0]
            if failures and first is failures[0]:
                raise first_error
            raise LineParseError(first.error, line=first.line, details={"log": log})

    # ------------------------------------------------------------- many logs

    def iter_across_logs(
        self,
        source,
        handles: Iterable[LogHandle],
        expression: str,
        options: Optional[QueryOptions] = None,
        progress: Optional[EvaluationProgress] = None
    ) -> Iterator[Any]:
        """
        Evaluate an expression over several logs, yielding results as they appear.

        Aggregating expressions see every record of every log as one array and
        run once; their results carry no ordering guarantee. Other expressions
        run per record, log by log, in the order given.
        """
        options = options or QueryOptions()
        progress = progress if progress is not None else EvaluationProgress()
        handles = list(handles)
        self.validate(expression)
        deadline = time.monotonic() + self._timeout(options)

        if is_aggregating(expression):
            progress.strategy = "aggregate"
            progress.ordered = False
            yield from self._aggregate(source, handles, expression, deadline, options.limit, progress)
        else:
            progress.strategy = "per_record"
            progress.ordered = True
            record_expression = per_record_expression(expression)
            self._check(record_expression)
            yield from self._per_record(source, handles, record_expression, deadline, options.limit, progress)

    def _aggregate(self, source, handles: List[LogHandle], expression: str, deadline: float,
                   limit: Optional[int], progress: EvaluationProgress) -> Iterator[Any]:
        records: List[Any] = []
        failures: List[SessionQError] = []

        for handle in handles:
            try:
                with source.open_for_read(handle) as reader:
                    for entry in reader:
                        records.append(entry.payload)
                    progress.diagnostics.extend(reader.diagnostics)
                    progress.lines_processed += reader.lines_read
                progress.logs_processed += 1
            except (PathViolation, QueryTimeout):
                raise
            except (SessionQError, OSError) as e:
                failures.append(self._log_failure(handle, e, progress))
            if time.monotonic() > deadline:
                raise QueryTimeout("Query timed out while reading logs")

        if handles and len(failures) == len(handles):
            raise failures[0]

        values = self._run(expression, records, deadline - time.monotonic())
        if len(values) == 1 and isinstance(values[0], list):
            values = values[0]

        for value in values:
            if limit is not None and progress.results_emitted >= limit:
                break
            progress.results_emitted += 1
            yield value

    def _per_record(self, source, handles: List[LogHandle], expression: str, deadline: float,
                    limit: Optional[int], progress: EvaluationProgress) -> Iterator[Any]:
        failures: List[SessionQError] = []

        for handle in handles:
            if limit is not None and progress.results_emitted >= limit:
                break
            try:
                with source.open_for_read(handle) as reader:
                    yield from self._evaluate_entries(reader, expression, deadline, limit, progress)
                progress.logs_processed += 1
            except (PathViolation, QueryTimeout):
                raise
            except (SessionQError, OSError) as e:
                failures.append(self._log_failure(handle, e, progress))

        if handles and len(failures) == len(handles):
            raise failures[0]

    def _log_failure(self, handle: LogHandle, error: Exception,
                     progress: EvaluationProgress) -> SessionQError:
        if not isinstance(error, SessionQError):
            error = LogStoreError(f"Cannot read log '{handle}': {getattr(error, 'strerror', None) or error}")
        logger.warning(f"Skipping log {handle}: {error.message}")
        progress.diagnostics.append(Diagnostic(error=error.message, log=str(handle)))
        return error

    def evaluate_across_logs(
        self,
        source,
        handles: Iterable[LogHandle],
        expression: str,
        options: Optional[QueryOptions] = None
    ) -> AggregateResult:
        """
        Evaluate an expression over several logs and collect the results.

        Results are cached by expression, options and the content fingerprint
        of every log involved, so a changed log never serves stale results.
        """
        options = options or QueryOptions()
        handles = list(handles)
        self.validate(expression)

        key = (expression, options.cache_key(), tuple(source.fingerprint(h) for h in handles))
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Query cache hit for {excerpt(expression, 60)!r}")
            return replace(cached, results=list(cached.results),
                           diagnostics=list(cached.diagnostics), cached=True)

        progress = EvaluationProgress()
        results = list(self.iter_across_logs(source, handles, expression, options, progress))
        result = AggregateResult(
            results=results,
            diagnostics=progress.diagnostics,
            logs_processed=progress.logs_processed,
            lines_processed=progress.lines_processed,
            strategy=progress.strategy,
            ordered=progress.ordered,
        )
        self.cache.put(key, replace(result, results=list(results), diagnostics=list(progress.diagnostics)),
                       tags=[str(h) for h in handles])
        return result

    # ----------------------------------------------------------------- cache

    def invalidate(self, handle: LogHandle) -> int:
        """Drop cached results computed from ``handle``."""
        return self.cache.invalidate_tag(str(handle))

    def clear_cache(self) -> None:
        self.cache.clear()
        self._validated.clear()
        logger.info("Query cache cleared")

    def cache_stats(self) -> dict:
        stats = self.cache.stats()
        stats["validated_expressions"] = len(self._validated)
        stats["workers"] = self._pool.stats()
        return stats

    def close(self) -> None:
        if self._owns_pool:
            self._pool.close()
