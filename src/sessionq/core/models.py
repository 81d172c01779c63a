"""
Shared data model for the log store, query evaluator, orchestrator and transport.

JSON payloads stay plain Python values; ``JsonKind`` is the single place that
decides which of the six JSON shapes a value has.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..utils.validators import validate_identifier


class JsonKind(Enum):
    """Tagged union over JSON values."""
    NULL = "null"
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"

    @classmethod
    def of(cls, value: Any) -> "JsonKind":
        # bool is checked before number: bool is an int subclass
        if value is None:
            return cls.NULL
        if isinstance(value, bool):
            return cls.BOOLEAN
        if isinstance(value, (int, float)):
            return cls.NUMBER
        if isinstance(value, str):
            return cls.STRING
        if isinstance(value, (list, tuple)):
            return cls.ARRAY
        if isinstance(value, dict):
            return cls.OBJECT
        raise TypeError(f"Not a JSON value: {type(value).__name__}")


@dataclass(frozen=True)
class LogHandle:
    """Identifies one log file as (collection, log id)."""
    collection: str
    log_id: str

    def __post_init__(self):
        validate_identifier(self.collection, "collection name")
        validate_identifier(self.log_id, "log identifier")

    @classmethod
    def parse(cls, text: str) -> "LogHandle":
        """Parse the ``collection/log_id`` form."""
        collection, sep, log_id = (text or "").partition("/")
        if not sep:
            raise ValueError(f"Expected 'collection/log_id', got '{text}'")
        return cls(collection, log_id)

    def __str__(self) -> str:
        return f"{self.collection}/{self.log_id}"


@dataclass(frozen=True)
class LogEntry:
    """One parsed record of a log file. Immutable once read."""
    line_number: int
    payload: Any

    @property
    def kind(self) -> JsonKind:
        return JsonKind.of(self.payload)

    @property
    def type(self) -> Optional[str]:
        if self.kind is JsonKind.OBJECT:
            return self.payload.get("type")
        return None

    @property
    def timestamp(self) -> Optional[str]:
        if self.kind is JsonKind.OBJECT:
            return self.payload.get("timestamp")
        return None


@dataclass
class Diagnostic:
    """A per-item problem recorded instead of aborting the surrounding batch."""
    error: str
    line: Optional[int] = None
    excerpt: Optional[str] = None
    log: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class CollectionInfo:
    name: str
    log_count: int
    last_modified: datetime
    total_size: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_modified"] = self.last_modified.isoformat()
        return data


@dataclass
class LogInfo:
    handle: LogHandle
    size: int
    created: datetime
    modified: datetime

    @property
    def relative_path(self) -> str:
        """Path relative to the store root; absolute paths are never exposed."""
        return f"{self.handle.collection}/{self.handle.log_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.handle.log_id,
            "collection": self.handle.collection,
            "path": self.relative_path,
            "size": self.size,
            "created": self.created.isoformat(),
            "modified": self.modified.isoformat(),
        }


@dataclass
class LogReadResult:
    entries: List[LogEntry] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def payloads(self) -> List[Any]:
        return [entry.payload for entry in self.entries]


@dataclass
class QueryOptions:
    """Evaluation options; part of every cache key."""
    timeout: Optional[float] = None
    limit: Optional[int] = None

    def cache_key(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


@dataclass
class QueryResult:
    """
    Values emitted by one evaluation.

    ``values == []`` means no match; ``values == [None]`` means the
    expression matched and produced a literal null.
    """
    values: List[Any]
    ordered: bool = True
    elapsed_ms: float = 0.0


@dataclass
class StreamEvaluation:
    results: List[Any] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    lines_processed: int = 0


@dataclass
class EvaluationProgress:
    """Counters shared between a streaming evaluation and whoever consumes it."""
    strategy: str = "per_record"
    ordered: bool = True
    diagnostics: List[Diagnostic] = field(default_factory=list)
    lines_processed: int = 0
    logs_processed: int = 0
    results_emitted: int = 0

    def summary(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "ordered": self.ordered,
            "logs_processed": self.logs_processed,
            "lines_processed": self.lines_processed,
            "results": self.results_emitted,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


@dataclass
class AggregateResult:
    results: List[Any]
    diagnostics: List[Diagnostic]
    logs_processed: int
    lines_processed: int
    strategy: str
    ordered: bool
    cached: bool = False


class ProcessState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self not in (ProcessState.STARTING, ProcessState.RUNNING)


ALLOWED_TRANSITIONS: Dict[ProcessState, Tuple[ProcessState, ...]] = {
    ProcessState.STARTING: (ProcessState.RUNNING, ProcessState.FAILED, ProcessState.KILLED),
    ProcessState.RUNNING: (
        ProcessState.COMPLETED,
        ProcessState.FAILED,
        ProcessState.KILLED,
        ProcessState.TIMED_OUT,
    ),
}


@dataclass
class ProcessResult:
    """Outcome of one buffered (or finished streaming) tool invocation."""
    process_id: str
    resume_token: str
    exit_code: Optional[int]
    raw_output: str
    stderr: str = ""
    output: Any = None
    parse_error: Optional[str] = None
    elapsed_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EnvelopeKind(str, Enum):
    START = "start"
    DATA = "data"
    ERROR = "error"
    END = "end"

    @property
    def is_terminal(self) -> bool:
        return self in (EnvelopeKind.ERROR, EnvelopeKind.END)


@dataclass(frozen=True)
class StreamEnvelope:
    """One unit of the incremental delivery protocol."""
    kind: EnvelopeKind
    payload: Any
    sequence: int
    timestamp: str = field(default_factory=lambda: utc_now_iso())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str) + "\n"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LogDetails:
    """Derived, cacheable summary of one log."""
    info: LogInfo
    entry_count: int
    types: Dict[str, int]
    first_entry: Any
    last_entry: Any
    statistics: Dict[str, Any]
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = self.info.to_dict()
        data.update({
            "entry_count": self.entry_count,
            "types": self.types,
            "first_entry": self.first_entry,
            "last_entry": self.last_entry,
            "statistics": self.statistics,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        })
        return data
