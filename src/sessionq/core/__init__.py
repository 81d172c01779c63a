# Core Engine Module

from .cache import LRUCache
from .log_store import LogStore, LogReader
from .jq_workers import JqWorkerPool
from .query_evaluator import QueryEvaluator
from .query_shapes import per_record_expression, is_aggregating
from .process_orchestrator import ProcessOrchestrator, ProcessRequest, ProcessStream
from .streaming import StreamTransport, TokenBucket, pipeline, encode_ndjson
from .engine import Engine, QueryRequest, QueryResponse, ChatRequest, ChatResponse

__all__ = [
    "LRUCache",
    "LogStore",
    "LogReader",
    "JqWorkerPool",
    "QueryEvaluator",
    "per_record_expression",
    "is_aggregating",
    "ProcessOrchestrator",
    "ProcessRequest",
    "ProcessStream",
    "StreamTransport",
    "TokenBucket",
    "pipeline",
    "encode_ndjson",
    "Engine",
    "QueryRequest",
    "QueryResponse",
    "ChatRequest",
    "ChatResponse",
]
