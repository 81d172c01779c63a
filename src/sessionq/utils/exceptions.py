"""Custom exceptions for the session query engine."""

from typing import Any, Dict, Optional


class SessionQError(Exception):
    """Base exception for the session query engine."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used by error envelopes and CLI output."""
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigurationError(SessionQError):
    """Raised when configuration is invalid or missing."""
    code = "CONFIGURATION_ERROR"


class InvalidQuery(SessionQError):
    """Raised when a query expression fails validation. Always a client error."""
    code = "INVALID_QUERY"


class QueryTimeout(SessionQError):
    """Raised when a query expression runs past its wall-clock budget."""
    code = "QUERY_TIMEOUT"


class QueryExecutionError(SessionQError):
    """Raised when the query engine fails while evaluating a valid expression."""
    code = "QUERY_EXECUTION_ERROR"


class PathViolation(SessionQError):
    """Raised when a log or collection would resolve outside the configured root."""
    code = "PATH_VIOLATION"


class LogStoreError(SessionQError):
    """Raised when a log file cannot be read or written."""
    code = "LOG_STORE_ERROR"


class LogNotFound(LogStoreError):
    """Raised when a handle points at a log that does not exist."""
    code = "LOG_NOT_FOUND"


class LogExists(LogStoreError):
    """Raised when creating a log that already exists."""
    code = "LOG_EXISTS"


class LineParseError(SessionQError):
    """One malformed record. Recorded as a diagnostic unless every line failed."""
    code = "LINE_PARSE_ERROR"

    def __init__(self, message: str, line: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.line = line


class Overloaded(SessionQError):
    """Raised when the process concurrency ceiling is reached. Callers may retry."""
    code = "OVERLOADED"


class ProcessError(SessionQError):
    """Base class for external tool failures."""
    code = "PROCESS_ERROR"

    def __init__(self, message: str, exit_code: Optional[int] = None,
                 stderr: str = "", details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if exit_code is not None:
            details["exit_code"] = exit_code
        if stderr:
            details["stderr"] = stderr
        super().__init__(message, details)
        self.exit_code = exit_code
        self.stderr = stderr


class ProcessSpawnFailure(ProcessError):
    """Raised when the external tool cannot be started."""
    code = "PROCESS_SPAWN_FAILURE"


class ProcessExitFailure(ProcessError):
    """Raised when the external tool exits with a nonzero status."""
    code = "PROCESS_EXIT_FAILURE"


class ProcessTimedOut(ProcessError):
    """Raised when the external tool exceeds its wall-clock budget."""
    code = "PROCESS_TIMED_OUT"


class ProcessCancelled(ProcessError):
    """Raised when a process was killed by an explicit cancellation."""
    code = "PROCESS_CANCELLED"


class StreamTimeout(SessionQError):
    """Raised when a whole stream runs past its overall budget."""
    code = "STREAM_TIMEOUT"
