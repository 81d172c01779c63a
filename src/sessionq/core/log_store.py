"""
Log store: locate, read and index append-only conversation logs.

Logs live under a single configured root as ``<root>/<collection>/<log_id>.jsonl``,
one JSON value per line. Every path is resolved and checked for containment
in the root before a file is opened.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple

from .cache import LRUCache
from .models import (
    CollectionInfo,
    Diagnostic,
    LogDetails,
    LogEntry,
    LogHandle,
    LogInfo,
    LogReadResult,
)
from .statistics import collection_statistics, log_statistics
from ..utils.exceptions import LogExists, LogNotFound, LogStoreError, PathViolation
from ..utils.logger import security_event
from ..utils.validators import excerpt, validate_identifier

logger = logging.getLogger(__name__)

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def _timestamp(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class LogReader:
    """
    Sequential reader over the entries of one log.

    Malformed lines are recorded in ``diagnostics`` and skipped; blank
    lines are ignored. ``lines_read`` counts every non-blank line seen,
    whether it parsed or not. Use as a context manager so the file is
    always closed.
    """

    def __init__(self, handle: LogHandle, path: Path, skip_lines: int = 0):
        self.handle = handle
        self.skip_lines = max(0, skip_lines)
        self.diagnostics: List[Diagnostic] = []
        self.lines_read = 0
        try:
            self._file = open(path, "r", encoding="utf-8", errors="replace")
        except FileNotFoundError:
            raise LogNotFound(f"Log '{handle}' not found")
        except OSError as e:
            raise LogStoreError(f"Cannot open log '{handle}': {e.strerror}")

    def __enter__(self) -> "LogReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()

    @property
    def closed(self) -> bool:
        return self._file.closed

    def __iter__(self) -> Iterator[LogEntry]:
        for line_number, line in enumerate(self._file, start=1):
            if line_number <= self.skip_lines:
                continue

            text = line.strip()
            if not text:
                continue

            self.lines_read += 1
            try:
                payload = json.loads(text)
            except json.JSONDecodeError as e:
                self.diagnostics.append(Diagnostic(
                    error=f"JSON parse error: {e.msg}",
                    line=line_number,
                    excerpt=excerpt(text),
                    log=str(self.handle),
                ))
                logger.debug(f"Skipping malformed line {line_number} of {self.handle}: {e.msg}")
                continue

            yield LogEntry(line_number=line_number, payload=payload)


class LogStore:
    """
    Filesystem-backed store of collections ("projects") and logs ("sessions").

    Features:
    - Containment-checked path resolution
    - Line-level error isolation on reads
    - Per-handle cache of derived details, invalidated on mutation
    """

    def __init__(self, root: str, suffix: str = ".jsonl", details_cache_size: int = 200):
        self.root = Path(root).expanduser().resolve()
        self.suffix = suffix
        self._details = LRUCache(details_cache_size, name="log-details")
        self._listeners: List[Callable[[LogHandle], Any]] = []
        logger.info(f"LogStore initialized for {self.root}")

    # ------------------------------------------------------------------ paths

    def add_invalidation_listener(self, listener: Callable[[LogHandle], Any]) -> None:
        """Register a callback run whenever a log is mutated or deleted."""
        self._listeners.append(listener)

    def _contain(self, path: Path, label: str) -> Path:
        resolved = path.resolve()
        try:
            resolved.relative_to(self.root)
        except ValueError:
            security_event(f"Rejected {label}: resolved path escapes the log root")
            raise PathViolation(f"{label} resolves outside the log root")
        return resolved

    def collection_path(self, collection: str) -> Path:
        try:
            validate_identifier(collection, "collection name")
        except PathViolation:
            security_event(f"Rejected collection name {excerpt(collection, 40)!r}")
            raise
        return self._contain(self.root / collection, f"Collection '{collection}'")

    def resolve(self, handle: LogHandle) -> Path:
        """Resolve a handle to its file path. Raises PathViolation on escape."""
        directory = self.collection_path(handle.collection)
        return self._contain(directory / f"{handle.log_id}{self.suffix}", f"Log '{handle}'")

    def _require_root(self) -> None:
        if not self.root.is_dir():
            raise LogStoreError("Log root is not a directory")

    # ---------------------------------------------------------------- listing

    def list_collections(self) -> List[CollectionInfo]:
        """
        Enumerate collections under the root, newest first.

        A collection that cannot be read is still listed, with ``error``
        set, so one bad directory never hides the others.
        """
        self._require_root()
        collections = []

        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir():
                continue
            try:
                directory = self._contain(entry, f"Collection '{entry.name}'")
                log_count, total_size, newest = self._summarize(directory)
                collections.append(CollectionInfo(entry.name, log_count, newest, total_size))
            except (OSError, PathViolation) as e:
                message = e.message if isinstance(e, PathViolation) else (e.strerror or str(e))
                logger.warning(f"Failed to read collection '{entry.name}': {message}")
                collections.append(CollectionInfo(entry.name, 0, EPOCH, 0, error=message))

        collections.sort(key=lambda c: c.last_modified, reverse=True)
        return collections

    def _summarize(self, directory: Path) -> Tuple[int, int, datetime]:
        count, size, newest = 0, 0, EPOCH
        for path in directory.iterdir():
            if path.suffix != self.suffix or not path.is_file():
                continue
            stat = path.stat()
            count += 1
            size += stat.st_size
            newest = max(newest, _timestamp(stat.st_mtime))
        return count, size, newest

    def collection_exists(self, collection: str) -> bool:
        return self.collection_path(collection).is_dir()

    def list_logs(self, collection: str) -> List[LogInfo]:
        """Enumerate logs of one collection, newest first. Empty or missing yields []."""
        directory = self.collection_path(collection)
        if not directory.is_dir():
            return []

        logs = []
        for path in directory.iterdir():
            if path.suffix != self.suffix or not path.is_file():
                continue
            try:
                handle = LogHandle(collection, path.name[: -len(self.suffix)])
                stat = path.stat()
            except (OSError, PathViolation) as e:
                logger.warning(f"Skipping unreadable log {path.name} in '{collection}': {e}")
                continue
            created = getattr(stat, "st_birthtime", stat.st_ctime)
            logs.append(LogInfo(handle, stat.st_size, _timestamp(created), _timestamp(stat.st_mtime)))

        logs.sort(key=lambda info: info.modified, reverse=True)
        return logs

    def find_log(self, log_id: str) -> Optional[LogHandle]:
        """Locate a log by bare id across all collections."""
        validate_identifier(log_id, "log identifier")
        self._require_root()
        for directory in sorted(self.root.iterdir()):
            if not directory.is_dir():
                continue
            try:
                handle = LogHandle(directory.name, log_id)
                if self.resolve(handle).is_file():
                    return handle
            except PathViolation:
                continue
        return None

    def find_logs(
        self,
        collection: Optional[str] = None,
        log_id: Optional[str] = None,
        modified_after: Optional[datetime] = None,
        modified_before: Optional[datetime] = None,
        limit: int = 100
    ) -> List[LogInfo]:
        """
        Search log metadata.

        Args:
            collection: Restrict to one collection
            log_id: Restrict to logs with this id
            modified_after: Only logs modified at or after this time
            modified_before: Only logs modified at or before this time
            limit: Stop after this many matches

        Returns:
            Matching LogInfo records, newest collection first
        """
        names = [collection] if collection else [c.name for c in self.list_collections() if not c.error]
        results: List[LogInfo] = []

        for name in names:
            for info in self.list_logs(name):
                if log_id and info.handle.log_id != log_id:
                    continue
                if modified_after and info.modified < modified_after:
                    continue
                if modified_before and info.modified > modified_before:
                    continue
                results.append(info)
                if len(results) >= limit:
                    return results

        return results

    # ---------------------------------------------------------------- reading

    def open_for_read(self, handle: LogHandle, skip_lines: int = 0) -> LogReader:
        """Open a sequential reader. Containment is checked before any byte is read."""
        path = self.resolve(handle)
        return LogReader(handle, path, skip_lines=skip_lines)

    def read_all(self, handle: LogHandle, limit: Optional[int] = None, offset: int = 0) -> LogReadResult:
        """
        Read a whole log into memory.

        Args:
            handle: Log to read
            limit: Maximum number of entries to return
            offset: Number of leading lines to skip

        Returns:
            LogReadResult with entries in file order plus skipped-line diagnostics
        """
        result = LogReadResult()
        with self.open_for_read(handle, skip_lines=offset) as reader:
            for entry in reader:
                if limit is not None and len(result.entries) >= limit:
                    break
                result.entries.append(entry)
            result.diagnostics = list(reader.diagnostics)

        if result.diagnostics:
            logger.info(f"Read {len(result.entries)} entries from {handle}, "
                        f"skipped {len(result.diagnostics)} malformed lines")
        return result

    def fingerprint(self, handle: LogHandle) -> Tuple[str, Optional[int], Optional[int]]:
        """Content fingerprint (handle, size, mtime) used to key derived results."""
        try:
            stat = self.resolve(handle).stat()
        except FileNotFoundError:
            return (str(handle), None, None)
        return (str(handle), stat.st_size, stat.st_mtime_ns)

    # --------------------------------------------------------------- mutators

    def create(self, collection: str, log_id: str, initial_entries: Iterable[Any] = ()) -> LogHandle:
        """Create a new log, creating its collection directory if needed."""
        handle = LogHandle(collection, log_id)
        self._require_root()
        directory = self.collection_path(collection)
        path = self.resolve(handle)
        lines = self._encode(initial_entries)

        directory.mkdir(exist_ok=True)
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.writelines(lines)
        except FileExistsError:
            raise LogExists(f"Log '{handle}' already exists")

        self._invalidate(handle)
        logger.info(f"Created log {handle} with {len(lines)} entries")
        return handle

    def append(self, handle: LogHandle, entries: Iterable[Any]) -> int:
        """Append entries to an existing log. Returns the number written."""
        path = self.resolve(handle)
        lines = self._encode(entries)

        try:
            needs_newline = False
            with open(path, "rb") as f:
                f.seek(0, 2)
                if f.tell() > 0:
                    f.seek(-1, 2)
                    needs_newline = f.read(1) != b"\n"
            with open(path, "a", encoding="utf-8") as f:
                if needs_newline:
                    f.write("\n")
                f.writelines(lines)
        except FileNotFoundError:
            raise LogNotFound(f"Log '{handle}' not found")

        self._invalidate(handle)
        logger.debug(f"Appended {len(lines)} entries to {handle}")
        return len(lines)

    def delete(self, handle: LogHandle) -> None:
        """Delete a log and drop everything derived from it."""
        path = self.resolve(handle)
        try:
            path.unlink()
        except FileNotFoundError:
            raise LogNotFound(f"Log '{handle}' not found")

        self._invalidate(handle)
        logger.info(f"Deleted log {handle}")

    def _encode(self, entries: Iterable[Any]) -> List[str]:
        try:
            return [json.dumps(entry, ensure_ascii=False) + "\n" for entry in entries]
        except (TypeError, ValueError) as e:
            raise LogStoreError(f"Entry is not JSON serializable: {e}")

    def _invalidate(self, handle: LogHandle) -> None:
        self._details.invalidate(str(handle))
        for listener in self._listeners:
            listener(handle)

    # ------------------------------------------------------- derived details

    def log_details(self, handle: LogHandle) -> LogDetails:
        """Entry counts and statistics for one log, cached until the file changes."""
        path = self.resolve(handle)
        try:
            stat = path.stat()
        except FileNotFoundError:
            raise LogNotFound(f"Log '{handle}' not found")

        key = str(handle)
        version = (stat.st_mtime_ns, stat.st_size)
        cached = self._details.get(key)
        if cached is not None and cached[0] == version:
            return cached[1]

        read = self.read_all(handle)
        statistics = log_statistics(read.entries)
        created = getattr(stat, "st_birthtime", stat.st_ctime)
        details = LogDetails(
            info=LogInfo(handle, stat.st_size, _timestamp(created), _timestamp(stat.st_mtime)),
            entry_count=len(read.entries),
            types=statistics["types"],
            first_entry=read.entries[0].payload if read.entries else None,
            last_entry=read.entries[-1].payload if read.entries else None,
            statistics=statistics,
            diagnostics=read.diagnostics,
        )
        self._details.put(key, (version, details))
        return details

    def collection_stats(self, collection: str) -> dict:
        """Size distribution and age statistics for one collection."""
        if not self.collection_exists(collection):
            raise LogNotFound(f"Collection '{collection}' not found")
        stats = collection_statistics(self.list_logs(collection))
        stats["collection"] = collection
        return stats
