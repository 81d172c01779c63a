"""
Process orchestrator: run the external conversational tool under supervision.

At most ``ceiling`` processes run at once. Every process is bounded by a
wall-clock timeout (SIGTERM, then SIGKILL after a grace period) and is
always removed from the process table, whatever way its request ends.
"""

import asyncio
import codecs
import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from .models import ALLOWED_TRANSITIONS, ProcessResult, ProcessState
from ..utils.exceptions import (
    InvalidQuery,
    Overloaded,
    ProcessCancelled,
    ProcessError,
    ProcessExitFailure,
    ProcessSpawnFailure,
    ProcessTimedOut,
)
from ..utils.validators import excerpt, redact_paths

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("text", "json", "stream-json")
INPUT_FORMATS = ("text", "stream-json")

READ_SIZE = 4096
STDERR_EXCERPT = 500

_EOF = object()


@dataclass
class ProcessRequest:
    """One invocation of the external tool."""
    message: str
    resume_token: Optional[str] = None
    workdir: Optional[str] = None
    stream: bool = False
    output_format: Optional[str] = None
    input_format: str = "text"
    model: Optional[str] = None
    verbose: bool = False
    flags: List[str] = field(default_factory=list)
    timeout: Optional[float] = None

    @property
    def effective_output_format(self) -> str:
        if self.output_format:
            return self.output_format
        return "stream-json" if self.stream else "json"


class ProcessHandle:
    """Bookkeeping for one supervised process. Only the orchestrator signals it."""

    def __init__(self, resume_token: str, loop: asyncio.AbstractEventLoop):
        self.id = str(uuid.uuid4())
        self.resume_token = resume_token
        self.loop = loop
        self.state = ProcessState.STARTING
        self.created_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self.cancel_requested = False

    def transition(self, state: ProcessState) -> bool:
        """Move to ``state``. Returns False if already terminal."""
        if self.state.is_terminal:
            return False
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal process transition {self.state.value} -> {state.value}")
        self.state = state
        if state.is_terminal:
            self.finished_at = datetime.now(timezone.utc)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "resume_token": self.resume_token,
            "state": self.state.value,
            "pid": self.process.pid if self.process else None,
            "created_at": self.created_at.isoformat(),
        }


class ProcessStream:
    """
    Async iterator over the decoded output of a streaming process.

    Chunks arrive through a bounded queue filled by a supervising task.
    ``status`` resolves to the ProcessResult, or fails with the ProcessError
    that ended the process. Iteration raises that error after the last chunk.
    """

    def __init__(self, orchestrator: "ProcessOrchestrator", handle: ProcessHandle,
                 request: ProcessRequest, queue_size: int = 64):
        self.handle = handle
        self.resume_token = handle.resume_token
        self._orchestrator = orchestrator
        self.status: asyncio.Future = handle.loop.create_future()
        self.stderr_parts: List[str] = []
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False
        self._finished = False
        self._task = asyncio.ensure_future(orchestrator._supervise(handle, request, self))

    def __aiter__(self) -> "ProcessStream":
        return self

    async def __anext__(self) -> str:
        if self._finished or (self._closed and self._queue.empty()):
            return await self._end()

        item = await self._queue.get()
        if item is _EOF:
            return await self._end()
        return item

    async def _end(self):
        self._finished = True
        await asyncio.shield(self.status)
        raise StopAsyncIteration

    async def _put(self, chunk: str) -> None:
        await self._queue.put(chunk)

    def _close(self) -> None:
        self._closed = True
        if not self._queue.full():
            self._queue.put_nowait(_EOF)

    def _resolve(self, result: ProcessResult) -> None:
        if not self.status.done():
            self.status.set_result(result)

    def _fail(self, error: ProcessError) -> None:
        if not self.status.done():
            self.status.set_exception(error)

    async def result(self) -> ProcessResult:
        """Wait for the process to finish without consuming output."""
        return await asyncio.shield(self.status)

    @property
    def stderr(self) -> str:
        return "".join(self.stderr_parts)

    async def aclose(self) -> None:
        """Terminate the process (if still running) and wait for cleanup."""
        if not self._task.done():
            self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._finished = True

        if not self.handle.state.is_terminal:
            # Cancelled before the supervisor ever ran.
            await self._orchestrator._terminate(self.handle, ProcessState.KILLED)
            self._orchestrator._release(self.handle)
            self._fail(ProcessCancelled("Stream closed before the process finished"))
        if self.status.done() and not self.status.cancelled():
            # Mark a failure as retrieved; the consumer chose to stop reading.
            self.status.exception()


class ProcessOrchestrator:
    """
    Spawns and supervises the external conversational tool.

    Features:
    - Global concurrency ceiling (``Overloaded`` beyond it)
    - Buffered and streaming execution
    - Timeout with SIGTERM then SIGKILL
    - Cancellation from any thread
    """

    def __init__(
        self,
        command: Optional[List[str]] = None,
        ceiling: int = 10,
        timeout: float = 120.0,
        kill_grace: float = 5.0,
        env: Optional[Dict[str, str]] = None,
        redact: Tuple[str, ...] = ()
    ):
        self.command = list(command or ["claude"])
        self.ceiling = ceiling
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.env = dict(env or {})
        self.redact = tuple(str(p) for p in redact)
        self._processes: Dict[str, ProcessHandle] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------ table

    def _reserve(self, request: ProcessRequest) -> ProcessHandle:
        token = request.resume_token or str(uuid.uuid4())
        handle = ProcessHandle(token, asyncio.get_running_loop())
        with self._lock:
            if len(self._processes) >= self.ceiling:
                raise Overloaded(f"Maximum concurrent processes reached ({self.ceiling})",
                                 {"ceiling": self.ceiling})
            self._processes[handle.id] = handle
        return handle

    def _release(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._processes.pop(handle.id, None)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            handles = list(self._processes.values())
        return {
            "active": len(handles),
            "ceiling": self.ceiling,
            "active_ids": [h.id for h in handles],
            "processes": [h.to_dict() for h in handles],
        }

    def get(self, handle_id: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._processes.get(handle_id)

    # ----------------------------------------------------------- command

    def build_args(self, request: ProcessRequest, handle: ProcessHandle) -> List[str]:
        """Command-line arguments for one request (excluding the executable)."""
        args = ["-p"]

        if request.resume_token:
            args.extend(["-r", request.resume_token])
        else:
            args.extend(["--session-id", handle.resume_token])

        output_format = request.effective_output_format
        if output_format != "text":
            args.extend(["--output-format", output_format])

        if request.input_format != "text":
            args.extend(["--input-format", request.input_format])

        if request.verbose or (request.stream and output_format == "stream-json"):
            args.append("--verbose")

        if request.model:
            args.extend(["--model", request.model])

        args.extend(request.flags)
        return args

    def _stdin_payload(self, request: ProcessRequest) -> bytes:
        if request.input_format == "stream-json":
            message = json.dumps({"messages": [{"role": "user", "content": request.message}]})
        else:
            message = request.message
        return message.encode("utf-8")

    def _check_request(self, request: ProcessRequest) -> None:
        if not isinstance(request.message, str) or not request.message.strip():
            raise InvalidQuery("Message must be a non-empty string")
        if request.effective_output_format not in OUTPUT_FORMATS:
            raise InvalidQuery(f"Unsupported output format '{request.output_format}'")
        if request.input_format not in INPUT_FORMATS:
            raise InvalidQuery(f"Unsupported input format '{request.input_format}'")
        if not all(isinstance(flag, str) for flag in request.flags):
            raise InvalidQuery("Extra flags must be strings")

    def _redact(self, text: str, request: ProcessRequest) -> str:
        paths = list(self.redact) + ([str(request.workdir)] if request.workdir else [])
        return redact_paths(excerpt(text, STDERR_EXCERPT), paths)

    # ----------------------------------------------------------- execute

    async def execute(self, request: ProcessRequest) -> Union[ProcessResult, ProcessStream]:
        """
        Run the tool for one request.

        Returns:
            ProcessResult in buffered mode, ProcessStream in streaming mode

        Raises:
            Overloaded: the concurrency ceiling is reached
            ProcessSpawnFailure, ProcessExitFailure, ProcessTimedOut, ProcessCancelled
        """
        self._check_request(request)
        # Reserved before the first await so concurrent callers see the slot taken.
        handle = self._reserve(request)

        if request.stream:
            try:
                await self._spawn(handle, request)
            except BaseException:
                self._release(handle)
                raise
            return ProcessStream(self, handle, request)

        try:
            return await self._run_buffered(handle, request)
        finally:
            self._release(handle)

    async def _spawn(self, handle: ProcessHandle, request: ProcessRequest) -> None:
        args = self.command + self.build_args(request, handle)
        env = {**os.environ, **self.env} if self.env else None

        try:
            handle.process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=request.workdir,
                env=env,
            )
        except (OSError, ValueError) as e:
            handle.transition(ProcessState.FAILED)
            reason = getattr(e, "strerror", None) or str(e)
            logger.error(f"Failed to spawn {self.command[0]}: {reason}")
            raise ProcessSpawnFailure(f"Failed to start {self.command[0]}: {self._redact(reason, request)}")

        handle.transition(ProcessState.RUNNING)
        logger.info(f"Started process {handle.id} (pid {handle.process.pid}, "
                    f"stream={request.stream}, resume={bool(request.resume_token)})")

        if handle.cancel_requested:
            await self._terminate(handle, ProcessState.KILLED)
            raise ProcessCancelled("Process cancelled before it started")

    async def _send(self, process: asyncio.subprocess.Process, request: ProcessRequest) -> None:
        try:
            process.stdin.write(self._stdin_payload(request))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Process closed stdin before reading the message")
        finally:
            process.stdin.close()

    async def _terminate(self, handle: ProcessHandle, state: ProcessState) -> None:
        handle.transition(state)
        process = handle.process
        if process is None or process.returncode is not None:
            return

        try:
            process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning(f"Process {handle.id} ignored SIGTERM, killing")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

        logger.info(f"Terminated process {handle.id} ({state.value})")

    def _timeout(self, request: ProcessRequest) -> float:
        return request.timeout or self.timeout

    async def _run_buffered(self, handle: ProcessHandle, request: ProcessRequest) -> ProcessResult:
        start = time.monotonic()
        await self._spawn(handle, request)
        process = handle.process
        stdout_task = asyncio.ensure_future(process.stdout.read())
        stderr_task = asyncio.ensure_future(process.stderr.read())
        timeout = self._timeout(request)

        async def _communicate():
            await self._send(process, request)
            await process.wait()

        try:
            await asyncio.wait_for(_communicate(), timeout)
            stdout, stderr = await asyncio.gather(stdout_task, stderr_task)
        except asyncio.TimeoutError:
            await self._terminate(handle, ProcessState.TIMED_OUT)
            stderr = await self._partial(stderr_task)
            logger.warning(f"Process {handle.id} timed out after {timeout:g}s")
            raise ProcessTimedOut(f"Process timed out after {timeout:g}s",
                                  stderr=self._redact(stderr, request))
        except asyncio.CancelledError:
            await self._terminate(handle, ProcessState.KILLED)
            raise
        finally:
            for task in (stdout_task, stderr_task):
                if not task.done():
                    task.cancel()

        return self._finish(
            handle,
            request,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            start,
        )

    async def _partial(self, task: asyncio.Future) -> str:
        done, _ = await asyncio.wait({task}, timeout=self.kill_grace)
        if task in done and not task.cancelled() and task.exception() is None:
            return task.result().decode("utf-8", errors="replace")
        return ""

    def _finish(self, handle: ProcessHandle, request: ProcessRequest,
                raw_output: str, stderr: str, start: float) -> ProcessResult:
        code = handle.process.returncode
        elapsed_ms = (time.monotonic() - start) * 1000

        if handle.cancel_requested:
            handle.transition(ProcessState.KILLED)
            raise ProcessCancelled("Process was cancelled", exit_code=code,
                                   stderr=self._redact(stderr, request))

        if code != 0:
            handle.transition(ProcessState.FAILED)
            logger.error(f"Process {handle.id} exited with status {code}")
            raise ProcessExitFailure(f"Process exited with status {code}", exit_code=code,
                                     stderr=self._redact(stderr, request))

        handle.transition(ProcessState.COMPLETED)
        output, parse_error, token = parse_output(raw_output, request.effective_output_format)
        logger.info(f"Process {handle.id} completed in {elapsed_ms:.0f}ms "
                    f"({len(raw_output)} bytes of output)")

        return ProcessResult(
            process_id=handle.id,
            resume_token=token or handle.resume_token,
            exit_code=code,
            raw_output=raw_output,
            stderr=self._redact(stderr, request),
            output=output,
            parse_error=parse_error,
            elapsed_ms=elapsed_ms,
        )

    # --------------------------------------------------------- streaming

    async def _supervise(self, handle: ProcessHandle, request: ProcessRequest,
                         stream: ProcessStream) -> None:
        start = time.monotonic()
        process = handle.process
        chunks: List[str] = []
        stderr_task = asyncio.ensure_future(_drain(process.stderr, stream.stderr_parts))
        timeout = self._timeout(request)

        try:
            await asyncio.wait_for(
                asyncio.gather(self._send(process, request), self._pump(process, stream, chunks)),
                timeout,
            )
            await stderr_task
            stream._resolve(self._finish(handle, request, "".join(chunks), stream.stderr, start))
        except asyncio.TimeoutError:
            await self._terminate(handle, ProcessState.TIMED_OUT)
            logger.warning(f"Streaming process {handle.id} timed out after {timeout:g}s")
            stream._fail(ProcessTimedOut(f"Process timed out after {timeout:g}s",
                                         stderr=self._redact(stream.stderr, request)))
        except asyncio.CancelledError:
            await self._terminate(handle, ProcessState.KILLED)
            stream._fail(ProcessCancelled("Stream closed before the process finished"))
            raise
        except ProcessError as e:
            stream._fail(e)
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            self._release(handle)
            stream._close()

    async def _pump(self, process: asyncio.subprocess.Process, stream: ProcessStream,
                    chunks: List[str]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await process.stdout.read(READ_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                chunks.append(text)
                await stream._put(text)
            if not data:
                break
        await process.wait()

    # ------------------------------------------------------------ control

    def cancel(self, handle_id: str) -> bool:
        """
        Terminate a running process. Safe to call from any thread.

        Returns:
            True if the process was known and signalled
        """
        handle = self.get(handle_id)
        if handle is None or handle.state.is_terminal:
            return False

        handle.cancel_requested = True

        def _schedule():
            handle.loop.create_task(self._terminate(handle, ProcessState.KILLED))

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is handle.loop:
            _schedule()
        else:
            handle.loop.call_soon_threadsafe(_schedule)

        logger.info(f"Cancellation requested for process {handle_id}")
        return True

    async def shutdown(self) -> None:
        """Terminate every live process."""
        with self._lock:
            handles = list(self._processes.values())
        for handle in handles:
            handle.cancel_requested = True
        await asyncio.gather(*(self._terminate(h, ProcessState.KILLED) for h in handles),
                             return_exceptions=True)
        if handles:
            logger.info(f"Shutdown terminated {len(handles)} processes")

    async def check_available(self, timeout: float = 10.0) -> bool:
        """Run the tool with ``--help``."""
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command, "--help",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error(f"{self.command[0]} is not available: {e.strerror or e}")
            return False

        try:
            code = await asyncio.wait_for(process.wait(), timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return False
        return code == 0


async def _drain(reader: asyncio.StreamReader, parts: List[str]) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await reader.read(READ_SIZE)
        text = decoder.decode(data, final=not data)
        if text:
            parts.append(text)
        if not data:
            return


def parse_output(raw_output: str, output_format: str) -> Tuple[Any, Optional[str], Optional[str]]:
    """
    Best-effort parse of tool output.

    Returns:
        (output, parse_error, session_id found in the output)
    """
    if output_format == "text":
        return raw_output, None, None

    if output_format == "json":
        try:
            output = json.loads(raw_output)
        except json.JSONDecodeError as e:
            return raw_output, e.msg, None
        token = output.get("session_id") if isinstance(output, dict) else None
        return output, None, token if isinstance(token, str) else None

    records, token = [], None
    for line in raw_output.splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        records.append(record)
        if isinstance(record, dict) and isinstance(record.get("session_id"), str):
            token = record["session_id"]

    if raw_output.strip() and not records:
        return raw_output, "No JSON lines in output", None
    return records, None, token
