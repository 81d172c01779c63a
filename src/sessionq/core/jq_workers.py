"""
jq worker processes.

jq runs as native code that holds the GIL for a whole run, so a thread can
neither interrupt it nor observe a deadline while it works. Every run
happens in a child process instead; a child that overruns its deadline is
killed and a fresh one takes its place on the next checkout.
"""

import itertools
import logging
import multiprocessing
import queue
import signal
import threading
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import jq

from ..utils.exceptions import QueryExecutionError, QueryTimeout

logger = logging.getLogger(__name__)

# Compiled programs kept by each worker before its cache is reset.
PROGRAM_CACHE_SIZE = 256

# Seconds a new worker gets to import jq and report ready.
STARTUP_TIMEOUT = 30.0


def jq_message(error: Exception) -> str:
    text = str(error).strip()
    return text.splitlines()[0] if text else type(error).__name__


def collect(program, value: Any, limit: Optional[int] = None) -> List[Any]:
    """
    Run a compiled program against one value and return every output.

    On a jq error the half-consumed result iterator is released before a
    fresh ValueError carrying only the message is raised.
    """
    outputs = iter(program.input_value(value))
    message = None
    try:
        if limit is not None:
            outputs = itertools.islice(outputs, limit)
        return list(outputs)
    except ValueError as e:
        message = jq_message(e)
    finally:
        del outputs
    raise ValueError(message)


def _serve(conn) -> None:
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    programs: Dict[str, Any] = {}
    conn.send(("ready", None))

    while True:
        try:
            expression, value, limit = conn.recv()
        except EOFError:
            return

        try:
            program = programs.get(expression)
            if program is None:
                if len(programs) >= PROGRAM_CACHE_SIZE:
                    programs.clear()
                program = programs[expression] = jq.compile(expression)
            reply = ("ok", collect(program, value, limit))
        except ValueError as e:
            reply = ("error", jq_message(e))
        conn.send(reply)


class JqWorker:
    """One child process that runs jq programs on request."""

    def __init__(self, context):
        self._conn, child_conn = context.Pipe()
        self.process = context.Process(target=_serve, args=(child_conn,),
                                       name="sessionq-jq", daemon=True)
        self.process.start()
        child_conn.close()

        try:
            ready = self._conn.poll(STARTUP_TIMEOUT) and self._conn.recv()
        except (EOFError, OSError):
            ready = None
        if not ready:
            self.kill()
            raise QueryExecutionError("jq worker failed to start")

    @property
    def alive(self) -> bool:
        return self.process.is_alive()

    def run(self, expression: str, value: Any, limit: Optional[int],
            timeout: float) -> Optional[Tuple[str, Any]]:
        """Send one job and wait up to ``timeout`` seconds. Returns None on timeout."""
        self._conn.send((expression, value, limit))
        if not self._conn.poll(timeout):
            return None
        return self._conn.recv()

    def kill(self) -> None:
        if self.process.is_alive():
            self.process.kill()
        self.process.join(timeout=5)
        self._conn.close()


class JqWorkerPool:
    """
    Bounded pool of jq worker processes, started on demand.

    ``run`` blocks only the calling thread. Other threads and the event
    loop keep running while jq works in a child.
    """

    def __init__(self, size: int = 4, start_method: str = "spawn"):
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        self.size = size
        self._context = multiprocessing.get_context(start_method)
        self._slots = threading.BoundedSemaphore(size)
        self._idle: "queue.LifoQueue[JqWorker]" = queue.LifoQueue()
        self._workers: Set[JqWorker] = set()
        self._lock = threading.Lock()
        self._closed = False
        self._started = 0
        self._killed = 0

    def run(self, expression: str, value: Any, limit: Optional[int] = None,
            timeout: float = 30.0) -> List[Any]:
        """
        Evaluate ``expression`` against ``value`` in a worker.

        The timeout covers waiting for a free worker plus the run itself;
        starting a new worker is not counted.

        Raises:
            QueryTimeout: no worker freed up or the run overran
            QueryExecutionError: jq reported an error or the worker died
        """
        if timeout <= 0:
            raise QueryTimeout("Query timed out", {"timeout": timeout})

        start = time.monotonic()
        if not self._slots.acquire(timeout=timeout):
            raise QueryTimeout(f"Query timed out after {timeout:g}s waiting for a worker",
                               {"timeout": timeout})
        try:
            waited = time.monotonic() - start
            worker = self._checkout()
            try:
                reply = worker.run(expression, value, limit, max(0.0, timeout - waited))
            except (EOFError, OSError) as e:
                self._discard(worker)
                raise QueryExecutionError(f"jq worker exited unexpectedly: {e or type(e).__name__}")

            if reply is None:
                logger.warning(f"Killing jq worker pid={worker.process.pid} after {timeout:g}s")
                self._discard(worker)
                raise QueryTimeout(f"Query timed out after {timeout:g}s", {"timeout": timeout})
            self._idle.put(worker)
        finally:
            self._slots.release()

        status, payload = reply
        if status == "error":
            raise QueryExecutionError(f"Query execution failed: {payload}", {"jq_error": payload})
        return payload

    def _checkout(self) -> JqWorker:
        while True:
            try:
                worker = self._idle.get_nowait()
            except queue.Empty:
                break
            if worker.alive:
                return worker
            self._discard(worker)

        if self._closed:
            raise QueryExecutionError("Query workers are shut down")

        worker = JqWorker(self._context)
        with self._lock:
            closed = self._closed
            if not closed:
                self._workers.add(worker)
                self._started += 1
        if closed:
            worker.kill()
            raise QueryExecutionError("Query workers are shut down")

        logger.debug(f"Started jq worker pid={worker.process.pid}")
        return worker

    def _discard(self, worker: JqWorker) -> None:
        with self._lock:
            if worker in self._workers:
                self._workers.discard(worker)
                self._killed += 1
        worker.kill()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": self.size,
                "live": len(self._workers),
                "started": self._started,
                "killed": self._killed,
            }

    def close(self) -> None:
        """Kill every worker. Runs in flight fail with QueryExecutionError."""
        with self._lock:
            self._closed = True
            workers = list(self._workers)
            self._workers.clear()
        for worker in workers:
            worker.kill()
        if workers:
            logger.debug(f"Stopped {len(workers)} jq workers")
