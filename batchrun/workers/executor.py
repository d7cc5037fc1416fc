"""Runs a single attempt of a job as an external process.

Each attempt gets its own process group so a timeout or cancellation can take
down everything the command spawned, not only the direct child. Output from
stdout and stderr is merged and drained by a reader thread into a bounded
buffer that keeps the most recent bytes:

    executor = ProcessExecutor(grace_period=2, output_limit=4096)
    attempt = executor.execute(job, attempt_number=1, cancel_event=event)
    if attempt.outcome == AttemptOutcome.TIMED_OUT:
        print(attempt.output)
"""

import logging
import os
import signal
import subprocess
import threading
import time
from functools import partial
from typing import Optional, Tuple

from ..models.job import Attempt, AttemptOutcome, FailureKind, Job, utcnow

logger = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024

_FAILURE_KIND = {
    AttemptOutcome.FAILURE: FailureKind.RUNTIME_FAILURE,
    AttemptOutcome.TIMED_OUT: FailureKind.TIMEOUT_FAILURE,
    AttemptOutcome.CANCELLED: FailureKind.CANCELLED_BY_USER,
}


class OutputBuffer:
    """Keeps at most ``limit`` bytes, dropping the oldest first"""

    def __init__(self, limit: int):
        self.limit = limit
        self.dropped = 0
        self._data = bytearray()
        self._lock = threading.Lock()

    def write(self, chunk: bytes):
        with self._lock:
            self._data += chunk
            overflow = len(self._data) - self.limit
            if overflow > 0:
                del self._data[:overflow]
                self.dropped += overflow

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def render(self) -> str:
        with self._lock:
            text = self._data.decode("utf-8", errors="replace")
            dropped = self.dropped
        if dropped:
            return f"[... {dropped} bytes truncated ...]\n{text}"
        return text


class OwnedProcess:
    """Handle for one child process and its process group.

    Leaving the ``with`` block always kills whatever is left of the group,
    reaps the child, joins the reader thread and closes the pipe, whichever
    way the block is exited.
    """

    def __init__(self, command, output: OutputBuffer, cwd=None, env=None, tracker=None,
                 reader_timeout: float = 5.0):
        self.command = command
        self.output = output
        self.cwd = cwd
        self.env = env
        self.tracker = tracker
        self.reader_timeout = reader_timeout
        self.process: Optional[subprocess.Popen] = None
        self.pid: Optional[int] = None
        self._reader: Optional[threading.Thread] = None
        self._released = False

    def start(self):
        self.process = subprocess.Popen(
            self.command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            cwd=self.cwd,
            env=self.env,
            start_new_session=True,
        )
        self.pid = self.process.pid
        try:
            if self.tracker is not None:
                self.tracker.track(self)
            self._start_reader()
        except BaseException:
            self.release()
            raise
        logger.debug(f"Started pid {self.pid}: {self.command}")
        return self

    def _start_reader(self):
        self._reader = threading.Thread(
            target=self._drain, name=f"batchrun-output-{self.pid}", daemon=True
        )
        self._reader.start()

    def __enter__(self):
        if self.process is None:
            self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def _drain(self):
        fd = self.process.stdout.fileno()
        for chunk in iter(partial(os.read, fd, _READ_SIZE), b""):
            self.output.write(chunk)

    def is_alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def poll(self) -> Optional[int]:
        return self.process.poll()

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.process.wait(timeout)

    def signal_group(self, sig):
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass  # group already gone

    def terminate(self, grace_period: float):
        """SIGTERM the group, then SIGKILL it if the child outlives the grace period"""
        self.signal_group(signal.SIGTERM)
        try:
            self.process.wait(timeout=grace_period)
        except subprocess.TimeoutExpired:
            logger.warning(f"pid {self.pid} ignored SIGTERM for {grace_period}s, killing")
            self.signal_group(signal.SIGKILL)
            self.process.wait()

    def release(self):
        if self.process is None or self._released:
            return
        self._released = True
        try:
            # Descendants may still hold the pipe open after the child exits
            self.signal_group(signal.SIGKILL)
            self.process.wait()
            reader = self._reader
            if reader is not None and reader.ident is not None:
                reader.join(self.reader_timeout)
                if reader.is_alive():
                    logger.warning(f"Output of pid {self.pid} still open after release")
                    return
            self.process.stdout.close()
        finally:
            if self.tracker is not None:
                self.tracker.untrack(self)


class ProcessExecutor:
    def __init__(self, grace_period: float = 5.0, output_limit: int = 64 * 1024,
                 poll_interval: float = 0.05, tracker=None):
        self.grace_period = grace_period
        self.output_limit = output_limit
        self.poll_interval = poll_interval
        self.tracker = tracker

    @classmethod
    def from_config(cls, config, tracker=None) -> "ProcessExecutor":
        return cls(
            grace_period=config.grace_period,
            output_limit=config.output_limit,
            poll_interval=config.poll_interval,
            tracker=tracker,
        )

    def execute(self, job: Job, attempt_number: int,
                cancel_event: Optional[threading.Event] = None) -> Attempt:
        """Run one attempt of ``job`` and return its record"""
        if cancel_event is None:
            cancel_event = threading.Event()

        env = None
        if job.env:
            env = dict(os.environ)
            env.update(job.env)

        output = OutputBuffer(self.output_limit)
        handle = OwnedProcess(job.command, output, cwd=job.cwd, env=env, tracker=self.tracker)
        started_at = utcnow()

        try:
            handle.start()
        except (OSError, ValueError) as e:
            logger.warning(f"Job {job.id} attempt {attempt_number} could not start: {str(e)}")
            return Attempt(
                attempt_number=attempt_number,
                started_at=started_at,
                ended_at=utcnow(),
                outcome=AttemptOutcome.FAILURE,
                failure=FailureKind.START_FAILURE,
                error=str(e),
            )

        with handle:
            outcome, exit_code, error = self._wait(handle, job.timeout, cancel_event)

        return Attempt(
            attempt_number=attempt_number,
            started_at=started_at,
            ended_at=utcnow(),
            outcome=outcome,
            exit_code=exit_code,
            failure=_FAILURE_KIND.get(outcome),
            error=error,
            output=output.render(),
            output_truncated=output.truncated,
            pid=handle.pid,
        )

    def _wait(self, handle: OwnedProcess, timeout: Optional[float],
              cancel_event: threading.Event) -> Tuple[AttemptOutcome, Optional[int], Optional[str]]:
        deadline = time.monotonic() + timeout if timeout else None

        while True:
            exit_code = handle.poll()
            if exit_code is not None:
                break

            if cancel_event.is_set():
                handle.terminate(self.grace_period)
                return AttemptOutcome.CANCELLED, None, "cancelled"

            wait_for = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(f"pid {handle.pid} exceeded {timeout}s timeout")
                    handle.terminate(self.grace_period)
                    return AttemptOutcome.TIMED_OUT, None, f"timed out after {timeout}s"
                wait_for = min(wait_for, remaining)

            try:
                exit_code = handle.wait(wait_for)
                break
            except subprocess.TimeoutExpired:
                continue

        if exit_code == 0:
            return AttemptOutcome.SUCCESS, exit_code, None
        return AttemptOutcome.FAILURE, exit_code, None
