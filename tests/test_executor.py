import threading
import time

import pytest

from batchrun.models.job import AttemptOutcome, FailureKind, Job
from batchrun.workers.cancellation import CancellationCoordinator
from batchrun.workers.executor import OutputBuffer, OwnedProcess, ProcessExecutor

IGNORE_TERM = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(30)\n"
)

SPAWN_GRANDCHILD = (
    "import subprocess, sys\n"
    "p = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
    "print(p.pid, flush=True)\n"
)


def make_job(command, **kwargs):
    return Job(id=kwargs.pop("id", "job"), index=0, command=command, **kwargs)


@pytest.fixture
def coordinator():
    return CancellationCoordinator()


@pytest.fixture
def executor(coordinator):
    return ProcessExecutor(grace_period=0.3, output_limit=4096, poll_interval=0.01, tracker=coordinator)


def test_output_buffer_keeps_tail():
    buffer = OutputBuffer(5)
    buffer.write(b"hello ")
    buffer.write(b"world")
    assert buffer.truncated
    assert buffer.dropped == 6
    assert buffer.render() == "[... 6 bytes truncated ...]\nworld"


def test_successful_command(executor, py):
    attempt = executor.execute(make_job(py("print('test')")), 1)
    assert attempt.outcome == AttemptOutcome.SUCCESS
    assert attempt.exit_code == 0
    assert attempt.failure is None
    assert attempt.output == "test\n"
    assert attempt.pid is not None


def test_stderr_is_captured(executor, py):
    attempt = executor.execute(make_job(py("import sys; sys.stderr.write('boom'); sys.exit(3)")), 2)
    assert attempt.outcome == AttemptOutcome.FAILURE
    assert attempt.failure == FailureKind.RUNTIME_FAILURE
    assert attempt.exit_code == 3
    assert attempt.attempt_number == 2
    assert "boom" in attempt.output


def test_env_and_cwd(executor, py, tmp_path):
    job = make_job(py("import os; print(os.environ['BATCHRUN_TEST'], os.getcwd())"),
                   env={"BATCHRUN_TEST": "value"}, cwd=str(tmp_path))
    attempt = executor.execute(job, 1)
    assert attempt.output.split() == ["value", str(tmp_path)]


def test_missing_binary_is_start_failure(executor):
    attempt = executor.execute(make_job(["/nonexistent/batchrun-binary"]), 1)
    assert attempt.outcome == AttemptOutcome.FAILURE
    assert attempt.failure == FailureKind.START_FAILURE
    assert attempt.exit_code is None
    assert attempt.error


def test_output_is_bounded(coordinator, py):
    executor = ProcessExecutor(output_limit=100, poll_interval=0.01, tracker=coordinator)
    attempt = executor.execute(make_job(py("print('x' * 10000)")), 1)
    assert attempt.output_truncated
    assert attempt.output.startswith("[... 9901 bytes truncated ...]")
    assert attempt.output.endswith("x" * 99 + "\n")


def test_timeout_force_kills_process_ignoring_sigterm(executor, coordinator, py, wait_until_dead):
    started = time.monotonic()
    attempt = executor.execute(make_job(py(IGNORE_TERM), timeout=0.5), 1)
    elapsed = time.monotonic() - started

    assert attempt.outcome == AttemptOutcome.TIMED_OUT
    assert attempt.failure == FailureKind.TIMEOUT_FAILURE
    assert attempt.exit_code is None
    assert "ready" in attempt.output
    assert elapsed < 0.5 + 0.3 + 1.0
    assert wait_until_dead(attempt.pid)
    assert coordinator.live_pids() == []


def test_cancel_event_terminates_attempt(executor, coordinator, py, wait_until_dead):
    timer = threading.Timer(0.3, coordinator.stop)
    timer.start()
    started = time.monotonic()
    try:
        attempt = executor.execute(make_job(py("import time; time.sleep(30)")), 1, coordinator.event)
    finally:
        timer.cancel()

    assert attempt.outcome == AttemptOutcome.CANCELLED
    assert attempt.failure == FailureKind.CANCELLED_BY_USER
    assert attempt.exit_code is None
    assert time.monotonic() - started < 3
    assert wait_until_dead(attempt.pid)


def test_descendants_do_not_outlive_attempt(executor, py, wait_until_dead):
    attempt = executor.execute(make_job(py(SPAWN_GRANDCHILD), timeout=10), 1)
    assert attempt.outcome == AttemptOutcome.SUCCESS
    grandchild = int(attempt.output.split()[0])
    assert wait_until_dead(grandchild)


def test_failed_start_does_not_leak_child(coordinator, py, wait_until_dead, monkeypatch):
    def broken_reader(self):
        raise RuntimeError("reader thread failed")

    monkeypatch.setattr(OwnedProcess, "_start_reader", broken_reader)
    handle = OwnedProcess(py("import time; time.sleep(30)"), OutputBuffer(64), tracker=coordinator)
    with pytest.raises(RuntimeError):
        handle.start()

    assert handle.pid is not None
    assert coordinator.live_pids() == []
    assert wait_until_dead(handle.pid)
