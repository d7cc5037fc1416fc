import os
import sys
import time

import pytest

from batchrun.models.config import RetryPolicy, RunConfig


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    if not os.path.isdir("/proc"):
        return True
    # An unreaped zombie still answers kill(0) but is no longer running
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except (FileNotFoundError, ProcessLookupError):
        return False


def _wait_until_dead(pid, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not _pid_alive(pid):
            return True
        time.sleep(0.02)
    return not _pid_alive(pid)


@pytest.fixture
def wait_until_dead():
    return _wait_until_dead


@pytest.fixture
def py():
    """Build an argv that runs a Python snippet"""
    def build(code, *args):
        return [sys.executable, "-c", code, *[str(a) for a in args]]
    return build


@pytest.fixture
def fast_config():
    return RunConfig(
        concurrency_limit=2,
        retry_policy=RetryPolicy(base_delay=0.05, max_delay=0.2, jitter_fraction=0.1),
        grace_period=0.5,
        poll_interval=0.01,
    )
