from datetime import timedelta

import pytest
from pydantic import ValidationError

from batchrun.models.config import RetryPolicy, RunConfig
from batchrun.models.job import (
    Attempt,
    AttemptOutcome,
    InvalidTransitionError,
    Job,
    JobSpec,
    JobState,
    utcnow,
)
from batchrun.models.report import JobResult, RunReport, RunSummary


def test_spec_defaults():
    spec = JobSpec(command=["echo", "test"])
    assert spec.id
    assert spec.max_attempts is None
    assert spec.timeout is None
    assert spec.retry_start_failures is True


def test_spec_splits_string_command_without_expansion():
    spec = JobSpec(command="echo '$HOME' *.txt")
    assert spec.command == ["echo", "$HOME", "*.txt"]


def test_spec_rejects_bad_values():
    with pytest.raises(ValidationError):
        JobSpec(command=[])
    with pytest.raises(ValidationError):
        JobSpec(command=["true"], max_attempts=0)
    with pytest.raises(ValidationError):
        JobSpec(command=["true"], timeout=-1)


def test_retry_policy_bounds():
    with pytest.raises(ValidationError):
        RetryPolicy(base_delay=10, max_delay=1)
    with pytest.raises(ValidationError):
        RetryPolicy(jitter_fraction=1.5)


def test_run_config_defaults():
    config = RunConfig()
    assert config.concurrency_limit == 4
    assert config.retry_policy.base_delay == 1.0
    with pytest.raises(ValidationError):
        RunConfig(concurrency_limit=0)


def test_job_from_spec_applies_defaults():
    job = Job.from_spec(JobSpec(id="a", command=["true"]), 0, default_max_attempts=3, default_timeout=5)
    assert job.max_attempts == 3
    assert job.timeout == 5
    assert job.state == JobState.PENDING

    job = Job.from_spec(JobSpec(id="b", command=["true"], max_attempts=2, timeout=0), 1, default_timeout=5)
    assert job.max_attempts == 2
    assert job.timeout is None  # zero means no limit


def test_job_transitions():
    job = Job(id="a", index=0, command=["true"])
    assert job.transition(JobState.RUNNING) == JobState.PENDING
    job.transition(JobState.AWAITING_RETRY)
    job.transition(JobState.RUNNING)
    job.transition(JobState.SUCCEEDED)
    assert job.state.is_terminal

    with pytest.raises(InvalidTransitionError):
        job.transition(JobState.RUNNING)


def test_pending_job_cannot_finish_without_running():
    job = Job(id="a", index=0, command=["true"])
    with pytest.raises(InvalidTransitionError):
        job.transition(JobState.SUCCEEDED)
    job.transition(JobState.CANCELLED)
    assert job.state == JobState.CANCELLED


def test_attempt_is_frozen():
    now = utcnow()
    attempt = Attempt(attempt_number=1, started_at=now, ended_at=now + timedelta(seconds=2),
                      outcome=AttemptOutcome.SUCCESS, exit_code=0)
    assert attempt.duration == 2
    with pytest.raises(ValidationError):
        attempt.exit_code = 1


def _report(**counts):
    now = utcnow()
    summary = RunSummary(submitted=sum(counts.values()), **counts)
    return RunReport(jobs=[], summary=summary, started_at=now, ended_at=now)


def test_report_exit_codes():
    assert _report(succeeded=2).exit_code == 0
    assert _report(succeeded=1, failed=1).exit_code == 1
    assert _report(succeeded=1, timed_out=1).exit_code == 1
    assert _report(failed=1, cancelled=1).exit_code == 130
    assert _report(cancelled=1).exit_code == 130


def test_stopped_run_exits_as_cancelled_even_if_jobs_succeeded():
    report = _report(succeeded=2).model_copy(update={"cancelled": True})
    assert report.exit_code == 130

    restored = RunReport.model_validate_json(report.model_dump_json())
    assert restored.cancelled


def test_job_result_retry_flag():
    now = utcnow()
    attempts = [
        Attempt(attempt_number=1, started_at=now, ended_at=now, outcome=AttemptOutcome.FAILURE, exit_code=1),
        Attempt(attempt_number=2, started_at=now, ended_at=now, outcome=AttemptOutcome.SUCCESS, exit_code=0),
    ]
    result = JobResult(job_id="a", command=["x"], final_state=JobState.SUCCEEDED, attempts=attempts)
    assert result.attempt_count == 2
    assert result.succeeded_after_retry
    assert result.last_attempt.exit_code == 0


def test_spec_args_are_appended_to_command():
    spec = JobSpec(id="a", command="echo", args=["hello world", "$HOME"])
    assert spec.argv == ["echo", "hello world", "$HOME"]
    assert Job.from_spec(spec, 0).command == ["echo", "hello world", "$HOME"]


def test_spec_rejects_unknown_keys():
    with pytest.raises(ValidationError):
        JobSpec.model_validate({"id": "a", "command": "echo", "max_attemps": 3})
    with pytest.raises(ValidationError):
        JobSpec.model_validate({"command": "echo", "retry_policy": {"base_dealy": 1}})
