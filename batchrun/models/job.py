import shlex
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from uuid import uuid4

from .config import RetryPolicy


class BatchRunError(Exception):
    """Base class for errors raised by batchrun"""


class DuplicateJobError(BatchRunError, ValueError):
    pass


class InvalidTransitionError(BatchRunError):
    pass


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_RETRY = "awaiting_retry"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.TIMED_OUT,
    JobState.CANCELLED,
})

ALLOWED_TRANSITIONS = {
    JobState.PENDING: {JobState.RUNNING, JobState.CANCELLED},
    JobState.RUNNING: {
        JobState.AWAITING_RETRY,
        JobState.SUCCEEDED,
        JobState.FAILED,
        JobState.TIMED_OUT,
        JobState.CANCELLED,
    },
    JobState.AWAITING_RETRY: {JobState.RUNNING, JobState.CANCELLED},
}


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class FailureKind(str, Enum):
    START_FAILURE = "start_failure"
    RUNTIME_FAILURE = "runtime_failure"
    TIMEOUT_FAILURE = "timeout_failure"
    CANCELLED_BY_USER = "cancelled_by_user"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobSpec(BaseModel):
    """What the caller asks to run. Becomes a Job at submission.

    ``command`` may carry the whole argument vector, or just the program with
    the rest in ``args``. Unknown keys are rejected so a misspelled field
    fails validation instead of being dropped.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid4()))
    command: List[str] = Field(min_length=1)
    args: List[str] = Field(default_factory=list)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[float] = Field(default=None, ge=0)
    retry_policy: Optional[RetryPolicy] = None
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    retry_start_failures: bool = True

    @field_validator("command", mode="before")
    @classmethod
    def split_command(cls, value):
        # Tokenised only; nothing is expanded or handed to a shell
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @property
    def argv(self) -> List[str]:
        return list(self.command) + list(self.args)


class Attempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempt_number: int = Field(ge=1)
    started_at: datetime
    ended_at: datetime
    outcome: AttemptOutcome
    exit_code: Optional[int] = None
    failure: Optional[FailureKind] = None
    error: Optional[str] = None
    output: str = ""
    output_truncated: bool = False
    pid: Optional[int] = None

    @property
    def duration(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()


class Job(BaseModel):
    id: str
    index: int
    command: List[str]
    max_attempts: int = 1
    timeout: Optional[float] = None
    retry_policy: Optional[RetryPolicy] = None
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    retry_start_failures: bool = True
    state: JobState = JobState.PENDING
    attempts: List[Attempt] = Field(default_factory=list)

    @classmethod
    def from_spec(cls, spec: JobSpec, index: int, default_max_attempts: int = 1,
                  default_timeout: Optional[float] = None) -> "Job":
        timeout = spec.timeout if spec.timeout is not None else default_timeout
        return cls(
            id=spec.id,
            index=index,
            command=spec.argv,
            max_attempts=spec.max_attempts or default_max_attempts,
            timeout=timeout or None,  # 0 means no limit
            retry_policy=spec.retry_policy,
            cwd=spec.cwd,
            env=spec.env,
            retry_start_failures=spec.retry_start_failures,
        )

    @property
    def next_attempt_number(self) -> int:
        return len(self.attempts) + 1

    def transition(self, new_state: JobState) -> JobState:
        """Move to new_state, returning the previous state"""
        previous = self.state
        if new_state not in ALLOWED_TRANSITIONS.get(previous, ()):
            raise InvalidTransitionError(
                f"Job {self.id}: {previous.value} -> {new_state.value} is not allowed"
            )
        self.state = new_state
        return previous


class JobEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    previous: Optional[JobState] = None
    state: JobState
    attempt_number: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
    delay: Optional[float] = None  # Set when entering awaiting_retry
