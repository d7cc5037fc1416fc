from datetime import datetime
from typing import List
from pydantic import BaseModel, Field

from .job import Attempt, JobState

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130  # 128 + SIGINT, as a shell reports an interrupted script


class JobResult(BaseModel):
    job_id: str
    command: List[str]
    final_state: JobState
    attempts: List[Attempt] = Field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def succeeded_after_retry(self) -> bool:
        return self.final_state == JobState.SUCCEEDED and len(self.attempts) > 1

    @property
    def last_attempt(self):
        return self.attempts[-1] if self.attempts else None


class RunSummary(BaseModel):
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    cancelled: int = 0


class RunReport(BaseModel):
    jobs: List[JobResult] = Field(default_factory=list)
    summary: RunSummary = Field(default_factory=RunSummary)
    started_at: datetime
    ended_at: datetime
    cancelled: bool = False  # a stop reached the run before every job finished

    @property
    def exit_code(self) -> int:
        if self.cancelled or self.summary.cancelled:
            return EXIT_CANCELLED
        if self.summary.failed or self.summary.timed_out:
            return EXIT_FAILED
        return EXIT_OK

    @property
    def duration(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def get(self, job_id: str) -> JobResult:
        for result in self.jobs:
            if result.job_id == job_id:
                return result
        raise KeyError(job_id)
