from datetime import datetime
from typing import Dict, Iterable, List

from ..models.job import Job, JobState
from ..models.report import JobResult, RunReport, RunSummary

_COUNTERS = {
    JobState.SUCCEEDED: "succeeded",
    JobState.FAILED: "failed",
    JobState.TIMED_OUT: "timed_out",
    JobState.CANCELLED: "cancelled",
}


class ResultAggregator:
    """Collects terminal jobs and builds the report in submission order"""

    def __init__(self, jobs: Iterable[Job]):
        self._order: List[str] = [job.id for job in sorted(jobs, key=lambda j: j.index)]
        self._results: Dict[str, JobResult] = {}

    def record(self, job: Job) -> JobResult:
        if not job.state.is_terminal:
            raise ValueError(f"Job {job.id} is not finished (state: {job.state.value})")
        if job.id in self._results:
            raise ValueError(f"Job {job.id} was already recorded")
        if job.id not in self._order:
            raise KeyError(job.id)

        result = JobResult(
            job_id=job.id,
            command=list(job.command),
            final_state=job.state,
            attempts=list(job.attempts),
        )
        self._results[job.id] = result
        return result

    def pending_ids(self) -> List[str]:
        return [job_id for job_id in self._order if job_id not in self._results]

    @property
    def complete(self) -> bool:
        return len(self._results) == len(self._order)

    def summary(self) -> RunSummary:
        summary = RunSummary(submitted=len(self._order))
        for result in self._results.values():
            field = _COUNTERS[result.final_state]
            setattr(summary, field, getattr(summary, field) + 1)
        return summary

    def report(self, started_at: datetime, ended_at: datetime, cancelled: bool = False) -> RunReport:
        missing = self.pending_ids()
        if missing:
            raise ValueError(f"Jobs still running: {', '.join(missing)}")
        return RunReport(
            jobs=[self._results[job_id] for job_id in self._order],
            summary=self.summary(),
            started_at=started_at,
            ended_at=ended_at,
            cancelled=cancelled,
        )
