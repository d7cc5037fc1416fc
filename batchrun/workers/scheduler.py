import heapq
import logging
import queue
import threading
import time
from collections import deque
from typing import Callable, Iterable, List, Optional, Union

from ..models.config import RunConfig
from ..models.job import (
    Attempt,
    AttemptOutcome,
    DuplicateJobError,
    FailureKind,
    Job,
    JobEvent,
    JobSpec,
    JobState,
    utcnow,
)
from ..models.report import RunReport
from .aggregator import ResultAggregator
from .cancellation import CancellationCoordinator
from .executor import ProcessExecutor
from .retry import RetryController

logger = logging.getLogger(__name__)

# Posted by the coordinator so a stop interrupts a blocked wait
_WAKEUP = object()

EventCallback = Callable[[JobEvent], None]


class Scheduler:
    """Drives a batch of jobs to completion under a concurrency limit.

    One loop, running on the caller's thread, owns the ready queue, the retry
    heap and the set of running attempts. Attempts run on worker threads that
    only hand their finished Attempt back over ``_events``; nothing else is
    shared between threads.
    """

    def __init__(self, config: Optional[RunConfig] = None, executor: Optional[ProcessExecutor] = None,
                 retry: Optional[RetryController] = None,
                 coordinator: Optional[CancellationCoordinator] = None,
                 on_event: Optional[EventCallback] = None):
        self.config = config or RunConfig()
        self.coordinator = coordinator or CancellationCoordinator()
        self.executor = executor or ProcessExecutor.from_config(self.config, tracker=self.coordinator)
        self.retry = retry or RetryController(self.config.retry_policy)
        self.on_event = on_event
        self.max_running = 0
        self._events = queue.SimpleQueue()
        self._ready = deque()
        self._delayed = []
        self._running = {}

    def build_jobs(self, specs: Iterable[Union[JobSpec, dict]]) -> List[Job]:
        jobs = []
        seen = set()
        for index, spec in enumerate(specs):
            if not isinstance(spec, JobSpec):
                spec = JobSpec.model_validate(spec)
            if spec.id in seen:
                raise DuplicateJobError(f"Duplicate job id: {spec.id}")
            seen.add(spec.id)
            jobs.append(Job.from_spec(
                spec,
                index,
                default_max_attempts=self.config.default_max_attempts,
                default_timeout=self.config.default_timeout,
            ))
        return jobs

    def run(self, specs: Iterable[Union[JobSpec, dict]]) -> RunReport:
        jobs = self.build_jobs(specs)
        aggregator = ResultAggregator(jobs)
        started_at = utcnow()

        self._events = queue.SimpleQueue()
        self._ready = deque(jobs)
        self._delayed = []
        self._running = {}
        self.max_running = 0

        def wake(reason):
            self._events.put(_WAKEUP)

        self.coordinator.add_listener(wake)
        logger.info(f"Running {len(jobs)} job(s), concurrency {self.config.concurrency_limit}")
        try:
            while not aggregator.complete:
                if self.coordinator.stop_requested:
                    self._cancel_waiting(aggregator)
                else:
                    self._release_due()
                    self._admit()
                if aggregator.complete:
                    break
                self._wait_for_event(aggregator)
            # A stop that raced the last completions still marks the run cancelled
            stopped = self.coordinator.stop_requested
        finally:
            self.coordinator.remove_listener(wake)
            if self._running:
                # Unwinding on an exception: make sure no attempt outlives us
                self.coordinator.stop("scheduler exited early")
                for thread in list(self._running.values()):
                    thread.join()

        report = aggregator.report(started_at, utcnow(), cancelled=stopped)
        logger.info(
            f"Run finished: {report.summary.succeeded} succeeded, {report.summary.failed} failed, "
            f"{report.summary.timed_out} timed out, {report.summary.cancelled} cancelled"
        )
        return report

    def _emit(self, job: Job, previous: Optional[JobState], attempt_number: int,
              delay: Optional[float] = None):
        logger.debug(f"Job {job.id}: {previous.value if previous else '-'} -> {job.state.value}")
        if self.on_event is None:
            return
        event = JobEvent(
            job_id=job.id,
            previous=previous,
            state=job.state,
            attempt_number=attempt_number,
            delay=delay,
        )
        try:
            self.on_event(event)
        except Exception as e:
            logger.error(f"Event callback failed for job {job.id}: {str(e)}")

    def _set_state(self, job: Job, state: JobState, attempt_number: int, delay: Optional[float] = None):
        previous = job.transition(state)
        self._emit(job, previous, attempt_number, delay)

    def _finish(self, job: Job, state: JobState, aggregator: ResultAggregator):
        self._set_state(job, state, len(job.attempts))
        aggregator.record(job)

    def _release_due(self):
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            self._ready.append(job)

    def _admit(self):
        while self._ready and len(self._running) < self.config.concurrency_limit:
            job = self._ready.popleft()
            attempt_number = job.next_attempt_number
            self._set_state(job, JobState.RUNNING, attempt_number)
            thread = threading.Thread(
                target=self._run_attempt,
                args=(job, attempt_number),
                name=f"batchrun-{job.id}-{attempt_number}",
                daemon=True,
            )
            self._running[job.id] = thread
            thread.start()
            self.max_running = max(self.max_running, len(self._running))

    def _run_attempt(self, job: Job, attempt_number: int):
        try:
            attempt = self.executor.execute(job, attempt_number, self.coordinator.event)
        except Exception as e:
            logger.exception(f"Attempt {attempt_number} of job {job.id} crashed")
            now = utcnow()
            attempt = Attempt(
                attempt_number=attempt_number,
                started_at=now,
                ended_at=now,
                outcome=AttemptOutcome.FAILURE,
                failure=FailureKind.RUNTIME_FAILURE,
                error=str(e),
            )
        self._events.put((job, attempt))

    def _wait_for_event(self, aggregator: ResultAggregator):
        timeout = None
        if self._delayed and not self.coordinator.stop_requested:
            timeout = max(0.0, self._delayed[0][0] - time.monotonic())
        elif not self._running:
            return

        try:
            item = self._events.get(timeout=timeout)
        except queue.Empty:
            return
        if item is _WAKEUP:
            return

        job, attempt = item
        self._running.pop(job.id).join()
        self._complete(job, attempt, aggregator)

    def _complete(self, job: Job, attempt: Attempt, aggregator: ResultAggregator):
        job.attempts.append(attempt)
        decision = self.retry.decide(
            attempt,
            job.max_attempts,
            policy=job.retry_policy,
            retry_start_failures=job.retry_start_failures,
        )
        if decision.retry:
            logger.info(
                f"Job {job.id} attempt {attempt.attempt_number}/{job.max_attempts} "
                f"{attempt.outcome.value}, retrying in {decision.delay:.2f}s"
            )
            self._set_state(job, JobState.AWAITING_RETRY, attempt.attempt_number, delay=decision.delay)
            # Delay counts from the end of the attempt
            due = time.monotonic() + decision.delay
            heapq.heappush(self._delayed, (due, job.index, job))
        else:
            self._finish(job, decision.final_state, aggregator)

    def _cancel_waiting(self, aggregator: ResultAggregator):
        waiting = list(self._ready) + [job for _, _, job in sorted(self._delayed, key=lambda d: d[:2])]
        self._ready.clear()
        self._delayed = []
        for job in waiting:
            self._finish(job, JobState.CANCELLED, aggregator)


def run_jobs(specs: Iterable[Union[JobSpec, dict]], config: Optional[RunConfig] = None,
             on_event: Optional[EventCallback] = None,
             coordinator: Optional[CancellationCoordinator] = None) -> RunReport:
    """Run a batch of jobs and return the report once every job is finished"""
    scheduler = Scheduler(config=config, coordinator=coordinator, on_event=on_event)
    return scheduler.run(specs)
