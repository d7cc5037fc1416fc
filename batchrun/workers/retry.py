import random
from dataclasses import dataclass
from typing import Optional

from ..models.config import RetryPolicy
from ..models.job import Attempt, AttemptOutcome, FailureKind, JobState

# 2**63 seconds is far past any max_delay; keeps the float multiply finite
_MAX_EXPONENT = 63

_TERMINAL_FOR = {
    AttemptOutcome.SUCCESS: JobState.SUCCEEDED,
    AttemptOutcome.FAILURE: JobState.FAILED,
    AttemptOutcome.TIMED_OUT: JobState.TIMED_OUT,
    AttemptOutcome.CANCELLED: JobState.CANCELLED,
}


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    final_state: Optional[JobState] = None
    delay: float = 0.0


class RetryController:
    def __init__(self, policy: Optional[RetryPolicy] = None, rng: Optional[random.Random] = None):
        self.policy = policy or RetryPolicy()
        self.rng = rng or random.Random()

    def backoff(self, attempt_number: int, policy: Optional[RetryPolicy] = None) -> float:
        """Unjittered delay after the given attempt: base * 2^(n-1), capped"""
        policy = policy or self.policy
        exponent = min(max(attempt_number - 1, 0), _MAX_EXPONENT)
        return min(policy.max_delay, policy.base_delay * (2 ** exponent))

    def delay(self, attempt_number: int, policy: Optional[RetryPolicy] = None) -> float:
        """Backoff plus jitter. Jitter only ever adds, then the cap is reapplied."""
        policy = policy or self.policy
        delay = self.backoff(attempt_number, policy)
        jitter = self.rng.uniform(0, policy.jitter_fraction * delay)
        return min(policy.max_delay, delay + jitter)

    def decide(self, attempt: Attempt, max_attempts: int, policy: Optional[RetryPolicy] = None,
               retry_start_failures: bool = True) -> RetryDecision:
        outcome = attempt.outcome
        if outcome in (AttemptOutcome.SUCCESS, AttemptOutcome.CANCELLED):
            return RetryDecision(retry=False, final_state=_TERMINAL_FOR[outcome])

        if attempt.failure == FailureKind.START_FAILURE and not retry_start_failures:
            return RetryDecision(retry=False, final_state=JobState.FAILED)

        if attempt.attempt_number < max_attempts:
            return RetryDecision(retry=True, delay=self.delay(attempt.attempt_number, policy))

        return RetryDecision(retry=False, final_state=_TERMINAL_FOR[outcome])
