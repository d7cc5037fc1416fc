from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


class RetryPolicy(BaseModel):
    """Backoff parameters, in seconds"""

    model_config = ConfigDict(extra="forbid")

    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter_fraction: float = Field(default=0.1, ge=0, le=1)

    @model_validator(mode="after")
    def check_bounds(self):
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self


class RunConfig(BaseModel):
    concurrency_limit: int = Field(default=4, ge=1)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    default_timeout: Optional[float] = Field(default=None, ge=0)
    default_max_attempts: int = Field(default=1, ge=1)
    grace_period: float = Field(default=5.0, ge=0)
    output_limit: int = Field(default=64 * 1024, ge=0)  # bytes kept per attempt
    poll_interval: float = Field(default=0.05, gt=0)
