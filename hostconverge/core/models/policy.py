"""
Execution policy — how the executor reacts to failures and time.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class OnFailure(StrEnum):
    HALT_REMAINING = "halt_remaining"
    CONTINUE_INDEPENDENT_BRANCHES = "continue_independent_branches"


class ExecutionPolicy(BaseModel):
    """The ``policy`` block of the desired-state document."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    on_failure: OnFailure = OnFailure.HALT_REMAINING
    max_retries: int = Field(default=2, ge=0)
    retry_base_delay: float = Field(default=2.0, ge=0)
    retry_max_delay: float = Field(default=60.0, ge=0)
    action_timeout: float | None = Field(default=900.0, gt=0)   # seconds per action
    run_timeout: float | None = Field(default=None, gt=0)       # seconds for the whole run
    probe_timeout: float = Field(default=15.0, gt=0)            # seconds per fact query
    parallelism: int = Field(default=1, ge=1)

    @property
    def continues_on_failure(self) -> bool:
        return self.on_failure == OnFailure.CONTINUE_INDEPENDENT_BRANCHES
