"""Results produced by the response analyzer and the final-verification parser."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AgentStatus(str, Enum):
    """Values of the STATUS field in a RALPH_STATUS block."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    BLOCKED = "BLOCKED"


class RalphStatus(BaseModel):
    """Fields parsed from a ---RALPH_STATUS--- block. Any subset may be present."""

    status: Optional[str] = None
    exit_signal: Optional[bool] = None
    tasks_completed: Optional[int] = None
    files_modified: Optional[int] = None
    tests_passed: Optional[bool] = None
    next_step: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.status == AgentStatus.COMPLETE.value


class ProviderRateLimitInfo(BaseModel):
    """A provider-side rate limit spotted in agent output."""

    model_config = ConfigDict(frozen=True)

    reset_at: Optional[datetime] = None
    message: Optional[str] = None


class AnalysisResult(BaseModel):
    """Classification of one iteration's output."""

    timestamp: datetime
    success: bool
    output_length: int = 0
    has_completion_signal: bool = False
    is_test_only_loop: bool = False
    confidence_score: int = 0
    should_exit: bool = False
    exit_reason: Optional[str] = None
    ralph_status: Optional[RalphStatus] = None
    rate_limit: Optional[ProviderRateLimitInfo] = None

    @property
    def is_rate_limited(self) -> bool:
        return self.rate_limit is not None


class VerificationResult(BaseModel):
    """Outcome of parsing a ---VERIFICATION_RESULT--- block."""

    all_tasks_complete: bool = False
    completed_tasks: List[str] = Field(default_factory=list)
    incomplete_tasks: List[str] = Field(default_factory=list)
    summary: Optional[str] = None
