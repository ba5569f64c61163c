"""Loop-level value types: states, iteration results and project layout."""

from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict


class LoopState(str, Enum):
    """Lifecycle state of the loop controller."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


class IterationResult(BaseModel):
    """Outcome of a single executor invocation."""

    model_config = ConfigDict(frozen=True)

    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def combined_output(self) -> str:
        """stdout, followed by stderr on a new line when stderr has content."""
        if not self.stderr.strip():
            return self.stdout
        return f"{self.stdout}\n{self.stderr}"


class ProjectStructure(BaseModel):
    """Presence of the files a Ralph project is expected to carry."""

    target_directory: str
    has_agents_md: bool = False
    has_specs_directory: bool = False
    has_prompt_md: bool = False
    has_implementation_plan: bool = False

    @property
    def is_complete(self) -> bool:
        return (
            self.has_agents_md
            and self.has_specs_directory
            and self.has_prompt_md
            and self.has_implementation_plan
        )

    @property
    def missing_items(self) -> List[str]:
        missing = []
        if not self.has_agents_md:
            missing.append("agents.md")
        if not self.has_specs_directory:
            missing.append("specs/")
        if not self.has_prompt_md:
            missing.append("prompt.md")
        if not self.has_implementation_plan:
            missing.append("implementation_plan.md")
        return missing
