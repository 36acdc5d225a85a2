from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

INVOCATION_ERROR = "invocation error"
NOT_INSTALLED = "not installed"
CANCELLED = "cancelled"


class StepStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunMode(Enum):
    FAIL_FAST = "fail_fast"
    CONTINUE_ON_FAILURE = "continue_on_failure"


@dataclass(frozen=True)
class Command:
    program: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    env: tuple[tuple[str, str], ...] = ()

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def display(self) -> str:
        return " ".join(self.argv)


@dataclass(frozen=True)
class Step:
    name: str
    command: Command
    required: bool = True
    mutates: bool = False
    concurrent: bool = False
    if_available: bool = False


@dataclass(frozen=True)
class StepResult:
    step_name: str
    status: StepStatus
    duration: float = 0.0
    output: tuple[str, ...] = ()
    error_summary: str | None = None
    exit_code: int | None = None
    required: bool = True

    @property
    def is_invocation_error(self) -> bool:
        return self.status == StepStatus.FAILED and self.error_summary == INVOCATION_ERROR


@dataclass
class PipelineRun:
    """Results of one pipeline execution, in step declaration order."""

    mode: RunMode
    started_at: datetime
    finished_at: datetime | None = None
    results: list[StepResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def overall_status(self) -> StepStatus:
        if self.cancelled:
            return StepStatus.FAILED
        for result in self.results:
            if result.required and result.status == StepStatus.FAILED:
                return StepStatus.FAILED
        return StepStatus.SUCCEEDED

    @property
    def succeeded(self) -> bool:
        return self.overall_status == StepStatus.SUCCEEDED

    def result_for(self, name: str) -> StepResult | None:
        for result in self.results:
            if result.step_name == name:
                return result
        return None
