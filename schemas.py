"""
Pydantic schemas for Plan Autopilot.

WHY THIS FILE EXISTS:
--------------------
The autopilot passes the same handful of structures between the plan store,
the danger classifier, the execution controller and the terminal UI:

    PlanStep / Plan            - what is being executed
    AutoExecutionConfig        - the safety budgets for a run
    AutoExecutionState         - where the run currently is
    ExecutionHistoryEntry      - one record per step attempt
    ExecutionStats             - numbers derived from state + history

Keeping them as Pydantic models gives us validation of the config limits
(max_steps >= 1 and friends), cheap snapshots via model_copy(), and
JSON-friendly dumps for the HTTP executor and plan files.

STATUS VALUES:
-------------
Step statuses use the hyphenated spelling ("in-progress") that plan files
and worker endpoints exchange, so they can be dumped and re-read unchanged.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


# =============================================================================
# PLAN SCHEMAS
# =============================================================================
# The Plan Store owns these. The controller reads them and asks the store to
# change step statuses; it never edits a step directly.

class StepStatus(str, Enum):
    """Status of a single plan step."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"


class PlanStatus(str, Enum):
    """Lifecycle status of a whole plan."""
    DRAFT = "draft"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PlanSubstep(BaseModel):
    """A display-only checklist item under a step."""
    id: str = Field(description="Unique identifier of the substep")
    title: str = Field(description="What the substep covers")
    status: StepStatus = Field(default=StepStatus.PENDING)


class PlanStep(BaseModel):
    """
    A single unit of work within a plan.

    Example:
        PlanStep(
            id="a1b2c3d4",
            order=2,
            title="Publish the package",
            description="Run npm publish from the dist directory",
            estimated_tokens=1200,
        )

    Only `description` is inspected by the danger classifier.
    """
    id: str = Field(description="Opaque unique identifier")
    order: int = Field(default=1, ge=1, description="1-based position in the plan")
    title: str = Field(description="Brief title for this step")
    description: str = Field(default="", description="What this step does")
    status: StepStatus = Field(default=StepStatus.PENDING)
    estimated_tokens: Optional[int] = Field(
        default=None,
        ge=0,
        description="Token estimate, also used as a confirmation signal"
    )
    actual_tokens: Optional[int] = Field(
        default=None,
        ge=0,
        description="Tokens actually consumed, set on completion"
    )
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = Field(default=None, description="Failure message if the step failed")
    substeps: list[PlanSubstep] = Field(default_factory=list)


class Plan(BaseModel):
    """
    An ordered collection of steps.

    Steps are executed in list order; `current_step_index` is -1 until the
    first step starts.
    """
    id: str = Field(description="Unique plan identifier")
    title: str = Field(description="Plan title")
    summary: str = Field(default="", description="High-level summary")
    steps: list[PlanStep] = Field(default_factory=list)
    status: PlanStatus = Field(default=PlanStatus.DRAFT)
    created_at: datetime = Field(default_factory=datetime.now)
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_step_index: int = Field(default=-1)
    total_actual_tokens: int = Field(default=0, ge=0)

    @property
    def total_steps(self) -> int:
        """Convenience property for step count."""
        return len(self.steps)

    @property
    def total_estimated_tokens(self) -> int:
        """Sum of all known step estimates."""
        return sum(step.estimated_tokens or 0 for step in self.steps)


# =============================================================================
# SAFETY SCHEMAS
# =============================================================================

class DangerCategory(str, Enum):
    """Kinds of destructive or irreversible actions a step may perform."""
    FILE_DELETE = "file_delete"
    GIT_PUSH = "git_push"
    PACKAGE_PUBLISH = "package_publish"
    ENV_CHANGE = "env_change"
    EXTERNAL_API = "external_api"
    DATABASE_WRITE = "database_write"


class PauseReason(str, Enum):
    """
    Why a run stopped advancing.

    STEP_TIMEOUT is reserved: timeouts currently go through the ordinary
    failure path and surface as ERROR_THRESHOLD once enough of them pile up.
    """
    USER_REQUESTED = "user_requested"
    TOKEN_BUDGET_REACHED = "token_budget_reached"
    MAX_STEPS_REACHED = "max_steps_reached"
    ERROR_THRESHOLD = "error_threshold"
    STEP_TIMEOUT = "step_timeout"
    DANGEROUS_ACTION = "dangerous_action"
    PLAN_COMPLETE = "plan_complete"


# Reasons that end the run instead of merely suspending it
RUN_ENDING_REASONS = frozenset({
    PauseReason.PLAN_COMPLETE,
    PauseReason.MAX_STEPS_REACHED,
    PauseReason.TOKEN_BUDGET_REACHED,
})


class ConfirmationDecision(BaseModel):
    """Output of the confirmation gate."""
    required: bool = Field(default=False)
    reasons: list[str] = Field(default_factory=list)

    @property
    def message(self) -> str:
        """Reasons in the form handed to the confirmation prompter."""
        return "; ".join(self.reasons)


# =============================================================================
# EXECUTION SCHEMAS
# =============================================================================

class AutoExecutionConfig(BaseModel):
    """
    Safety budgets for autonomous execution.

    Changes take effect at the next control-loop evaluation, never
    retroactively.
    """
    max_steps: int = Field(
        default=10,
        ge=1,
        description="Hard ceiling on steps executed in one run"
    )
    max_total_tokens: int = Field(
        default=100000,
        ge=0,
        description="Cumulative token budget for the run"
    )
    pause_on_dangerous_actions: bool = Field(
        default=True,
        description="Master switch for the danger part of the confirmation gate"
    )
    error_threshold: int = Field(
        default=2,
        ge=1,
        description="Consecutive failures that end the run"
    )
    step_timeout: int = Field(
        default=120000,
        ge=1,
        description="Wall-clock limit per step, in milliseconds"
    )
    require_confirmation_for: set[DangerCategory] = Field(
        default_factory=lambda: {
            DangerCategory.FILE_DELETE,
            DangerCategory.GIT_PUSH,
            DangerCategory.PACKAGE_PUBLISH,
        },
        description="Detected categories that actually trigger confirmation"
    )

    @property
    def step_timeout_seconds(self) -> float:
        return self.step_timeout / 1000


class AutoExecutionState(BaseModel):
    """Snapshot of the controller's run state."""
    is_auto_executing: bool = False
    is_paused: bool = False
    current_step_start_time: Optional[datetime] = None
    total_tokens_used: int = Field(default=0, ge=0)
    steps_executed: int = Field(default=0, ge=0)
    consecutive_errors: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    pause_reason: Optional[PauseReason] = None

    @property
    def is_running(self) -> bool:
        return self.is_auto_executing and not self.is_paused


class StepExecutionResult(BaseModel):
    """
    What a step executor reports back.

    Executors should return success=False for expected failures rather than
    raising.
    Dicts may spell the token count as `tokensUsed` (the worker wire format).
    """
    success: bool = Field(description="Whether the step did its work")
    tokens_used: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("tokens_used", "tokensUsed"),
        description="Tokens consumed by the step"
    )
    error: Optional[str] = Field(default=None, description="Failure message")

    @field_validator("error")
    @classmethod
    def blank_error_is_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty error strings as no error."""
        if v is not None and not v.strip():
            return None
        return v


class HistoryStatus(str, Enum):
    """Status of one history entry."""
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"
    PAUSED = "paused"


class ExecutionHistoryEntry(BaseModel):
    """
    One record per step attempt in the current run.

    Entries are appended when a step starts and replaced in place once, when
    it resolves.
    """
    step_id: str
    step_index: int
    title: str
    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    tokens_used: int = Field(default=0, ge=0)
    status: HistoryStatus = Field(default=HistoryStatus.RUNNING)
    error: Optional[str] = None

    def duration_seconds(self, now: Optional[datetime] = None) -> float:
        """Elapsed time, measured up to `now` while the entry is running."""
        end = self.end_time or now or datetime.now()
        return max((end - self.start_time).total_seconds(), 0.0)


class ExecutionStats(BaseModel):
    """Derived numbers for dashboards and the CLI summary."""
    steps_executed: int = 0
    steps_remaining: int = 0
    success_rate: float = 0.0
    failed_steps: int = 0
    total_tokens_used: int = 0
    token_budget_remaining: int = 0
    token_budget_percent: float = 0.0
    avg_time_per_step: float = Field(default=0.0, description="Seconds")
    consecutive_errors: int = 0
    last_error: Optional[str] = None
    is_running: bool = False
    is_paused: bool = False
    pause_reason: Optional[PauseReason] = None
