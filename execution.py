"""
Execution Controller for Plan Autopilot.

WHAT THIS FILE DOES:
-------------------
Drives an approved plan step by step without asking for approval at every
step, while enforcing safety budgets:

- max_steps          - hard ceiling on steps per run
- max_total_tokens   - cumulative token budget
- error_threshold    - consecutive failures that end the run
- step_timeout       - wall-clock limit per step
- confirmation gate  - pause before dangerous or expensive steps

HOW IT WORKS:
------------
    start()
       │
       ▼
    ┌─ control loop ──────────────────────────────────────────┐
    │  paused / stopped / no plan?      -> exit               │
    │  steps_executed >= max_steps      -> pause (run ends)   │
    │  tokens >= max_total_tokens       -> pause (run ends)   │
    │  no pending step                  -> pause (run ends)   │
    │  confirmation required & refused  -> pause (resumable)  │
    │  run step, racing step_timeout                          │
    │     success -> count tokens, reset error streak         │
    │     failure -> error streak += 1, maybe pause (ends)    │
    └──────────────── next iteration ─────────────────────────┘

STATES:
------
    Idle     is_auto_executing=False
    Running  is_auto_executing=True,  is_paused=False
    Paused   is_auto_executing=True,  is_paused=True
    Ended    is_auto_executing=False, is_paused=True (plan_complete, budgets,
             error_threshold); resume() re-activates it

CONCURRENCY:
-----------
Everything runs on one asyncio event loop. There is at most one control loop
and at most one step in flight; both are tracked by flags on the controller.
pause()/stop() issued while a step runs take effect once that step resolves.
A step that loses the race against step_timeout is cancelled and its outcome
is discarded.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from danger import requires_confirmation
from plan_store import PlanStore
from schemas import (
    AutoExecutionConfig,
    AutoExecutionState,
    ExecutionHistoryEntry,
    ExecutionStats,
    HistoryStatus,
    PauseReason,
    PlanStep,
    RUN_ENDING_REASONS,
    StepExecutionResult,
    StepStatus,
)

logger = logging.getLogger("autopilot.execution")


StepExecutor = Callable[[PlanStep, int], Awaitable[Union[StepExecutionResult, dict]]]
ConfirmationPrompter = Callable[[PlanStep, str], Awaitable[bool]]
ProgressObserver = Callable[[AutoExecutionState, Optional[PlanStep]], None]

STEP_TIMEOUT_ERROR = "Step execution timeout"
UNKNOWN_ERROR = "Unknown error"

PAUSE_REASON_MESSAGES = {
    PauseReason.USER_REQUESTED: "Execution paused by user",
    PauseReason.TOKEN_BUDGET_REACHED: "Token budget limit reached",
    PauseReason.MAX_STEPS_REACHED: "Maximum steps limit reached",
    PauseReason.ERROR_THRESHOLD: "Too many consecutive errors",
    PauseReason.STEP_TIMEOUT: "Step execution timed out",
    PauseReason.DANGEROUS_ACTION: "Dangerous action detected - confirmation needed",
    PauseReason.PLAN_COMPLETE: "Plan execution completed",
}


def pause_reason_message(reason: Optional[PauseReason]) -> str:
    """User-facing text for a pause reason ("" when there is none)."""
    if reason is None:
        return ""
    try:
        return PAUSE_REASON_MESSAGES[PauseReason(reason)]
    except ValueError:
        return "Unknown pause reason"


def _discard_outcome(task: asyncio.Task) -> None:
    """Done-callback for a step that lost the timeout race."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Timed-out step finished late with error: {exc}")


# =============================================================================
# EXECUTION CONTROLLER
# =============================================================================

class ExecutionController:
    """
    Runs one plan at a time, one step at a time.

    Example usage:
        async def run_step(step, index):
            ...
            return StepExecutionResult(success=True, tokens_used=812)

        controller = ExecutionController(store, run_step, progress_observer=print)
        await controller.start()
        print(controller.state.pause_reason)   # PauseReason.PLAN_COMPLETE

    State, config and history are owned by the controller. The properties
    hand out copies; change them only through the control methods.
    """

    def __init__(
        self,
        plan_store: PlanStore,
        step_executor: StepExecutor,
        confirmation_prompter: Optional[ConfirmationPrompter] = None,
        progress_observer: Optional[ProgressObserver] = None,
        config: Optional[AutoExecutionConfig] = None,
    ):
        """
        Args:
            plan_store: Source of truth for the plan and step statuses
            step_executor: Async callable doing a step's work
            confirmation_prompter: Async callable asked before gated steps.
                                   If None, gated steps pause the run.
            progress_observer: Sync callable told about every transition
            config: Safety budgets (defaults if not provided)
        """
        self.plan_store = plan_store
        self._execute = step_executor
        self._confirm = confirmation_prompter
        self._observer = progress_observer
        self._config = config or AutoExecutionConfig()

        self._state = AutoExecutionState()
        self._history: list[ExecutionHistoryEntry] = []

        # Single-flight bookkeeping
        self._loop_running = False
        self._step_in_flight = False
        # Bumped by start() and reset(); late results from an older run only
        # update the plan store
        self._generation = 0

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def state(self) -> AutoExecutionState:
        return self._state.model_copy()

    @property
    def config(self) -> AutoExecutionConfig:
        return self._config.model_copy(deep=True)

    @property
    def history(self) -> list[ExecutionHistoryEntry]:
        return [entry.model_copy() for entry in self._history]

    @property
    def step_in_flight(self) -> bool:
        return self._step_in_flight

    @property
    def can_start(self) -> bool:
        """True when an approved plan is loaded and no run is active."""
        return (
            self.plan_store.current_plan is not None
            and self.plan_store.is_plan_approved
            and not self._state.is_auto_executing
        )

    # -------------------------------------------------------------------------
    # Control methods
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Begin a new run over the current plan.

        Logs and returns without doing anything if a run is already active or
        the plan is missing or not approved.
        """
        if self._state.is_auto_executing:
            logger.warning("Auto-execution already in progress")
            return

        plan = self.plan_store.current_plan
        if plan is None:
            logger.error("No plan available for auto-execution")
            return

        if not self.plan_store.is_plan_approved:
            logger.error("Plan must be approved before auto-execution")
            return

        logger.info(f"Starting auto-execution of plan {plan.id} ({plan.total_steps} steps)")

        self._generation += 1
        self._state = AutoExecutionState(is_auto_executing=True)
        self._history = []
        self._notify()

        await self._drive()

    def pause(self, reason: PauseReason = PauseReason.USER_REQUESTED) -> None:
        """
        Suspend the run.

        Run-ending reasons (plan_complete, max_steps_reached,
        token_budget_reached) also clear is_auto_executing. A step already in
        flight finishes first.
        """
        reason = PauseReason(reason)
        self._pause(reason, end_run=reason in RUN_ENDING_REASONS)

    async def resume(self) -> None:
        """Continue a paused run, re-activating it if it had ended."""
        if not self._state.is_paused:
            logger.warning("Execution not paused")
            return

        logger.info("Resuming auto-execution")

        self._state.is_paused = False
        self._state.pause_reason = None
        if not self._state.is_auto_executing:
            self._state.is_auto_executing = True
        self._notify()

        await self._drive()

    def stop(self) -> None:
        """
        End the run, keeping steps_executed and total_tokens_used for reporting.

        Does not abort a step in flight; it only prevents the next one.
        """
        logger.info("Stopping auto-execution")

        self._state = AutoExecutionState(
            total_tokens_used=self._state.total_tokens_used,
            steps_executed=self._state.steps_executed,
        )
        self._notify()

    def reset(self) -> None:
        """Zero every counter and clear history (e.g. before a new plan)."""
        self._generation += 1
        self._state = AutoExecutionState()
        self._history = []
        self._notify()

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def update_config(self, **changes: Any) -> None:
        """
        Replace config fields; effective at the next loop evaluation.

        Raises:
            pydantic.ValidationError: If a value is out of range
        """
        unknown = set(changes) - set(AutoExecutionConfig.model_fields)
        for name in sorted(unknown):
            logger.warning(f"Ignoring unknown config field: {name}")
            changes.pop(name)

        self._config = AutoExecutionConfig.model_validate(
            {**self._config.model_dump(), **changes}
        )

    def set_max_steps(self, max_steps: int) -> None:
        self.update_config(max_steps=max_steps)

    def set_token_budget(self, budget: int) -> None:
        self.update_config(max_total_tokens=budget)

    def set_auto_approve(self, enabled: bool) -> None:
        """Auto-approve means: don't pause on dangerous actions."""
        self.update_config(pause_on_dangerous_actions=not enabled)

    # -------------------------------------------------------------------------
    # Control loop
    # -------------------------------------------------------------------------

    async def _drive(self) -> None:
        """Advance until the loop decides to stop; only one loop at a time."""
        if self._loop_running:
            # The active loop picks the new state up after its current step
            return

        self._loop_running = True
        try:
            while await self._execute_next_step():
                pass
        finally:
            self._loop_running = False

    def _should_advance(self) -> bool:
        return (
            self._state.is_auto_executing
            and not self._state.is_paused
            and self.plan_store.current_plan is not None
        )

    async def _execute_next_step(self) -> bool:
        """
        One loop iteration.

        Returns:
            True if the loop should evaluate again, False to exit
        """
        if not self._should_advance():
            return False

        state = self._state
        config = self._config

        if state.steps_executed >= config.max_steps:
            self._pause(PauseReason.MAX_STEPS_REACHED, end_run=True)
            logger.info(f"Max steps reached ({state.steps_executed}/{config.max_steps})")
            return False

        if state.total_tokens_used >= config.max_total_tokens:
            self._pause(PauseReason.TOKEN_BUDGET_REACHED, end_run=True)
            logger.info(
                f"Token budget reached ({state.total_tokens_used}/{config.max_total_tokens})"
            )
            return False

        step = self.plan_store.next_pending_step()
        if step is None:
            self._pause(PauseReason.PLAN_COMPLETE, end_run=True)
            logger.info("Plan execution complete")
            return False

        index = self.plan_store.index_of(step.id)

        decision = requires_confirmation(step, config)
        if decision.required:
            confirmed = await self._ask_confirmation(step, decision.message)
            if not confirmed:
                self._record_gate_pause(step, index, decision.message)
                self._pause(PauseReason.DANGEROUS_ACTION, end_run=False)
                logger.info(f"Step '{step.title}' requires confirmation: {decision.message}")
                return False

            # The prompt was a suspension point; the world may have moved
            if not self._should_advance():
                return False

        if step.status != StepStatus.PENDING:
            logger.info(f"Step '{step.title}' is no longer pending ({step.status.value}), skipping")
            self._history.append(ExecutionHistoryEntry(
                step_id=step.id,
                step_index=index,
                title=step.title,
                end_time=datetime.now(),
                status=HistoryStatus.SKIPPED,
            ))
            return True

        await self._execute_step(step, index)
        return True

    async def _ask_confirmation(self, step: PlanStep, reasons: str) -> bool:
        if self._confirm is None:
            logger.warning(f"No confirmation prompter configured; pausing before '{step.title}'")
            return False
        try:
            return bool(await self._confirm(step, reasons))
        except Exception:
            logger.exception(f"Confirmation prompter failed for '{step.title}'")
            return False

    def _record_gate_pause(self, step: PlanStep, index: int, reasons: str) -> None:
        now = datetime.now()
        self._history.append(ExecutionHistoryEntry(
            step_id=step.id,
            step_index=index,
            title=step.title,
            start_time=now,
            end_time=now,
            status=HistoryStatus.PAUSED,
            error=reasons,
        ))

    # -------------------------------------------------------------------------
    # Step execution
    # -------------------------------------------------------------------------

    async def _execute_step(self, step: PlanStep, index: int) -> None:
        if self._step_in_flight:
            logger.error(f"Refusing to start '{step.title}': another step is in flight")
            return

        self._step_in_flight = True
        generation = self._generation
        try:
            logger.info(f"Executing step {index}: {step.title}")

            start_time = datetime.now()
            self._state.current_step_start_time = start_time
            self.plan_store.start_step(index)

            entry = ExecutionHistoryEntry(
                step_id=step.id,
                step_index=index,
                title=step.title,
                start_time=start_time,
            )
            self._history.append(entry)
            self._notify(step)

            try:
                result = await self._run_with_timeout(step, index)
            except Exception as e:
                self._handle_exception(step, index, entry, generation, e)
                return

            self._handle_result(step, index, entry, generation, result)
        finally:
            self._step_in_flight = False

    async def _call_executor(self, step: PlanStep, index: int) -> StepExecutionResult:
        result = await self._execute(step, index)
        if isinstance(result, StepExecutionResult):
            return result
        return StepExecutionResult.model_validate(result)

    async def _run_with_timeout(self, step: PlanStep, index: int) -> StepExecutionResult:
        """
        Race the executor against step_timeout.

        The loser is cancelled and never awaited again; cancellation is
        cooperative, so an executor that ignores it simply runs to completion
        in the background with its outcome dropped.
        """
        task = asyncio.ensure_future(self._call_executor(step, index))
        try:
            done, _ = await asyncio.wait({task}, timeout=self._config.step_timeout_seconds)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            return task.result()

        task.cancel()
        task.add_done_callback(_discard_outcome)
        logger.warning(
            f"Step '{step.title}' timed out after {self._config.step_timeout} ms"
        )
        return StepExecutionResult(success=False, tokens_used=0, error=STEP_TIMEOUT_ERROR)

    def _close_entry(
        self,
        entry: ExecutionHistoryEntry,
        status: HistoryStatus,
        tokens_used: int,
        error: Optional[str],
    ) -> None:
        # Replace by position; reset() may have emptied the list meanwhile
        for position, existing in enumerate(self._history):
            if existing is entry:
                self._history[position] = entry.model_copy(update={
                    "end_time": datetime.now(),
                    "tokens_used": tokens_used,
                    "status": status,
                    "error": error,
                })
                return

    def _handle_result(
        self,
        step: PlanStep,
        index: int,
        entry: ExecutionHistoryEntry,
        generation: int,
        result: StepExecutionResult,
    ) -> None:
        current_run = generation == self._generation

        if result.success:
            self.plan_store.complete_step(index, result.tokens_used)
            if not current_run:
                return

            self._close_entry(entry, HistoryStatus.SUCCESS, result.tokens_used, result.error)
            self._state.current_step_start_time = None
            self._state.steps_executed += 1
            self._state.total_tokens_used += result.tokens_used
            self._state.consecutive_errors = 0
            self._state.last_error = None

            logger.info(f"Step completed successfully: {step.title} ({result.tokens_used} tokens)")
            self._notify()
            return

        error = result.error or UNKNOWN_ERROR
        self.plan_store.fail_step(index, error)
        if not current_run:
            return

        self._close_entry(entry, HistoryStatus.ERROR, result.tokens_used, error)
        self._state.current_step_start_time = None
        self._state.consecutive_errors += 1
        self._state.last_error = error

        logger.error(f"Step failed: {step.title}: {error}")

        if (self._state.is_auto_executing
                and self._state.consecutive_errors >= self._config.error_threshold):
            self._pause(PauseReason.ERROR_THRESHOLD, end_run=True)
            logger.warning(f"Error threshold reached ({self._state.consecutive_errors} consecutive)")
        else:
            self._notify()

    def _handle_exception(
        self,
        step: PlanStep,
        index: int,
        entry: ExecutionHistoryEntry,
        generation: int,
        exc: Exception,
    ) -> None:
        """An executor that raises is treated as maximally severe."""
        logger.exception(f"Step execution threw exception: {step.title}")

        error = str(exc) or type(exc).__name__
        self.plan_store.fail_step(index, error)
        if generation != self._generation:
            return

        self._close_entry(entry, HistoryStatus.ERROR, 0, error)
        self._state.current_step_start_time = None
        self._state.consecutive_errors += 1
        self._state.last_error = error
        # A stopped run stays stopped
        if self._state.is_auto_executing:
            self._pause(PauseReason.ERROR_THRESHOLD, end_run=True)
        else:
            self._notify()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _pause(self, reason: PauseReason, end_run: bool) -> None:
        logger.info(f"Pausing auto-execution: {reason.value}")

        self._state.is_paused = True
        self._state.pause_reason = reason
        if end_run:
            self._state.is_auto_executing = False
        self._notify()

    def _notify(self, step: Optional[PlanStep] = None) -> None:
        if self._observer is None:
            return
        try:
            self._observer(self.state, step)
        except Exception:
            logger.exception("Progress observer raised")

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_stats(self) -> ExecutionStats:
        """Success rate, timing and budget numbers for the current run."""
        state = self._state
        config = self._config
        plan = self.plan_store.current_plan
        now = datetime.now()

        successful = sum(1 for e in self._history if e.status == HistoryStatus.SUCCESS)
        failed = sum(1 for e in self._history if e.status == HistoryStatus.ERROR)
        attempted = successful + failed
        total_time = sum(e.duration_seconds(now) for e in self._history)

        total_steps = plan.total_steps if plan else 0

        return ExecutionStats(
            steps_executed=state.steps_executed,
            steps_remaining=max(total_steps - state.steps_executed, 0),
            success_rate=successful / attempted if attempted else 0.0,
            failed_steps=failed,
            total_tokens_used=state.total_tokens_used,
            token_budget_remaining=config.max_total_tokens - state.total_tokens_used,
            token_budget_percent=self._percent(state.total_tokens_used, config.max_total_tokens),
            avg_time_per_step=total_time / successful if successful else 0.0,
            consecutive_errors=state.consecutive_errors,
            last_error=state.last_error,
            is_running=state.is_running,
            is_paused=state.is_paused,
            pause_reason=state.pause_reason,
        )

    @staticmethod
    def _percent(part: int, whole: int) -> float:
        if whole == 0:
            return 0.0
        return part / whole * 100

    def progress_percent(self) -> int:
        """Steps executed this run as a share of the plan."""
        plan = self.plan_store.current_plan
        if not plan or not plan.steps:
            return 0
        return round(self._state.steps_executed / plan.total_steps * 100)

    def token_usage_percent(self) -> int:
        return round(self._percent(self._state.total_tokens_used, self._config.max_total_tokens))
