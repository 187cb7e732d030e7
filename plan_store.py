"""
Plan Store for Plan Autopilot.

WHAT THIS FILE DOES:
-------------------
Holds the current plan and is the single source of truth for step status.
The execution controller asks it for the next pending step and tells it when
a step starts, completes or fails. UI code may also write to it (skipping a
step by hand, resetting a failed step back to pending).

PLAN STATUS ROLL-UP:
-------------------
    start_step()              -> plan "executing"
    every step complete/skip  -> plan "completed"
    any step failed           -> plan "failed"

PLAN SOURCES:
------------
Plans arrive either as Plan objects, as an LLM response containing a fenced
```json block or a Markdown checklist, or as a file on disk (see
parse_plan_from_response() and load_plan_file()).
"""

import json
import logging
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from schemas import (
    Plan,
    PlanStatus,
    PlanStep,
    PlanSubstep,
    StepStatus,
)

logger = logging.getLogger("autopilot.plan_store")


def generate_id() -> str:
    """Short random identifier for plans and steps."""
    return str(uuid.uuid4())[:8]


class PlanParseError(ValueError):
    """Raised when a plan file holds nothing that looks like a plan."""


# =============================================================================
# PLAN STORE
# =============================================================================

class PlanStore:
    """
    In-memory holder of one plan at a time.

    Example usage:
        store = PlanStore()
        store.create_plan("Ship v2", "Release work", [{"title": "Build"}, {"title": "Tag"}])
        store.approve_plan()
        step = store.next_pending_step()
    """

    def __init__(self, plan: Optional[Plan] = None):
        self._plan: Optional[Plan] = None
        self._approved = False
        if plan is not None:
            self.set_plan(plan)

    # -------------------------------------------------------------------------
    # Plan lifecycle
    # -------------------------------------------------------------------------

    @property
    def current_plan(self) -> Optional[Plan]:
        return self._plan

    @property
    def is_plan_approved(self) -> bool:
        return self._plan is not None and self._approved

    def create_plan(self, title: str, summary: str, steps: list[dict]) -> Plan:
        """
        Create a draft plan from loose step dicts.

        Every step gets a fresh id, its 1-based order and pending status.
        """
        plan = Plan(
            id=generate_id(),
            title=title,
            summary=summary,
            steps=[
                PlanStep(
                    **{**step, "id": generate_id(), "order": index + 1, "status": StepStatus.PENDING}
                )
                for index, step in enumerate(steps)
            ],
            status=PlanStatus.DRAFT,
        )
        self._plan = plan
        self._approved = False
        return plan

    def set_plan(self, plan: Plan) -> None:
        """Install an existing plan; approval follows the plan's own status."""
        self._plan = plan
        self._approved = plan.status in (PlanStatus.APPROVED, PlanStatus.EXECUTING)

    def approve_plan(self) -> None:
        if not self._plan:
            return
        self._plan.status = PlanStatus.APPROVED
        self._plan.approved_at = datetime.now()
        self._approved = True

    def reject_plan(self) -> None:
        if not self._plan:
            return
        self._plan.status = PlanStatus.CANCELLED
        self._approved = False

    def clear_plan(self) -> None:
        self._plan = None
        self._approved = False

    # -------------------------------------------------------------------------
    # Step mutators
    # -------------------------------------------------------------------------

    def _step_at(self, index: int) -> Optional[PlanStep]:
        if not self._plan or index < 0 or index >= len(self._plan.steps):
            return None
        return self._plan.steps[index]

    def update_step_status(
        self,
        step_id: str,
        status: StepStatus,
        error: Optional[str] = None
    ) -> None:
        """Set a step's status by id and roll the change up to the plan."""
        if not self._plan:
            return

        for step in self._plan.steps:
            if step.id != step_id:
                continue
            step.status = status
            step.error = error
            if status == StepStatus.IN_PROGRESS:
                step.started_at = datetime.now()
            if status in (StepStatus.COMPLETE, StepStatus.FAILED):
                step.completed_at = datetime.now()

        self._roll_up_status()

    def _roll_up_status(self) -> None:
        steps = self._plan.steps
        all_done = bool(steps) and all(
            s.status in (StepStatus.COMPLETE, StepStatus.SKIPPED) for s in steps
        )
        any_failed = any(s.status == StepStatus.FAILED for s in steps)

        if all_done:
            self._plan.status = PlanStatus.COMPLETED
            self._plan.completed_at = datetime.now()
        elif any_failed:
            self._plan.status = PlanStatus.FAILED

    def start_step(self, index: int) -> None:
        step = self._step_at(index)
        if step is None:
            return
        self.update_step_status(step.id, StepStatus.IN_PROGRESS)
        self._plan.status = PlanStatus.EXECUTING
        self._plan.current_step_index = index

    def complete_step(self, index: int, tokens_used: Optional[int] = None) -> None:
        step = self._step_at(index)
        if step is None:
            return
        step.actual_tokens = tokens_used
        self._plan.total_actual_tokens += tokens_used or 0
        self.update_step_status(step.id, StepStatus.COMPLETE)
        if self._plan.status != PlanStatus.COMPLETED:
            self._plan.status = PlanStatus.EXECUTING

    def fail_step(self, index: int, error: str) -> None:
        step = self._step_at(index)
        if step is None:
            return
        self.update_step_status(step.id, StepStatus.FAILED, error)

    def skip_step(self, index: int) -> None:
        step = self._step_at(index)
        if step is None:
            return
        self.update_step_status(step.id, StepStatus.SKIPPED)

    def reset_step(self, index: int) -> None:
        """Put a failed or skipped step back in the queue."""
        step = self._step_at(index)
        if step is None:
            return
        step.actual_tokens = None
        step.started_at = None
        step.completed_at = None
        self.update_step_status(step.id, StepStatus.PENDING)
        if self._plan.status in (PlanStatus.FAILED, PlanStatus.COMPLETED):
            self._plan.status = PlanStatus.EXECUTING if self._approved else PlanStatus.DRAFT
            self._plan.completed_at = None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def next_pending_step(self) -> Optional[PlanStep]:
        """Lowest-indexed step still pending, if any."""
        if not self._plan:
            return None
        for step in self._plan.steps:
            if step.status == StepStatus.PENDING:
                return step
        return None

    def current_step(self) -> Optional[PlanStep]:
        if not self._plan:
            return None
        for step in self._plan.steps:
            if step.status == StepStatus.IN_PROGRESS:
                return step
        return None

    def index_of(self, step_id: str) -> int:
        """List position of a step, or -1."""
        if not self._plan:
            return -1
        for index, step in enumerate(self._plan.steps):
            if step.id == step_id:
                return index
        return -1

    def get_step(self, index: int) -> Optional[PlanStep]:
        return self._step_at(index)

    def progress(self) -> int:
        """Percent of steps that are complete or skipped."""
        if not self._plan or not self._plan.steps:
            return 0
        done = sum(
            1 for s in self._plan.steps
            if s.status in (StepStatus.COMPLETE, StepStatus.SKIPPED)
        )
        return round(done / len(self._plan.steps) * 100)


# =============================================================================
# PLAN PARSING
# =============================================================================

_JSON_BLOCK = re.compile(r"```json\s*([\s\S]*?)\s*```")
_NUMBERED_STEP = re.compile(r"^(\d+)\.\s+\*?\*?(.+?)\*?\*?\s*$")
_CHECKBOX_STEP = re.compile(r"^-\s+\[[ xX]\]\s+(.+)$")


def _step_from_data(data: Any, index: int) -> dict:
    """Normalise one loosely-shaped step from JSON/YAML into PlanStep fields."""
    if isinstance(data, str):
        return {"title": data, "description": ""}
    if not isinstance(data, dict):
        raise PlanParseError(f"Step {index + 1} is not a mapping or string: {data!r}")

    estimated = data.get("estimatedTokens", data.get("estimated_tokens"))
    raw_substeps = data.get("substeps") or []
    if not isinstance(raw_substeps, list):
        raise PlanParseError(f"Step {index + 1} substeps must be a list")

    substeps = []
    for sub in raw_substeps:
        if isinstance(sub, dict) and sub.get("title"):
            title = str(sub["title"])
        elif isinstance(sub, str):
            title = sub
        else:
            raise PlanParseError(f"Step {index + 1} has an unreadable substep: {sub!r}")
        substeps.append(PlanSubstep(id=generate_id(), title=title))

    return {
        "title": data.get("title") or data.get("name") or f"Step {index + 1}",
        "description": data.get("description") or data.get("details") or "",
        "estimated_tokens": estimated,
        "substeps": substeps,
    }


def plan_from_data(data: dict, store: Optional[PlanStore] = None) -> Optional[Plan]:
    """Build a draft plan from a dict with `title` and a `steps` list."""
    if not isinstance(data, dict):
        return None
    if not data.get("title") or not isinstance(data.get("steps"), list):
        return None

    store = store or PlanStore()
    steps = [_step_from_data(step, i) for i, step in enumerate(data["steps"])]
    return store.create_plan(data["title"], data.get("summary") or "", steps)


def _parse_markdown_plan(text: str, store: PlanStore) -> Optional[Plan]:
    title = ""
    summary = ""
    steps: list[dict] = []
    current: Optional[dict] = None

    for line in text.split("\n"):
        trimmed = line.strip()

        if trimmed.startswith("# ") and not title:
            title = trimmed[2:].strip()
            continue

        step_match = _NUMBERED_STEP.match(trimmed) or _CHECKBOX_STEP.match(trimmed)
        if step_match:
            if current:
                steps.append(current)
            current = {
                "title": step_match.groups()[-1].replace("**", "").strip(),
                "description": "",
            }
            continue

        if current is not None:
            if trimmed and not trimmed.startswith("#") and not trimmed.startswith("-"):
                sep = " " if current["description"] else ""
                current["description"] += sep + trimmed
        elif trimmed and not trimmed.startswith("#"):
            summary += (" " if summary else "") + trimmed

    if current:
        steps.append(current)

    if not steps:
        return None
    return store.create_plan(title or "Execution Plan", summary, steps)


def parse_plan_from_response(text: str, store: Optional[PlanStore] = None) -> Optional[Plan]:
    """
    Extract a plan from an LLM response.

    Tries a fenced ```json block first, then falls back to a Markdown plan:
    `# Title`, numbered (`1. **Step**`) or checkbox (`- [ ] Step`) lines,
    and plain lines after a step as its description.

    Returns:
        The new draft plan (also installed in `store` when given), or None
    """
    store = store or PlanStore()

    match = _JSON_BLOCK.search(text)
    if match:
        try:
            plan = plan_from_data(json.loads(match.group(1)), store)
        except (json.JSONDecodeError, ValidationError, PlanParseError) as e:
            logger.warning(f"Ignoring malformed JSON plan block: {e}")
            plan = None
        if plan:
            return plan

    return _parse_markdown_plan(text, store)


def load_plan_file(path: Path, store: Optional[PlanStore] = None) -> Plan:
    """
    Load a plan from a .json, .yaml/.yml or Markdown file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        PlanParseError: If no plan could be read from it
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Plan file not found: {path}")

    text = path.read_text()
    store = store or PlanStore()

    try:
        if path.suffix == ".json":
            plan = plan_from_data(json.loads(text), store)
        elif path.suffix in (".yaml", ".yml"):
            plan = plan_from_data(yaml.safe_load(text) or {}, store)
        else:
            plan = parse_plan_from_response(text, store)
    except (json.JSONDecodeError, yaml.YAMLError, ValidationError) as e:
        raise PlanParseError(f"Could not parse plan file {path}: {e}") from e

    if plan is None:
        raise PlanParseError(f"No plan found in {path}")
    return plan
