"""
CLI and terminal UI Tests

Test list:
1. test_parser - Flags parse into the namespace
2. test_apply_overrides - Flags override the loaded config
3. test_dry_run_session - Full CLI run with the dry-run executor
4. test_bad_plan_file - Missing or unparseable plans exit with 2
5. test_progress_observer - Steps are reported, pauses alert once
6. test_notify_pause_levels - Pause reasons map to alert levels
7. test_interrupted_run - Ctrl-C during the run still reports, then exits with 130
"""

import asyncio
import json
import logging
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError
from rich.console import Console

import cli
import ui
from alerts import AlertManager
from cli import apply_overrides, async_main, create_parser
from config import get_default_config
from schemas import AutoExecutionState, PauseReason, PlanStep


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Run with an empty home and working directory, restoring logging after."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)

    root = logging.getLogger()
    saved = root.handlers[:], root.level
    yield tmp_path
    for handler in root.handlers:
        handler.close()
    root.handlers, level = saved
    root.setLevel(level)


@pytest.fixture
def plan_file(tmp_path):
    path = tmp_path / "plan.md"
    path.write_text(
        "# Release\n\n"
        "Cut a release.\n\n"
        "1. **Bump version**\n"
        "2. **Write changelog**\n"
        "3. **Build wheel**\n"
    )
    return path


# =============================================================================
# TEST 1-4: CLI
# =============================================================================

def test_parser(plan_file):
    """
    Test 1: Flags parse into the namespace.
    """
    args = create_parser().parse_args([
        str(plan_file), "--max-steps", "3", "--step-timeout", "500", "--dry-run", "-y"
    ])

    assert args.plan_file == plan_file
    assert args.max_steps == 3
    assert args.step_timeout == 500
    assert args.dry_run is True
    assert args.yes is True
    assert args.token_budget is None
    assert args.auto_approve is False


def test_apply_overrides(plan_file):
    """
    Test 2: Flags override the loaded config.
    """
    parser = create_parser()

    args = parser.parse_args([
        str(plan_file), "--token-budget", "500", "--auto-approve",
        "--executor-url", "http://worker/steps"
    ])
    config = apply_overrides(get_default_config(), args)
    assert config.execution.max_total_tokens == 500
    assert config.execution.pause_on_dangerous_actions is False
    assert config.execution.max_steps == 10
    assert config.executor.kind == "http"
    assert config.executor.url == "http://worker/steps"

    args = parser.parse_args([str(plan_file), "--max-steps", "0"])
    with pytest.raises(ValidationError):
        apply_overrides(get_default_config(), args)


@pytest.mark.asyncio
async def test_dry_run_session(isolated_env, plan_file):
    """
    Test 3: Full CLI run with the dry-run executor.
    """
    args = create_parser().parse_args([str(plan_file), "--dry-run", "--yes"])
    assert await async_main(args) == 0

    args = create_parser().parse_args([str(plan_file), "--dry-run", "--yes", "--max-steps", "1"])
    assert await async_main(args) == 1

    print("✓ Test 3 passed: Dry-run session completes")


@pytest.mark.asyncio
async def test_bad_plan_file(isolated_env):
    """
    Test 4: Missing or unparseable plans exit with 2.
    """
    args = create_parser().parse_args([str(isolated_env / "missing.md"), "--yes"])
    assert await async_main(args) == 2

    prose = isolated_env / "prose.md"
    prose.write_text("No steps in here.\n")
    args = create_parser().parse_args([str(prose), "--yes"])
    assert await async_main(args) == 2

    args = create_parser().parse_args([str(prose), "--config", str(isolated_env / "none.yaml")])
    assert await async_main(args) == 2

    null_steps = isolated_env / "plan.json"
    null_steps.write_text(json.dumps({"title": "t", "steps": [None, 3]}))
    args = create_parser().parse_args([str(null_steps), "--yes"])
    assert await async_main(args) == 2


# =============================================================================
# TEST 5-6: Observer and alerts
# =============================================================================

def test_progress_observer():
    """
    Test 5: Steps are reported, pauses alert once.
    """
    alerts = MagicMock()
    observer = ui.create_progress_observer(alerts)
    step = PlanStep(id="s1", title="Build")

    observer(AutoExecutionState(is_auto_executing=True), step)
    alerts.progress.assert_called_once_with("Running: Build")

    paused = AutoExecutionState(
        is_auto_executing=True, is_paused=True, pause_reason=PauseReason.USER_REQUESTED
    )
    observer(paused, None)
    observer(paused, None)
    alerts.notify_pause.assert_called_once_with(paused)

    observer(AutoExecutionState(is_auto_executing=True), None)
    observer(paused, None)
    assert alerts.notify_pause.call_count == 2


def test_notify_pause_levels():
    """
    Test 6: Pause reasons map to alert levels.
    """
    console = Console(record=True, width=100)
    alerts = AlertManager(console=console)
    alerts.critical = MagicMock()
    alerts.success = MagicMock()

    alerts.notify_pause(AutoExecutionState(
        is_paused=True, pause_reason=PauseReason.ERROR_THRESHOLD, last_error="disk full"
    ))
    title, message = alerts.critical.call_args.args
    assert title == "Too many consecutive errors"
    assert "Last error: disk full" in message

    alerts.notify_pause(AutoExecutionState(is_paused=True, pause_reason=PauseReason.PLAN_COMPLETE))
    assert alerts.success.call_args.args[0] == "Plan execution completed"

    alerts.notify_pause(AutoExecutionState())
    assert alerts.critical.call_count == 1

    alerts.warning("Token budget limit reached", "Steps executed: 2")
    assert "Steps executed: 2" in console.export_text()


# =============================================================================
# TEST 7: Interrupts
# =============================================================================

@pytest.mark.asyncio
async def test_interrupted_run(isolated_env, plan_file, monkeypatch):
    """
    Test 7: Ctrl-C during the run still reports, then exits with 130.

    asyncio.run delivers Ctrl-C to the main task as a cancellation.
    """
    async def cancelled_run(controller, store):
        raise asyncio.CancelledError()

    warning = MagicMock()
    show_stats = MagicMock()
    monkeypatch.setattr(cli, "run_plan", cancelled_run)
    monkeypatch.setattr(ui, "show_warning", warning)
    monkeypatch.setattr(ui, "show_stats", show_stats)

    args = create_parser().parse_args([str(plan_file), "--dry-run", "--yes"])
    assert await async_main(args) == 130

    warning.assert_called_once_with("Interrupted")
    show_stats.assert_called_once()

    print("✓ Test 7 passed: Interrupt reported with exit code 130")
