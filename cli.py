#!/usr/bin/env python3
"""
Plan Autopilot CLI - run an approved plan without approving every step.

This is the main entry point for the `autopilot` command. It loads a plan
file, wires a step executor, a confirmation prompt and a progress observer
into the ExecutionController, and renders the run with a rich terminal UI.

USAGE:
------
  autopilot plan.md                      - Run a plan with the configured executor
  autopilot plan.json --dry-run          - Pretend every step succeeds
  autopilot plan.yaml --max-steps 3      - Override a budget for this run
  autopilot plan.md --yes --auto-approve - No prompts at all

WORKFLOW:
--------
  1. Load - Parse the plan file (JSON, YAML or Markdown)
  2. Approve - Show the plan and ask before running it
  3. Execute - Drive the steps until the plan completes or a budget trips
  4. Report - Print execution history and statistics

EXIT CODES:
----------
  0 - Plan completed
  1 - Run ended early (budget, errors, declined step, user stop)
  2 - Bad arguments, config or plan file
  130 - Interrupted with Ctrl-C
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import yaml
from pydantic import ValidationError

from alerts import AlertManager
from config import Config, configure_logging, load_config
from execution import ExecutionController
from executors import build_executor
from plan_store import PlanParseError, PlanStore, load_plan_file
from schemas import AutoExecutionConfig, PauseReason
import ui

logger = logging.getLogger("autopilot.cli")


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="autopilot",
        description="Autonomous plan execution with safety budgets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  autopilot plan.md
  autopilot plan.json --dry-run
  autopilot plan.yaml --max-steps 3 --token-budget 20000
  autopilot plan.md --executor-url http://localhost:8787/steps
        """
    )

    parser.add_argument(
        "plan_file",
        type=Path,
        help="Plan to execute (.json, .yaml/.yml or Markdown)"
    )

    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Config file (default: ~/.autopilot/config.yaml, ./autopilot.yaml)"
    )

    # Budget overrides
    parser.add_argument(
        "--max-steps",
        type=int,
        help="Maximum steps to execute in this run"
    )

    parser.add_argument(
        "--token-budget",
        type=int,
        help="Cumulative token budget for this run"
    )

    parser.add_argument(
        "--error-threshold",
        type=int,
        help="Consecutive failures that end the run"
    )

    parser.add_argument(
        "--step-timeout",
        type=int,
        metavar="MS",
        help="Per-step timeout in milliseconds"
    )

    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Don't pause before dangerous actions"
    )

    # Executor overrides
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the dry-run executor (every step succeeds)"
    )

    parser.add_argument(
        "--executor-url",
        metavar="URL",
        help="Send steps to this worker endpoint"
    )

    parser.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Approve the plan without asking"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show debug logging"
    )

    parser.add_argument(
        "--version",
        action="version",
        version="Plan Autopilot 0.1.0"
    )

    return parser


# =============================================================================
# CONFIG OVERRIDES
# =============================================================================

def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """
    Fold command-line flags into the loaded config.

    Raises:
        pydantic.ValidationError: If a budget flag is out of range
    """
    overrides = {}
    if args.max_steps is not None:
        overrides["max_steps"] = args.max_steps
    if args.token_budget is not None:
        overrides["max_total_tokens"] = args.token_budget
    if args.error_threshold is not None:
        overrides["error_threshold"] = args.error_threshold
    if args.step_timeout is not None:
        overrides["step_timeout"] = args.step_timeout
    if args.auto_approve:
        overrides["pause_on_dangerous_actions"] = False

    if overrides:
        config.execution = AutoExecutionConfig.model_validate(
            {**config.execution.model_dump(), **overrides}
        )

    if args.dry_run:
        config.executor.kind = "dry_run"
    elif args.executor_url:
        config.executor.kind = "http"
        config.executor.url = args.executor_url

    return config


# =============================================================================
# RUN
# =============================================================================

async def run_plan(controller: ExecutionController, store: PlanStore) -> None:
    """
    Start the controller and keep offering to continue while the run is
    suspended rather than ended.
    """
    await controller.start()

    while True:
        state = controller.state
        if not (state.is_paused and state.is_auto_executing):
            return

        ui.show_state(state, controller.config)

        if state.pause_reason == PauseReason.DANGEROUS_ACTION:
            step = store.next_pending_step()
            if step is not None and ui.prompt_continue(f"Skip '{step.title}' and continue?"):
                store.skip_step(store.index_of(step.id))
                await controller.resume()
                continue
        elif ui.prompt_continue("Resume execution?"):
            await controller.resume()
            continue

        controller.stop()
        return


async def async_main(args: argparse.Namespace) -> int:
    """
    Async main function.

    Returns:
        Exit code (0 when the plan completed)
    """
    # Load configuration
    try:
        config = apply_overrides(load_config(args.config), args)
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        ui.show_error(f"Invalid configuration: {e}")
        return 2

    configure_logging(config.logging, verbose=args.verbose)

    # Load the plan
    store = PlanStore()
    try:
        plan = load_plan_file(args.plan_file, store)
    except (FileNotFoundError, PlanParseError) as e:
        ui.show_error(str(e))
        return 2

    ui.show_welcome()
    ui.show_info(f"Loaded plan from: {args.plan_file}")
    ui.show_plan(plan)

    try:
        executor = build_executor(config.executor)
    except ValueError as e:
        ui.show_error(str(e))
        return 2

    if not args.yes and not ui.prompt_continue("Run this plan autonomously?"):
        store.reject_plan()
        ui.show_warning("Plan rejected")
        return 1

    store.approve_plan()
    logger.info(f"Plan {plan.id} approved ({plan.total_steps} steps)")

    alerts = AlertManager(
        terminal=config.alerts.terminal,
        macos=config.alerts.macos_notification,
        console=ui.console,
    )
    controller = ExecutionController(
        store,
        executor,
        confirmation_prompter=ui.prompt_confirmation,
        progress_observer=ui.create_progress_observer(alerts),
        config=config.execution,
    )

    ui.show_section("Execution")
    interrupted = False
    try:
        await run_plan(controller, store)
    except asyncio.CancelledError:
        # Ctrl-C under asyncio.run cancels this task
        controller.stop()
        ui.show_warning("Interrupted")
        interrupted = True

    # Report
    ui.show_section("Results")
    ui.show_plan(store.current_plan)
    ui.show_history(controller.history)
    ui.show_stats(controller.get_stats())

    if interrupted:
        return 130
    if controller.state.pause_reason == PauseReason.PLAN_COMPLETE:
        ui.show_success("Plan completed")
        return 0
    return 1


def main() -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    try:
        exit_code = asyncio.run(async_main(args))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        ui.console.print("\n")
        sys.exit(130)


if __name__ == "__main__":
    main()
