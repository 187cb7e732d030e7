"""
Rich terminal UI components for Plan Autopilot.

WHY THIS FILE EXISTS:
--------------------
The controller only produces state snapshots; something has to render them.
Rich gives us panels, tables and colors for the plan, the live run, the
execution history and the final statistics, plus the yes/no prompt used when
a step needs confirmation.

COMPONENTS:
----------
- show_plan() - Display a plan and its step statuses
- show_state() - Display the controller's run state
- show_history() - Display execution history entries
- show_stats() - Display run statistics
- prompt_confirmation() - Async confirmation prompter for gated steps
- create_progress_observer() - Progress observer printing transitions
"""

import asyncio
from typing import Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from alerts import AlertManager
from execution import ProgressObserver, pause_reason_message
from schemas import (
    AutoExecutionConfig,
    AutoExecutionState,
    ExecutionHistoryEntry,
    ExecutionStats,
    Plan,
    PlanStep,
)

# Global console instance for consistent output
console = Console()


# =============================================================================
# COLOR SCHEMES
# =============================================================================

# Step and plan status colors
STATUS_COLORS = {
    "pending": "dim",
    "in-progress": "yellow",
    "complete": "green",
    "failed": "red",
    "skipped": "blue",
    "draft": "dim",
    "approved": "cyan",
    "executing": "yellow",
    "completed": "green",
    "cancelled": "red",
}

# History entry colors
HISTORY_COLORS = {
    "running": "yellow",
    "success": "green",
    "error": "red",
    "skipped": "blue",
    "paused": "magenta",
}

STATUS_ICONS = {
    "pending": "○",
    "in-progress": "◐",
    "complete": "✓",
    "failed": "✗",
    "skipped": "↷",
}


# =============================================================================
# HEADER/SECTION UTILITIES
# =============================================================================

def show_header(title: str, subtitle: str = "") -> None:
    """Display a styled header."""
    console.print()
    console.rule(f"[bold blue]{title}[/bold blue]")
    if subtitle:
        console.print(f"[dim]{subtitle}[/dim]", justify="center")
    console.print()


def show_section(title: str) -> None:
    """Display a section divider."""
    console.print()
    console.print(f"[bold cyan]━━━ {title} ━━━[/bold cyan]")
    console.print()


def show_success(message: str) -> None:
    """Display a success message."""
    console.print(f"[green]✓[/green] {message}")


def show_error(message: str) -> None:
    """Display an error message."""
    console.print(f"[red]✗[/red] {message}")


def show_warning(message: str) -> None:
    """Display a warning message."""
    console.print(f"[yellow]⚠[/yellow] {message}")


def show_info(message: str) -> None:
    """Display an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")


# =============================================================================
# PLAN DISPLAY
# =============================================================================

def show_plan(plan: Plan) -> None:
    """
    Display a plan with one row per step.

    Args:
        plan: The Plan to display
    """
    show_header(plan.title, plan.summary[:80] + "..." if len(plan.summary) > 80 else plan.summary)

    table = Table(
        box=box.ROUNDED,
        show_header=True,
        header_style="bold",
        title="[bold]Steps[/bold]"
    )
    table.add_column("#", justify="right", style="cyan", width=3)
    table.add_column("Title", style="white")
    table.add_column("Status", justify="center")
    table.add_column("Est. tokens", justify="right", style="dim")
    table.add_column("Actual", justify="right")

    for step in plan.steps:
        status = step.status.value
        color = STATUS_COLORS.get(status, "white")
        table.add_row(
            str(step.order),
            step.title,
            f"[{color}]{STATUS_ICONS.get(status, '')} {status}[/{color}]",
            f"{step.estimated_tokens:,}" if step.estimated_tokens else "-",
            f"{step.actual_tokens:,}" if step.actual_tokens is not None else "-",
        )

    console.print(table)

    plan_color = STATUS_COLORS.get(plan.status.value, "white")
    console.print(f"\n[bold]Plan status:[/bold] [{plan_color}]{plan.status.value}[/{plan_color}]")
    if plan.total_estimated_tokens:
        console.print(f"[bold]Estimated tokens:[/bold] {plan.total_estimated_tokens:,}")


# =============================================================================
# RUN STATE DISPLAY
# =============================================================================

def show_state(state: AutoExecutionState, config: Optional[AutoExecutionConfig] = None) -> None:
    """
    Display the controller's run state.

    Args:
        state: Snapshot from ExecutionController.state
        config: Optional config, to show usage against the budgets
    """
    if state.is_running:
        label, color = "RUNNING", "green"
    elif state.is_paused:
        label, color = "PAUSED", "yellow"
    else:
        label, color = "IDLE", "dim"

    content = Text()
    content.append("Status: ", style="bold")
    content.append(f"{label}\n", style=color)

    if state.pause_reason:
        content.append("Reason: ", style="bold")
        content.append(f"{pause_reason_message(state.pause_reason)}\n")

    content.append("Steps: ", style="bold")
    if config:
        content.append(f"{state.steps_executed}/{config.max_steps}\n")
    else:
        content.append(f"{state.steps_executed}\n")

    content.append("Tokens: ", style="bold")
    if config:
        content.append(f"{state.total_tokens_used:,}/{config.max_total_tokens:,}\n")
    else:
        content.append(f"{state.total_tokens_used:,}\n")

    if state.consecutive_errors:
        content.append("Consecutive errors: ", style="bold")
        content.append(f"{state.consecutive_errors}\n", style="red")

    if state.last_error:
        content.append("Last error: ", style="bold")
        content.append(f"{state.last_error}", style="red")

    console.print(Panel(
        content,
        title="[bold]Autopilot[/bold]",
        border_style=color,
        box=box.ROUNDED
    ))


def show_history(history: list[ExecutionHistoryEntry]) -> None:
    """
    Display execution history entries in order.

    Args:
        history: Entries from ExecutionController.history
    """
    if not history:
        console.print("[dim]No steps executed.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title="[bold]History[/bold]")
    table.add_column("#", justify="right", style="cyan", width=3)
    table.add_column("Step")
    table.add_column("Status", justify="center")
    table.add_column("Tokens", justify="right")
    table.add_column("Time", justify="right", style="dim")
    table.add_column("Error", style="red")

    for entry in history:
        color = HISTORY_COLORS.get(entry.status.value, "white")
        table.add_row(
            str(entry.step_index + 1),
            entry.title,
            f"[{color}]{entry.status.value}[/{color}]",
            f"{entry.tokens_used:,}",
            f"{entry.duration_seconds():.1f}s",
            (entry.error or "")[:60],
        )

    console.print(table)


def show_stats(stats: ExecutionStats) -> None:
    """
    Display run statistics.

    Args:
        stats: From ExecutionController.get_stats()
    """
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    rate_color = "green" if stats.success_rate >= 0.8 else "yellow" if stats.success_rate >= 0.5 else "red"

    table.add_row("Steps executed", str(stats.steps_executed))
    table.add_row("Steps remaining", str(stats.steps_remaining))
    table.add_row("Failed steps", str(stats.failed_steps))
    table.add_row("Success rate", f"[{rate_color}]{stats.success_rate:.0%}[/{rate_color}]")
    table.add_row("Tokens used", f"{stats.total_tokens_used:,}")
    table.add_row("Budget remaining", f"{stats.token_budget_remaining:,} ({100 - stats.token_budget_percent:.0f}%)")
    table.add_row("Avg time per step", f"{stats.avg_time_per_step:.1f}s")

    console.print(table)


# =============================================================================
# PROMPTS
# =============================================================================

async def prompt_confirmation(step: PlanStep, reasons: str) -> bool:
    """
    Ask the user whether a gated step may run.

    Matches the ConfirmationPrompter signature. The blocking prompt runs in a
    worker thread so the event loop stays responsive.
    """
    console.print(Panel(
        f"[bold]{step.title}[/bold]\n\n{step.description}\n\n[yellow]{reasons}[/yellow]",
        title="[bold yellow]⚠️  Confirmation required[/bold yellow]",
        border_style="yellow",
        box=box.DOUBLE
    ))
    return await asyncio.to_thread(Confirm.ask, "[bold]Run this step?[/bold]", default=False)


def prompt_continue(message: str = "Continue?") -> bool:
    """
    Simple yes/no confirmation prompt.

    Args:
        message: The confirmation message

    Returns:
        True if user confirms, False otherwise
    """
    return Confirm.ask(f"[bold]{message}[/bold]", default=True)


# =============================================================================
# PROGRESS OBSERVER
# =============================================================================

def create_progress_observer(alerts: AlertManager) -> ProgressObserver:
    """
    Build a progress observer for the controller.

    Prints each step as it starts and raises an alert whenever the run
    pauses with a new reason.
    """
    last_reason = None

    def observer(state: AutoExecutionState, step: Optional[PlanStep]) -> None:
        nonlocal last_reason

        if step is not None:
            alerts.progress(f"Running: {step.title}")

        if state.pause_reason != last_reason:
            last_reason = state.pause_reason
            if state.pause_reason is not None:
                alerts.notify_pause(state)

    return observer


# =============================================================================
# WELCOME
# =============================================================================

def show_welcome() -> None:
    """Display welcome message."""
    console.print(Panel.fit(
        "[bold blue]Plan Autopilot[/bold blue]\n"
        "[dim]Autonomous plan execution with safety budgets[/dim]",
        border_style="blue"
    ))
