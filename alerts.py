"""
Alert system for Plan Autopilot.
Raises terminal and macOS notifications when an autonomous run pauses or ends.
"""

import logging
import subprocess
import sys

from rich.console import Console
from rich.panel import Panel

from execution import pause_reason_message
from schemas import AutoExecutionState, PauseReason

logger = logging.getLogger("autopilot.alerts")


# Per level: panel style, ring the bell, also notify macOS
ALERT_STYLES = {
    "info": ("bold blue", False, False),
    "warning": ("bold yellow", False, False),
    "critical": ("bold red", True, True),
    "success": ("bold green", False, True),
}

# Alert level for each pause reason
PAUSE_ALERT_LEVELS = {
    PauseReason.USER_REQUESTED: "info",
    PauseReason.TOKEN_BUDGET_REACHED: "warning",
    PauseReason.MAX_STEPS_REACHED: "warning",
    PauseReason.ERROR_THRESHOLD: "critical",
    PauseReason.STEP_TIMEOUT: "warning",
    PauseReason.DANGEROUS_ACTION: "warning",
    PauseReason.PLAN_COMPLETE: "success",
}


class AlertManager:
    """Routes run alerts to the terminal and, on macOS, to Notification Center."""

    def __init__(self, terminal: bool = True, macos: bool = False, console: Console = None):
        self.terminal_enabled = terminal
        self.macos_enabled = macos and sys.platform == "darwin"
        self.console = console or Console()

    def alert(self, level: str, title: str, message: str = ""):
        """Show an alert at the given level ("info", "warning", "critical", "success")."""
        style, bell, macos = ALERT_STYLES.get(level, ALERT_STYLES["warning"])
        body = message or title

        if self.terminal_enabled:
            heading = f"⚠️  {title}" if level in ("warning", "critical") else title
            self.console.print()
            self.console.print(Panel(f"[{style}]{body}[/{style}]", title=heading, border_style=style))
            self.console.print()
            if bell:
                self.console.bell()

        if macos and self.macos_enabled:
            self._notify_macos(title, body, sound=(level == "critical"))

    def _notify_macos(self, title: str, message: str, sound: bool):
        def quoted(text: str) -> str:
            return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'

        script = (
            f"display notification {quoted(message)} "
            f"with title \"Plan Autopilot\" subtitle {quoted(title)}"
        )
        if sound:
            script += "\nbeep"

        try:
            subprocess.run(["osascript", "-e", script], capture_output=True, timeout=5)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"macOS notification failed: {e}")

    def info(self, title: str, message: str = ""):
        self.alert("info", title, message)

    def warning(self, title: str, message: str = ""):
        self.alert("warning", title, message)

    def critical(self, title: str, message: str = ""):
        self.alert("critical", title, message)

    def success(self, title: str, message: str = ""):
        self.alert("success", title, message)

    def progress(self, message: str):
        """One dim line per step; never a panel."""
        if self.terminal_enabled:
            self.console.print(f"[dim]→ {message}[/dim]")

    def notify_pause(self, state: AutoExecutionState) -> None:
        """Raise the alert matching the state's pause reason."""
        if state.pause_reason is None:
            return

        details = [
            f"Steps executed: {state.steps_executed}",
            f"Tokens used: {state.total_tokens_used:,}",
        ]
        if state.last_error:
            details.append(f"Last error: {state.last_error}")
        if state.is_auto_executing:
            details.append("Run is paused and can be resumed.")

        level = PAUSE_ALERT_LEVELS.get(state.pause_reason, "warning")
        getattr(self, level)(pause_reason_message(state.pause_reason), "\n".join(details))
