"""Console output formatting utilities for jobgraph."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

_STATUS_LABELS = {
    "succeeded": "SUCCESS",
    "failed": "FAILED",
    "skipped": "SKIPPED",
    "cancelled": "CANCELLED",
    "blocked": "BLOCKED",
    "pending": "PENDING",
    "running": "RUNNING",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step and per-transition lines
        """
        self.debug = debug
        self.quiet = quiet
        # workers print concurrently
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        pipeline: str,
        event: str,
        ref: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Pipeline: {pipeline}",
            f"Event: {event} ({ref})",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan(self, levels: list[list[str]], skipped: dict[str, str]) -> None:
        """Print the expanded instances stage by stage."""
        for idx, level in enumerate(levels):
            self._out(f"=== Stage {idx + 1} ===")
            for key in level:
                if key in skipped:
                    self._out(f"  {key} (skipped: {skipped[key]})")
                else:
                    self._out(f"  {key}")

    def on_event(self, event) -> None:
        """Status observer hook: prints instance transitions."""
        if self.quiet or event.key is None:
            return
        if event.new == "running":
            self._out(f"\nJOB STARTED: {event.key}")
        elif event.new in ("succeeded", "failed", "skipped", "cancelled"):
            suffix = f" ({event.reason})" if event.reason else ""
            self._out(f"JOB {_STATUS_LABELS[event.new]}: {event.key}{suffix}")
        elif self.debug:
            self._out(f"[DEBUG] {event.key}: {event.old} -> {event.new}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._out(f"[{job}] STEP: {name}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print step failure message.

        Args:
            name: Job / step label
            reason: Failure reason or captured output
            exit_code: Optional exit code
            hint: Optional hint for user
        """
        lines = [f"STEP FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Output:\n{reason}")
        else:
            # last line of output is usually the interesting one
            tail = [l for l in (reason or "").splitlines() if l.strip()]
            if tail:
                lines.append(f"Error: {tail[-1]}")
        self._out(*lines)

    def print_results(self, results: dict[str, str], run_status: str | None = None) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            lines.append(f"  {job}: {_STATUS_LABELS.get(status, status.upper())}")
        if run_status is not None:
            lines.append(f"\nRUN {_STATUS_LABELS.get(run_status, run_status.upper())}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Iterable[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
