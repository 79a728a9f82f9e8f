"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
import threading
from typing import Any, Dict, Iterable, List, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-job progress lines (results and
                   errors are still printed)
        """
        self.debug = debug
        self.quiet = quiet
        # jobs report from worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def _progress(self, *lines: str) -> None:
        if not self.quiet:
            self._out(*lines)

    def print_run_started(
        self,
        run_id: str,
        pipeline: str,
        trigger: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._progress(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Pipeline: {pipeline}",
            f"Trigger: {trigger}",
            f"Job instances: {job_count}",
            "",
        )

    def print_rejected(self, reason: str) -> None:
        """Print that an event did not start a run."""
        self._out(f"\nRUN NOT TRIGGERED: {reason}")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._progress(f"\nJOB STARTED: {name}")

    def print_step(self, name: str) -> None:
        """Print step start message."""
        self._progress(f"STEP: {name}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._progress(f"JOB SUCCEEDED: {name}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.strip().split("\n")[0] if reason else ""
            if error_line:
                lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped/canceled message."""
        self._progress(f"JOB NOT RUN: {name} ({reason})")

    def print_plan(self, levels: List[List[str]], instances: Iterable[Dict[str, Any]]) -> None:
        """Print the expanded execution plan stage by stage."""
        by_job: Dict[str, List[Dict[str, Any]]] = {}
        for inst in instances:
            by_job.setdefault(inst["job"], []).append(inst)

        lines: List[str] = []
        for idx, level in enumerate(levels):
            lines.append(f"=== Stage {idx + 1}: {level} ===")
            for job in level:
                for inst in by_job.get(job, []):
                    mark = "skip" if inst["status"] == "skipped" else "run "
                    needs = f" <- {len(inst['needs'])} upstream" if inst["needs"] else ""
                    lines.append(f"  [{mark}] {inst['id']}{needs}")
        self._out(*lines)

    def print_results(self, status: str, instances: Iterable[Dict[str, Any]]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for inst in instances:
            line = f"  {inst['id']}: {inst['status'].upper()}"
            if inst.get("timed_out"):
                line += " (timed out)"
            lines.append(line)
        lines.append(f"RUN: {status.upper()}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
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
        lines = [f"\nERROR: {title}", f"{message}"]
        if details:
            lines.extend(f"  {detail}" for detail in details)
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
