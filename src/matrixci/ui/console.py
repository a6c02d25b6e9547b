"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from matrixci.model import JobInstance, PipelineDefinition, PipelineResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress progress lines (results and errors still print)
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, line: str = "") -> None:
        # instances run on worker threads
        with self._lock:
            print(line)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(self, pipeline: str, workflow: str, instance_count: int) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Pipeline: {pipeline}")
        self._out(f"Workflow: {workflow}")
        self._out(f"Instances: {instance_count}")
        self._out()

    def print_definition(self, definition: "PipelineDefinition") -> None:
        self.print_header(f"Pipeline: {definition.name}")
        if definition.triggers:
            events = ", ".join(t.event for t in definition.triggers)
            self._out(f"Triggers: {events}")
        for key in sorted(definition.jobs):
            job = definition.jobs[key]
            size = job.matrix.size() if job.matrix else 1
            needs = f" needs={list(job.needs)}" if job.needs else ""
            self._out(f"  {key}: {len(job.steps)} step(s), {size} instance(s){needs}")

    def print_plan(self, instances: Iterable["JobInstance"]) -> None:
        """Print the expanded instance list."""
        instances = list(instances)
        self.print_header("PLAN")
        if not instances:
            self._out("  (no jobs triggered)")
        for inst in instances:
            self._out(f"  {inst.id}  {inst.display_name}  {inst.label}")

    def print_job_start(self, label: str) -> None:
        """Print job start message."""
        if not self.quiet:
            self._out(f"[{label}] JOB STARTED")

    def print_step(self, label: str, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._out(f"[{label}] STEP: {name}")

    def print_step_skipped(self, label: str, name: str, reason: str) -> None:
        if not self.quiet:
            self._out(f"[{label}] STEP SKIPPED: {name} ({reason})")

    def print_job_skipped(self, label: str, reason: str) -> None:
        """Print job skipped message."""
        if not self.quiet:
            self._out(f"[{label}] JOB SKIPPED ({reason})")

    def print_failure(self, label: str, reason: str, step: Optional[str] = None) -> None:
        """
        Print failure message.

        Args:
            label: Instance label (job plus matrix binding)
            reason: Failure reason/error message
            step: Failing step name, if the failure belongs to a step
        """
        prefix = f"STEP FAILED: {step}" if step else "JOB FAILED"
        self._out(f"[{label}] {prefix}")
        if self.debug:
            self._out(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            self._out(f"Error: {error_line}")

    def print_results(self, result: "PipelineResult") -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for r in result.results:
            self._out(f"  {r.instance.label}: {r.status.upper()}")
            if r.reason:
                self._out(f"    {r.reason}")
        self._out(f"\nPIPELINE: {'SUCCESS' if result.ok else 'FAILURE'}")

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
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


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
