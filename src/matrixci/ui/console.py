"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Mapping, Optional

from matrixci.model import Problem, Run, RunStatus


class Console:
    """Centralized console output formatting. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, stream=None, err_stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        self._stream = stream
        self._err_stream = err_stream
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = (self._err_stream or sys.stderr) if err else (self._stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, project: str, settings_version: str, targets: Iterable[str], job_count: int) -> None:
        self._out(
            "\nRUN STARTED",
            f"Project: {project} (settings {settings_version})",
            f"Targets: {', '.join(targets)}",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan_level(self, index: int, jobs: Iterable[str]) -> None:
        self._out(f"=== Stage {index}: {', '.join(jobs)} ===")

    def print_job_start(self, job: str, build_number: str | None, agent: str | None) -> None:
        where = f" on {agent}" if agent else ""
        self._out(f"[{job}] STARTED #{build_number}{where}")

    def print_step(self, job: str, step: str) -> None:
        self._out(f"[{job}] STEP: {step}")

    def print_job_finished(self, run: Run) -> None:
        lines = [f"[{run.job_id}] {run.status.value.upper()} #{run.build_number or '-'}"]
        for p in run.problems:
            lines.append(f"[{run.job_id}]   problem: {p.kind}: {p.message}")
        if run.artifacts:
            lines.append(f"[{run.job_id}]   artifacts: {len(run.artifacts)}")
        self._out(*lines)

    def print_output(self, job: str, text: str) -> None:
        """Captured step output, only in debug mode."""
        if self.debug and text:
            self._out(*(f"[{job}] | {line}" for line in text.splitlines()))

    def print_trigger(self, fired: bool, included: list[str], excluded: list[str]) -> None:
        if fired:
            self._out(f"TRIGGER: {len(included)} matching change(s)")
        else:
            self._out(f"TRIGGER: skipped, {len(excluded)} change(s) excluded by trigger rules")

    def print_results(self, runs: Mapping[str, Run], status: RunStatus) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job_id, run in runs.items():
            number = f" #{run.build_number}" if run.build_number else ""
            lines.append(f"  {job_id}: {run.status.value.upper()}{number}")
        lines.append(f"STATUS: {status.value.upper()}")
        self._out(*lines)

    def print_problems(self, problems: Iterable[Problem]) -> None:
        problems = list(problems)
        if not problems:
            return
        lines = ["", "PROBLEMS"]
        for p in problems:
            where = f"{p.job}/{p.step}" if p.step else p.job
            lines.append(f"  {where}: {p.kind}: {p.message}")
        self._out(*lines)

    def print_gate(self, project: str, state: str, version: str | None, attempt: int) -> None:
        self._out(
            "\nRELEASE",
            f"Project: {project}",
            f"State: {state}",
            f"Version: {version or '-'}",
            f"Attempt: {attempt}",
        )

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
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._out("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
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
