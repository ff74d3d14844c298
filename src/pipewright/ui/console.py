"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
import traceback
from typing import Any, Mapping, Optional, Sequence


class Console:
    """Everything pipewright prints for humans goes through here; logs go to `logging`."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Args:
            debug: Show full error messages, tracebacks and [DEBUG] lines
            quiet: Print only errors and final results (used by tests)
        """
        self.debug = debug
        self.quiet = quiet
        # jobs report from worker threads; keep their lines whole
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        run_id: Optional[str] = None,
    ) -> None:
        if self.quiet:
            return
        lines = ["\nRUN STARTED"]
        if run_id:
            lines.append(f"Run: {run_id}")
        lines += [f"Repository: {repository}", f"Workflow: {workflow}", f"Jobs: {job_count}", ""]
        self._out(*lines)

    def print_layers(self, layers: Sequence[Sequence[str]]) -> None:
        """One line per level of the job graph; jobs on a line may run in parallel."""
        if not self.quiet:
            self._out(*(f"  level {i}: {', '.join(level)}" for i, level in enumerate(layers, 1)))

    def print_job_start(self, name: str) -> None:
        if not self.quiet:
            self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        if not self.quiet:
            self._out(f"STEP: {job}/{name}")

    def print_job_finished(self, name: str, status: str, reason: Optional[str] = None) -> None:
        if self.quiet:
            return
        self._out(f"JOB {status.upper()}: {name}" + (f" ({reason})" if reason else ""))

    def print_failure(self, name: str, kind: str, message: str = "") -> None:
        """
        Failed job, with its error kind (execution, timeout, resource, ...).

        Outside debug mode only the first line of the message is shown; step
        failures carry the command output below it.
        """
        lines = [f"JOB FAILED: {name} [{kind}]"]
        if message:
            lines.append(f"  {message}" if self.debug else f"  {message.splitlines()[0]}")
        self._out(*lines)

    def print_results(self, report: Mapping[str, Any]) -> None:
        """Summary table of a run report (RunInstance.to_dict() or RunStore.get_run())."""
        rule = "=" * 40
        lines = ["", rule, f"RESULTS {report.get('workflow', '')} [{report.get('id', '')}]", rule]
        for job in report.get("jobs", []):
            line = f"  {job['name']}: {job['status'].upper()}"
            if job.get("skip_reason"):
                line += f" ({job['skip_reason']})"
            elif job.get("error_message"):
                line += f" ({job['error_message'].splitlines()[0]})"
            lines.append(line)
        lines.append(f"RUN: {str(report.get('status', '')).upper()}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Sequence[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """ERROR block on stderr: title, message, indented details, then a suggestion."""
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or ())
        if suggestion:
            lines += ["", suggestion]
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        if not self.debug:
            self._out(f"Error: {exc}", err=True)
            return
        with self._lock:
            traceback.print_exception(type(exc), exc, exc.__traceback__)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


_console: Optional[Console] = None


def get_console() -> Console:
    """Process-wide console; the CLI replaces it according to --debug."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
