# errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class PipewrightError(Exception):
    """
    Structured engine error with enough context for:
      - clean CLI output
      - the run report (kind + message per failed job)
      - debugging without full tracebacks
    """
    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        job: str | None = None,
        step: str | None = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Build time
# ----------------------------------------------------------------------

class ConfigurationError(PipewrightError):
    """Malformed workflow or engine configuration. The run never starts."""
    kind = "configuration"

    def __init__(self, message: str, *, problems: Optional[List[str]] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.problems: List[str] = list(problems or [])

    def __str__(self) -> str:
        text = super().__str__()
        if self.problems:
            text += "\n" + "\n".join(f"  - {p}" for p in self.problems)
        return text


class CyclicDependency(ConfigurationError):
    kind = "cyclic_dependency"

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Job dependencies form a cycle: {' -> '.join(self.cycle)}")


class UnknownJobReference(ConfigurationError):
    kind = "unknown_job_reference"

    def __init__(self, job: str, missing: str, known: List[str]):
        self.missing = missing
        super().__init__(
            f"Job '{job}' needs missing job '{missing}'. Known jobs: {sorted(known)}",
            job=job,
        )


# ----------------------------------------------------------------------
# Run time
# ----------------------------------------------------------------------

class ExecutionError(PipewrightError):
    """A step could not complete. Fails its job, skips dependents."""
    kind = "execution"


class StepFailure(ExecutionError):
    def __init__(
        self,
        *,
        job: str,
        step: str,
        cmd: str,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.cmd = cmd
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"step '{step}' failed (exit={exit_code}): {cmd}",
            job=job,
            step=step,
            details={"exit_code": exit_code},
        )


class StepTimeout(PipewrightError):
    """A step or job ran past its time budget."""
    kind = "timeout"

    def __init__(self, *, job: str, step: str | None, seconds: float, scope: str = "step"):
        self.seconds = seconds
        self.scope = scope
        where = f"step '{step}'" if scope == "step" else f"job '{job}'"
        super().__init__(
            f"{where} exceeded its {seconds:g}s timeout",
            job=job,
            step=step,
            details={"scope": scope},
        )


class JobCancelled(PipewrightError):
    kind = "cancelled"


class ResourceError(PipewrightError):
    """No runner could be leased."""
    kind = "resource"

    def __init__(self, message: str, *, retryable: bool = True, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retryable = retryable


class ArtifactNotFound(PipewrightError):
    kind = "artifact_not_found"

    def __init__(self, digest: str):
        self.digest = digest
        super().__init__(f"No artifact with digest {digest}")


class PublishConflict(PipewrightError):
    kind = "publish_conflict"

    def __init__(self, environment: str, holder: str | None):
        self.environment = environment
        self.holder = holder
        super().__init__(
            f"Environment '{environment}' is being published by run {holder or '<unknown>'}",
            details={"environment": environment},
        )


class PublishFailure(PipewrightError):
    kind = "publish_failure"

    def __init__(self, environment: str, reason: str):
        self.environment = environment
        super().__init__(
            f"Publishing to '{environment}' failed: {reason}",
            details={"environment": environment},
        )


class RunNotFound(PipewrightError):
    kind = "run_not_found"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Unknown run: {run_id}")
