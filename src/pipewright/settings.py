"""Engine configuration, read from ``PIPEWRIGHT_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .errors import ConfigurationError


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class EngineConfig:
    max_workers: int = field(default_factory=_default_workers)
    runners: int = 2
    runner_labels: Tuple[str, ...] = ("local",)
    runner_timeout: float = 30.0
    runner_retries: int = 3
    backoff_initial: float = 0.5
    backoff_max: float = 8.0
    default_step_timeout: float = 600.0
    default_job_timeout: float = 3600.0
    cancel_grace: float = 10.0
    tick: float = 0.2
    state_dir: str = ".pipewright"
    database_url: Optional[str] = None
    artifact_root: Optional[str] = None
    publish_root: Optional[str] = None
    source_root: str = "."

    def __post_init__(self) -> None:
        state = Path(self.state_dir)
        if self.database_url is None:
            object.__setattr__(self, "database_url", f"sqlite:///{state / 'state.db'}")
        if self.artifact_root is None:
            object.__setattr__(self, "artifact_root", str(state / "artifacts"))
        if self.publish_root is None:
            object.__setattr__(self, "publish_root", str(state / "sites"))

        problems = []
        for name in ("max_workers", "runners"):
            if getattr(self, name) < 1:
                problems.append(f"{name} must be >= 1")
        if self.runner_retries < 0:
            problems.append("runner_retries must be >= 0")
        for name in (
            "runner_timeout",
            "backoff_initial",
            "backoff_max",
            "default_step_timeout",
            "default_job_timeout",
            "tick",
        ):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be > 0")
        if self.cancel_grace < 0:
            problems.append("cancel_grace must be >= 0")
        if not self.runner_labels:
            problems.append("runner_labels must not be empty")
        if problems:
            raise ConfigurationError("Invalid engine configuration", problems=problems)

    @property
    def runner_root(self) -> Path:
        return Path(self.state_dir) / "runners"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> EngineConfig:
        env = os.environ if environ is None else environ
        values: dict = {}

        def number(var: str, key: str, conv) -> None:
            raw = env.get(var)
            if raw is None or raw == "":
                return
            try:
                values[key] = conv(raw)
            except ValueError:
                raise ConfigurationError(f"{var} must be a number, got {raw!r}") from None

        number("PIPEWRIGHT_MAX_WORKERS", "max_workers", int)
        number("PIPEWRIGHT_RUNNERS", "runners", int)
        number("PIPEWRIGHT_RUNNER_TIMEOUT", "runner_timeout", float)
        number("PIPEWRIGHT_RUNNER_RETRIES", "runner_retries", int)
        number("PIPEWRIGHT_BACKOFF_INITIAL", "backoff_initial", float)
        number("PIPEWRIGHT_BACKOFF_MAX", "backoff_max", float)
        number("PIPEWRIGHT_STEP_TIMEOUT", "default_step_timeout", float)
        number("PIPEWRIGHT_JOB_TIMEOUT", "default_job_timeout", float)
        number("PIPEWRIGHT_CANCEL_GRACE", "cancel_grace", float)
        number("PIPEWRIGHT_TICK", "tick", float)

        labels = env.get("PIPEWRIGHT_RUNNER_LABELS")
        if labels:
            values["runner_labels"] = tuple(x.strip() for x in labels.split(",") if x.strip())

        for var, key in (
            ("PIPEWRIGHT_STATE_DIR", "state_dir"),
            ("PIPEWRIGHT_DATABASE_URL", "database_url"),
            ("PIPEWRIGHT_ARTIFACT_ROOT", "artifact_root"),
            ("PIPEWRIGHT_PUBLISH_ROOT", "publish_root"),
            ("PIPEWRIGHT_SOURCE_ROOT", "source_root"),
        ):
            if env.get(var):
                values[key] = env[var]

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
