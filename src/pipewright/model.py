# model.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


EVENT_KINDS = ("push", "schedule", "manual")


# ---------------------------------------------------------------------
# Events and triggers
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Event:
    """A repository event. Produced outside the engine, consumed once."""
    repository: str
    ref: str
    changed_paths: Tuple[str, ...] = ()
    actor: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    kind: str = "push"

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind {self.kind!r}, expected one of {EVENT_KINDS}")
        # lists from JSON/YAML are normalised so the event stays hashable
        object.__setattr__(self, "changed_paths", tuple(self.changed_paths))

    @property
    def branch(self) -> Optional[str]:
        if self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        if self.ref.startswith("refs/"):
            return None
        return self.ref

    @property
    def tag(self) -> Optional[str]:
        if self.ref.startswith("refs/tags/"):
            return self.ref[len("refs/tags/"):]
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Event:
        missing = [k for k in ("repository", "ref") if not data.get(k)]
        if missing:
            raise ValueError(f"Event is missing required field(s): {missing}")

        ts = data.get("timestamp")
        if ts is None:
            timestamp = utcnow()
        elif isinstance(ts, datetime):
            timestamp = ts
        else:
            timestamp = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        return cls(
            repository=str(data["repository"]),
            ref=str(data["ref"]),
            changed_paths=tuple(str(p) for p in data.get("changed_paths") or ()),
            actor=str(data.get("actor") or ""),
            timestamp=timestamp,
            kind=str(data.get("kind") or "push"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.repository,
            "ref": self.ref,
            "changed_paths": list(self.changed_paths),
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind,
        }


@dataclass(frozen=True)
class PushTrigger:
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()
    paths_ignore: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ScheduleTrigger:
    cron: str


@dataclass(frozen=True)
class ManualTrigger:
    pass


Trigger = Union[PushTrigger, ScheduleTrigger, ManualTrigger]


# ---------------------------------------------------------------------
# Workflow definition
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single unit of work inside a job: either a shell command (`run`)
    or a built-in action (`uses` + `with_` parameters).
    """
    name: str
    run: str | None = None
    uses: str | None = None
    with_: Mapping[str, Any] = field(default_factory=dict)
    outputs: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: str | None = None
    timeout: float | None = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step {self.name!r} must set exactly one of run/uses")
        object.__setattr__(self, "outputs", tuple(self.outputs))

    @property
    def command(self) -> str:
        return self.run if self.run is not None else f"uses: {self.uses}"


@dataclass
class Job:
    """
    A CI job: ordered steps sharing one runner, plus dependencies.

    `paths` keeps the diff based selection: when set, the job only runs if
    one of the event's changed paths matches; otherwise it is skipped by design.
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    environment: Optional[str] = None
    runs_on: str = "local"
    env: Dict[str, str] = field(default_factory=dict)
    paths: Optional[List[str]] = None
    timeout: Optional[float] = None


@dataclass
class WorkflowDefinition:
    name: str
    jobs: Dict[str, Job]
    triggers: List[Trigger] = field(default_factory=list)
    permissions: Dict[str, str] = field(default_factory=dict)
    source: Optional[str] = None


# ---------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNABLE = "runnable"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNABLE, JobStatus.SKIPPED, JobStatus.CANCELLED},
    JobStatus.RUNNABLE: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
}


@dataclass
class JobRun:
    name: str
    status: JobStatus = JobStatus.PENDING
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    skip_reason: Optional[str] = None
    skipped_by_failure: bool = False
    artifacts: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def blocks_dependents(self) -> bool:
        """True when this job ended in a way that must skip its dependents as a failure."""
        if self.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            return True
        return self.status is JobStatus.SKIPPED and self.skipped_by_failure

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "skip_reason": self.skip_reason,
            "skipped_by_failure": self.skipped_by_failure,
            "artifacts": dict(self.artifacts),
        }


@dataclass
class RunInstance:
    """
    One execution of a workflow for one event.

    All mutation goes through the methods below, which hold the run lock and
    refuse to change anything once the run reached a terminal status.
    """
    event: Event
    workflow: WorkflowDefinition
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    jobs: Dict[str, JobRun] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    outputs: Dict[str, str] = field(default_factory=dict)
    artifacts: Dict[str, str] = field(default_factory=dict)
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.jobs:
            self.jobs = {name: JobRun(name) for name in self.workflow.jobs}

    def job(self, name: str) -> JobRun:
        return self.jobs[name]

    def start(self) -> None:
        with self._lock:
            if self.status is RunStatus.PENDING:
                self.status = RunStatus.RUNNING

    def transition(self, name: str, status: JobStatus, **fields: Any) -> bool:
        """
        Move job `name` to `status`. Returns False (and changes nothing) when the
        move is not allowed from the job's current state, e.g. a worker trying to
        start a job that was cancelled while it waited for a runner.
        """
        with self._lock:
            if self.status.terminal:
                return False
            jr = self.jobs[name]
            if status not in _TRANSITIONS.get(jr.status, set()):
                return False
            jr.status = status
            for key, value in fields.items():
                setattr(jr, key, value)
            if status is JobStatus.RUNNING:
                jr.started_at = utcnow()
            if status.terminal:
                jr.finished_at = utcnow()
            return True

    def complete(self, name: str, artifacts: Mapping[str, str]) -> bool:
        """Mark a running job succeeded and make its artifacts visible to dependents."""
        with self._lock:
            if not self.transition(name, JobStatus.SUCCEEDED, artifacts=dict(artifacts)):
                return False
            self.artifacts.update(artifacts)
            return True

    def record_outputs(self, job: str, step: str, outputs: Mapping[str, str]) -> None:
        with self._lock:
            if self.status.terminal:
                raise RuntimeError(f"run {self.id} is finished; outputs are frozen")
            for key, value in outputs.items():
                self.outputs[f"{job}.{step}.{key}"] = value

    def finish(self, status: RunStatus) -> None:
        with self._lock:
            if self.status.terminal:
                raise RuntimeError(f"run {self.id} already finished as {self.status.value}")
            if not status.terminal:
                raise ValueError(f"{status.value} is not a terminal run status")
            self.status = status
            self.finished_at = utcnow()

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "id": self.id,
                "workflow": self.workflow.name,
                "status": self.status.value,
                "event": self.event.to_dict(),
                "jobs": [self.jobs[name].to_dict() for name in self.jobs],
                "outputs": dict(self.outputs),
                "created_at": self.created_at.isoformat(),
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            }


# ---------------------------------------------------------------------
# Artifacts and environments
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Artifact:
    digest: str
    size: int
    producer: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Environment:
    name: str
    url: Optional[str] = None
    run_id: Optional[str] = None
    artifact: Optional[str] = None
    protection: Dict[str, Any] = field(default_factory=dict)
