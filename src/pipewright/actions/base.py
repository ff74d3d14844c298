# actions/base.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict

from ..errors import ExecutionError
from ..model import Job, RunInstance, Step

if TYPE_CHECKING:
    from ..artifacts import ArtifactStore
    from ..deploy import DeploymentPublisher


class ActionParams(BaseModel):
    """Base for the typed `with:` block of a built-in action. Unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid")


@dataclass
class ActionResult:
    outputs: Dict[str, str] = field(default_factory=dict)
    artifacts: Dict[str, str] = field(default_factory=dict)


@dataclass
class ActionContext:
    """Everything an action may touch while it runs on a leased runner."""
    job: Job
    step: Step
    run: RunInstance
    workspace: Path
    store: ArtifactStore
    publisher: Optional[DeploymentPublisher]
    source_root: Path
    artifacts: Dict[str, str]  # uploaded by earlier steps of this job

    def resolve(self, relative: str) -> Path:
        """Resolve a path inside the workspace, refusing anything that escapes it."""
        root = self.workspace.resolve()
        target = (root / relative).resolve()
        if target != root and root not in target.parents:
            raise ExecutionError(
                f"path {relative!r} escapes the job workspace",
                job=self.job.name,
                step=self.step.name,
            )
        return target

    def lookup_artifact(self, name: str) -> str:
        if name in self.artifacts:
            return self.artifacts[name]
        digest = self.run.artifacts.get(name)
        if digest is None:
            raise ExecutionError(
                f"artifact {name!r} was not uploaded by this job or a finished dependency",
                job=self.job.name,
                step=self.step.name,
            )
        return digest


@dataclass(frozen=True)
class Action:
    """
    A built-in step implementation.

    artifact_in / artifact_out name the parameter field that holds the
    artifact the action consumes / produces, so the graph builder can check
    artifact flow before anything runs.
    """
    name: str
    params: Type[ActionParams]
    handler: Callable[[ActionContext, Any], ActionResult]
    outputs: Tuple[str, ...] = ()
    artifact_in: Optional[str] = None
    artifact_out: Optional[str] = None
    needs_environment: bool = False
