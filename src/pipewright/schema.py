# schema.py
# Workflow files: YAML validated with pydantic, or Python files using the DSL.
from __future__ import annotations

import json
import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .actions import validation_problems
from .errors import ConfigurationError
from .model import (
    Event,
    Job,
    ManualTrigger,
    PushTrigger,
    ScheduleTrigger,
    Step,
    Trigger,
    WorkflowDefinition,
)
from .triggers import CronSchedule

logger = logging.getLogger(__name__)

WORKFLOW_DIR = Path(".pipewright") / "workflows"
YAML_SUFFIXES = (".yml", ".yaml")


# -------------------- Schemas --------------------

class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class PushSpec(_Strict):
    branches: List[str] = Field(default_factory=list)
    branches_ignore: List[str] = Field(default_factory=list, alias="branches-ignore")
    tags: List[str] = Field(default_factory=list)
    paths: List[str] = Field(default_factory=list)
    paths_ignore: List[str] = Field(default_factory=list, alias="paths-ignore")


class ScheduleSpec(_Strict):
    cron: str

    @field_validator("cron")
    @classmethod
    def _valid_cron(cls, v: str) -> str:
        CronSchedule(v)
        return v


class OnSpec(_Strict):
    push: Optional[PushSpec] = None
    schedule: List[ScheduleSpec] = Field(default_factory=list)
    manual: Optional[Dict[str, Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _shorthand(cls, data: Any) -> Any:
        # `on: push` and `on: [push, manual]`
        if isinstance(data, str):
            data = [data]
        if isinstance(data, list):
            out: Dict[str, Any] = {}
            for kind in data:
                if kind == "schedule":
                    raise ValueError("schedule needs a cron expression")
                out[str(kind)] = {}
            data = out
        if isinstance(data, dict):
            data = {k: ({} if v is None and k in ("push", "manual") else v) for k, v in data.items()}
        return data


class StepSpec(_Strict):
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    outputs: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _run_or_uses(self) -> StepSpec:
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of `run` or `uses`")
        return self


class JobSpec(_Strict):
    steps: List[StepSpec]
    needs: List[str] = Field(default_factory=list)
    environment: Optional[str] = None
    runs_on: str = Field(default="local", alias="runs-on")
    env: Dict[str, str] = Field(default_factory=dict)
    paths: Optional[List[str]] = None
    timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("needs", mode="before")
    @classmethod
    def _single_need(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class WorkflowSpec(_Strict):
    name: Optional[str] = None
    on: OnSpec
    permissions: Union[Literal["read-all", "write-all"], Dict[str, str]] = Field(default_factory=dict)
    jobs: Dict[str, JobSpec]

    def to_definition(self, default_name: str, source: Optional[str] = None) -> WorkflowDefinition:
        triggers: List[Trigger] = []
        if self.on.push is not None:
            p = self.on.push
            triggers.append(
                PushTrigger(
                    branches=tuple(p.branches),
                    branches_ignore=tuple(p.branches_ignore),
                    tags=tuple(p.tags),
                    paths=tuple(p.paths),
                    paths_ignore=tuple(p.paths_ignore),
                )
            )
        triggers.extend(ScheduleTrigger(cron=s.cron) for s in self.on.schedule)
        if self.on.manual is not None:
            triggers.append(ManualTrigger())

        if self.permissions == "read-all":
            permissions = {"*": "read"}
        elif self.permissions == "write-all":
            permissions = {"*": "write"}
        else:
            permissions = dict(self.permissions)

        jobs: Dict[str, Job] = {}
        for job_name, spec in self.jobs.items():
            steps = []
            for i, s in enumerate(spec.steps, 1):
                steps.append(
                    Step(
                        name=s.name or s.uses or f"step-{i}",
                        run=s.run,
                        uses=s.uses,
                        with_=dict(s.with_),
                        outputs=tuple(s.outputs),
                        env=dict(s.env),
                        cwd=s.cwd,
                        timeout=s.timeout,
                    )
                )
            jobs[job_name] = Job(
                name=job_name,
                steps=steps,
                needs=list(spec.needs),
                environment=spec.environment,
                runs_on=spec.runs_on,
                env=dict(spec.env),
                paths=spec.paths,
                timeout=spec.timeout,
            )

        return WorkflowDefinition(
            name=self.name or default_name,
            jobs=jobs,
            triggers=triggers,
            permissions=permissions,
            source=source,
        )


# -------------------- Loading --------------------

def parse_workflow(data: Any, *, default_name: str = "workflow", source: Optional[str] = None) -> WorkflowDefinition:
    """Validate an already-parsed YAML document."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"Workflow {source or default_name} must be a mapping")
    # YAML 1.1 reads a bare `on` key as boolean true
    if True in data and "on" not in data:
        data = {("on" if k is True else k): v for k, v in data.items()}
    try:
        spec = WorkflowSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Workflow {source or default_name} is invalid",
            problems=validation_problems(e),
        ) from None
    return spec.to_definition(default_name, source)


def _load_python(path: Path) -> WorkflowDefinition:
    module_name = f"pipewright_workflow_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"Could not execute workflow file {path}: {type(e).__name__}: {e}") from e

    definition = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        definition = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        definition = globals_dict["WORKFLOW"]

    if not isinstance(definition, WorkflowDefinition):
        raise ConfigurationError(
            f"{path.name} must define workflow() -> WorkflowDefinition or WORKFLOW = wf(...)"
        )
    if definition.source is None:
        definition.source = str(path)
    return definition


def load_workflow(path: Union[str, Path]) -> WorkflowDefinition:
    """
    Load one workflow file.

    `.yml` / `.yaml` files are parsed with PyYAML; `.py` files must define
    either workflow() -> WorkflowDefinition or WORKFLOW.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".py":
        return _load_python(wf_path)
    if wf_path.suffix not in YAML_SUFFIXES:
        raise ConfigurationError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    try:
        data = yaml.safe_load(wf_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse {wf_path.name}: {e}") from None
    logger.debug("loaded workflow file %s", wf_path)
    return parse_workflow(data, default_name=wf_path.stem, source=str(wf_path))


def find_workflow_files(root: Union[str, Path] = ".") -> List[Path]:
    """
    Find all workflow files under `root`: every YAML or Python file in
    .pipewright/workflows/, plus *_workflow.py files next to it.
    """
    base = Path(root)
    found: List[Path] = []
    wf_dir = base / WORKFLOW_DIR
    if wf_dir.is_dir():
        for path in sorted(wf_dir.iterdir()):
            if path.is_file() and path.suffix in YAML_SUFFIXES + (".py",):
                found.append(path)
    found.extend(sorted(base.glob("*_workflow.py")))
    return found


def load_event(path: Union[str, Path]) -> Event:
    """Read an Event from a JSON or YAML file."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Could not read event file {p}: {e}") from None
    try:
        data = json.loads(text) if p.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not parse event file {p}: {e}") from None
    if not isinstance(data, dict):
        raise ConfigurationError(f"Event file {p} must hold a mapping")
    try:
        return Event.from_dict(data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid event in {p}: {e}") from None
