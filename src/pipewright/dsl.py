# dsl.py
# Python workflow files: helpers that build the same model the YAML loader does.
from __future__ import annotations

import itertools
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import Job, ManualTrigger, PushTrigger, ScheduleTrigger, Step, Trigger, WorkflowDefinition

JobsArg = Union[Job, Sequence[Job]]


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    outputs: Sequence[str] = (),
    env: Optional[Mapping[str, Any]] = None,
    timeout: float | None = None,
) -> Step:
    """Shell step. Declared `outputs` are read back from $PIPEWRIGHT_OUTPUT."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        outputs=tuple(outputs),
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
    )


def uses(action: str, *, step: str | None = None, **params: Any) -> Step:
    """Create a built-in action step: uses("upload-artifact", name="site", path="public").

    The step is named after the action unless `step` is given.
    """
    return Step(name=step or action, uses=action, with_=params)


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,
    steps_list: Optional[Sequence[Step]] = None,
    needs: Optional[Sequence[str]] = None,
    environment: Optional[str] = None,
    runs_on: str = "local",
    env: Optional[Mapping[str, Any]] = None,
    paths: Optional[Sequence[str]] = None,
    timeout: Optional[float] = None,
    cwd: str | None = None,
) -> Job:
    """
    job("test", sh("pytest", "pytest -q"), needs=["lint"])

    `steps_list` is prepended to the positional steps. `cwd` becomes the
    working directory of every shell step that does not set its own.
    """
    ordered = [*(steps_list or ()), *steps]
    if not ordered:
        raise ValueError(f"job({name!r}) must have at least one step")
    if cwd is not None:
        ordered = [replace(s, cwd=cwd) if s.run is not None and s.cwd is None else s for s in ordered]

    return Job(
        name=name,
        steps=ordered,
        needs=list(needs or ()),
        environment=environment,
        runs_on=runs_on,
        env={k: str(v) for k, v in (env or {}).items()},
        paths=list(paths) if paths is not None else None,
        timeout=timeout,
    )


class JobBuilder:
    """
    Fluent alternative to job():

        build("deploy").depends_on("build").use("deploy", artifact="site").deploys_to("prod").build()
    """

    def __init__(self, name: str):
        self.name = name
        self._steps: List[Step] = []
        self._options: Dict[str, Any] = {"needs": [], "env": {}}

    def depends_on(self, *job_names: str) -> JobBuilder:
        self._options["needs"].extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, outputs: Sequence[str] = ()) -> JobBuilder:
        self._steps.append(sh(name, run, cwd=cwd, outputs=outputs))
        return self

    def use(self, action: str, *, step: str | None = None, **params: Any) -> JobBuilder:
        self._steps.append(uses(action, step=step, **params))
        return self

    def with_env(self, **env: Any) -> JobBuilder:
        self._options["env"].update(env)
        return self

    def with_paths(self, *patterns: str) -> JobBuilder:
        self._options["paths"] = patterns
        return self

    def deploys_to(self, environment: str) -> JobBuilder:
        self._options["environment"] = environment
        return self

    def runs_on(self, label: str) -> JobBuilder:
        self._options["runs_on"] = label
        return self

    def timeout(self, seconds: float) -> JobBuilder:
        self._options["timeout"] = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"job {self.name!r} has no steps; add one with define_step() or use()")
        return job(self.name, *self._steps, **self._options)


def build(name: str) -> JobBuilder:
    return JobBuilder(name)


class Matrix:
    """
    Expands one job template over every combination of the axis values.

        matrix("py", ["3.11", "3.12"]).jobs(lambda v: job(f"test-{v}", sh(...)))
        matrix("py", ["3.11"]).axis("os", ["linux", "mac"]).jobs(lambda c: job(f"t-{c['py']}-{c['os']}", ...))

    With a single axis the builder gets the bare value, otherwise a dict.
    """

    def __init__(self, key: str, values: Iterable[Any]):
        self.axes: Dict[str, List[Any]] = {key: list(values)}

    def axis(self, key: str, values: Iterable[Any]) -> Matrix:
        self.axes[key] = list(values)
        return self

    def combinations(self) -> List[Dict[str, Any]]:
        keys = list(self.axes)
        return [dict(zip(keys, combo)) for combo in itertools.product(*self.axes.values())]

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        if len(self.axes) == 1:
            [values] = self.axes.values()
            return [builder(v) for v in values]
        return [builder(c) for c in self.combinations()]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_push(
    *branches: str,
    tags: Sequence[str] = (),
    paths: Sequence[str] = (),
    branches_ignore: Sequence[str] = (),
    paths_ignore: Sequence[str] = (),
) -> PushTrigger:
    """Push trigger; no branches and no tags means every ref."""
    return PushTrigger(
        branches=tuple(branches),
        branches_ignore=tuple(branches_ignore),
        tags=tuple(tags),
        paths=tuple(paths),
        paths_ignore=tuple(paths_ignore),
    )


def on_schedule(cron: str) -> ScheduleTrigger:
    return ScheduleTrigger(cron=cron)


def on_manual() -> ManualTrigger:
    return ManualTrigger()


# ---------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------

def wf(
    *jobs: JobsArg,
    name: str = "workflow",
    on: Sequence[Trigger] = (),
    permissions: Optional[Mapping[str, str]] = None,
) -> WorkflowDefinition:
    """
    Assemble a workflow. Lists (matrix expansions) are flattened in place.

    A Python workflow file exposes the result either as a function:

        def workflow():
            return wf(job("lint", ...), job("test", ..., needs=["lint"]), name="ci", on=[on_push("main")])

    or as a module constant:

        WORKFLOW = wf(job("nightly", ...), on=[on_schedule("0 3 * * *")])
    """
    by_name: Dict[str, Job] = {}
    duplicates: List[str] = []
    for j in itertools.chain.from_iterable([x] if isinstance(x, Job) else x for x in jobs):
        if j.name in by_name:
            duplicates.append(j.name)
        by_name[j.name] = j
    if duplicates:
        raise ValueError(f"Duplicate job names: {sorted(set(duplicates))}")

    return WorkflowDefinition(
        name=name,
        jobs=by_name,
        triggers=list(on),
        permissions=dict(permissions or {}),
    )
