# executor.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from . import actions, expressions
from .artifacts import ArtifactStore
from .deploy import DeploymentPublisher
from .errors import ExecutionError, JobCancelled, PipewrightError, StepFailure, StepTimeout
from .model import Job, RunInstance, Step
from .runners import RunnerHandle
from .ui.console import get_console

logger = logging.getLogger(__name__)

OUTPUT_TAIL = 4000


@dataclass
class StepInputs:
    """What a step may read besides the runner: the run, its job and the job's clock."""
    job: Job
    run: RunInstance
    artifacts: Dict[str, str] = field(default_factory=dict)  # uploaded earlier in this job
    deadline: Optional[float] = None  # time.monotonic() value for the job timeout
    cancel: threading.Event = field(default_factory=threading.Event)


@dataclass
class StepResult:
    outputs: Dict[str, str] = field(default_factory=dict)
    artifacts: Dict[str, str] = field(default_factory=dict)
    exit_code: int = 0


def _read_pairs(path: Path) -> List[Tuple[str, str]]:
    """Parse `name=value` lines written by a step."""
    if not path.exists():
        return []
    pairs = []
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        if "=" not in line:
            continue
        name, value = line.split("=", 1)
        name = name.strip()
        if name:
            pairs.append((name, value))
    return pairs


def _kill(proc: subprocess.Popen) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


class StepExecutor:
    """
    Runs the steps of one job, strictly in order, on one leased runner.

    A failing step stops the job right away; what earlier steps did to the
    workspace stays as it is.
    """

    def __init__(
        self,
        store: ArtifactStore,
        publisher: Optional[DeploymentPublisher] = None,
        *,
        source_root: str | Path = ".",
        step_timeout: float = 600.0,
        job_timeout: float = 3600.0,
        cancel_grace: float = 10.0,
        poll_interval: float = 0.05,
    ):
        self.store = store
        self.publisher = publisher
        self.source_root = Path(source_root)
        self.step_timeout = step_timeout
        self.job_timeout = job_timeout
        self.cancel_grace = cancel_grace
        self.poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def run_job(
        self,
        job: Job,
        run: RunInstance,
        runner: RunnerHandle,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[str, str]:
        """
        Execute every step of `job`. Returns the artifacts the job uploaded.

        Raises StepFailure / StepTimeout / ExecutionError on failure and
        JobCancelled when cancellation is noticed between steps.
        """
        cancel = cancel or threading.Event()
        timeout = job.timeout or self.job_timeout
        inputs = StepInputs(
            job=job,
            run=run,
            deadline=time.monotonic() + timeout,
            cancel=cancel,
        )
        runner.env.update(
            {k: str(expressions.render(v, run.outputs, run.event)) for k, v in job.env.items()}
        )
        console = get_console()

        for step in job.steps:
            if cancel.is_set():
                raise JobCancelled("run cancelled", job=job.name, step=step.name)
            if time.monotonic() >= inputs.deadline:
                raise StepTimeout(job=job.name, step=step.name, seconds=timeout, scope="job")

            console.print_step(job.name, step.name)
            result = self.execute(step, runner, inputs)
            # only a finished step's outputs become visible
            run.record_outputs(job.name, step.name, result.outputs)
            inputs.artifacts.update(result.artifacts)

        return dict(inputs.artifacts)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def execute(self, step: Step, runner: RunnerHandle, inputs: StepInputs) -> StepResult:
        job = inputs.job
        try:
            if step.uses is not None:
                return self._run_action(step, runner, inputs)
            return self._run_command(step, runner, inputs)
        except PipewrightError as e:
            if e.job is None:
                e.job = job.name
            if e.step is None:
                e.step = step.name
            raise
        except Exception as e:
            logger.debug("step %s/%s crashed", job.name, step.name, exc_info=True)
            raise ExecutionError(
                f"{type(e).__name__}: {e}",
                job=job.name,
                step=step.name,
            ) from e

    def _step_env(self, step: Step, runner: RunnerHandle, inputs: StepInputs) -> Dict[str, str]:
        run = inputs.run
        env = os.environ.copy()
        env.update(runner.env)
        env.update({k: str(expressions.render(v, run.outputs, run.event)) for k, v in step.env.items()})
        env.update(
            {
                "CI": "true",
                "PIPEWRIGHT_RUN_ID": run.id,
                "PIPEWRIGHT_WORKFLOW": run.workflow.name,
                "PIPEWRIGHT_JOB": inputs.job.name,
                "PIPEWRIGHT_STEP": step.name,
                "PIPEWRIGHT_REPOSITORY": run.event.repository,
                "PIPEWRIGHT_REF": run.event.ref,
                "PIPEWRIGHT_ACTOR": run.event.actor,
                "PIPEWRIGHT_WORKSPACE": str(runner.workspace),
            }
        )
        return env

    def _run_action(self, step: Step, runner: RunnerHandle, inputs: StepInputs) -> StepResult:
        run = inputs.run
        rendered = replace(step, with_=expressions.render(dict(step.with_), run.outputs, run.event))
        action = actions.get_action(step.uses, job=inputs.job.name, step=step.name)
        params = actions.parse_params(rendered, job=inputs.job.name)
        ctx = actions.ActionContext(
            job=inputs.job,
            step=step,
            run=run,
            workspace=runner.workspace,
            store=self.store,
            publisher=self.publisher,
            source_root=self.source_root,
            artifacts=inputs.artifacts,
        )
        result = action.handler(ctx, params)
        return StepResult(outputs=dict(result.outputs), artifacts=dict(result.artifacts))

    def _run_command(self, step: Step, runner: RunnerHandle, inputs: StepInputs) -> StepResult:
        job, run = inputs.job, inputs.run
        cwd = (runner.workspace / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise ExecutionError(f"cwd not found: {cwd}", job=job.name, step=step.name)

        cmd = expressions.render(step.run, run.outputs, run.event)
        env = self._step_env(step, runner, inputs)

        fd_out, output_file = tempfile.mkstemp(prefix="pipewright-output-")
        fd_env, env_file = tempfile.mkstemp(prefix="pipewright-env-")
        os.close(fd_out)
        os.close(fd_env)
        env["PIPEWRIGHT_OUTPUT"] = output_file
        env["PIPEWRIGHT_ENV"] = env_file

        try:
            code, stdout, stderr = self._wait(cmd, cwd, env, step, inputs)
            if code != 0:
                raise StepFailure(
                    job=job.name,
                    step=step.name,
                    cmd=step.run or "",
                    exit_code=code,
                    stdout=stdout[-OUTPUT_TAIL:],
                    stderr=stderr[-OUTPUT_TAIL:],
                )
            declared = set(step.outputs)
            outputs = {k: v for k, v in _read_pairs(Path(output_file)) if k in declared}
            # exported variables are seen by the steps after this one
            runner.env.update(dict(_read_pairs(Path(env_file))))
        finally:
            Path(output_file).unlink(missing_ok=True)
            Path(env_file).unlink(missing_ok=True)

        if stdout:
            logger.debug("[%s/%s] stdout:\n%s", job.name, step.name, stdout[-OUTPUT_TAIL:])
        return StepResult(outputs=outputs, exit_code=code)

    def _wait(
        self,
        cmd: str,
        cwd: Path,
        env: Dict[str, str],
        step: Step,
        inputs: StepInputs,
    ) -> Tuple[int, str, str]:
        """
        Run `cmd` and wait for it, enforcing the step/job timeouts and the
        cancellation grace period.
        """
        job = inputs.job
        started = time.monotonic()
        step_limit = step.timeout or self.step_timeout
        step_deadline = started + step_limit
        cancel_deadline: Optional[float] = None

        proc = subprocess.Popen(
            cmd,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_interval)
                return proc.returncode, stdout or "", stderr or ""
            except subprocess.TimeoutExpired:
                pass

            now = time.monotonic()
            if now >= step_deadline:
                _kill(proc)
                proc.communicate()
                raise StepTimeout(job=job.name, step=step.name, seconds=step_limit, scope="step")
            if inputs.deadline is not None and now >= inputs.deadline:
                _kill(proc)
                proc.communicate()
                raise StepTimeout(
                    job=job.name,
                    step=step.name,
                    seconds=job.timeout or self.job_timeout,
                    scope="job",
                )
            if inputs.cancel.is_set():
                if cancel_deadline is None:
                    cancel_deadline = now + self.cancel_grace
                elif now >= cancel_deadline:
                    _kill(proc)
                    proc.communicate()
                    raise JobCancelled(
                        f"killed after {self.cancel_grace:g}s cancellation grace",
                        job=job.name,
                        step=step.name,
                    )
