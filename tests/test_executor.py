"""Step execution: shell steps, outputs, env passing, actions, timeouts, cancellation."""

from __future__ import annotations

import threading
import time
from collections.abc import Generator
from pathlib import Path

import pytest

from pipewright.dsl import job, sh, uses
from pipewright.errors import ExecutionError, JobCancelled, StepFailure, StepTimeout
from pipewright.executor import StepExecutor
from pipewright.model import Job, RunInstance
from pipewright.runners import LocalRunnerPool, RunnerHandle
from tests.conftest import push_event, workflow_of


@pytest.fixture
def runner(runner_pool: LocalRunnerPool) -> Generator[RunnerHandle, None, None]:
    handle = runner_pool.acquire_runner("local", timeout=1)
    yield handle
    runner_pool.release_runner(handle)


def run_for(*jobs: Job) -> RunInstance:
    return RunInstance(event=push_event("refs/heads/main"), workflow=workflow_of(*jobs))


class TestShellSteps:
    def test_declared_outputs_are_recorded(self, step_executor: StepExecutor, runner: RunnerHandle) -> None:
        j = job(
            "build",
            sh(
                "meta",
                'echo "version=1.2" >> "$PIPEWRIGHT_OUTPUT"; echo "junk=x" >> "$PIPEWRIGHT_OUTPUT"',
                outputs=["version", "missing"],
            ),
        )
        run = run_for(j)

        step_executor.run_job(j, run, runner)

        assert run.outputs == {"build.meta.version": "1.2"}

    def test_expressions_are_rendered(self, step_executor: StepExecutor, runner: RunnerHandle) -> None:
        j = job(
            "build",
            sh("meta", 'echo "version=7" >> "$PIPEWRIGHT_OUTPUT"', outputs=["version"]),
            sh(
                "use",
                'echo "${{ outputs.build.meta.version }} ${{ event.branch }} $TARGET" > out.txt',
                env={"TARGET": "${{ event.repository }}"},
            ),
        )
        run = run_for(j)

        step_executor.run_job(j, run, runner)

        assert (runner.workspace / "out.txt").read_text().strip() == "7 main acme/site"

    def test_env_file_reaches_later_steps(self, step_executor: StepExecutor, runner: RunnerHandle) -> None:
        j = job(
            "build",
            sh("export", 'echo "GREETING=hello" >> "$PIPEWRIGHT_ENV"'),
            sh("read", 'echo "$GREETING $JOB_LEVEL" > greeting.txt'),
            env={"JOB_LEVEL": "from-job"},
        )
        step_executor.run_job(j, run_for(j), runner)
        assert (runner.workspace / "greeting.txt").read_text().strip() == "hello from-job"

    def test_failure_stops_the_job(self, step_executor: StepExecutor, runner: RunnerHandle) -> None:
        j = job(
            "build",
            sh("before", "touch before.txt"),
            sh("boom", "echo oops >&2; exit 3"),
            sh("after", "touch after.txt"),
        )

        with pytest.raises(StepFailure) as exc:
            step_executor.run_job(j, run_for(j), runner)

        assert exc.value.exit_code == 3
        assert exc.value.step == "boom"
        assert exc.value.job == "build"
        assert "oops" in exc.value.stderr
        assert exc.value.kind == "execution"
        assert (runner.workspace / "before.txt").exists()
        assert not (runner.workspace / "after.txt").exists()

    def test_outputs_of_failed_step_are_not_recorded(
        self, step_executor: StepExecutor, runner: RunnerHandle
    ) -> None:
        j = job("build", sh("meta", 'echo "v=1" >> "$PIPEWRIGHT_OUTPUT"; exit 1', outputs=["v"]))
        run = run_for(j)
        with pytest.raises(StepFailure):
            step_executor.run_job(j, run, runner)
        assert run.outputs == {}

    def test_missing_cwd(self, step_executor: StepExecutor, runner: RunnerHandle) -> None:
        j = job("build", sh("s", "true", cwd="nope"))
        with pytest.raises(ExecutionError):
            step_executor.run_job(j, run_for(j), runner)


class TestTimeouts:
    def test_step_timeout_kills_the_command(self, step_executor: StepExecutor, runner: RunnerHandle) -> None:
        j = job("build", sh("slow", "sleep 5", timeout=0.3))
        started = time.monotonic()
        with pytest.raises(StepTimeout) as exc:
            step_executor.run_job(j, run_for(j), runner)
        assert time.monotonic() - started < 4
        assert exc.value.scope == "step"
        assert exc.value.kind == "timeout"

    def test_job_timeout_covers_all_steps(self, step_executor: StepExecutor, runner: RunnerHandle) -> None:
        j = job("build", sh("a", "sleep 0.2"), sh("b", "sleep 5"), timeout=0.5)
        with pytest.raises(StepTimeout) as exc:
            step_executor.run_job(j, run_for(j), runner)
        assert exc.value.scope == "job"
        assert exc.value.step == "b"

    def test_default_step_timeout(self, artifact_store, source_tree: Path, runner: RunnerHandle) -> None:
        executor = StepExecutor(artifact_store, source_root=source_tree, step_timeout=0.3, poll_interval=0.01)
        j = job("build", sh("slow", "sleep 5"))
        with pytest.raises(StepTimeout):
            executor.run_job(j, run_for(j), runner)


class TestCancellation:
    def test_cancel_before_first_step(self, step_executor: StepExecutor, runner: RunnerHandle) -> None:
        j = job("build", sh("s", "touch ran.txt"))
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(JobCancelled):
            step_executor.run_job(j, run_for(j), runner, cancel)
        assert not (runner.workspace / "ran.txt").exists()

    def test_running_command_is_killed_after_grace(
        self, step_executor: StepExecutor, runner: RunnerHandle
    ) -> None:
        j = job("build", sh("slow", "sleep 10"))
        cancel = threading.Event()
        threading.Timer(0.2, cancel.set).start()
        started = time.monotonic()
        with pytest.raises(JobCancelled):
            step_executor.run_job(j, run_for(j), runner, cancel)
        assert time.monotonic() - started < 5

    def test_command_finishing_within_grace_completes(
        self, artifact_store, source_tree: Path, runner: RunnerHandle
    ) -> None:
        executor = StepExecutor(artifact_store, source_root=source_tree, cancel_grace=5, poll_interval=0.01)
        j = job("build", sh("short", "sleep 0.3; touch done.txt"), sh("next", "touch next.txt"))
        cancel = threading.Event()
        threading.Timer(0.1, cancel.set).start()
        with pytest.raises(JobCancelled) as exc:
            executor.run_job(j, run_for(j), runner, cancel)
        assert (runner.workspace / "done.txt").exists()
        assert exc.value.step == "next"
        assert not (runner.workspace / "next.txt").exists()


class TestActions:
    def test_checkout_and_upload(self, step_executor: StepExecutor, runner: RunnerHandle) -> None:
        j = job(
            "build",
            uses("checkout"),
            uses("upload-artifact", name="site", path="site"),
        )
        run = run_for(j)

        artifacts = step_executor.run_job(j, run, runner)

        assert (runner.workspace / "README.md").read_text() == "acme\n"
        digest = artifacts["site"]
        assert run.outputs["build.upload-artifact.digest"] == digest
        assert step_executor.store.exists(digest)

    def test_download_in_dependent_job(
        self, step_executor: StepExecutor, runner_pool: LocalRunnerPool
    ) -> None:
        build = job("build", uses("checkout"), uses("upload-artifact", name="site", path="site"))
        publish = job("publish", uses("download-artifact", name="site", path="public"), needs=["build"])
        run = run_for(build, publish)

        first = runner_pool.acquire_runner("local", timeout=1)
        try:
            artifacts = step_executor.run_job(build, run, first)
        finally:
            runner_pool.release_runner(first)
        run.artifacts.update(artifacts)

        second = runner_pool.acquire_runner("local", timeout=1)
        try:
            step_executor.run_job(publish, run, second)
            assert (second.workspace / "public" / "index.html").read_text() == "<h1>v1</h1>\n"
        finally:
            runner_pool.release_runner(second)

    def test_upload_outside_workspace_is_refused(
        self, step_executor: StepExecutor, runner: RunnerHandle
    ) -> None:
        j = job("build", uses("upload-artifact", name="secrets", path="../../etc"))
        with pytest.raises(ExecutionError) as exc:
            step_executor.run_job(j, run_for(j), runner)
        assert "escapes" in exc.value.message

    def test_upload_of_missing_path(self, step_executor: StepExecutor, runner: RunnerHandle) -> None:
        j = job("build", uses("upload-artifact", name="site", path="dist"))
        with pytest.raises(ExecutionError):
            step_executor.run_job(j, run_for(j), runner)

    def test_deploy_without_publisher(self, step_executor: StepExecutor, runner: RunnerHandle) -> None:
        j = job(
            "ship",
            uses("checkout"),
            uses("upload-artifact", name="site", path="site"),
            uses("deploy", artifact="site"),
            environment="prod",
        )
        with pytest.raises(ExecutionError) as exc:
            step_executor.run_job(j, run_for(j), runner)
        assert exc.value.step == "deploy"
