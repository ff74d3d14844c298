"""Shared pytest fixtures: engine wiring on temporary directories, quiet console."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from pipewright.artifacts import ArtifactStore
from pipewright.dag import JobGraph, build
from pipewright.dsl import on_manual, on_push, wf
from pipewright.engine import Engine
from pipewright.executor import StepExecutor
from pipewright.model import Event, Job, RunInstance, WorkflowDefinition
from pipewright.runners import BackoffConfig, LocalRunnerPool
from pipewright.scheduler import Scheduler
from pipewright.settings import EngineConfig
from pipewright.store import RunStore
from pipewright.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console() -> Generator[None, None, None]:
    """Keep job chatter out of test output."""
    set_console(Console(quiet=True))
    yield
    set_console(Console(quiet=True))


# =============================================================================
# Helpers
# =============================================================================


def push_event(ref: str = "refs/heads/main", paths: tuple[str, ...] = (), **kwargs) -> Event:
    return Event(repository="acme/site", ref=ref, changed_paths=paths, actor="dev", **kwargs)


def manual_event(ref: str = "refs/heads/main") -> Event:
    return Event(repository="acme/site", ref=ref, actor="dev", kind="manual")


def workflow_of(*jobs: Job, name: str = "ci") -> WorkflowDefinition:
    return wf(*jobs, name=name, on=[on_push(), on_manual()])


def planned(*jobs: Job, event: Event | None = None) -> tuple[RunInstance, JobGraph]:
    definition = workflow_of(*jobs)
    return RunInstance(event=event or push_event(), workflow=definition), build(definition)


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def run_in_thread(target: Callable[[], object]) -> threading.Thread:
    t = threading.Thread(target=target, daemon=True)
    t.start()
    return t


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """A small repository checkout with a static site."""
    src = tmp_path / "src"
    (src / "site").mkdir(parents=True)
    (src / "site" / "index.html").write_text("<h1>v1</h1>\n")
    (src / "README.md").write_text("acme\n")
    return src


@pytest.fixture
def config(tmp_path: Path, source_tree: Path) -> EngineConfig:
    return EngineConfig(
        max_workers=4,
        runners=2,
        runner_timeout=2.0,
        runner_retries=1,
        backoff_initial=0.01,
        backoff_max=0.05,
        cancel_grace=0.1,
        tick=0.02,
        state_dir=str(tmp_path / "state"),
        source_root=str(source_tree),
    )


@pytest.fixture
def engine(config: EngineConfig) -> Generator[Engine, None, None]:
    with Engine(config, store=RunStore("sqlite://")) as eng:
        yield eng


@pytest.fixture
def artifact_store() -> ArtifactStore:
    return ArtifactStore()


@pytest.fixture
def runner_pool(tmp_path: Path) -> Generator[LocalRunnerPool, None, None]:
    pool = LocalRunnerPool(size=2, work_root=tmp_path / "runners")
    yield pool
    pool.close()


@pytest.fixture
def step_executor(artifact_store: ArtifactStore, source_tree: Path) -> StepExecutor:
    return StepExecutor(artifact_store, source_root=source_tree, cancel_grace=0.1, poll_interval=0.01)


@pytest.fixture
def scheduler(step_executor: StepExecutor, runner_pool: LocalRunnerPool) -> Generator[Scheduler, None, None]:
    with Scheduler(
        step_executor,
        runner_pool,
        max_workers=4,
        runner_timeout=2.0,
        backoff=BackoffConfig(attempts=1, initial=0.01),
        tick=0.02,
    ) as sched:
        yield sched
