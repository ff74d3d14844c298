# engine.py
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from . import dag, schema, triggers
from .artifacts import ArtifactStore
from .dag import JobGraph
from .deploy import DeploymentPublisher, DirectoryTarget, EnvironmentRegistry, PublishResult, PublishTarget
from .errors import RunNotFound
from .executor import StepExecutor
from .model import Environment, Event, RunInstance, WorkflowDefinition
from .runners import BackoffConfig, LocalRunnerPool, RunnerPool
from .scheduler import Scheduler
from .settings import EngineConfig
from .store import RunStore
from .ui.console import get_console

logger = logging.getLogger(__name__)

Planned = Tuple[RunInstance, JobGraph]


class Engine:
    """
    Wires the trigger evaluator, graph builder, scheduler, executor,
    artifact store and publisher around one configuration.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        store: Optional[RunStore] = None,
        target: Optional[PublishTarget] = None,
        pool: Optional[RunnerPool] = None,
        artifacts: Optional[ArtifactStore] = None,
    ):
        self.config = config or EngineConfig.from_env()
        cfg = self.config
        self.store = store or RunStore(cfg.database_url)
        self.artifacts = artifacts or ArtifactStore(cfg.artifact_root)
        self.environments = EnvironmentRegistry(self.store)
        self.publisher = DeploymentPublisher(
            self.artifacts,
            target or DirectoryTarget(cfg.publish_root),
            self.environments,
        )
        self._owns_pool = pool is None
        self.pool = pool or LocalRunnerPool(cfg.runners, cfg.runner_labels, work_root=cfg.runner_root)
        self.executor = StepExecutor(
            self.artifacts,
            self.publisher,
            source_root=cfg.source_root,
            step_timeout=cfg.default_step_timeout,
            job_timeout=cfg.default_job_timeout,
            cancel_grace=cfg.cancel_grace,
        )
        self.scheduler = Scheduler(
            self.executor,
            self.pool,
            max_workers=cfg.max_workers,
            runner_timeout=cfg.runner_timeout,
            backoff=BackoffConfig(
                attempts=cfg.runner_retries,
                initial=cfg.backoff_initial,
                maximum=cfg.backoff_max,
            ),
            tick=cfg.tick,
            store=self.store,
        )
        self.definitions: List[WorkflowDefinition] = []
        self._lock = threading.Lock()
        self._runs: Dict[str, RunInstance] = {}

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.scheduler.shutdown()
        if self._owns_pool and isinstance(self.pool, LocalRunnerPool):
            self.pool.close()
        self.store.close()

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def load(self, paths: Iterable[Union[str, Path]]) -> List[WorkflowDefinition]:
        """Load and validate workflow files; they are used by later dispatches."""
        loaded = []
        for path in paths:
            definition = schema.load_workflow(path)
            self.validate(definition)
            loaded.append(definition)
        self.definitions.extend(loaded)
        return loaded

    def validate(self, definition: WorkflowDefinition) -> JobGraph:
        return dag.build(definition)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def plan(self, event: Event, definitions: Optional[Sequence[WorkflowDefinition]] = None) -> List[Planned]:
        """
        Create a RunInstance for every workflow the event triggers. All graphs
        are built before anything is recorded, so one broken workflow stops
        the whole dispatch.
        """
        defs = self.definitions if definitions is None else definitions
        matched = triggers.evaluate(event, defs)
        planned = [(run, dag.build(run.workflow)) for _, run in matched]
        for run, _ in planned:
            with self._lock:
                self._runs[run.id] = run
            self.store.save_run(run)
        return planned

    def execute(self, planned: Sequence[Planned]) -> List[RunInstance]:
        console = get_console()
        for run, graph in planned:
            console.print_run_started(
                repository=run.event.repository,
                workflow=run.workflow.name,
                job_count=len(graph.jobs),
                run_id=run.id,
            )
        return self.scheduler.run_many(planned)

    def dispatch(self, event: Event, definitions: Optional[Sequence[WorkflowDefinition]] = None) -> List[RunInstance]:
        """Evaluate, build and run every workflow `event` triggers. Blocks until they finish."""
        return self.execute(self.plan(event, definitions))

    def get_run(self, run_id: str) -> Dict[str, Any]:
        with self._lock:
            run = self._runs.get(run_id)
        if run is not None:
            return run.to_dict()
        report = self.store.get_run(run_id)
        if report is None:
            raise RunNotFound(run_id)
        return report

    def cancel(self, run_id: str) -> bool:
        """
        Request cancellation. Runs driven by this engine stop right away;
        runs in another process notice the stored flag on their next tick.
        Returns False when the run already finished.
        """
        with self._lock:
            run = self._runs.get(run_id)
        if run is not None:
            if run.terminal:
                return False
            if not self.scheduler.cancel(run_id):
                # planned but not started yet
                run.cancel_requested = True
            self.store.request_cancel(run_id)
            return True

        report = self.store.get_run(run_id)
        if report is None:
            raise RunNotFound(run_id)
        if report["finished_at"] is not None:
            return False
        return self.store.request_cancel(run_id)

    # ------------------------------------------------------------------
    # Environments
    # ------------------------------------------------------------------

    def environment(self, name: str) -> Environment:
        return self.environments.get(name)

    def rollback(self, environment: str, run_id: str) -> PublishResult:
        return self.publisher.rollback(environment, run_id)
