# scheduler.py
from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from fnmatch import fnmatch
from typing import TYPE_CHECKING, Deque, Dict, Iterator, List, Optional, Sequence, Tuple

from .dag import JobGraph
from .errors import JobCancelled, PipewrightError
from .executor import StepExecutor
from .model import Job, JobStatus, RunInstance, RunStatus
from .runners import BackoffConfig, RunnerPool, acquire_with_retry
from .ui.console import get_console

if TYPE_CHECKING:
    from .store import RunStore

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Per-environment exclusion
# ----------------------------------------------------------------------

class EnvironmentGate:
    """
    FIFO mutual exclusion per environment: jobs that deploy to the same
    environment run one at a time, in the order they asked.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queues: Dict[str, Deque[object]] = {}

    def waiting(self, environment: str) -> int:
        with self._cond:
            return len(self._queues.get(environment, ()))

    @contextmanager
    def hold(
        self,
        environment: str,
        cancel: Optional[threading.Event] = None,
        tick: float = 0.1,
    ) -> Iterator[None]:
        ticket = object()
        with self._cond:
            queue = self._queues.setdefault(environment, deque())
            queue.append(ticket)
            while queue[0] is not ticket:
                if cancel is not None and cancel.is_set():
                    queue.remove(ticket)
                    self._cond.notify_all()
                    raise JobCancelled(f"cancelled while waiting for environment '{environment}'")
                self._cond.wait(tick)
        try:
            yield
        finally:
            with self._cond:
                queue.popleft()
                if not queue:
                    self._queues.pop(environment, None)
                self._cond.notify_all()


# ----------------------------------------------------------------------
# Job selection (diff based)
# ----------------------------------------------------------------------

def _matches_any(path: str, patterns: List[str]) -> bool:
    return any(fnmatch(path, p) for p in patterns)


def select_jobs(run: RunInstance, graph: JobGraph) -> None:
    """
    Skip (by design) jobs whose `paths` match none of the event's changed
    paths. Jobs without `paths` always run.
    """
    changed = set(run.event.changed_paths)
    for name in graph.topological_order():
        job = graph.jobs[name]
        if not job.paths:
            continue
        if any(_matches_any(f, job.paths) for f in changed):
            logger.debug("run %s: %s selected (matched %s)", run.id, name, job.paths)
            continue
        run.transition(name, JobStatus.SKIPPED, skip_reason=f"no changed path matches {job.paths}")


@dataclass
class _ActiveRun:
    run: RunInstance
    graph: JobGraph
    cancel: threading.Event


class Scheduler:
    """
    Drives RunInstances to completion.

    One worker pool bounds job concurrency across every run this scheduler
    drives. A job waits only for its dependencies, a worker, its
    environment's turn and a runner.
    """

    def __init__(
        self,
        executor: StepExecutor,
        pool: RunnerPool,
        *,
        max_workers: Optional[int] = None,
        runner_timeout: float = 30.0,
        backoff: BackoffConfig = BackoffConfig(),
        tick: float = 0.2,
        store: Optional[RunStore] = None,
        gate: Optional[EnvironmentGate] = None,
    ):
        self.executor = executor
        self.pool = pool
        self.runner_timeout = runner_timeout
        self.backoff = backoff
        self.tick = tick
        self.store = store
        self.gate = gate or EnvironmentGate()
        self._workers = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipewright-job")
        self._lock = threading.Lock()
        self._active: Dict[str, _ActiveRun] = {}

    def __enter__(self) -> Scheduler:
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    def shutdown(self) -> None:
        with self._lock:
            active = list(self._active)
        for run_id in active:
            self.cancel(run_id)
        self._workers.shutdown(wait=True)

    def active_runs(self) -> List[str]:
        with self._lock:
            return list(self._active)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, run_id: str) -> bool:
        """
        Cancel a run this scheduler is driving. Pending and runnable jobs are
        cancelled at once; running jobs stop at their next step boundary.
        Safe to call repeatedly. Returns False for runs not active here.
        """
        with self._lock:
            active = self._active.get(run_id)
        if active is None:
            return False
        self._cancel(active)
        return True

    def _cancel(self, active: _ActiveRun) -> None:
        run = active.run
        if run.terminal:
            return
        if not active.cancel.is_set():
            logger.info("run %s: cancellation requested", run.id)
        active.cancel.set()
        with run._lock:
            run.cancel_requested = True
            for name, jr in run.jobs.items():
                if jr.status in (JobStatus.PENDING, JobStatus.RUNNABLE):
                    run.transition(name, JobStatus.CANCELLED, error_kind="cancelled", error_message="run cancelled")

    # ------------------------------------------------------------------
    # Driving runs
    # ------------------------------------------------------------------

    def run(self, run: RunInstance, graph: JobGraph) -> RunInstance:
        active = _ActiveRun(run=run, graph=graph, cancel=threading.Event())
        with self._lock:
            self._active[run.id] = active
        try:
            self._drive(active)
        finally:
            with self._lock:
                self._active.pop(run.id, None)
        return run

    def run_many(self, planned: Sequence[Tuple[RunInstance, JobGraph]]) -> List[RunInstance]:
        """Drive several runs concurrently; their jobs share the worker pool."""
        if not planned:
            return []
        if len(planned) == 1:
            return [self.run(*planned[0])]
        with ThreadPoolExecutor(max_workers=len(planned), thread_name_prefix="pipewright-run") as drivers:
            futures = [drivers.submit(self.run, run, graph) for run, graph in planned]
            return [f.result() for f in futures]

    def _drive(self, active: _ActiveRun) -> None:
        run, graph = active.run, active.graph
        run.start()
        select_jobs(run, graph)
        self._save(run)

        in_flight: Dict[Future, str] = {}
        submitted = set()

        while True:
            if active.cancel.is_set() or run.cancel_requested or self._cancel_requested_elsewhere(run):
                self._cancel(active)

            self._resolve_pending(run, graph)

            for name in graph.topological_order():
                if name in submitted or run.jobs[name].status is not JobStatus.RUNNABLE:
                    continue
                submitted.add(name)
                fut = self._workers.submit(self._execute_job, run, graph.jobs[name], active.cancel)
                in_flight[fut] = name

            if not in_flight:
                break

            done, _ = wait(list(in_flight), timeout=self.tick, return_when=FIRST_COMPLETED)
            for fut in done:
                name = in_flight.pop(fut)
                exc = fut.exception()
                if exc is not None:
                    # _execute_job records its own failures; this is a bug guard
                    logger.error("run %s: job %s crashed the worker: %r", run.id, name, exc)
                    run.transition(name, JobStatus.FAILED, error_kind="execution", error_message=repr(exc))
                self._report_job(run, name)
            if done:
                self._save(run)

        run.finish(self._overall(run, active.cancel.is_set()))
        logger.info("run %s finished: %s", run.id, run.status.value)
        self._save(run)

    def _resolve_pending(self, run: RunInstance, graph: JobGraph) -> None:
        """
        Promote pending jobs whose dependencies all succeeded, and skip those
        behind a failed, cancelled or skipped dependency. Walking in
        topological order propagates skips transitively in one pass.
        """
        for name in graph.topological_order():
            jr = run.jobs[name]
            if jr.status is not JobStatus.PENDING:
                continue
            deps = [run.jobs[d] for d in sorted(graph.dependencies[name])]

            blocked = [d for d in deps if d.blocks_dependents]
            if blocked:
                run.transition(
                    name,
                    JobStatus.SKIPPED,
                    skipped_by_failure=True,
                    skip_reason=f"dependency '{blocked[0].name}' {blocked[0].status.value}",
                )
                continue
            if not all(d.status.terminal for d in deps):
                continue
            by_design = [d for d in deps if d.status is JobStatus.SKIPPED]
            if by_design:
                run.transition(
                    name,
                    JobStatus.SKIPPED,
                    skip_reason=f"dependency '{by_design[0].name}' skipped",
                )
                continue
            run.transition(name, JobStatus.RUNNABLE)

    def _execute_job(self, run: RunInstance, job: Job, cancel: threading.Event) -> None:
        console = get_console()
        try:
            with ExitStack() as stack:
                if job.environment:
                    stack.enter_context(self.gate.hold(job.environment, cancel, self.tick))
                if cancel.is_set():
                    raise JobCancelled("run cancelled", job=job.name)
                runner = acquire_with_retry(
                    self.pool,
                    job.runs_on,
                    timeout=self.runner_timeout,
                    backoff=self.backoff,
                    should_stop=cancel.is_set,
                )
                stack.callback(self.pool.release_runner, runner)

                if not run.transition(job.name, JobStatus.RUNNING):
                    return
                console.print_job_start(job.name)
                artifacts = self.executor.run_job(job, run, runner, cancel)
                # recorded before the environment and runner are handed on
                run.complete(job.name, artifacts)
        except JobCancelled as e:
            run.transition(job.name, JobStatus.CANCELLED, error_kind=e.kind, error_message=e.message)
        except PipewrightError as e:
            run.transition(job.name, JobStatus.FAILED, error_kind=e.kind, error_message=e.message)
        except Exception as e:
            logger.exception("run %s: job %s raised", run.id, job.name)
            run.transition(
                job.name,
                JobStatus.FAILED,
                error_kind="execution",
                error_message=f"{type(e).__name__}: {e}",
            )

    @staticmethod
    def _overall(run: RunInstance, cancelled: bool) -> RunStatus:
        jobs = list(run.jobs.values())
        if cancelled and any(j.status is JobStatus.CANCELLED for j in jobs):
            return RunStatus.CANCELLED
        ok = all(
            j.status is JobStatus.SUCCEEDED or (j.status is JobStatus.SKIPPED and not j.skipped_by_failure)
            for j in jobs
        )
        return RunStatus.SUCCEEDED if ok else RunStatus.FAILED

    # ------------------------------------------------------------------
    # Store / console
    # ------------------------------------------------------------------

    def _cancel_requested_elsewhere(self, run: RunInstance) -> bool:
        if self.store is None or run.cancel_requested:
            return False
        try:
            return self.store.cancel_requested(run.id)
        except Exception:
            logger.warning("run %s: could not poll the store for cancellation", run.id, exc_info=True)
            return False

    def _save(self, run: RunInstance) -> None:
        if self.store is not None:
            self.store.save_run(run)

    @staticmethod
    def _report_job(run: RunInstance, name: str) -> None:
        jr = run.jobs[name]
        console = get_console()
        if jr.status is JobStatus.FAILED:
            console.print_failure(name, jr.error_kind or "error", jr.error_message or "")
        else:
            console.print_job_finished(name, jr.status.value)
