# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from . import actions, expressions
from .errors import ConfigurationError, CyclicDependency, UnknownJobReference
from .model import Job, WorkflowDefinition

PERMISSION_LEVELS = ("read", "write", "none")


@dataclass
class JobGraph:
    """
    Validated dependency graph of one workflow.

    dependents:   job -> jobs that need it
    dependencies: job -> jobs it needs
    layers:       topological levels; every job in a level can run in parallel
    """
    workflow: WorkflowDefinition
    dependents: Dict[str, Set[str]]
    dependencies: Dict[str, Set[str]]
    indegree: Dict[str, int]
    layers: List[List[str]]

    @property
    def jobs(self) -> Dict[str, Job]:
        return self.workflow.jobs

    def topological_order(self) -> List[str]:
        return [name for level in self.layers for name in level]

    def ancestors(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.dependencies[name])
        while stack:
            n = stack.pop()
            if n not in seen:
                seen.add(n)
                stack.extend(self.dependencies[n])
        return seen

    def descendants(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.dependents[name])
        while stack:
            n = stack.pop()
            if n not in seen:
                seen.add(n)
                stack.extend(self.dependents[n])
        return seen


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency (dependency -> dependents) and in-degrees from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must succeed BEFORE this job
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise UnknownJobReference(job.name, need, names)
            # Edge need -> job.name (need must run before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def find_cycle(adj: Dict[str, Set[str]]) -> Optional[List[str]]:
    """Return one cycle as [a, b, ..., a] in dependency order, or None."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in adj}
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GREY
        path.append(node)
        for child in sorted(adj[node]):
            if color[child] == GREY:
                return path[path.index(child):] + [child]
            if color[child] == WHITE:
                found = visit(child)
                if found:
                    return found
        path.pop()
        color[node] = BLACK
        return None

    for start in sorted(adj):
        if color[start] == WHITE:
            found = visit(start)
            if found:
                return found
    return None


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(sorted(level))

    if processed != len(indeg):
        cycle = find_cycle(adj) or sorted(n for n, d in indeg.items() if d > 0)
        raise CyclicDependency(cycle)

    return levels


# ----------------------------------------------------------------------
# Step level validation
# ----------------------------------------------------------------------

def _validate_permissions(permissions: Dict[str, str]) -> List[str]:
    problems = []
    for scope, level in permissions.items():
        if level not in PERMISSION_LEVELS:
            problems.append(f"permissions.{scope}: {level!r} is not one of {PERMISSION_LEVELS}")
    return problems


def _validate_steps(graph: JobGraph) -> None:
    problems: List[str] = []
    declared: Dict[Tuple[str, str], Set[str]] = {}
    step_index: Dict[Tuple[str, str], int] = {}
    producers: Dict[str, Tuple[str, int]] = {}  # artifact name -> (job, step index)
    consumers: List[Tuple[str, int, str, str]] = []  # (job, step index, step name, artifact)

    for job in graph.jobs.values():
        if not job.steps:
            problems.append(f"job '{job.name}' has no steps")
        seen: Set[str] = set()
        for i, step in enumerate(job.steps):
            if step.name in seen:
                problems.append(f"job '{job.name}' has two steps named '{step.name}'")
            seen.add(step.name)
            step_index[(job.name, step.name)] = i
            outputs = set(step.outputs)

            if step.uses is not None:
                try:
                    params = actions.parse_params(step, job=job.name)
                except ConfigurationError as e:
                    problems.append(f"job '{job.name}' step '{step.name}': {e.message}")
                    problems.extend(f"job '{job.name}' step '{step.name}': {p}" for p in e.problems)
                    continue
                action = actions.REGISTRY[step.uses]
                outputs |= set(action.outputs)
                if action.needs_environment and not job.environment:
                    problems.append(
                        f"job '{job.name}' step '{step.name}': action '{action.name}' "
                        f"needs the job to declare an environment"
                    )
                if action.artifact_out:
                    name = getattr(params, action.artifact_out)
                    if name in producers:
                        problems.append(f"artifact '{name}' is uploaded more than once")
                    producers[name] = (job.name, i)
                if action.artifact_in:
                    consumers.append((job.name, i, step.name, getattr(params, action.artifact_in)))
            elif step.with_:
                problems.append(f"job '{job.name}' step '{step.name}': `with` needs `uses`")
            declared[(job.name, step.name)] = outputs

    for job in graph.jobs.values():
        ancestors = graph.ancestors(job.name)
        texts = [(None, v) for v in job.env.values()]
        texts += [(step, s) for step in job.steps for s in expressions.step_strings(step)]
        for step, text in texts:
            where = f"job '{job.name}'" + (f" step '{step.name}'" if step else " env")
            try:
                refs = expressions.scan(text)
            except ValueError as e:
                problems.append(f"{where}: {e}")
                continue
            for ref in refs:
                if not isinstance(ref, expressions.OutputRef):
                    continue
                if (ref.job, ref.step) not in declared:
                    problems.append(f"{where}: references unknown step {ref.job}.{ref.step}")
                    continue
                if ref.name not in declared[(ref.job, ref.step)]:
                    problems.append(f"{where}: step {ref.job}.{ref.step} does not declare output '{ref.name}'")
                    continue
                if ref.job == job.name:
                    current = step_index[(job.name, step.name)] if step else -1
                    if step_index[(ref.job, ref.step)] >= current:
                        problems.append(f"{where}: {ref.key} is not produced by an earlier step")
                elif ref.job not in ancestors:
                    problems.append(f"{where}: {ref.key} belongs to job '{ref.job}', which is not a dependency")

    for job_name, index, step_name, artifact in consumers:
        producer = producers.get(artifact)
        where = f"job '{job_name}' step '{step_name}'"
        if producer is None:
            problems.append(f"{where}: artifact '{artifact}' is never uploaded")
        elif producer[0] == job_name:
            if producer[1] >= index:
                problems.append(f"{where}: artifact '{artifact}' is uploaded by a later step")
        elif producer[0] not in graph.ancestors(job_name):
            problems.append(
                f"{where}: artifact '{artifact}' comes from job '{producer[0]}', which is not a dependency"
            )

    problems.extend(_validate_permissions(graph.workflow.permissions))
    if problems:
        raise ConfigurationError(
            f"Workflow '{graph.workflow.name}' is invalid",
            problems=problems,
        )


def build(definition: WorkflowDefinition) -> JobGraph:
    """
    Validate a workflow and turn it into a JobGraph.

    Raises UnknownJobReference / CyclicDependency for bad `needs`, and
    ConfigurationError for everything else (step params, references, ...).
    """
    if not definition.jobs:
        raise ConfigurationError(f"Workflow '{definition.name}' has no jobs")
    for key, job in definition.jobs.items():
        if key != job.name:
            raise ConfigurationError(f"Job registered as '{key}' is named '{job.name}'")

    jobs = list(definition.jobs.values())
    adj, indeg = build_dag(jobs)
    levels = topo_levels(adj, indeg)

    graph = JobGraph(
        workflow=definition,
        dependents=adj,
        dependencies={j.name: set(j.needs) for j in jobs},
        indegree=indeg,
        layers=levels,
    )
    _validate_steps(graph)
    return graph
