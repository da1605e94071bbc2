"""
pipewright.orchestration.job_graph - Validated Job Dependency Graph
=====================================================================

A JobGraph is built once at run start from the pipeline's job definitions
and never changes afterwards. Construction validates:

    1. Job names are unique                → PipelineDefinitionError
    2. Every ``needs`` entry names a job   → UnknownDependencyError
    3. The dependency relation is acyclic  → GraphCycleError (names the cycle)

Edges point from a job to the jobs it needs:

    deploy ──needs──→ build ──needs──→ lint

Scheduling:
    ``ready_jobs(completed)`` returns every job whose dependencies are all in
    ``completed`` and that is neither completed nor already scheduled. The
    pipeline engine calls it after each job finishes; ``completed`` holds
    only SUCCEEDED jobs, so dependents of a failed job are never returned.

    ``levels()`` groups jobs into stages that could run in parallel
    (Kahn's algorithm, names sorted within each stage).
"""

from __future__ import annotations

from collections import deque
from typing import AbstractSet, Iterable

from pipewright.core.exceptions import (
    GraphCycleError,
    PipelineDefinitionError,
    UnknownDependencyError,
)
from pipewright.core.models import JobDefinition


_WHITE, _GRAY, _BLACK = 0, 1, 2


class JobGraph:
    """Immutable, validated DAG of jobs.

    Args:
        jobs: Job definitions. Order is irrelevant.

    Raises:
        PipelineDefinitionError: On duplicate job names.
        UnknownDependencyError: If a job needs a name that is not defined.
        GraphCycleError: If the dependency relation has a cycle.

    Example:
        >>> graph = JobGraph([build, deploy])
        >>> graph.ready_jobs(set())
        {'build'}
        >>> graph.ready_jobs({"build"})
        {'deploy'}
    """

    def __init__(self, jobs: Iterable[JobDefinition]) -> None:
        self._jobs: dict[str, JobDefinition] = {}
        for job in jobs:
            if job.name in self._jobs:
                raise PipelineDefinitionError(
                    message=f"Duplicate job name: '{job.name}'",
                    details={"job": job.name},
                )
            self._jobs[job.name] = job

        known = sorted(self._jobs)
        self._needs: dict[str, tuple[str, ...]] = {}
        self._dependents: dict[str, set[str]] = {name: set() for name in self._jobs}
        for name, job in self._jobs.items():
            deps: list[str] = []
            for dep in job.needs:
                if dep not in self._jobs:
                    raise UnknownDependencyError(job=name, dependency=dep, known=known)
                if dep not in deps:
                    deps.append(dep)
                    self._dependents[dep].add(name)
            self._needs[name] = tuple(deps)

        self._check_acyclic()

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------
    def _check_acyclic(self) -> None:
        """Iterative DFS; raises GraphCycleError with the first cycle found."""
        color = {name: _WHITE for name in self._jobs}
        for root in sorted(self._jobs):
            if color[root] != _WHITE:
                continue
            color[root] = _GRAY
            path = [root]
            stack = [iter(self._needs[root])]
            while stack:
                for dep in stack[-1]:
                    if color[dep] == _GRAY:
                        start = path.index(dep)
                        raise GraphCycleError(cycle=path[start:] + [dep])
                    if color[dep] == _WHITE:
                        color[dep] = _GRAY
                        path.append(dep)
                        stack.append(iter(self._needs[dep]))
                        break
                else:
                    color[path.pop()] = _BLACK
                    stack.pop()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------
    def ready_jobs(
        self,
        completed: AbstractSet[str],
        scheduled: AbstractSet[str] = frozenset(),
    ) -> set[str]:
        """Jobs whose dependencies are all completed and which have not run.

        Args:
            completed: Names of jobs that reached SUCCEEDED.
            scheduled: Names already handed to an executor (running or
                finished in any state); never returned again.
        """
        return {
            name
            for name, deps in self._needs.items()
            if name not in completed
            and name not in scheduled
            and all(dep in completed for dep in deps)
        }

    def dependencies_of(self, name: str) -> tuple[str, ...]:
        """Direct dependencies of a job, in declaration order."""
        return self._needs[name]

    def dependents_of(self, name: str) -> set[str]:
        """Jobs that directly need ``name``."""
        return set(self._dependents[name])

    def job(self, name: str) -> JobDefinition:
        return self._jobs[name]

    @property
    def names(self) -> list[str]:
        return sorted(self._jobs)

    def levels(self) -> list[list[str]]:
        """Topological stages: every job appears after all of its needs."""
        indeg = {name: len(deps) for name, deps in self._needs.items()}
        q = deque(sorted(name for name, d in indeg.items() if d == 0))

        levels: list[list[str]] = []
        while q:
            level: list[str] = []
            unlocked: list[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in self._dependents[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        unlocked.append(child)
            q.extend(sorted(unlocked))
            levels.append(level)
        return levels

    def topological_order(self) -> list[str]:
        """A single valid execution order (stages flattened)."""
        return [name for level in self.levels() for name in level]

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    def __repr__(self) -> str:
        return f"JobGraph(jobs={self.names})"
