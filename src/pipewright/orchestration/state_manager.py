"""
pipewright.orchestration.state_manager - Run & Environment Persistence
========================================================================

The State Manager stores the runtime snapshots produced by the pipeline
engine and the deployment stage.

    ┌──────────────────┐   save_run / archive_run   ┌──────────────────┐
    │  PipelineEngine  │ ─────────────────────────→ │                  │
    └──────────────────┘                            │  State Manager   │
    ┌──────────────────┐   save_environment         │                  │
    │ DeploymentStage  │ ─────────────────────────→ │                  │
    └──────────────────┘                            └──────────────────┘

Key Schema:
    - run:{run_id}            → RunState (active runs)
    - archive:{run_id}        → RunState (phase ARCHIVED)
    - environment:{name}      → EnvironmentState
    - job_result:{run_id}     → list[JobResult]

Implementations:
    - StateManager (ABC):      Abstract interface
    - InMemoryStateManager:    Dict-based for dev/testing
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from pipewright.core.enums import RunPhase
from pipewright.core.models import JobResult
from pipewright.core.state import EnvironmentState, RunState

logger = logging.getLogger(__name__)


# =============================================================================
# Abstract Base Class: StateManager
# =============================================================================
class StateManager(ABC):
    """Abstract persistence for runs, job results and environments.

    Example:
        >>> async def record(sm: StateManager, state: RunState):
        ...     await sm.save_run(state)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the backing store."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the backing store."""
        ...

    # -- Runs -----------------------------------------------------------------
    @abstractmethod
    async def save_run(self, state: RunState) -> None:
        """Save or replace an active run's state (last-write-wins)."""
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[RunState]:
        """Look a run up among active and archived runs."""
        ...

    @abstractmethod
    async def list_runs(self, include_archived: bool = True) -> list[RunState]:
        """All known runs, oldest first."""
        ...

    @abstractmethod
    async def archive_run(self, run_id: str) -> Optional[RunState]:
        """Move a run out of the active set.

        Returns:
            The archived snapshot (phase ARCHIVED), or None if the run
            is not active.
        """
        ...

    # -- Job results ----------------------------------------------------------
    @abstractmethod
    async def save_job_result(self, result: JobResult) -> None:
        ...

    @abstractmethod
    async def get_job_results(self, run_id: str) -> list[JobResult]:
        ...

    # -- Environments ---------------------------------------------------------
    @abstractmethod
    async def save_environment(self, state: EnvironmentState) -> None:
        ...

    @abstractmethod
    async def get_environment(self, name: str) -> Optional[EnvironmentState]:
        ...

    @abstractmethod
    async def list_environments(self) -> list[EnvironmentState]:
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================
class InMemoryStateManager(StateManager):
    """In-memory state manager for development and testing.

    Data is lost when the process ends.

    Example:
        >>> sm = InMemoryStateManager()
        >>> await sm.connect()
        >>> await sm.save_run(run_state)
        >>> await sm.archive_run(run_state.run_id)
    """

    def __init__(self) -> None:
        self._runs: dict[str, RunState] = {}
        self._archive: dict[str, RunState] = {}
        self._job_results: dict[str, list[JobResult]] = {}
        self._environments: dict[str, EnvironmentState] = {}
        self._connected: bool = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    # -------------------------------------------------------------------------
    # Connection Lifecycle
    # -------------------------------------------------------------------------
    async def connect(self) -> None:
        self._connected = True
        logger.info("InMemoryStateManager connected")

    async def disconnect(self) -> None:
        """Clear all stored state and mark as disconnected."""
        self._runs.clear()
        self._archive.clear()
        self._job_results.clear()
        self._environments.clear()
        self._connected = False
        logger.info("InMemoryStateManager disconnected")

    # -------------------------------------------------------------------------
    # Run Operations
    # -------------------------------------------------------------------------
    async def save_run(self, state: RunState) -> None:
        self._runs[state.run_id] = state
        logger.debug(
            "Saved run state: %s (phase=%s, status=%s)",
            state.run_id,
            state.phase.value,
            state.status.value,
        )

    async def get_run(self, run_id: str) -> Optional[RunState]:
        if run_id in self._runs:
            return self._runs[run_id]
        return self._archive.get(run_id)

    async def list_runs(self, include_archived: bool = True) -> list[RunState]:
        runs = list(self._runs.values())
        if include_archived:
            runs.extend(self._archive.values())
        return sorted(runs, key=lambda r: r.started_at)

    async def archive_run(self, run_id: str) -> Optional[RunState]:
        state = self._runs.pop(run_id, None)
        if state is None:
            return None
        archived = state.model_copy(update={"phase": RunPhase.ARCHIVED})
        self._archive[run_id] = archived
        logger.info("Archived run %s (status=%s)", run_id, archived.status.value)
        return archived

    # -------------------------------------------------------------------------
    # Job Result Operations
    # -------------------------------------------------------------------------
    async def save_job_result(self, result: JobResult) -> None:
        self._job_results.setdefault(result.run_id, []).append(result)
        logger.debug(
            "Saved job result: %s/%s (status=%s)",
            result.run_id,
            result.job,
            result.status.value,
        )

    async def get_job_results(self, run_id: str) -> list[JobResult]:
        return list(self._job_results.get(run_id, []))

    # -------------------------------------------------------------------------
    # Environment Operations
    # -------------------------------------------------------------------------
    async def save_environment(self, state: EnvironmentState) -> None:
        self._environments[state.name] = state
        logger.debug(
            "Saved environment: %s (url=%s)", state.name, state.last_deployed_url
        )

    async def get_environment(self, name: str) -> Optional[EnvironmentState]:
        return self._environments.get(name)

    async def list_environments(self) -> list[EnvironmentState]:
        return sorted(self._environments.values(), key=lambda e: e.name)
