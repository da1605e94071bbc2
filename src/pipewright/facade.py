"""
pipewright.facade - Pipewright Top-Level Facade
=================================================

The single entry point that wires every layer together.

    ┌──────────────────────────────────────────────────┐
    │               Pipewright (Facade)                 │
    │                                                   │
    │  ┌─────────────────────────────────────────────┐ │
    │  │         Orchestration Layer                   │ │
    │  │  PipelineEngine, ConcurrencyGate, JobGraph   │ │
    │  │  StateManager, PolicyEngine, Triggers        │ │
    │  └─────────────────────┬───────────────────────┘ │
    │                        │                          │
    │  ┌─────────────────────▼───────────────────────┐ │
    │  │            Execution Layer                    │ │
    │  │  JobExecutor, step actions, DeploymentStage  │ │
    │  └─────────────────────┬───────────────────────┘ │
    │                        │                          │
    │  ┌─────────────────────▼───────────────────────┐ │
    │  │         Infrastructure Layer                  │ │
    │  │  ArtifactStore (in-memory or on disk)         │ │
    │  └─────────────────────┬───────────────────────┘ │
    │                        │                          │
    │  ┌─────────────────────▼───────────────────────┐ │
    │  │         Integration Layer                     │ │
    │  │  Credentials, Commands, Source, Hosting       │ │
    │  └─────────────────────────────────────────────┘ │
    └──────────────────────────────────────────────────┘

Usage:
    >>> async with Pipewright() as pw:
    ...     pipeline = pw.load_pipeline("pages.yaml")
    ...     await pw.register_environment("github-pages", required_approvals=1)
    ...     await pw.approve_deployment("github-pages", "run-1", reviewer="octo")
    ...     state = await pw.handle_event(pipeline, event, run_id="run-1")
    ...     state.succeeded
    True
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Union

import structlog

from pipewright.core.config import PipewrightConfig
from pipewright.core.models import Event, PipelineDefinition
from pipewright.core.state import EnvironmentState, RunState
from pipewright.execution.deployment import DeploymentStage
from pipewright.execution.executor import JobExecutor
from pipewright.infrastructure.artifact_store import (
    ArtifactStore,
    InMemoryArtifactStore,
    LocalArtifactStore,
)
from pipewright.integrations.commands import CommandRunner, SubprocessCommandRunner
from pipewright.integrations.credentials import CredentialIssuer, InMemoryCredentialIssuer
from pipewright.integrations.hosting import HostingTarget, InMemoryHostingTarget
from pipewright.integrations.source import LocalSourceProvider, SourceProvider
from pipewright.orchestration.concurrency_gate import ConcurrencyGate
from pipewright.orchestration.pipeline_engine import PipelineEngine
from pipewright.orchestration.policy_engine import PolicyEngine
from pipewright.orchestration.state_manager import InMemoryStateManager, StateManager
from pipewright.pipeline.loader import load_pipeline


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class Pipewright:
    """Top-level facade for running pipelines.

    Lifecycle:
        1. ``Pipewright(config, ...)`` - Instantiate, optionally with custom
           collaborators
        2. ``await initialize()`` - Connect the state manager
        3. ``await handle_event(pipeline, event)`` - Run pipelines
        4. ``await shutdown()`` - Disconnect

    Attributes:
        _config: Pipewright configuration.
        _state_manager: Run and environment persistence.
        _artifact_store: Run-scoped artifact storage. A LocalArtifactStore
            when ``config.artifacts.storage_dir`` is set.
        _gate: Concurrency gate shared by every run of this instance.
        _deployer: Deployment stage used by deploy steps.
        _executor: Job executor.
        _engine: Pipeline engine.
    """

    def __init__(
        self,
        config: Optional[PipewrightConfig] = None,
        *,
        state_manager: Optional[StateManager] = None,
        artifact_store: Optional[ArtifactStore] = None,
        credential_issuer: Optional[CredentialIssuer] = None,
        runner: Optional[CommandRunner] = None,
        source: Optional[SourceProvider] = None,
        hosting: Optional[HostingTarget] = None,
        policy_engine: Optional[PolicyEngine] = None,
    ) -> None:
        # --- Configuration ---
        self._config = config or PipewrightConfig()

        # --- Infrastructure Layer ---
        if artifact_store is not None:
            self._artifact_store = artifact_store
        elif self._config.artifacts.storage_dir:
            self._artifact_store = LocalArtifactStore(
                storage_dir=self._config.artifacts.storage_dir,
                retention_days=self._config.artifacts.retention_days,
            )
        else:
            self._artifact_store = InMemoryArtifactStore(
                retention_days=self._config.artifacts.retention_days,
            )

        # --- Orchestration Layer ---
        self._state_manager = state_manager or InMemoryStateManager()
        self._gate = ConcurrencyGate(self._config.gate)
        self._policy_engine = policy_engine or PolicyEngine.with_default_policies()

        # --- Execution Layer ---
        self._deployer = DeploymentStage(
            artifact_store=self._artifact_store,
            hosting=hosting or InMemoryHostingTarget(),
            state_manager=self._state_manager,
            policy_engine=self._policy_engine,
        )
        self._executor = JobExecutor(
            artifact_store=self._artifact_store,
            credential_issuer=credential_issuer or InMemoryCredentialIssuer(),
            runner=runner or SubprocessCommandRunner(),
            source=source or LocalSourceProvider(),
            deployer=self._deployer,
            config=self._config.executor,
        )
        self._engine = PipelineEngine(
            executor=self._executor,
            state_manager=self._state_manager,
            gate=self._gate,
            artifact_store=self._artifact_store,
            config=self._config.executor,
        )

        self._initialized = False
        self._logger = logger.bind(component="pipewright")

    # =========================================================================
    # Properties
    # =========================================================================
    @property
    def config(self) -> PipewrightConfig:
        return self._config

    @property
    def engine(self) -> PipelineEngine:
        return self._engine

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    @property
    def state_manager(self) -> StateManager:
        return self._state_manager

    @property
    def artifact_store(self) -> ArtifactStore:
        return self._artifact_store

    @property
    def policy_engine(self) -> PolicyEngine:
        return self._policy_engine

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Lifecycle Management
    # =========================================================================
    async def initialize(self) -> None:
        """Connect the state manager. Idempotent."""
        if self._initialized:
            self._logger.debug("pipewright_already_initialized")
            return

        await self._state_manager.connect()
        self._initialized = True
        self._logger.info(
            "pipewright_initialized",
            environment=self._config.environment,
            artifact_store=type(self._artifact_store).__name__,
        )

    async def shutdown(self) -> None:
        """Disconnect the state manager. Idempotent."""
        if not self._initialized:
            self._logger.debug("pipewright_not_initialized_skipping_shutdown")
            return

        for run_id in self._engine.active_runs:
            await self._engine.cancel_run(run_id)
        await self._state_manager.disconnect()
        self._initialized = False
        self._logger.info("pipewright_shutdown_complete")

    async def __aenter__(self) -> Pipewright:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.shutdown()

    # =========================================================================
    # Pipelines & Runs
    # =========================================================================
    def load_pipeline(self, path: Union[str, Path]) -> PipelineDefinition:
        """Load and validate a pipeline document.

        Raises:
            FileNotFoundError: If the document does not exist.
            PipelineDefinitionError: If the document is invalid.
        """
        return load_pipeline(path)

    async def handle_event(
        self,
        pipeline: PipelineDefinition,
        event: Event,
        run_id: Optional[str] = None,
    ) -> Optional[RunState]:
        """Run ``pipeline`` for ``event`` if its triggers admit the event.

        Returns:
            The archived RunState, or None if the event was ignored.

        Raises:
            RuntimeError: If Pipewright has not been initialized.
        """
        self._ensure_initialized()
        return await self._engine.run(pipeline, event, run_id=run_id)

    async def cancel_run(self, run_id: str) -> bool:
        """Cancel an active run. False if no such run is active."""
        self._ensure_initialized()
        return await self._engine.cancel_run(run_id)

    async def get_run(self, run_id: str) -> Optional[RunState]:
        self._ensure_initialized()
        return await self._state_manager.get_run(run_id)

    async def list_runs(self) -> list[RunState]:
        self._ensure_initialized()
        return await self._state_manager.list_runs()

    # =========================================================================
    # Environments
    # =========================================================================
    async def register_environment(
        self,
        name: str,
        required_approvals: int = 0,
        deployment_branches: Optional[list[str]] = None,
    ) -> EnvironmentState:
        """Declare (or update) an environment's protection rules.

        Deployment history and approvals of an existing environment are kept.
        """
        self._ensure_initialized()
        existing = await self._state_manager.get_environment(name)
        if existing is None:
            state = EnvironmentState(
                name=name,
                required_approvals=required_approvals,
                deployment_branches=deployment_branches,
            )
        else:
            state = existing.model_copy(
                update={
                    "required_approvals": required_approvals,
                    "deployment_branches": deployment_branches,
                }
            )
        await self._state_manager.save_environment(state)
        self._logger.info(
            "environment_registered",
            environment=name,
            required_approvals=required_approvals,
            deployment_branches=deployment_branches,
        )
        return state

    async def approve_deployment(
        self,
        environment: str,
        run_id: str,
        reviewer: str,
    ) -> EnvironmentState:
        """Record a reviewer's approval for ``run_id`` to deploy to ``environment``.

        Approving the same run twice with the same reviewer counts once.
        """
        self._ensure_initialized()
        state = await self._state_manager.get_environment(environment)
        if state is None:
            state = EnvironmentState(name=environment)

        reviewers = state.approvals_for(run_id)
        if reviewer not in reviewers:
            reviewers.append(reviewer)
        approvals = dict(state.approvals)
        approvals[run_id] = reviewers
        state = state.model_copy(update={"approvals": approvals})

        await self._state_manager.save_environment(state)
        self._logger.info(
            "deployment_approved",
            environment=environment,
            run_id=run_id,
            reviewer=reviewer,
            approvals=len(reviewers),
        )
        return state

    async def get_environment(self, name: str) -> Optional[EnvironmentState]:
        self._ensure_initialized()
        return await self._state_manager.get_environment(name)

    # =========================================================================
    # Artifacts
    # =========================================================================
    async def purge_expired_artifacts(self) -> int:
        """Remove artifacts past their retention window. Returns the count."""
        return await self._artifact_store.purge_expired()

    # =========================================================================
    # Internal Helpers
    # =========================================================================
    def _ensure_initialized(self) -> None:
        """Raises RuntimeError if initialize() has not been called."""
        if not self._initialized:
            raise RuntimeError(
                "Pipewright has not been initialized. "
                "Call await pipewright.initialize() or use 'async with Pipewright() as pw:'"
            )

    def __repr__(self) -> str:
        return (
            f"Pipewright(initialized={self._initialized}, "
            f"active_runs={len(self._engine.active_runs)})"
        )
