"""
Shared Test Fixtures for Pipewright
=====================================

This module provides reusable pytest fixtures used across the entire
test suite. Fixtures are organized by layer:

    1. Configuration fixtures
    2. Infrastructure fixtures (ArtifactStore)
    3. Integration fixtures (commands, source, hosting, credentials)
    4. Orchestration fixtures (StateManager, PolicyEngine, ConcurrencyGate)
    5. Execution fixtures (DeploymentStage, JobExecutor, PipelineEngine)
    6. Pipeline & event fixtures
    7. Facade fixtures (Pipewright)
"""

from __future__ import annotations

import pytest

from pipewright.core.config import PipewrightConfig
from pipewright.core.enums import EventKind, Permission, StepAction
from pipewright.core.models import (
    ConcurrencySettings,
    EnvironmentBinding,
    Event,
    JobDefinition,
    PipelineDefinition,
    StepDefinition,
    TriggerRule,
)
from pipewright.execution.deployment import DeploymentStage
from pipewright.execution.executor import JobExecutor
from pipewright.facade import Pipewright
from pipewright.infrastructure.artifact_store import InMemoryArtifactStore
from pipewright.integrations.commands import ScriptedCommandRunner
from pipewright.integrations.credentials import InMemoryCredentialIssuer
from pipewright.integrations.hosting import InMemoryHostingTarget
from pipewright.integrations.source import LocalSourceProvider
from pipewright.orchestration.concurrency_gate import ConcurrencyGate
from pipewright.orchestration.pipeline_engine import PipelineEngine
from pipewright.orchestration.policy_engine import PolicyEngine
from pipewright.orchestration.state_manager import InMemoryStateManager


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture
def config():
    """Pipewright configuration with defaults."""
    return PipewrightConfig()


# =============================================================================
# Infrastructure
# =============================================================================

@pytest.fixture
def artifact_store():
    """Fresh InMemoryArtifactStore."""
    return InMemoryArtifactStore()


# =============================================================================
# Integrations
# =============================================================================

@pytest.fixture
def runner():
    """ScriptedCommandRunner whose ``cargo doc`` writes a small site."""
    scripted = ScriptedCommandRunner()
    scripted.script(
        "cargo doc",
        writes={
            "target/doc/index.html": "<html>docs</html>",
            "target/doc/crate/index.html": "<html>crate</html>",
        },
    )
    return scripted


@pytest.fixture
def source():
    """Source provider with a single README."""
    return LocalSourceProvider(files={"README.md": "# project\n"})


@pytest.fixture
def hosting():
    """In-memory hosting target."""
    return InMemoryHostingTarget()


@pytest.fixture
def credential_issuer():
    """Credential issuer that records every request."""
    return InMemoryCredentialIssuer()


# =============================================================================
# Orchestration
# =============================================================================

@pytest.fixture
def state_manager():
    """Fresh InMemoryStateManager."""
    return InMemoryStateManager()


@pytest.fixture
def policy_engine():
    """Fresh PolicyEngine with no policies registered."""
    return PolicyEngine()


@pytest.fixture
def gate():
    """Fresh ConcurrencyGate without a queue timeout."""
    return ConcurrencyGate()


# =============================================================================
# Execution
# =============================================================================

@pytest.fixture
def deployer(artifact_store, hosting, state_manager):
    """DeploymentStage with the default branch and approval policies."""
    return DeploymentStage(
        artifact_store=artifact_store,
        hosting=hosting,
        state_manager=state_manager,
        policy_engine=PolicyEngine.with_default_policies(),
    )


@pytest.fixture
def executor(artifact_store, credential_issuer, runner, source, deployer):
    """JobExecutor wired to the scripted runner and in-memory collaborators."""
    return JobExecutor(
        artifact_store=artifact_store,
        credential_issuer=credential_issuer,
        runner=runner,
        source=source,
        deployer=deployer,
    )


@pytest.fixture
def engine(executor, state_manager, gate, artifact_store):
    """PipelineEngine sharing the executor's artifact store."""
    return PipelineEngine(
        executor=executor,
        state_manager=state_manager,
        gate=gate,
        artifact_store=artifact_store,
    )


# =============================================================================
# Pipelines & Events
# =============================================================================

@pytest.fixture
def make_pages_pipeline():
    """Factory for the build → deploy documentation pipeline."""

    def _build(
        cancel_in_progress: bool = False,
        group: str = "pages",
        environment: str = "github-pages",
    ) -> PipelineDefinition:
        build = JobDefinition(
            name="build",
            steps=[
                StepDefinition(action=StepAction.CHECKOUT),
                StepDefinition(name="Run tests", action=StepAction.RUN, command="cargo test"),
                StepDefinition(name="Build docs", action=StepAction.RUN, command="cargo doc"),
                StepDefinition(
                    action=StepAction.UPLOAD_ARTIFACT,
                    params={"name": "github-pages", "path": "target/doc"},
                ),
            ],
        )
        deploy = JobDefinition(
            name="deploy",
            needs=["build"],
            environment=EnvironmentBinding(name=environment),
            steps=[
                StepDefinition(
                    id="deployment",
                    action=StepAction.DEPLOY,
                    params={"artifact": "github-pages"},
                ),
            ],
        )
        return PipelineDefinition(
            name="docs",
            triggers=[
                TriggerRule(kind=EventKind.PUSH, branches=["main"]),
                TriggerRule(kind=EventKind.MANUAL_DISPATCH),
            ],
            permissions=frozenset(
                {
                    Permission.READ_SOURCE,
                    Permission.WRITE_PAGES,
                    Permission.ISSUE_IDENTITY_TOKEN,
                }
            ),
            concurrency=ConcurrencySettings(group=group, cancel_in_progress=cancel_in_progress),
            jobs=[build, deploy],
        )

    return _build


@pytest.fixture
def pages_pipeline(make_pages_pipeline):
    """The documentation pipeline with queued (non-preemptive) deployments."""
    return make_pages_pipeline()


@pytest.fixture
def push_event():
    """A push to main."""
    return Event(kind=EventKind.PUSH, ref="refs/heads/main", sha="abc123", actor="octo")


# =============================================================================
# Facade
# =============================================================================

@pytest.fixture
def pipewright(config, runner, source, hosting):
    """Uninitialized Pipewright facade with scripted collaborators."""
    return Pipewright(config, runner=runner, source=source, hosting=hosting)
