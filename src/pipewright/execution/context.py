"""
pipewright.execution.context - Per-Job Execution Context
==========================================================

A JobContext is created by the JobExecutor for one job instance and handed
to every step action. It bundles what a step may touch:

    - the isolated workspace directory
    - the merged environment (pipeline → job → step)
    - the permission tokens issued for the job's declared set
    - the run's artifact store and external collaborators
    - the job's cancellation signal
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from pipewright.core.enums import Permission
from pipewright.core.exceptions import PermissionDeniedError, StepExecutionError
from pipewright.core.models import (
    Event,
    JobDefinition,
    PermissionToken,
    PipelineDefinition,
    StepDefinition,
)
from pipewright.infrastructure.artifact_store import ArtifactStore
from pipewright.integrations.commands import CommandRunner
from pipewright.integrations.source import SourceProvider

if TYPE_CHECKING:
    from pipewright.execution.deployment import DeploymentStage


class JobContext:
    """Everything a step of one job instance may use.

    Attributes:
        run_id: Run the job belongs to.
        job: The job definition.
        pipeline: The pipeline the job belongs to.
        event: The event that triggered the run.
        workspace: Isolated working directory of this job.
        env: Pipeline env overlaid with job env.
        permissions: Declared permission set of the job.
        tokens: Tokens issued for exactly ``permissions``.
        cancel_event: Set when the job must stop.
        outputs: Outputs of finished steps, keyed by step id.
    """

    def __init__(
        self,
        run_id: str,
        job: JobDefinition,
        pipeline: PipelineDefinition,
        event: Event,
        workspace: Path,
        artifact_store: ArtifactStore,
        runner: CommandRunner,
        source: SourceProvider,
        deployer: Optional[DeploymentStage] = None,
        tokens: Optional[dict[Permission, PermissionToken]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.run_id = run_id
        self.job = job
        self.pipeline = pipeline
        self.event = event
        self.workspace = workspace
        self.artifact_store = artifact_store
        self.runner = runner
        self.source = source
        self.deployer = deployer
        self.permissions = pipeline.effective_permissions(job)
        self.tokens = dict(tokens or {})
        self.cancel_event = cancel_event or asyncio.Event()
        self.env = pipeline.job_env(job)
        self.outputs: dict[str, dict[str, Any]] = {}

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def token(self, permission: Permission, step_index: Optional[int] = None) -> PermissionToken:
        """Return the job's token for ``permission``.

        Raises:
            PermissionDeniedError: If the job did not declare the permission.
        """
        if permission not in self.permissions or permission not in self.tokens:
            raise PermissionDeniedError(
                job=self.job.name,
                permission=permission.value,
                declared=sorted(p.value for p in self.permissions),
                step_index=step_index,
            )
        return self.tokens[permission]

    def step_env(self, step: StepDefinition) -> dict[str, str]:
        """Environment for a step: job env, step env, then built-ins."""
        env = dict(self.env)
        env.update(step.env)
        env.update(
            {
                "CI": "true",
                "PIPEWRIGHT_RUN_ID": self.run_id,
                "PIPEWRIGHT_JOB": self.job.name,
                "PIPEWRIGHT_REF": self.event.ref,
                "PIPEWRIGHT_SHA": self.event.sha or "",
                "PIPEWRIGHT_EVENT": self.event.kind.value,
                "PIPEWRIGHT_ACTOR": self.event.actor,
                "PIPEWRIGHT_WORKSPACE": str(self.workspace),
            }
        )
        return env

    def resolve_path(self, relative: Optional[str], step_index: int, step_name: str = "") -> Path:
        """Resolve a step path inside the workspace.

        Raises:
            StepExecutionError: If the path escapes the workspace.
        """
        root = self.workspace.resolve()
        if not relative:
            return root
        target = (root / relative).resolve()
        if target != root and root not in target.parents:
            raise StepExecutionError(
                message=f"Path '{relative}' is outside the job workspace",
                job=self.job.name,
                step_index=step_index,
                step_name=step_name,
                error_code="PATH_OUTSIDE_WORKSPACE",
            )
        return target
