"""
pipewright.execution.executor - Job Executor
==============================================

Runs the ordered steps of one job instance on an isolated workspace.

Job lifecycle (Template Method, like every other long-lived component):

    ┌─────────────────────────────────────────────────────────────┐
    │  JobExecutor.run(job, ...)                ← Public API       │
    │  ┌───────────────────────────────────────────────────────┐  │
    │  │ 1. preflight: every step action's permissions declared│  │
    │  │ 2. create workspace, request EXACTLY declared tokens  │  │
    │  │ 3. run steps in order (each raced against cancel and  │  │
    │  │    the job deadline)                                  │  │
    │  │ 4. revoke tokens, remove workspace                    │  │
    │  │ 5. return JobResult (SUCCEEDED / FAILED / CANCELLED)  │  │
    │  └───────────────────────────────────────────────────────┘  │
    └─────────────────────────────────────────────────────────────┘

Step rules:
    - Strict declaration order.
    - After the first failing step the remaining steps are SKIPPED, except
      steps flagged ``always_run`` (cleanup), which still execute.
    - Cancellation interrupts the current step promptly; it and every later
      step (always_run included) end CANCELLED.
    - Exceeding the job timeout fails the current step with
      StepExecutionError(error_code="STEP_TIMEOUT"); later steps are SKIPPED
      because the job deadline has passed.

Side effects already committed by a step (a published artifact, say) are
not rolled back on failure or cancellation.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog

from pipewright.core.config import ExecutorConfig
from pipewright.core.enums import JobStatus, Permission, StepStatus
from pipewright.core.exceptions import (
    PermissionDeniedError,
    PipewrightError,
    StepExecutionError,
)
from pipewright.core.models import (
    Event,
    JobDefinition,
    JobResult,
    PipelineDefinition,
    StepDefinition,
    StepResult,
)
from pipewright.execution.actions import ActionRegistry
from pipewright.execution.context import JobContext
from pipewright.execution.deployment import DeploymentStage
from pipewright.infrastructure.artifact_store import ArtifactStore
from pipewright.integrations.commands import CommandRunner, SubprocessCommandRunner
from pipewright.integrations.credentials import CredentialIssuer, InMemoryCredentialIssuer
from pipewright.integrations.source import LocalSourceProvider, SourceProvider


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobExecutor:
    """Executes jobs step by step.

    Args:
        artifact_store: Store shared by all jobs of a run.
        credential_issuer: Source of per-job permission tokens.
        runner: Executes ``run`` step commands.
        source: Populates workspaces for ``checkout`` steps.
        deployer: Deployment stage used by ``deploy`` steps.
        registry: Step action handlers.
        config: Timeouts and workspace settings.

    Example:
        >>> executor = JobExecutor(artifact_store=store, runner=ScriptedCommandRunner())
        >>> result = await executor.run(job, pipeline=pipeline, event=event, run_id="run-1")
        >>> result.status
        <JobStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        artifact_store: ArtifactStore,
        credential_issuer: Optional[CredentialIssuer] = None,
        runner: Optional[CommandRunner] = None,
        source: Optional[SourceProvider] = None,
        deployer: Optional[DeploymentStage] = None,
        registry: Optional[ActionRegistry] = None,
        config: Optional[ExecutorConfig] = None,
    ) -> None:
        self._artifact_store = artifact_store
        self._credential_issuer = credential_issuer or InMemoryCredentialIssuer()
        self._runner = runner or SubprocessCommandRunner()
        self._source = source or LocalSourceProvider()
        self._deployer = deployer
        self._registry = registry or ActionRegistry.default()
        self._config = config or ExecutorConfig()
        self._logger = logger.bind(component="job_executor")

    @property
    def registry(self) -> ActionRegistry:
        return self._registry

    # =========================================================================
    # Permission preflight
    # =========================================================================
    def check_permissions(self, job: JobDefinition, pipeline: PipelineDefinition) -> None:
        """Verify every step's action is covered by the job's permissions.

        Raises:
            PermissionDeniedError: For the first step needing an undeclared
                permission (with its step index).
            PipelineDefinitionError: If a step's action has no handler.
        """
        declared = pipeline.effective_permissions(job)
        for index, step in enumerate(job.steps):
            required = self._registry.required_permissions(step.action)
            for permission in sorted(required - declared, key=lambda p: p.value):
                raise PermissionDeniedError(
                    job=job.name,
                    permission=permission.value,
                    declared=sorted(p.value for p in declared),
                    step_index=index,
                )

    # =========================================================================
    # Public API
    # =========================================================================
    async def run(
        self,
        job: JobDefinition,
        pipeline: PipelineDefinition,
        event: Event,
        run_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> JobResult:
        """Run a job to a terminal state.

        Step failures never escape this method: they end up in the
        JobResult (status FAILED, ``error``, ``failed_step_index``).

        Raises:
            PermissionDeniedError: If a step needs a permission the job did
                not declare; raised before any step runs.
        """
        self.check_permissions(job, pipeline)

        cancel_event = cancel_event or asyncio.Event()
        started_at = _now()
        loop = asyncio.get_running_loop()
        timeout = job.timeout_seconds or self._config.default_job_timeout_seconds
        deadline = loop.time() + timeout

        self._logger.info(
            "job_starting",
            run_id=run_id,
            job=job.name,
            steps=len(job.steps),
            timeout_seconds=timeout,
        )

        declared: frozenset[Permission] = pipeline.effective_permissions(job)
        workspace = self._create_workspace(run_id, job)
        tokens = await self._credential_issuer.issue(run_id, job.name, declared)
        ctx = JobContext(
            run_id=run_id,
            job=job,
            pipeline=pipeline,
            event=event,
            workspace=workspace,
            artifact_store=self._artifact_store,
            runner=self._runner,
            source=self._source,
            deployer=self._deployer,
            tokens=tokens,
            cancel_event=cancel_event,
        )

        step_results: list[StepResult] = []
        failure: Optional[PipewrightError] = None
        failed_index: Optional[int] = None
        cancelled = False
        timed_out = False

        try:
            for index, step in enumerate(job.steps):
                if cancelled or cancel_event.is_set():
                    cancelled = True
                    step_results.append(self._not_run(index, step, StepStatus.CANCELLED))
                    continue
                if timed_out or (failure is not None and not step.always_run):
                    step_results.append(self._not_run(index, step, StepStatus.SKIPPED))
                    continue

                result, error = await self._run_step(step, index, ctx, deadline - loop.time())
                step_results.append(result)

                if result.status == StepStatus.CANCELLED:
                    cancelled = True
                elif error is not None:
                    if error.error_code == "STEP_TIMEOUT":
                        timed_out = True
                    if failure is None:
                        failure = error
                        failed_index = index
                elif step.id:
                    ctx.outputs[step.id] = dict(result.outputs)
        finally:
            await self._credential_issuer.revoke(run_id, job.name)
            self._cleanup_workspace(workspace)

        if cancelled:
            status = JobStatus.CANCELLED
        elif failure is not None:
            status = JobStatus.FAILED
        else:
            status = JobStatus.SUCCEEDED

        completed_at = _now()
        job_result = JobResult(
            job=job.name,
            run_id=run_id,
            status=status,
            steps=step_results,
            outputs=dict(ctx.outputs),
            error=failure.to_dict() if failure is not None else None,
            failed_step_index=failed_index,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=(completed_at - started_at).total_seconds(),
        )

        log = self._logger.info if status == JobStatus.SUCCEEDED else self._logger.warning
        log(
            "job_finished",
            run_id=run_id,
            job=job.name,
            status=status.value,
            failed_step_index=failed_index,
            error_code=failure.error_code if failure is not None else None,
            duration_seconds=round(job_result.duration_seconds or 0.0, 3),
        )
        return job_result

    # =========================================================================
    # Step execution
    # =========================================================================
    async def _run_step(
        self,
        step: StepDefinition,
        index: int,
        ctx: JobContext,
        remaining: float,
    ) -> tuple[StepResult, Optional[PipewrightError]]:
        """Run one step, racing it against cancellation and the deadline."""
        handler = self._registry.get(step.action)
        started_at = _now()
        self._logger.debug(
            "step_starting",
            run_id=ctx.run_id,
            job=ctx.job.name,
            step_index=index,
            step=step.display_name,
        )

        step_task = asyncio.ensure_future(handler.execute(step, index, ctx))
        cancel_task = asyncio.ensure_future(ctx.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {step_task, cancel_task},
                timeout=max(remaining, 0.0),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()

        error: Optional[PipewrightError] = None
        outputs: dict[str, Any] = {}
        status = StepStatus.SUCCEEDED

        if step_task in done:
            exc = step_task.exception()
            if exc is None:
                outputs = step_task.result() or {}
            elif isinstance(exc, PipewrightError):
                error = exc
            else:
                error = StepExecutionError(
                    message=f"{type(exc).__name__}: {exc}",
                    job=ctx.job.name,
                    step_index=index,
                    step_name=step.display_name,
                    details={"error_type": type(exc).__name__},
                )
        else:
            await self._stop(step_task)
            if ctx.cancel_event.is_set():
                status = StepStatus.CANCELLED
            else:
                error = StepExecutionError(
                    message=f"Job '{ctx.job.name}' timed out during step {index}",
                    job=ctx.job.name,
                    step_index=index,
                    step_name=step.display_name,
                    error_code="STEP_TIMEOUT",
                )

        if error is not None:
            status = StepStatus.FAILED
            self._logger.warning(
                "step_failed",
                run_id=ctx.run_id,
                job=ctx.job.name,
                step_index=index,
                step=step.display_name,
                error_code=error.error_code,
                error=error.message,
            )
        elif status == StepStatus.CANCELLED:
            self._logger.warning(
                "step_cancelled",
                run_id=ctx.run_id,
                job=ctx.job.name,
                step_index=index,
                step=step.display_name,
            )

        return (
            StepResult(
                index=index,
                name=step.display_name,
                status=status,
                outputs=outputs,
                error_message=error.message if error is not None else None,
                started_at=started_at,
                completed_at=_now(),
            ),
            error,
        )

    @staticmethod
    async def _stop(task: asyncio.Future) -> None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.debug("step_raised_while_stopping", error=str(exc))

    @staticmethod
    def _not_run(index: int, step: StepDefinition, status: StepStatus) -> StepResult:
        return StepResult(index=index, name=step.display_name, status=status)

    # =========================================================================
    # Workspaces
    # =========================================================================
    def _create_workspace(self, run_id: str, job: JobDefinition) -> Path:
        root = self._config.workspace_root
        if root is not None:
            Path(root).mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"pipewright-{job.name}-", dir=root))

    def _cleanup_workspace(self, workspace: Path) -> None:
        if self._config.keep_workspaces:
            self._logger.debug("workspace_kept", workspace=str(workspace))
            return
        shutil.rmtree(workspace, ignore_errors=True)
