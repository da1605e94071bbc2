"""
pipewright.core.state - Run, Job and Environment State Models
===============================================================

Dynamic state models that track what a run is DOING, as opposed to the
static definitions in models.py:

    models.py:  WHAT should happen (PipelineDefinition, JobDefinition)
    state.py:   WHAT is happening (RunState, JobState, EnvironmentState)

State Lifecycle:
    RunState:
        created on trigger admission (phase ADMITTED, status PENDING)
        → EXECUTING / RUNNING while jobs are scheduled
        → FINISHED / SUCCEEDED|FAILED once no job can make progress
        → ARCHIVED after the state manager moves it out of the active set

    JobState:
        PENDING → RUNNING → SUCCEEDED | FAILED | CANCELLED

    EnvironmentState:
        mutated only by a successful deployment (last_deployed_url, history)
        and by approvals granted for a run.

Design Decision - Immutable Snapshots:
    State objects are replaced, not mutated: callers use ``model_copy(update=...)``
    and hand the new snapshot to the StateManager.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from pipewright.core.enums import JobStatus, RunPhase, RunStatus
from pipewright.core.models import Event


def _now() -> datetime:
    """Get the current UTC timestamp."""
    return datetime.now(timezone.utc)


# =============================================================================
# Job State
# =============================================================================
class JobState(BaseModel):
    """Runtime state of one job within a run.

    Attributes:
        name: Job name.
        status: Current lifecycle state.
        required: Whether the job's success is required for the run to succeed.
        started_at: When the job entered RUNNING.
        completed_at: When the job reached a terminal state.
        failed_step_index: Index of the step that failed, if any.
        error: Serialized error that ended the job, if any.
        outputs: Step outputs keyed by step id.
    """

    name: str
    status: JobStatus = JobStatus.PENDING
    required: bool = True
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_step_index: Optional[int] = None
    error: Optional[dict[str, Any]] = None
    outputs: dict[str, dict[str, Any]] = Field(default_factory=dict)


# =============================================================================
# Run State
# =============================================================================
class RunState(BaseModel):
    """Complete runtime state of one pipeline run.

    This is the "master record" for a run. It aggregates the per-job states,
    an ordered log of every job transition, and the run-level error log.

    Attributes:
        run_id: Unique run identifier.
        pipeline_name: Name of the pipeline that was run.
        event: The event that triggered the run.
        phase: Where the run is in its lifecycle.
        status: Overall outcome so far.
        jobs: Map of job name → JobState.
        job_log: Ordered transitions, each
            ``{"job", "status", "timestamp", ...}``.
        error_log: Chronological list of serialized errors.
        cancel_requested: Set once ``cancel_run`` has been called.
        metadata: Arbitrary run-level metadata.
    """

    run_id: str
    pipeline_name: str
    event: Event
    phase: RunPhase = RunPhase.ADMITTED
    status: RunStatus = RunStatus.PENDING
    jobs: dict[str, JobState] = Field(default_factory=dict)
    job_log: list[dict[str, Any]] = Field(default_factory=list)
    error_log: list[dict[str, Any]] = Field(default_factory=list)
    cancel_requested: bool = False
    started_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        """True if the run finished and every required job succeeded."""
        return self.status == RunStatus.SUCCEEDED

    @property
    def is_finished(self) -> bool:
        return self.phase in (RunPhase.FINISHED, RunPhase.ARCHIVED)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def job_status(self, name: str) -> JobStatus:
        """Status of a job by name.

        Raises:
            KeyError: If the run has no such job.
        """
        return self.jobs[name].status

    def jobs_with_status(self, status: JobStatus) -> list[str]:
        """Names of jobs currently in the given status, sorted."""
        return sorted(name for name, job in self.jobs.items() if job.status == status)


# =============================================================================
# Environment State
# =============================================================================
class EnvironmentState(BaseModel):
    """A named deployment target and its protection rules.

    Attributes:
        name: Environment name (e.g. "github-pages", "production").
        required_approvals: Approvals needed per run before deploying.
        deployment_branches: Glob patterns of refs allowed to deploy.
            None allows every branch.
        last_deployed_url: URL of the last successful deployment.
        last_deployed_run_id: Run that produced the last deployment.
        last_deployed_at: When the last deployment finished.
        approvals: Map of run_id → reviewers who approved that run.
        history: Ordered records of successful deployments.
    """

    name: str
    required_approvals: int = Field(default=0, ge=0)
    deployment_branches: Optional[list[str]] = None
    last_deployed_url: Optional[str] = None
    last_deployed_run_id: Optional[str] = None
    last_deployed_at: Optional[datetime] = None
    approvals: dict[str, list[str]] = Field(default_factory=dict)
    history: list[dict[str, Any]] = Field(default_factory=list)

    def approvals_for(self, run_id: str) -> list[str]:
        """Reviewers who approved the given run."""
        return list(self.approvals.get(run_id, []))
