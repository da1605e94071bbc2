"""
pipewright.core.models - Core Data Models
===========================================

This module defines the Pydantic models that flow through every layer of
pipewright. Definitions are static (they describe WHAT should happen);
results are produced once and never change afterwards.

Model Hierarchy:
    Event               → What happened? (push to main, manual run, ...)
    TriggerRule         → Which events start the pipeline?
    StepDefinition      → One atomic action inside a job
    JobDefinition       → Named, dependency-ordered unit of work
    PipelineDefinition  → The whole declarative document, validated

    StepResult / JobResult  → What happened when a job ran
    ArtifactRef             → Handle to an immutable run-scoped payload
    DeployResult            → Where a deployment landed
    PermissionToken         → Credential scoped to one job and capability

Data Flow:
    ┌──────────────┐  Event   ┌──────────────┐  JobDefinition  ┌──────────────┐
    │   Trigger    │ ───────→ │   Pipeline    │ ──────────────→ │     Job       │
    │  Evaluator   │          │    Engine     │ ←────────────── │   Executor    │
    └──────────────┘          └──────────────┘    JobResult     └──────────────┘
"""

from __future__ import annotations

from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pipewright.core.enums import (
    EventKind,
    JobStatus,
    Permission,
    StepAction,
    StepStatus,
)


# =============================================================================
# Helpers
# =============================================================================
def _generate_id() -> str:
    """Generate a unique identifier using UUID4."""
    return str(uuid4())


def _now() -> datetime:
    """Get the current UTC timestamp. Every timestamp in pipewright is UTC."""
    return datetime.now(timezone.utc)


def branch_from_ref(ref: str) -> str:
    """Strip the ``refs/heads/`` prefix from a git ref.

    >>> branch_from_ref("refs/heads/main")
    'main'
    >>> branch_from_ref("main")
    'main'
    """
    prefix = "refs/heads/"
    if ref.startswith(prefix):
        return ref[len(prefix):]
    return ref


def branch_matches(branch: str, patterns: list[str]) -> bool:
    """Check a branch name against glob patterns (``release/*``, ``main``)."""
    return any(fnmatchcase(branch, pattern) for pattern in patterns)


# =============================================================================
# Event
# =============================================================================
class Event(BaseModel):
    """An incoming event that may start a pipeline run.

    Attributes:
        event_id: Unique identifier for this delivery.
        kind: Push, pull request, or manual dispatch.
        ref: The ref the event happened on. For pushes this is the pushed
            branch; for pull requests the head branch.
        base_ref: For pull requests, the branch the PR targets. Branch
            filters on pull_request triggers match against this ref.
        sha: Commit the run should build.
        actor: Who caused the event.
        inputs: Free-form inputs supplied with a manual dispatch.

    Example:
        >>> event = Event(kind=EventKind.PUSH, ref="refs/heads/main", actor="ci-bot")
        >>> event.branch
        'main'
    """

    event_id: str = Field(default_factory=_generate_id)
    kind: EventKind
    ref: str = Field(min_length=1, description="Branch or git ref of the event")
    base_ref: Optional[str] = Field(
        default=None,
        description="Target branch of a pull request",
    )
    sha: Optional[str] = None
    actor: str = Field(default="unknown")
    inputs: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=_now)

    @property
    def branch(self) -> str:
        """The event's branch name without the ``refs/heads/`` prefix."""
        return branch_from_ref(self.ref)

    @property
    def filter_branch(self) -> str:
        """The branch trigger filters are evaluated against."""
        if self.kind == EventKind.PULL_REQUEST and self.base_ref:
            return branch_from_ref(self.base_ref)
        return self.branch


# =============================================================================
# Trigger Rule
# =============================================================================
# One {event kind, branch filter} pair. Validation happens when the rule is
# constructed (i.e. when the pipeline document is loaded), so a malformed
# filter can never surface during event evaluation.
# =============================================================================
class TriggerRule(BaseModel):
    """A declared trigger: an event kind plus an optional branch filter.

    Attributes:
        kind: Which event kind this rule admits.
        branches: Glob patterns the branch must match. None admits all branches.
        branches_ignore: Glob patterns that exclude a branch. Mutually
            exclusive with ``branches``.
    """

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    branches: Optional[list[str]] = None
    branches_ignore: Optional[list[str]] = None

    @model_validator(mode="after")
    def _check_filters(self) -> TriggerRule:
        if self.branches is not None and self.branches_ignore is not None:
            raise ValueError("'branches' and 'branches_ignore' are mutually exclusive")
        if self.kind == EventKind.MANUAL_DISPATCH and (
            self.branches is not None or self.branches_ignore is not None
        ):
            raise ValueError("manual_dispatch does not accept branch filters")
        for patterns in (self.branches, self.branches_ignore):
            if patterns is None:
                continue
            if not patterns:
                raise ValueError("branch filter lists must not be empty")
            if any(not p or not p.strip() for p in patterns):
                raise ValueError("branch patterns must be non-empty strings")
        return self

    def matches_branch(self, branch: str) -> bool:
        """Apply this rule's branch filter to a branch name."""
        if self.branches is not None:
            return branch_matches(branch, self.branches)
        if self.branches_ignore is not None:
            return not branch_matches(branch, self.branches_ignore)
        return True


# =============================================================================
# Step Definition
# =============================================================================
class StepDefinition(BaseModel):
    """An atomic action inside a job.

    Steps execute strictly in declaration order. A failing step marks the
    job failed and skips the rest, except steps flagged ``always_run``.

    Attributes:
        name: Display name.
        id: Optional identifier; outputs of the step are published under it.
        action: Which built-in action to invoke.
        command: Shell command for RUN steps.
        params: Action parameters (the ``with:`` block of the document).
        env: Step-level environment variables.
        always_run: Execute even after an earlier step failed (cleanup).
        working_directory: Directory relative to the job workspace.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="")
    id: Optional[str] = None
    action: StepAction
    command: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    always_run: bool = False
    working_directory: Optional[str] = None

    @model_validator(mode="after")
    def _check_command(self) -> StepDefinition:
        if self.action == StepAction.RUN and not (self.command and self.command.strip()):
            raise ValueError("run steps require a non-empty command")
        return self

    @property
    def display_name(self) -> str:
        """Name shown in logs; falls back to the id, command, or action."""
        if self.name:
            return self.name
        if self.id:
            return self.id
        if self.action == StepAction.RUN and self.command:
            return self.command.strip().splitlines()[0]
        return self.action.value


# =============================================================================
# Concurrency & Environment Bindings
# =============================================================================
class ConcurrencySettings(BaseModel):
    """A named serialization domain for gated stages.

    Attributes:
        group: Group key shared by all runs that must not deploy at once.
        cancel_in_progress: When True a new run cancels the occupant; when
            False it waits, and only the newest waiter is kept.
    """

    model_config = ConfigDict(frozen=True)

    group: str = Field(min_length=1)
    cancel_in_progress: bool = False


class EnvironmentBinding(BaseModel):
    """A job's reference to a deployment environment."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    url: Optional[str] = Field(
        default=None,
        description="Static URL hint shown before the first deployment",
    )


# =============================================================================
# Job Definition
# =============================================================================
class JobDefinition(BaseModel):
    """A named unit of work.

    Attributes:
        name: Unique job name within the pipeline.
        needs: Jobs that must succeed before this one starts.
        steps: Ordered steps.
        permissions: Declared capabilities. None inherits the pipeline's set.
        env: Job-level environment variables.
        environment: Deployment environment binding. A job with an
            environment is a deployment stage and is gated.
        concurrency: Job-level concurrency settings (override the pipeline's).
        timeout_seconds: Wall-clock limit (None uses the configured default).
        required: When False the job's failure does not fail the run.
        runs_on: Label of the execution environment (informational).
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    needs: list[str] = Field(default_factory=list)
    steps: list[StepDefinition] = Field(default_factory=list)
    permissions: Optional[frozenset[Permission]] = None
    env: dict[str, str] = Field(default_factory=dict)
    environment: Optional[EnvironmentBinding] = None
    concurrency: Optional[ConcurrencySettings] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    required: bool = True
    runs_on: str = "local"

    @property
    def is_deployment(self) -> bool:
        """True if the job deploys to an environment."""
        return self.environment is not None


# =============================================================================
# Pipeline Definition
# =============================================================================
class PipelineDefinition(BaseModel):
    """The validated form of a pipeline document.

    Attributes:
        pipeline_id: Unique identifier.
        name: Human-readable pipeline name.
        triggers: Declared trigger rules.
        env: Pipeline-wide environment variables.
        permissions: Permission set inherited by jobs that declare none.
        concurrency: Concurrency settings applied to deployment jobs.
        jobs: All job definitions.
    """

    model_config = ConfigDict(frozen=True)

    pipeline_id: str = Field(default_factory=_generate_id)
    name: str = Field(min_length=1)
    triggers: list[TriggerRule] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    permissions: frozenset[Permission] = Field(default_factory=frozenset)
    concurrency: Optional[ConcurrencySettings] = None
    jobs: list[JobDefinition] = Field(default_factory=list)

    def job(self, name: str) -> JobDefinition:
        """Look up a job by name.

        Raises:
            KeyError: If no job has that name.
        """
        for job in self.jobs:
            if job.name == name:
                return job
        raise KeyError(name)

    def effective_permissions(self, job: JobDefinition) -> frozenset[Permission]:
        """The permission set a job actually holds."""
        if job.permissions is not None:
            return job.permissions
        return self.permissions

    def concurrency_for(self, job: JobDefinition) -> Optional[ConcurrencySettings]:
        """Concurrency settings gating a job, or None if it is not gated.

        Only deployment jobs are gated. Job-level settings win over the
        pipeline's; with neither declared the group defaults to the
        environment name so every deployment to that environment serializes.
        """
        if job.concurrency is not None:
            return job.concurrency
        if job.environment is None:
            return None
        if self.concurrency is not None:
            return self.concurrency
        return ConcurrencySettings(group=job.environment.name)

    def job_env(self, job: JobDefinition) -> dict[str, str]:
        """Pipeline env overlaid with job env."""
        merged = dict(self.env)
        merged.update(job.env)
        return merged


# =============================================================================
# Results
# =============================================================================
class StepResult(BaseModel):
    """Outcome of a single step execution."""

    index: int = Field(ge=0)
    name: str
    status: StepStatus
    outputs: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobResult(BaseModel):
    """Outcome of a job execution.

    Attributes:
        job: Job name.
        run_id: Run the job belonged to.
        status: Terminal status (SUCCEEDED, FAILED, or CANCELLED).
        steps: One result per declared step, in order.
        outputs: Step outputs keyed by step id.
        error: ``PipewrightError.to_dict()`` of the failure, if any.
        failed_step_index: Index of the first failing step, if any.
    """

    job: str
    run_id: str
    status: JobStatus
    steps: list[StepResult] = Field(default_factory=list)
    outputs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    error: Optional[dict[str, Any]] = None
    failed_step_index: Optional[int] = None
    started_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = Field(default=None, ge=0)

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED


class ArtifactRef(BaseModel):
    """Handle to a published artifact.

    The content itself stays in the artifact store; the ref carries enough
    to fetch it and to verify it was not altered.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    name: str
    producing_job: str
    digest: str = Field(description="sha256 of the content")
    size_bytes: int = Field(ge=0)
    created_at: datetime = Field(default_factory=_now)
    expires_at: Optional[datetime] = None


class DeployResult(BaseModel):
    """Where a deployment landed."""

    environment: str
    url: str
    run_id: str
    artifact: ArtifactRef
    deployed_at: datetime = Field(default_factory=_now)


class PermissionToken(BaseModel):
    """A credential issued for one capability of one job."""

    model_config = ConfigDict(frozen=True)

    permission: Permission
    token: str
    run_id: str
    job: str
    issued_at: datetime = Field(default_factory=_now)
    expires_at: Optional[datetime] = None
