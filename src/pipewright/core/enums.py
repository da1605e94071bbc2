"""
pipewright.core.enums - Type-Safe Enumerations
================================================

This module defines all enumeration types used throughout pipewright.

All enums inherit from both `str` and `Enum`, which means:
    - They serialize to strings in JSON/YAML (Pydantic-friendly)
    - They can be compared with plain strings: JobStatus.FAILED == "failed"
    - They have human-readable representations

Architecture Mapping:
    ┌─────────────────────────────────────────────────────────────────┐
    │  ADMISSION                                                      │
    │    EventKind: What happened (push, pull request, manual run)    │
    │    TriggerDecision: Whether a run starts (ADMIT / IGNORE)       │
    ├─────────────────────────────────────────────────────────────────┤
    │  EXECUTION                                                      │
    │    RunStatus / RunPhase: Run lifecycle                          │
    │    JobStatus: Job lifecycle (PENDING → RUNNING → terminal)      │
    │    StepAction: Built-in step actions                            │
    │    Permission: Capabilities a job may request                   │
    ├─────────────────────────────────────────────────────────────────┤
    │  CONCURRENCY                                                    │
    │    AcquireOutcome: Result of asking the gate for occupancy      │
    └─────────────────────────────────────────────────────────────────┘
"""

from enum import Enum


# =============================================================================
# Event Kind Enumeration
# =============================================================================
# The three event sources a pipeline can be triggered by. The pipeline
# document may also spell manual dispatch as "workflow_dispatch"; the loader
# normalizes that alias to MANUAL_DISPATCH.
# =============================================================================
class EventKind(str, Enum):
    """Kinds of events that can trigger a pipeline run.

    Usage:
        >>> EventKind("push")
        <EventKind.PUSH: 'push'>
        >>> EventKind.PULL_REQUEST == "pull_request"
        True
    """

    PUSH = "push"                       # Commits pushed to a branch
    PULL_REQUEST = "pull_request"       # Pull request opened/updated against a branch
    MANUAL_DISPATCH = "manual_dispatch" # Run requested by a human


class TriggerDecision(str, Enum):
    """Outcome of evaluating an event against a pipeline's trigger rules."""

    ADMIT = "admit"
    IGNORE = "ignore"


# =============================================================================
# Job Status Enumeration
# =============================================================================
# State machine per job instance:
#
#   PENDING ──→ RUNNING ──→ SUCCEEDED
#      │           ├──────→ FAILED
#      │           └──────→ CANCELLED
#      └─────────────────→ CANCELLED   (run cancelled or superseded at the gate)
#
# A job whose dependencies never succeed stays PENDING forever.
# =============================================================================
class JobStatus(str, Enum):
    """Lifecycle states of a single job within a run."""

    PENDING = "pending"       # Not started (waiting on dependencies or the gate)
    RUNNING = "running"       # Steps are executing
    SUCCEEDED = "succeeded"   # Every step completed successfully
    FAILED = "failed"         # A step failed, timed out, or a structural check failed
    CANCELLED = "cancelled"   # Halted by run cancellation or the concurrency gate

    @property
    def is_terminal(self) -> bool:
        """True for SUCCEEDED, FAILED and CANCELLED."""
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class StepStatus(str, Enum):
    """Outcome of a single step."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"       # Not executed because an earlier step failed
    CANCELLED = "cancelled"   # Interrupted, or never started after cancellation


class RunStatus(str, Enum):
    """Overall status of a run.

    A run SUCCEEDS only if every required job succeeded. Any required job
    ending FAILED or CANCELLED (or never leaving PENDING) marks the run FAILED.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunPhase(str, Enum):
    """Where a run is in its lifecycle, independent of its outcome."""

    ADMITTED = "admitted"     # Trigger accepted, graph not yet built
    EXECUTING = "executing"   # Jobs are being scheduled
    FINISHED = "finished"     # All jobs reached a resting state
    ARCHIVED = "archived"     # Moved to the state manager archive


# =============================================================================
# Step Action Enumeration
# =============================================================================
# The built-in actions a step can invoke. The pipeline document uses
# ``run: <command>`` for RUN and ``uses: <action>`` for everything else.
# =============================================================================
class StepAction(str, Enum):
    """Built-in step actions understood by the job executor."""

    CHECKOUT = "checkout"
    RUN = "run"
    UPLOAD_ARTIFACT = "upload-artifact"
    DOWNLOAD_ARTIFACT = "download-artifact"
    CONFIGURE_PAGES = "configure-pages"
    DEPLOY = "deploy"


class Permission(str, Enum):
    """Capabilities a job may request from the credential issuer.

    A job declares the set it needs; the executor requests exactly that set
    and steps may only use tokens for declared permissions.
    """

    READ_SOURCE = "read-source"                     # Read-only source checkout
    WRITE_PAGES = "write-pages"                     # Publish to the hosting target
    WRITE_DEPLOYMENTS = "write-deployments"         # Update the deployment record
    ISSUE_IDENTITY_TOKEN = "issue-identity-token"   # Identity token for external auth


class AcquireOutcome(str, Enum):
    """Result of a concurrency gate acquisition."""

    PROCEED = "proceed"         # Occupancy granted, gated stage may start
    SUPERSEDED = "superseded"   # A newer run replaced this one in the queue
