"""
pipewright.core.exceptions - Error Taxonomy
=============================================

All pipewright errors inherit from ``PipewrightError`` and carry structured
context (error_code, details) so the pipeline engine can record them in the
run's error log and structlog can emit them as key/value pairs.

Hierarchy:
    PipewrightError
    ├── ConfigurationError          Bad settings file / values
    ├── PipelineDefinitionError     Malformed pipeline document or trigger filter
    ├── GraphError
    │   ├── UnknownDependencyError  ``needs`` names a job that does not exist
    │   └── GraphCycleError         Dependency relation is not acyclic
    ├── ArtifactError
    │   ├── DuplicateArtifactError  Name already published for this run
    │   ├── NotFoundError           Absent, expired, or producer not yet succeeded
    │   └── ArtifactMissingError    Deployment references an unpublished artifact
    ├── PermissionDeniedError       Job used a capability it did not declare
    ├── PolicyViolationError        An environment protection policy denied a deploy
    │   ├── ApprovalRequiredError   Environment approval not yet granted
    │   └── DeploymentBranchError   Ref not allowed to deploy to the environment
    ├── StepExecutionError          A step failed (job name + step index)
    └── GateTimeoutError            Queued wait on a concurrency group timed out

Structural errors (definition, graph, permission) abort a run before the
offending job starts. Step errors are local to their job.
"""

from __future__ import annotations

from typing import Any, Optional


# =============================================================================
# Base Exception
# =============================================================================
class PipewrightError(Exception):
    """Base exception for all pipewright errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable code, UPPER_SNAKE_CASE.
        details: Additional debugging context.

    Example:
        >>> try:
        ...     graph = JobGraph(jobs)
        ... except PipewrightError as e:
        ...     print(f"[{e.error_code}] {e.message}")
    """

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize this exception for logs and run error records.

        Returns:
            Dictionary with error_type, message, error_code, and details.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


# =============================================================================
# Configuration & Definition Errors
# =============================================================================
class ConfigurationError(PipewrightError):
    """Raised when pipewright settings are invalid or unreadable."""

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIG_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


class PipelineDefinitionError(PipewrightError):
    """Raised when a pipeline document cannot be turned into a definition.

    Trigger filter problems are reported here at load time so the trigger
    evaluator never has to reject configuration while evaluating an event.

    Example:
        >>> raise PipelineDefinitionError(
        ...     message="'branches' and 'branches-ignore' are mutually exclusive",
        ...     details={"trigger": "push"},
        ... )
    """

    def __init__(
        self,
        message: str,
        error_code: str = "PIPELINE_DEFINITION_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


# =============================================================================
# Job Graph Errors
# =============================================================================
class GraphError(PipewrightError):
    """Base class for job graph validation failures."""

    def __init__(
        self,
        message: str,
        error_code: str = "GRAPH_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


class UnknownDependencyError(GraphError):
    """A job depends on a name that is not defined in the graph."""

    def __init__(self, job: str, dependency: str, known: list[str]) -> None:
        super().__init__(
            message=f"Job '{job}' needs unknown job '{dependency}'",
            error_code="UNKNOWN_DEPENDENCY",
            details={"job": job, "dependency": dependency, "known_jobs": known},
        )
        self.job = job
        self.dependency = dependency


class GraphCycleError(GraphError):
    """The dependency relation contains a cycle.

    Attributes:
        cycle: The jobs on the cycle, first name repeated at the end
            (e.g. ``["build", "deploy", "build"]``). A self-dependency
            is reported as ``["build", "build"]``.
    """

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            message=f"Dependency cycle detected: {' -> '.join(cycle)}",
            error_code="GRAPH_CYCLE",
            details={"cycle": list(cycle)},
        )
        self.cycle = list(cycle)


# =============================================================================
# Artifact Errors
# =============================================================================
class ArtifactError(PipewrightError):
    """Base class for artifact store failures.

    Attributes:
        run_id: Run the artifact is scoped to.
        name: Artifact name within the run.
    """

    def __init__(
        self,
        message: str,
        run_id: str,
        name: str,
        error_code: str = "ARTIFACT_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        enriched_details = details or {}
        enriched_details["run_id"] = run_id
        enriched_details["artifact"] = name

        super().__init__(message=message, error_code=error_code, details=enriched_details)

        self.run_id = run_id
        self.name = name


class DuplicateArtifactError(ArtifactError):
    """An artifact with this name was already published for the run."""

    def __init__(self, run_id: str, name: str) -> None:
        super().__init__(
            message=f"Artifact '{name}' already exists for run {run_id}",
            run_id=run_id,
            name=name,
            error_code="DUPLICATE_ARTIFACT",
        )


class NotFoundError(ArtifactError):
    """The artifact is absent, expired, or its producer has not succeeded."""

    def __init__(self, run_id: str, name: str, reason: str = "not published") -> None:
        super().__init__(
            message=f"Artifact '{name}' is not available for run {run_id}: {reason}",
            run_id=run_id,
            name=name,
            error_code="ARTIFACT_NOT_FOUND",
            details={"reason": reason},
        )
        self.reason = reason


class ArtifactMissingError(ArtifactError):
    """A deployment referenced an artifact that was never published."""

    def __init__(self, run_id: str, name: str) -> None:
        super().__init__(
            message=f"Cannot deploy: artifact '{name}' was never published for run {run_id}",
            run_id=run_id,
            name=name,
            error_code="ARTIFACT_MISSING",
        )


# =============================================================================
# Permission Errors
# =============================================================================
class PermissionDeniedError(PipewrightError):
    """A job requested a capability outside its declared permission set."""

    def __init__(
        self,
        job: str,
        permission: str,
        declared: list[str],
        step_index: Optional[int] = None,
    ) -> None:
        details: dict[str, Any] = {
            "job": job,
            "permission": permission,
            "declared": declared,
        }
        if step_index is not None:
            details["step_index"] = step_index

        super().__init__(
            message=f"Job '{job}' did not declare permission '{permission}'",
            error_code="PERMISSION_DENIED",
            details=details,
        )
        self.job = job
        self.permission = permission
        self.step_index = step_index


# =============================================================================
# Policy & Environment Errors
# =============================================================================
class PolicyViolationError(PipewrightError):
    """An environment protection policy denied a deployment.

    Attributes:
        policy_name: Name of the policy that denied the action.
        violation_details: The policy's reason.
    """

    def __init__(
        self,
        message: str,
        policy_name: str,
        violation_details: str = "",
        error_code: str = "POLICY_VIOLATION",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        enriched_details = details or {}
        enriched_details["policy_name"] = policy_name
        enriched_details["violation_details"] = violation_details

        super().__init__(message=message, error_code=error_code, details=enriched_details)

        self.policy_name = policy_name
        self.violation_details = violation_details


class ApprovalRequiredError(PolicyViolationError):
    """The target environment requires approvals that were not granted."""

    def __init__(
        self,
        environment: str,
        run_id: str,
        required: int,
        granted: int,
    ) -> None:
        reason = (
            f"Environment '{environment}' requires {required} approval(s) "
            f"for run {run_id}, {granted} granted"
        )
        super().__init__(
            message=reason,
            policy_name="EnvironmentApprovalPolicy",
            violation_details=reason,
            error_code="APPROVAL_REQUIRED",
            details={
                "environment": environment,
                "run_id": run_id,
                "required": required,
                "granted": granted,
            },
        )
        self.environment = environment
        self.run_id = run_id
        self.required = required
        self.granted = granted


class DeploymentBranchError(PolicyViolationError):
    """The run's ref is not in the environment's deployment branch list."""

    def __init__(self, environment: str, ref: str, allowed: list[str]) -> None:
        reason = f"Ref '{ref}' may not deploy to environment '{environment}'"
        super().__init__(
            message=reason,
            policy_name="DeploymentBranchPolicy",
            violation_details=reason,
            error_code="DEPLOYMENT_BRANCH_DENIED",
            details={"environment": environment, "ref": ref, "allowed": allowed},
        )
        self.environment = environment
        self.ref = ref


# =============================================================================
# Execution Errors
# =============================================================================
class StepExecutionError(PipewrightError):
    """A step inside a job failed.

    Attributes:
        job: Name of the job the step belongs to.
        step_index: Zero-based position of the failing step.
        step_name: Display name of the step.
        exit_code: Process exit code for command steps, if any.
    """

    def __init__(
        self,
        message: str,
        job: str,
        step_index: int,
        step_name: str = "",
        exit_code: Optional[int] = None,
        error_code: str = "STEP_FAILED",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        enriched_details = details or {}
        enriched_details["job"] = job
        enriched_details["step_index"] = step_index
        enriched_details["step_name"] = step_name
        if exit_code is not None:
            enriched_details["exit_code"] = exit_code

        super().__init__(message=message, error_code=error_code, details=enriched_details)

        self.job = job
        self.step_index = step_index
        self.step_name = step_name
        self.exit_code = exit_code


class GateTimeoutError(PipewrightError):
    """A queued run waited on a concurrency group longer than allowed.

    The queued run is cancelled; the occupant is unaffected.
    """

    def __init__(self, group: str, run_id: str, timeout_seconds: float) -> None:
        super().__init__(
            message=(
                f"Run {run_id} timed out after {timeout_seconds}s "
                f"waiting for concurrency group '{group}'"
            ),
            error_code="GATE_TIMEOUT",
            details={
                "group": group,
                "run_id": run_id,
                "timeout_seconds": timeout_seconds,
            },
        )
        self.group = group
        self.run_id = run_id
        self.timeout_seconds = timeout_seconds
