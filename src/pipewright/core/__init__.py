"""
pipewright.core - Foundation Layer
====================================

Shared building blocks used by every other package:

    - enums:       Type-safe enumerations (JobStatus, Permission, EventKind, ...)
    - exceptions:  Error taxonomy rooted at PipewrightError
    - config:      Settings via pydantic-settings + YAML
    - models:      Static definitions and immutable results
    - state:       Runtime snapshots (RunState, JobState, EnvironmentState)
"""

from pipewright.core.config import (
    ArtifactConfig,
    ExecutorConfig,
    GateConfig,
    PipewrightConfig,
    configure_logging,
    get_default_config,
    load_config,
)
from pipewright.core.enums import (
    AcquireOutcome,
    EventKind,
    JobStatus,
    Permission,
    RunPhase,
    RunStatus,
    StepAction,
    StepStatus,
    TriggerDecision,
)
from pipewright.core.exceptions import (
    ApprovalRequiredError,
    ArtifactError,
    ArtifactMissingError,
    ConfigurationError,
    DeploymentBranchError,
    DuplicateArtifactError,
    GateTimeoutError,
    GraphCycleError,
    GraphError,
    NotFoundError,
    PermissionDeniedError,
    PipelineDefinitionError,
    PipewrightError,
    PolicyViolationError,
    StepExecutionError,
    UnknownDependencyError,
)
from pipewright.core.models import (
    ArtifactRef,
    ConcurrencySettings,
    DeployResult,
    EnvironmentBinding,
    Event,
    JobDefinition,
    JobResult,
    PermissionToken,
    PipelineDefinition,
    StepDefinition,
    StepResult,
    TriggerRule,
)
from pipewright.core.state import EnvironmentState, JobState, RunState

__all__ = [
    # Config
    "PipewrightConfig",
    "GateConfig",
    "ArtifactConfig",
    "ExecutorConfig",
    "load_config",
    "get_default_config",
    "configure_logging",
    # Enums
    "AcquireOutcome",
    "EventKind",
    "JobStatus",
    "Permission",
    "RunPhase",
    "RunStatus",
    "StepAction",
    "StepStatus",
    "TriggerDecision",
    # Exceptions
    "PipewrightError",
    "ConfigurationError",
    "PipelineDefinitionError",
    "GraphError",
    "GraphCycleError",
    "UnknownDependencyError",
    "ArtifactError",
    "DuplicateArtifactError",
    "NotFoundError",
    "ArtifactMissingError",
    "PermissionDeniedError",
    "ApprovalRequiredError",
    "DeploymentBranchError",
    "PolicyViolationError",
    "StepExecutionError",
    "GateTimeoutError",
    # Models
    "Event",
    "TriggerRule",
    "StepDefinition",
    "ConcurrencySettings",
    "EnvironmentBinding",
    "JobDefinition",
    "PipelineDefinition",
    "StepResult",
    "JobResult",
    "ArtifactRef",
    "DeployResult",
    "PermissionToken",
    # State
    "RunState",
    "JobState",
    "EnvironmentState",
]
