"""
pipewright.execution - Execution Layer
========================================

Runs the steps of a single job on an isolated workspace.

Components:
    - JobExecutor:      Step loop, cancellation, timeouts, token lifecycle
    - JobContext:       Per-job workspace, env, tokens and collaborators
    - ActionRegistry:   Built-in step actions (checkout, run, upload-artifact,
                        download-artifact, deploy)
    - DeploymentStage:  Publishes an artifact to an environment
"""

from pipewright.execution.actions import (
    ActionHandler,
    ActionRegistry,
    CheckoutAction,
    ConfigurePagesAction,
    DeployAction,
    DownloadArtifactAction,
    RunAction,
    UploadArtifactAction,
)
from pipewright.execution.context import JobContext
from pipewright.execution.deployment import DeploymentStage
from pipewright.execution.executor import JobExecutor

__all__ = [
    "ActionHandler",
    "ActionRegistry",
    "CheckoutAction",
    "ConfigurePagesAction",
    "DeployAction",
    "DeploymentStage",
    "DownloadArtifactAction",
    "JobContext",
    "JobExecutor",
    "RunAction",
    "UploadArtifactAction",
]
