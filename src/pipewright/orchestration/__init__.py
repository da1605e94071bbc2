"""
pipewright.orchestration - Orchestration Layer
================================================

Components that decide WHEN jobs run, as opposed to the execution layer,
which decides HOW a job's steps run.

Components:
    - TriggerEvaluator: Admits or ignores incoming events
    - JobGraph:         Validated dependency graph, ``ready_jobs``
    - ConcurrencyGate:  Per-group serialization of deployment jobs
    - PolicyEngine:     Environment protection rules
    - StateManager:     Run, job result and environment persistence
    - PipelineEngine:   Drives a run from admission to archival
"""

from pipewright.orchestration.concurrency_gate import (
    AcquireResult,
    ConcurrencyGate,
    GateLease,
)
from pipewright.orchestration.job_graph import JobGraph
from pipewright.orchestration.pipeline_engine import PipelineEngine
from pipewright.orchestration.policy_engine import (
    DeploymentBranchPolicy,
    EnvironmentApprovalPolicy,
    Policy,
    PolicyEngine,
    PolicyResult,
)
from pipewright.orchestration.state_manager import InMemoryStateManager, StateManager
from pipewright.orchestration.trigger import TriggerEvaluator

__all__ = [
    # Triggers
    "TriggerEvaluator",
    # Job Graph
    "JobGraph",
    # Concurrency Gate
    "AcquireResult",
    "ConcurrencyGate",
    "GateLease",
    # Policies
    "Policy",
    "PolicyEngine",
    "PolicyResult",
    "EnvironmentApprovalPolicy",
    "DeploymentBranchPolicy",
    # State
    "StateManager",
    "InMemoryStateManager",
    # Engine
    "PipelineEngine",
]
