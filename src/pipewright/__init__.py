"""
Pipewright - Pipeline Orchestration Core
==========================================

Pipewright runs declarative CI/CD pipelines: a validated job graph,
run-scoped artifacts handed from producing to consuming jobs, and a
per-group concurrency gate that serializes deployments without ever
interrupting one that is already in flight.

    Event → Trigger Evaluator → Job Graph → Job Executor → Artifact Store
                                                  │
                                   Concurrency Gate → Deployment Stage

Architecture Layers (top to bottom):
    1. Orchestration Layer  - Pipeline Engine, Job Graph, Concurrency Gate,
                              Triggers, Policies, State Manager
    2. Execution Layer      - Job Executor, step actions, Deployment Stage
    3. Infrastructure Layer - Artifact Store
    4. Integration Layer    - Credentials, Commands, Source, Hosting

Quick Start:
    >>> from pipewright import Pipewright
    >>> async with Pipewright() as pw:
    ...     pipeline = pw.load_pipeline("pages.yaml")
    ...     state = await pw.handle_event(pipeline, event)
"""

# =============================================================================
# Package Version
# =============================================================================
__version__ = "0.1.0"

# =============================================================================
# Package-Level Exports
# =============================================================================
# The Pipewright facade is the main entry point. For specific components,
# import from submodules directly:
#   from pipewright.core.config import PipewrightConfig
#   from pipewright.orchestration.concurrency_gate import ConcurrencyGate
# =============================================================================
from pipewright.facade import Pipewright

__all__ = ["Pipewright", "__version__"]
