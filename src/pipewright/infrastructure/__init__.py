"""
pipewright.infrastructure - Storage Layer
===========================================

Persistence components the execution and orchestration layers rely on.

Architecture:
    ┌─────────────── ORCHESTRATION LAYER ─────────────────┐
    │  PipelineEngine (marks producers succeeded)          │
    └─────────────────────┬───────────────────────────────┘
                          │
    ┌─────────────── EXECUTION LAYER ─────────────────────┐
    │  upload-artifact / download-artifact / deploy steps  │
    └─────────────────────┬───────────────────────────────┘
                          │ publish / fetch
                          ▼
    ┌─────────────── INFRASTRUCTURE LAYER ────────────────┐
    │  ArtifactStore (ABC)                                 │
    │    ├── InMemoryArtifactStore                         │
    │    └── LocalArtifactStore                            │
    │  archive: pack_path / pack_bytes / unpack_bytes      │
    └──────────────────────────────────────────────────────┘
"""

from pipewright.infrastructure.archive import pack_bytes, pack_path, unpack_bytes
from pipewright.infrastructure.artifact_store import (
    ArtifactStore,
    InMemoryArtifactStore,
    LocalArtifactStore,
)

__all__ = [
    "ArtifactStore",
    "InMemoryArtifactStore",
    "LocalArtifactStore",
    "pack_bytes",
    "pack_path",
    "unpack_bytes",
]
