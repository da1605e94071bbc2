"""
pipewright.infrastructure.artifact_store - Run-Scoped Artifact Storage
========================================================================

Artifacts are the immutable payloads jobs hand to each other within a run:
the build job publishes generated documentation, the deploy job fetches it.

Architecture Context:
    ┌──────────────┐                     ┌──────────────────────┐
    │  build job   │ ── publish(docs) ─→ │    ArtifactStore     │
    └──────────────┘                     │  (run_id, name) →    │
    ┌──────────────┐                     │   ArtifactRef + blob │
    │  deploy job  │ ←── fetch(docs) ─── │                      │
    └──────────────┘                     └──────────────────────┘

Contract:
    - Write-once: publishing a name that already exists for the run raises
      DuplicateArtifactError. Content is never mutated afterwards.
    - Visibility: fetch raises NotFoundError when the artifact is absent,
      expired, or its producing job has not yet succeeded. The pipeline
      engine calls ``mark_producer_succeeded`` once a job succeeds.
    - Idempotent reads: every successful fetch returns identical bytes.
      Each ArtifactRef carries a sha256 digest that is checked on read.

Storage Implementations:
    - InMemoryArtifactStore: Dict-based, for development/testing
    - LocalArtifactStore: Blobs + JSON metadata under a directory, survives
      process restarts for the retention window

Usage:
    >>> store = InMemoryArtifactStore()
    >>> ref = await store.publish("run-1", "docs", b"...", producing_job="build")
    >>> await store.mark_producer_succeeded("run-1", "build")
    >>> content = await store.fetch("run-1", "docs")
"""

from __future__ import annotations

import asyncio
import hashlib
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import structlog

from pipewright.core.exceptions import (
    ArtifactError,
    DuplicateArtifactError,
    NotFoundError,
)
from pipewright.core.models import ArtifactRef


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _digest(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _check_name(run_id: str, name: str) -> None:
    """Reject names that cannot be used as a single path component."""
    if not name or name.startswith(".") or "/" in name or "\\" in name:
        raise ArtifactError(
            message=f"Invalid artifact name: {name!r}",
            run_id=run_id,
            name=name,
            error_code="INVALID_ARTIFACT_NAME",
        )


def _check_run_id(run_id: str, name: str = "") -> None:
    """Reject run ids that cannot be used as a single path component."""
    if not run_id or run_id.startswith(".") or "/" in run_id or "\\" in run_id:
        raise ArtifactError(
            message=f"Invalid run id: {run_id!r}",
            run_id=run_id,
            name=name,
            error_code="INVALID_RUN_ID",
        )


# =============================================================================
# Abstract Base Class
# =============================================================================
class ArtifactStore(ABC):
    """Abstract interface for run-scoped artifact storage.

    Methods:
        publish(run_id, name, content, producing_job): Store a new artifact.
        fetch(run_id, name): Read an artifact's content.
        get_ref(run_id, name): Metadata of a published artifact, if any.
        mark_producer_succeeded(run_id, job): Make a job's artifacts readable.
        wait_for(run_id, name, timeout): Suspend until an artifact is readable.
        list_by_run(run_id): All artifacts published in a run.
        purge_expired(): Remove artifacts past their retention window.
        count(): Number of stored artifacts.
    """

    @abstractmethod
    async def publish(
        self,
        run_id: str,
        name: str,
        content: bytes,
        producing_job: str,
        retention_days: Optional[int] = None,
    ) -> ArtifactRef:
        """Store a new artifact for a run.

        Args:
            run_id: Run the artifact belongs to.
            name: Artifact name, unique within the run.
            content: Opaque payload.
            producing_job: Job that published the artifact.
            retention_days: Retention window; the store default when None.

        Returns:
            The ArtifactRef describing the stored content.

        Raises:
            DuplicateArtifactError: If ``name`` already exists for ``run_id``.
        """
        ...

    @abstractmethod
    async def fetch(self, run_id: str, name: str) -> bytes:
        """Read an artifact's content.

        Raises:
            NotFoundError: If the artifact is absent, expired, or its
                producing job has not yet succeeded.
        """
        ...

    @abstractmethod
    async def get_ref(self, run_id: str, name: str) -> Optional[ArtifactRef]:
        """Metadata of a published artifact, regardless of producer status."""
        ...

    @abstractmethod
    async def mark_producer_succeeded(self, run_id: str, job: str) -> None:
        """Record that ``job`` succeeded so its artifacts become readable."""
        ...

    @abstractmethod
    async def wait_for(
        self,
        run_id: str,
        name: str,
        timeout: Optional[float] = None,
    ) -> ArtifactRef:
        """Suspend until an artifact is published and readable.

        Raises:
            NotFoundError: If ``timeout`` elapses first.
        """
        ...

    @abstractmethod
    async def list_by_run(self, run_id: str) -> list[ArtifactRef]:
        """All artifacts published in a run, oldest first."""
        ...

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete artifacts past their retention window.

        Returns:
            The number of artifacts removed.
        """
        ...

    @abstractmethod
    async def count(self) -> int:
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================
class InMemoryArtifactStore(ArtifactStore):
    """In-memory artifact store for development and testing.

    The index of refs and the set of succeeded producers live in
    dictionaries; content goes through ``_write_content`` /
    ``_read_content`` / ``_delete_content`` so subclasses can place the
    bytes elsewhere without re-implementing the contract.

    Attributes:
        retention_days: Default retention window for new artifacts.
        _refs: Map of (run_id, name) → ArtifactRef.
        _succeeded: Set of (run_id, job) whose artifacts are readable.

    Example:
        >>> store = InMemoryArtifactStore(retention_days=7)
        >>> await store.publish("run-1", "docs", b"<html/>", "build")
    """

    def __init__(
        self,
        retention_days: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.retention_days = retention_days
        self._clock = clock or _utc_now
        self._refs: dict[tuple[str, str], ArtifactRef] = {}
        self._blobs: dict[tuple[str, str], bytes] = {}
        self._succeeded: set[tuple[str, str]] = set()
        self._changed = asyncio.Condition()
        self._logger = logger.bind(component="artifact_store")

    # -------------------------------------------------------------------------
    # Content hooks
    # -------------------------------------------------------------------------
    def _write_content(self, ref: ArtifactRef, content: bytes) -> None:
        self._blobs[(ref.run_id, ref.name)] = content

    def _read_content(self, ref: ArtifactRef) -> bytes:
        return self._blobs[(ref.run_id, ref.name)]

    def _delete_content(self, ref: ArtifactRef) -> None:
        self._blobs.pop((ref.run_id, ref.name), None)

    def _record_producer(self, run_id: str, job: str) -> None:
        self._succeeded.add((run_id, job))

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------
    async def publish(
        self,
        run_id: str,
        name: str,
        content: bytes,
        producing_job: str,
        retention_days: Optional[int] = None,
    ) -> ArtifactRef:
        _check_run_id(run_id, name)
        _check_name(run_id, name)
        key = (run_id, name)
        if key in self._refs:
            raise DuplicateArtifactError(run_id=run_id, name=name)

        created_at = self._clock()
        days = retention_days if retention_days is not None else self.retention_days
        ref = ArtifactRef(
            run_id=run_id,
            name=name,
            producing_job=producing_job,
            digest=_digest(content),
            size_bytes=len(content),
            created_at=created_at,
            expires_at=created_at + timedelta(days=days),
        )
        # Index and content are written before the first await so a
        # concurrent publish of the same name sees the key.
        self._write_content(ref, bytes(content))
        self._refs[key] = ref

        self._logger.info(
            "artifact_published",
            run_id=run_id,
            artifact=name,
            producing_job=producing_job,
            size_bytes=ref.size_bytes,
        )
        await self._notify()
        return ref

    async def fetch(self, run_id: str, name: str) -> bytes:
        ref = self._readable_ref(run_id, name)
        content = self._read_content(ref)
        if _digest(content) != ref.digest:
            raise ArtifactError(
                message=f"Artifact '{name}' content does not match its digest",
                run_id=run_id,
                name=name,
                error_code="ARTIFACT_CORRUPT",
                details={"expected_digest": ref.digest},
            )
        self._logger.debug("artifact_fetched", run_id=run_id, artifact=name)
        return content

    async def get_ref(self, run_id: str, name: str) -> Optional[ArtifactRef]:
        return self._refs.get((run_id, name))

    async def mark_producer_succeeded(self, run_id: str, job: str) -> None:
        self._record_producer(run_id, job)
        self._logger.debug("artifact_producer_succeeded", run_id=run_id, job=job)
        await self._notify()

    async def wait_for(
        self,
        run_id: str,
        name: str,
        timeout: Optional[float] = None,
    ) -> ArtifactRef:
        def _ready() -> bool:
            return self._unavailable_reason(run_id, name) is None

        async with self._changed:
            try:
                await asyncio.wait_for(self._changed.wait_for(_ready), timeout)
            except asyncio.TimeoutError:
                reason = self._unavailable_reason(run_id, name) or "timed out"
                raise NotFoundError(
                    run_id=run_id,
                    name=name,
                    reason=f"{reason} after waiting {timeout}s",
                ) from None
        return self._refs[(run_id, name)]

    async def list_by_run(self, run_id: str) -> list[ArtifactRef]:
        refs = [ref for (rid, _), ref in self._refs.items() if rid == run_id]
        return sorted(refs, key=lambda r: r.created_at)

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [
            key for key, ref in self._refs.items()
            if ref.expires_at is not None and ref.expires_at <= now
        ]
        for key in expired:
            ref = self._refs.pop(key)
            self._delete_content(ref)
        if expired:
            self._logger.info("artifacts_purged", count=len(expired))
        return len(expired)

    async def count(self) -> int:
        return len(self._refs)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------
    def _unavailable_reason(self, run_id: str, name: str) -> Optional[str]:
        ref = self._refs.get((run_id, name))
        if ref is None:
            return "not published"
        if ref.expires_at is not None and ref.expires_at <= self._clock():
            return "expired"
        if (run_id, ref.producing_job) not in self._succeeded:
            return f"producing job '{ref.producing_job}' has not succeeded"
        return None

    def _readable_ref(self, run_id: str, name: str) -> ArtifactRef:
        reason = self._unavailable_reason(run_id, name)
        if reason is not None:
            raise NotFoundError(run_id=run_id, name=name, reason=reason)
        return self._refs[(run_id, name)]

    async def _notify(self) -> None:
        async with self._changed:
            self._changed.notify_all()


# =============================================================================
# Local Directory Implementation
# =============================================================================
class LocalArtifactStore(InMemoryArtifactStore):
    """Artifact store that keeps content and metadata on local disk.

    Layout::

        <storage_dir>/<run_id>/<name>.blob        raw content
        <storage_dir>/<run_id>/<name>.json        ArtifactRef metadata
        <storage_dir>/<run_id>/.producers         succeeded jobs, one per line

    Existing metadata is indexed on construction, so a restarted process
    still serves artifacts inside their retention window.
    """

    def __init__(
        self,
        storage_dir: str | Path,
        retention_days: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(retention_days=retention_days, clock=clock)
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self._logger = logger.bind(component="local_artifact_store")
        self._load_index()

    def _run_dir(self, run_id: str) -> Path:
        _check_run_id(run_id)
        return self.storage_dir / run_id

    def _load_index(self) -> None:
        for meta_path in sorted(self.storage_dir.glob("*/*.json")):
            ref = ArtifactRef.model_validate_json(meta_path.read_text())
            self._refs[(ref.run_id, ref.name)] = ref
        for producers in self.storage_dir.glob("*/.producers"):
            run_id = producers.parent.name
            for job in producers.read_text().splitlines():
                if job:
                    self._succeeded.add((run_id, job))
        self._logger.debug("artifact_index_loaded", count=len(self._refs))

    def _write_content(self, ref: ArtifactRef, content: bytes) -> None:
        run_dir = self._run_dir(ref.run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        (run_dir / f"{ref.name}.blob").write_bytes(content)
        (run_dir / f"{ref.name}.json").write_text(ref.model_dump_json())

    def _read_content(self, ref: ArtifactRef) -> bytes:
        path = self._run_dir(ref.run_id) / f"{ref.name}.blob"
        if not path.exists():
            raise NotFoundError(run_id=ref.run_id, name=ref.name, reason="content missing")
        return path.read_bytes()

    def _delete_content(self, ref: ArtifactRef) -> None:
        run_dir = self._run_dir(ref.run_id)
        for suffix in (".blob", ".json"):
            (run_dir / f"{ref.name}{suffix}").unlink(missing_ok=True)

    def _record_producer(self, run_id: str, job: str) -> None:
        if (run_id, job) in self._succeeded:
            return
        run_dir = self._run_dir(run_id)
        super()._record_producer(run_id, job)
        run_dir.mkdir(parents=True, exist_ok=True)
        with open(run_dir / ".producers", "a") as f:
            f.write(f"{job}\n")
