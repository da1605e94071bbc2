"""
pipewright.integrations.credentials - Credential Issuer Interface
===================================================================

The job executor never mints credentials itself. At job start it asks a
CredentialIssuer for exactly the job's declared permission set and hands
the resulting tokens to the steps through the job context.

    ┌──────────────┐  issue(run, job, {read-source})  ┌──────────────────┐
    │ JobExecutor  │ ───────────────────────────────→ │ CredentialIssuer │
    │              │ ←── {read-source: token} ─────── │                  │
    └──────────────┘                                  └──────────────────┘

The in-process implementation records every request so tests can assert
that the requested set equals the declared set.
"""

from __future__ import annotations

import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

import structlog

from pipewright.core.enums import Permission
from pipewright.core.models import PermissionToken


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class CredentialIssuer(ABC):
    """Abstract source of per-job permission tokens."""

    @abstractmethod
    async def issue(
        self,
        run_id: str,
        job: str,
        permissions: frozenset[Permission],
    ) -> dict[Permission, PermissionToken]:
        """Issue one token per requested permission.

        Args:
            run_id: Run the job belongs to.
            job: Job name the tokens are scoped to.
            permissions: The job's declared permission set.

        Returns:
            Map of permission → token, covering exactly ``permissions``.
        """
        ...

    @abstractmethod
    async def revoke(self, run_id: str, job: str) -> None:
        """Invalidate every token issued to a job."""
        ...


class InMemoryCredentialIssuer(CredentialIssuer):
    """Issues random opaque tokens and remembers what was asked for.

    Attributes:
        requests: Chronological list of ``(run_id, job, permissions)``.
        ttl_seconds: Lifetime stamped on each token.
    """

    def __init__(self, ttl_seconds: float = 3600.0) -> None:
        self.ttl_seconds = ttl_seconds
        self.requests: list[tuple[str, str, frozenset[Permission]]] = []
        self._active: dict[tuple[str, str], dict[Permission, PermissionToken]] = {}
        self._logger = logger.bind(component="credential_issuer")

    async def issue(
        self,
        run_id: str,
        job: str,
        permissions: frozenset[Permission],
    ) -> dict[Permission, PermissionToken]:
        self.requests.append((run_id, job, frozenset(permissions)))
        now = datetime.now(timezone.utc)
        tokens = {
            permission: PermissionToken(
                permission=permission,
                token=secrets.token_hex(16),
                run_id=run_id,
                job=job,
                issued_at=now,
                expires_at=now + timedelta(seconds=self.ttl_seconds),
            )
            for permission in sorted(permissions, key=lambda p: p.value)
        }
        self._active[(run_id, job)] = tokens
        self._logger.debug(
            "credentials_issued",
            run_id=run_id,
            job=job,
            permissions=[p.value for p in tokens],
        )
        return tokens

    async def revoke(self, run_id: str, job: str) -> None:
        if self._active.pop((run_id, job), None) is not None:
            self._logger.debug("credentials_revoked", run_id=run_id, job=job)

    def active_tokens(self, run_id: str, job: str) -> dict[Permission, PermissionToken]:
        """Tokens currently valid for a job (empty after revoke)."""
        return dict(self._active.get((run_id, job), {}))
