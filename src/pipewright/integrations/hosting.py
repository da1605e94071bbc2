"""
pipewright.integrations.hosting - Deployment Targets
======================================================

The deployment stage hands an artifact's content to a HostingTarget, which
publishes it and answers with the URL it is reachable at.

Implementations:
    - InMemoryHostingTarget:  Records deployments, returns ``<base_url>/<env>/``
    - DirectoryHostingTarget: Unpacks tarball content into ``<root>/<env>/``
      and returns a ``file://`` URL
"""

from __future__ import annotations

import asyncio
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import structlog

from pipewright.infrastructure.archive import unpack_bytes


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class HostingTarget(ABC):
    """Abstract external publishing endpoint."""

    @abstractmethod
    def url_for(self, environment: str) -> str:
        """URL content published to ``environment`` is served at."""
        ...

    @abstractmethod
    async def publish(self, environment: str, content: bytes, run_id: str) -> str:
        """Publish ``content`` to ``environment``.

        Returns:
            The URL the published content is reachable at.
        """
        ...


class InMemoryHostingTarget(HostingTarget):
    """Hosting target for tests and dry runs.

    Attributes:
        base_url: Prefix of the URLs handed out.
        deployments: Chronological deployment records.
        delay: Seconds each publish takes.
        fail_with: Exception raised by every publish, when set.
    """

    def __init__(
        self,
        base_url: str = "https://pages.example.test",
        delay: float = 0.0,
        fail_with: Optional[Exception] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.delay = delay
        self.fail_with = fail_with
        self.deployments: list[dict[str, Any]] = []
        self._logger = logger.bind(component="in_memory_hosting")

    def url_for(self, environment: str) -> str:
        return f"{self.base_url}/{environment}/"

    async def publish(self, environment: str, content: bytes, run_id: str) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        url = self.url_for(environment)
        self.deployments.append(
            {"environment": environment, "run_id": run_id, "size_bytes": len(content), "url": url}
        )
        self._logger.info("site_published", environment=environment, run_id=run_id, url=url)
        return url


class DirectoryHostingTarget(HostingTarget):
    """Serves deployments out of a local directory.

    Each publish replaces ``<root>/<environment>`` with the unpacked tarball.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._logger = logger.bind(component="directory_hosting")

    def url_for(self, environment: str) -> str:
        return (self.root / environment).resolve().as_uri() + "/"

    async def publish(self, environment: str, content: bytes, run_id: str) -> str:
        target = self.root / environment
        staging = self.root / f".{environment}.{run_id}"
        if staging.exists():
            shutil.rmtree(staging)
        files = unpack_bytes(content, staging)
        if target.exists():
            shutil.rmtree(target)
        staging.replace(target)

        url = self.url_for(environment)
        self._logger.info(
            "site_published",
            environment=environment,
            run_id=run_id,
            files=len(files),
            url=url,
        )
        return url
