"""
pipewright.integrations.source - Source Checkout Providers
============================================================

A ``checkout`` step populates the job workspace with the source tree the
event refers to. Fetching from a real forge is out of scope; the local
provider copies a directory (or a set of in-memory files) into place.
"""

from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import structlog

from pipewright.core.models import Event


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class SourceProvider(ABC):
    """Abstract source of the tree a run builds."""

    @abstractmethod
    async def checkout(self, event: Event, workspace: Path) -> dict[str, str]:
        """Populate ``workspace`` with the source for ``event``.

        Returns:
            Step outputs, at least ``ref`` and ``sha``.
        """
        ...


class LocalSourceProvider(SourceProvider):
    """Copies a local directory and/or a mapping of files into the workspace.

    Args:
        source_dir: Directory copied into the workspace (``.git`` excluded).
        files: Extra files to write, relative path → text.
    """

    def __init__(
        self,
        source_dir: Optional[str | Path] = None,
        files: Optional[dict[str, str]] = None,
    ) -> None:
        self.source_dir = Path(source_dir) if source_dir is not None else None
        self.files = dict(files or {})
        self._logger = logger.bind(component="local_source_provider")

    async def checkout(self, event: Event, workspace: Path) -> dict[str, str]:
        workspace.mkdir(parents=True, exist_ok=True)
        if self.source_dir is not None:
            if not self.source_dir.is_dir():
                raise FileNotFoundError(f"Source directory not found: {self.source_dir}")
            shutil.copytree(
                self.source_dir,
                workspace,
                dirs_exist_ok=True,
                ignore=shutil.ignore_patterns(".git"),
            )
        for rel_path, text in self.files.items():
            target = workspace / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text)

        self._logger.debug(
            "source_checked_out",
            ref=event.ref,
            sha=event.sha,
            workspace=str(workspace),
        )
        return {"ref": event.ref, "sha": event.sha or ""}
