"""
pipewright.integrations - External Collaborators
==================================================

Everything a pipeline touches outside the orchestration core sits behind
an interface here, so implementations can be swapped (real → in-process).

Modules:
    credentials - CredentialIssuer: per-job permission tokens
    commands    - CommandRunner: shell commands for ``run`` steps
    source      - SourceProvider: workspace checkout
    hosting     - HostingTarget: deployment endpoint returning a URL
"""

from pipewright.integrations.commands import (
    CommandResult,
    CommandRunner,
    ScriptedCommandRunner,
    SubprocessCommandRunner,
)
from pipewright.integrations.credentials import CredentialIssuer, InMemoryCredentialIssuer
from pipewright.integrations.hosting import (
    DirectoryHostingTarget,
    HostingTarget,
    InMemoryHostingTarget,
)
from pipewright.integrations.source import LocalSourceProvider, SourceProvider

__all__ = [
    "CommandResult",
    "CommandRunner",
    "ScriptedCommandRunner",
    "SubprocessCommandRunner",
    "CredentialIssuer",
    "InMemoryCredentialIssuer",
    "HostingTarget",
    "InMemoryHostingTarget",
    "DirectoryHostingTarget",
    "SourceProvider",
    "LocalSourceProvider",
]
