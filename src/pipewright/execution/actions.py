"""
pipewright.execution.actions - Built-in Step Actions
======================================================

Every step names an action; the executor looks the action up in an
ActionRegistry and calls its handler. Handlers follow a small template:

    ┌──────────────────────────────────────────────────────┐
    │  ActionHandler.execute(step, index, ctx)  ← Public API │
    │  ┌────────────────────────────────────────────────┐  │
    │  │ 1. ctx.token(p) for p in required_permissions  │  │
    │  │ 2. _execute(step, index, ctx)  ← Override this │  │
    │  └────────────────────────────────────────────────┘  │
    └──────────────────────────────────────────────────────┘

Built-in actions:

    Action              Permissions                          Params
    ──────              ───────────                          ──────
    checkout            read-source                          -
    run                 -                                    (command)
    upload-artifact     -                                    name, path | content (+filename), retention-days
    download-artifact   -                                    name, path, timeout
    configure-pages     -                                    environment
    deploy              write-pages, issue-identity-token    artifact

``run`` steps may publish outputs by appending ``key=value`` lines to the
file named by ``$PIPEWRIGHT_OUTPUT``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

import structlog

from pipewright.core.enums import Permission, StepAction
from pipewright.core.exceptions import PipelineDefinitionError, StepExecutionError
from pipewright.core.models import StepDefinition
from pipewright.execution.context import JobContext
from pipewright.infrastructure.archive import pack_bytes, pack_path, unpack_bytes


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


DEFAULT_ARTIFACT_NAME = "artifact"
DEFAULT_PAGES_ARTIFACT = "github-pages"
DEFAULT_PAGES_ENVIRONMENT = "github-pages"
OUTPUT_FILE_NAME = ".pipewright-output"


def _step_error(
    ctx: JobContext,
    step: StepDefinition,
    index: int,
    message: str,
    error_code: str = "STEP_FAILED",
    **details: Any,
) -> StepExecutionError:
    return StepExecutionError(
        message=message,
        job=ctx.job.name,
        step_index=index,
        step_name=step.display_name,
        error_code=error_code,
        details=details or None,
    )


# =============================================================================
# Abstract Base Class
# =============================================================================
class ActionHandler(ABC):
    """Base class for step actions.

    Attributes:
        action: The StepAction this handler implements.
        required_permissions: Capabilities the step needs tokens for.
    """

    action: StepAction
    required_permissions: frozenset[Permission] = frozenset()

    def __init__(self) -> None:
        self._logger = logger.bind(component="action", action=self.action.value)

    async def execute(self, step: StepDefinition, index: int, ctx: JobContext) -> dict[str, Any]:
        """Run the step and return its outputs.

        Raises:
            PermissionDeniedError: If the job lacks a required permission.
            StepExecutionError: If the action fails.
        """
        for permission in sorted(self.required_permissions, key=lambda p: p.value):
            ctx.token(permission, step_index=index)
        return await self._execute(step, index, ctx)

    @abstractmethod
    async def _execute(self, step: StepDefinition, index: int, ctx: JobContext) -> dict[str, Any]:
        ...


# =============================================================================
# checkout
# =============================================================================
class CheckoutAction(ActionHandler):
    """Populates the workspace through the SourceProvider."""

    action = StepAction.CHECKOUT
    required_permissions = frozenset({Permission.READ_SOURCE})

    async def _execute(self, step: StepDefinition, index: int, ctx: JobContext) -> dict[str, Any]:
        outputs = await ctx.source.checkout(ctx.event, ctx.workspace)
        self._logger.debug("checkout_done", run_id=ctx.run_id, job=ctx.job.name, ref=ctx.event.ref)
        return dict(outputs)


# =============================================================================
# run
# =============================================================================
class RunAction(ActionHandler):
    """Runs a shell command; a non-zero exit code fails the step."""

    action = StepAction.RUN

    async def _execute(self, step: StepDefinition, index: int, ctx: JobContext) -> dict[str, Any]:
        cwd = ctx.resolve_path(step.working_directory, index, step.display_name)
        output_file = ctx.workspace / f"{OUTPUT_FILE_NAME}-{index}"
        env = ctx.step_env(step)
        env["PIPEWRIGHT_OUTPUT"] = str(output_file)

        result = await ctx.runner.run(step.command or "", cwd, env)
        if not result.ok:
            raise StepExecutionError(
                message=f"Command exited with code {result.exit_code}",
                job=ctx.job.name,
                step_index=index,
                step_name=step.display_name,
                exit_code=result.exit_code,
                details={"stderr": result.stderr[-2000:]},
            )

        outputs: dict[str, Any] = {}
        if output_file.exists():
            for line in output_file.read_text().splitlines():
                key, sep, value = line.partition("=")
                if sep and key.strip():
                    outputs[key.strip()] = value
            output_file.unlink()
        return outputs


# =============================================================================
# upload-artifact
# =============================================================================
class UploadArtifactAction(ActionHandler):
    """Publishes a workspace path (as tar.gz) or inline content."""

    action = StepAction.UPLOAD_ARTIFACT

    async def _execute(self, step: StepDefinition, index: int, ctx: JobContext) -> dict[str, Any]:
        name = str(step.params.get("name") or DEFAULT_ARTIFACT_NAME)
        retention = step.params.get("retention-days")

        if "content" in step.params:
            filename = str(step.params.get("filename") or f"{name}.txt")
            content = pack_bytes(filename, str(step.params["content"]).encode())
        elif "path" in step.params:
            src = ctx.resolve_path(str(step.params["path"]), index, step.display_name)
            if not src.exists():
                raise _step_error(
                    ctx,
                    step,
                    index,
                    f"Upload path does not exist: {step.params['path']}",
                    error_code="UPLOAD_PATH_MISSING",
                    path=str(step.params["path"]),
                )
            content = pack_path(src)
        else:
            raise _step_error(
                ctx, step, index, "upload-artifact needs a 'path' or 'content' parameter"
            )

        ref = await ctx.artifact_store.publish(
            ctx.run_id,
            name,
            content,
            producing_job=ctx.job.name,
            retention_days=int(retention) if retention is not None else None,
        )
        return {"artifact": ref.name, "digest": ref.digest, "size_bytes": ref.size_bytes}


# =============================================================================
# download-artifact
# =============================================================================
class DownloadArtifactAction(ActionHandler):
    """Fetches an artifact and unpacks it into the workspace."""

    action = StepAction.DOWNLOAD_ARTIFACT

    async def _execute(self, step: StepDefinition, index: int, ctx: JobContext) -> dict[str, Any]:
        name = str(step.params.get("name") or DEFAULT_ARTIFACT_NAME)
        dest = ctx.resolve_path(step.params.get("path"), index, step.display_name)

        timeout = step.params.get("timeout")
        if timeout is not None:
            await ctx.artifact_store.wait_for(ctx.run_id, name, float(timeout))
        content = await ctx.artifact_store.fetch(ctx.run_id, name)

        files = unpack_bytes(content, dest)
        return {"artifact": name, "path": str(dest), "files": len(files)}


# =============================================================================
# configure-pages
# =============================================================================
class ConfigurePagesAction(ActionHandler):
    """Reports where the site will be served so the build can use it."""

    action = StepAction.CONFIGURE_PAGES

    async def _execute(self, step: StepDefinition, index: int, ctx: JobContext) -> dict[str, Any]:
        if ctx.deployer is None:
            raise _step_error(ctx, step, index, "No deployment stage is configured")
        environment = str(step.params.get("environment") or DEFAULT_PAGES_ENVIRONMENT)
        return {
            "base_url": ctx.deployer.hosting.url_for(environment),
            "environment": environment,
        }


# =============================================================================
# deploy
# =============================================================================
class DeployAction(ActionHandler):
    """Hands an artifact to the deployment stage; outputs ``page_url``."""

    action = StepAction.DEPLOY
    required_permissions = frozenset({Permission.WRITE_PAGES, Permission.ISSUE_IDENTITY_TOKEN})

    async def _execute(self, step: StepDefinition, index: int, ctx: JobContext) -> dict[str, Any]:
        if ctx.job.environment is None:
            raise _step_error(ctx, step, index, "deploy steps require a job environment")
        if ctx.deployer is None:
            raise _step_error(ctx, step, index, "No deployment stage is configured")

        name = str(step.params.get("artifact") or DEFAULT_PAGES_ARTIFACT)
        result = await ctx.deployer.deploy_named(
            ctx.run_id,
            name,
            ctx.job.environment.name,
            ref=ctx.event.ref,
        )
        return {"page_url": result.url, "environment": result.environment}


# =============================================================================
# Registry
# =============================================================================
class ActionRegistry:
    """Maps StepAction → handler.

    Example:
        >>> registry = ActionRegistry.default()
        >>> registry.get(StepAction.RUN)
    """

    def __init__(self, handlers: Optional[Iterable[ActionHandler]] = None) -> None:
        self._handlers: dict[StepAction, ActionHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    @classmethod
    def default(cls) -> ActionRegistry:
        return cls(
            [
                CheckoutAction(),
                RunAction(),
                UploadArtifactAction(),
                DownloadArtifactAction(),
                ConfigurePagesAction(),
                DeployAction(),
            ]
        )

    def register(self, handler: ActionHandler) -> None:
        self._handlers[handler.action] = handler

    def get(self, action: StepAction) -> ActionHandler:
        """Raises PipelineDefinitionError for an action with no handler."""
        handler = self._handlers.get(action)
        if handler is None:
            raise PipelineDefinitionError(
                message=f"No handler registered for action '{action.value}'",
                details={"action": action.value},
            )
        return handler

    def required_permissions(self, action: StepAction) -> frozenset[Permission]:
        return self.get(action).required_permissions
