"""
pipewright.pipeline.loader - Pipeline Document Loader
=======================================================

Turns a declarative pipeline document (YAML) into a validated, immutable
PipelineDefinition. Every structural problem in the document is reported
here, at load time, as a PipelineDefinitionError; nothing is re-interpreted
while a run executes.

Document shape:

    name: Docs
    on:
      push:
        branches: [main]
      pull_request:
        branches-ignore: ["wip/*"]
      workflow_dispatch:
    env:
      FOO: bar
    permissions:                # capability list or scope mapping
      contents: read
      pages: write
      id-token: write
    concurrency:
      group: pages
      cancel-in-progress: false
    jobs:
      build:
        steps:
          - uses: actions/checkout@v3
          - run: make docs
          - uses: actions/upload-pages-artifact@v1
            with:
              path: ./site
      deploy:
        needs: build
        environment:
          name: github-pages
        steps:
          - id: deployment
            uses: actions/deploy-pages@v1

Trigger kinds: ``push`` and ``pull_request`` (with ``branches`` or
``branches-ignore``), ``workflow_dispatch`` / ``manual_dispatch``.

Note: YAML 1.1 reads a bare ``on`` key as boolean True; both spellings
are accepted.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional, Union

import structlog
import yaml
from pydantic import ValidationError

from pipewright.core.enums import EventKind, Permission, StepAction
from pipewright.core.exceptions import PipelineDefinitionError
from pipewright.core.models import (
    ConcurrencySettings,
    EnvironmentBinding,
    JobDefinition,
    PipelineDefinition,
    StepDefinition,
    TriggerRule,
)


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


# =============================================================================
# Vocabulary
# =============================================================================
EVENT_ALIASES: dict[str, EventKind] = {
    "push": EventKind.PUSH,
    "pull_request": EventKind.PULL_REQUEST,
    "manual_dispatch": EventKind.MANUAL_DISPATCH,
    "workflow_dispatch": EventKind.MANUAL_DISPATCH,
}

# (scope, level) → capabilities. "write" implies "read".
SCOPE_PERMISSIONS: dict[str, dict[str, frozenset[Permission]]] = {
    "contents": {
        "read": frozenset({Permission.READ_SOURCE}),
        "write": frozenset({Permission.READ_SOURCE}),
    },
    "pages": {
        "read": frozenset(),
        "write": frozenset({Permission.WRITE_PAGES}),
    },
    "id-token": {
        "read": frozenset(),
        "write": frozenset({Permission.ISSUE_IDENTITY_TOKEN}),
    },
    "deployments": {
        "read": frozenset(),
        "write": frozenset({Permission.WRITE_DEPLOYMENTS}),
    },
}

# Marketplace-style ``uses`` references (version suffix stripped).
USES_ACTIONS: dict[str, StepAction] = {
    "actions/checkout": StepAction.CHECKOUT,
    "actions/upload-artifact": StepAction.UPLOAD_ARTIFACT,
    "actions/upload-pages-artifact": StepAction.UPLOAD_ARTIFACT,
    "actions/download-artifact": StepAction.DOWNLOAD_ARTIFACT,
    "actions/configure-pages": StepAction.CONFIGURE_PAGES,
    "actions/deploy-pages": StepAction.DEPLOY,
}

PAGES_ARTIFACT_NAME = "github-pages"
ALWAYS_CONDITIONS = {"always()", "${{ always() }}"}
SUCCESS_CONDITIONS = {"success()", "${{ success() }}"}


# =============================================================================
# Public API
# =============================================================================
def load_pipeline(path: Union[str, Path]) -> PipelineDefinition:
    """Read and validate a pipeline document from disk.

    The file stem is the pipeline name when the document has none.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        PipelineDefinitionError: If the document is invalid.
    """
    doc_path = Path(path)
    if not doc_path.exists():
        raise FileNotFoundError(f"Pipeline document not found: {path}")

    try:
        with open(doc_path) as f:
            document = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise PipelineDefinitionError(
            message=f"Pipeline document is not valid YAML: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e

    pipeline = parse_pipeline(document, default_name=doc_path.stem)
    logger.info(
        "pipeline_loaded",
        path=str(doc_path),
        pipeline=pipeline.name,
        jobs=[job.name for job in pipeline.jobs],
    )
    return pipeline


def parse_pipeline(
    document: Any,
    default_name: str = "pipeline",
) -> PipelineDefinition:
    """Validate an already-parsed document mapping.

    Raises:
        PipelineDefinitionError: If the document is invalid.
    """
    if not isinstance(document, Mapping):
        raise PipelineDefinitionError(
            message="Pipeline document must be a mapping",
            details={"type": type(document).__name__},
        )

    triggers_doc = document.get("on", document.get(True))
    jobs_doc = document.get("jobs")
    if not isinstance(jobs_doc, Mapping) or not jobs_doc:
        raise PipelineDefinitionError(
            message="Pipeline document must declare at least one job under 'jobs'",
        )

    try:
        return PipelineDefinition(
            name=str(document.get("name") or default_name),
            triggers=_parse_triggers(triggers_doc),
            env=_parse_env(document.get("env"), "pipeline"),
            permissions=_parse_permissions(document.get("permissions"), "pipeline")
            or frozenset(),
            concurrency=_parse_concurrency(document.get("concurrency"), "pipeline"),
            jobs=[_parse_job(str(name), job_doc) for name, job_doc in jobs_doc.items()],
        )
    except ValidationError as e:
        raise PipelineDefinitionError(
            message=f"Invalid pipeline document: {e}",
            details={"errors": [err["msg"] for err in e.errors()]},
        ) from e


# =============================================================================
# Triggers
# =============================================================================
def _parse_triggers(doc: Any) -> list[TriggerRule]:
    if doc is None:
        raise PipelineDefinitionError(message="Pipeline document has no 'on' triggers")
    if isinstance(doc, str):
        doc = {doc: None}
    elif isinstance(doc, list):
        doc = {str(kind): None for kind in doc}
    if not isinstance(doc, Mapping):
        raise PipelineDefinitionError(
            message="'on' must be an event name, a list, or a mapping",
            details={"type": type(doc).__name__},
        )

    rules: list[TriggerRule] = []
    for raw_kind, filters in doc.items():
        kind = EVENT_ALIASES.get(str(raw_kind))
        if kind is None:
            raise PipelineDefinitionError(
                message=f"Unsupported trigger event '{raw_kind}'",
                details={"event": str(raw_kind), "supported": sorted(EVENT_ALIASES)},
            )
        filters = filters or {}
        if not isinstance(filters, Mapping):
            raise PipelineDefinitionError(
                message=f"Filters for '{raw_kind}' must be a mapping",
                details={"event": str(raw_kind)},
            )
        unknown = set(filters) - {"branches", "branches-ignore", "inputs"}
        if unknown:
            raise PipelineDefinitionError(
                message=f"Unsupported filters for '{raw_kind}': {sorted(unknown)}",
                details={"event": str(raw_kind), "filters": sorted(unknown)},
            )
        try:
            rules.append(
                TriggerRule(
                    kind=kind,
                    branches=_as_list(filters.get("branches")),
                    branches_ignore=_as_list(filters.get("branches-ignore")),
                )
            )
        except ValidationError as e:
            raise PipelineDefinitionError(
                message=f"Invalid branch filter for '{raw_kind}'",
                details={
                    "event": str(raw_kind),
                    "errors": [err["msg"] for err in e.errors()],
                },
            ) from e
    return rules


# =============================================================================
# Shared Sections
# =============================================================================
def _parse_env(doc: Any, where: str) -> dict[str, str]:
    if doc is None:
        return {}
    if not isinstance(doc, Mapping):
        raise PipelineDefinitionError(
            message=f"'env' of {where} must be a mapping",
            details={"where": where},
        )
    return {str(k): "" if v is None else str(v) for k, v in doc.items()}


def _parse_permissions(doc: Any, where: str) -> Optional[frozenset[Permission]]:
    """Capability list, scope mapping, or ``read-all`` / ``write-all``."""
    if doc is None:
        return None

    if doc == "read-all":
        return frozenset({Permission.READ_SOURCE})
    if doc == "write-all":
        return frozenset(Permission)

    if isinstance(doc, list):
        try:
            return frozenset(Permission(str(p)) for p in doc)
        except ValueError as e:
            raise PipelineDefinitionError(
                message=f"Unknown permission in {where}: {e}",
                details={"where": where, "known": sorted(p.value for p in Permission)},
            ) from e

    if isinstance(doc, Mapping):
        granted: set[Permission] = set()
        for scope, raw_level in doc.items():
            level = str(raw_level)
            levels = SCOPE_PERMISSIONS.get(str(scope))
            if levels is None:
                raise PipelineDefinitionError(
                    message=f"Unknown permission scope '{scope}' in {where}",
                    details={"where": where, "known": sorted(SCOPE_PERMISSIONS)},
                )
            if level == "none":
                continue
            if level not in levels:
                raise PipelineDefinitionError(
                    message=f"Permission scope '{scope}' must be read, write, or none",
                    details={"where": where, "scope": str(scope), "level": level},
                )
            granted |= levels[level]
        return frozenset(granted)

    raise PipelineDefinitionError(
        message=f"'permissions' of {where} must be a list or a mapping",
        details={"where": where},
    )


def _parse_concurrency(doc: Any, where: str) -> Optional[ConcurrencySettings]:
    if doc is None:
        return None
    if isinstance(doc, str):
        return ConcurrencySettings(group=doc)
    if not isinstance(doc, Mapping) or "group" not in doc:
        raise PipelineDefinitionError(
            message=f"'concurrency' of {where} must be a group name or a mapping with 'group'",
            details={"where": where},
        )
    return ConcurrencySettings(
        group=str(doc["group"]),
        cancel_in_progress=bool(doc.get("cancel-in-progress", False)),
    )


# =============================================================================
# Jobs & Steps
# =============================================================================
def _parse_job(name: str, doc: Any) -> JobDefinition:
    if not isinstance(doc, Mapping):
        raise PipelineDefinitionError(
            message=f"Job '{name}' must be a mapping",
            details={"job": name},
        )
    steps_doc = doc.get("steps") or []
    if not isinstance(steps_doc, list):
        raise PipelineDefinitionError(
            message=f"'steps' of job '{name}' must be a list",
            details={"job": name},
        )

    where = f"job '{name}'"
    timeout_minutes = doc.get("timeout-minutes")
    try:
        return JobDefinition(
            name=name,
            needs=_as_list(doc.get("needs")) or [],
            steps=[_parse_step(name, i, step) for i, step in enumerate(steps_doc)],
            permissions=_parse_permissions(doc.get("permissions"), where),
            env=_parse_env(doc.get("env"), where),
            environment=_parse_environment(doc.get("environment"), name),
            concurrency=_parse_concurrency(doc.get("concurrency"), where),
            timeout_seconds=float(timeout_minutes) * 60 if timeout_minutes is not None else None,
            required=not bool(doc.get("continue-on-error", False)),
            runs_on=str(doc.get("runs-on") or "local"),
        )
    except ValidationError as e:
        raise PipelineDefinitionError(
            message=f"Invalid job '{name}': {e}",
            details={"job": name, "errors": [err["msg"] for err in e.errors()]},
        ) from e


def _parse_environment(doc: Any, job: str) -> Optional[EnvironmentBinding]:
    if doc is None:
        return None
    if isinstance(doc, str):
        return EnvironmentBinding(name=doc)
    if isinstance(doc, Mapping) and "name" in doc:
        url = doc.get("url")
        return EnvironmentBinding(name=str(doc["name"]), url=str(url) if url else None)
    raise PipelineDefinitionError(
        message=f"'environment' of job '{job}' must be a name or a mapping with 'name'",
        details={"job": job},
    )


def _parse_step(job: str, index: int, doc: Any) -> StepDefinition:
    if not isinstance(doc, Mapping):
        raise PipelineDefinitionError(
            message=f"Step {index} of job '{job}' must be a mapping",
            details={"job": job, "step_index": index},
        )
    if ("run" in doc) == ("uses" in doc):
        raise PipelineDefinitionError(
            message=f"Step {index} of job '{job}' needs exactly one of 'run' or 'uses'",
            details={"job": job, "step_index": index},
        )

    params = dict(doc.get("with") or {})
    if "run" in doc:
        action = StepAction.RUN
        command: Optional[str] = str(doc["run"])
    else:
        command = None
        action, params = _resolve_uses(job, index, str(doc["uses"]), params)

    try:
        return StepDefinition(
            name=str(doc.get("name") or ""),
            id=str(doc["id"]) if doc.get("id") is not None else None,
            action=action,
            command=command,
            params=params,
            env=_parse_env(doc.get("env"), f"step {index} of job '{job}'"),
            always_run=_parse_condition(job, index, doc.get("if")),
            working_directory=doc.get("working-directory"),
        )
    except ValidationError as e:
        raise PipelineDefinitionError(
            message=f"Invalid step {index} of job '{job}': {e}",
            details={"job": job, "step_index": index, "errors": [err["msg"] for err in e.errors()]},
        ) from e


def _resolve_uses(
    job: str,
    index: int,
    uses: str,
    params: dict[str, Any],
) -> tuple[StepAction, dict[str, Any]]:
    reference = uses.split("@", 1)[0]
    action = USES_ACTIONS.get(reference)
    if action is None:
        try:
            action = StepAction(reference)
        except ValueError:
            raise PipelineDefinitionError(
                message=f"Unknown action '{uses}' in step {index} of job '{job}'",
                details={
                    "job": job,
                    "step_index": index,
                    "uses": uses,
                    "known": sorted([*USES_ACTIONS, *(a.value for a in StepAction)]),
                },
            ) from None

    if reference == "actions/upload-pages-artifact":
        params.setdefault("name", PAGES_ARTIFACT_NAME)
    if reference == "actions/deploy-pages" and "artifact_name" in params:
        params["artifact"] = params.pop("artifact_name")
    return action, params


def _parse_condition(job: str, index: int, condition: Any) -> bool:
    """``if:`` support is limited to always() and success()."""
    if condition is None:
        return False
    text = str(condition).strip()
    if text in ALWAYS_CONDITIONS:
        return True
    if text in SUCCESS_CONDITIONS:
        return False
    raise PipelineDefinitionError(
        message=f"Unsupported condition '{text}' in step {index} of job '{job}'",
        details={"job": job, "step_index": index, "condition": text},
    )


def _as_list(value: Any) -> Optional[list[str]]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]
