"""
pipewright.core.config - Configuration Management
===================================================

Configuration can be loaded from multiple sources with the following
priority (highest first):

    1. Explicit constructor arguments
    2. Environment variables (prefixed with PIPEWRIGHT_)
    3. YAML configuration file (pipewright.yaml)
    4. Default values defined in the models below

Configuration flows DOWN through the system. The top-level PipewrightConfig
is created once and handed to the facade, which passes the relevant
sub-config to each component:

    PipewrightConfig
        ├── GateConfig      → ConcurrencyGate (queued wait timeout)
        ├── ArtifactConfig  → ArtifactStore (retention, durable storage dir)
        └── ExecutorConfig  → JobExecutor, PipelineEngine (parallelism, timeouts)

Environment Variables:
    PIPEWRIGHT_LOG_LEVEL=DEBUG
    PIPEWRIGHT_GATE__QUEUE_TIMEOUT_SECONDS=600
    PIPEWRIGHT_ARTIFACTS__RETENTION_DAYS=7
    PIPEWRIGHT_EXECUTOR__MAX_PARALLEL_JOBS=8
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal, Optional

import structlog
import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from pipewright.core.exceptions import ConfigurationError


# =============================================================================
# Concurrency Gate Configuration
# =============================================================================
class GateConfig(BaseModel):
    """Settings for the concurrency gate.

    Attributes:
        queue_timeout_seconds: How long a queued run may wait for a group
            before failing with GateTimeoutError. None waits indefinitely,
            which matches a hosted runner that never gives up on a queue.
    """

    queue_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Maximum queued wait on a concurrency group (None = no limit)",
    )


# =============================================================================
# Artifact Configuration
# =============================================================================
class ArtifactConfig(BaseModel):
    """Settings for the artifact store.

    Attributes:
        retention_days: Default retention window for published artifacts.
        storage_dir: When set, artifacts are written to this directory by
            LocalArtifactStore instead of being held in memory.
    """

    retention_days: int = Field(
        default=1,
        ge=1,
        le=90,
        description="Default artifact retention window in days",
    )
    storage_dir: Optional[str] = Field(
        default=None,
        description="Directory for durable artifact storage (None = in-memory)",
    )


# =============================================================================
# Executor Configuration
# =============================================================================
class ExecutorConfig(BaseModel):
    """Settings for job scheduling and execution."""

    max_parallel_jobs: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum jobs of one run executing at the same time",
    )
    default_job_timeout_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Job timeout used when a job does not declare one",
    )
    workspace_root: Optional[str] = Field(
        default=None,
        description="Parent directory for job workspaces (None = system temp dir)",
    )
    keep_workspaces: bool = Field(
        default=False,
        description="Leave job workspaces on disk after the job finishes",
    )


# =============================================================================
# Main Configuration
# =============================================================================
class PipewrightConfig(BaseSettings):
    """Top-level configuration for pipewright.

    Attributes:
        environment: Deployment environment of pipewright itself.
        log_level: Logging level for stdlib logging and structlog.
        gate: Concurrency gate settings.
        artifacts: Artifact store settings.
        executor: Job execution settings.

    Example:
        >>> config = PipewrightConfig(
        ...     log_level="DEBUG",
        ...     gate=GateConfig(queue_timeout_seconds=600),
        ... )
    """

    environment: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Deployment environment (affects defaults and verbosity)",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )

    gate: GateConfig = Field(
        default_factory=GateConfig,
        description="Concurrency gate configuration",
    )
    artifacts: ArtifactConfig = Field(
        default_factory=ArtifactConfig,
        description="Artifact store configuration",
    )
    executor: ExecutorConfig = Field(
        default_factory=ExecutorConfig,
        description="Job execution configuration",
    )

    # -------------------------------------------------------------------------
    # Pydantic Settings Configuration
    # -------------------------------------------------------------------------
    #   - env_prefix: All env vars start with "PIPEWRIGHT_"
    #   - env_nested_delimiter: "__" reaches into nested configs
    #     (PIPEWRIGHT_GATE__QUEUE_TIMEOUT_SECONDS → config.gate.queue_timeout_seconds)
    # -------------------------------------------------------------------------
    model_config = {
        "env_prefix": "PIPEWRIGHT_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }


# =============================================================================
# Configuration Loader
# =============================================================================
def load_config(path: Optional[str] = None) -> PipewrightConfig:
    """Load configuration from a YAML file and/or environment variables.

    Args:
        path: Path to a YAML configuration file. If None, looks for
            'pipewright.yaml' in the current directory and falls back to
            defaults + environment variables when it is absent.

    Returns:
        A fully validated PipewrightConfig instance.

    Raises:
        FileNotFoundError: If an explicit path is provided but doesn't exist.
        ConfigurationError: If the file is not valid YAML or not a mapping.
    """
    if path is None:
        default_path = Path("pipewright.yaml")
        if default_path.exists():
            path = str(default_path)

    yaml_data: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(config_path) as f:
                raw_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(
                message=f"Configuration file is not valid YAML: {path}",
                details={"path": str(path), "error": str(e)},
            ) from e

        if raw_data is None:
            raw_data = {}
        if not isinstance(raw_data, dict):
            raise ConfigurationError(
                message=f"Configuration file must contain a mapping: {path}",
                details={"path": str(path), "type": type(raw_data).__name__},
            )
        yaml_data = raw_data

    return PipewrightConfig(**yaml_data)


def get_default_config() -> PipewrightConfig:
    """Create a PipewrightConfig with defaults (overridden by env vars)."""
    return PipewrightConfig()


def configure_logging(level: str = "INFO") -> None:
    """Route stdlib logging and structlog at the given level.

    Args:
        level: Level name such as "DEBUG" or "INFO".

    Raises:
        ConfigurationError: If the level name is not recognised.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ConfigurationError(
            message=f"Unknown log level: {level}",
            details={"log_level": level},
        )

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=False,
    )
