"""Configuration module for autoforge settings.

Settings come from three places, highest priority first:

1. ``AUTOFORGE_*`` environment variables (nested with ``__``, e.g.
   ``AUTOFORGE_SANDBOX__DEFAULT_IMAGE``) and ``.env``
2. An optional YAML file (``config/autoforge.yaml`` or ``AUTOFORGE_CONFIG_FILE``)
3. Field defaults below

YAML keys may use either snake_case or the camelCase names used in the
persisted documents (``maxDebugAttempts``, ``retryDelay.baseMs``).
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/autoforge.yaml")


class SubtaskRetrySettings(BaseModel):
    """Orchestrator-level retry ceilings per recovery type."""

    simple: int = Field(default=2, ge=0)
    modified: int = Field(default=1, ge=0)


class RetryDelaySettings(BaseModel):
    """Backoff delays applied before a retried subtask runs again."""

    base_ms: int = Field(default=1000, ge=0)
    modified_ms: int = Field(default=2000, ge=0)


class SandboxSettings(BaseModel):
    """Container runtime defaults for sandbox sessions."""

    default_image: str = "python:3.11-slim"
    default_network_mode: str = "none"
    default_command_timeout_ms: int = Field(default=60_000, gt=0)
    temp_host_dir: str = "./sandbox_temp"
    container_user: str = "65534:65534"
    container_workdir: str = "/sandbox_project"
    cpus: float = Field(default=0.5, gt=0)
    memory: str = "256m"
    pids_limit: int = Field(default=128, gt=0)
    read_only_rootfs: bool = True
    tmpfs_size: str = "64m"
    stop_timeout_s: int = Field(default=5, ge=0)
    git_image: str = "alpine/git:latest"
    clone_timeout_ms: int = Field(default=120_000, gt=0)
    clone_network_mode: str = "bridge"


class PersistenceSettings(BaseModel):
    """Project store location and locking behaviour."""

    projects_base_path: str = "./ai_projects_data"
    lock_timeout_ms: int = Field(default=5000, gt=0)


class SystemSettings(BaseModel):
    """Operational loop settings."""

    main_loop_interval_ms: int = Field(default=1000, gt=0)
    event_queue_size: int = Field(default=1000, gt=0)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="AUTOFORGE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_debug_attempts: int = Field(default=3, ge=1)
    max_subtask_retries: SubtaskRetrySettings = Field(default_factory=SubtaskRetrySettings)
    max_project_retries: int = Field(default=1, ge=0)
    retry_delay: RetryDelaySettings = Field(default_factory=RetryDelaySettings)

    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    system: SystemSettings = Field(default_factory=SystemSettings)

    log_level: str = "INFO"
    log_dir: Optional[str] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment wins over values passed in from the YAML file.
        return env_settings, dotenv_settings, init_settings, file_secret_settings


_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _to_snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def normalize_keys(data: Any) -> Any:
    """Recursively convert camelCase mapping keys to snake_case."""
    if isinstance(data, dict):
        return {_to_snake(str(k)): normalize_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [normalize_keys(item) for item in data]
    return data


def resolve_config_path(config_path: Optional[str | Path] = None) -> Path:
    """Pick the YAML config path: explicit argument, env var, then default."""
    if config_path is not None:
        return Path(config_path)
    env_path = os.getenv("AUTOFORGE_CONFIG_FILE")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_settings(config_path: Optional[str | Path] = None) -> Settings:
    """Load settings from YAML (if present) with environment overrides.

    A missing file is not an error; a malformed file or invalid values are.

    Raises:
        ConfigurationError: If the file cannot be parsed or validated
    """
    path = resolve_config_path(config_path)
    file_data: dict = {}

    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to load config file {path}: {e}", context={"path": str(path)}, cause=e
            ) from e
        if not isinstance(raw, dict):
            raise ConfigurationError(
                f"Config file {path} must contain a mapping at the top level",
                context={"path": str(path)},
            )
        file_data = normalize_keys(raw)
        logger.info(f"[Config] Loaded configuration file: {path}")
    else:
        logger.debug(f"[Config] No config file at {path}, using defaults and environment")

    try:
        return Settings(**file_data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e}", context={"path": str(path)}, cause=e
        ) from e
