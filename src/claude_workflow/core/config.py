"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .ci_models import DEFAULT_E2E_PATTERN
from .classifier import DEFAULT_PERSISTENT_FAILURE_THRESHOLD
from .models import Phase

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(".claude/workflow.yaml")


class TimeoutsConfig(BaseModel):
    """Agent run timeouts per phase, in seconds."""
    planning: float = 3600          # 1 hour
    implementation: float = 21600   # 6 hours
    refactoring: float = 21600      # 6 hours
    pr_split: float = 3600          # 1 hour
    git_command: float = 30
    gh_command: float = 120

    @field_validator("planning", "implementation", "refactoring", "pr_split",
                     "git_command", "gh_command")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeouts must be positive, got {v}")
        return v

    def for_phase(self, phase: str) -> float:
        return {
            Phase.PLANNING.value: self.planning,
            Phase.IMPLEMENTATION.value: self.implementation,
            Phase.REFACTORING.value: self.refactoring,
            Phase.PR_SPLIT.value: self.pr_split,
        }[Phase(phase).value]


class CIConfig(BaseModel):
    """CI polling configuration."""
    check_interval: float = 30
    initial_delay: float = 60
    command_timeout: float = 120
    timeout: float = 1800  # Ceiling for one wait_for_ci call
    progress_interval: float = 5
    e2e_pattern: str = DEFAULT_E2E_PATTERN
    persistent_failure_threshold: int = DEFAULT_PERSISTENT_FAILURE_THRESHOLD

    @field_validator("persistent_failure_threshold")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"persistent_failure_threshold must be >= 1, got {v}")
        return v


class LimitsConfig(BaseModel):
    """PR size limits and retry ceilings."""
    max_lines: int = 100
    max_files: int = 10
    max_fix_attempts: int = 10

    @field_validator("max_fix_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_fix_attempts must be >= 1, got {v}")
        return v


class WorkflowConfig(BaseSettings):
    """Main workflow configuration.

    Values come from (highest first) constructor arguments, which is where
    ``load_config`` puts the YAML file's contents, then ``CLAUDE_WORKFLOW_*``
    environment variables, then defaults. Nested fields use ``__`` in
    environment names, e.g. ``CLAUDE_WORKFLOW_CI__CHECK_INTERVAL``.
    """
    base_dir: Path = Field(default=Path(".claude/workflow"))
    repo_dir: Optional[Path] = None  # Repository worktrees are created from (default: cwd)
    claude_path: str = "claude"
    gh_path: str = "gh"
    dangerously_skip_permissions: bool = True
    reuse_sessions: bool = True  # Continue the agent session across fix attempts
    main_branch: str = "main"
    remote: str = "origin"

    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    ci: CIConfig = Field(default_factory=CIConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)

    model_config = SettingsConfigDict(
        env_prefix="CLAUDE_WORKFLOW_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @property
    def remote_main(self) -> str:
        """Ref PR metrics and split commits are measured against."""
        return f"{self.remote}/{self.main_branch}"


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> WorkflowConfig:
    """Internal loader for workflow config (no caching)."""
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping at the top level")

    data = _expand_env_vars(data)
    return WorkflowConfig(**data)


def load_config(config_path: Path = DEFAULT_CONFIG_PATH) -> WorkflowConfig:
    """Load workflow configuration from a YAML file.

    Uses mtime-based caching: returns the cached config if the file hasn't changed.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration. "
            "To customize settings, create a config file at this path."
        )
        return WorkflowConfig()

    resolved = config_path.resolve()
    result = _get_cached_or_load(resolved, _load_config_from_file)
    return result if result is not None else WorkflowConfig()


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ``${VAR}`` values in config data.

    Args:
        data: Config data to process
        _path: Internal tracking for error messages (e.g., "ci.e2e_pattern")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used, which may cause errors."
            )
            return data
        return value
    return data
