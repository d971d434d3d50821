"""
Typed configuration for the workflow engine.

Every section has defaults, so an empty file (or no file at all) yields a
working configuration. Values can be overridden with ``REPO_INTERN_``-prefixed
environment variables using ``__`` as the nested delimiter, for example
``REPO_INTERN_REVIEW__MAX_ITERATIONS=3``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from repo_intern.enums import ReviewPriority
from repo_intern.exceptions import ConfigurationError


class AgentConfig(BaseModel):
    """Code-generation agent CLI."""

    command: str = Field(default="claude", description="Agent executable name or path")
    max_turns: int = Field(default=25, ge=1, description="Maximum agent turns per invocation")
    extra_args: list[str] = Field(default_factory=list, description="Extra CLI arguments")
    timeout: float | None = Field(default=None, gt=0, description="Seconds before the agent is killed")


class GitConfig(BaseModel):
    """Git behavior."""

    remote: str = Field(default="origin", description="Remote to fetch from and push to")
    author_name: str | None = Field(default=None, description="Commit author name set in the worktree")
    author_email: str | None = Field(default=None, description="Commit author email set in the worktree")
    protected_branches: list[str] = Field(
        default_factory=lambda: ["main", "master", "develop"],
        description="Branches work is never pushed to directly",
    )
    branch_prefix: str = Field(default="feature/", description="Prefix for generated feature branches")


class WorktreeConfig(BaseModel):
    """Managed worktree."""

    path: str | None = Field(default=None, description="Worktree location (default: .repo-intern/worktree)")
    install_dependencies: bool = Field(default=True, description="Run the project's installer after prepare")


class RecoveryConfig(BaseModel):
    """Commit/push recovery budget."""

    max_attempts: int = Field(default=3, ge=1, le=20, description="Underlying commit/push attempts")


class ReviewConfig(BaseModel):
    """Self-review loop."""

    enabled: bool = Field(default=False, description="Run the review loop after implementation")
    max_iterations: int = Field(default=5, ge=1, le=20, description="Review iterations before giving up")
    min_priority: ReviewPriority = Field(default=ReviewPriority.MEDIUM, description="Lowest priority addressed")
    skip_push: bool = Field(default=True, description="Defer pushing until the loop finishes")
    parse_retries: int = Field(default=2, ge=0, le=10, description="Re-requests for malformed reviews")


class QueueConfig(BaseModel):
    """Durable event queue."""

    db_path: str = Field(default=".repo-intern/queue.db", description="SQLite database file")
    max_retries: int = Field(default=3, ge=1, description="Attempts before an event is marked failed")
    cleanup_age_days: int = Field(default=7, ge=1, description="Age after which failed events are deleted")


class WebhookConfig(BaseModel):
    """Webhook server."""

    secret: str | None = Field(default=None, description="Shared secret for X-Hub-Signature-256")
    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8000, ge=1, le=65535, description="Bind port")
    bot_name: str | None = Field(default=None, description="Name the bot answers to in @mentions")
    require_bot_mention: bool = Field(default=False, description="Only act on reviews that mention the bot")
    rate_limit_requests: int = Field(default=30, ge=1, description="Requests allowed per window per client")
    rate_limit_window_seconds: float = Field(default=60.0, gt=0, description="Rate limit window")


class PathsConfig(BaseModel):
    """Filesystem locations."""

    output_dir: str = Field(default=".repo-intern/runs", description="Run artifacts root")
    lock_dir: str | None = Field(default=None, description="Lock file directory (default: .repo-intern)")


class InternSettings(BaseSettings):
    """Main settings object.

    Combines all configuration sections and loads from YAML files with
    environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="REPO_INTERN_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    agent: AgentConfig = Field(default_factory=AgentConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    worktree: WorktreeConfig = Field(default_factory=WorktreeConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    @property
    def output_dir(self) -> Path:
        return Path(self.paths.output_dir)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> InternSettings:
        """Build settings from a YAML file after substituting ``${VAR}`` references.

        ``${VAR_NAME:-default}`` supplies a fallback for unset variables.

        Raises:
            ConfigurationError: If config file is invalid or has invalid fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> InternSettings:
        """Load from ``config_path`` when given, otherwise from defaults and environment."""
        if config_path is not None:
            return cls.from_yaml(config_path)
        try:
            return cls()
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Replace ``${VAR_NAME}`` placeholders with environment values.

        Supports two syntaxes:
        - ${VAR_NAME}: the variable must be set (ValueError otherwise)
        - ${VAR_NAME:-default}: ``default`` is used when the variable is unset

        YAML comment lines are left unchanged.
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
