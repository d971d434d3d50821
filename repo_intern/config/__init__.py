"""Configuration for the workflow engine.

Key Components:
    - InternSettings: Main configuration container with YAML loading support
    - AgentConfig, GitConfig, WorktreeConfig, RecoveryConfig, ReviewConfig,
      QueueConfig, WebhookConfig, PathsConfig: Individual sections

Example:
    >>> from repo_intern.config import InternSettings
    >>> settings = InternSettings.from_yaml("repo-intern.yaml")
    >>> settings.review.max_iterations
    5
"""

from repo_intern.config.settings import InternSettings

__all__ = [
    "InternSettings",
]
