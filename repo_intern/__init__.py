"""repo-intern: unattended branch, agent, commit and review workflow engine."""

__version__ = "0.3.0"
