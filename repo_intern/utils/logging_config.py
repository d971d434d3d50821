"""
Logging configuration using structlog for structured logging.

Every module logs through ``structlog.get_logger(__name__)`` with snake_case
event names and keyword context. Workflow runs bind ``task_key`` / ``event_id``
through ``structlog.contextvars`` so nested components inherit them.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines when True, human-readable console
            output otherwise
    """
    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a logger instance.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("worktree_prepared", branch="feature/PROJ-1")
    """
    return structlog.get_logger(name)


def bind_context(**values: Any) -> None:
    """Bind key-value pairs to every log line emitted in the current context."""
    structlog.contextvars.bind_contextvars(**values)


def clear_context() -> None:
    """Drop all context bound with :func:`bind_context`."""
    structlog.contextvars.clear_contextvars()
