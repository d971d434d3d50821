"""Custom exception hierarchy for the repo-intern workflow engine.

This module defines a structured exception hierarchy that enables precise
error handling and user-friendly error messages throughout the engine. Every
workflow-level failure carries an ``ErrorKind`` tag so callers can react to the
category of failure instead of parsing messages or tracebacks.

Exception Hierarchy:
    RepoInternError (base)
    ├── ConfigurationError
    ├── GitOperationError
    ├── AgentError
    └── WorkflowError (tagged with ErrorKind)
        ├── LockContentionError        (CONTENTION)
        ├── WorktreeError              (RESOURCE_CORRUPTION)
        ├── GateRejectionError         (GATE_REJECTION)
        ├── NonRecoverableGitError     (VCS_CONFLICT)
        ├── MalformedResponseError     (MALFORMED_RESPONSE)
        └── PersistenceError           (PERSISTENCE)

Example Usage:
    >>> from repo_intern.exceptions import LockContentionError
    >>> try:
    ...     async with ProcessLock(repo_dir):
    ...         await runner.run_task(task)
    ... except LockContentionError as e:
    ...     print(f"Another run is active (PID {e.owner_pid})")
"""

from repo_intern.enums import ErrorKind


class RepoInternError(Exception):
    """Base exception for all repo-intern errors.

    All custom exceptions inherit from this base class, allowing callers to
    catch every engine-specific error with a single except clause.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(RepoInternError):
    """Configuration-related errors.

    Raised when configuration files are invalid, missing, or contain
    incompatible settings.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing environment variable referenced by ``${VAR}``
        - Invalid configuration values
    """

    pass


class GitOperationError(RepoInternError):
    """A git command could not be executed at all.

    Non-zero exit codes are NOT errors at the command layer (they are
    returned as ``CommandResult`` values). This is raised only when the
    caller needs a result and git could not produce one.
    """

    pass


class AgentError(RepoInternError):
    """The external code-generation agent could not be run.

    Attributes:
        agent_command: Executable that failed to start or run
    """

    def __init__(self, message: str, agent_command: str | None = None) -> None:
        self.agent_command = agent_command
        full_message = message if not agent_command else f"{message} (agent: {agent_command})"
        super().__init__(full_message)
        self.message = message


# =============================================================================
# Workflow Errors (taxonomy tagged)
# =============================================================================


class WorkflowError(RepoInternError):
    """Workflow execution errors carrying a taxonomy tag.

    Attributes:
        kind: ErrorKind describing the failure category
        message: Human-readable error description
    """

    kind: ErrorKind = ErrorKind.WORKFLOW

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            kind: Override for the class-level taxonomy tag
        """
        if kind is not None:
            self.kind = kind
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class LockContentionError(WorkflowError):
    """Another workflow instance holds the process lock.

    Never auto-resolved; reported with the conflicting owner's identity.

    Attributes:
        owner_pid: PID of the process holding the lock, when known
    """

    kind = ErrorKind.CONTENTION

    def __init__(self, message: str, owner_pid: int | None = None) -> None:
        self.owner_pid = owner_pid
        super().__init__(message)


class WorktreeError(WorkflowError):
    """The managed worktree could not be prepared, even after recreation."""

    kind = ErrorKind.RESOURCE_CORRUPTION


class GateRejectionError(WorkflowError):
    """A quality gate kept rejecting a commit or push after all retries.

    Attributes:
        operation: "commit" or "push"
        attempts: Number of underlying operation attempts made
    """

    kind = ErrorKind.GATE_REJECTION

    def __init__(self, message: str, operation: str | None = None, attempts: int = 0) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(message)


class NonRecoverableGitError(WorkflowError):
    """A git failure that requires human intervention (e.g. diverged history).

    Attributes:
        operation: "commit" or "push"
        detail: Raw git output that led to the classification
    """

    kind = ErrorKind.VCS_CONFLICT

    def __init__(self, message: str, operation: str | None = None, detail: str = "") -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(message)


class MalformedResponseError(WorkflowError):
    """The agent response did not contain valid structured feedback.

    Attributes:
        raw_output: Agent output that failed to parse (possibly truncated)
    """

    kind = ErrorKind.MALFORMED_RESPONSE

    def __init__(self, message: str, raw_output: str = "") -> None:
        self.raw_output = raw_output[:2000]
        super().__init__(message)


class PersistenceError(WorkflowError):
    """Queue or lock I/O failed; the engine must not proceed as if it succeeded."""

    kind = ErrorKind.PERSISTENCE
