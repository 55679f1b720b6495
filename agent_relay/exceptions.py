"""Custom exception hierarchy for agent-relay.

Every failure the engine can observe is classified into one of five
kinds. The kind decides how the caller reacts, not the concrete class:

    TRANSIENT      retried with exponential backoff, then escalated
    CONFLICT       handed to the component's fallback path
    INCONSISTENCY  routed through drift classification
    OPERATION      a non-transient step failure; the plan halts
    FATAL          surfaced to the operator with full context

Exception Hierarchy:
    RelayError (base)
    ├── ConfigurationError
    ├── TransientError
    ├── ConflictError
    ├── InconsistencyError
    ├── GitOperationError
    ├── ExternalServiceError
    └── FatalError
        ├── IllegalTransitionError
        └── RetryExhaustedError

Example Usage:
    >>> from agent_relay.exceptions import ConflictError
    >>> try:
    ...     await gateway.cherry_pick_range("main", "agent001/11")
    ... except ConflictError as e:
    ...     queue_individual_pr(issue, e.paths)
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classification that drives the reaction to a failure."""

    TRANSIENT = "transient"
    CONFLICT = "conflict"
    INCONSISTENCY = "inconsistency"
    OPERATION = "operation"
    FATAL = "fatal"


class RelayError(Exception):
    """Base exception for all agent-relay errors.

    Attributes:
        message: Human-readable error description
        kind: Failure classification
        context: Machine-readable details for diagnostics
    """

    kind: ErrorKind = ErrorKind.OPERATION

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            context: Optional diagnostic details
        """
        self.message = message
        self.context = context or {}
        super().__init__(message)


class ConfigurationError(RelayError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing required configuration fields
    """

    kind = ErrorKind.FATAL


class TransientError(RelayError):
    """A failure that is expected to go away on retry.

    Examples:
        - Network timeout or connection reset
        - GitHub rate limiting or 5xx responses
        - A stale ``index.lock`` held by another git process
    """

    kind = ErrorKind.TRANSIENT


class ConflictError(RelayError):
    """A merge or cherry-pick could not be applied cleanly.

    Attributes:
        paths: Files that conflicted
    """

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str, paths: list[str] | None = None) -> None:
        self.paths = list(paths or [])
        super().__init__(message, context={"paths": self.paths})


class InconsistencyError(RelayError):
    """Local belief and GitHub disagree in a way a caller cannot paper over."""

    kind = ErrorKind.INCONSISTENCY


class GitOperationError(RelayError):
    """A git command failed for a reason retrying will not fix."""

    pass


class ExternalServiceError(RelayError):
    """GitHub API errors that are not transient.

    Examples:
        - Permission denied
        - Issue or pull request not found
        - Validation failures on create
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
        """
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message, context={"status_code": status_code})
        self.message = message


class FatalError(RelayError):
    """A failure the engine cannot resolve on its own.

    The context always carries the current state, the attempted operation
    and the last checkpoint so the operator can decide what to do.
    """

    kind = ErrorKind.FATAL

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        attempted: str | None = None,
        last_checkpoint: dict[str, Any] | None = None,
    ) -> None:
        self.current_state = current_state
        self.attempted = attempted
        self.last_checkpoint = last_checkpoint
        super().__init__(
            message,
            context={
                "current_state": current_state,
                "attempted": attempted,
                "last_checkpoint": last_checkpoint,
            },
        )


class IllegalTransitionError(FatalError):
    """A command asked for a lifecycle transition the state machine forbids."""

    pass


class RetryExhaustedError(FatalError):
    """A transient failure persisted through every retry attempt."""

    pass
