"""Exceptions related to gitops-loop."""

__all__ = [
    "GitOpsException",
    "InputException",
    "FatalConfigError",
    "CommandException",
    "TransientInfraError",
    "ConflictError",
    "PolicyViolation",
    "NotificationError",
]


class GitOpsException(Exception):
    """Generic base exception used for this library."""


class InputException(GitOpsException):
    """Raised when the input files or values are not formatted as expected."""


class FatalConfigError(InputException):
    """Raised when desired state or configuration is malformed.

    Sync for the affected Application is halted until the input is corrected.
    """


class CommandException(GitOpsException):
    """Raised when there is a failure running a subcommand."""


class TransientInfraError(GitOpsException):
    """Raised on network or API timeouts that are expected to clear on retry."""


class ConflictError(GitOpsException):
    """Raised when a resource was concurrently modified by another writer."""


class PolicyViolation(GitOpsException):
    """Raised when an action is not permitted by the Application sync policy."""


class NotificationError(GitOpsException):
    """Raised by a notification channel when a message could not be sent."""
