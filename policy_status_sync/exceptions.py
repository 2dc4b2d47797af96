"""Custom exceptions for the policy status sync controller."""


class StatusSyncError(Exception):
    """Base exception for all policy status sync errors.

    Fatal errors end the process with a non-zero exit code. Non-fatal ones are
    confined to the loop that raised them and logged.
    """

    fatal = True

    def __init__(self, message: str, details: str | None = None):
        """Initialize the exception.

        Args:
            message: What failed
            details: Cause or remedy shown under the message
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Message followed by the details, if any."""
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ClusterConnectionError(StatusSyncError):
    """Exception raised when cluster credentials are missing, unreadable or malformed."""

    pass


class ScopeConfigurationError(StatusSyncError):
    """Exception raised for an unusable watch namespace value."""

    pass


class BootstrapError(StatusSyncError):
    """Exception raised when the controller manager cannot be constructed."""

    pass


class RegistrationError(StatusSyncError):
    """Exception raised when a reconciler cannot be attached to the manager."""

    pass


class LeaderElectionError(StatusSyncError):
    """Exception raised when leadership is lost while the manager is running."""

    pass


class NamespaceProvisioningError(StatusSyncError):
    """Exception raised when the cluster namespace cannot be created or labeled."""

    pass


class HeartbeatEvaluationError(StatusSyncError):
    """A single health predicate failed to evaluate."""

    fatal = False


class HeartbeatPublishError(StatusSyncError):
    """The heartbeat lease could not be written to the hub."""

    fatal = False


class NotInClusterError(StatusSyncError):
    """Exception raised when the operator is not running inside a cluster."""

    pass


class NoNamespaceError(NotInClusterError):
    """The service account namespace file is not available."""

    pass


class RunLocalError(NotInClusterError):
    """The operator was forced to run in local mode."""

    pass
