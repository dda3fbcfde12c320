"""Error taxonomy for mailbox sync runs."""


class MailSyncError(Exception):
    """Base class for sync errors. `kind` is what the run summary reports."""

    kind = "unexpected"


class LockDenied(MailSyncError):
    """Another run holds the scope lock. Not a failure: the run is skipped."""

    kind = "locked"


class CooldownActive(MailSyncError):
    """The scope is cooling down after repeated failures. The run is skipped."""

    kind = "cooldown"


class StaleCursor(MailSyncError):
    """The stored cursor is missing or outside the provider's history window."""

    kind = "stale_cursor"


class RemoteError(MailSyncError):
    """The mail provider rejected or failed a request."""

    kind = "remote"

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class RemoteTransientError(RemoteError):
    """Rate limiting, 5xx or network failure; retried at the next scheduled run."""

    kind = "transient"


class RemoteAuthError(RemoteError):
    """Credentials or delegation are misconfigured; needs an operator."""

    kind = "auth"


class RemoteNotFoundError(RemoteError):
    kind = "not_found"


class ReconciliationError(MailSyncError):
    """A local write failed mid-batch. The cursor is not advanced."""

    kind = "reconciliation"

    def __init__(self, message, applied=0, change=None):
        super().__init__(message)
        self.applied = applied
        self.change = change


class RunDeadlineExceeded(MailSyncError):
    kind = "timeout"
