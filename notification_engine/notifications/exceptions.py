"""Notification engine error hierarchy."""


class NotificationError(Exception):
    """Base class for notification engine failures."""


class DirectoryUnavailable(NotificationError):
    """The recipient directory could not be queried; the whole delivery is aborted."""


class TransportError(Exception):
    """Raised by a Transport when a single send fails (refused, timed out, unconfigured)."""


class TransportFailure(NotificationError):
    """A send to one recipient failed. Recorded on that recipient's log row only."""

    def __init__(self, recipient: str, message: str) -> None:
        super().__init__(f"{recipient}: {message}")
        self.recipient = recipient
        self.message = message


class TemplateRenderError(NotificationError):
    """Content for a notification could not be rendered."""


class QueryFailure(NotificationError):
    """An entity deadline source failed; isolated to that source and window."""


class PersistenceFailure(NotificationError):
    """The log or schedule store could not be read or written."""


class TargetNotFound(NotificationError):
    """The entity or user a notification refers to does not exist."""


class JobAlreadyRunning(NotificationError):
    """Another run of the same job is still in progress."""

    def __init__(self, job: str) -> None:
        super().__init__(f"Job '{job}' is already running")
        self.job = job
