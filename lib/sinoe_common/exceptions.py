"""
Custom exceptions for the notification delivery pipeline.

Each class maps to one category of the error taxonomy: store conflicts are
retried or deferred, channel errors escalate to the fallback channel and
startup errors abort the run. Session archive failures are reported as
False returns by SessionStorage.
"""


class NotifierError(Exception):
    """Base exception for notification pipeline errors."""


class DeliveryConflictError(NotifierError):
    """Optimistic write lost the race against a concurrent writer."""

    def __init__(self, case_id: str, notification_id: str, expected_version: int):
        self.case_id = case_id
        self.notification_id = notification_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict on {case_id}/{notification_id} "
            f"(expected version {expected_version})"
        )


class StoreUnavailableError(NotifierError):
    """Record store could not be reached or rejected the request."""


class ChannelUnavailableError(NotifierError):
    """Primary channel is not ready or a send failed."""


class StartupError(NotifierError):
    """A required subsystem could not be initialized."""
