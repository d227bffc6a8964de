class SlotWiseError(ValueError):
    """Base class for user-visible scheduling errors."""


class ValidationError(SlotWiseError):
    pass


class NotFoundError(SlotWiseError):
    pass


class ConflictError(SlotWiseError):
    pass


class ForbiddenError(SlotWiseError):
    pass


class InvalidStateError(SlotWiseError):
    pass


class ExternalDeliveryError(Exception):
    """A notification channel failed after the notification was recorded."""

    def __init__(self, channel: str, notification_id: str, message: str = ""):
        self.channel = channel
        self.notification_id = notification_id
        super().__init__(message or f"{channel} delivery failed for {notification_id}")


class SchedulingSystemError(RuntimeError):
    """An unexpected collaborator failure; the booking keeps its prior state."""
