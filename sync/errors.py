"""Errors surfaced to callers of the calendar sync entry points."""


class CalendarSyncError(Exception):
    """Base error carrying an HTTP status and a short public message."""

    status_code = 500
    default_message = 'Internal error.'

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(CalendarSyncError):
    """A required parameter is missing."""
    status_code = 400
    default_message = 'Invalid request.'


class UnauthenticatedError(CalendarSyncError):
    """The caller has no identity."""
    status_code = 401
    default_message = 'Authentication required.'


class PermissionDeniedError(CalendarSyncError):
    """The caller is not allowed to perform the operation."""
    status_code = 403
    default_message = 'Permission denied.'


class NotFoundError(CalendarSyncError):
    """The requested apartment does not exist."""
    status_code = 404
    default_message = 'Not found.'
