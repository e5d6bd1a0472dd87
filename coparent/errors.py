"""
Calendar domain errors
Raised by services and the sync engine, translated to HTTP responses in main.py
"""

from typing import Optional


class CalendarError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 500
    default_detail = "Calendar error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotConnected(CalendarError):
    status_code = 409
    default_detail = "External calendar not connected"


class ReauthRequired(CalendarError):
    status_code = 401
    default_detail = "External calendar authorization expired - please reconnect"


class RateLimited(CalendarError):
    status_code = 429
    default_detail = "External calendar rate limit exceeded"


class PermissionDenied(CalendarError):
    status_code = 403
    default_detail = "Not authorized"


class InvalidRecurrence(CalendarError):
    status_code = 422
    default_detail = "Invalid custody schedule pattern"


class InvalidTimeRange(CalendarError):
    status_code = 422
    default_detail = "End time must not be before start time"


class NotFound(CalendarError):
    status_code = 404
    default_detail = "Not found"


class ProviderError(CalendarError):
    """Non-retryable failure reported by the external calendar provider"""

    status_code = 502
    default_detail = "External calendar request failed"

    def __init__(self, detail: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(detail)
        self.http_status = http_status


class ProviderTimeout(ProviderError):
    status_code = 504
    default_detail = "External calendar request timed out"
