"""Error taxonomy shared by the relay services.

Each error carries the HTTP status the routers should answer with.
"""
from typing import Optional


class RelayError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(RelayError):
    status_code = 400


class RateLimited(RelayError):
    status_code = 429


class DeliveryError(RelayError):
    """Mail transport gave up after exhausting its attempts."""
    status_code = 500


class ConfigurationError(RelayError):
    status_code = 500


class UpstreamError(RelayError):
    """Supabase (identity or database) answered with a failure."""
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, body=None):
        super().__init__(message, status_code)
        self.body = body


# OTP specific
class NotFound(RelayError):
    status_code = 400


class Expired(RelayError):
    status_code = 400


class TooManyAttempts(RelayError):
    status_code = 429


class InvalidCode(RelayError):
    status_code = 400
