"""
Exceptions - Error taxonomy for Census API access and MOE arithmetic.

Author: Mir Md Tasnim Alam
"""

from typing import Optional


class CensusError(Exception):
    """Base class for all errors raised by census_moe."""
    pass


class ConfigurationError(CensusError):
    """Missing or invalid client configuration (e.g. no API key)."""
    pass


class DivisionByZero(CensusError, ZeroDivisionError):
    """Denominator estimate of a proportion or ratio is zero."""
    pass


class CensusAPIError(CensusError):
    """Custom exception for Census API errors."""

    retriable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnavailable(CensusAPIError):
    """Network failure, timeout, or 5xx response from the Census API."""

    retriable = True


class RateLimited(CensusAPIError):
    """
    Census API rejected the request with HTTP 429.

    The caller must wait at least ``retry_after`` seconds before retrying.
    """

    retriable = True

    def __init__(
        self,
        message: str,
        retry_after: float = 60.0,
        status_code: Optional[int] = 429
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class BadRequest(CensusAPIError):
    """Malformed query: unknown variable, bad geography filter combination."""
    pass


class NotFound(CensusAPIError):
    """Year/survey/variable combination does not exist upstream."""
    pass
