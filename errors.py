#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions and error-kind constants to avoid
circular imports between the registry, fetcher and sinks.
"""

from typing import Optional


class ErrorKind:
    """Classified failure kinds for a single feed fetch attempt."""

    TIMEOUT = "TIMEOUT"
    DNS_ERROR = "DNS_ERROR"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    CONNECTION_RESET = "CONNECTION_RESET"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    HTTP_ERROR = "HTTP_ERROR"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    INVALID_FEED_FORMAT = "INVALID_FEED_FORMAT"

    ALL = (
        TIMEOUT,
        DNS_ERROR,
        CONNECTION_REFUSED,
        CONNECTION_RESET,
        CONNECTION_TIMEOUT,
        HTTP_ERROR,
        EMPTY_RESPONSE,
        INVALID_FEED_FORMAT,
    )


class ErrorRecordType:
    """Error record types written to the error sink."""

    DNS_RESOLUTION_FAILED = "DNS_RESOLUTION_FAILED"
    ALL_URLS_FAILED = "ALL_URLS_FAILED"
    FETCH_ATTEMPT_FAILED = "FETCH_ATTEMPT_FAILED"
    ALL_RETRIES_FAILED = "ALL_RETRIES_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    DATABASE_UPSERT_FAILED = "DATABASE_UPSERT_FAILED"
    BATCH_PROCESSING_FAILED = "BATCH_PROCESSING_FAILED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class ConfigError(Exception):
    """Raised when the feed configuration is missing, malformed or disallowed.

    Fatal to pipeline startup.
    """


class FeedFetchError(Exception):
    """A classified failure of one feed fetch attempt.

    Attributes:
        kind: One of the ErrorKind constants.
        status: HTTP status code, when the server answered.
        url: The URL that was being fetched.
    """

    def __init__(self, kind: str, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.url = url

    @property
    def is_permanent(self) -> bool:
        """True for HTTP answers that will not change on retry (gone / not found)."""
        return self.kind == ErrorKind.HTTP_ERROR and self.status in (404, 410)


__all__ = ["ErrorKind", "ErrorRecordType", "ConfigError", "FeedFetchError"]
