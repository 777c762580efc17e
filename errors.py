#!/usr/bin/env python3
"""Common error types shared across modules.

Kept in one place to avoid circular imports between the fetcher, the
classification client and the orchestrator.
"""

from typing import Optional


class AnalyzerError(Exception):
    """Base class for every error raised by this package."""


class OperationCancelledError(AnalyzerError):
    """Default reason carried by a cancelled `CancellationToken`."""

    def __init__(self, message: str = "The operation was cancelled"):
        super().__init__(message)


FEED_ERROR_KINDS = ("invalid-url", "timeout", "http-error", "fetch-error", "parse-error")


class FeedFetchError(AnalyzerError):
    """Raised when a feed cannot be fetched or parsed.

    Attributes:
        kind: One of ``FEED_ERROR_KINDS``.
        status: HTTP status code for ``http-error`` failures.
    """

    def __init__(self, message: str, kind: str, status: Optional[int] = None):
        super().__init__(message)
        if kind not in FEED_ERROR_KINDS:
            raise ValueError(f"Unknown feed error kind: {kind}")
        self.kind = kind
        self.status = status


class ClassifierError(AnalyzerError):
    """Base class for classification service failures."""


class ClassifierConfigurationError(ClassifierError):
    """The client was misconfigured or called with unusable input."""


class ClassifierRequestError(ClassifierError):
    """The service answered with a non-success HTTP status."""

    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


class ClassifierParseError(ClassifierError):
    """The service answered but no decision could be extracted."""

    def __init__(self, message: str, raw_response: str = ""):
        super().__init__(message)
        self.raw_response = raw_response


class ClassifierTimeoutError(ClassifierError):
    """A single request exceeded its timeout."""


class ClassifierUnavailableError(ClassifierError):
    """Retries were exhausted; the last failure is chained as ``__cause__``."""


class BlogDataError(AnalyzerError):
    """Raised when the blog directory cannot be read, parsed or validated."""

    def __init__(self, message: str, kind: str):
        super().__init__(message)
        self.kind = kind


class CliError(AnalyzerError):
    """User-facing command-line error with an exit code."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


__all__ = [
    "AnalyzerError",
    "OperationCancelledError",
    "FEED_ERROR_KINDS",
    "FeedFetchError",
    "ClassifierError",
    "ClassifierConfigurationError",
    "ClassifierRequestError",
    "ClassifierParseError",
    "ClassifierTimeoutError",
    "ClassifierUnavailableError",
    "BlogDataError",
    "CliError",
]
