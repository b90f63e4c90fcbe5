#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. Fetch
failures travel as values (see fetcher.FetchResult) tagged with an ErrorKind;
the exceptions below only cross the boundary of the collaborator that raises
them.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of a failed fetch, stored alongside the error message."""

    TRANSPORT = "transport"
    HTTP = "http"
    CONTENT_TYPE = "content_type"
    PARSE = "parse"


class TransportError(Exception):
    """Raised by the HTTP client when no HTTP response could be obtained.

    Attributes:
        url: The URL that was requested.
    """

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class FeedParseError(Exception):
    """Raised when a payload cannot be parsed as an RSS or Atom feed."""


class DatabaseError(Exception):
    """Raised by DatabaseQueue.execute when an operation failed in the worker.

    Attributes:
        operation: Name of the failed database operation.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation

__all__ = ["ErrorKind", "TransportError", "FeedParseError", "DatabaseError"]
