# src/liverc_ingest/exceptions.py
"""
Custom exception hierarchy for the LiveRC ingestion pipeline.

Call sites branch on the concrete type: client errors carry the HTTP status
and a machine-readable code, import errors carry the status a route handler
should answer with, and everything derives from LiveRcError.
"""

from typing import Any


class LiveRcError(Exception):
    """Base class for all pipeline-specific errors."""


class LiveRcClientError(LiveRcError):
    """
    Raised by the HTTP client for transport, status and content problems.

    Codes: HTTP_ERROR, MAX_RETRIES_EXCEEDED, INVALID_CONTENT_TYPE,
    JSON_PARSE_FAILURE, INVALID_SUBDOMAIN, EMPTY_URL.
    """

    def __init__(
        self,
        message: str,
        code: str,
        status: int | None = None,
        url: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
        self.url = url
        self.details = details or {}


class LiveRcImportError(LiveRcError):
    """Raised when a URL or uploaded payload cannot be imported."""

    def __init__(
        self,
        message: str,
        status: int,
        code: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.details = details or {}


class LiveRcDiscoveryError(LiveRcError):
    """Raised for unknown clubs and invalid discovery date windows."""


class LiveRcSummaryError(LiveRcError):
    """
    Raised when a session reference does not have the shape the summary
    importer needs (for example a URL without a results path).

    Only ever escapes a single session: the importer isolates it.
    """


class LiveRcPlanError(LiveRcError):
    """
    Raised when a stored plan cannot be applied.

    Codes: INVALID_REQUEST, PLAN_NOT_FOUND, PLAN_RECOMPUTE_FAILED,
    PLAN_GUARDRAILS_EXCEEDED, JOB_ENQUEUE_FAILED.
    """

    def __init__(self, message: str, code: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
