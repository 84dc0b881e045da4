"""
Error types for the Skyboard SDK.

This module defines all exception types raised by the SDK and shared
with the aggregator service:
- SkyboardError: Base exception
- ValidationError: Record failed its collection schema
- NotFoundError: Board or task is not known and cannot be fetched
- UpstreamError: A personal data repository could not be reached
- StoreBusyError: SQLite stayed locked after bounded retries
- PermissionDeniedError: Local write refused before it is staged

Invariants:
    - All errors inherit from SkyboardError
    - Errors include context for debugging
    - Upstream read failures are logged and turned into empty results by
      callers; only writes raise UpstreamError subclasses to the caller
"""

from __future__ import annotations

from typing import Any


class SkyboardError(Exception):
    """Base exception for all Skyboard errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SKYBOARD_ERROR"
        self.details = details or {}


class ValidationError(SkyboardError):
    """Record validation failed.

    Raised when:
    - A required field is missing
    - A field exceeds its length or range bound
    - The collection is unknown
    """

    def __init__(
        self,
        message: str,
        collection: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"collection": collection, "errors": errors or []},
        )
        self.collection = collection
        self.errors = errors or []


class NotFoundError(SkyboardError):
    """Requested record does not exist locally or upstream."""

    def __init__(self, message: str, uri: str | None = None) -> None:
        super().__init__(message, code="NOT_FOUND", details={"uri": uri})
        self.uri = uri


class UpstreamError(SkyboardError):
    """A personal data repository or directory request failed."""

    def __init__(
        self,
        message: str,
        did: str | None = None,
        code: str = "UPSTREAM_ERROR",
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"did": did, "status_code": status_code},
        )
        self.did = did
        self.status_code = status_code


class IdentityResolutionError(UpstreamError):
    """DID document could not be resolved to a repository endpoint."""

    def __init__(self, message: str, did: str | None = None) -> None:
        super().__init__(message, did=did, code="IDENTITY_RESOLUTION_ERROR")


class NetworkError(UpstreamError):
    """Transport failure: connection refused, timeout, DNS.

    Writes that fail this way stay pending and are retried.
    """

    def __init__(self, message: str, did: str | None = None) -> None:
        super().__init__(message, did=did, code="NETWORK_ERROR")


class RepoWriteError(UpstreamError):
    """Repository rejected a write with a non-success status.

    Writes that fail this way are marked as errored and retried on the
    next sync round.
    """

    def __init__(
        self,
        message: str,
        did: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            did=did,
            code="REPO_WRITE_ERROR",
            status_code=status_code,
        )


class StoreBusyError(SkyboardError):
    """SQLite database stayed locked after all retries.

    Transient: the caller may retry the whole request.
    """

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message, code="STORE_BUSY", details={"attempts": attempts})
        self.attempts = attempts


class PermissionDeniedError(SkyboardError):
    """Local write refused because the principal may not perform it."""

    def __init__(
        self,
        message: str,
        actor: str | None = None,
        uri: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="PERMISSION_DENIED",
            details={"actor": actor, "uri": uri},
        )
        self.actor = actor
        self.uri = uri
