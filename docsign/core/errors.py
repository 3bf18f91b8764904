from __future__ import annotations


class DocsignError(Exception):
    """Base error for the signing core."""

    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str = "", *, reason: str | None = None) -> None:
        super().__init__(message or reason or self.__class__.__name__)
        self.message = message or reason or self.__class__.__name__
        # Reason strings are safe to surface to end users.
        self.reason = reason


class Unauthorized(DocsignError):
    """Authorization denied or link token invalid."""

    code = "UNAUTHORIZED"


class NotFound(DocsignError):
    """Document, signer, field or stored object is unknown."""

    code = "NOT_FOUND"


class InvalidState(DocsignError):
    """Operation not allowed in the current lifecycle state."""

    code = "INVALID_STATE"


class ValidationFailed(DocsignError):
    """Input is structurally invalid."""

    code = "VALIDATION_FAILED"


class CryptoConstraintFailure(ValidationFailed):
    """Requested algorithm is deprecated or otherwise not acceptable."""

    code = "CRYPTO_CONSTRAINT_FAILURE"


class ConflictingUpdate(DocsignError):
    """Optimistic version mismatch; the caller should re-read and retry."""

    code = "CONFLICTING_UPDATE"


class DependencyUnavailable(DocsignError):
    """External collaborator unavailable; retryable by the caller."""

    code = "DEPENDENCY_UNAVAILABLE"
    retryable = True


class TimestampUnreachable(DependencyUnavailable):
    """No timestamp authority answered before the deadline."""

    code = "TIMESTAMP_UNREACHABLE"


class RateLimited(DependencyUnavailable):
    """Timestamp authority throttled the request."""

    code = "RATE_LIMITED"


class StorageIOFailure(DependencyUnavailable):
    """Object store read/write failure."""

    code = "STORAGE_IO_FAILURE"


class AuthorizationUnavailable(DependencyUnavailable):
    """Relationship store could not be queried."""

    code = "AUTHORIZATION_UNAVAILABLE"


class StorageForbidden(Unauthorized):
    """Object ref does not belong to the requested namespace."""

    code = "STORAGE_FORBIDDEN"


class CryptoFailure(DocsignError):
    """Signature creation or verification failed."""

    code = "CRYPTO_FAILURE"


class InvalidTimestampResponse(CryptoFailure):
    """Timestamp reply malformed, rejected, or nonce/imprint mismatch."""

    code = "INVALID_TIMESTAMP_RESPONSE"


class TimestampCertInvalid(CryptoFailure):
    """Timestamp authority certificate did not validate."""

    code = "TIMESTAMP_CERT_INVALID"


class IntegrityFailure(DocsignError):
    """Document bytes differ from the signed digest."""

    code = "INTEGRITY_FAILURE"


class AuditAppendFailed(DocsignError):
    """Audit entry could not be written; the guarded action is rolled back."""

    code = "AUDIT_APPEND_FAILED"
