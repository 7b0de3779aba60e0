"""Error categories surfaced by the core.

Components translate provider exceptions (httpx, web3, cryptography,
SQLAlchemy) into these classes at their boundary; the Flask error handler
maps them to responses using ``status_code`` and ``code``.
"""


class CredLedgerError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message=None, **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self):
        body = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CredLedgerError):
    status_code = 400
    code = "validation_error"


class AuthorizationError(CredLedgerError):
    status_code = 403
    code = "access_denied"


class NotFoundError(CredLedgerError):
    status_code = 404
    code = "not_found"


class ConflictError(CredLedgerError):
    """Operation not allowed in the document's current state."""
    status_code = 409
    code = "conflict"


class DuplicateError(ConflictError):
    code = "duplicate_document"

    def __init__(self, message=None, document=None):
        super().__init__(message or "Document already registered")
        self.document = document
        # snapshot now; the ORM instance may be detached by the time this is rendered
        self.existing = document.to_dict() if document is not None else None

    def to_dict(self):
        body = super().to_dict()
        if self.existing is not None:
            body["document"] = self.existing
        return body


class IntegrityError(CredLedgerError):
    """Decryption, tag or hash check failed."""
    status_code = 500
    code = "integrity_error"

    def to_dict(self):
        # never echo crypto internals to callers
        return {"success": False, "error": self.code, "message": "Integrity verification failed"}


class TransientError(CredLedgerError):
    """Retryable I/O failure (network, rate limit, 5xx)."""
    status_code = 503
    code = "transient_error"


class PermanentError(CredLedgerError):
    """Non-retryable failure reported by an external service."""
    status_code = 502
    code = "permanent_error"


class RetryableError(TransientError):
    """Chain-side failure worth resubmitting (nonce race, underpriced, timeout)."""
    code = "chain_retryable"


class FatalError(CredLedgerError):
    """Chain revert, invariant violation or any failure that must not be retried."""
    status_code = 500
    code = "fatal_error"


class ServiceUnavailableError(CredLedgerError):
    """Content store or chain unreachable after retries."""
    status_code = 503
    code = "service_unavailable"
