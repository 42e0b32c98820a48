"""
errors.py — Error taxonomy shared by the client and server sides of ZKShare.

Every error carries a stable `error_code` (sent to clients in JSON bodies)
and the HTTP status the API maps it to.
"""

from typing import Optional


class ZKShareError(Exception):
    error_code = "internal_error"
    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **details):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details


class InvalidInputError(ZKShareError):
    error_code = "invalid_input"
    status_code = 400
    public_message = "Invalid input"


class IntegrityError(ZKShareError):
    """Wrong key or corrupted ciphertext. Never recoverable by retrying."""
    error_code = "integrity_error"
    status_code = 400
    public_message = "Decryption failed: invalid key or corrupted data"


class NotFoundError(ZKShareError):
    error_code = "not_found"
    status_code = 404
    public_message = "File not found"


class ExpiredError(ZKShareError):
    error_code = "expired"
    status_code = 410
    public_message = "File has expired"


class DownloadLimitExceededError(ZKShareError):
    error_code = "download_limit_exceeded"
    status_code = 410
    public_message = "Download limit reached"


class PasswordRequiredError(ZKShareError):
    error_code = "password_required"
    status_code = 401
    public_message = "Password required"


class InvalidPasswordError(ZKShareError):
    error_code = "invalid_password"
    status_code = 401
    public_message = "Invalid password"


class RateLimitExceededError(ZKShareError):
    error_code = "rate_limit_exceeded"
    status_code = 429
    public_message = "Too many attempts. Try again later."

    def __init__(self, message: Optional[str] = None, limit: int = 0,
                 remaining: int = 0, reset_at=None):
        super().__init__(message, limit=limit, remaining=remaining, reset_at=reset_at)
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at


class StorageInconsistencyError(ZKShareError):
    """Metadata exists but the ciphertext blob is missing."""
    error_code = "storage_error"
    status_code = 500
    public_message = "File not available"


class AuditEncryptionError(ZKShareError):
    error_code = "audit_error"
    status_code = 500


class InvalidShareLinkError(ZKShareError):
    error_code = "invalid_share_link"
    status_code = 400
    public_message = "Invalid share link"


_BY_CODE = {
    cls.error_code: cls
    for cls in (
        InvalidInputError, IntegrityError, NotFoundError, ExpiredError,
        DownloadLimitExceededError, PasswordRequiredError, InvalidPasswordError,
        RateLimitExceededError, StorageInconsistencyError, InvalidShareLinkError,
    )
}


def error_for_code(code: str, message: Optional[str] = None, **details) -> ZKShareError:
    """Rebuild a typed error from an API error body (used by the client)."""
    cls = _BY_CODE.get(code, ZKShareError)
    if cls is RateLimitExceededError:
        return cls(message, limit=details.get("limit", 0),
                   remaining=details.get("remaining", 0),
                   reset_at=details.get("reset_at"))
    return cls(message, **details)
