"""Module errors: structured error taxonomy for GhostKey."""
#
# PURPOSE:
# Every failure the core can surface has an ErrorCode, a typed exception and a
# stable dict/JSON form, so callers can branch on the kind of failure and the
# relay/CLI can report it consistently.
#
# ERROR CODE FORMAT:
# - ENVELOPE_XXX: envelope framing and AEAD errors
# - BLOB_XXX: blob store transfer errors
# - IDENTITY_XXX: identity derivation errors
# - ACCESS_XXX: authorization outcomes and protocol misuse
# - LEDGER_XXX: ledger collaborator rejections
# - SYSTEM_XXX / CONFIG_XXX: platform and configuration errors
#
# USAGE:
#   from ghostkey.errors import MalformedEnvelope
#
#   raise MalformedEnvelope(
#       "Envelope shorter than fixed header",
#       details={"length": len(data)},
#   )
#
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Envelope Errors
    ENVELOPE_MALFORMED = "ENVELOPE_001"
    ENVELOPE_ENCRYPTION_FAILED = "ENVELOPE_002"
    ENVELOPE_DECRYPTION_FAILED = "ENVELOPE_003"

    # Blob Store Errors
    BLOB_UPLOAD_EXHAUSTED = "BLOB_001"
    BLOB_DOWNLOAD_EXHAUSTED = "BLOB_002"
    BLOB_RATE_LIMITED = "BLOB_003"
    BLOB_TRANSPORT_UNREACHABLE = "BLOB_004"
    BLOB_REJECTED = "BLOB_005"
    BLOB_INVALID_RESPONSE = "BLOB_006"

    # Identity Errors
    IDENTITY_DERIVATION_FAILED = "IDENTITY_001"

    # Access Errors
    ACCESS_DENIED = "ACCESS_001"
    ACCESS_INVALID_TRANSITION = "ACCESS_002"
    ACCESS_AUTHORIZATION_UNAVAILABLE = "ACCESS_003"

    # Ledger Errors
    LEDGER_REJECTED = "LEDGER_001"
    LEDGER_NOT_FOUND = "LEDGER_002"

    # Config Errors
    CONFIG_INVALID = "CONFIG_001"

    # System Errors
    SYSTEM_UNSUPPORTED_PLATFORM = "SYSTEM_001"
    SYSTEM_CANCELLED = "SYSTEM_002"
    SYSTEM_INTERNAL_ERROR = "SYSTEM_003"


class GhostKeyError(Exception):
    """
    Base exception class for GhostKey with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "ENVELOPE_001")
        message: Human-readable error message
        details: Optional dictionary with additional context
        http_status: Suggested HTTP status code for API responses
        stage: Pipeline stage that was running when the error surfaced,
            set by ghostkey.pipeline (None outside a pipeline)
    """

    code: ErrorCode = ErrorCode.SYSTEM_INTERNAL_ERROR

    # Map error codes to HTTP status codes
    HTTP_STATUS_MAP: Dict[ErrorCode, int] = {
        ErrorCode.ENVELOPE_MALFORMED: 400,
        ErrorCode.ENVELOPE_ENCRYPTION_FAILED: 500,
        ErrorCode.ENVELOPE_DECRYPTION_FAILED: 422,
        ErrorCode.BLOB_UPLOAD_EXHAUSTED: 503,
        ErrorCode.BLOB_DOWNLOAD_EXHAUSTED: 503,
        ErrorCode.BLOB_RATE_LIMITED: 429,
        ErrorCode.BLOB_TRANSPORT_UNREACHABLE: 502,
        ErrorCode.BLOB_REJECTED: 502,
        ErrorCode.BLOB_INVALID_RESPONSE: 502,
        ErrorCode.IDENTITY_DERIVATION_FAILED: 503,
        ErrorCode.ACCESS_DENIED: 403,
        ErrorCode.ACCESS_INVALID_TRANSITION: 409,
        ErrorCode.ACCESS_AUTHORIZATION_UNAVAILABLE: 503,
        ErrorCode.LEDGER_REJECTED: 409,
        ErrorCode.LEDGER_NOT_FOUND: 404,
        ErrorCode.CONFIG_INVALID: 500,
        ErrorCode.SYSTEM_UNSUPPORTED_PLATFORM: 501,
        ErrorCode.SYSTEM_CANCELLED: 499,
        ErrorCode.SYSTEM_INTERNAL_ERROR: 500,
    }

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[ErrorCode] = None,
        http_status: Optional[int] = None,
    ):
        """
        Initialize a GhostKeyError.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional context
            code: ErrorCode override (defaults to the subclass code)
            http_status: Optional HTTP status code (defaults to mapped value)
        """
        self.code = code or type(self).code
        self.message = message
        self.details = details or {}
        self.http_status = http_status or self.HTTP_STATUS_MAP.get(self.code, 500)
        self.stage: Optional[str] = None

        super().__init__(f"[{self.code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "kind": type(self).__name__,
            "message": self.message,
            "details": self.details,
            "http_status": self.http_status,
            "stage": self.stage,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GhostKeyError":
        """
        Deserialize error from dictionary.

        The concrete subclass is restored from the "kind" field when it names
        one of the exceptions in this module; otherwise a plain GhostKeyError
        with the recorded code is returned.
        """
        code = ErrorCode(data["code"])
        target = _KINDS.get(data.get("kind", ""), GhostKeyError)
        if not issubclass(target, cls):
            target = cls
        err = target.__new__(target)
        GhostKeyError.__init__(
            err,
            data["message"],
            data.get("details", {}),
            code=code,
            http_status=data.get("http_status"),
        )
        err.stage = data.get("stage")
        return err


# ============================================================================
# Envelope
# ============================================================================

class MalformedEnvelope(GhostKeyError):
    """Envelope bytes do not follow the length-prefixed layout."""
    code = ErrorCode.ENVELOPE_MALFORMED


class EncryptionError(GhostKeyError):
    """The AEAD primitive is unavailable or the input cannot be framed."""
    code = ErrorCode.ENVELOPE_ENCRYPTION_FAILED


class DecryptionFailure(GhostKeyError):
    """Authentication tag mismatch, or key/IV unusable."""
    code = ErrorCode.ENVELOPE_DECRYPTION_FAILED


# ============================================================================
# Blob store
# ============================================================================

class BlobStoreError(GhostKeyError):
    """Base for blob store transfer failures."""

    attempts: int = 0
    last_error: Optional[BaseException] = None

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        attempts: int = 0,
        last_error: Optional[BaseException] = None,
    ):
        details = dict(details or {})
        details.setdefault("attempts", attempts)
        if last_error is not None:
            details.setdefault("last_error", f"{type(last_error).__name__}: {last_error}")
        super().__init__(message, details)
        self.attempts = attempts
        self.last_error = last_error


class RateLimited(BlobStoreError):
    """Store answered 429/503. Retried internally, only seen as a last_error."""
    code = ErrorCode.BLOB_RATE_LIMITED
    status_code: int = 0

    def __init__(self, status_code: int, url: str):
        super().__init__(
            f"Blob store returned {status_code}",
            details={"status_code": status_code, "url": url},
        )
        self.status_code = status_code


class UploadExhausted(BlobStoreError):
    code = ErrorCode.BLOB_UPLOAD_EXHAUSTED


class DownloadExhausted(BlobStoreError):
    code = ErrorCode.BLOB_DOWNLOAD_EXHAUSTED


class BlobRejected(BlobStoreError):
    """Non-retryable status from the store (4xx other than 429, fatal 5xx)."""
    code = ErrorCode.BLOB_REJECTED
    status_code: int = 0

    def __init__(self, status_code: int, url: str, body: str = ""):
        super().__init__(
            f"Blob store rejected request: {status_code}",
            details={"status_code": status_code, "url": url, "body": body[:200]},
            attempts=1,
        )
        self.status_code = status_code


class InvalidBlobResponse(BlobStoreError):
    """2xx response whose body carries no usable blob id."""
    code = ErrorCode.BLOB_INVALID_RESPONSE


class TransportUnreachable(BlobStoreError):
    """
    Network-level failure (DNS, refused connection, TLS, proxy/origin block).

    Kept distinct from the exhausted kinds so a caller can switch to the
    same-origin relay instead of retrying the same path.
    """
    code = ErrorCode.BLOB_TRANSPORT_UNREACHABLE
    operation: str = ""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        attempts: int = 0,
        last_error: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            details={"operation": operation, "hint": "retry through the upload relay"},
            attempts=attempts,
            last_error=last_error,
        )
        self.operation = operation


# ============================================================================
# Identity / access / ledger
# ============================================================================

class IdentityDerivationError(GhostKeyError):
    code = ErrorCode.IDENTITY_DERIVATION_FAILED


class AccessDenied(GhostKeyError):
    """Credential expired, mismatched or unknown. A policy outcome, not a bug."""
    code = ErrorCode.ACCESS_DENIED
    decision: Any = None

    def __init__(self, message: str, decision: Any = None):
        details = {}
        if decision is not None:
            details["reason"] = getattr(decision, "reason", str(decision))
        super().__init__(message, details)
        self.decision = decision


class InvalidTransition(GhostKeyError):
    code = ErrorCode.ACCESS_INVALID_TRANSITION


class AuthorizationUnavailable(GhostKeyError):
    """The authorization oracle could not be consulted."""
    code = ErrorCode.ACCESS_AUTHORIZATION_UNAVAILABLE


class LedgerRejected(GhostKeyError):
    code = ErrorCode.LEDGER_REJECTED


class LedgerNotFound(GhostKeyError):
    code = ErrorCode.LEDGER_NOT_FOUND


# ============================================================================
# System
# ============================================================================

class ConfigError(GhostKeyError):
    code = ErrorCode.CONFIG_INVALID


class UnsupportedPlatform(GhostKeyError):
    code = ErrorCode.SYSTEM_UNSUPPORTED_PLATFORM


class Cancelled(GhostKeyError):
    code = ErrorCode.SYSTEM_CANCELLED


_KINDS: Dict[str, type] = {
    cls.__name__: cls
    for cls in (
        GhostKeyError,
        MalformedEnvelope,
        EncryptionError,
        DecryptionFailure,
        BlobStoreError,
        RateLimited,
        UploadExhausted,
        DownloadExhausted,
        BlobRejected,
        InvalidBlobResponse,
        TransportUnreachable,
        IdentityDerivationError,
        AccessDenied,
        InvalidTransition,
        AuthorizationUnavailable,
        LedgerRejected,
        LedgerNotFound,
        ConfigError,
        UnsupportedPlatform,
        Cancelled,
    )
}


__all__ = [
    "ErrorCode",
    "GhostKeyError",
    "MalformedEnvelope",
    "EncryptionError",
    "DecryptionFailure",
    "BlobStoreError",
    "RateLimited",
    "UploadExhausted",
    "DownloadExhausted",
    "BlobRejected",
    "InvalidBlobResponse",
    "TransportUnreachable",
    "IdentityDerivationError",
    "AccessDenied",
    "InvalidTransition",
    "AuthorizationUnavailable",
    "LedgerRejected",
    "LedgerNotFound",
    "ConfigError",
    "UnsupportedPlatform",
    "Cancelled",
]
