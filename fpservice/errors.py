"""Error taxonomy for the fingerprint service.

Codes are grouped by range: 1xxx device, 2xxx fingerprint, 3xxx database,
4xxx auth, 5xxx system.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Dict, Optional


class ErrorCode(IntEnum):
    DEVICE_NOT_FOUND = 1001
    DEVICE_BUSY = 1002
    DEVICE_DISCONNECTED = 1003
    DEVICE_INIT_FAILED = 1004
    DEVICE_TIMEOUT = 1005

    LOW_QUALITY = 2001
    NO_FINGERPRINT_DETECTED = 2002
    TEMPLATE_EXTRACTION_FAILED = 2003
    MATCH_FAILED = 2004
    ENROLLMENT_FAILED = 2005

    USER_NOT_FOUND = 3001
    USER_ALREADY_EXISTS = 3002
    DATABASE_ERROR = 3003

    UNAUTHORIZED = 4001
    FORBIDDEN = 4002
    RATE_LIMIT_EXCEEDED = 4003

    INTERNAL_ERROR = 5001
    OPERATION_TIMEOUT = 5002
    SESSION_NOT_FOUND = 5003
    INVALID_REQUEST = 5004


ERROR_MESSAGES = {
    ErrorCode.DEVICE_NOT_FOUND: "Fingerprint device not found.",
    ErrorCode.DEVICE_BUSY: "Device is busy with another operation.",
    ErrorCode.DEVICE_DISCONNECTED: "Device was disconnected.",
    ErrorCode.DEVICE_INIT_FAILED: "Device failed to initialize.",
    ErrorCode.DEVICE_TIMEOUT: "Device operation timed out.",
    ErrorCode.LOW_QUALITY: "Fingerprint quality too low, please try again.",
    ErrorCode.NO_FINGERPRINT_DETECTED: "No finger was detected on the scanner.",
    ErrorCode.TEMPLATE_EXTRACTION_FAILED: "Could not extract a fingerprint template.",
    ErrorCode.MATCH_FAILED: "Fingerprint comparison failed.",
    ErrorCode.ENROLLMENT_FAILED: "Enrollment failed.",
    ErrorCode.USER_NOT_FOUND: "User has no enrolled fingerprint.",
    ErrorCode.USER_ALREADY_EXISTS: "User is already enrolled.",
    ErrorCode.DATABASE_ERROR: "Template store error.",
    ErrorCode.UNAUTHORIZED: "Missing or invalid API key.",
    ErrorCode.FORBIDDEN: "API key lacks the required permission.",
    ErrorCode.RATE_LIMIT_EXCEEDED: "Rate limit exceeded.",
    ErrorCode.INTERNAL_ERROR: "Internal service error.",
    ErrorCode.OPERATION_TIMEOUT: "Operation timed out.",
    ErrorCode.SESSION_NOT_FOUND: "Scan session not found.",
    ErrorCode.INVALID_REQUEST: "Invalid request.",
}

# Device errors are terminal except busy/timeout, which callers retry after backoff.
# Capture errors are retried by re-capturing; ENROLLMENT_FAILED is terminal.
RETRYABLE_CODES = frozenset({
    ErrorCode.DEVICE_BUSY,
    ErrorCode.DEVICE_TIMEOUT,
    ErrorCode.LOW_QUALITY,
    ErrorCode.NO_FINGERPRINT_DETECTED,
    ErrorCode.TEMPLATE_EXTRACTION_FAILED,
    ErrorCode.MATCH_FAILED,
    ErrorCode.DATABASE_ERROR,
    ErrorCode.RATE_LIMIT_EXCEEDED,
    ErrorCode.OPERATION_TIMEOUT,
})


class FingerprintError(Exception):
    """Exception carrying a numeric error code and structured details."""

    def __init__(
        self,
        code: ErrorCode,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.code = ErrorCode(code)
        self.message = message or ERROR_MESSAGES.get(self.code, self.code.name)
        self.details = dict(details or {})
        super().__init__(f"{self.message} (Error code: {int(self.code)}, {self.code.name})")

    @property
    def name(self) -> str:
        return self.code.name

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def with_details(self, **details: Any) -> "FingerprintError":
        merged = dict(self.details)
        merged.update(details)
        return FingerprintError(self.code, self.message, merged)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": int(self.code),
            "name": self.code.name,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }


class CaptureCancelled(Exception):
    """Raised inside a capture when its session was stopped or its lease released."""
