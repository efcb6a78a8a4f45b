"""Error taxonomy shared by the LLM adapters and the web-search gateway.

| Code            | Trigger                                   | Retryable |
|-----------------|-------------------------------------------|-----------|
| timeout         | internal or external abort before response | yes       |
| auth            | 401 / 403                                 | no        |
| quota           | 402 / 429                                 | yes       |
| network         | connection-level failure                  | yes       |
| upstream        | 5xx                                       | yes       |
| invalid_request | 400 / 422                                 | no        |
| missing_key     | no credential for a vendor in a plan      | no        |
| unknown         | anything else                             | no        |
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    TIMEOUT = "timeout"
    AUTH = "auth"
    QUOTA = "quota"
    NETWORK = "network"
    UPSTREAM = "upstream"
    INVALID_REQUEST = "invalid_request"
    MISSING_KEY = "missing_key"
    UNKNOWN = "unknown"


_RETRYABLE_CODES = frozenset({ErrorCode.TIMEOUT, ErrorCode.QUOTA, ErrorCode.NETWORK, ErrorCode.UPSTREAM})

# HTTP statuses the retry executor will try again
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def classify_status(status: int | None) -> ErrorCode:
    """Map an HTTP-like status to an error code. 0 means no HTTP response."""
    if status is None:
        return ErrorCode.UNKNOWN
    if status == 0:
        return ErrorCode.NETWORK
    if status in (400, 422):
        return ErrorCode.INVALID_REQUEST
    if status in (401, 403):
        return ErrorCode.AUTH
    if status in (402, 429):
        return ErrorCode.QUOTA
    if status == 408:
        return ErrorCode.TIMEOUT
    if status >= 500:
        return ErrorCode.UPSTREAM
    return ErrorCode.UNKNOWN


def is_retryable_code(code: ErrorCode) -> bool:
    return code in _RETRYABLE_CODES


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUSES


class ProviderError(Exception):
    """Raised by LLM adapters (buffered and streaming) and the retry executor.

    Carries enough metadata for callers to branch on structured fields
    instead of matching on messages.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        retryable: bool = False,
        retry_after: float | None = None,
        error_code: ErrorCode | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after  # seconds
        self.error_code = error_code or classify_status(status_code)

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "code": self.error_code.value,
            "status": self.status_code,
            "retryable": self.retryable,
            "retry_after": self.retry_after,
        }

    def __repr__(self) -> str:
        return (
            f"ProviderError({self.message!r}, status_code={self.status_code}, "
            f"retryable={self.retryable}, error_code={self.error_code.value})"
        )


class StreamError(Exception):
    """Raised by ``collect_stream`` when a stream ends with an error chunk."""
