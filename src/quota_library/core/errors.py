# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Error taxonomy and classification for the quota library.

Every failure that can happen while acquiring credentials or fetching usage
is reduced to a ClassifiedError carrying one ErrorKind. The orchestrator only
looks at the kind to decide whether to retry, fall back, or give up.
"""

from typing import Any, Optional

import httpx


class ErrorKind:
    """
    Error kinds understood by the fetch orchestrator.

    Plain string constants so they serialize cleanly into logs and
    diagnostics.
    """

    KEY_UNAVAILABLE = "key_unavailable"
    CIPHERTEXT_MALFORMED = "ciphertext_malformed"
    AUTHENTICATION_TAG_MISMATCH = "authentication_tag_mismatch"
    STORE_UNAVAILABLE = "store_unavailable"
    MIGRATION_FAILED = "migration_failed"
    NETWORK_ERROR = "network_error"
    RATE_LIMITED = "rate_limited"
    AUTH_EXPIRED = "auth_expired"
    NOT_INSTALLED = "not_installed"
    PARSE_ERROR = "parse_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


DECRYPTION_KINDS = frozenset(
    {
        ErrorKind.KEY_UNAVAILABLE,
        ErrorKind.CIPHERTEXT_MALFORMED,
        ErrorKind.AUTHENTICATION_TAG_MISMATCH,
    }
)

# Only these are worth retrying against the same strategy
TRANSIENT_KINDS = frozenset({ErrorKind.NETWORK_ERROR, ErrorKind.RATE_LIMITED})

# Kinds that mean "this channel does not exist here" rather than "it broke"
UNAVAILABLE_KINDS = frozenset({ErrorKind.NOT_INSTALLED, ErrorKind.STORE_UNAVAILABLE})


def is_transient(kind: str) -> bool:
    """Return True if an error of this kind may succeed on retry."""
    return kind in TRANSIENT_KINDS


# =============================================================================
# EXCEPTIONS
# =============================================================================


class QuotaLibraryError(Exception):
    """Base exception for all quota library errors."""

    kind: str = ErrorKind.UNKNOWN

    def __init__(self, message: str = "", kind: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class DecryptionError(QuotaLibraryError):
    """
    A browser cookie value could not be decrypted.

    The reason is one of KEY_UNAVAILABLE, CIPHERTEXT_MALFORMED or
    AUTHENTICATION_TAG_MISMATCH.
    """

    def __init__(self, reason: str, message: str = ""):
        if reason not in DECRYPTION_KINDS:
            raise ValueError(f"Unknown decryption failure reason: {reason}")
        super().__init__(message or reason, kind=reason)
        self.reason = reason


class StoreUnavailable(QuotaLibraryError):
    """A browser cookie store is missing, unreadable, or holds no cookie."""

    kind = ErrorKind.STORE_UNAVAILABLE


class MigrationFailed(QuotaLibraryError):
    """A credential migration step raised or produced an invalid record."""

    kind = ErrorKind.MIGRATION_FAILED

    def __init__(self, message: str, from_version: Optional[int] = None):
        super().__init__(message)
        self.from_version = from_version


class StrategyError(QuotaLibraryError):
    """
    Raised by fetch strategies to report a classified failure.

    Provider adapters raise this directly when they detect a specific
    condition (e.g. an expired session in an otherwise 200 response).
    """

    def __init__(
        self,
        kind: str,
        message: str = "",
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message or kind, kind=kind)
        self.status_code = status_code
        self.retry_after = retry_after


# =============================================================================
# CLASSIFICATION
# =============================================================================


class ClassifiedError:
    """
    A failure reduced to its ErrorKind plus the details needed to act on it.
    """

    def __init__(
        self,
        error_type: str,
        message: str = "",
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        original_exception: Optional[BaseException] = None,
    ):
        self.error_type = error_type
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.original_exception = original_exception

    @property
    def is_transient(self) -> bool:
        return is_transient(self.error_type)

    @property
    def is_unavailable(self) -> bool:
        return self.error_type in UNAVAILABLE_KINDS

    def __repr__(self) -> str:
        return (
            f"ClassifiedError(type={self.error_type}, status={self.status_code}, "
            f"retry_after={self.retry_after}, message={self.message[:100]!r})"
        )

    def __str__(self) -> str:
        if self.message and self.message != self.error_type:
            return f"{self.error_type}: {self.message}"
        return self.error_type


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header holding delta-seconds."""
    if not value:
        return None
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return None


def classify_status(status_code: int, headers: Optional[Any] = None) -> str:
    """Map an HTTP status code to an ErrorKind."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in (401, 403):
        return ErrorKind.AUTH_EXPIRED
    if status_code == 404:
        return ErrorKind.NOT_INSTALLED
    if status_code >= 500 or status_code == 408:
        return ErrorKind.NETWORK_ERROR
    return ErrorKind.PARSE_ERROR


def classify_error(error: BaseException) -> ClassifiedError:
    """
    Classify an exception raised during credential acquisition or fetching.

    Args:
        error: The caught exception

    Returns:
        ClassifiedError describing the failure
    """
    if isinstance(error, StrategyError):
        return ClassifiedError(
            error_type=error.kind,
            message=error.message,
            status_code=error.status_code,
            retry_after=error.retry_after,
            original_exception=error,
        )

    if isinstance(error, QuotaLibraryError):
        return ClassifiedError(
            error_type=error.kind, message=error.message, original_exception=error
        )

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        retry_after = _parse_retry_after(response.headers.get("retry-after"))
        return ClassifiedError(
            error_type=classify_status(response.status_code),
            message=f"HTTP {response.status_code} from {error.request.url.host}",
            status_code=response.status_code,
            retry_after=retry_after,
            original_exception=error,
        )

    # TimeoutException must be checked before TransportError (it's a subclass)
    if isinstance(error, httpx.TimeoutException):
        return ClassifiedError(
            error_type=ErrorKind.TIMEOUT, message=str(error), original_exception=error
        )

    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ClassifiedError(
            error_type=ErrorKind.NETWORK_ERROR,
            message=str(error),
            original_exception=error,
        )

    if isinstance(error, TimeoutError):
        return ClassifiedError(
            error_type=ErrorKind.TIMEOUT, message="timed out", original_exception=error
        )

    if isinstance(error, (ValueError, KeyError, TypeError)):
        # json.JSONDecodeError is a ValueError
        return ClassifiedError(
            error_type=ErrorKind.PARSE_ERROR,
            message=f"{type(error).__name__}: {error}",
            original_exception=error,
        )

    if isinstance(error, FileNotFoundError):
        return ClassifiedError(
            error_type=ErrorKind.NOT_INSTALLED,
            message=str(error),
            original_exception=error,
        )

    return ClassifiedError(
        error_type=ErrorKind.UNKNOWN,
        message=f"{type(error).__name__}: {error}",
        original_exception=error,
    )


def mask_credential(value: Optional[str], style: str = "short") -> str:
    """
    Mask a secret for logging.

    Args:
        value: The secret (token, cookie header, key, or file path)
        style: "short" shows the last 4 characters, "full" shows the first
            and last 4 for long values

    Returns:
        Masked string safe to log
    """
    if not value:
        return "<empty>"
    if len(value) <= 8:
        return "****"
    if style == "full" and len(value) > 16:
        return f"{value[:4]}...{value[-4:]}"
    return f"...{value[-4:]}"
