"""Canonical error taxonomy for marketplace calls.

Every failure that leaves the transport layer is a :class:`MarketplaceError`
carrying a canonical :class:`ErrorCode`. :func:`normalize_error` turns any
exception (our own, httpx, or something unexpected) into a
:class:`NormalizedError`, which is what API responses, store-operation
results and notification rows record.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

import httpx


class ErrorCode(str, enum.Enum):
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    AUTH = "AUTH"
    PERMISSION = "PERMISSION"
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    SERVER_ERROR = "SERVER_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"
    CREDENTIALS_NOT_FOUND = "CREDENTIALS_NOT_FOUND"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    BUSINESS_ACCOUNT_MISMATCH = "BUSINESS_ACCOUNT_MISMATCH"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


RETRYABLE_CODES = frozenset(
    {ErrorCode.RATE_LIMITED, ErrorCode.TIMEOUT, ErrorCode.NETWORK, ErrorCode.SERVER_ERROR}
)

# Provider-specific codes that map straight onto a canonical code. Checked
# before the HTTP status bucket.
_PROVIDER_CODE_MAP: Dict[str, ErrorCode] = {
    "RATE_LIMIT_EXCEEDED": ErrorCode.RATE_LIMITED,
    "REQUEST_TIMEOUT": ErrorCode.TIMEOUT,
    "TIMEOUT": ErrorCode.TIMEOUT,
    "NOT_FOUND": ErrorCode.NOT_FOUND,
    "CONFLICT": ErrorCode.CONFLICT,
    "INVALID_RESPONSE": ErrorCode.INVALID_RESPONSE,
    "VALIDATION_ERROR": ErrorCode.VALIDATION,
    "CIRCUIT_BREAKER_OPEN": ErrorCode.CIRCUIT_BREAKER_OPEN,
    "NETWORK_ERROR": ErrorCode.NETWORK,
}


class MarketplaceError(Exception):
    """Error raised by marketplace services.

    The transport always raises canonical codes with ``retryable`` set. A
    provider code such as ``RATE_LIMIT_EXCEEDED`` is still accepted here and
    :func:`normalize_error` resolves it.
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        http_status: Optional[int] = None,
        retry_after_ms: Optional[int] = None,
        retryable: Optional[bool] = None,
        correlation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value if isinstance(code, ErrorCode) else str(code)
        self.message = message
        self.http_status = http_status
        self.retry_after_ms = retry_after_ms
        self.retryable = retryable
        self.correlation_id = correlation_id
        self.details = details or {}

    def __repr__(self) -> str:
        return f"MarketplaceError(code={self.code!r}, message={self.message!r}, http_status={self.http_status!r})"


@dataclass
class NormalizedError:
    code: str
    message: str
    retryable: bool
    http_status: Optional[int] = None
    rate_limit_reset_at: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def map_error_code(http_status: Optional[int] = None, provider_code: Optional[str] = None) -> ErrorCode:
    """Resolve the canonical code.

    Priority: explicit provider code, then HTTP status bucket, then
    substring hints in the provider code, then ``UNEXPECTED_ERROR``.
    """

    code = provider_code.upper() if provider_code else None

    if code:
        if code in _PROVIDER_CODE_MAP:
            return _PROVIDER_CODE_MAP[code]
        if code in ErrorCode.__members__ and code != ErrorCode.UNEXPECTED_ERROR.value:
            return ErrorCode(code)

    if isinstance(http_status, int):
        if http_status == 401:
            return ErrorCode.AUTH
        if http_status == 403:
            return ErrorCode.PERMISSION
        if http_status == 404:
            return ErrorCode.NOT_FOUND
        if http_status == 409:
            return ErrorCode.CONFLICT
        if http_status == 429:
            return ErrorCode.RATE_LIMITED
        if http_status == 408:
            return ErrorCode.TIMEOUT
        if http_status >= 500:
            return ErrorCode.SERVER_ERROR
        if http_status >= 400:
            return ErrorCode.VALIDATION

    if code and "TIMEOUT" in code:
        return ErrorCode.TIMEOUT
    if code and "NETWORK" in code:
        return ErrorCode.NETWORK

    return ErrorCode.UNEXPECTED_ERROR


def is_retryable(code: ErrorCode | str, http_status: Optional[int] = None) -> bool:
    code = ErrorCode(code)
    if code in RETRYABLE_CODES:
        return True
    if code == ErrorCode.UNEXPECTED_ERROR:
        # Unexpected errors are retryable unless the provider gave a definitive client-side status.
        return http_status is None or http_status >= 500
    return False


def parse_retry_after_header(value: Any, now: Optional[datetime] = None) -> Optional[int]:
    """Parse a Retry-After header (delta seconds or HTTP-date) into milliseconds."""

    if value is None:
        return None
    if isinstance(value, (int, float)):
        return max(0, int(value * 1000))

    s = str(value).strip()
    if not s:
        return None
    try:
        return max(0, int(float(s) * 1000))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(s)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0, int((when - now).total_seconds() * 1000))


def retry_after_from_headers(headers: Optional[Mapping[str, Any]]) -> Optional[int]:
    if not headers:
        return None
    for key, value in headers.items():
        if str(key).lower() in ("retry-after", "retryafter"):
            return parse_retry_after_header(value)
    return None


def retry_after_from_body(body: Any) -> Optional[int]:
    if not isinstance(body, dict):
        return None
    meta = body.get("meta")
    if not isinstance(meta, dict) or meta.get("retry_after") is None:
        return None
    try:
        numeric = float(meta["retry_after"])
    except (TypeError, ValueError):
        return None
    # Providers send either seconds or milliseconds here.
    return int(numeric) if numeric >= 1000 else int(numeric * 1000)


def to_reset_timestamp(retry_after_ms: Optional[int], now: Optional[datetime] = None) -> Optional[str]:
    """Convert a relative wait into an absolute ISO-8601 UTC timestamp."""

    if retry_after_ms is None:
        return None
    now = now or datetime.now(timezone.utc)
    return (now + timedelta(milliseconds=max(0, retry_after_ms))).isoformat()


def normalize_error(provider: str, error: BaseException) -> NormalizedError:
    """Map any exception raised while talking to ``provider`` onto the canonical taxonomy."""

    if isinstance(error, MarketplaceError):
        details = dict(error.details)
        details.setdefault("provider", provider)
        if error.correlation_id:
            details.setdefault("correlation_id", error.correlation_id)

        code = map_error_code(error.http_status, error.code)
        retry_after_ms = error.retry_after_ms
        if retry_after_ms is None:
            retry_after_ms = retry_after_from_headers(details.get("headers"))
        if retry_after_ms is None:
            retry_after_ms = retry_after_from_body(details.get("body"))

        retryable = error.retryable if error.retryable is not None else is_retryable(code, error.http_status)
        return NormalizedError(
            code=code.value,
            message=error.message,
            retryable=retryable,
            http_status=error.http_status,
            rate_limit_reset_at=to_reset_timestamp(retry_after_ms),
            details=details,
        )

    if isinstance(error, httpx.TimeoutException):
        return NormalizedError(
            code=ErrorCode.TIMEOUT.value,
            message=f"{provider} request timed out: {error}",
            retryable=True,
            details={"provider": provider, "error_type": type(error).__name__},
        )

    if isinstance(error, httpx.TransportError):
        return NormalizedError(
            code=ErrorCode.NETWORK.value,
            message=f"{provider} network error: {error}",
            retryable=True,
            details={"provider": provider, "error_type": type(error).__name__},
        )

    return NormalizedError(
        code=ErrorCode.UNEXPECTED_ERROR.value,
        message=str(error) or f"An unexpected {provider} error occurred",
        retryable=True,
        details={"provider": provider, "error_type": type(error).__name__},
    )


def failed_operation(provider: str, correlation_id: str, error: BaseException) -> "StoreOperationResult":
    """Wrap a failed store write into a result instead of raising."""

    from app.models.marketplace import StoreOperationError, StoreOperationResult

    normalized = normalize_error(provider, error)
    return StoreOperationResult(
        success=False,
        correlation_id=correlation_id,
        error=StoreOperationError(
            code=normalized.code,
            message=normalized.message,
            retryable=normalized.retryable,
            details=normalized.details,
            rate_limit_reset_at=normalized.rate_limit_reset_at,
            http_status=normalized.http_status,
        ),
    )
