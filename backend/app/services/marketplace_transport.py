"""Authenticated, rate-limited, retried HTTP transport for marketplace APIs.

One :meth:`MarketplaceTransport.request` call is one logical request:

1. a correlation id is chosen (stable across retries) and sent as
   ``X-Correlation-Id``;
2. the rate limiter admits and counts the call (``acquire``);
3. attempts run with exponential backoff, but only for idempotent requests
   (GET, or writes flagged ``retry_safe``) and only on transient statuses
   or network errors;
4. every attempt is reported through ``on_attempt``; a single
   :class:`RateLimitRecorder` settles the limiter once at the end, so
   retried attempts never count as extra requests;
5. the provider response is parsed strictly and failures are raised as
   :class:`MarketplaceError`.
"""

from __future__ import annotations

import asyncio
import json
import random
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import httpx
from pydantic import BaseModel, ValidationError

from app.config import settings
from app.models_sqlalchemy.models import MarketplaceProvider
from app.services.bricklink_oauth import BrickLinkCredentials, build_oauth_header, normalize_query
from app.services.marketplace_errors import (
    ErrorCode,
    MarketplaceError,
    is_retryable,
    map_error_code,
    parse_retry_after_header,
    retry_after_from_body,
    retry_after_from_headers,
)
from app.services.rate_limiter import RateLimiter, rate_limiter as default_rate_limiter
from app.utils.logger import logger, sanitize_credentials


RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class BrickOwlCredentials:
    api_key: str


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay_ms: int = 300
    max_delay_ms: int = 5000
    retry_statuses: frozenset = RETRYABLE_STATUSES

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            attempts=settings.MARKETPLACE_RETRY_ATTEMPTS,
            base_delay_ms=settings.MARKETPLACE_RETRY_BASE_DELAY_MS,
            max_delay_ms=settings.MARKETPLACE_RETRY_MAX_DELAY_MS,
        )

    def compute_delay_ms(
        self,
        attempt: int,
        retry_after_ms: Optional[int] = None,
        rand: Callable[[], float] = random.random,
    ) -> int:
        """Delay before the attempt following ``attempt`` (1-based).

        A Retry-After hint replaces the exponential schedule; both are capped
        at ``max_delay_ms``.
        """

        if retry_after_ms is not None:
            return max(0, min(retry_after_ms, self.max_delay_ms))
        exponential = self.base_delay_ms * (2 ** (attempt - 1))
        jitter = rand() * self.base_delay_ms
        return int(min(self.max_delay_ms, exponential + jitter))


@dataclass
class MarketplaceRequest:
    path: str
    method: str = "GET"
    query: Optional[Dict[str, Any]] = None
    body: Any = None
    headers: Optional[Dict[str, str]] = None
    # Writes the provider documents as safe to repeat (e.g. absolute updates).
    retry_safe: bool = False
    correlation_id: Optional[str] = None

    @property
    def is_idempotent(self) -> bool:
        return self.method.upper() == "GET" or self.retry_safe


@dataclass
class AttemptOutcome:
    attempt: int
    ok: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: int = 0
    will_retry: bool = False


@dataclass
class TransportResponse:
    status_code: int
    body: Any
    data: Any
    headers: Dict[str, str]
    attempts: int
    duration_ms: int
    correlation_id: str


class RateLimitRecorder:
    """Collects attempt outcomes and settles the rate limiter exactly once."""

    def __init__(self, limiter: RateLimiter, tenant_id: str, provider: str) -> None:
        self.limiter = limiter
        self.tenant_id = tenant_id
        self.provider = provider
        self.outcomes: List[AttemptOutcome] = []
        self.settled = False

    def on_attempt(self, outcome: AttemptOutcome) -> None:
        self.outcomes.append(outcome)

    def settle(self, success: bool) -> None:
        if self.settled:
            return
        self.settled = True
        if success:
            # The request was already counted when it was admitted.
            self.limiter.record_success(self.tenant_id, self.provider, count_request=False)
        else:
            self.limiter.record_failure(self.tenant_id, self.provider)


def _safe_json(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text[:2048]}


class MarketplaceTransport:
    provider: str = ""

    def __init__(
        self,
        tenant_id: str,
        *,
        base_url: str,
        limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        on_attempt: Optional[Callable[[AttemptOutcome], None]] = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.base_url = base_url.rstrip("/")
        self.limiter = limiter or default_rate_limiter
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=settings.MARKETPLACE_HTTP_TIMEOUT_SECONDS)
        )
        self._sleep = sleep or asyncio.sleep
        self._on_attempt = on_attempt

    # Subclasses -------------------------------------------------------
    def validate_request(self, request: MarketplaceRequest) -> None:
        """Reject requests the provider cannot serve before any quota is used."""

    def build_request(self, request: MarketplaceRequest, correlation_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def parse_response(self, response: httpx.Response, request: MarketplaceRequest, correlation_id: str) -> Tuple[Any, Any]:
        raise NotImplementedError

    # Shared -----------------------------------------------------------
    def default_headers(self, correlation_id: str) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "User-Agent": settings.MARKETPLACE_USER_AGENT,
            "X-Correlation-Id": correlation_id,
        }

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _report(self, recorder: RateLimitRecorder, outcome: AttemptOutcome) -> None:
        recorder.on_attempt(outcome)
        if self._on_attempt is not None:
            self._on_attempt(outcome)

    async def request(self, request: MarketplaceRequest) -> TransportResponse:
        method = request.method.upper()
        request.method = method
        correlation_id = request.correlation_id or str(uuid.uuid4())
        self.validate_request(request)

        decision = self.limiter.acquire(self.tenant_id, self.provider)
        if not decision.allowed:
            logger.warning(
                "[%s] %s %s blocked code=%s retry_after_ms=%s tenant=%s correlation_id=%s",
                self.provider, method, request.path, decision.code, decision.retry_after_ms,
                self.tenant_id, correlation_id,
            )
        decision.raise_if_rejected(self.provider, correlation_id)

        recorder = RateLimitRecorder(self.limiter, self.tenant_id, self.provider)
        max_attempts = self.retry_policy.attempts if request.is_idempotent else 1
        started = time.monotonic()
        attempt = 0

        async with self._client_factory() as client:
            while True:
                attempt += 1
                attempt_started = time.monotonic()
                try:
                    # Rebuilt per attempt: BrickLink needs a fresh nonce/timestamp every time.
                    response = await client.request(**self.build_request(request, correlation_id))
                except httpx.TransportError as exc:
                    elapsed = int((time.monotonic() - attempt_started) * 1000)
                    will_retry = attempt < max_attempts
                    self._report(recorder, AttemptOutcome(attempt, False, None, f"{type(exc).__name__}: {exc}", elapsed, will_retry))
                    logger.warning(
                        "[%s] %s %s attempt=%s network error=%s correlation_id=%s",
                        self.provider, method, request.path, attempt, type(exc).__name__, correlation_id,
                    )
                    if will_retry:
                        await self._sleep(self.retry_policy.compute_delay_ms(attempt) / 1000.0)
                        continue
                    recorder.settle(False)
                    code = ErrorCode.TIMEOUT if isinstance(exc, httpx.TimeoutException) else ErrorCode.NETWORK
                    raise MarketplaceError(
                        code,
                        f"{self.provider} request failed: {exc}",
                        retryable=True,
                        correlation_id=correlation_id,
                        details={
                            "endpoint": request.path,
                            "method": method,
                            "attempts": attempt,
                            "error_type": type(exc).__name__,
                        },
                    ) from exc
                except Exception as exc:
                    elapsed = int((time.monotonic() - attempt_started) * 1000)
                    self._report(recorder, AttemptOutcome(attempt, False, None, f"{type(exc).__name__}: {exc}", elapsed, False))
                    recorder.settle(False)
                    logger.error(
                        "[%s] %s %s attempt=%s failed before a response: %s correlation_id=%s",
                        self.provider, method, request.path, attempt, type(exc).__name__, correlation_id,
                        exc_info=True,
                    )
                    raise MarketplaceError(
                        ErrorCode.UNEXPECTED_ERROR,
                        f"{self.provider} request could not be sent: {exc}",
                        retryable=False,
                        correlation_id=correlation_id,
                        details={"endpoint": request.path, "method": method, "error_type": type(exc).__name__},
                    ) from exc

                elapsed = int((time.monotonic() - attempt_started) * 1000)
                status = response.status_code
                if status in self.retry_policy.retry_statuses and attempt < max_attempts:
                    retry_after_ms = parse_retry_after_header(response.headers.get("Retry-After"))
                    delay_ms = self.retry_policy.compute_delay_ms(attempt, retry_after_ms)
                    self._report(recorder, AttemptOutcome(attempt, False, status, f"HTTP {status}", elapsed, True))
                    logger.warning(
                        "[%s] %s %s attempt=%s status=%s retry_in_ms=%s correlation_id=%s",
                        self.provider, method, request.path, attempt, status, delay_ms, correlation_id,
                    )
                    await self._sleep(delay_ms / 1000.0)
                    continue
                break

        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            body, data = self.parse_response(response, request, correlation_id)
        except Exception as exc:
            if not isinstance(exc, MarketplaceError):
                exc = MarketplaceError(
                    ErrorCode.INVALID_RESPONSE,
                    f"{self.provider} response could not be read: {exc}",
                    retryable=False,
                    correlation_id=correlation_id,
                    details={"endpoint": request.path, "method": method, "error_type": type(exc).__name__},
                )
            self._report(recorder, AttemptOutcome(attempt, False, response.status_code, exc.message, elapsed, False))
            recorder.settle(False)
            logger.error(
                "[%s] %s %s failed status=%s code=%s attempts=%s duration_ms=%s query=%s correlation_id=%s",
                self.provider, method, request.path, response.status_code, exc.code, attempt, duration_ms,
                sanitize_credentials(request.query), correlation_id,
            )
            exc.details.setdefault("attempts", attempt)
            raise exc

        self._report(recorder, AttemptOutcome(attempt, True, response.status_code, None, elapsed, False))
        recorder.settle(True)
        logger.info(
            "[%s] %s %s ok status=%s attempts=%s duration_ms=%s correlation_id=%s",
            self.provider, method, request.path, response.status_code, attempt, duration_ms, correlation_id,
        )
        return TransportResponse(
            status_code=response.status_code,
            body=body,
            data=data,
            headers=dict(response.headers),
            attempts=attempt,
            duration_ms=duration_ms,
            correlation_id=correlation_id,
        )

    def provider_error(
        self,
        request: MarketplaceRequest,
        correlation_id: str,
        status: int,
        message: str,
        *,
        provider_code: Optional[str] = None,
        headers: Optional[Mapping[str, Any]] = None,
        body: Any = None,
    ) -> MarketplaceError:
        """Build the canonical error for a provider-reported failure.

        Only the endpoint, status and provider code survive into ``details``;
        raw response headers and bodies stay here.
        """

        code = map_error_code(status, provider_code)
        retry_after_ms = retry_after_from_headers(headers)
        if retry_after_ms is None:
            retry_after_ms = retry_after_from_body(body)
        details: Dict[str, Any] = {"endpoint": request.path, "method": request.method, "status": status}
        if provider_code:
            details["provider_code"] = provider_code
        return MarketplaceError(
            code,
            message,
            http_status=status,
            retry_after_ms=retry_after_ms,
            retryable=is_retryable(code, status),
            correlation_id=correlation_id,
            details=details,
        )

    def _http_error(self, response: httpx.Response, request: MarketplaceRequest, correlation_id: str, body: Any) -> MarketplaceError:
        provider_code = None
        if isinstance(body, dict):
            meta = body.get("meta") if isinstance(body.get("meta"), dict) else {}
            raw_code = body.get("error_code") or body.get("error") or meta.get("message")
            if isinstance(raw_code, str):
                provider_code = raw_code
        return self.provider_error(
            request,
            correlation_id,
            response.status_code,
            f"{self.provider} returned HTTP {response.status_code} for {request.method} {request.path}",
            provider_code=provider_code,
            headers=response.headers,
            body=body,
        )


# ----------------------------------------------------------------------
# BrickLink
# ----------------------------------------------------------------------
class BrickLinkMeta(BaseModel):
    code: Optional[int] = None
    message: Optional[str] = None
    description: Optional[str] = None


class BrickLinkEnvelope(BaseModel):
    meta: BrickLinkMeta
    data: Any = None


class BrickLinkTransport(MarketplaceTransport):
    """OAuth 1.0a signed calls against the BrickLink Store API."""

    provider = MarketplaceProvider.bricklink.value

    def __init__(self, tenant_id: str, credentials: BrickLinkCredentials, **kwargs: Any) -> None:
        kwargs.setdefault("base_url", settings.BRICKLINK_API_BASE_URL)
        super().__init__(tenant_id, **kwargs)
        self.credentials = credentials

    def build_request(self, request: MarketplaceRequest, correlation_id: str) -> Dict[str, Any]:
        url = self.url_for(request.path)
        query = dict(normalize_query(request.query))
        headers = self.default_headers(correlation_id)
        headers.update(request.headers or {})
        headers["Authorization"] = build_oauth_header(request.method, url, self.credentials, query)

        kwargs: Dict[str, Any] = {"method": request.method, "url": url, "params": query or None, "headers": headers}
        if request.body is not None:
            headers["Content-Type"] = "application/json"
            kwargs["content"] = json.dumps(request.body)
        return kwargs

    def parse_response(self, response: httpx.Response, request: MarketplaceRequest, correlation_id: str) -> Tuple[Any, Any]:
        body = _safe_json(response)
        if not response.is_success:
            raise self._http_error(response, request, correlation_id, body)

        try:
            envelope = BrickLinkEnvelope.model_validate(body)
        except ValidationError as exc:
            raise MarketplaceError(
                ErrorCode.INVALID_RESPONSE,
                "BrickLink returned a response that is not a valid envelope",
                retryable=False,
                correlation_id=correlation_id,
                details={"endpoint": request.path, "issues": exc.errors(include_url=False, include_input=False)},
            ) from exc

        meta_code = envelope.meta.code
        if meta_code is not None and meta_code >= 400:
            message = envelope.meta.message or "Unknown BrickLink error"
            if envelope.meta.description:
                message = f"{message} - {envelope.meta.description}"
            raise self.provider_error(
                request,
                correlation_id,
                meta_code,
                f"BrickLink Error {meta_code}: {message}",
                provider_code=envelope.meta.message,
                headers=response.headers,
                body=body,
            )
        return body, envelope.data


# ----------------------------------------------------------------------
# BrickOwl
# ----------------------------------------------------------------------
def encode_form_body(body: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Flatten a BrickOwl POST body; nested values are sent as JSON strings."""

    form: Dict[str, str] = {}
    for key, value in (body or {}).items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            form[key] = json.dumps(value)
        elif isinstance(value, bool):
            form[key] = "1" if value else "0"
        else:
            form[key] = str(value)
    return form


class BrickOwlTransport(MarketplaceTransport):
    """API-key calls against the BrickOwl API (key in query for GET, form field for POST)."""

    provider = MarketplaceProvider.brickowl.value

    def __init__(self, tenant_id: str, credentials: BrickOwlCredentials, **kwargs: Any) -> None:
        kwargs.setdefault("base_url", settings.BRICKOWL_API_BASE_URL)
        super().__init__(tenant_id, **kwargs)
        self.credentials = credentials

    def validate_request(self, request: MarketplaceRequest) -> None:
        if request.method not in ("GET", "POST"):
            raise MarketplaceError(
                ErrorCode.VALIDATION, f"BrickOwl does not support {request.method}", retryable=False,
            )

    def build_request(self, request: MarketplaceRequest, correlation_id: str) -> Dict[str, Any]:
        url = self.url_for(request.path)
        headers = self.default_headers(correlation_id)
        headers.update(request.headers or {})
        query = dict(normalize_query(request.query))
        kwargs: Dict[str, Any] = {"method": request.method, "url": url, "headers": headers}

        if request.method == "GET":
            query["key"] = self.credentials.api_key
            kwargs["params"] = query
        else:
            form = encode_form_body(request.body)
            form["key"] = self.credentials.api_key
            kwargs["data"] = form
            if query:
                kwargs["params"] = query
        return kwargs

    def parse_response(self, response: httpx.Response, request: MarketplaceRequest, correlation_id: str) -> Tuple[Any, Any]:
        body = _safe_json(response)
        if not response.is_success:
            raise self._http_error(response, request, correlation_id, body)
        if isinstance(body, dict) and set(body.keys()) == {"raw"}:
            raise MarketplaceError(
                ErrorCode.INVALID_RESPONSE,
                "BrickOwl returned a non-JSON response",
                retryable=False,
                correlation_id=correlation_id,
                details={"endpoint": request.path, "preview": body["raw"][:200]},
            )
        return body, body


def transport_for(
    tenant_id: str,
    provider: str,
    credentials: BrickLinkCredentials | BrickOwlCredentials,
    **kwargs: Any,
) -> MarketplaceTransport:
    if provider == MarketplaceProvider.bricklink.value:
        return BrickLinkTransport(tenant_id, credentials, **kwargs)
    if provider == MarketplaceProvider.brickowl.value:
        return BrickOwlTransport(tenant_id, credentials, **kwargs)
    raise ValueError(f"Unknown marketplace provider: {provider}")
