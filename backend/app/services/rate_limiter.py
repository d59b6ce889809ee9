"""Per-tenant, per-provider quota window and circuit breaker.

State lives in ``marketplace_rate_limits`` so every API instance sees the
same counters. Each update reads its row with ``SELECT ... FOR UPDATE``
and commits in the same short transaction; concurrent callers for one
(tenant, provider) are serialized by the row lock.

States:
    OPEN          requests are admitted
    THROTTLED     window exhausted; rejected with RATE_LIMITED until it rolls
    BREAKER_OPEN  too many consecutive failures; rejected with
                  CIRCUIT_BREAKER_OPEN until the cooldown ends
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import MarketplaceProvider, MarketplaceRateLimit
from app.services.marketplace_errors import ErrorCode, MarketplaceError
from app.utils.logger import logger


@dataclass(frozen=True)
class RateLimitConfig:
    capacity: int
    window_duration_ms: int
    alert_threshold: float


def get_rate_limit_config(provider: str) -> RateLimitConfig:
    if provider == MarketplaceProvider.bricklink.value:
        return RateLimitConfig(
            capacity=settings.BRICKLINK_RATE_LIMIT_CAPACITY,
            window_duration_ms=settings.BRICKLINK_RATE_LIMIT_WINDOW_MS,
            alert_threshold=settings.RATE_LIMIT_ALERT_THRESHOLD,
        )
    if provider == MarketplaceProvider.brickowl.value:
        return RateLimitConfig(
            capacity=settings.BRICKOWL_RATE_LIMIT_CAPACITY,
            window_duration_ms=settings.BRICKOWL_RATE_LIMIT_WINDOW_MS,
            alert_threshold=settings.RATE_LIMIT_ALERT_THRESHOLD,
        )
    raise ValueError(f"Unknown marketplace provider: {provider}")


def current_time_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class AdmissionDecision:
    allowed: bool
    code: Optional[str] = None
    retry_after_ms: Optional[int] = None
    request_count: int = 0
    capacity: int = 0

    def raise_if_rejected(self, provider: str, correlation_id: Optional[str] = None) -> None:
        if self.allowed:
            return
        if self.code == ErrorCode.CIRCUIT_BREAKER_OPEN.value:
            message = f"{provider} requests are paused after repeated failures"
        else:
            message = (
                f"{provider} rate limit exceeded ({self.request_count}/{self.capacity}), "
                f"resets in {max(1, (self.retry_after_ms or 0) // 1000)}s"
            )
        raise MarketplaceError(
            self.code or ErrorCode.RATE_LIMITED.value,
            message,
            retry_after_ms=self.retry_after_ms,
            retryable=False if self.code == ErrorCode.CIRCUIT_BREAKER_OPEN.value else True,
            correlation_id=correlation_id,
            details={"request_count": self.request_count, "capacity": self.capacity},
        )


@dataclass
class RateLimitSnapshot:
    tenant_id: str
    provider: str
    window_start_ms: int
    request_count: int
    capacity: int
    window_duration_ms: int
    alert_threshold: float
    alert_emitted: bool
    consecutive_failures: int
    circuit_breaker_open_until_ms: Optional[int]


def _get_session(db: Optional[Session] = None) -> Tuple[Session, bool]:
    """Return a session and a flag indicating ownership."""

    if db is not None:
        return db, False
    return SessionLocal(), True


class RateLimiter:
    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        cooldown_ms: Optional[int] = None,
    ) -> None:
        self.failure_threshold = failure_threshold or settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD
        self.cooldown_ms = cooldown_ms or settings.CIRCUIT_BREAKER_COOLDOWN_MS

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------
    def _query(self, session: Session, tenant_id: str, provider: str):
        return session.query(MarketplaceRateLimit).filter(
            MarketplaceRateLimit.tenant_id == tenant_id,
            MarketplaceRateLimit.provider == provider,
        )

    def _load_for_update(self, session: Session, tenant_id: str, provider: str, now: int) -> MarketplaceRateLimit:
        row = self._query(session, tenant_id, provider).with_for_update().one_or_none()
        if row is not None:
            return row

        # ON CONFLICT DO NOTHING: a concurrent first call may insert the same row,
        # and the caller's session must not be rolled back to recover from that.
        config = get_rate_limit_config(provider)
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise RuntimeError(f"Unsupported database dialect for rate limiting: {dialect}")

        stmt = insert(MarketplaceRateLimit).values(
            tenant_id=tenant_id,
            provider=provider,
            window_start_ms=now,
            request_count=0,
            capacity=config.capacity,
            window_duration_ms=config.window_duration_ms,
            alert_threshold=config.alert_threshold,
            alert_emitted=False,
            consecutive_failures=0,
            circuit_breaker_open_until_ms=None,
        )
        session.execute(stmt.on_conflict_do_nothing(index_elements=["tenant_id", "provider"]))
        return self._query(session, tenant_id, provider).with_for_update().one()

    def _finish(self, session: Session, owns_session: bool) -> None:
        if owns_session:
            session.commit()
        else:
            session.flush()

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------
    def _evaluate(self, row: MarketplaceRateLimit, now: int) -> AdmissionDecision:
        open_until = row.circuit_breaker_open_until_ms
        if open_until is not None and now < open_until:
            return AdmissionDecision(
                allowed=False,
                code=ErrorCode.CIRCUIT_BREAKER_OPEN.value,
                retry_after_ms=open_until - now,
                request_count=row.request_count,
                capacity=row.capacity,
            )

        window_expired = now - row.window_start_ms >= row.window_duration_ms
        if not window_expired and row.request_count >= row.capacity:
            return AdmissionDecision(
                allowed=False,
                code=ErrorCode.RATE_LIMITED.value,
                retry_after_ms=row.window_start_ms + row.window_duration_ms - now,
                request_count=row.request_count,
                capacity=row.capacity,
            )

        return AdmissionDecision(allowed=True, request_count=row.request_count, capacity=row.capacity)

    def _count_request(self, row: MarketplaceRateLimit, now: int) -> None:
        if now - row.window_start_ms >= row.window_duration_ms:
            row.window_start_ms = now
            row.request_count = 1
            row.alert_emitted = False
            row.consecutive_failures = 0
            row.circuit_breaker_open_until_ms = None
        else:
            row.request_count = row.request_count + 1

        if not row.alert_emitted and row.capacity and row.request_count / row.capacity >= row.alert_threshold:
            row.alert_emitted = True
            logger.warning(
                "[rate-limit] %s quota alert tenant=%s usage=%s/%s (%.0f%%)",
                row.provider,
                row.tenant_id,
                row.request_count,
                row.capacity,
                100.0 * row.request_count / row.capacity,
            )

    def admit(self, tenant_id: str, provider: str, *, db: Optional[Session] = None, now_ms: Optional[int] = None) -> AdmissionDecision:
        """Check whether a request may be sent right now. Does not change state."""

        now = now_ms if now_ms is not None else current_time_ms()
        session, owns_session = _get_session(db)
        try:
            row = self._query(session, tenant_id, provider).one_or_none()
            if row is None:
                config = get_rate_limit_config(provider)
                return AdmissionDecision(allowed=True, request_count=0, capacity=config.capacity)
            return self._evaluate(row, now)
        finally:
            if owns_session:
                session.close()

    def acquire(self, tenant_id: str, provider: str, *, db: Optional[Session] = None, now_ms: Optional[int] = None) -> AdmissionDecision:
        """Admit and count one request under a single row lock.

        Two concurrent callers can never both take the last slot of a window.
        The call must later be settled with ``record_success(count_request=False)``
        or ``record_failure``.
        """

        now = now_ms if now_ms is not None else current_time_ms()
        session, owns_session = _get_session(db)
        try:
            row = self._load_for_update(session, tenant_id, provider, now)
            decision = self._evaluate(row, now)
            if decision.allowed:
                self._count_request(row, now)
                decision.request_count = row.request_count
            self._finish(session, owns_session)
            return decision
        except Exception:
            if owns_session:
                session.rollback()
            raise
        finally:
            if owns_session:
                session.close()

    def record_success(
        self,
        tenant_id: str,
        provider: str,
        *,
        db: Optional[Session] = None,
        now_ms: Optional[int] = None,
        count_request: bool = True,
    ) -> RateLimitSnapshot:
        now = now_ms if now_ms is not None else current_time_ms()
        session, owns_session = _get_session(db)
        try:
            row = self._load_for_update(session, tenant_id, provider, now)
            if count_request:
                self._count_request(row, now)
            row.consecutive_failures = 0
            row.circuit_breaker_open_until_ms = None
            snapshot = self._snapshot(row)
            self._finish(session, owns_session)
            return snapshot
        except Exception:
            if owns_session:
                session.rollback()
            raise
        finally:
            if owns_session:
                session.close()

    def record_failure(self, tenant_id: str, provider: str, *, db: Optional[Session] = None, now_ms: Optional[int] = None) -> RateLimitSnapshot:
        now = now_ms if now_ms is not None else current_time_ms()
        session, owns_session = _get_session(db)
        try:
            row = self._load_for_update(session, tenant_id, provider, now)
            row.consecutive_failures = row.consecutive_failures + 1
            if row.consecutive_failures >= self.failure_threshold:
                row.circuit_breaker_open_until_ms = now + self.cooldown_ms
                logger.warning(
                    "[circuit-breaker] %s opened tenant=%s failures=%s cooldown_ms=%s",
                    provider,
                    tenant_id,
                    row.consecutive_failures,
                    self.cooldown_ms,
                )
            snapshot = self._snapshot(row)
            self._finish(session, owns_session)
            return snapshot
        except Exception:
            if owns_session:
                session.rollback()
            raise
        finally:
            if owns_session:
                session.close()

    def get_state(self, tenant_id: str, provider: str, *, db: Optional[Session] = None, now_ms: Optional[int] = None) -> RateLimitSnapshot:
        now = now_ms if now_ms is not None else current_time_ms()
        session, owns_session = _get_session(db)
        try:
            row = self._load_for_update(session, tenant_id, provider, now)
            snapshot = self._snapshot(row)
            self._finish(session, owns_session)
            return snapshot
        except Exception:
            if owns_session:
                session.rollback()
            raise
        finally:
            if owns_session:
                session.close()

    @staticmethod
    def _snapshot(row: MarketplaceRateLimit) -> RateLimitSnapshot:
        return RateLimitSnapshot(
            tenant_id=row.tenant_id,
            provider=row.provider,
            window_start_ms=row.window_start_ms,
            request_count=row.request_count,
            capacity=row.capacity,
            window_duration_ms=row.window_duration_ms,
            alert_threshold=row.alert_threshold,
            alert_emitted=row.alert_emitted,
            consecutive_failures=row.consecutive_failures,
            circuit_breaker_open_until_ms=row.circuit_breaker_open_until_ms,
        )


rate_limiter = RateLimiter()
