from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24
    DEBUG: bool = False

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    # DATABASE_URL must be provided via environment (Postgres in production).
    # SQLite URLs are accepted for local runs and the test-suite.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Marketplace API endpoints
    BRICKLINK_API_BASE_URL: str = "https://api.bricklink.com/api/store/v1"
    BRICKOWL_API_BASE_URL: str = "https://api.brickowl.com/v1"
    MARKETPLACE_USER_AGENT: str = "BrickStoreConnector/1.0"
    # Per-attempt timeout for outbound marketplace calls.
    MARKETPLACE_HTTP_TIMEOUT_SECONDS: float = 30.0

    # Retry policy shared by both providers. Only idempotent requests
    # (GET, or writes flagged retry-safe) are ever retried.
    MARKETPLACE_RETRY_ATTEMPTS: int = 3
    MARKETPLACE_RETRY_BASE_DELAY_MS: int = 300
    MARKETPLACE_RETRY_MAX_DELAY_MS: int = 5000

    # Published quotas: BrickLink allows ~5000 calls/day, which we spread as
    # 210 per hour; BrickOwl allows 200 per minute.
    BRICKLINK_RATE_LIMIT_CAPACITY: int = 210
    BRICKLINK_RATE_LIMIT_WINDOW_MS: int = 60 * 60 * 1000
    BRICKOWL_RATE_LIMIT_CAPACITY: int = 200
    BRICKOWL_RATE_LIMIT_WINDOW_MS: int = 60 * 1000
    RATE_LIMIT_ALERT_THRESHOLD: float = 0.8

    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_COOLDOWN_MS: int = 5 * 60 * 1000

    # Webhook configuration.
    #
    # WEBHOOK_PUBLIC_BASE_URL is the externally reachable base URL of this
    # backend, e.g. "https://api.yourdomain.com". The BrickLink callback is
    # registered as {WEBHOOK_PUBLIC_BASE_URL}/api/bricklink/webhook/{token}.
    WEBHOOK_PUBLIC_BASE_URL: Optional[str] = None
    WEBHOOK_MAX_PAYLOAD_BYTES: int = 1024
    WEBHOOK_REPLAY_WINDOW_SECONDS: int = 60 * 60
    WEBHOOK_MAX_PROCESSING_ATTEMPTS: int = 5
    WEBHOOK_REGISTRATION_STALE_HOURS: int = 6

    # Background sweep (order polling, outbox drain, webhook registration).
    MARKETPLACE_SYNC_LOOP_ENABLED: bool = True
    MARKETPLACE_SYNC_LOOP_INTERVAL_SECONDS: int = 300

    # Inventory push outbox. Retryable failures back off exponentially
    # (base * 2^attempt, capped) plus up to INVENTORY_SYNC_JITTER_MS of jitter.
    INVENTORY_SYNC_MAX_ATTEMPTS: int = 5
    INVENTORY_SYNC_BASE_DELAY_MS: int = 1000
    INVENTORY_SYNC_MAX_DELAY_MS: int = 5 * 60 * 1000
    INVENTORY_SYNC_JITTER_MS: int = 5000
    INVENTORY_SYNC_BATCH_SIZE: int = 100

    class Config:
        # Do not silently read .env in CI; the platform injects env
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def webhook_callback_base_url(self) -> Optional[str]:
        if not self.WEBHOOK_PUBLIC_BASE_URL:
            return None
        return self.WEBHOOK_PUBLIC_BASE_URL.rstrip("/")


settings = Settings()
