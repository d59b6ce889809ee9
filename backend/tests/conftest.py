import os

# Must be set before app.config / app.models_sqlalchemy are imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest

from app.config import settings
from app.models_sqlalchemy import Base, SessionLocal, engine
from app.models_sqlalchemy import models  # noqa: F401


@pytest.fixture
def db():
    """Fresh schema per test on the shared in-memory SQLite connection."""

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def webhook_base_url(monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_PUBLIC_BASE_URL", "https://connector.example.com")
    return "https://connector.example.com"
