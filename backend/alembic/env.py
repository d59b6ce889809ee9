import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.config import settings  # noqa: E402
from app.models_sqlalchemy import Base  # noqa: E402
from app.models_sqlalchemy import models  # noqa: E402,F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

DATABASE_URL = settings.DATABASE_URL
target_metadata = Base.metadata


def _connect_args(url: str) -> dict:
    if not url.startswith("postgres"):
        return {}
    # long migrations on managed Postgres drop idle sockets otherwise
    return {
        "connect_timeout": 10,
        "keepalives": 1,
        "keepalives_idle": 30,
        "keepalives_interval": 10,
        "keepalives_count": 5,
    }


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=DATABASE_URL.startswith("sqlite"),
        **kwargs,
    )
    with context.begin_transaction():
        context.run_migrations()


def migrate_offline() -> None:
    """Emit the migration SQL to stdout without touching a database."""
    _configure(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})


def migrate_online() -> None:
    engine = create_engine(DATABASE_URL, poolclass=pool.NullPool, connect_args=_connect_args(DATABASE_URL))
    try:
        with engine.connect() as connection:
            _configure(connection=connection)
    finally:
        engine.dispose()


if context.is_offline_mode():
    migrate_offline()
else:
    migrate_online()
