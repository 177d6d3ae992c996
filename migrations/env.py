import logging
from logging.config import fileConfig
from urllib.parse import urlparse

from sqlalchemy import engine_from_config
from sqlalchemy import pool

from alembic import context

from core.config import settings
from core.database import normalize_url
from core.models import Base

config = context.config

if config.config_file_name:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

url = normalize_url(settings.DATABASE_URL)
if not url:
    raise RuntimeError("DATABASE_URL is not set. Set it in .env or environment for migrations.")
config.set_main_option("sqlalchemy.url", url)


def _db_display(url: str) -> str:
    """host:port/db only; credentials never reach the log."""
    parsed = urlparse(url)
    db = (parsed.path or "").lstrip("/") or "?"
    host = parsed.hostname or "?"
    return f"db={db} at {host}:{parsed.port}" if parsed.port else f"db={db} at {host}"


def run_migrations_offline() -> None:
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    logger.info("Alembic target: %s", _db_display(url))
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
