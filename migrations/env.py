# migrations/env.py
from logging.config import fileConfig
from pathlib import Path
import sys

from sqlalchemy import engine_from_config
from sqlalchemy import pool

from alembic import context

# Project root on sys.path so utils/ imports regardless of cwd
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from utils.env import get_database_url
from utils.redaction import redact_database_url

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Schema is hand-written in versions/; no autogenerate metadata
target_metadata = None


def _database_url() -> str:
    """DATABASE_URL from the environment, else sqlalchemy.url from alembic.ini."""
    url = get_database_url() or (config.get_main_option("sqlalchemy.url") or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is not set and sqlalchemy.url is empty; cannot run migrations.")

    if not url.startswith("postgresql://"):
        raise RuntimeError(f"Only Postgres is supported for DATABASE_URL. Got: {redact_database_url(url)}")
    return url


def run_migrations_offline() -> None:
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _database_url()
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
