from logging.config import fileConfig
import os
import re
import sys
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlalchemy import text

from dotenv import load_dotenv

# Models live at the repository root
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

load_dotenv()

database_url = os.getenv("DATABASE_URL")
if database_url:
    # Migrations run on the sync driver; the app uses asyncpg
    sync_database_url = database_url.replace("postgresql+asyncpg://", "postgresql://")
    config.set_main_option("sqlalchemy.url", sync_database_url)

try:
    from sqlalchemy.dialects.postgresql.base import PGDialect

    _original_get_server_version_info = PGDialect._get_server_version_info

    def _cockroach_safe_server_version(self, connection):
        version_str = connection.scalar(text("SELECT version()"))
        if isinstance(version_str, bytes):
            version_str = version_str.decode("utf-8", errors="ignore")

        if version_str and "CockroachDB" in version_str:
            if re.search(r"v(\d+)\.(\d+)\.(\d+)", version_str):
                return (13, 0)

        return _original_get_server_version_info(self, connection)

    PGDialect._get_server_version_info = _cockroach_safe_server_version
except ImportError:
    pass

from database import Base  # noqa: E402

# Mystery box models, for 'autogenerate' support
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit migration SQL to the script output without a DB connection."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection, target_metadata=target_metadata
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
