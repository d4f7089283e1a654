from logging.config import fileConfig
import os
import sys

from sqlalchemy import engine_from_config
from sqlalchemy import pool

from alembic import context

# Add backend directory to path so siteproof modules are importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from siteproof.models.base import Base  # noqa: E402
# Import all models so they are registered with Base.metadata
import siteproof.models.captured_form  # noqa: F401, E402

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Use the app's metadata for autogenerate support
target_metadata = Base.metadata


def _sync_url(url: str) -> str:
    """Migrations run on the blocking driver; the app itself uses aiosqlite."""
    return url.replace("+aiosqlite", "")


# Override sqlalchemy.url from environment if LOCAL_DB_URL is set
database_url = os.environ.get("LOCAL_DB_URL")
if database_url:
    config.set_main_option("sqlalchemy.url", _sync_url(database_url))
elif config.get_main_option("sqlalchemy.url"):
    config.set_main_option("sqlalchemy.url", _sync_url(config.get_main_option("sqlalchemy.url")))


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,  # SQLite cannot ALTER most constraints in place
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
