"""Alembic environment for the medrefill schema.

The application runs on an async driver; migrations use the matching blocking
driver, resolved by ``medrefill.database.sync_database_url``.  SQLite gets
batch mode so ALTERs on constrained tables are rebuilt as copies.
"""

import os
import sys
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine import make_url
from alembic import context

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from medrefill.config import get_settings
from medrefill.database import Base, sync_database_url
from medrefill.models import *  # noqa: F401,F403 - registers every table on Base.metadata

config = context.config

settings = get_settings()
migration_url = settings.DATABASE_URL_SYNC or sync_database_url(settings.DATABASE_URL)
# configparser treats % as interpolation
config.set_main_option("sqlalchemy.url", migration_url.replace("%", "%%"))

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _configure_kwargs(url) -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.get_backend_name() == "sqlite",
    }


def run_migrations_offline():
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(make_url(url)),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs(connectable.url))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
