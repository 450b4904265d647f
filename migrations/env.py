"""Alembic environment for the hotelbook schema.

Revisions are plain SQL, so there is no metadata to compare against and
autogenerate is not used. Online runs take a short lock_timeout so a
migration never queues behind a long booking transaction.
"""

from __future__ import annotations

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

sys.path.insert(0, os.path.dirname(__file__))

from env_helpers import get_database_url, migration_lock_timeout  # noqa: E402

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)


def _configure(**kwargs) -> None:
    context.configure(target_metadata=None, transaction_per_migration=True, **kwargs)


def run_offline() -> None:
    _configure(url=get_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_engine(
        get_database_url(),
        poolclass=pool.NullPool,
        connect_args={"options": f"-c lock_timeout={migration_lock_timeout()}"},
    )
    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
