"""Environment lookups for Alembic migrations.

Kept apart from env.py so they can be tested without triggering
alembic.context at import time.
"""

from __future__ import annotations

import os
import re
from typing import Mapping

_DRIVER_PREFIXES = ("postgres://", "postgresql://")
_TIMEOUT_PATTERN = re.compile(r"^\d+(ms|s|min)?$")


def to_sqlalchemy_url(url: str) -> str:
    """Point a libpq-style URL at the psycopg2 driver; other URLs pass through."""
    for prefix in _DRIVER_PREFIXES:
        if url.startswith(prefix):
            return "postgresql+psycopg2://" + url[len(prefix):]
    return url


def get_database_url(env: Mapping[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    url = env.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    return to_sqlalchemy_url(url)


def migration_lock_timeout(env: Mapping[str, str] | None = None) -> str:
    """Postgres lock_timeout for migration sessions, from MIGRATION_LOCK_TIMEOUT (default 5s)."""
    env = os.environ if env is None else env
    raw = env.get("MIGRATION_LOCK_TIMEOUT", "5s").strip()
    if not _TIMEOUT_PATTERN.match(raw):
        raise RuntimeError(f"MIGRATION_LOCK_TIMEOUT must look like '5s' or '500ms', got {raw!r}")
    return raw
