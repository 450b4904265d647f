"""psycopg2 plumbing shared by the Postgres catalog, claim index and ledger.

Every repository takes a ConnectionFactory and opens one short transaction
per operation with ``txn``; nothing holds a connection between calls.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Sequence

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor

ConnectionFactory = Callable[[], PgConnection]

APPLICATION_NAME = "hotelbook"


def _session_options(env) -> str:
    # Shows up in pg_stat_activity; the timeout bounds a stuck booking query.
    options = f"-c application_name={APPLICATION_NAME}"
    timeout = env.get("DB_STATEMENT_TIMEOUT_MS", "").strip()
    if timeout:
        if not timeout.isdigit():
            raise RuntimeError(f"DB_STATEMENT_TIMEOUT_MS must be an integer, got {timeout!r}")
        options += f" -c statement_timeout={timeout}"
    return options


def get_conn(dsn: str | None = None) -> PgConnection:
    """Open a connection to ``dsn``, or to DATABASE_URL when none is given.

    Raises:
        RuntimeError: Neither a DSN nor DATABASE_URL is available.
    """
    dsn = dsn or os.environ.get("DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL environment variable not set")
    return psycopg2.connect(dsn, options=_session_options(os.environ))


@contextmanager
def txn(conn_factory: ConnectionFactory | None = None) -> Iterator[PgCursor]:
    """Yield a cursor inside one transaction on a connection of its own.

    The transaction commits when the block exits normally and rolls back when
    it raises; the connection is closed either way.
    """
    conn = (conn_factory or get_conn)()
    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetchone(cur: PgCursor, query: str, params: Sequence[Any] | None = None) -> tuple[Any, ...] | None:
    cur.execute(query, params)
    return cur.fetchone()


def fetchall(cur: PgCursor, query: str, params: Sequence[Any] | None = None) -> list[tuple[Any, ...]]:
    cur.execute(query, params)
    return cur.fetchall()
