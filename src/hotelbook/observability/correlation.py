"""Correlation ids tying together the log lines and ledger events of one request.

The id arrives in the X-Correlation-ID header (or is minted here), lives in a
ContextVar for the duration of the request or task, and is stamped on every
JSON log line and on outbox events appended by the lifecycle.
"""

from __future__ import annotations

import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Caller-supplied ids end up in logs and in the outbox table.
MAX_CORRELATION_ID_LENGTH = 64
_ALLOWED = re.compile(r"^[A-Za-z0-9._:\-]+$")

_current: ContextVar[str] = ContextVar("hotelbook_correlation_id", default="")


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def accept_correlation_id(raw: str | None) -> str:
    """Return the caller's id if it is usable, otherwise a fresh one."""
    if raw:
        candidate = raw.strip()
        if len(candidate) <= MAX_CORRELATION_ID_LENGTH and _ALLOWED.match(candidate):
            return candidate
    return generate_correlation_id()


def get_correlation_id() -> str:
    """Current correlation id, or an empty string outside a request."""
    return _current.get()


def set_correlation_id(cid: str) -> Token[str]:
    return _current.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    _current.reset(token)


@contextmanager
def correlation_scope(raw: str | None = None) -> Iterator[str]:
    """Bind a correlation id for the enclosed block and yield it.

    ``raw`` is typically the incoming header value; it is validated with
    accept_correlation_id, so a missing or malformed value gets a new id.
    """
    cid = accept_correlation_id(raw)
    token = set_correlation_id(cid)
    try:
        yield cid
    finally:
        reset_correlation_id(token)
