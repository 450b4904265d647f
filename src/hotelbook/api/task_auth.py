"""Authentication for worker task endpoints.

The scheduler calls /tasks/* with the shared secret from
INTERNAL_TASK_SECRET in the X-Internal-Task-Secret header. Fail closed: with
no secret configured, every task request is rejected.
"""

from __future__ import annotations

import hmac
import os

from fastapi import Request

from hotelbook.observability.logging import get_logger
from hotelbook.observability.redaction import safe_log_context

logger = get_logger(__name__)

TASK_SECRET_HEADER = "X-Internal-Task-Secret"


def verify_task_auth(request: Request) -> bool:
    internal_secret = os.environ.get("INTERNAL_TASK_SECRET", "")
    if not internal_secret:
        logger.error(
            "INTERNAL_TASK_SECRET not configured - fail closed",
            extra={"extra_fields": safe_log_context(reason="missing_secret_env")},
        )
        return False

    request_secret = request.headers.get(TASK_SECRET_HEADER, "")
    if not request_secret or not hmac.compare_digest(request_secret, internal_secret):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(reason="bad_task_secret")},
        )
        return False
    return True
