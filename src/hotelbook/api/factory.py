"""Builds the hotelbook HTTP app.

Two deployments share one image: ``public`` serves guests, staff and the
Stripe webhook; ``worker`` additionally exposes the /tasks routes that a
scheduler calls to retry refunds and expire upgrade quotes.
"""

from __future__ import annotations

from fastapi import APIRouter, FastAPI, Request, Response

from hotelbook.infra.settings import AppRole, Settings
from hotelbook.observability.correlation import CORRELATION_ID_HEADER, correlation_scope
from hotelbook.observability.logging import configure_logging, get_logger
from hotelbook.observability.redaction import safe_log_context

from .routes import reservations, rooms, tasks, webhooks_stripe

logger = get_logger(__name__)

ROUTERS_BY_ROLE: dict[str, tuple[APIRouter, ...]] = {
    "public": (reservations.router, rooms.router, webhooks_stripe.router),
    "worker": (reservations.router, rooms.router, webhooks_stripe.router, tasks.router),
}


async def _correlation_middleware(request: Request, call_next) -> Response:
    with correlation_scope(request.headers.get(CORRELATION_ID_HEADER)) as cid:
        response = await call_next(request)
        response.headers[CORRELATION_ID_HEADER] = cid
        return response


def create_app(role: AppRole | None = None) -> FastAPI:
    """Create the app for ``role``; APP_ROLE decides when it is omitted.

    Raises:
        RuntimeError: If APP_ROLE holds an unknown role.
    """
    if role is None:
        role = Settings.from_env().app_role

    configure_logging()

    app = FastAPI(title="Hotelbook", docs_url=None, redoc_url=None)
    app.middleware("http")(_correlation_middleware)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "role": role}

    for router in ROUTERS_BY_ROLE[role]:
        app.include_router(router)

    logger.info(
        "app created",
        extra={"extra_fields": safe_log_context(role=role, routers=len(ROUTERS_BY_ROLE[role]))},
    )
    return app
