from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

import redis as redis_lib
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import JSONResponse, Response

from billing_engine.api.admin import router as admin_router
from billing_engine.api.billing import router as billing_router
from billing_engine.api.webhooks import router as webhooks_router
from billing_engine.config import settings, validate_settings
from billing_engine.db import SessionLocal
from billing_engine.errors import register_error_handlers
from billing_engine.logging import configure_logging
from billing_engine.middleware.rate_limit import RateLimitMiddleware
from billing_engine.observability import ObservabilityMiddleware
from billing_engine.services.payment_gateway import stripe_gateway
from billing_engine.telemetry import setup_otel

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[arg-type]
    # ── Startup ──────────────────────────────────────────
    for warning in validate_settings(settings):
        logger.warning("Config warning: %s", warning)
    logger.info("Billing engine started (pid=%s)", os.getpid())
    yield

    # ── Shutdown ─────────────────────────────────────────
    logger.info("Billing engine shutting down")


app = FastAPI(title="Billing Engine API", lifespan=lifespan)

configure_logging()
setup_otel(app)

# ── Middleware (order matters: last added = first executed) ──
register_error_handlers(app)

cors_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id", "X-RateLimit-Remaining"],
    )

app.add_middleware(RateLimitMiddleware)
app.add_middleware(ObservabilityMiddleware)


def _include_api_router(router: Any) -> None:
    app.include_router(router)
    app.include_router(router, prefix="/api/v1")


_include_api_router(billing_router)
_include_api_router(admin_router)
_include_api_router(webhooks_router)


# ── Health Checks ────────────────────────────────────────


@app.get("/health")
def health_check() -> dict[str, str]:
    """Liveness check, ok whenever the process is running."""
    return {"status": "ok"}


@app.get("/health/ready")
def readiness_check() -> JSONResponse:
    """Readiness: database, Redis and processor credentials."""
    checks: dict[str, str] = {}

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as exc:
        checks["database"] = f"error: {exc.__class__.__name__}"
    finally:
        db.close()

    try:
        client = redis_lib.Redis.from_url(
            settings.redis_url, decode_responses=True, socket_timeout=2
        )
        client.ping()
        checks["redis"] = "ok"
    except redis_lib.RedisError as exc:
        checks["redis"] = f"error: {exc.__class__.__name__}"

    checks["payment_processor"] = (
        "ok" if stripe_gateway.is_webhook_configured() and stripe_gateway.is_configured()
        else "not_configured"
    )

    all_ok = all(v == "ok" for v in checks.values())
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"status": "ok" if all_ok else "degraded", "checks": checks},
    )


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
