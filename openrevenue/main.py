"""
OpenRevenue API
===============

Application factory: logging, lifespan, middleware, error handlers
and router mounting.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from openrevenue.config import settings
from openrevenue.db.session import init_db, close_db
from openrevenue.services.cache import init_redis, close_redis
from openrevenue.core.errors import setup_exception_handlers

VERSION = "0.1.0"


# =============================================================================
# New Relic custom attributes (raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Tags the current New Relic transaction with route, method, status,
    latency and, once the API key has resolved, the tenant app id.

    Written as raw ASGI so the endpoint runs in the caller's task and
    the agent's contextvars reach Redis, database and store spans.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        started = time.perf_counter()
        response_status = {"code": 500}

        async def capture_status(message):
            if message["type"] == "http.response.start":
                response_status["code"] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, capture_status)
        finally:
            if newrelic.agent.current_transaction():
                self._annotate(scope, response_status["code"], time.perf_counter() - started)

    @staticmethod
    def _annotate(scope, status_code: int, elapsed: float) -> None:
        # Templated path groups /v1/subscribers/{app_user_id} into one route
        route = scope.get("route")
        attributes = [
            ("http.method", scope.get("method", "")),
            ("http.route", route.path if route else scope.get("path", "unknown")),
            ("http.status_code", status_code),
            ("http.duration_ms", round(elapsed * 1000, 2)),
            ("environment", settings.ENVIRONMENT),
        ]

        # request.state of the tenant dependency lives in scope["state"]
        state = scope.get("state")
        if isinstance(state, dict) and state.get("tenant_app_id"):
            attributes.append(("tenant.app_id", state["tenant_app_id"]))

        newrelic.agent.add_custom_attributes(attributes)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the database and Redis on startup; close them on shutdown."""
    print("🚀 OpenRevenue API starting")

    if not settings.admin_configured:
        print("⚠️  ADMIN_PASSWORD is not set; /admin answers 500 until it is")

    # A dead dependency must not block /health
    try:
        await init_db()
    except Exception as e:
        print(f"⚠️ Database unavailable at startup: {e}")

    try:
        await init_redis()
    except Exception as e:
        print(f"⚠️ Redis unavailable at startup: {e}; serving without cache")

    yield

    print("🛑 OpenRevenue API stopping")
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="OpenRevenue API",
    description="""
## In-app purchase and subscription backend

Verifies App Store and Play Store purchases, keeps one authoritative
subscription/entitlement state per subscriber, and serves it as
RevenueCat-compatible customer info.

### Authentication
- `/v1/*`: tenant API key (`Authorization: Bearer <key>` or `X-API-Key`)
- `/admin/*`: HTTP Basic (`ADMIN_USERNAME` / `ADMIN_PASSWORD`)

### Errors
Every error body is `{"error", "message", "resolution", "details"?}`.
    """,
    version=VERSION,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"description": "Invalid request or receipt rejected"},
        401: {"description": "Missing credentials"},
        403: {"description": "Invalid API key"},
        500: {"description": "Server misconfiguration or internal error"},
        501: {"description": "Endpoint not implemented"},
        503: {"description": "Store temporarily unavailable"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Transaction attributes for New Relic
app.add_middleware(NewRelicTransactionMiddleware)

# Error envelope for every failure path
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    return {
        "status": "healthy",
        "version": VERSION,
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Service banner."""
    return {
        "name": "OpenRevenue API",
        "version": VERSION,
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from openrevenue.api.v1 import health, receipts, subscribers, webhooks
app.include_router(health.router, prefix="/v1", tags=["Health"])
app.include_router(receipts.router, prefix="/v1/receipts", tags=["Receipts"])
app.include_router(subscribers.router, prefix="/v1/subscribers", tags=["Subscribers"])
app.include_router(webhooks.router, prefix="/v1/webhooks", tags=["Webhooks"])

# Admin
from openrevenue.api.v1 import admin
app.include_router(admin.router, prefix="/admin", tags=["Admin"])

# Must stay last: answers every other /v1 path
app.include_router(health.fallback_router, prefix="/v1")
