"""
Entitlements API - Main FastAPI Application.

Serves entitlement snapshots, feature check/consume and the Stripe
checkout/webhook flow that keeps subscription and token state in sync.

Run with:
    uvicorn entitlements.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from entitlements.api.v1.features import router as features_router
from entitlements.api.v1.subscription import router as subscription_router
from entitlements.api.v1.tokens import router as tokens_router
from entitlements.api.v1.webhooks import router as webhooks_router
from entitlements.config import Settings, get_settings
from entitlements.constants import API_TITLE, API_VERSION
from entitlements.errors import register_exception_handlers
from entitlements.logging_config import setup_logging
from entitlements.middleware import RequestContextMiddleware
from entitlements.services.entitlement_service import (
    EntitlementRepository,
    EntitlementService,
    InMemoryEntitlementRepository,
    SupabaseEntitlementRepository,
)
from entitlements.services.stripe_service import StripeService

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


def build_repository(
    app_settings: Settings, supabase_client: AsyncSupabaseClient | None
) -> EntitlementRepository:
    """Supabase-backed storage when a client is available, in-memory otherwise."""
    if supabase_client is None:
        logger.warning(
            "entitlement_repository_in_memory",
            detail="State is lost on restart; configure Supabase for production",
        )
        return InMemoryEntitlementRepository()
    return SupabaseEntitlementRepository(
        supabase_client,
        subscriptions_table=app_settings.subscriptions_table,
        usage_table=app_settings.usage_table,
        wallets_table=app_settings.wallets_table,
        webhook_events_table=app_settings.webhook_events_table,
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")

    _app.state.supabase = supabase_client

    repository = build_repository(settings, supabase_client)
    _app.state.entitlement_service = EntitlementService(repository, settings.entitlements)

    stripe_service: StripeService | None = None
    if settings.stripe.secret_key:
        stripe_service = StripeService(settings.stripe)
        logger.info("stripe_configured")
    else:
        logger.warning("stripe_not_configured", detail="Checkout and webhooks will return 503")
    _app.state.stripe_service = stripe_service

    logger.info("services_initialized", entitlements_enabled=settings.entitlements.enabled)

    yield

    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Entitlement snapshots, feature checks and usage consumption for the "
        "free and Pro tiers, with Stripe subscriptions and token packs."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

register_exception_handlers(app)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(subscription_router, prefix="/api")
app.include_router(tokens_router, prefix="/api")
app.include_router(features_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Entitlement and usage gating API",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
