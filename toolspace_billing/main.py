"""
Toolspace Billing - Main FastAPI Application.

Receives Stripe webhooks, reconciles them into per-user billing profiles and
serves entitlement decisions to the tool backends.

Run with:
    uvicorn toolspace_billing.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from toolspace_billing.api.v1.billing import router as billing_router
from toolspace_billing.config import get_settings
from toolspace_billing.constants import API_TITLE, API_VERSION
from toolspace_billing.logging_config import setup_logging
from toolspace_billing.middleware import RequestContextMiddleware
from toolspace_billing.services.billing_service import BillingService
from toolspace_billing.services.billing_store import (
    BillingRepository,
    InMemoryBillingRepository,
    ProfileStore,
    SupabaseBillingRepository,
)
from toolspace_billing.services.entitlements import EntitlementsResolver, load_pricing_config
from toolspace_billing.services.identity_resolver import IdentityResolver
from toolspace_billing.services.reconciliation import ReconciliationRouter
from toolspace_billing.services.stripe_service import StripeService
from toolspace_billing.services.usage_counter import UsageCounter

# Get settings before logging setup so we know the debug flag
settings = get_settings()

setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    pricing = load_pricing_config(settings.billing.pricing_config_path)
    logger.info("pricing_config_loaded", version=pricing.version, plans=len(pricing.plans))

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

    repository: BillingRepository
    if supabase_client is not None:
        repository = SupabaseBillingRepository(
            supabase_client,
            profiles_table=settings.billing.profiles_table,
            usage_table=settings.billing.usage_table,
            events_table=settings.billing.events_table,
        )
    else:
        repository = InMemoryBillingRepository()
        logger.warning("billing_repository_in_memory", detail="Billing state is not persisted")

    stripe_service: StripeService | None = None
    if settings.stripe.secret_key:
        stripe_service = StripeService(
            settings.stripe,
            pricing,
            webhook_tolerance_seconds=settings.billing.webhook_tolerance_seconds,
        )
        logger.info("stripe_configured")
    else:
        logger.warning("stripe_not_configured", detail="Checkout and webhooks will return 503")

    if settings.stripe.secret_key and not settings.stripe.webhook_secret:
        logger.warning("stripe_webhook_secret_missing", detail="All webhooks will be rejected")

    store = ProfileStore(repository)
    resolver = IdentityResolver(store, directory=stripe_service)

    _app.state.supabase = supabase_client
    _app.state.stripe_service = stripe_service
    _app.state.billing_service = BillingService(
        store,
        UsageCounter(repository),
        EntitlementsResolver(pricing),
        settings.billing,
    )
    _app.state.reconciliation_router = ReconciliationRouter(
        store,
        resolver,
        pricing,
        fallback_period_days=settings.billing.checkout_fallback_period_days,
    )

    logger.info("services_initialized")

    yield

    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Stripe webhook reconciliation and plan entitlements for Toolspace. "
        "Keeps one billing profile per user consistent under duplicate and "
        "out-of-order delivery and answers quota and tool-access checks."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

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
app.include_router(billing_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
