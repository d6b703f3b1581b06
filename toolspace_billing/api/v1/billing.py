"""Billing API endpoints."""

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from toolspace_billing.auth import CurrentUser, RegisteredUser
from toolspace_billing.errors import SignatureError, TransientStoreError
from toolspace_billing.models.billing import (
    PAID_PLANS,
    BillingProfile,
    BillingStatus,
    EntitlementDecision,
    PlanId,
)
from toolspace_billing.services.billing_service import BillingService
from toolspace_billing.services.reconciliation import ReconciliationRouter
from toolspace_billing.services.stripe_service import StripeService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Checkout session request."""

    plan_id: PlanId = Field(description="Requested paid plan")
    success_url: str | None = Field(default=None, description="Optional override URL")
    cancel_url: str | None = Field(default=None, description="Optional override URL")


class CheckoutResponse(BaseModel):
    """Checkout session response."""

    checkout_url: str
    session_id: str


class PortalRequest(BaseModel):
    """Customer portal request."""

    return_url: str | None = None


class PortalResponse(BaseModel):
    """Customer portal response."""

    portal_url: str


class ManualPlanRequest(BaseModel):
    """Direct plan change, used in development and support flows."""

    user_id: str
    plan_id: PlanId


class WebhookResponse(BaseModel):
    """Stripe webhook processing response."""

    received: bool
    processed: bool
    duplicate: bool = False


def _get_billing_service(request: Request) -> BillingService:
    service = getattr(request.app.state, "billing_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return service


def _get_reconciliation_router(request: Request) -> ReconciliationRouter:
    service = getattr(request.app.state, "reconciliation_router", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return service


def _get_stripe_service(request: Request) -> StripeService:
    service = getattr(request.app.state, "stripe_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Stripe is not configured")
    return service


@router.get("/status", response_model=BillingStatus)
async def billing_status(request: Request, user: CurrentUser) -> BillingStatus:
    """Return computed entitlement status for the authenticated user."""
    service = _get_billing_service(request)
    return await service.get_status(user.id)


@router.get("/entitlements/heavy-op", response_model=EntitlementDecision)
async def heavy_op_entitlement(request: Request, user: CurrentUser) -> EntitlementDecision:
    """Whether the user may start another heavy operation today."""
    service = _get_billing_service(request)
    return await service.check_heavy_op(user.id)


@router.get("/entitlements/tools/{tool_id}", response_model=EntitlementDecision)
async def tool_entitlement(
    tool_id: str, request: Request, user: CurrentUser
) -> EntitlementDecision:
    """Whether the user's plan unlocks a tool."""
    service = _get_billing_service(request)
    return await service.check_tool_access(user.id, tool_id)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    user: RegisteredUser,
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a paid plan."""
    if body.plan_id not in PAID_PLANS:
        raise HTTPException(status_code=400, detail="Invalid plan for checkout")

    billing_service = _get_billing_service(request)
    stripe_service = _get_stripe_service(request)
    profile = await billing_service.get_profile(user.id)
    customer_id = profile.external_customer_id

    if not customer_id:
        customer_id = await stripe_service.create_customer(user_id=user.id, email=user.email)

        def link_customer(current: BillingProfile | None) -> BillingProfile:
            linked = current or profile
            if linked.external_customer_id is None:
                linked.external_customer_id = customer_id
                linked.updated_at = billing_service.now_provider()
            return linked

        profile, _ = await billing_service.store.merge_profile(user.id, link_customer)
        customer_id = profile.external_customer_id
        logger.info("stripe_customer_created", user_id=user.id, customer_id=customer_id)

    try:
        checkout = await stripe_service.create_checkout_session(
            user_id=user.id,
            plan_id=body.plan_id,
            customer_id=customer_id,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(
        "stripe_checkout_created",
        user_id=user.id,
        plan_id=body.plan_id.value,
        session_id=checkout["id"],
    )
    return CheckoutResponse(checkout_url=checkout["url"], session_id=checkout["id"])


@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(
    body: PortalRequest,
    request: Request,
    user: RegisteredUser,
) -> PortalResponse:
    """Create a Stripe Customer Portal session."""
    billing_service = _get_billing_service(request)
    stripe_service = _get_stripe_service(request)
    profile = await billing_service.get_profile(user.id)
    if not profile.external_customer_id:
        raise HTTPException(status_code=400, detail="No Stripe customer for this user")

    portal = await stripe_service.create_portal_session(
        customer_id=profile.external_customer_id,
        return_url=body.return_url,
    )
    return PortalResponse(portal_url=portal["url"])


@router.post("/manual-plan", response_model=BillingProfile)
async def manual_plan_change(
    body: ManualPlanRequest,
    request: Request,
    user: CurrentUser,
) -> BillingProfile:
    """Set the caller's plan without going through Stripe."""
    billing_service = _get_billing_service(request)
    if not billing_service.config.manual_plan_changes_enabled:
        raise HTTPException(status_code=403, detail="Manual plan changes are disabled")
    if body.user_id != user.id:
        raise HTTPException(status_code=403, detail="Can only update your own plan")

    reconciliation = _get_reconciliation_router(request)
    try:
        return await reconciliation.apply_manual_plan_change(
            user.id, body.plan_id, actor_id=user.id
        )
    except TransientStoreError as e:
        logger.error("billing_manual_plan_change_failed", user_id=user.id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to update plan")


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    """Verify, reconcile and journal a Stripe webhook event."""
    stripe_service = _get_stripe_service(request)
    reconciliation = _get_reconciliation_router(request)
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_event(payload, stripe_signature)
    except SignatureError as e:
        logger.warning("stripe_webhook_signature_rejected", error=str(e))
        return PlainTextResponse(f"Webhook Error: {e}", status_code=400)

    structlog.contextvars.bind_contextvars(event_id=event.id, event_type=event.type)
    try:
        result = await reconciliation.process(event)
    except TransientStoreError as e:
        logger.error("stripe_webhook_store_failed", error=str(e))
        return PlainTextResponse("Webhook processing failed", status_code=500)
    except Exception as e:
        logger.exception("stripe_webhook_processing_failed", error=str(e))
        return PlainTextResponse("Webhook processing failed", status_code=500)

    logger.info(
        "stripe_webhook_processed",
        processed=result.processed,
        duplicate=result.duplicate,
        user_id=result.user_id,
    )
    return WebhookResponse(received=True, processed=result.processed, duplicate=result.duplicate)
