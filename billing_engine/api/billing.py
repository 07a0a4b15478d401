from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from billing_engine.api.deps import (
    BillingContext,
    get_billing_context,
    get_checkout,
    get_db,
    get_lifecycle,
    get_usage_ledger,
)
from billing_engine.models.billing import ChangeInitiator, Subscription
from billing_engine.schemas.billing import (
    CheckoutRequest,
    CheckoutSessionRead,
    InvoiceRead,
    PortalRequest,
    PortalSessionRead,
    PricingPlanRead,
    SubscriptionCancelRequest,
    SubscriptionChangeRead,
    SubscriptionCreateRequest,
    SubscriptionDetail,
    SubscriptionResult,
    SubscriptionUpdateRequest,
    UsageRecordRead,
    UsageReportRequest,
    UsageSummary,
)
from billing_engine.schemas.common import Envelope, ListResponse
from billing_engine.services import billing as billing_service
from billing_engine.services.billing.checkout import CheckoutSessions
from billing_engine.services.billing.subscriptions import SubscriptionLifecycle
from billing_engine.services.billing.usage import UsageLedger
from billing_engine.services.response import list_response, success_response

router = APIRouter(prefix="/billing", tags=["billing"])


def _current_subscription(
    db: Session, ctx: BillingContext, lifecycle: SubscriptionLifecycle
) -> Subscription:
    customer = billing_service.customers.require_for_organization(db, ctx.organization_id)
    return lifecycle.require_current(db, customer.id)


# ── Plans & hosted pages ─────────────────────────────────


@router.get("/plans", response_model=Envelope[list[PricingPlanRead]])
def list_plans(
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    plans = billing_service.pricing_plans.list_visible(db)
    return success_response([PricingPlanRead.model_validate(plan) for plan in plans])


@router.post("/checkout", response_model=Envelope[CheckoutSessionRead])
def create_checkout(
    payload: CheckoutRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
    checkout: CheckoutSessions = Depends(get_checkout),
):
    session = checkout.create_checkout_session(
        db,
        ctx.organization_id,
        ctx.email,
        payload.pricing_plan_id,
        success_url=payload.success_url,
        cancel_url=payload.cancel_url,
        billing_cycle=payload.billing_cycle,
        trial_days=payload.trial_days,
        promotion_code=payload.promotion_code,
        name=ctx.name,
    )
    return success_response(session)


@router.post("/portal", response_model=Envelope[PortalSessionRead])
def create_portal(
    payload: PortalRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
    checkout: CheckoutSessions = Depends(get_checkout),
):
    session = checkout.create_billing_portal_session(
        db, ctx.organization_id, ctx.email, payload.return_url, name=ctx.name
    )
    return success_response(session)


# ── Subscription ─────────────────────────────────────────


@router.get("/subscription", response_model=Envelope[SubscriptionDetail | None])
def get_subscription(
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    customer = billing_service.customers.get_by_organization(db, ctx.organization_id)
    subscription = lifecycle.get_current(db, customer.id) if customer else None
    if subscription is None:
        return success_response(None)
    return success_response(lifecycle.detail(db, subscription))


@router.post(
    "/subscription",
    response_model=Envelope[SubscriptionResult],
    status_code=status.HTTP_201_CREATED,
)
def create_subscription(
    payload: SubscriptionCreateRequest,
    response: Response,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    result = lifecycle.create(
        db,
        ctx.organization_id,
        ctx.email,
        payload.pricing_plan_id,
        billing_cycle=payload.billing_cycle,
        name=ctx.name,
        trial_days=payload.trial_days,
        payment_method_id=payload.payment_method_id,
        initiated_by=ChangeInitiator.customer,
    )
    if result.status == "pending":
        response.status_code = status.HTTP_202_ACCEPTED
    return success_response(result)


@router.patch("/subscription", response_model=Envelope[SubscriptionResult])
def update_subscription(
    payload: SubscriptionUpdateRequest,
    response: Response,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    subscription = _current_subscription(db, ctx, lifecycle)
    result = lifecycle.update(db, subscription.id, payload, initiated_by=ChangeInitiator.customer)
    if result.status == "pending":
        response.status_code = status.HTTP_202_ACCEPTED
    return success_response(result)


@router.post("/subscription/cancel", response_model=Envelope[SubscriptionResult])
def cancel_subscription(
    payload: SubscriptionCancelRequest,
    response: Response,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    subscription = _current_subscription(db, ctx, lifecycle)
    if payload.immediately:
        result = lifecycle.cancel_immediately(
            db, subscription.id, reason=payload.reason, initiated_by=ChangeInitiator.customer
        )
    else:
        result = lifecycle.set_cancel_at_period_end(
            db,
            subscription.id,
            True,
            reason=payload.reason,
            initiated_by=ChangeInitiator.customer,
        )
    if result.status == "pending":
        response.status_code = status.HTTP_202_ACCEPTED
    return success_response(result)


@router.post("/subscription/reactivate", response_model=Envelope[SubscriptionResult])
def reactivate_subscription(
    response: Response,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    subscription = _current_subscription(db, ctx, lifecycle)
    result = lifecycle.reactivate(db, subscription.id, initiated_by=ChangeInitiator.customer)
    if result.status == "pending":
        response.status_code = status.HTTP_202_ACCEPTED
    return success_response(result)


@router.get(
    "/subscription/history",
    response_model=Envelope[ListResponse[SubscriptionChangeRead]],
)
def subscription_history(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    subscription = _current_subscription(db, ctx, lifecycle)
    items, total = lifecycle.history(db, subscription.id, limit=limit, offset=offset)
    return success_response(
        list_response(
            [SubscriptionChangeRead.model_validate(item) for item in items],
            limit,
            offset,
            total=total,
        )
    )


# ── Usage ────────────────────────────────────────────────


@router.get("/usage", response_model=Envelope[UsageSummary])
def get_usage(
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
    usage: UsageLedger = Depends(get_usage_ledger),
):
    subscription = _current_subscription(db, ctx, lifecycle)
    return success_response(usage.summary(db, subscription))


@router.post(
    "/usage",
    response_model=Envelope[UsageRecordRead],
    status_code=status.HTTP_201_CREATED,
)
def report_usage(
    payload: UsageReportRequest,
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
    usage: UsageLedger = Depends(get_usage_ledger),
):
    subscription = _current_subscription(db, ctx, lifecycle)
    record = usage.report_usage(
        db,
        subscription.id,
        payload.usage_type,
        payload.quantity,
        timestamp=payload.timestamp,
        idempotency_key=payload.idempotency_key,
    )
    return success_response(UsageRecordRead.model_validate(record))


# ── Invoices ─────────────────────────────────────────────


@router.get("/invoices", response_model=Envelope[ListResponse[InvoiceRead]])
def list_invoices(
    status_filter: str | None = Query(default=None, alias="status"),
    order_by: str = Query(default="invoice_date"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    ctx: BillingContext = Depends(get_billing_context),
):
    customer = billing_service.customers.get_by_organization(db, ctx.organization_id)
    if customer is None:
        return success_response(list_response([], limit, offset, total=0))
    result = billing_service.invoices.list_response(
        db,
        customer.id,
        status_filter,
        order_by,
        order_dir,
        limit=limit,
        offset=offset,
    )
    result["items"] = [InvoiceRead.model_validate(item) for item in result["items"]]
    return success_response(result)
