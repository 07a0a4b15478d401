from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from billing_engine.api.deps import (
    BillingContext,
    get_db,
    get_enterprise_contracts,
    get_lifecycle,
    get_retry_scheduler,
    require_admin,
)
from billing_engine.models.billing import ChangeInitiator
from billing_engine.schemas.billing import (
    AnalyticsAggregateRequest,
    AnalyticsSummaryRead,
    ContractRenewalRequest,
    DashboardAnalytics,
    EnterpriseContractCreate,
    EnterpriseContractRead,
    EnterpriseContractUpdate,
    InvoiceRead,
    RetryJobRead,
    RetryOutcome,
    RetryStatistics,
    RetryStatus,
    SubscriptionCancelRequest,
    SubscriptionChangeRead,
    SubscriptionDetail,
    SubscriptionResult,
    VolumeDiscountRequest,
    VolumeDiscountResult,
    WebhookEventRead,
)
from billing_engine.schemas.common import Envelope, ListResponse
from billing_engine.services import billing as billing_service
from billing_engine.services.billing.enterprise import EnterpriseContracts
from billing_engine.services.billing.retries import PaymentRetryScheduler
from billing_engine.services.billing.subscriptions import SubscriptionLifecycle
from billing_engine.services.response import list_response, success_response

router = APIRouter(prefix="/admin/billing", tags=["billing-admin"])


# ── Invoices & dunning ───────────────────────────────────


@router.get("/invoices/{invoice_id}", response_model=Envelope[InvoiceRead])
def get_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
):
    invoice = billing_service.invoices.get(db, invoice_id)
    return success_response(InvoiceRead.model_validate(invoice))


@router.post("/invoices/{invoice_id}/retry", response_model=Envelope[RetryOutcome])
def retry_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    retries: PaymentRetryScheduler = Depends(get_retry_scheduler),
):
    return success_response(retries.manual_retry(db, invoice_id))


@router.get("/invoices/{invoice_id}/retry-status", response_model=Envelope[RetryStatus])
def invoice_retry_status(
    invoice_id: str,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    retries: PaymentRetryScheduler = Depends(get_retry_scheduler),
):
    return success_response(retries.retry_status(db, invoice_id))


@router.get("/invoices/{invoice_id}/retry-jobs", response_model=Envelope[list[RetryJobRead]])
def invoice_retry_jobs(
    invoice_id: str,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
):
    invoice = billing_service.invoices.get(db, invoice_id)
    jobs = sorted(invoice.retry_jobs, key=lambda job: job.attempt_number)
    return success_response([RetryJobRead.model_validate(job) for job in jobs])


@router.get("/retries/stats", response_model=Envelope[RetryStatistics])
def retry_statistics(
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    retries: PaymentRetryScheduler = Depends(get_retry_scheduler),
):
    return success_response(retries.statistics(db))


# ── Subscriptions ────────────────────────────────────────


@router.get("/subscriptions/{subscription_id}", response_model=Envelope[SubscriptionDetail])
def get_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    subscription = lifecycle.get(db, subscription_id)
    return success_response(lifecycle.detail(db, subscription))


@router.get(
    "/subscriptions/{subscription_id}/history",
    response_model=Envelope[ListResponse[SubscriptionChangeRead]],
)
def subscription_history(
    subscription_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    subscription = lifecycle.get(db, subscription_id)
    items, total = lifecycle.history(db, subscription.id, limit=limit, offset=offset)
    return success_response(
        list_response(
            [SubscriptionChangeRead.model_validate(item) for item in items],
            limit,
            offset,
            total=total,
        )
    )


@router.post(
    "/subscriptions/{subscription_id}/cancel", response_model=Envelope[SubscriptionResult]
)
def cancel_subscription(
    subscription_id: str,
    payload: SubscriptionCancelRequest,
    response: Response,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
):
    if payload.immediately:
        result = lifecycle.cancel_immediately(
            db, subscription_id, reason=payload.reason, initiated_by=ChangeInitiator.admin
        )
    else:
        result = lifecycle.set_cancel_at_period_end(
            db, subscription_id, True, reason=payload.reason, initiated_by=ChangeInitiator.admin
        )
    if result.status == "pending":
        response.status_code = status.HTTP_202_ACCEPTED
    return success_response(result)


# ── Analytics ────────────────────────────────────────────


@router.post("/analytics/aggregate", response_model=Envelope[AnalyticsSummaryRead])
def aggregate_analytics(
    payload: AnalyticsAggregateRequest,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
):
    summary = billing_service.analytics.aggregate(db, payload.period_type, payload.period_start)
    return success_response(AnalyticsSummaryRead.model_validate(summary))


@router.get("/analytics/dashboard", response_model=Envelope[DashboardAnalytics])
def analytics_dashboard(
    days: int = Query(default=30, ge=1, le=365),
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
):
    return success_response(billing_service.analytics.dashboard(db, days=days))


# ── Enterprise contracts ─────────────────────────────────


@router.post(
    "/enterprise/contracts",
    response_model=Envelope[EnterpriseContractRead],
    status_code=status.HTTP_201_CREATED,
)
def create_enterprise_contract(
    payload: EnterpriseContractCreate,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    contracts: EnterpriseContracts = Depends(get_enterprise_contracts),
):
    contract = contracts.create(db, payload)
    return success_response(EnterpriseContractRead.model_validate(contract))


@router.get(
    "/enterprise/contracts/expiring",
    response_model=Envelope[list[EnterpriseContractRead]],
)
def expiring_enterprise_contracts(
    days_ahead: int = Query(default=30, ge=1, le=365),
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    contracts: EnterpriseContracts = Depends(get_enterprise_contracts),
):
    items = contracts.list_expiring(db, days_ahead=days_ahead)
    return success_response([EnterpriseContractRead.model_validate(item) for item in items])


@router.get(
    "/enterprise/contracts/{contract_id}", response_model=Envelope[EnterpriseContractRead]
)
def get_enterprise_contract(
    contract_id: str,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    contracts: EnterpriseContracts = Depends(get_enterprise_contracts),
):
    contract = contracts.get(db, contract_id)
    return success_response(EnterpriseContractRead.model_validate(contract))


@router.patch(
    "/enterprise/contracts/{contract_id}", response_model=Envelope[EnterpriseContractRead]
)
def update_enterprise_contract(
    contract_id: str,
    payload: EnterpriseContractUpdate,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    contracts: EnterpriseContracts = Depends(get_enterprise_contracts),
):
    contract = contracts.update(db, contract_id, payload)
    return success_response(EnterpriseContractRead.model_validate(contract))


@router.post(
    "/enterprise/contracts/{contract_id}/renew",
    response_model=Envelope[EnterpriseContractRead],
)
def renew_enterprise_contract(
    contract_id: str,
    payload: ContractRenewalRequest,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    contracts: EnterpriseContracts = Depends(get_enterprise_contracts),
):
    contract = contracts.renew(db, contract_id, payload)
    return success_response(EnterpriseContractRead.model_validate(contract))


@router.post(
    "/invoices/{invoice_id}/volume-discount",
    response_model=Envelope[VolumeDiscountResult],
)
def apply_volume_discount(
    invoice_id: str,
    payload: VolumeDiscountRequest,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
    contracts: EnterpriseContracts = Depends(get_enterprise_contracts),
):
    return success_response(contracts.apply_volume_discount(db, invoice_id, payload.quantity))


# ── Webhook events ───────────────────────────────────────


@router.get("/webhook-events", response_model=Envelope[ListResponse[WebhookEventRead]])
def list_webhook_events(
    provider: str | None = None,
    event_type: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
):
    result = billing_service.webhook_events.list_response(
        db,
        provider,
        event_type,
        status,
        order_by,
        order_dir,
        limit=limit,
        offset=offset,
    )
    result["items"] = [WebhookEventRead.model_validate(item) for item in result["items"]]
    return success_response(result)


@router.get("/webhook-events/{event_id}", response_model=Envelope[WebhookEventRead])
def get_webhook_event(
    event_id: str,
    db: Session = Depends(get_db),
    admin: BillingContext = Depends(require_admin),
):
    event = billing_service.webhook_events.get(db, event_id)
    return success_response(WebhookEventRead.model_validate(event))
