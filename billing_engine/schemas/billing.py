from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.models.billing import (
    AnalyticsPeriod,
    BillingCycle,
    ChangeInitiator,
    InvoiceStatus,
    LineItemType,
    RetryJobStatus,
    SubscriptionChangeType,
    SubscriptionStatus,
    SupportLevel,
    UsageType,
    WebhookEventStatus,
)

# ── Plans ────────────────────────────────────────────────


class PricingPlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    name: str
    display_name: str
    description: str | None = None
    monthly_price_cents: int
    annual_price_cents: int
    currency: str
    storage_gb: float
    api_calls_per_month: int
    documents_per_month: int
    seats: int
    features: list | None = None
    sort_order: int


class PlanLimits(BaseModel):
    storage_gb: float
    api_calls_per_month: int
    documents_per_month: int
    seats: int


# ── Customer ─────────────────────────────────────────────


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    organization_id: UUID
    processor_customer_id: str | None = None
    billing_email: str
    name: str | None = None
    company_name: str | None = None
    currency: str
    is_active: bool
    created_at: datetime


# ── Subscriptions ────────────────────────────────────────


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    customer_id: UUID
    pricing_plan_id: UUID
    processor_subscription_id: str
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    amount_cents: int
    currency: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool
    canceled_at: datetime | None = None
    ended_at: datetime | None = None
    metered_billing_enabled: bool
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime
    updated_at: datetime


class SubscriptionDetail(BaseModel):
    subscription: SubscriptionRead
    plan: PricingPlanRead
    limits: PlanLimits


class SubscriptionChangeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    subscription_id: UUID
    change_type: SubscriptionChangeType
    from_plan_id: UUID | None = None
    to_plan_id: UUID | None = None
    from_amount_cents: int | None = None
    to_amount_cents: int | None = None
    proration_amount_cents: int | None = None
    reason: str | None = None
    initiated_by: ChangeInitiator
    created_at: datetime


class SubscriptionResult(BaseModel):
    status: Literal["created", "pending", "updated", "canceled", "reactivated"]
    subscription: SubscriptionRead | None = None
    processor_subscription_id: str | None = None
    message: str | None = None


class SubscriptionCreateRequest(BaseModel):
    pricing_plan_id: UUID
    billing_cycle: BillingCycle = BillingCycle.monthly
    trial_days: int | None = Field(default=None, ge=0, le=365)
    payment_method_id: str | None = Field(default=None, max_length=255)


class SubscriptionUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    pricing_plan_id: UUID | None = None
    billing_cycle: BillingCycle | None = None
    cancel_at_period_end: bool | None = None
    metadata_: dict[str, str] | None = Field(default=None, alias="metadata")
    reason: str | None = Field(default=None, max_length=500)


class SubscriptionCancelRequest(BaseModel):
    immediately: bool = False
    reason: str | None = Field(default=None, max_length=500)


# ── Checkout / Portal ────────────────────────────────────


class CheckoutRequest(BaseModel):
    pricing_plan_id: UUID
    billing_cycle: BillingCycle = BillingCycle.monthly
    success_url: str = Field(min_length=1, max_length=2048)
    cancel_url: str = Field(min_length=1, max_length=2048)
    trial_days: int | None = Field(default=None, ge=0, le=365)
    promotion_code: str | None = Field(default=None, max_length=255)


class CheckoutSessionRead(BaseModel):
    session_id: str
    url: str | None = None


class PortalRequest(BaseModel):
    return_url: str = Field(min_length=1, max_length=2048)


class PortalSessionRead(BaseModel):
    url: str


# ── Usage ────────────────────────────────────────────────


class UsageReportRequest(BaseModel):
    usage_type: UsageType
    quantity: float = Field(gt=0)
    timestamp: datetime | None = None
    idempotency_key: str | None = Field(default=None, max_length=255)


class UsageRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    subscription_id: UUID
    usage_type: UsageType
    quantity: float
    unit: str
    recorded_at: datetime
    period_start: datetime
    period_end: datetime
    is_billable: bool
    billed_at: datetime | None = None


class UsageLimitStatus(BaseModel):
    usage_type: UsageType
    current: float
    limit: float
    unlimited: bool
    exceeded: bool
    percent_used: float | None = None
    threshold: int | None = None


class UsageSummary(BaseModel):
    subscription_id: UUID
    period_start: datetime | None = None
    period_end: datetime | None = None
    usage: dict[str, float]
    limits: list[UsageLimitStatus]


class UsageBucket(BaseModel):
    bucket_start: datetime
    usage_type: UsageType
    quantity: float


# ── Invoices ─────────────────────────────────────────────


class InvoiceLineItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    description: str | None = None
    item_type: LineItemType
    quantity: int
    unit_amount_cents: int
    amount_cents: int
    is_proration: bool
    period_start: datetime | None = None
    period_end: datetime | None = None


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    customer_id: UUID
    subscription_id: UUID | None = None
    processor_invoice_id: str
    number: str | None = None
    status: InvoiceStatus
    currency: str
    subtotal_cents: int
    tax_cents: int
    discount_cents: int
    total_cents: int
    amount_paid_cents: int
    amount_due_cents: int
    invoice_date: datetime | None = None
    due_date: datetime | None = None
    paid_at: datetime | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    attempt_count: int
    next_payment_attempt: datetime | None = None
    payment_failure_reason: str | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf_url: str | None = None
    line_items: list[InvoiceLineItemRead] = Field(default_factory=list)


# ── Dunning ──────────────────────────────────────────────


class RetryOutcome(BaseModel):
    invoice_id: UUID
    job_id: UUID | None = None
    attempt_number: int
    outcome: Literal["paid", "already_paid", "failed", "canceled", "uncollectible"]
    next_attempt_at: datetime | None = None
    message: str | None = None


class RetryStatus(BaseModel):
    invoice_id: UUID
    invoice_status: InvoiceStatus
    has_pending_retry: bool
    next_attempt_at: datetime | None = None
    attempts_made: int
    max_attempts: int
    last_error: str | None = None


class RetryStatistics(BaseModel):
    pending: int
    running: int
    succeeded: int
    failed: int
    canceled: int
    recovery_rate: float
    average_attempts_to_recover: float


class RetryJobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    invoice_id: UUID
    attempt_number: int
    scheduled_for: datetime
    status: RetryJobStatus
    last_error: str | None = None


# ── Analytics ────────────────────────────────────────────


class ChurnMetrics(BaseModel):
    period_start: datetime
    period_end: datetime
    customers_start: int
    customers_end: int
    new_customers: int
    churned_customers: int
    churn_rate: float
    reasons: dict[str, int]


class RevenueBreakdown(BaseModel):
    period_start: datetime
    period_end: datetime
    total_cents: int
    subscription_cents: int
    usage_cents: int
    one_time_cents: int
    by_plan: dict[str, int]
    by_region: dict[str, int]


class AnalyticsAggregateRequest(BaseModel):
    period_type: AnalyticsPeriod = AnalyticsPeriod.daily
    period_start: date


class AnalyticsSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    period_type: AnalyticsPeriod
    period_start: date
    period_end: date
    mrr_cents: int
    arr_cents: int
    total_revenue_cents: int
    subscription_revenue_cents: int
    usage_revenue_cents: int
    one_time_revenue_cents: int
    new_customers: int
    churned_customers: int
    total_active_customers: int
    active_subscriptions: int
    trial_subscriptions: int
    churn_rate: float
    ltv_cents: int
    plan_distribution: dict | None = None
    revenue_by_region: dict | None = None
    total_storage_gb: float
    total_api_calls: int
    total_documents_processed: int


class DashboardAnalytics(BaseModel):
    mrr_cents: int
    arr_cents: int
    ltv_cents: int
    churn: ChurnMetrics
    revenue: RevenueBreakdown
    plan_distribution: dict[str, int]


# ── Webhook events ───────────────────────────────────────


class WebhookEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    provider: str
    event_type: str
    event_id: str
    status: WebhookEventStatus
    error_message: str | None = None
    processed_at: datetime | None = None
    created_at: datetime


# ── Enterprise contracts ─────────────────────────────────


class VolumeDiscountRule(BaseModel):
    threshold: int = Field(ge=1)
    discount_percent: float = Field(gt=0, le=100)


class ContractLimits(BaseModel):
    storage_gb: float | None = Field(default=None, ge=-1)
    api_calls_per_month: int | None = Field(default=None, ge=-1)
    documents_per_month: int | None = Field(default=None, ge=-1)
    seats: int | None = Field(default=None, ge=-1)


class EnterpriseContractCreate(ContractLimits):
    customer_id: UUID
    base_price_cents: int = Field(ge=0)
    billing_cycle: BillingCycle = BillingCycle.annual
    volume_discounts: list[VolumeDiscountRule] = Field(default_factory=list)
    contract_start: date
    contract_end: date
    auto_renew: bool = False
    support_level: SupportLevel = SupportLevel.enterprise
    notes: str | None = Field(default=None, max_length=2000)


class EnterpriseContractUpdate(ContractLimits):
    base_price_cents: int | None = Field(default=None, ge=0)
    billing_cycle: BillingCycle | None = None
    volume_discounts: list[VolumeDiscountRule] | None = None
    contract_start: date | None = None
    contract_end: date | None = None
    auto_renew: bool | None = None
    support_level: SupportLevel | None = None
    notes: str | None = Field(default=None, max_length=2000)
    is_active: bool | None = None


class ContractRenewalRequest(BaseModel):
    contract_end: date
    base_price_cents: int | None = Field(default=None, ge=0)
    limits: ContractLimits | None = None


class EnterpriseContractRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    customer_id: UUID
    base_price_cents: int
    billing_cycle: BillingCycle
    storage_gb: float | None = None
    api_calls_per_month: int | None = None
    documents_per_month: int | None = None
    seats: int | None = None
    volume_discounts: list[VolumeDiscountRule] | None = None
    contract_start: date
    contract_end: date
    auto_renew: bool
    support_level: SupportLevel
    notes: str | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class VolumeDiscount(BaseModel):
    original_amount_cents: int
    discount_percent: float
    discount_amount_cents: int
    discounted_amount_cents: int


class VolumeDiscountRequest(BaseModel):
    quantity: int = Field(ge=1)


class VolumeDiscountResult(VolumeDiscount):
    invoice_id: UUID
    quantity: int
    applied: bool
