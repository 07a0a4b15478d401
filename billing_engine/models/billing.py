import enum
import uuid
from datetime import UTC, date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.db import Base, TimestampMixin

# ── Enums ────────────────────────────────────────────────


class SubscriptionStatus(str, enum.Enum):
    active = "active"
    trialing = "trialing"
    past_due = "past_due"
    canceled = "canceled"
    unpaid = "unpaid"


LIVE_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.active,
    SubscriptionStatus.trialing,
    SubscriptionStatus.past_due,
)


class BillingCycle(str, enum.Enum):
    monthly = "monthly"
    annual = "annual"


class SubscriptionChangeType(str, enum.Enum):
    created = "created"
    trial_started = "trial_started"
    upgraded = "upgraded"
    downgraded = "downgraded"
    canceled = "canceled"
    reactivated = "reactivated"
    payment_failed = "payment_failed"
    payment_recovered = "payment_recovered"
    unpaid = "unpaid"


class ChangeInitiator(str, enum.Enum):
    customer = "customer"
    admin = "admin"
    system = "system"


class InvoiceStatus(str, enum.Enum):
    draft = "draft"
    open = "open"
    paid = "paid"
    uncollectible = "uncollectible"
    void = "void"


class LineItemType(str, enum.Enum):
    subscription = "subscription"
    usage = "usage"
    one_time = "one_time"
    discount = "discount"


class UsageType(str, enum.Enum):
    storage = "storage"
    api_call = "api_call"
    document_processed = "document_processed"


USAGE_UNITS = {
    UsageType.storage: "gb",
    UsageType.api_call: "requests",
    UsageType.document_processed: "documents",
}


class UsageAction(str, enum.Enum):
    increment = "increment"
    set = "set"


class RetryJobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    canceled = "canceled"


class WebhookEventStatus(str, enum.Enum):
    pending = "pending"
    processed = "processed"
    failed = "failed"
    ignored = "ignored"


class AnalyticsPeriod(str, enum.Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class SupportLevel(str, enum.Enum):
    enterprise = "enterprise"
    premium = "premium"
    dedicated = "dedicated"


# ── Customer & Catalog ───────────────────────────────────


class Customer(TimestampMixin, Base):
    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, unique=True
    )
    processor_customer_id: Mapped[str | None] = mapped_column(
        String(255), unique=True
    )
    billing_email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255))
    company_name: Mapped[str | None] = mapped_column(String(255))
    tax_id: Mapped[str | None] = mapped_column(String(80))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    locale: Mapped[str | None] = mapped_column(String(16))
    default_payment_method_id: Mapped[str | None] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    retired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    subscriptions = relationship("Subscription", back_populates="customer")
    invoices = relationship("Invoice", back_populates="customer")
    payment_methods = relationship("PaymentMethod", back_populates="customer")


class PricingPlan(TimestampMixin, Base):
    __tablename__ = "pricing_plans"
    __table_args__ = (UniqueConstraint("name", name="uq_pricing_plans_name"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    monthly_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    annual_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    processor_monthly_price_id: Mapped[str | None] = mapped_column(String(255))
    processor_annual_price_id: Mapped[str | None] = mapped_column(String(255))
    # -1 means unlimited for every limit column.
    storage_gb: Mapped[float] = mapped_column(Float, default=0)
    api_calls_per_month: Mapped[int] = mapped_column(Integer, default=0)
    documents_per_month: Mapped[int] = mapped_column(Integer, default=0)
    seats: Mapped[int] = mapped_column(Integer, default=1)
    features: Mapped[list | None] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    subscriptions = relationship("Subscription", back_populates="plan")

    def price_cents(self, cycle: BillingCycle) -> int:
        if cycle == BillingCycle.annual:
            return self.annual_price_cents
        return self.monthly_price_cents

    def processor_price_id(self, cycle: BillingCycle) -> str | None:
        if cycle == BillingCycle.annual:
            return self.processor_annual_price_id
        return self.processor_monthly_price_id


# ── Subscriptions ────────────────────────────────────────


class Subscription(TimestampMixin, Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "processor_subscription_id",
            name="uq_subscriptions_processor_subscription_id",
        ),
        Index(
            "uq_subscriptions_live_customer",
            "customer_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'trialing', 'past_due')"),
            sqlite_where=text("status IN ('active', 'trialing', 'past_due')"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True
    )
    pricing_plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pricing_plans.id"), nullable=False, index=True
    )
    processor_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False)
    processor_item_id: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), nullable=False
    )
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        Enum(BillingCycle), default=BillingCycle.monthly
    )
    amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    current_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    trial_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    trial_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    metered_billing_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    processor_updated_at: Mapped[int | None] = mapped_column(Integer)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    __mapper_args__ = {"version_id_col": version}

    customer = relationship("Customer", back_populates="subscriptions")
    plan = relationship("PricingPlan", back_populates="subscriptions")
    invoices = relationship("Invoice", back_populates="subscription")
    changes = relationship(
        "SubscriptionChange",
        back_populates="subscription",
        order_by="SubscriptionChange.created_at",
    )

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_SUBSCRIPTION_STATUSES


class SubscriptionChange(Base):
    """Append-only transition log for subscriptions."""

    __tablename__ = "subscription_changes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True
    )
    change_type: Mapped[SubscriptionChangeType] = mapped_column(
        Enum(SubscriptionChangeType), nullable=False, index=True
    )
    from_plan_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pricing_plans.id")
    )
    to_plan_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pricing_plans.id")
    )
    from_amount_cents: Mapped[int | None] = mapped_column(Integer)
    to_amount_cents: Mapped[int | None] = mapped_column(Integer)
    proration_amount_cents: Mapped[int | None] = mapped_column(Integer)
    reason: Mapped[str | None] = mapped_column(Text)
    initiated_by: Mapped[ChangeInitiator] = mapped_column(
        Enum(ChangeInitiator), default=ChangeInitiator.system
    )
    processor_event_id: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), index=True
    )

    subscription = relationship("Subscription", back_populates="changes")


# ── Invoicing ────────────────────────────────────────────


class Invoice(TimestampMixin, Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint(
            "processor_invoice_id", name="uq_invoices_processor_invoice_id"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), index=True
    )
    processor_invoice_id: Mapped[str] = mapped_column(String(255), nullable=False)
    number: Mapped[str | None] = mapped_column(String(80))
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus), default=InvoiceStatus.draft
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    subtotal_cents: Mapped[int] = mapped_column(Integer, default=0)
    tax_cents: Mapped[int] = mapped_column(Integer, default=0)
    discount_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_cents: Mapped[int] = mapped_column(Integer, default=0)
    amount_paid_cents: Mapped[int] = mapped_column(Integer, default=0)
    amount_due_cents: Mapped[int] = mapped_column(Integer, default=0)
    invoice_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    next_payment_attempt: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    processor_next_payment_attempt: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    payment_failure_reason: Mapped[str | None] = mapped_column(Text)
    hosted_invoice_url: Mapped[str | None] = mapped_column(Text)
    invoice_pdf_url: Mapped[str | None] = mapped_column(Text)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    customer = relationship("Customer", back_populates="invoices")
    subscription = relationship("Subscription", back_populates="invoices")
    line_items = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
    )
    retry_jobs = relationship("RetryJob", back_populates="invoice")


class InvoiceLineItem(TimestampMixin, Base):
    __tablename__ = "invoice_line_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.id"), nullable=False, index=True
    )
    processor_line_item_id: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    item_type: Mapped[LineItemType] = mapped_column(
        Enum(LineItemType), default=LineItemType.subscription
    )
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    is_proration: Mapped[bool] = mapped_column(Boolean, default=False)
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    invoice = relationship("Invoice", back_populates="line_items")


class PaymentMethod(TimestampMixin, Base):
    __tablename__ = "payment_methods"
    __table_args__ = (
        UniqueConstraint(
            "processor_payment_method_id",
            name="uq_payment_methods_processor_payment_method_id",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True
    )
    processor_payment_method_id: Mapped[str] = mapped_column(
        String(255), nullable=False
    )
    type: Mapped[str] = mapped_column(String(40), default="card")
    card_brand: Mapped[str | None] = mapped_column(String(40))
    card_last4: Mapped[str | None] = mapped_column(String(4))
    card_exp_month: Mapped[int | None] = mapped_column(Integer)
    card_exp_year: Mapped[int | None] = mapped_column(Integer)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    customer = relationship("Customer", back_populates="payment_methods")


# ── Usage & Metering ─────────────────────────────────────


class UsageRecord(Base):
    """Immutable metered-consumption event."""

    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_usage_records_idempotency_key"),
        Index(
            "ix_usage_records_subscription_period_type",
            "subscription_id",
            "period_start",
            "usage_type",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True
    )
    usage_type: Mapped[UsageType] = mapped_column(Enum(UsageType), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_billable: Mapped[bool] = mapped_column(Boolean, default=False)
    billed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    processor_reported_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )


# ── Dunning ──────────────────────────────────────────────


class RetryJob(TimestampMixin, Base):
    __tablename__ = "payment_retry_jobs"
    __table_args__ = (
        Index("ix_payment_retry_jobs_status_due", "status", "scheduled_for"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.id"), nullable=False, index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    status: Mapped[RetryJobStatus] = mapped_column(
        Enum(RetryJobStatus), default=RetryJobStatus.pending
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)

    invoice = relationship("Invoice", back_populates="retry_jobs")


# ── Webhook Tracking ─────────────────────────────────────


class WebhookEvent(TimestampMixin, Base):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("event_id", name="uq_webhook_events_event_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(80), nullable=False)
    event_type: Mapped[str] = mapped_column(String(120), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON)
    status: Mapped[WebhookEventStatus] = mapped_column(
        Enum(WebhookEventStatus), default=WebhookEventStatus.pending
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


# ── Analytics ────────────────────────────────────────────


class AnalyticsSummary(TimestampMixin, Base):
    __tablename__ = "revenue_analytics"
    __table_args__ = (
        UniqueConstraint(
            "period_type", "period_start", name="uq_revenue_analytics_period"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    period_type: Mapped[AnalyticsPeriod] = mapped_column(
        Enum(AnalyticsPeriod), nullable=False
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    mrr_cents: Mapped[int] = mapped_column(Integer, default=0)
    arr_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_revenue_cents: Mapped[int] = mapped_column(Integer, default=0)
    subscription_revenue_cents: Mapped[int] = mapped_column(Integer, default=0)
    usage_revenue_cents: Mapped[int] = mapped_column(Integer, default=0)
    one_time_revenue_cents: Mapped[int] = mapped_column(Integer, default=0)
    new_customers: Mapped[int] = mapped_column(Integer, default=0)
    churned_customers: Mapped[int] = mapped_column(Integer, default=0)
    total_active_customers: Mapped[int] = mapped_column(Integer, default=0)
    active_subscriptions: Mapped[int] = mapped_column(Integer, default=0)
    trial_subscriptions: Mapped[int] = mapped_column(Integer, default=0)
    churn_rate: Mapped[float] = mapped_column(Float, default=0.0)
    ltv_cents: Mapped[int] = mapped_column(Integer, default=0)
    plan_distribution: Mapped[dict | None] = mapped_column(JSON)
    revenue_by_region: Mapped[dict | None] = mapped_column(JSON)
    total_storage_gb: Mapped[float] = mapped_column(Float, default=0.0)
    total_api_calls: Mapped[int] = mapped_column(Integer, default=0)
    total_documents_processed: Mapped[int] = mapped_column(Integer, default=0)


# ── Enterprise contracts ─────────────────────────────────


class EnterpriseContract(TimestampMixin, Base):
    """Negotiated terms for one customer, layered over its plan subscription."""

    __tablename__ = "enterprise_contracts"
    __table_args__ = (
        Index(
            "uq_enterprise_contracts_active_customer",
            "customer_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True
    )
    base_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        Enum(BillingCycle), default=BillingCycle.annual
    )
    # NULL keeps the plan's limit; -1 means unlimited.
    storage_gb: Mapped[float | None] = mapped_column(Float)
    api_calls_per_month: Mapped[int | None] = mapped_column(Integer)
    documents_per_month: Mapped[int | None] = mapped_column(Integer)
    seats: Mapped[int | None] = mapped_column(Integer)
    # [{"threshold": int, "discount_percent": float}, ...]
    volume_discounts: Mapped[list | None] = mapped_column(JSON)
    contract_start: Mapped[date] = mapped_column(Date, nullable=False)
    contract_end: Mapped[date] = mapped_column(Date, nullable=False)
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=False)
    support_level: Mapped[SupportLevel] = mapped_column(
        Enum(SupportLevel), default=SupportLevel.enterprise
    )
    notes: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    customer = relationship("Customer")
