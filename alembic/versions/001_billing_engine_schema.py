"""billing engine schema

Revision ID: 001_billing_engine
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

revision = "001_billing_engine"
down_revision = None
branch_labels = None
depends_on = None

_LIVE_STATUSES = "status IN ('active', 'trialing', 'past_due')"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # Customers
    op.create_table(
        "customers",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column("processor_customer_id", sa.String(length=255), nullable=True),
        sa.Column("billing_email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("company_name", sa.String(length=255), nullable=True),
        sa.Column("tax_id", sa.String(length=80), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("locale", sa.String(length=16), nullable=True),
        sa.Column("default_payment_method_id", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id"),
        sa.UniqueConstraint("processor_customer_id"),
    )

    # Pricing plans
    op.create_table(
        "pricing_plans",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=80), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("monthly_price_cents", sa.Integer(), nullable=False),
        sa.Column("annual_price_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("processor_monthly_price_id", sa.String(length=255), nullable=True),
        sa.Column("processor_annual_price_id", sa.String(length=255), nullable=True),
        sa.Column("storage_gb", sa.Float(), nullable=True),
        sa.Column("api_calls_per_month", sa.Integer(), nullable=True),
        sa.Column("documents_per_month", sa.Integer(), nullable=True),
        sa.Column("seats", sa.Integer(), nullable=True),
        sa.Column("features", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("is_visible", sa.Boolean(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_pricing_plans_name"),
    )

    # Subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("customer_id", sa.UUID(), nullable=False),
        sa.Column("pricing_plan_id", sa.UUID(), nullable=False),
        sa.Column("processor_subscription_id", sa.String(length=255), nullable=False),
        sa.Column("processor_item_id", sa.String(length=255), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "active",
                "trialing",
                "past_due",
                "canceled",
                "unpaid",
                name="subscriptionstatus",
            ),
            nullable=False,
        ),
        sa.Column(
            "billing_cycle",
            sa.Enum("monthly", "annual", name="billingcycle"),
            nullable=True,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metered_billing_enabled", sa.Boolean(), nullable=True),
        sa.Column("processor_updated_at", sa.Integer(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["pricing_plan_id"], ["pricing_plans.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "processor_subscription_id",
            name="uq_subscriptions_processor_subscription_id",
        ),
    )
    op.create_index("ix_subscriptions_customer_id", "subscriptions", ["customer_id"])
    op.create_index("ix_subscriptions_pricing_plan_id", "subscriptions", ["pricing_plan_id"])
    op.create_index(
        "uq_subscriptions_live_customer",
        "subscriptions",
        ["customer_id"],
        unique=True,
        postgresql_where=sa.text(_LIVE_STATUSES),
        sqlite_where=sa.text(_LIVE_STATUSES),
    )

    # Subscription change log
    op.create_table(
        "subscription_changes",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("subscription_id", sa.UUID(), nullable=False),
        sa.Column("customer_id", sa.UUID(), nullable=False),
        sa.Column(
            "change_type",
            sa.Enum(
                "created",
                "trial_started",
                "upgraded",
                "downgraded",
                "canceled",
                "reactivated",
                "payment_failed",
                "payment_recovered",
                "unpaid",
                name="subscriptionchangetype",
            ),
            nullable=False,
        ),
        sa.Column("from_plan_id", sa.UUID(), nullable=True),
        sa.Column("to_plan_id", sa.UUID(), nullable=True),
        sa.Column("from_amount_cents", sa.Integer(), nullable=True),
        sa.Column("to_amount_cents", sa.Integer(), nullable=True),
        sa.Column("proration_amount_cents", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "initiated_by",
            sa.Enum("customer", "admin", "system", name="changeinitiator"),
            nullable=True,
        ),
        sa.Column("processor_event_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["from_plan_id"], ["pricing_plans.id"]),
        sa.ForeignKeyConstraint(["to_plan_id"], ["pricing_plans.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_changes_subscription_id", "subscription_changes", ["subscription_id"]
    )
    op.create_index(
        "ix_subscription_changes_customer_id", "subscription_changes", ["customer_id"]
    )
    op.create_index(
        "ix_subscription_changes_change_type", "subscription_changes", ["change_type"]
    )
    op.create_index(
        "ix_subscription_changes_created_at", "subscription_changes", ["created_at"]
    )

    # Invoices
    op.create_table(
        "invoices",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("customer_id", sa.UUID(), nullable=False),
        sa.Column("subscription_id", sa.UUID(), nullable=True),
        sa.Column("processor_invoice_id", sa.String(length=255), nullable=False),
        sa.Column("number", sa.String(length=80), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "draft", "open", "paid", "uncollectible", "void", name="invoicestatus"
            ),
            nullable=True,
        ),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("subtotal_cents", sa.Integer(), nullable=True),
        sa.Column("tax_cents", sa.Integer(), nullable=True),
        sa.Column("discount_cents", sa.Integer(), nullable=True),
        sa.Column("total_cents", sa.Integer(), nullable=True),
        sa.Column("amount_paid_cents", sa.Integer(), nullable=True),
        sa.Column("amount_due_cents", sa.Integer(), nullable=True),
        sa.Column("invoice_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=True),
        sa.Column("next_payment_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "processor_next_payment_attempt", sa.DateTime(timezone=True), nullable=True
        ),
        sa.Column("payment_failure_reason", sa.Text(), nullable=True),
        sa.Column("hosted_invoice_url", sa.Text(), nullable=True),
        sa.Column("invoice_pdf_url", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("processor_invoice_id", name="uq_invoices_processor_invoice_id"),
    )
    op.create_index("ix_invoices_customer_id", "invoices", ["customer_id"])
    op.create_index("ix_invoices_subscription_id", "invoices", ["subscription_id"])

    # Invoice line items
    op.create_table(
        "invoice_line_items",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("invoice_id", sa.UUID(), nullable=False),
        sa.Column("processor_line_item_id", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "item_type",
            sa.Enum("subscription", "usage", "one_time", "discount", name="lineitemtype"),
            nullable=True,
        ),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("unit_amount_cents", sa.Integer(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("is_proration", sa.Boolean(), nullable=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invoice_line_items_invoice_id", "invoice_line_items", ["invoice_id"])

    # Payment methods
    op.create_table(
        "payment_methods",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("customer_id", sa.UUID(), nullable=False),
        sa.Column("processor_payment_method_id", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=True),
        sa.Column("card_brand", sa.String(length=40), nullable=True),
        sa.Column("card_last4", sa.String(length=4), nullable=True),
        sa.Column("card_exp_month", sa.Integer(), nullable=True),
        sa.Column("card_exp_year", sa.Integer(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "processor_payment_method_id",
            name="uq_payment_methods_processor_payment_method_id",
        ),
    )
    op.create_index("ix_payment_methods_customer_id", "payment_methods", ["customer_id"])

    # Usage ledger
    op.create_table(
        "usage_records",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("subscription_id", sa.UUID(), nullable=False),
        sa.Column("customer_id", sa.UUID(), nullable=False),
        sa.Column(
            "usage_type",
            sa.Enum("storage", "api_call", "document_processed", name="usagetype"),
            nullable=False,
        ),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("unit", sa.String(length=20), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_billable", sa.Boolean(), nullable=True),
        sa.Column("billed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processor_reported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_usage_records_idempotency_key"),
    )
    op.create_index("ix_usage_records_customer_id", "usage_records", ["customer_id"])
    op.create_index(
        "ix_usage_records_subscription_period_type",
        "usage_records",
        ["subscription_id", "period_start", "usage_type"],
    )

    # Dunning jobs
    op.create_table(
        "payment_retry_jobs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("invoice_id", sa.UUID(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "running",
                "succeeded",
                "failed",
                "canceled",
                name="retryjobstatus",
            ),
            nullable=True,
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_retry_jobs_invoice_id", "payment_retry_jobs", ["invoice_id"])
    op.create_index(
        "ix_payment_retry_jobs_status_due", "payment_retry_jobs", ["status", "scheduled_for"]
    )

    # Webhook events
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("provider", sa.String(length=80), nullable=False),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "processed", "failed", "ignored", name="webhookeventstatus"
            ),
            nullable=True,
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
    )

    # Analytics summaries
    op.create_table(
        "revenue_analytics",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column(
            "period_type",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="analyticsperiod"),
            nullable=False,
        ),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("mrr_cents", sa.Integer(), nullable=True),
        sa.Column("arr_cents", sa.Integer(), nullable=True),
        sa.Column("total_revenue_cents", sa.Integer(), nullable=True),
        sa.Column("subscription_revenue_cents", sa.Integer(), nullable=True),
        sa.Column("usage_revenue_cents", sa.Integer(), nullable=True),
        sa.Column("one_time_revenue_cents", sa.Integer(), nullable=True),
        sa.Column("new_customers", sa.Integer(), nullable=True),
        sa.Column("churned_customers", sa.Integer(), nullable=True),
        sa.Column("total_active_customers", sa.Integer(), nullable=True),
        sa.Column("active_subscriptions", sa.Integer(), nullable=True),
        sa.Column("trial_subscriptions", sa.Integer(), nullable=True),
        sa.Column("churn_rate", sa.Float(), nullable=True),
        sa.Column("ltv_cents", sa.Integer(), nullable=True),
        sa.Column("plan_distribution", sa.JSON(), nullable=True),
        sa.Column("revenue_by_region", sa.JSON(), nullable=True),
        sa.Column("total_storage_gb", sa.Float(), nullable=True),
        sa.Column("total_api_calls", sa.Integer(), nullable=True),
        sa.Column("total_documents_processed", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("period_type", "period_start", name="uq_revenue_analytics_period"),
    )


def downgrade() -> None:
    op.drop_table("revenue_analytics")
    op.drop_table("webhook_events")
    op.drop_index("ix_payment_retry_jobs_status_due", table_name="payment_retry_jobs")
    op.drop_index("ix_payment_retry_jobs_invoice_id", table_name="payment_retry_jobs")
    op.drop_table("payment_retry_jobs")
    op.drop_index("ix_usage_records_subscription_period_type", table_name="usage_records")
    op.drop_index("ix_usage_records_customer_id", table_name="usage_records")
    op.drop_table("usage_records")
    op.drop_index("ix_payment_methods_customer_id", table_name="payment_methods")
    op.drop_table("payment_methods")
    op.drop_index("ix_invoice_line_items_invoice_id", table_name="invoice_line_items")
    op.drop_table("invoice_line_items")
    op.drop_index("ix_invoices_subscription_id", table_name="invoices")
    op.drop_index("ix_invoices_customer_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index("ix_subscription_changes_created_at", table_name="subscription_changes")
    op.drop_index("ix_subscription_changes_change_type", table_name="subscription_changes")
    op.drop_index("ix_subscription_changes_customer_id", table_name="subscription_changes")
    op.drop_index(
        "ix_subscription_changes_subscription_id", table_name="subscription_changes"
    )
    op.drop_table("subscription_changes")
    op.drop_index("uq_subscriptions_live_customer", table_name="subscriptions")
    op.drop_index("ix_subscriptions_pricing_plan_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_customer_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("pricing_plans")
    op.drop_table("customers")
    for enum_name in (
        "analyticsperiod",
        "webhookeventstatus",
        "retryjobstatus",
        "usagetype",
        "lineitemtype",
        "invoicestatus",
        "changeinitiator",
        "subscriptionchangetype",
        "billingcycle",
        "subscriptionstatus",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
