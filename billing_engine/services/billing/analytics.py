"""Revenue and churn analytics.

Read-only over subscriptions, change history, invoices and usage. The only
write is the period-keyed summary row produced by :meth:`aggregate`.
"""

import logging
from collections import Counter
from datetime import UTC, date, datetime, time, timedelta

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from billing_engine.models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    AnalyticsPeriod,
    AnalyticsSummary,
    Invoice,
    InvoiceStatus,
    LineItemType,
    PricingPlan,
    Subscription,
    SubscriptionChange,
    SubscriptionChangeType,
    SubscriptionStatus,
    UsageRecord,
    UsageType,
)
from billing_engine.schemas.billing import ChurnMetrics, DashboardAnalytics, RevenueBreakdown
from billing_engine.services.billing.plans import monthly_equivalent_cents
from billing_engine.services.common import ensure_utc, utcnow

logger = logging.getLogger(__name__)

RECURRING_STATUSES = (SubscriptionStatus.active, SubscriptionStatus.trialing)
REVENUE_TYPES = (LineItemType.subscription, LineItemType.usage, LineItemType.one_time)

REGIONS = {
    "USD": "North America",
    "CAD": "North America",
    "EUR": "Europe",
    "GBP": "Europe",
    "AUD": "Australia",
    "JPY": "Asia",
    "CNY": "Asia",
}


def currency_region(currency: str | None) -> str:
    return REGIONS.get((currency or "").upper(), "Other")


def _add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    return value.replace(year=value.year + month_index // 12, month=month_index % 12 + 1)


def period_bounds(period_type: AnalyticsPeriod, period_start: date) -> tuple[date, date]:
    """Normalise the start to its period boundary and return (start, next_start)."""
    if period_type == AnalyticsPeriod.daily:
        return period_start, period_start + timedelta(days=1)
    if period_type == AnalyticsPeriod.weekly:
        start = period_start - timedelta(days=period_start.weekday())
        return start, start + timedelta(days=7)
    if period_type == AnalyticsPeriod.monthly:
        start = period_start.replace(day=1)
        return start, _add_months(start, 1)
    start = period_start.replace(month=1, day=1)
    return start, start.replace(year=start.year + 1)


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=UTC)


class AnalyticsAggregator:
    # ── Recurring revenue ────────────────────────────────

    @staticmethod
    def calculate_mrr(db: Session) -> int:
        rows = (
            db.query(Subscription.amount_cents, Subscription.billing_cycle)
            .filter(Subscription.status.in_(RECURRING_STATUSES))
            .all()
        )
        return round(sum(monthly_equivalent_cents(amount, cycle) for amount, cycle in rows))

    def calculate_arr(self, db: Session) -> int:
        return self.calculate_mrr(db) * 12

    # ── Churn ────────────────────────────────────────────

    @staticmethod
    def active_customers_at(db: Session, moment: datetime) -> set:
        """Customers holding a subscription that had started and not yet ended."""
        rows = (
            db.query(Subscription.customer_id)
            .filter(Subscription.created_at <= moment)
            .filter(or_(Subscription.ended_at.is_(None), Subscription.ended_at > moment))
            .filter(
                or_(
                    Subscription.status != SubscriptionStatus.canceled,
                    Subscription.ended_at.is_not(None),
                )
            )
            .distinct()
            .all()
        )
        return {row[0] for row in rows}

    def calculate_churn(self, db: Session, start: datetime, end: datetime) -> ChurnMetrics:
        customers_start = self.active_customers_at(db, start)
        customers_end = self.active_customers_at(db, end)

        canceled = (
            db.query(SubscriptionChange.customer_id, SubscriptionChange.reason)
            .filter(SubscriptionChange.change_type == SubscriptionChangeType.canceled)
            .filter(SubscriptionChange.created_at >= start)
            .filter(SubscriptionChange.created_at <= end)
            .all()
        )
        churned = {customer_id for customer_id, _ in canceled}
        reasons = Counter(reason or "No reason provided" for _, reason in canceled)

        first_seen = (
            db.query(
                Subscription.customer_id,
                func.min(Subscription.created_at).label("first_created"),
            )
            .group_by(Subscription.customer_id)
            .subquery()
        )
        new_customers = (
            db.query(func.count(first_seen.c.customer_id))
            .filter(first_seen.c.first_created >= start)
            .filter(first_seen.c.first_created <= end)
            .scalar()
            or 0
        )

        start_count = len(customers_start)
        churn_rate = round(len(churned) / start_count * 100, 2) if start_count else 0.0
        return ChurnMetrics(
            period_start=start,
            period_end=end,
            customers_start=start_count,
            customers_end=len(customers_end),
            new_customers=new_customers,
            churned_customers=len(churned),
            churn_rate=churn_rate,
            reasons=dict(reasons),
        )

    # ── Revenue ──────────────────────────────────────────

    @staticmethod
    def revenue_breakdown(db: Session, start: datetime, end: datetime) -> RevenueBreakdown:
        paid = (
            db.query(Invoice)
            .options(selectinload(Invoice.line_items), selectinload(Invoice.subscription))
            .filter(Invoice.status == InvoiceStatus.paid)
            .filter(Invoice.paid_at >= start)
            .filter(Invoice.paid_at <= end)
            .all()
        )
        plan_names = dict(db.query(PricingPlan.id, PricingPlan.name).all())
        by_type = {item_type: 0 for item_type in REVENUE_TYPES}
        by_plan: Counter = Counter()
        by_region: Counter = Counter()
        for invoice in paid:
            for line in invoice.line_items:
                if line.item_type in by_type:
                    by_type[line.item_type] += line.amount_cents
            if invoice.subscription is not None:
                plan_name = plan_names.get(invoice.subscription.pricing_plan_id, "unknown")
                by_plan[plan_name] += invoice.total_cents
            by_region[currency_region(invoice.currency)] += invoice.total_cents

        return RevenueBreakdown(
            period_start=start,
            period_end=end,
            total_cents=sum(by_type.values()),
            subscription_cents=by_type[LineItemType.subscription],
            usage_cents=by_type[LineItemType.usage],
            one_time_cents=by_type[LineItemType.one_time],
            by_plan=dict(by_plan),
            by_region=dict(by_region),
        )

    # ── Lifetime value ───────────────────────────────────

    @staticmethod
    def calculate_ltv(db: Session) -> int:
        """Average monthly revenue rate times average lifetime, over ended subscriptions."""
        ended = (
            db.query(
                Subscription.amount_cents,
                Subscription.billing_cycle,
                Subscription.created_at,
                Subscription.ended_at,
            )
            .filter(Subscription.ended_at.is_not(None))
            .all()
        )
        if not ended:
            return 0
        total_revenue = 0.0
        total_months = 0.0
        for amount, cycle, created_at, ended_at in ended:
            lifetime = ensure_utc(ended_at) - ensure_utc(created_at)
            months = max(lifetime.total_seconds(), 0) / (60 * 60 * 24 * 30)
            total_revenue += monthly_equivalent_cents(amount, cycle) * months
            total_months += months
        if total_months <= 0:
            return 0
        return round((total_revenue / total_months) * (total_months / len(ended)))

    @staticmethod
    def plan_distribution(db: Session) -> dict[str, int]:
        rows = (
            db.query(PricingPlan.name, func.count(Subscription.id))
            .join(Subscription, Subscription.pricing_plan_id == PricingPlan.id)
            .filter(Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES))
            .group_by(PricingPlan.name)
            .all()
        )
        return {name: count for name, count in rows}

    # ── Summary store ────────────────────────────────────

    def aggregate(
        self, db: Session, period_type: AnalyticsPeriod | str, period_start: date
    ) -> AnalyticsSummary:
        """Compute and upsert the summary for one period. Safe to re-run."""
        period_type = AnalyticsPeriod(period_type)
        start_date, next_start = period_bounds(period_type, period_start)
        start = _day_start(start_date)
        end = _day_start(next_start) - timedelta(microseconds=1)

        churn = self.calculate_churn(db, start, end)
        revenue = self.revenue_breakdown(db, start, end)
        mrr = self.calculate_mrr(db)
        status_counts = dict(
            db.query(Subscription.status, func.count(Subscription.id))
            .filter(Subscription.status.in_(RECURRING_STATUSES))
            .group_by(Subscription.status)
            .all()
        )
        usage_totals = dict(
            db.query(UsageRecord.usage_type, func.sum(UsageRecord.quantity))
            .filter(UsageRecord.recorded_at >= start)
            .filter(UsageRecord.recorded_at <= end)
            .group_by(UsageRecord.usage_type)
            .all()
        )

        summary = (
            db.query(AnalyticsSummary)
            .filter(AnalyticsSummary.period_type == period_type)
            .filter(AnalyticsSummary.period_start == start_date)
            .first()
        )
        if summary is None:
            summary = AnalyticsSummary(period_type=period_type, period_start=start_date)
            db.add(summary)
        summary.period_end = next_start - timedelta(days=1)
        summary.mrr_cents = mrr
        summary.arr_cents = mrr * 12
        summary.total_revenue_cents = revenue.total_cents
        summary.subscription_revenue_cents = revenue.subscription_cents
        summary.usage_revenue_cents = revenue.usage_cents
        summary.one_time_revenue_cents = revenue.one_time_cents
        summary.new_customers = churn.new_customers
        summary.churned_customers = churn.churned_customers
        summary.total_active_customers = churn.customers_end
        summary.active_subscriptions = status_counts.get(SubscriptionStatus.active, 0)
        summary.trial_subscriptions = status_counts.get(SubscriptionStatus.trialing, 0)
        summary.churn_rate = churn.churn_rate
        summary.ltv_cents = self.calculate_ltv(db)
        summary.plan_distribution = self.plan_distribution(db)
        summary.revenue_by_region = revenue.by_region
        summary.total_storage_gb = round(float(usage_totals.get(UsageType.storage) or 0), 2)
        summary.total_api_calls = int(usage_totals.get(UsageType.api_call) or 0)
        summary.total_documents_processed = int(
            usage_totals.get(UsageType.document_processed) or 0
        )
        db.commit()
        db.refresh(summary)
        logger.info(
            "Aggregated %s analytics for %s", period_type.value, start_date.isoformat()
        )
        return summary

    def dashboard(self, db: Session, days: int = 30) -> DashboardAnalytics:
        end = utcnow()
        start = end - timedelta(days=days)
        mrr = self.calculate_mrr(db)
        return DashboardAnalytics(
            mrr_cents=mrr,
            arr_cents=mrr * 12,
            ltv_cents=self.calculate_ltv(db),
            churn=self.calculate_churn(db, start, end),
            revenue=self.revenue_breakdown(db, start, end),
            plan_distribution=self.plan_distribution(db),
        )


analytics = AnalyticsAggregator()
