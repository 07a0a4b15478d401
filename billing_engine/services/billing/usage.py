"""Usage ledger: append-only metering against the subscription's billing period."""

import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engine.config import settings
from billing_engine.metrics import USAGE_REPORTED
from billing_engine.models.billing import (
    USAGE_UNITS,
    Subscription,
    UsageAction,
    UsageRecord,
    UsageType,
)
from billing_engine.schemas.billing import UsageBucket, UsageLimitStatus, UsageSummary
from billing_engine.services.billing.errors import (
    INVALID_QUANTITY,
    NO_ACTIVE_PERIOD,
    SUBSCRIPTION_NOT_FOUND,
    USAGE_OUTSIDE_PERIOD,
    billing_error,
)
from billing_engine.services.billing.plans import pricing_plans
from billing_engine.services.common import coerce_uuid, ensure_utc, utcnow
from billing_engine.services.payment_gateway import (
    GatewayError,
    StripeGateway,
    stripe_gateway,
)
from billing_engine.services.query_utils import apply_pagination

logger = logging.getLogger(__name__)

BYTES_PER_GB = 2**30
THRESHOLDS = (50, 75, 90, 100)


def _usage_limits(db: Session, subscription: Subscription) -> dict[UsageType, float]:
    limits = pricing_plans.limits_for(db, subscription)
    return {
        UsageType.storage: limits.storage_gb,
        UsageType.api_call: limits.api_calls_per_month,
        UsageType.document_processed: limits.documents_per_month,
    }


def limit_status(usage_type: UsageType, current: float, limit: float) -> UsageLimitStatus:
    if limit < 0:
        return UsageLimitStatus(
            usage_type=usage_type,
            current=current,
            limit=limit,
            unlimited=True,
            exceeded=False,
        )
    if limit > 0:
        percent = round(current / limit * 100, 2)
    else:
        percent = 100.0 if current > 0 else 0.0
    reached = [threshold for threshold in THRESHOLDS if percent >= threshold]
    return UsageLimitStatus(
        usage_type=usage_type,
        current=current,
        limit=limit,
        unlimited=False,
        exceeded=current > limit,
        percent_used=percent,
        threshold=max(reached) if reached else None,
    )


def _bucket_start(value: datetime, group_by: str) -> datetime:
    day = value.replace(hour=0, minute=0, second=0, microsecond=0)
    if group_by == "week":
        return day - timedelta(days=day.weekday())
    if group_by == "month":
        return day.replace(day=1)
    return day


class UsageLedger:
    def __init__(self, gateway: StripeGateway | None = None) -> None:
        self.gateway = gateway or stripe_gateway

    def report_usage(
        self,
        db: Session,
        subscription_id: str | UUID,
        usage_type: UsageType | str,
        quantity: float,
        timestamp: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> UsageRecord:
        """Append a usage record inside the subscription's current period."""
        usage_type = UsageType(usage_type)
        if quantity <= 0 or (
            usage_type != UsageType.storage and float(quantity) != int(quantity)
        ):
            raise billing_error(
                400,
                INVALID_QUANTITY,
                "Quantity must be positive, and whole for count-based usage",
            )

        if idempotency_key:
            existing = self._get_by_key(db, idempotency_key)
            if existing is not None:
                return existing

        subscription = db.get(Subscription, coerce_uuid(subscription_id))
        if not subscription:
            raise billing_error(404, SUBSCRIPTION_NOT_FOUND, "Subscription not found")

        period_start = ensure_utc(subscription.current_period_start)
        period_end = ensure_utc(subscription.current_period_end)
        if period_start is None or period_end is None:
            raise billing_error(
                400, NO_ACTIVE_PERIOD, "Subscription has no active billing period"
            )
        recorded_at = ensure_utc(timestamp) or utcnow()
        if recorded_at < period_start or recorded_at > period_end:
            raise billing_error(
                400,
                USAGE_OUTSIDE_PERIOD,
                "Usage timestamp is outside the current billing period",
            )

        record = UsageRecord(
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            usage_type=usage_type,
            quantity=float(quantity),
            unit=USAGE_UNITS[usage_type],
            recorded_at=recorded_at,
            period_start=period_start,
            period_end=period_end,
            is_billable=subscription.metered_billing_enabled,
            idempotency_key=idempotency_key,
        )
        db.add(record)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            existing = self._get_by_key(db, idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return existing

        if subscription.metered_billing_enabled and subscription.processor_item_id:
            self._forward_to_processor(db, subscription, record)

        db.commit()
        db.refresh(record)
        USAGE_REPORTED.labels(usage_type.value).inc()
        logger.info(
            "Recorded %s usage %.4f for subscription %s",
            usage_type.value,
            record.quantity,
            subscription.id,
        )
        return record

    def _forward_to_processor(
        self, db: Session, subscription: Subscription, record: UsageRecord
    ) -> bool:
        if record.usage_type == UsageType.storage:
            totals = self.current_period_usage(db, subscription)
            quantity = math.ceil(totals.get(UsageType.storage, 0.0))
            action = UsageAction.set
        else:
            quantity = int(record.quantity)
            action = UsageAction.increment
        try:
            self.gateway.report_usage(
                subscription.processor_item_id,
                quantity=quantity,
                timestamp=int(ensure_utc(record.recorded_at).timestamp()),
                action=action.value,
            )
        except GatewayError as exc:
            logger.warning(
                "Failed to forward usage for subscription %s: %s",
                subscription.id,
                exc.__class__.__name__,
            )
            return False
        record.processor_reported_at = utcnow()
        return True

    def forward_unreported(self, db: Session, limit: int | None = None) -> dict:
        """Re-send current-period billable usage the processor never acknowledged.

        Storage is reported once per subscription as the period total, so every
        pending storage record of that subscription is settled by one ``set``.
        """
        query = (
            db.query(UsageRecord, Subscription)
            .join(Subscription, Subscription.id == UsageRecord.subscription_id)
            .filter(UsageRecord.is_billable.is_(True))
            .filter(UsageRecord.processor_reported_at.is_(None))
            .filter(UsageRecord.billed_at.is_(None))
            .filter(UsageRecord.period_start == Subscription.current_period_start)
            .filter(Subscription.metered_billing_enabled.is_(True))
            .filter(Subscription.processor_item_id.isnot(None))
            .order_by(UsageRecord.recorded_at.desc())
        )
        query = query.limit(limit or settings.usage_forward_batch_size)

        forwarded = failed = 0
        storage_outcome: dict[UUID, bool] = {}
        for record, subscription in query.all():
            if record.usage_type == UsageType.storage and subscription.id in storage_outcome:
                ok = storage_outcome[subscription.id]
                if ok:
                    record.processor_reported_at = utcnow()
            else:
                ok = self._forward_to_processor(db, subscription, record)
                if record.usage_type == UsageType.storage:
                    storage_outcome[subscription.id] = ok
            if ok:
                forwarded += 1
            else:
                failed += 1
        db.commit()
        if forwarded or failed:
            logger.info("Usage re-forward: %d forwarded, %d still pending", forwarded, failed)
        return {"forwarded": forwarded, "failed": failed}

    @staticmethod
    def _get_by_key(db: Session, idempotency_key: str) -> UsageRecord | None:
        return (
            db.query(UsageRecord)
            .filter(UsageRecord.idempotency_key == idempotency_key)
            .first()
        )

    def track_storage(
        self, db: Session, subscription_id: str | UUID, bytes_used: int
    ) -> UsageRecord:
        return self.report_usage(
            db, subscription_id, UsageType.storage, bytes_used / BYTES_PER_GB
        )

    def track_api_request(
        self, db: Session, subscription_id: str | UUID, count: int = 1
    ) -> UsageRecord:
        return self.report_usage(db, subscription_id, UsageType.api_call, count)

    def track_document(
        self, db: Session, subscription_id: str | UUID, count: int = 1
    ) -> UsageRecord:
        return self.report_usage(db, subscription_id, UsageType.document_processed, count)

    @staticmethod
    def current_period_usage(
        db: Session, subscription: Subscription
    ) -> dict[UsageType, float]:
        """Sum quantities per usage type for the subscription's current period."""
        totals = {usage_type: 0.0 for usage_type in UsageType}
        if subscription.current_period_start is None:
            return totals
        rows = (
            db.query(UsageRecord.usage_type, func.sum(UsageRecord.quantity))
            .filter(UsageRecord.subscription_id == subscription.id)
            .filter(UsageRecord.period_start == subscription.current_period_start)
            .group_by(UsageRecord.usage_type)
            .all()
        )
        for usage_type, total in rows:
            totals[UsageType(usage_type)] = float(total or 0.0)
        return totals

    def check_limits(
        self, db: Session, subscription: Subscription
    ) -> list[UsageLimitStatus]:
        usage = self.current_period_usage(db, subscription)
        return [
            limit_status(usage_type, usage[usage_type], limit)
            for usage_type, limit in _usage_limits(db, subscription).items()
        ]

    def summary(self, db: Session, subscription: Subscription) -> UsageSummary:
        usage = self.current_period_usage(db, subscription)
        return UsageSummary(
            subscription_id=subscription.id,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            usage={usage_type.value: total for usage_type, total in usage.items()},
            limits=[
                limit_status(usage_type, usage[usage_type], limit)
                for usage_type, limit in _usage_limits(db, subscription).items()
            ],
        )

    @staticmethod
    def reset(db: Session, subscription: Subscription, new_period_start: datetime) -> int:
        """Mark records from earlier periods as billed. Records are never deleted."""
        count = (
            db.query(UsageRecord)
            .filter(UsageRecord.subscription_id == subscription.id)
            .filter(UsageRecord.billed_at.is_(None))
            .filter(UsageRecord.period_start < new_period_start)
            .update({UsageRecord.billed_at: utcnow()}, synchronize_session=False)
        )
        if count:
            logger.info(
                "Marked %d usage records billed for subscription %s", count, subscription.id
            )
        return count

    @staticmethod
    def history(
        db: Session,
        subscription_id: str | UUID,
        usage_type: UsageType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[UsageRecord], int]:
        query = db.query(UsageRecord).filter(
            UsageRecord.subscription_id == coerce_uuid(subscription_id)
        )
        if usage_type is not None:
            query = query.filter(UsageRecord.usage_type == usage_type)
        if start is not None:
            query = query.filter(UsageRecord.recorded_at >= start)
        if end is not None:
            query = query.filter(UsageRecord.recorded_at <= end)
        total = query.count()
        query = query.order_by(UsageRecord.recorded_at.desc())
        return list(apply_pagination(query, limit, offset).all()), total

    @staticmethod
    def aggregate(
        db: Session,
        subscription_id: str | UUID,
        start: datetime,
        end: datetime,
        group_by: str = "day",
    ) -> list[UsageBucket]:
        """Bucket usage by day, week or month."""
        if group_by not in {"day", "week", "month"}:
            raise ValueError(f"Unsupported group_by: {group_by}")
        records = (
            db.query(UsageRecord)
            .filter(UsageRecord.subscription_id == coerce_uuid(subscription_id))
            .filter(UsageRecord.recorded_at >= start)
            .filter(UsageRecord.recorded_at <= end)
            .all()
        )
        buckets: dict[tuple[datetime, UsageType], float] = defaultdict(float)
        for record in records:
            recorded_at = ensure_utc(record.recorded_at)
            buckets[(_bucket_start(recorded_at, group_by), record.usage_type)] += record.quantity
        return [
            UsageBucket(bucket_start=bucket, usage_type=usage_type, quantity=quantity)
            for (bucket, usage_type), quantity in sorted(
                buckets.items(), key=lambda item: (item[0][0], item[0][1].value)
            )
        ]


usage_ledger = UsageLedger()
