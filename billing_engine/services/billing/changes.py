import logging
from uuid import UUID

from sqlalchemy.orm import Session

from billing_engine.models.billing import (
    ChangeInitiator,
    Subscription,
    SubscriptionChange,
    SubscriptionChangeType,
)
from billing_engine.services.common import coerce_uuid
from billing_engine.services.query_utils import apply_pagination

logger = logging.getLogger(__name__)


def record_change(
    db: Session,
    subscription: Subscription,
    change_type: SubscriptionChangeType,
    initiated_by: ChangeInitiator = ChangeInitiator.system,
    *,
    from_plan_id: UUID | None = None,
    to_plan_id: UUID | None = None,
    from_amount_cents: int | None = None,
    to_amount_cents: int | None = None,
    proration_amount_cents: int | None = None,
    reason: str | None = None,
    processor_event_id: str | None = None,
) -> SubscriptionChange:
    """Append a transition row. Rows are never updated afterwards."""
    change = SubscriptionChange(
        subscription_id=subscription.id,
        customer_id=subscription.customer_id,
        change_type=change_type,
        initiated_by=initiated_by,
        from_plan_id=from_plan_id,
        to_plan_id=to_plan_id,
        from_amount_cents=from_amount_cents,
        to_amount_cents=to_amount_cents,
        proration_amount_cents=proration_amount_cents,
        reason=reason,
        processor_event_id=processor_event_id,
    )
    db.add(change)
    db.flush()
    logger.info(
        "Subscription %s change %s by %s",
        subscription.id,
        change_type.value,
        initiated_by.value,
        extra={"subscription_id": str(subscription.id)},
    )
    return change


def latest_change(
    db: Session,
    subscription_id: UUID,
    change_type: SubscriptionChangeType | None = None,
) -> SubscriptionChange | None:
    query = db.query(SubscriptionChange).filter(
        SubscriptionChange.subscription_id == subscription_id
    )
    if change_type is not None:
        query = query.filter(SubscriptionChange.change_type == change_type)
    return query.order_by(SubscriptionChange.created_at.desc()).first()


def list_changes(
    db: Session,
    subscription_id: str | UUID,
    *,
    limit: int,
    offset: int,
) -> tuple[list[SubscriptionChange], int]:
    query = db.query(SubscriptionChange).filter(
        SubscriptionChange.subscription_id == coerce_uuid(subscription_id)
    )
    total = query.count()
    query = query.order_by(SubscriptionChange.created_at.desc())
    return list(apply_pagination(query, limit, offset).all()), total
