"""Lifecycle controller for customer-initiated subscription changes.

Every mutation goes through the processor first. Local state is written only
after the processor accepted the request, and subscription rows are guarded by
their ``version`` column so concurrent writers retry instead of clobbering
each other.
"""

import logging
from collections.abc import Callable
from datetime import timedelta
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing_engine.config import settings
from billing_engine.models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    BillingCycle,
    ChangeInitiator,
    Subscription,
    SubscriptionChange,
    SubscriptionChangeType,
    SubscriptionStatus,
)
from billing_engine.schemas.billing import (
    PlanLimits,
    PricingPlanRead,
    SubscriptionDetail,
    SubscriptionRead,
    SubscriptionResult,
    SubscriptionUpdateRequest,
)
from billing_engine.services.billing import changes
from billing_engine.services.billing.customers import Customers
from billing_engine.services.billing.errors import (
    ALREADY_CANCELED,
    ALREADY_SUBSCRIBED,
    CONCURRENT_UPDATE,
    NO_CHANGE,
    NOT_SCHEDULED_FOR_CANCELLATION,
    SUBSCRIPTION_NOT_FOUND,
    billing_error,
    gateway_http_error,
)
from billing_engine.services.billing.plans import monthly_equivalent_cents, pricing_plans
from billing_engine.services.billing.retries import PaymentRetryScheduler
from billing_engine.services.common import coerce_uuid, utcnow
from billing_engine.services.payment_gateway import GatewayError, StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)

MAX_VERSION_RETRIES = 3


def _read(subscription: Subscription) -> SubscriptionRead:
    return SubscriptionRead.model_validate(subscription)


def _confirmed_at() -> int:
    """Processor-clock stamp for a mutation the processor just accepted."""
    return int(utcnow().timestamp())


def _stamp(subscription: Subscription, confirmed_at: int) -> None:
    # Webhook events created before this point describe older processor state.
    subscription.processor_updated_at = max(subscription.processor_updated_at or 0, confirmed_at)


def _unconfirmed(subscription: Subscription, action: str, exc: GatewayError) -> SubscriptionResult:
    logger.warning(
        "%s for subscription %s outcome unknown: %s",
        action,
        subscription.id,
        exc.__class__.__name__,
        extra={"subscription_id": str(subscription.id)},
    )
    return SubscriptionResult(
        status="pending",
        processor_subscription_id=subscription.processor_subscription_id,
        message=f"The processor has not confirmed the {action.lower()} yet",
    )


class SubscriptionLifecycle:
    def __init__(
        self,
        gateway: StripeGateway | None = None,
        customer_service: Customers | None = None,
        retries: PaymentRetryScheduler | None = None,
    ) -> None:
        self.gateway = gateway or stripe_gateway
        self.customers = customer_service or Customers(gateway=self.gateway)
        self.retries = retries or PaymentRetryScheduler(gateway=self.gateway)

    # ── Queries ──────────────────────────────────────────

    @staticmethod
    def get(db: Session, subscription_id: str | UUID) -> Subscription:
        try:
            item = db.get(Subscription, coerce_uuid(subscription_id))
        except ValueError:
            item = None
        if not item:
            raise billing_error(404, SUBSCRIPTION_NOT_FOUND, "Subscription not found")
        return item

    @staticmethod
    def get_by_processor_id(db: Session, processor_subscription_id: str) -> Subscription | None:
        return (
            db.query(Subscription)
            .filter(Subscription.processor_subscription_id == processor_subscription_id)
            .first()
        )

    @staticmethod
    def get_current(db: Session, customer_id: UUID) -> Subscription | None:
        return (
            db.query(Subscription)
            .filter(Subscription.customer_id == customer_id)
            .filter(Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES))
            .order_by(Subscription.created_at.desc())
            .first()
        )

    def require_current(self, db: Session, customer_id: UUID) -> Subscription:
        subscription = self.get_current(db, customer_id)
        if subscription is None:
            raise billing_error(404, SUBSCRIPTION_NOT_FOUND, "No active subscription")
        return subscription

    @staticmethod
    def history(
        db: Session, subscription_id: str | UUID, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[SubscriptionChange], int]:
        return changes.list_changes(db, subscription_id, limit=limit, offset=offset)

    @staticmethod
    def record_change(
        db: Session,
        subscription: Subscription,
        change_type: SubscriptionChangeType,
        initiated_by: ChangeInitiator = ChangeInitiator.system,
        **fields,
    ) -> SubscriptionChange:
        return changes.record_change(db, subscription, change_type, initiated_by, **fields)

    @staticmethod
    def get_limits(db: Session, subscription: Subscription) -> PlanLimits:
        return pricing_plans.limits_for(db, subscription)

    def detail(self, db: Session, subscription: Subscription) -> SubscriptionDetail:
        return SubscriptionDetail(
            subscription=_read(subscription),
            plan=PricingPlanRead.model_validate(subscription.plan),
            limits=self.get_limits(db, subscription),
        )

    @staticmethod
    def list_expiring(db: Session, days_ahead: int = 7) -> list[Subscription]:
        """Live subscriptions ending their paid period or trial within the window."""
        now = utcnow()
        horizon = now + timedelta(days=days_ahead)
        return (
            db.query(Subscription)
            .filter(Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES))
            .filter(
                or_(
                    and_(
                        Subscription.cancel_at_period_end.is_(True),
                        Subscription.current_period_end >= now,
                        Subscription.current_period_end <= horizon,
                    ),
                    and_(
                        Subscription.status == SubscriptionStatus.trialing,
                        Subscription.trial_end >= now,
                        Subscription.trial_end <= horizon,
                    ),
                )
            )
            .order_by(Subscription.current_period_end.asc())
            .all()
        )

    # ── Version-guarded writes ───────────────────────────

    def _apply_with_retry(
        self,
        db: Session,
        subscription_id: UUID,
        mutate: Callable[[Subscription], None],
    ) -> Subscription:
        for attempt in range(1, MAX_VERSION_RETRIES + 1):
            subscription = db.get(Subscription, subscription_id)
            db.refresh(subscription)
            try:
                mutate(subscription)
                db.commit()
            except StaleDataError:
                db.rollback()
                logger.warning(
                    "Version conflict on subscription %s, attempt %d of %d",
                    subscription_id,
                    attempt,
                    MAX_VERSION_RETRIES,
                )
                continue
            db.refresh(subscription)
            return subscription
        raise billing_error(
            409, CONCURRENT_UPDATE, "Subscription was modified concurrently, try again"
        )

    # ── Commands ─────────────────────────────────────────

    def create(
        self,
        db: Session,
        organization_id: str | UUID,
        email: str,
        plan_id: str | UUID,
        billing_cycle: BillingCycle | str = BillingCycle.monthly,
        name: str | None = None,
        trial_days: int | None = None,
        payment_method_id: str | None = None,
        initiated_by: ChangeInitiator = ChangeInitiator.customer,
    ) -> SubscriptionResult:
        """Start a subscription at the processor.

        The local row is materialized by the ``customer.subscription.created``
        webhook. When it has not landed yet the result is ``pending``.
        """
        billing_cycle = BillingCycle(billing_cycle)
        plan, price_id = pricing_plans.require_purchasable(db, plan_id, billing_cycle)

        existing = self.customers.get_by_organization(db, organization_id)
        if existing is not None and self.get_current(db, existing.id) is not None:
            raise billing_error(
                400, ALREADY_SUBSCRIBED, "Organization already has an active subscription"
            )

        try:
            customer = self.customers.get_or_create(db, organization_id, email, name)
        except GatewayError as exc:
            raise gateway_http_error(exc) from exc

        if trial_days is None:
            trial_days = settings.billing_default_trial_days
        try:
            remote = self.gateway.create_subscription(
                customer.processor_customer_id,
                price_id,
                metadata={
                    "customer_id": str(customer.id),
                    "organization_id": str(customer.organization_id),
                    "pricing_plan_id": str(plan.id),
                    "billing_cycle": billing_cycle.value,
                    "initiated_by": initiated_by.value,
                },
                trial_period_days=trial_days or None,
                payment_method_id=payment_method_id,
            )
        except GatewayError as exc:
            if exc.transient:
                logger.warning(
                    "Subscription create for customer %s outcome unknown: %s",
                    customer.id,
                    exc.__class__.__name__,
                )
                return SubscriptionResult(
                    status="pending",
                    message="The processor has not confirmed the subscription yet",
                )
            raise gateway_http_error(exc) from exc

        processor_id = remote.get("id")
        local = self.get_by_processor_id(db, processor_id) if processor_id else None
        if local is not None:
            return SubscriptionResult(
                status="created",
                subscription=_read(local),
                processor_subscription_id=processor_id,
            )
        logger.info(
            "Subscription %s created at processor for customer %s, awaiting webhook",
            processor_id,
            customer.id,
        )
        return SubscriptionResult(
            status="pending",
            processor_subscription_id=processor_id,
            message="Subscription is being activated",
        )

    def change_plan(
        self,
        db: Session,
        subscription_id: str | UUID,
        plan_id: str | UUID,
        billing_cycle: BillingCycle | str | None = None,
        initiated_by: ChangeInitiator = ChangeInitiator.customer,
        reason: str | None = None,
    ) -> SubscriptionResult:
        subscription = self.get(db, subscription_id)
        if subscription.status == SubscriptionStatus.canceled:
            raise billing_error(400, ALREADY_CANCELED, "Subscription is canceled")
        cycle = BillingCycle(billing_cycle) if billing_cycle else subscription.billing_cycle
        plan, price_id = pricing_plans.require_purchasable(db, plan_id, cycle)
        if plan.id == subscription.pricing_plan_id and cycle == subscription.billing_cycle:
            raise billing_error(400, NO_CHANGE, "Subscription is already on this plan")

        new_amount = plan.price_cents(cycle)
        current_monthly = monthly_equivalent_cents(
            subscription.amount_cents, subscription.billing_cycle
        )
        change_type = (
            SubscriptionChangeType.upgraded
            if monthly_equivalent_cents(new_amount, cycle) > current_monthly
            else SubscriptionChangeType.downgraded
        )

        try:
            self.gateway.update_subscription(
                subscription.processor_subscription_id,
                subscription.processor_item_id,
                price_id,
                metadata={"pricing_plan_id": str(plan.id), "billing_cycle": cycle.value},
            )
        except GatewayError as exc:
            if exc.transient:
                return _unconfirmed(subscription, "Plan change", exc)
            raise gateway_http_error(exc) from exc
        confirmed_at = _confirmed_at()

        from_plan_id = subscription.pricing_plan_id
        from_amount = subscription.amount_cents

        def apply(item: Subscription) -> None:
            _stamp(item, confirmed_at)
            item.pricing_plan_id = plan.id
            item.billing_cycle = cycle
            item.amount_cents = new_amount
            changes.record_change(
                db,
                item,
                change_type,
                initiated_by,
                from_plan_id=from_plan_id,
                to_plan_id=plan.id,
                from_amount_cents=from_amount,
                to_amount_cents=new_amount,
                reason=reason,
            )

        subscription = self._apply_with_retry(db, subscription.id, apply)
        logger.info(
            "Subscription %s %s to plan %s",
            subscription.id,
            change_type.value,
            plan.name,
            extra={"subscription_id": str(subscription.id)},
        )
        return SubscriptionResult(
            status="updated",
            subscription=_read(subscription),
            processor_subscription_id=subscription.processor_subscription_id,
        )

    def set_cancel_at_period_end(
        self,
        db: Session,
        subscription_id: str | UUID,
        flag: bool,
        reason: str | None = None,
        initiated_by: ChangeInitiator = ChangeInitiator.customer,
    ) -> SubscriptionResult:
        subscription = self.get(db, subscription_id)
        if subscription.status == SubscriptionStatus.canceled or subscription.ended_at:
            raise billing_error(400, ALREADY_CANCELED, "Subscription is already canceled")
        try:
            self.gateway.set_cancel_at_period_end(subscription.processor_subscription_id, flag)
        except GatewayError as exc:
            if exc.transient:
                return _unconfirmed(
                    subscription, "Cancellation" if flag else "Reactivation", exc
                )
            raise gateway_http_error(exc) from exc
        confirmed_at = _confirmed_at()

        def apply(item: Subscription) -> None:
            _stamp(item, confirmed_at)
            was_scheduled = item.cancel_at_period_end
            item.cancel_at_period_end = flag
            if flag and not was_scheduled:
                item.canceled_at = utcnow()
                changes.record_change(
                    db,
                    item,
                    SubscriptionChangeType.canceled,
                    initiated_by,
                    from_plan_id=item.pricing_plan_id,
                    from_amount_cents=item.amount_cents,
                    reason=reason,
                )

        subscription = self._apply_with_retry(db, subscription.id, apply)
        return SubscriptionResult(
            status="canceled" if flag else "updated",
            subscription=_read(subscription),
            processor_subscription_id=subscription.processor_subscription_id,
        )

    def cancel_immediately(
        self,
        db: Session,
        subscription_id: str | UUID,
        reason: str | None = None,
        initiated_by: ChangeInitiator = ChangeInitiator.customer,
    ) -> SubscriptionResult:
        subscription = self.get(db, subscription_id)
        if subscription.status == SubscriptionStatus.canceled or subscription.ended_at:
            raise billing_error(400, ALREADY_CANCELED, "Subscription is already canceled")
        try:
            self.gateway.cancel_subscription(subscription.processor_subscription_id)
        except GatewayError as exc:
            if exc.transient:
                return _unconfirmed(subscription, "Cancellation", exc)
            raise gateway_http_error(exc) from exc
        confirmed_at = _confirmed_at()

        def apply(item: Subscription) -> None:
            _stamp(item, confirmed_at)
            now = utcnow()
            item.status = SubscriptionStatus.canceled
            item.canceled_at = item.canceled_at or now
            item.ended_at = now
            item.cancel_at_period_end = False
            changes.record_change(
                db,
                item,
                SubscriptionChangeType.canceled,
                initiated_by,
                from_plan_id=item.pricing_plan_id,
                from_amount_cents=item.amount_cents,
                reason=reason,
            )
            self.retries.cancel_for_subscription(db, item.id)

        subscription = self._apply_with_retry(db, subscription.id, apply)
        logger.info(
            "Subscription %s canceled immediately by %s",
            subscription.id,
            initiated_by.value,
            extra={"subscription_id": str(subscription.id)},
        )
        return SubscriptionResult(
            status="canceled",
            subscription=_read(subscription),
            processor_subscription_id=subscription.processor_subscription_id,
        )

    def reactivate(
        self,
        db: Session,
        subscription_id: str | UUID,
        initiated_by: ChangeInitiator = ChangeInitiator.customer,
    ) -> SubscriptionResult:
        subscription = self.get(db, subscription_id)
        if subscription.status == SubscriptionStatus.canceled or subscription.ended_at:
            raise billing_error(
                400, ALREADY_CANCELED, "Subscription has ended and cannot be reactivated"
            )
        if not subscription.cancel_at_period_end:
            raise billing_error(
                400,
                NOT_SCHEDULED_FOR_CANCELLATION,
                "Subscription is not scheduled for cancellation",
            )
        try:
            self.gateway.set_cancel_at_period_end(subscription.processor_subscription_id, False)
        except GatewayError as exc:
            if exc.transient:
                return _unconfirmed(subscription, "Reactivation", exc)
            raise gateway_http_error(exc) from exc
        confirmed_at = _confirmed_at()

        def apply(item: Subscription) -> None:
            _stamp(item, confirmed_at)
            item.cancel_at_period_end = False
            item.canceled_at = None
            changes.record_change(
                db,
                item,
                SubscriptionChangeType.reactivated,
                initiated_by,
                to_plan_id=item.pricing_plan_id,
                to_amount_cents=item.amount_cents,
            )

        subscription = self._apply_with_retry(db, subscription.id, apply)
        return SubscriptionResult(
            status="reactivated",
            subscription=_read(subscription),
            processor_subscription_id=subscription.processor_subscription_id,
        )

    def update(
        self,
        db: Session,
        subscription_id: str | UUID,
        payload: SubscriptionUpdateRequest,
        initiated_by: ChangeInitiator = ChangeInitiator.customer,
    ) -> SubscriptionResult:
        subscription = self.get(db, subscription_id)
        result: SubscriptionResult | None = None

        if payload.pricing_plan_id is not None or payload.billing_cycle is not None:
            result = self.change_plan(
                db,
                subscription.id,
                payload.pricing_plan_id or subscription.pricing_plan_id,
                billing_cycle=payload.billing_cycle,
                initiated_by=initiated_by,
                reason=payload.reason,
            )
            if result.status == "pending":
                return result

        if payload.cancel_at_period_end is True:
            result = self.set_cancel_at_period_end(
                db, subscription.id, True, reason=payload.reason, initiated_by=initiated_by
            )
        elif payload.cancel_at_period_end is False and subscription.cancel_at_period_end:
            result = self.reactivate(db, subscription.id, initiated_by=initiated_by)
        if result is not None and result.status == "pending":
            return result

        if payload.metadata_ is not None:
            patch = dict(payload.metadata_)

            def apply(item: Subscription) -> None:
                item.metadata_ = {**(item.metadata_ or {}), **patch}

            updated = self._apply_with_retry(db, subscription.id, apply)
            result = SubscriptionResult(
                status="updated",
                subscription=_read(updated),
                processor_subscription_id=updated.processor_subscription_id,
            )

        if result is None:
            raise billing_error(400, NO_CHANGE, "No changes requested")
        return result


subscription_lifecycle = SubscriptionLifecycle()
