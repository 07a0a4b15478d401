"""State synchronizer: applies processor webhook events to local billing state.

Each event is recorded by id before it is applied, so redeliveries of an
already-applied event are acknowledged without side effects. An event is
applied in a single transaction. Transient failures leave the event
``pending`` and surface as :class:`WebhookRetryableError` so the processor
redelivers; permanent failures mark it ``failed`` and are acknowledged.
"""

import json
import logging
from collections.abc import Callable
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing_engine.metrics import WEBHOOK_EVENTS
from billing_engine.models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    BillingCycle,
    ChangeInitiator,
    Customer,
    Invoice,
    InvoiceStatus,
    PaymentMethod,
    PricingPlan,
    Subscription,
    SubscriptionChangeType,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from billing_engine.schemas.events import (
    EVENT_MODELS,
    CustomerDeletedEvent,
    CustomerUpdatedEvent,
    InvoiceObject,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    InvoiceUncollectibleEvent,
    InvoiceUpsertEvent,
    InvoiceVoidedEvent,
    PaymentMethodAttachedEvent,
    PaymentMethodDetachedEvent,
    ProcessorEvent,
    SubscriptionCreatedEvent,
    SubscriptionDeletedEvent,
    SubscriptionObject,
    SubscriptionTrialWillEndEvent,
    SubscriptionUpdatedEvent,
    parse_event,
)
from billing_engine.services.billing.changes import latest_change, record_change
from billing_engine.services.billing.customers import Customers
from billing_engine.services.billing.errors import WEBHOOK_EVENT_NOT_FOUND, billing_error
from billing_engine.services.billing.invoices import invoices as invoice_service
from billing_engine.services.billing.notifications import (
    PAYMENT_FAILED,
    PAYMENT_RECOVERED,
    TRIAL_WILL_END,
    BillingNotifier,
    billing_notifier,
)
from billing_engine.services.billing.plans import pricing_plans
from billing_engine.services.billing.retries import PaymentRetryScheduler
from billing_engine.services.billing.usage import UsageLedger
from billing_engine.services.common import coerce_uuid, ensure_utc, from_unix, utcnow
from billing_engine.services.payment_gateway import StripeGateway, stripe_gateway
from billing_engine.services.query_utils import apply_ordering, apply_pagination, validate_enum
from billing_engine.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

PROVIDER = "stripe"

STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.active,
    "trialing": SubscriptionStatus.trialing,
    "past_due": SubscriptionStatus.past_due,
    "canceled": SubscriptionStatus.canceled,
    "unpaid": SubscriptionStatus.unpaid,
}

APPLIED = "processed"
IGNORED = "ignored"
DUPLICATE = "duplicate"
FAILED = "failed"


class WebhookRetryableError(Exception):
    """The event could not be applied yet; the processor should redeliver it."""


class InvalidWebhookPayload(Exception):
    pass


class PermanentWebhookError(Exception):
    """The event can never be applied as delivered."""


def map_status(processor_status: str | None) -> SubscriptionStatus:
    """Map a processor subscription status; anything unrecognised is canceled."""
    return STATUS_MAP.get(processor_status or "", SubscriptionStatus.canceled)


class StateSynchronizer:
    def __init__(
        self,
        gateway: StripeGateway | None = None,
        retries: PaymentRetryScheduler | None = None,
        usage: UsageLedger | None = None,
        notifier: BillingNotifier | None = None,
    ) -> None:
        self.gateway = gateway or stripe_gateway
        self.notifier = notifier or billing_notifier
        self.retries = retries or PaymentRetryScheduler(
            gateway=self.gateway, notifier=self.notifier
        )
        self.usage = usage or UsageLedger(gateway=self.gateway)
        self.customers = Customers(gateway=self.gateway)
        self._handlers: dict[type, Callable[[Session, ProcessorEvent], str]] = {
            SubscriptionCreatedEvent: self._on_subscription_created,
            SubscriptionUpdatedEvent: self._on_subscription_updated,
            SubscriptionDeletedEvent: self._on_subscription_deleted,
            SubscriptionTrialWillEndEvent: self._on_trial_will_end,
            InvoiceUpsertEvent: self._on_invoice_upsert,
            InvoicePaidEvent: self._on_invoice_paid,
            InvoicePaymentFailedEvent: self._on_invoice_payment_failed,
            InvoiceVoidedEvent: self._on_invoice_voided,
            InvoiceUncollectibleEvent: self._on_invoice_uncollectible,
            CustomerUpdatedEvent: self._on_customer_updated,
            CustomerDeletedEvent: self._on_customer_deleted,
            PaymentMethodAttachedEvent: self._on_payment_method_attached,
            PaymentMethodDetachedEvent: self._on_payment_method_detached,
        }

    # ── Entry point ──────────────────────────────────────

    def handle(self, db: Session, payload: bytes, signature_header: str) -> str:
        """Verify, deduplicate and apply one webhook delivery.

        Returns ``processed``, ``ignored``, ``duplicate`` or ``failed``.
        Raises ``InvalidSignatureError`` and ``GatewayNotConfigured`` from
        verification, ``InvalidWebhookPayload`` for undecodable bodies and
        ``WebhookRetryableError`` for transient failures.
        """
        self.gateway.verify_webhook_signature(payload, signature_header)
        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise InvalidWebhookPayload("Webhook body is not valid JSON") from exc
        if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
            raise InvalidWebhookPayload("Webhook body is missing id or type")

        event_id = str(body["id"])
        event_type = str(body["type"])
        metric_type = event_type if event_type in EVENT_MODELS else "unknown"
        log_extra = {"event_id": event_id, "event_type": event_type}

        record = self._claim_event(db, event_id, event_type, body)
        if record is None:
            WEBHOOK_EVENTS.labels(metric_type, DUPLICATE).inc()
            logger.info("Duplicate webhook %s ignored", event_id, extra=log_extra)
            return DUPLICATE
        record_id = record.id

        try:
            event = parse_event(body)
        except ValidationError as exc:
            logger.error("Malformed %s webhook %s", event_type, event_id, extra=log_extra)
            return self._mark_failed(db, record_id, f"Malformed event: {exc.error_count()} errors")

        try:
            handler = self._handlers.get(type(event))
            if handler is None:
                logger.info("Unhandled webhook type %s", event_type, extra=log_extra)
                outcome = IGNORED
            else:
                outcome = handler(db, event)
            record.status = (
                WebhookEventStatus.ignored if outcome == IGNORED else WebhookEventStatus.processed
            )
            record.processed_at = utcnow()
            record.error_message = None
            db.commit()
        except (WebhookRetryableError, StaleDataError) as exc:
            db.rollback()
            WEBHOOK_EVENTS.labels(metric_type, "retry").inc()
            logger.warning(
                "Webhook %s deferred: %s", event_id, exc.__class__.__name__, extra=log_extra
            )
            if isinstance(exc, WebhookRetryableError):
                raise
            raise WebhookRetryableError("Concurrent update, retry later") from exc
        except (PermanentWebhookError, IntegrityError) as exc:
            db.rollback()
            logger.error(
                "Webhook %s could not be applied: %s",
                event_id,
                exc if isinstance(exc, PermanentWebhookError) else "constraint violation",
                extra=log_extra,
            )
            message = str(exc) if isinstance(exc, PermanentWebhookError) else "Constraint violation"
            WEBHOOK_EVENTS.labels(metric_type, FAILED).inc()
            return self._mark_failed(db, record_id, message)

        WEBHOOK_EVENTS.labels(metric_type, outcome).inc()
        logger.info("Webhook %s %s", event_type, outcome, extra=log_extra)
        return outcome

    @staticmethod
    def _claim_event(
        db: Session, event_id: str, event_type: str, body: dict
    ) -> WebhookEvent | None:
        existing = db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()
        if existing is not None:
            if existing.status in (WebhookEventStatus.processed, WebhookEventStatus.ignored):
                return None
            return existing
        record = WebhookEvent(
            provider=PROVIDER,
            event_type=event_type,
            event_id=event_id,
            payload=body,
            status=WebhookEventStatus.pending,
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise WebhookRetryableError("Event is already being processed") from exc
        db.refresh(record)
        return record

    @staticmethod
    def _mark_failed(db: Session, record_id: UUID, message: str) -> str:
        record = db.get(WebhookEvent, record_id)
        record.status = WebhookEventStatus.failed
        record.error_message = message
        record.processed_at = utcnow()
        db.commit()
        return FAILED

    # ── Lookups ──────────────────────────────────────────

    @staticmethod
    def _subscription(db: Session, processor_id: str | None) -> Subscription | None:
        if not processor_id:
            return None
        return (
            db.query(Subscription)
            .filter(Subscription.processor_subscription_id == processor_id)
            .first()
        )

    # ── Subscription events ──────────────────────────────

    def _on_subscription_created(self, db: Session, event: SubscriptionCreatedEvent) -> str:
        obj = event.data.object
        existing = self._subscription(db, obj.id)
        if existing is not None:
            return self._apply_subscription_state(db, existing, obj, event.created)

        metadata = obj.metadata
        if not metadata.get("customer_id") or not metadata.get("pricing_plan_id"):
            logger.warning(
                "Subscription %s has no billing metadata, skipping", obj.id,
                extra={"event_id": event.id},
            )
            return IGNORED
        try:
            customer_id = coerce_uuid(metadata["customer_id"])
            plan_id = coerce_uuid(metadata["pricing_plan_id"])
            cycle = BillingCycle(metadata.get("billing_cycle") or BillingCycle.monthly.value)
        except ValueError as exc:
            raise PermanentWebhookError("Invalid subscription metadata") from exc

        customer = db.get(Customer, customer_id)
        plan = db.get(PricingPlan, plan_id)
        if customer is None or plan is None:
            raise WebhookRetryableError("Customer or plan not found")

        status = map_status(obj.status)
        if status in LIVE_SUBSCRIPTION_STATUSES:
            live = (
                db.query(Subscription)
                .filter(Subscription.customer_id == customer.id)
                .filter(Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES))
                .first()
            )
            if live is not None:
                raise PermanentWebhookError(
                    f"Customer {customer.id} already has live subscription {live.id}"
                )

        item = obj.first_item
        subscription = Subscription(
            customer_id=customer.id,
            pricing_plan_id=plan.id,
            processor_subscription_id=obj.id,
            processor_item_id=item.id if item else None,
            status=status,
            billing_cycle=cycle,
            amount_cents=plan.price_cents(cycle),
            currency=obj.currency.upper(),
            current_period_start=from_unix(obj.current_period_start),
            current_period_end=from_unix(obj.current_period_end),
            trial_start=from_unix(obj.trial_start),
            trial_end=from_unix(obj.trial_end),
            cancel_at_period_end=obj.cancel_at_period_end,
            canceled_at=from_unix(obj.canceled_at),
            ended_at=from_unix(obj.ended_at),
            metered_billing_enabled=obj.has_metered_item,
            processor_updated_at=event.created,
            metadata_=dict(metadata),
        )
        db.add(subscription)
        try:
            db.flush()
        except IntegrityError as exc:
            raise WebhookRetryableError("Subscription insert collided") from exc

        try:
            initiated_by = ChangeInitiator(metadata.get("initiated_by") or "customer")
        except ValueError:
            initiated_by = ChangeInitiator.customer
        change_type = (
            SubscriptionChangeType.trial_started
            if status == SubscriptionStatus.trialing
            else SubscriptionChangeType.created
        )
        record_change(
            db,
            subscription,
            change_type,
            initiated_by,
            to_plan_id=plan.id,
            to_amount_cents=subscription.amount_cents,
            processor_event_id=event.id,
        )
        logger.info(
            "Created Subscription: %s",
            subscription.id,
            extra={"subscription_id": str(subscription.id), "customer_id": str(customer.id)},
        )
        return APPLIED

    def _on_subscription_updated(self, db: Session, event: SubscriptionUpdatedEvent) -> str:
        obj = event.data.object
        subscription = self._subscription(db, obj.id)
        if subscription is None:
            raise WebhookRetryableError(f"Subscription {obj.id} not materialized yet")
        return self._apply_subscription_state(db, subscription, obj, event.created)

    def _apply_subscription_state(
        self,
        db: Session,
        subscription: Subscription,
        obj: SubscriptionObject,
        event_created: int,
    ) -> str:
        if subscription.processor_updated_at and event_created < subscription.processor_updated_at:
            logger.info(
                "Skipping stale update for subscription %s", subscription.id,
                extra={"subscription_id": str(subscription.id)},
            )
            return IGNORED

        previous_start = ensure_utc(subscription.current_period_start)
        new_start = from_unix(obj.current_period_start)

        subscription.status = map_status(obj.status)
        subscription.current_period_start = new_start or subscription.current_period_start
        subscription.current_period_end = (
            from_unix(obj.current_period_end) or subscription.current_period_end
        )
        subscription.trial_start = from_unix(obj.trial_start)
        subscription.trial_end = from_unix(obj.trial_end)
        subscription.cancel_at_period_end = obj.cancel_at_period_end
        subscription.canceled_at = from_unix(obj.canceled_at)
        subscription.ended_at = from_unix(obj.ended_at)
        subscription.metered_billing_enabled = obj.has_metered_item
        subscription.processor_updated_at = event_created

        item = obj.first_item
        if item is not None:
            subscription.processor_item_id = item.id
            matched = pricing_plans.get_by_processor_price(
                db, item.price.id if item.price else None
            )
            if matched is not None:
                plan, cycle = matched
                subscription.pricing_plan_id = plan.id
                subscription.billing_cycle = cycle
                subscription.amount_cents = plan.price_cents(cycle)
        db.flush()

        if previous_start and new_start and new_start > previous_start:
            self.usage.reset(db, subscription, new_start)
        return APPLIED

    def _on_subscription_deleted(self, db: Session, event: SubscriptionDeletedEvent) -> str:
        obj = event.data.object
        subscription = self._subscription(db, obj.id)
        if subscription is None:
            logger.warning("Deleted subscription %s is unknown locally", obj.id)
            return IGNORED

        ended_at = from_unix(obj.ended_at) or from_unix(event.created) or utcnow()
        subscription.status = SubscriptionStatus.canceled
        subscription.ended_at = subscription.ended_at or ended_at
        subscription.canceled_at = (
            subscription.canceled_at or from_unix(obj.canceled_at) or ended_at
        )
        subscription.cancel_at_period_end = False
        subscription.processor_updated_at = max(
            subscription.processor_updated_at or 0, event.created
        )
        db.flush()

        if not self._cancellation_recorded(db, subscription.id):
            record_change(
                db,
                subscription,
                SubscriptionChangeType.canceled,
                ChangeInitiator.system,
                from_plan_id=subscription.pricing_plan_id,
                from_amount_cents=subscription.amount_cents,
                reason="Subscription ended at processor",
                processor_event_id=event.id,
            )
        self.retries.cancel_for_subscription(db, subscription.id)
        return APPLIED

    @staticmethod
    def _cancellation_recorded(db: Session, subscription_id: UUID) -> bool:
        """A cancellation row exists that no later reactivation has undone."""
        canceled = latest_change(db, subscription_id, SubscriptionChangeType.canceled)
        if canceled is None:
            return False
        reactivated = latest_change(db, subscription_id, SubscriptionChangeType.reactivated)
        return reactivated is None or canceled.created_at > reactivated.created_at

    def _on_trial_will_end(self, db: Session, event: SubscriptionTrialWillEndEvent) -> str:
        obj = event.data.object
        subscription = self._subscription(db, obj.id)
        if subscription is None:
            return IGNORED
        self.notifier.notify(
            TRIAL_WILL_END,
            subscription_id=str(subscription.id),
            customer_id=str(subscription.customer_id),
            trial_end=obj.trial_end,
        )
        return APPLIED

    # ── Invoice events ───────────────────────────────────

    def _upsert_invoice(
        self, db: Session, obj: InvoiceObject
    ) -> tuple[Invoice | None, InvoiceStatus | None]:
        """Upsert the local invoice; returns it with the status it had before."""
        customer = self.customers.get_by_processor_id(db, obj.customer)
        if customer is None:
            logger.warning("Invoice %s belongs to an unknown customer", obj.id)
            return None, None
        previous = invoice_service.get_by_processor_id(db, obj.id)
        previous_status = previous.status if previous is not None else None
        subscription = self._subscription(db, obj.subscription)
        invoice = invoice_service.upsert_from_processor(
            db, obj, customer.id, subscription.id if subscription else None
        )
        return invoice, previous_status

    def _on_invoice_upsert(self, db: Session, event: InvoiceUpsertEvent) -> str:
        invoice, _ = self._upsert_invoice(db, event.data.object)
        if invoice is None:
            return IGNORED
        if event.type == "invoice.finalized" and invoice.status == InvoiceStatus.draft:
            invoice.status = InvoiceStatus.open
            db.flush()
        return APPLIED

    def _on_invoice_paid(self, db: Session, event: InvoicePaidEvent) -> str:
        obj = event.data.object
        invoice, previous_status = self._upsert_invoice(db, obj)
        if invoice is None:
            return IGNORED
        if previous_status == InvoiceStatus.paid:
            self.retries.cancel_retries(db, invoice.id)
            return APPLIED

        had_failed = invoice.attempt_count > 0 or invoice.payment_failure_reason is not None
        paid_at = from_unix(obj.status_transitions.get("paid_at")) or from_unix(event.created)
        invoice_service.mark_paid(db, invoice, paid_at=paid_at)
        self.retries.cancel_retries(db, invoice.id)

        subscription = invoice.subscription
        if had_failed and subscription is not None:
            record_change(
                db,
                subscription,
                SubscriptionChangeType.payment_recovered,
                ChangeInitiator.system,
                processor_event_id=event.id,
            )
            self.notifier.notify(
                PAYMENT_RECOVERED,
                invoice_id=str(invoice.id),
                customer_id=str(invoice.customer_id),
                subscription_id=str(subscription.id),
            )
        return APPLIED

    def _on_invoice_payment_failed(self, db: Session, event: InvoicePaymentFailedEvent) -> str:
        obj = event.data.object
        invoice, _ = self._upsert_invoice(db, obj)
        if invoice is None:
            return IGNORED
        if invoice.status in (InvoiceStatus.paid, InvoiceStatus.void):
            logger.info("Ignoring payment failure for settled invoice %s", invoice.id)
            return IGNORED

        reason = obj.failure_message
        invoice.attempt_count = (invoice.attempt_count or 0) + 1
        invoice.payment_failure_reason = reason
        invoice.processor_next_payment_attempt = from_unix(obj.next_payment_attempt)
        db.flush()
        self.retries.schedule_for_failed_invoice(db, invoice)

        subscription = invoice.subscription
        if subscription is not None:
            record_change(
                db,
                subscription,
                SubscriptionChangeType.payment_failed,
                ChangeInitiator.system,
                reason=reason,
                processor_event_id=event.id,
            )
        self.notifier.notify(
            PAYMENT_FAILED,
            invoice_id=str(invoice.id),
            customer_id=str(invoice.customer_id),
            subscription_id=str(subscription.id) if subscription else None,
            attempt_count=invoice.attempt_count,
            reason=reason,
        )
        return APPLIED

    def _on_invoice_voided(self, db: Session, event: InvoiceVoidedEvent) -> str:
        invoice, _ = self._upsert_invoice(db, event.data.object)
        if invoice is None:
            return IGNORED
        if invoice.status != InvoiceStatus.paid:
            invoice.status = InvoiceStatus.void
        invoice.next_payment_attempt = None
        self.retries.cancel_retries(db, invoice.id)
        db.flush()
        return APPLIED

    def _on_invoice_uncollectible(self, db: Session, event: InvoiceUncollectibleEvent) -> str:
        invoice, _ = self._upsert_invoice(db, event.data.object)
        if invoice is None:
            return IGNORED
        if invoice.status not in (InvoiceStatus.paid, InvoiceStatus.void):
            invoice.status = InvoiceStatus.uncollectible
        invoice.next_payment_attempt = None
        self.retries.cancel_retries(db, invoice.id)
        db.flush()
        return APPLIED

    # ── Customer events ──────────────────────────────────

    def _on_customer_updated(self, db: Session, event: CustomerUpdatedEvent) -> str:
        obj = event.data.object
        customer = self.customers.get_by_processor_id(db, obj.id)
        if customer is None:
            return IGNORED
        self.customers.sync_contact(db, customer, obj.email, obj.name)
        return APPLIED

    def _on_customer_deleted(self, db: Session, event: CustomerDeletedEvent) -> str:
        customer = self.customers.get_by_processor_id(db, event.data.object.id)
        if customer is None:
            return IGNORED
        self.customers.retire(db, customer)
        return APPLIED

    def _on_payment_method_attached(
        self, db: Session, event: PaymentMethodAttachedEvent
    ) -> str:
        obj = event.data.object
        customer = self.customers.get_by_processor_id(db, obj.customer)
        if customer is None:
            return IGNORED
        method = (
            db.query(PaymentMethod)
            .filter(PaymentMethod.processor_payment_method_id == obj.id)
            .first()
        )
        if method is None:
            method = PaymentMethod(customer_id=customer.id, processor_payment_method_id=obj.id)
            db.add(method)
        method.customer_id = customer.id
        method.type = obj.type
        if obj.card is not None:
            method.card_brand = obj.card.brand
            method.card_last4 = obj.card.last4
            method.card_exp_month = obj.card.exp_month
            method.card_exp_year = obj.card.exp_year
        method.is_active = True
        if not customer.default_payment_method_id:
            customer.default_payment_method_id = obj.id
            method.is_default = True
        db.flush()
        return APPLIED

    def _on_payment_method_detached(
        self, db: Session, event: PaymentMethodDetachedEvent
    ) -> str:
        obj = event.data.object
        method = (
            db.query(PaymentMethod)
            .filter(PaymentMethod.processor_payment_method_id == obj.id)
            .first()
        )
        if method is None:
            return IGNORED
        method.is_active = False
        method.is_default = False
        customer = method.customer
        if customer is not None and customer.default_payment_method_id == obj.id:
            customer.default_payment_method_id = None
        db.flush()
        return APPLIED


class WebhookEvents(ListResponseMixin):
    @staticmethod
    def get(db: Session, item_id: str | UUID) -> WebhookEvent:
        try:
            item = db.get(WebhookEvent, coerce_uuid(item_id))
        except ValueError:
            item = None
        if not item:
            raise billing_error(404, WEBHOOK_EVENT_NOT_FOUND, "Webhook event not found")
        return item

    @staticmethod
    def list(
        db: Session,
        provider: str | None = None,
        event_type: str | None = None,
        status: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        *,
        limit: int,
        offset: int,
    ) -> tuple[list[WebhookEvent], int]:
        query = db.query(WebhookEvent)
        if provider:
            query = query.filter(WebhookEvent.provider == provider)
        if event_type:
            query = query.filter(WebhookEvent.event_type == event_type)
        if status:
            query = query.filter(
                WebhookEvent.status == validate_enum(status, WebhookEventStatus, "status")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": WebhookEvent.created_at, "processed_at": WebhookEvent.processed_at},
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total


state_synchronizer = StateSynchronizer()
webhook_events = WebhookEvents()
