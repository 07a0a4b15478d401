"""Typed processor webhook events.

Events are parsed into one model per known ``type`` string. Anything else
becomes :class:`UnknownEvent` so the synchronizer can acknowledge and skip it.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ProcessorObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ── Payload objects ──────────────────────────────────────


class PriceRef(ProcessorObject):
    id: str | None = None
    recurring: dict[str, Any] | None = None

    @property
    def is_metered(self) -> bool:
        return bool(self.recurring and self.recurring.get("usage_type") == "metered")


class SubscriptionItemObject(ProcessorObject):
    id: str
    price: PriceRef | None = None


class SubscriptionItemList(ProcessorObject):
    data: list[SubscriptionItemObject] = Field(default_factory=list)


class SubscriptionObject(ProcessorObject):
    id: str
    customer: str | None = None
    status: str
    currency: str = "usd"
    metadata: dict[str, str] = Field(default_factory=dict)
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)
    current_period_start: int | None = None
    current_period_end: int | None = None
    trial_start: int | None = None
    trial_end: int | None = None
    cancel_at_period_end: bool = False
    canceled_at: int | None = None
    ended_at: int | None = None

    @property
    def first_item(self) -> SubscriptionItemObject | None:
        return self.items.data[0] if self.items.data else None

    @property
    def has_metered_item(self) -> bool:
        return any(item.price is not None and item.price.is_metered for item in self.items.data)


class InvoiceLineObject(ProcessorObject):
    id: str | None = None
    type: str = "subscription"
    description: str | None = None
    amount: int = 0
    quantity: int | None = 1
    proration: bool = False
    price: PriceRef | None = None
    period: dict[str, int | None] | None = None


class InvoiceLineList(ProcessorObject):
    data: list[InvoiceLineObject] = Field(default_factory=list)


class PaymentError(ProcessorObject):
    message: str | None = None
    code: str | None = None


class InvoiceObject(ProcessorObject):
    id: str
    customer: str | None = None
    subscription: str | None = None
    number: str | None = None
    status: str | None = None
    currency: str = "usd"
    subtotal: int = 0
    tax: int | None = 0
    total: int = 0
    total_discount_amounts: list[dict[str, Any]] = Field(default_factory=list)
    amount_paid: int = 0
    amount_due: int = 0
    created: int | None = None
    due_date: int | None = None
    period_start: int | None = None
    period_end: int | None = None
    next_payment_attempt: int | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None
    last_finalization_error: PaymentError | None = None
    last_payment_error: PaymentError | None = None
    status_transitions: dict[str, int | None] = Field(default_factory=dict)
    lines: InvoiceLineList = Field(default_factory=InvoiceLineList)

    @property
    def discount_total(self) -> int:
        return sum(int(entry.get("amount") or 0) for entry in self.total_discount_amounts)

    @property
    def failure_message(self) -> str:
        for error in (self.last_payment_error, self.last_finalization_error):
            if error is not None and error.message:
                return error.message
        return "Unknown error"


class CustomerObject(ProcessorObject):
    id: str
    email: str | None = None
    name: str | None = None


class CardDetails(ProcessorObject):
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None


class PaymentMethodObject(ProcessorObject):
    id: str
    type: str = "card"
    customer: str | None = None
    card: CardDetails | None = None


# ── Event envelopes ──────────────────────────────────────


class EventEnvelope(ProcessorObject):
    id: str
    type: str
    created: int = 0
    livemode: bool = False


class SubscriptionEventData(ProcessorObject):
    object: SubscriptionObject


class InvoiceEventData(ProcessorObject):
    object: InvoiceObject


class CustomerEventData(ProcessorObject):
    object: CustomerObject


class PaymentMethodEventData(ProcessorObject):
    object: PaymentMethodObject


class SubscriptionCreatedEvent(EventEnvelope):
    type: Literal["customer.subscription.created"]
    data: SubscriptionEventData


class SubscriptionUpdatedEvent(EventEnvelope):
    type: Literal["customer.subscription.updated"]
    data: SubscriptionEventData


class SubscriptionDeletedEvent(EventEnvelope):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionEventData


class SubscriptionTrialWillEndEvent(EventEnvelope):
    type: Literal["customer.subscription.trial_will_end"]
    data: SubscriptionEventData


class InvoiceUpsertEvent(EventEnvelope):
    type: Literal["invoice.created", "invoice.finalized", "invoice.updated"]
    data: InvoiceEventData


class InvoicePaidEvent(EventEnvelope):
    type: Literal["invoice.paid"]
    data: InvoiceEventData


class InvoicePaymentFailedEvent(EventEnvelope):
    type: Literal["invoice.payment_failed"]
    data: InvoiceEventData


class InvoiceVoidedEvent(EventEnvelope):
    type: Literal["invoice.voided"]
    data: InvoiceEventData


class InvoiceUncollectibleEvent(EventEnvelope):
    type: Literal["invoice.marked_uncollectible"]
    data: InvoiceEventData


class CustomerUpdatedEvent(EventEnvelope):
    type: Literal["customer.updated"]
    data: CustomerEventData


class CustomerDeletedEvent(EventEnvelope):
    type: Literal["customer.deleted"]
    data: CustomerEventData


class PaymentMethodAttachedEvent(EventEnvelope):
    type: Literal["payment_method.attached"]
    data: PaymentMethodEventData


class PaymentMethodDetachedEvent(EventEnvelope):
    type: Literal["payment_method.detached"]
    data: PaymentMethodEventData


class UnknownEvent(EventEnvelope):
    data: dict[str, Any] = Field(default_factory=dict)


ProcessorEvent = (
    SubscriptionCreatedEvent
    | SubscriptionUpdatedEvent
    | SubscriptionDeletedEvent
    | SubscriptionTrialWillEndEvent
    | InvoiceUpsertEvent
    | InvoicePaidEvent
    | InvoicePaymentFailedEvent
    | InvoiceVoidedEvent
    | InvoiceUncollectibleEvent
    | CustomerUpdatedEvent
    | CustomerDeletedEvent
    | PaymentMethodAttachedEvent
    | PaymentMethodDetachedEvent
    | UnknownEvent
)

EVENT_MODELS: dict[str, type[EventEnvelope]] = {
    "customer.subscription.created": SubscriptionCreatedEvent,
    "customer.subscription.updated": SubscriptionUpdatedEvent,
    "customer.subscription.deleted": SubscriptionDeletedEvent,
    "customer.subscription.trial_will_end": SubscriptionTrialWillEndEvent,
    "invoice.created": InvoiceUpsertEvent,
    "invoice.finalized": InvoiceUpsertEvent,
    "invoice.updated": InvoiceUpsertEvent,
    "invoice.paid": InvoicePaidEvent,
    "invoice.payment_failed": InvoicePaymentFailedEvent,
    "invoice.voided": InvoiceVoidedEvent,
    "invoice.marked_uncollectible": InvoiceUncollectibleEvent,
    "customer.updated": CustomerUpdatedEvent,
    "customer.deleted": CustomerDeletedEvent,
    "payment_method.attached": PaymentMethodAttachedEvent,
    "payment_method.detached": PaymentMethodDetachedEvent,
}


def parse_event(payload: dict[str, Any]) -> ProcessorEvent:
    """Validate a decoded webhook body into its typed event model.

    Raises ``pydantic.ValidationError`` when a known event type carries a
    malformed object.
    """
    model = EVENT_MODELS.get(str(payload.get("type", "")), UnknownEvent)
    return model.model_validate(payload)  # type: ignore[return-value]
