"""Business error codes surfaced by the billing API.

Services raise ``HTTPException`` with a ``{"code", "message"}`` detail; the
error handlers turn that into the response envelope. Processor messages are
never passed through, only these codes.
"""
from fastapi import HTTPException

from billing_engine.services.payment_gateway import (
    GatewayError,
    GatewayNotConfigured,
    PaymentDeclined,
)

PLAN_NOT_FOUND = "plan_not_found"
PLAN_UNAVAILABLE = "plan_unavailable"
CUSTOMER_NOT_FOUND = "customer_not_found"
SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
INVOICE_NOT_FOUND = "invoice_not_found"
ALREADY_SUBSCRIBED = "already_subscribed"
ALREADY_CANCELED = "already_canceled"
NOT_SCHEDULED_FOR_CANCELLATION = "not_scheduled_for_cancellation"
NO_CHANGE = "no_change"
PAYMENT_METHOD_DECLINED = "payment_method_declined"
PROCESSOR_REJECTED = "processor_rejected"
PROCESSOR_UNAVAILABLE = "processor_unavailable"
INVALID_PROMOTION_CODE = "invalid_promotion_code"
INVALID_QUANTITY = "invalid_quantity"
NO_ACTIVE_PERIOD = "no_active_period"
USAGE_OUTSIDE_PERIOD = "usage_outside_period"
INVOICE_ALREADY_PAID = "invoice_already_paid"
INVOICE_VOID = "invoice_void"
CONCURRENT_UPDATE = "concurrent_update"
WEBHOOK_EVENT_NOT_FOUND = "webhook_event_not_found"
CONTRACT_NOT_FOUND = "contract_not_found"
CONTRACT_EXISTS = "contract_exists"
INVALID_CONTRACT_TERM = "invalid_contract_term"
INVOICE_NOT_DRAFT = "invoice_not_draft"


def billing_error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def gateway_http_error(exc: GatewayError) -> HTTPException:
    """Map a processor failure to an API error without echoing processor text."""
    if isinstance(exc, PaymentDeclined):
        return billing_error(400, PAYMENT_METHOD_DECLINED, "The payment method was declined")
    if exc.transient or isinstance(exc, GatewayNotConfigured):
        return billing_error(
            503, PROCESSOR_UNAVAILABLE, "The payment processor is unavailable, try again later"
        )
    return billing_error(400, PROCESSOR_REJECTED, "The payment processor rejected the request")
