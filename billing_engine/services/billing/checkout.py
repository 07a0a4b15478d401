"""Hosted checkout and billing-portal sessions."""

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from billing_engine.models.billing import BillingCycle
from billing_engine.schemas.billing import CheckoutSessionRead, PortalSessionRead
from billing_engine.services.billing.customers import Customers
from billing_engine.services.billing.errors import (
    INVALID_PROMOTION_CODE,
    billing_error,
    gateway_http_error,
)
from billing_engine.services.billing.plans import pricing_plans
from billing_engine.services.payment_gateway import (
    GatewayError,
    StripeGateway,
    stripe_gateway,
)

logger = logging.getLogger(__name__)


class CheckoutSessions:
    def __init__(
        self,
        gateway: StripeGateway | None = None,
        customer_service: Customers | None = None,
    ) -> None:
        self.gateway = gateway or stripe_gateway
        self.customers = customer_service or Customers(gateway=self.gateway)

    def create_checkout_session(
        self,
        db: Session,
        organization_id: str | UUID,
        email: str,
        plan_id: str | UUID,
        success_url: str,
        cancel_url: str,
        billing_cycle: BillingCycle | str = BillingCycle.monthly,
        trial_days: int | None = None,
        promotion_code: str | None = None,
        name: str | None = None,
    ) -> CheckoutSessionRead:
        billing_cycle = BillingCycle(billing_cycle)
        plan, price_id = pricing_plans.require_purchasable(db, plan_id, billing_cycle)
        try:
            customer = self.customers.get_or_create(db, organization_id, email, name)
            promotion_code_id = None
            if promotion_code:
                promo = self.gateway.find_promotion_code(promotion_code)
                if promo is None:
                    raise billing_error(
                        400, INVALID_PROMOTION_CODE, "Promotion code is not valid"
                    )
                promotion_code_id = promo["id"]
            session = self.gateway.create_checkout_session(
                customer.processor_customer_id,
                price_id,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={
                    "customer_id": str(customer.id),
                    "organization_id": str(customer.organization_id),
                    "pricing_plan_id": str(plan.id),
                    "billing_cycle": billing_cycle.value,
                },
                trial_period_days=trial_days,
                promotion_code_id=promotion_code_id,
            )
        except GatewayError as exc:
            raise gateway_http_error(exc) from exc
        logger.info(
            "Created checkout session %s for customer %s",
            session.get("id"),
            customer.id,
            extra={"customer_id": str(customer.id)},
        )
        return CheckoutSessionRead(session_id=session["id"], url=session.get("url"))

    def create_billing_portal_session(
        self,
        db: Session,
        organization_id: str | UUID,
        email: str,
        return_url: str,
        name: str | None = None,
    ) -> PortalSessionRead:
        try:
            customer = self.customers.get_or_create(db, organization_id, email, name)
            session = self.gateway.create_billing_portal_session(
                customer.processor_customer_id, return_url
            )
        except GatewayError as exc:
            raise gateway_http_error(exc) from exc
        return PortalSessionRead(url=session["url"])


checkout_sessions = CheckoutSessions()
