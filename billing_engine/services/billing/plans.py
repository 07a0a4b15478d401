import logging
from uuid import UUID

from sqlalchemy.orm import Session

from billing_engine.models.billing import BillingCycle, PricingPlan, Subscription
from billing_engine.schemas.billing import PlanLimits
from billing_engine.services.billing.enterprise import in_force_contract
from billing_engine.services.billing.errors import (
    PLAN_NOT_FOUND,
    PLAN_UNAVAILABLE,
    billing_error,
)
from billing_engine.services.common import coerce_uuid

logger = logging.getLogger(__name__)

UNLIMITED = -1


def monthly_equivalent_cents(amount_cents: int, cycle: BillingCycle) -> float:
    """Normalise a recurring amount to a per-month figure."""
    if cycle == BillingCycle.annual:
        return amount_cents / 12
    return float(amount_cents)


class PricingPlans:
    @staticmethod
    def get(db: Session, plan_id: str | UUID) -> PricingPlan:
        try:
            plan = db.get(PricingPlan, coerce_uuid(plan_id))
        except ValueError:
            plan = None
        if not plan:
            raise billing_error(404, PLAN_NOT_FOUND, "Pricing plan not found")
        return plan

    @staticmethod
    def get_by_name(db: Session, name: str) -> PricingPlan | None:
        return db.query(PricingPlan).filter(PricingPlan.name == name).first()

    @staticmethod
    def get_by_processor_price(
        db: Session, price_id: str | None
    ) -> tuple[PricingPlan, BillingCycle] | None:
        if not price_id:
            return None
        plan = (
            db.query(PricingPlan)
            .filter(PricingPlan.processor_monthly_price_id == price_id)
            .first()
        )
        if plan:
            return plan, BillingCycle.monthly
        plan = (
            db.query(PricingPlan)
            .filter(PricingPlan.processor_annual_price_id == price_id)
            .first()
        )
        if plan:
            return plan, BillingCycle.annual
        return None

    @staticmethod
    def list_visible(db: Session) -> list[PricingPlan]:
        return (
            db.query(PricingPlan)
            .filter(PricingPlan.is_active.is_(True))
            .filter(PricingPlan.is_visible.is_(True))
            .order_by(PricingPlan.sort_order.asc(), PricingPlan.monthly_price_cents.asc())
            .all()
        )

    @staticmethod
    def require_purchasable(
        db: Session, plan_id: str | UUID, cycle: BillingCycle
    ) -> tuple[PricingPlan, str]:
        """Return the plan and its processor price id for ``cycle``."""
        plan = PricingPlans.get(db, plan_id)
        if not plan.is_active:
            raise billing_error(400, PLAN_UNAVAILABLE, "Pricing plan is no longer available")
        price_id = plan.processor_price_id(cycle)
        if not price_id:
            raise billing_error(
                400,
                PLAN_UNAVAILABLE,
                f"Pricing plan is not offered with {cycle.value} billing",
            )
        return plan, price_id

    @staticmethod
    def limits(plan: PricingPlan) -> PlanLimits:
        return PlanLimits(
            storage_gb=plan.storage_gb,
            api_calls_per_month=plan.api_calls_per_month,
            documents_per_month=plan.documents_per_month,
            seats=plan.seats,
        )

    def limits_for(self, db: Session, subscription: Subscription) -> PlanLimits:
        """Plan limits with any active enterprise contract overrides applied."""
        limits = self.limits(subscription.plan)
        contract = in_force_contract(db, subscription.customer_id)
        if contract is None:
            return limits
        overrides = {
            field: getattr(contract, field)
            for field in PlanLimits.model_fields
            if getattr(contract, field) is not None
        }
        return limits.model_copy(update=overrides)


pricing_plans = PricingPlans()
