"""Seed the default pricing plans.

Processor price ids come from the environment, e.g.
``STRIPE_PRICE_STARTER_MONTHLY`` and ``STRIPE_PRICE_STARTER_ANNUAL``.
Existing plans are updated in place, so the script is safe to re-run.
"""

import logging
import os

from dotenv import load_dotenv

from billing_engine.db import SessionLocal
from billing_engine.logging import configure_logging
from billing_engine.models.billing import PricingPlan
from billing_engine.services.billing.plans import pricing_plans

logger = logging.getLogger(__name__)

DEFAULT_PLANS = [
    {
        "name": "starter",
        "display_name": "Starter",
        "description": "Perfect for individuals and small teams",
        "monthly_price_cents": 990,
        "annual_price_cents": 9900,
        "storage_gb": 10,
        "api_calls_per_month": 10_000,
        "documents_per_month": 100,
        "seats": 3,
        "features": ["10GB Storage", "10K API Requests/month", "Email Support", "3 Team Members"],
        "sort_order": 1,
    },
    {
        "name": "professional",
        "display_name": "Professional",
        "description": "For growing businesses with advanced needs",
        "monthly_price_cents": 4900,
        "annual_price_cents": 49000,
        "storage_gb": 100,
        "api_calls_per_month": 100_000,
        "documents_per_month": 1_000,
        "seats": 10,
        "features": [
            "100GB Storage",
            "100K API Requests/month",
            "Priority Support",
            "10 Team Members",
            "Webhook Integration",
        ],
        "sort_order": 2,
    },
    {
        "name": "enterprise",
        "display_name": "Enterprise",
        "description": "Custom solutions for large organizations",
        "monthly_price_cents": 29900,
        "annual_price_cents": 299000,
        "storage_gb": 1_000,
        "api_calls_per_month": 1_000_000,
        "documents_per_month": 10_000,
        "seats": 50,
        "features": [
            "1TB Storage",
            "1M API Requests/month",
            "Dedicated Support",
            "50+ Team Members",
            "SSO/SAML",
            "Advanced Analytics",
        ],
        "sort_order": 3,
    },
]


def _price_id(plan_name: str, cycle: str) -> str | None:
    return os.getenv(f"STRIPE_PRICE_{plan_name.upper()}_{cycle}") or None


def seed_plans(db) -> int:
    created = 0
    for values in DEFAULT_PLANS:
        plan = pricing_plans.get_by_name(db, values["name"])
        if plan is None:
            plan = PricingPlan(name=values["name"])
            db.add(plan)
            created += 1
        for key, value in values.items():
            setattr(plan, key, value)
        plan.processor_monthly_price_id = _price_id(values["name"], "MONTHLY")
        plan.processor_annual_price_id = _price_id(values["name"], "ANNUAL")
        if not plan.processor_monthly_price_id:
            logger.warning("No monthly processor price configured for plan %s", values["name"])
    db.commit()
    return created


def main() -> None:
    load_dotenv()
    configure_logging()
    db = SessionLocal()
    try:
        created = seed_plans(db)
        logger.info("Pricing plan seed complete (%d created)", created)
    finally:
        db.close()


if __name__ == "__main__":
    main()
