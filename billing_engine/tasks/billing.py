"""Periodic billing jobs: dunning retries, usage re-forwarding and the daily analytics roll-up."""

import logging
from datetime import date, timedelta

from billing_engine.celery_app import celery_app
from billing_engine.db import SessionLocal
from billing_engine.models.billing import AnalyticsPeriod
from billing_engine.services.billing import analytics, payment_retries, usage_ledger
from billing_engine.services.common import utcnow

logger = logging.getLogger(__name__)


@celery_app.task(name="billing_engine.tasks.billing.process_payment_retries")
def process_payment_retries(limit: int | None = None) -> dict:
    session = SessionLocal()
    try:
        return payment_retries.process_due(session, limit=limit)
    finally:
        session.close()


@celery_app.task(name="billing_engine.tasks.billing.forward_unreported_usage")
def forward_unreported_usage(limit: int | None = None) -> dict:
    session = SessionLocal()
    try:
        return usage_ledger.forward_unreported(session, limit=limit)
    finally:
        session.close()


@celery_app.task(name="billing_engine.tasks.billing.aggregate_daily_analytics")
def aggregate_daily_analytics(period_start: str | None = None) -> str:
    """Roll up yesterday's metrics unless an ISO date is given."""
    if period_start:
        day = date.fromisoformat(period_start)
    else:
        day = (utcnow() - timedelta(days=1)).date()
    session = SessionLocal()
    try:
        summary = analytics.aggregate(session, AnalyticsPeriod.daily, day)
    finally:
        session.close()
    logger.info("Daily analytics ready for %s", day.isoformat())
    return str(summary.id)
