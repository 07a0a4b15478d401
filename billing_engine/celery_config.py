import os
from datetime import timedelta

from celery.schedules import crontab

from billing_engine.config import settings


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str, default: int) -> int:
    raw = _env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_celery_config() -> dict:
    broker = _env_value("CELERY_BROKER_URL") or settings.redis_url
    backend = _env_value("CELERY_RESULT_BACKEND") or settings.redis_url
    return {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": _env_value("CELERY_TIMEZONE") or "UTC",
        "beat_max_loop_interval": _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL", 5),
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }


def build_beat_schedule() -> dict:
    return {
        "process_payment_retries": {
            "task": "billing_engine.tasks.billing.process_payment_retries",
            "schedule": timedelta(seconds=max(settings.payment_retry_poll_seconds, 1)),
        },
        "forward_unreported_usage": {
            "task": "billing_engine.tasks.billing.forward_unreported_usage",
            "schedule": timedelta(seconds=max(settings.usage_forward_poll_seconds, 1)),
        },
        "aggregate_daily_analytics": {
            "task": "billing_engine.tasks.billing.aggregate_daily_analytics",
            "schedule": crontab(hour=settings.analytics_aggregation_hour, minute=0),
        },
    }
