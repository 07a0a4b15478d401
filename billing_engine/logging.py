import json
import logging
import logging.config
import os
from datetime import datetime, timezone

# Context attached via ``extra=`` by the middleware, webhook handler and dunning jobs.
_CONTEXT_FIELDS = (
    "request_id",
    "actor_id",
    "path",
    "method",
    "status",
    "duration_ms",
    "event_id",
    "event_type",
    "invoice_id",
    "subscription_id",
    "customer_id",
)

SERVICE_NAME = "billing_engine"


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, with billing identifiers lifted to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is None:
                continue
            entry[field] = value if isinstance(value, (int, float)) else str(value)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(level: str | None = None) -> None:
    root_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": JsonLogFormatter}},
            "handlers": {
                "stdout": {"class": "logging.StreamHandler", "formatter": "json"},
            },
            "root": {"handlers": ["stdout"], "level": root_level},
            "loggers": {
                # httpx logs every request line at INFO; gateway calls log their own outcome.
                "httpx": {"level": "WARNING"},
                "celery": {"level": root_level},
            },
        }
    )
