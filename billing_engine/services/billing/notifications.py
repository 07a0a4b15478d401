"""Billing notification hook.

Delivery (email, in-app) lives outside the engine. Listeners register a
callable and receive ``(event, payload)`` for every billing notification.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

PAYMENT_FAILED = "payment_failed"
PAYMENT_RECOVERED = "payment_recovered"
COLLECTION_FAILED = "collection_failed"
TRIAL_WILL_END = "trial_will_end"

Listener = Callable[[str, dict[str, Any]], None]


class BillingNotifier:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def register(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unregister(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify(self, event: str, **payload: Any) -> None:
        logger.info(
            "Billing notification %s",
            event,
            extra={
                "customer_id": payload.get("customer_id"),
                "invoice_id": payload.get("invoice_id"),
                "subscription_id": payload.get("subscription_id"),
            },
        )
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                # A broken listener must not roll back billing state.
                logger.exception("Billing notification listener failed for %s", event)


billing_notifier = BillingNotifier()
