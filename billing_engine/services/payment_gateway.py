"""Stripe payment processor gateway.

Outbound-only adapter over the Stripe REST API. Every call carries a bounded
timeout; transient failures (timeouts, connection errors, 429 and 5xx
responses) are retried a bounded number of times with exponential backoff.
POST requests send an ``Idempotency-Key`` so retried creates are safe.
"""

import hashlib
import hmac
import logging
import time
import uuid
from typing import Any

import httpx

from billing_engine.config import settings
from billing_engine.metrics import GATEWAY_REQUESTS

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base class for processor failures."""

    transient = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class GatewayNotConfigured(GatewayError):
    pass


class GatewayTimeout(GatewayError):
    transient = True


class GatewayUnavailable(GatewayError):
    transient = True


class GatewayRequestError(GatewayError):
    pass


class PaymentDeclined(GatewayError):
    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        decline_code: str | None = None,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code)
        self.decline_code = decline_code


class InvalidSignatureError(Exception):
    """Webhook payload failed signature verification."""


def encode_form(params: dict[str, Any] | None, prefix: str | None = None) -> dict[str, str]:
    """Flatten nested params into Stripe's bracketed form encoding."""
    encoded: dict[str, str] = {}
    if not params:
        return encoded
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            encoded.update(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, entry in enumerate(value):
                entry_name = f"{name}[{index}]"
                if isinstance(entry, dict):
                    encoded.update(encode_form(entry, entry_name))
                else:
                    encoded[entry_name] = _form_value(entry)
        else:
            encoded[name] = _form_value(value)
    return encoded


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_signature_header(header: str) -> tuple[int | None, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


class StripeGateway:
    """Thin wrapper around the Stripe REST API."""

    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        webhook_tolerance: int | None = None,
        backoff_seconds: float = 0.5,
    ) -> None:
        self._secret_key = settings.stripe_secret_key if secret_key is None else secret_key
        self._webhook_secret = (
            settings.stripe_webhook_secret if webhook_secret is None else webhook_secret
        )
        self._api_base = (api_base or settings.stripe_api_base).rstrip("/")
        self._timeout = settings.stripe_timeout_seconds if timeout is None else timeout
        self._max_retries = (
            settings.stripe_max_network_retries if max_retries is None else max_retries
        )
        self._webhook_tolerance = (
            settings.stripe_webhook_tolerance_seconds
            if webhook_tolerance is None
            else webhook_tolerance
        )
        self._backoff_seconds = backoff_seconds

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def is_webhook_configured(self) -> bool:
        return bool(self._webhook_secret)

    # ── Transport ────────────────────────────────────────

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        if not self.is_configured():
            raise GatewayNotConfigured("Stripe is not configured")
        url = f"{self._api_base}/v1/{path}"
        form = encode_form(params)
        if method == "POST":
            idempotency_key = idempotency_key or str(uuid.uuid4())
        else:
            idempotency_key = None
        attempt = 0
        while True:
            error: GatewayError
            try:
                with httpx.Client(timeout=self._timeout) as client:
                    if method == "GET":
                        resp = client.get(url, params=form, headers=self._headers())
                    elif method == "DELETE":
                        resp = client.delete(url, headers=self._headers())
                    else:
                        resp = client.post(
                            url, data=form, headers=self._headers(idempotency_key)
                        )
            except httpx.TimeoutException:
                error = GatewayTimeout(f"Stripe {operation} timed out")
            except httpx.TransportError as exc:
                error = GatewayUnavailable(
                    f"Stripe {operation} connection failed: {exc.__class__.__name__}"
                )
            else:
                if resp.status_code < 400:
                    GATEWAY_REQUESTS.labels(operation, "success").inc()
                    result: dict[str, Any] = resp.json()
                    return result
                error = self._error_from_response(resp)
                if not error.transient:
                    GATEWAY_REQUESTS.labels(operation, "rejected").inc()
                    logger.warning(
                        "Stripe %s rejected (%s): %s",
                        operation,
                        error.status_code,
                        error.code or error.message,
                    )
                    raise error

            if attempt >= self._max_retries:
                GATEWAY_REQUESTS.labels(operation, "unavailable").inc()
                logger.error("Stripe %s failed after %d attempts: %s", operation, attempt + 1, error)
                raise error
            attempt += 1
            delay = self._backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "Stripe %s transient failure (%s), retry %d in %.2fs",
                operation,
                error.__class__.__name__,
                attempt,
                delay,
            )
            time.sleep(delay)

    @staticmethod
    def _error_from_response(resp: Any) -> GatewayError:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        err = body.get("error") if isinstance(body, dict) else None
        err = err or {}
        message = err.get("message") or f"Stripe returned HTTP {resp.status_code}"
        code = err.get("code")
        status_code = resp.status_code
        if status_code == 429 or status_code >= 500:
            return GatewayUnavailable(message, code=code, status_code=status_code)
        if status_code == 402 or err.get("type") == "card_error":
            return PaymentDeclined(
                message,
                code=code,
                status_code=status_code,
                decline_code=err.get("decline_code"),
            )
        return GatewayRequestError(message, code=code, status_code=status_code)

    # ── Customers ────────────────────────────────────────

    def create_customer(
        self,
        email: str,
        name: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create a processor-side customer."""
        data = self._request(
            "create_customer",
            "POST",
            "customers",
            {"email": email, "name": name, "metadata": metadata},
        )
        logger.info("Created Stripe customer: %s", data.get("id"))
        return data

    def update_customer(self, customer_id: str, **fields: Any) -> dict[str, Any]:
        return self._request("update_customer", "POST", f"customers/{customer_id}", fields)

    # ── Subscriptions ────────────────────────────────────

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: dict[str, str] | None = None,
        trial_period_days: int | None = None,
        payment_method_id: str | None = None,
    ) -> dict[str, Any]:
        """Create a subscription, attaching the payment method first when given."""
        if payment_method_id:
            self._request(
                "attach_payment_method",
                "POST",
                f"payment_methods/{payment_method_id}/attach",
                {"customer": customer_id},
            )
            self.update_customer(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            )
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata,
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
        }
        if trial_period_days:
            params["trial_period_days"] = trial_period_days
        data = self._request("create_subscription", "POST", "subscriptions", params)
        logger.info("Created Stripe subscription: %s", data.get("id"))
        return data

    def update_subscription(
        self,
        subscription_id: str,
        item_id: str | None,
        price_id: str,
        metadata: dict[str, str] | None = None,
        proration_behavior: str = "create_prorations",
    ) -> dict[str, Any]:
        """Swap the subscription's plan item for a new price."""
        item: dict[str, Any] = {"price": price_id}
        if item_id:
            item["id"] = item_id
        return self._request(
            "update_subscription",
            "POST",
            f"subscriptions/{subscription_id}",
            {
                "items": [item],
                "proration_behavior": proration_behavior,
                "metadata": metadata,
            },
        )

    def set_cancel_at_period_end(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> dict[str, Any]:
        return self._request(
            "set_cancel_at_period_end",
            "POST",
            f"subscriptions/{subscription_id}",
            {"cancel_at_period_end": cancel_at_period_end},
        )

    def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Cancel immediately."""
        data = self._request(
            "cancel_subscription", "DELETE", f"subscriptions/{subscription_id}"
        )
        logger.info("Canceled Stripe subscription: %s", subscription_id)
        return data

    # ── Checkout & Portal ────────────────────────────────

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str] | None = None,
        trial_period_days: int | None = None,
        promotion_code_id: str | None = None,
    ) -> dict[str, Any]:
        subscription_data: dict[str, Any] = {"metadata": metadata}
        if trial_period_days:
            subscription_data["trial_period_days"] = trial_period_days
        params: dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": subscription_data,
            "billing_address_collection": "auto",
        }
        if promotion_code_id:
            params["discounts"] = [{"promotion_code": promotion_code_id}]
        else:
            params["allow_promotion_codes"] = True
        return self._request(
            "create_checkout_session", "POST", "checkout/sessions", params
        )

    def create_billing_portal_session(
        self, customer_id: str, return_url: str
    ) -> dict[str, Any]:
        return self._request(
            "create_billing_portal_session",
            "POST",
            "billing_portal/sessions",
            {"customer": customer_id, "return_url": return_url},
        )

    def find_promotion_code(self, code: str) -> dict[str, Any] | None:
        """Look up an active promotion code by its customer-facing name."""
        data = self._request(
            "find_promotion_code",
            "GET",
            "promotion_codes",
            {"code": code, "active": True, "limit": 1},
        )
        matches = data.get("data") or []
        return matches[0] if matches else None

    # ── Metered usage ────────────────────────────────────

    def report_usage(
        self,
        subscription_item_id: str,
        quantity: int,
        timestamp: int,
        action: str = "increment",
    ) -> dict[str, Any]:
        return self._request(
            "report_usage",
            "POST",
            f"subscription_items/{subscription_item_id}/usage_records",
            {"quantity": quantity, "timestamp": timestamp, "action": action},
        )

    # ── Invoices ─────────────────────────────────────────

    def retry_invoice_payment(self, invoice_id: str) -> dict[str, Any]:
        """Ask the processor to collect an open invoice now."""
        return self._request("retry_invoice_payment", "POST", f"invoices/{invoice_id}/pay")

    def add_invoice_item(
        self,
        customer_id: str,
        invoice_id: str,
        amount_cents: int,
        currency: str,
        description: str,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Attach an extra line to a draft invoice. Negative amounts are credits."""
        return self._request(
            "add_invoice_item",
            "POST",
            "invoiceitems",
            {
                "customer": customer_id,
                "invoice": invoice_id,
                "amount": amount_cents,
                "currency": currency.lower(),
                "description": description,
            },
            idempotency_key=idempotency_key,
        )

    # ── Webhook ──────────────────────────────────────────

    def verify_webhook_signature(
        self, payload: bytes, signature_header: str, now: float | None = None
    ) -> None:
        """Validate a ``Stripe-Signature`` header (HMAC-SHA256 over ``t.payload``)."""
        if not self._webhook_secret:
            raise GatewayNotConfigured("Stripe webhook secret is not configured")
        timestamp, signatures = _parse_signature_header(signature_header)
        if timestamp is None or not signatures:
            raise InvalidSignatureError("Malformed signature header")
        signed_payload = f"{timestamp}.".encode("utf-8") + payload
        expected = hmac.new(
            self._webhook_secret.encode("utf-8"),
            signed_payload,
            hashlib.sha256,
        ).hexdigest()
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise InvalidSignatureError("Signature mismatch")
        current = time.time() if now is None else now
        if self._webhook_tolerance and abs(int(current) - timestamp) > self._webhook_tolerance:
            raise InvalidSignatureError("Signature timestamp outside tolerance")


stripe_gateway = StripeGateway()
