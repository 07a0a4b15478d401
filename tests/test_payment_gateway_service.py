"""Unit tests for the Stripe gateway."""

import hashlib
import hmac
import time
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest

from billing_engine.services import payment_gateway
from billing_engine.services.payment_gateway import (
    GatewayNotConfigured,
    GatewayRequestError,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidSignatureError,
    PaymentDeclined,
    StripeGateway,
    encode_form,
)

WEBHOOK_SECRET = "whsec_unit"


@pytest.fixture()
def gateway() -> StripeGateway:
    return StripeGateway(
        secret_key="sk_test_unit",
        webhook_secret=WEBHOOK_SECRET,
        api_base="https://stripe.test",
        max_retries=2,
        webhook_tolerance=300,
        backoff_seconds=0,
    )


@pytest.fixture()
def response_factory() -> Callable[..., MagicMock]:
    def _build(payload: dict[str, Any], status_code: int = 200) -> MagicMock:
        response = MagicMock()
        response.status_code = status_code
        response.json.return_value = payload
        return response

    return _build


@pytest.fixture()
def mocked_http_client():
    with patch("billing_engine.services.payment_gateway.httpx.Client") as mock_client_cls, patch(
        "billing_engine.services.payment_gateway.time.sleep"
    ):
        mock_client = MagicMock(name="mock_httpx_client")
        mock_client_cls.return_value.__enter__.return_value = mock_client
        yield mock_client_cls, mock_client


def _signature(payload: bytes, timestamp: int, secret: str = WEBHOOK_SECRET) -> str:
    digest = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


# ── Form encoding ────────────────────────────────────────


def test_encode_form_flattens_nested_params():
    encoded = encode_form(
        {
            "customer": "cus_1",
            "items": [{"price": "price_1"}],
            "metadata": {"plan": "pro"},
            "cancel_at_period_end": True,
            "trial_period_days": None,
        }
    )
    assert encoded == {
        "customer": "cus_1",
        "items[0][price]": "price_1",
        "metadata[plan]": "pro",
        "cancel_at_period_end": "true",
    }


def test_encode_form_empty():
    assert encode_form(None) == {}


# ── Configuration ────────────────────────────────────────


def test_unconfigured_gateway_refuses_requests(mocked_http_client):
    mock_client_cls, _ = mocked_http_client
    gateway = StripeGateway(secret_key="")

    assert gateway.is_configured() is False
    with pytest.raises(GatewayNotConfigured):
        gateway.retry_invoice_payment("in_1")
    mock_client_cls.assert_not_called()


def test_default_credentials_come_from_settings(monkeypatch):
    monkeypatch.setattr(
        payment_gateway,
        "settings",
        MagicMock(
            stripe_secret_key="sk_from_settings",
            stripe_webhook_secret="",
            stripe_api_base="https://api.stripe.com",
            stripe_timeout_seconds=5,
            stripe_max_network_retries=1,
            stripe_webhook_tolerance_seconds=300,
        ),
    )
    gateway = StripeGateway()
    assert gateway.is_configured() is True
    assert gateway.is_webhook_configured() is False


# ── Requests ─────────────────────────────────────────────


def test_create_subscription_posts_form_with_idempotency_key(
    gateway, mocked_http_client, response_factory
):
    _, mock_client = mocked_http_client
    mock_client.post.return_value = response_factory({"id": "sub_1", "status": "incomplete"})

    result = gateway.create_subscription(
        "cus_1", "price_1", metadata={"customer_id": "c1"}, trial_period_days=14
    )

    assert result["id"] == "sub_1"
    url = mock_client.post.call_args.args[0]
    kwargs = mock_client.post.call_args.kwargs
    assert url == "https://stripe.test/v1/subscriptions"
    assert kwargs["data"]["items[0][price]"] == "price_1"
    assert kwargs["data"]["trial_period_days"] == "14"
    assert kwargs["data"]["metadata[customer_id]"] == "c1"
    assert kwargs["headers"]["Authorization"] == "Bearer sk_test_unit"
    assert kwargs["headers"]["Idempotency-Key"]


def test_create_subscription_attaches_payment_method_first(
    gateway, mocked_http_client, response_factory
):
    _, mock_client = mocked_http_client
    mock_client.post.return_value = response_factory({"id": "obj"})

    gateway.create_subscription("cus_1", "price_1", payment_method_id="pm_1")

    urls = [call.args[0] for call in mock_client.post.call_args_list]
    assert urls == [
        "https://stripe.test/v1/payment_methods/pm_1/attach",
        "https://stripe.test/v1/customers/cus_1",
        "https://stripe.test/v1/subscriptions",
    ]


def test_cancel_subscription_uses_delete(gateway, mocked_http_client, response_factory):
    _, mock_client = mocked_http_client
    mock_client.delete.return_value = response_factory({"id": "sub_1", "status": "canceled"})

    assert gateway.cancel_subscription("sub_1")["status"] == "canceled"
    assert mock_client.delete.call_args.args[0] == "https://stripe.test/v1/subscriptions/sub_1"


def test_find_promotion_code(gateway, mocked_http_client, response_factory):
    _, mock_client = mocked_http_client
    mock_client.get.return_value = response_factory({"data": [{"id": "promo_1"}]})

    assert gateway.find_promotion_code("LAUNCH") == {"id": "promo_1"}
    assert mock_client.get.call_args.kwargs["params"]["code"] == "LAUNCH"

    mock_client.get.return_value = response_factory({"data": []})
    assert gateway.find_promotion_code("NOPE") is None


def test_checkout_session_without_code_allows_promotion_codes(
    gateway, mocked_http_client, response_factory
):
    _, mock_client = mocked_http_client
    mock_client.post.return_value = response_factory({"id": "cs_1", "url": "https://x"})

    gateway.create_checkout_session("cus_1", "price_1", "https://ok", "https://cancel")

    data = mock_client.post.call_args.kwargs["data"]
    assert data["allow_promotion_codes"] == "true"
    assert data["line_items[0][quantity]"] == "1"


def test_invoice_credit_uses_caller_idempotency_key(gateway, mocked_http_client, response_factory):
    _, mock_client = mocked_http_client
    mock_client.post.return_value = response_factory({"id": "ii_1"})

    gateway.add_invoice_item(
        "cus_1", "in_1", -2500, "USD", "Volume discount", idempotency_key="volume-discount-1"
    )

    kwargs = mock_client.post.call_args.kwargs
    assert mock_client.post.call_args.args[0] == "https://stripe.test/v1/invoiceitems"
    assert kwargs["data"]["amount"] == "-2500"
    assert kwargs["data"]["currency"] == "usd"
    assert kwargs["data"]["invoice"] == "in_1"
    assert kwargs["headers"]["Idempotency-Key"] == "volume-discount-1"


# ── Error mapping ────────────────────────────────────────


def test_card_error_maps_to_payment_declined(gateway, mocked_http_client, response_factory):
    _, mock_client = mocked_http_client
    mock_client.post.return_value = response_factory(
        {
            "error": {
                "type": "card_error",
                "code": "card_declined",
                "decline_code": "insufficient_funds",
                "message": "Your card has insufficient funds.",
            }
        },
        status_code=402,
    )

    with pytest.raises(PaymentDeclined) as exc_info:
        gateway.retry_invoice_payment("in_1")

    assert exc_info.value.code == "card_declined"
    assert exc_info.value.decline_code == "insufficient_funds"
    assert mock_client.post.call_count == 1


def test_invalid_request_is_not_retried(gateway, mocked_http_client, response_factory):
    _, mock_client = mocked_http_client
    mock_client.post.return_value = response_factory(
        {"error": {"type": "invalid_request_error", "message": "No such price"}},
        status_code=400,
    )

    with pytest.raises(GatewayRequestError) as exc_info:
        gateway.create_subscription("cus_1", "price_missing")

    assert exc_info.value.transient is False
    assert mock_client.post.call_count == 1


def test_server_errors_are_retried_then_raised(gateway, mocked_http_client, response_factory):
    _, mock_client = mocked_http_client
    mock_client.post.return_value = response_factory({}, status_code=503)

    with pytest.raises(GatewayUnavailable) as exc_info:
        gateway.retry_invoice_payment("in_1")

    assert exc_info.value.transient is True
    assert mock_client.post.call_count == 3


def test_transient_failure_then_success(gateway, mocked_http_client, response_factory):
    _, mock_client = mocked_http_client
    mock_client.post.side_effect = [
        response_factory({}, status_code=429),
        response_factory({"status": "paid"}),
    ]

    assert gateway.retry_invoice_payment("in_1") == {"status": "paid"}
    first_key = mock_client.post.call_args_list[0].kwargs["headers"]["Idempotency-Key"]
    second_key = mock_client.post.call_args_list[1].kwargs["headers"]["Idempotency-Key"]
    assert first_key == second_key


def test_timeout_maps_to_gateway_timeout(gateway, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.post.side_effect = httpx.ReadTimeout("slow")

    with pytest.raises(GatewayTimeout):
        gateway.report_usage("si_1", quantity=1, timestamp=int(time.time()))
    assert mock_client.post.call_count == 3


def test_connection_error_maps_to_unavailable(gateway, mocked_http_client):
    _, mock_client = mocked_http_client
    mock_client.post.side_effect = httpx.ConnectError("refused")

    with pytest.raises(GatewayUnavailable):
        gateway.retry_invoice_payment("in_1")


# ── Webhook signatures ───────────────────────────────────


def test_verify_webhook_signature_accepts_valid_header(gateway):
    payload = b'{"id":"evt_1","type":"invoice.paid"}'
    gateway.verify_webhook_signature(payload, _signature(payload, int(time.time())))


def test_verify_webhook_signature_accepts_any_matching_v1(gateway):
    payload = b'{"id":"evt_1"}'
    timestamp = int(time.time())
    valid = _signature(payload, timestamp).split("v1=")[1]
    gateway.verify_webhook_signature(payload, f"t={timestamp},v1=stale,v1={valid}")


def test_verify_webhook_signature_rejects_wrong_secret(gateway):
    payload = b'{"id":"evt_1"}'
    with pytest.raises(InvalidSignatureError):
        gateway.verify_webhook_signature(
            payload, _signature(payload, int(time.time()), secret="whsec_other")
        )


def test_verify_webhook_signature_rejects_old_timestamp(gateway):
    payload = b'{"id":"evt_1"}'
    old = int(time.time()) - 3600
    with pytest.raises(InvalidSignatureError, match="tolerance"):
        gateway.verify_webhook_signature(payload, _signature(payload, old))


def test_verify_webhook_signature_rejects_malformed_header(gateway):
    with pytest.raises(InvalidSignatureError, match="Malformed"):
        gateway.verify_webhook_signature(b"{}", "t=abc,v1=")


def test_verify_webhook_signature_requires_secret():
    gateway = StripeGateway(secret_key="sk_test_unit", webhook_secret="")
    with pytest.raises(GatewayNotConfigured):
        gateway.verify_webhook_signature(b"{}", "t=1,v1=abc")
