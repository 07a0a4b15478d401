"""HTTP tests for the customer-facing billing routes."""

from datetime import UTC, datetime, timedelta

from billing_engine.models.billing import InvoiceStatus, SubscriptionChange
from billing_engine.services.payment_gateway import GatewayTimeout


# ============ Auth ============


def test_requires_bearer_token(client):
    response = client.get("/billing/plans")
    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "unauthorized"
    assert body["request_id"]


def test_rejects_invalid_token(client):
    response = client.get("/billing/plans", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid or expired token"


# ============ Plans ============


def test_list_plans_hides_invisible(client, auth_headers, plan_factory):
    plan_factory(name="starter", sort_order=1)
    plan_factory(name="legacy", is_visible=False)

    response = client.get("/billing/plans", headers=auth_headers)

    assert response.status_code == 200
    names = [item["name"] for item in response.json()["data"]]
    assert names == ["starter"]


def test_routes_are_mounted_under_api_v1(client, auth_headers, plan):
    response = client.get("/api/v1/billing/plans", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["data"][0]["id"] == str(plan.id)


# ============ Subscription ============


def test_get_subscription_without_customer_returns_null(client, auth_headers):
    response = client.get("/billing/subscription", headers=auth_headers)
    assert response.status_code == 200
    assert response.json() == {"success": True, "data": None}


def test_get_subscription_detail(client, auth_headers, subscription, plan):
    response = client.get("/billing/subscription", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["subscription"]["id"] == str(subscription.id)
    assert data["plan"]["name"] == "starter"
    assert data["limits"]["api_calls_per_month"] == 1000


def test_create_subscription_returns_accepted_while_pending(
    client, auth_headers, plan, fake_gateway
):
    response = client.post(
        "/billing/subscription",
        headers=auth_headers,
        json={"pricing_plan_id": str(plan.id), "billing_cycle": "annual"},
    )

    assert response.status_code == 202
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["processor_subscription_id"] == "sub_new"
    args, kwargs = fake_gateway.create_subscription.call_args
    assert args[1] == "price_starter_annual"
    assert kwargs["metadata"]["initiated_by"] == "customer"


def test_create_subscription_validation_error(client, auth_headers):
    response = client.post(
        "/billing/subscription",
        headers=auth_headers,
        json={"pricing_plan_id": "nope", "trial_days": -1},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["error"]["code"] == "validation_error"
    assert isinstance(body["error"]["details"], list)


def test_create_subscription_when_already_subscribed(client, auth_headers, subscription, plan):
    response = client.post(
        "/billing/subscription", headers=auth_headers, json={"pricing_plan_id": str(plan.id)}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "already_subscribed"


def test_patch_subscription_metadata(client, auth_headers, subscription):
    response = client.patch(
        "/billing/subscription",
        headers=auth_headers,
        json={"metadata": {"cost_center": "42"}},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "updated"
    assert data["subscription"]["metadata"] == {"cost_center": "42"}


def test_patch_subscription_without_changes(client, auth_headers, subscription):
    response = client.patch("/billing/subscription", headers=auth_headers, json={})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "no_change"


def test_patch_without_subscription_is_not_found(client, auth_headers, customer):
    response = client.patch(
        "/billing/subscription", headers=auth_headers, json={"metadata": {"a": "b"}}
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "subscription_not_found"


def test_cancel_then_reactivate(client, auth_headers, subscription, fake_gateway):
    cancel = client.post(
        "/billing/subscription/cancel",
        headers=auth_headers,
        json={"reason": "switching vendors"},
    )
    assert cancel.status_code == 200
    assert cancel.json()["data"]["status"] == "canceled"
    assert cancel.json()["data"]["subscription"]["cancel_at_period_end"] is True

    reactivate = client.post("/billing/subscription/reactivate", headers=auth_headers)
    assert reactivate.status_code == 200
    assert reactivate.json()["data"]["status"] == "reactivated"
    assert reactivate.json()["data"]["subscription"]["cancel_at_period_end"] is False

    history = client.get("/billing/subscription/history", headers=auth_headers)
    assert history.status_code == 200
    listing = history.json()["data"]
    assert listing["total"] == 2
    assert {item["change_type"] for item in listing["items"]} == {"canceled", "reactivated"}


def test_cancel_immediately(client, auth_headers, subscription, db_session):
    response = client.post(
        "/billing/subscription/cancel", headers=auth_headers, json={"immediately": True}
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["subscription"]["status"] == "canceled"
    assert data["subscription"]["ended_at"] is not None
    change = db_session.query(SubscriptionChange).one()
    assert change.initiated_by.value == "customer"


def test_cancel_returns_accepted_when_processor_times_out(client, auth_headers, subscription, fake_gateway):
    fake_gateway.cancel_subscription.side_effect = GatewayTimeout("timed out")

    response = client.post(
        "/billing/subscription/cancel", headers=auth_headers, json={"immediately": True}
    )

    assert response.status_code == 202
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["subscription"] is None


# ============ Usage ============


def test_report_and_read_usage(client, auth_headers, subscription):
    created = client.post(
        "/billing/usage",
        headers=auth_headers,
        json={"usage_type": "api_call", "quantity": 900},
    )
    assert created.status_code == 201
    assert created.json()["data"]["unit"] == "requests"

    summary = client.get("/billing/usage", headers=auth_headers)
    assert summary.status_code == 200
    data = summary.json()["data"]
    assert data["usage"]["api_call"] == 900
    api = next(item for item in data["limits"] if item["usage_type"] == "api_call")
    assert api["threshold"] == 90


def test_report_usage_rejects_fractional_count(client, auth_headers, subscription):
    response = client.post(
        "/billing/usage",
        headers=auth_headers,
        json={"usage_type": "document_processed", "quantity": 0.5},
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_quantity"


def test_report_usage_rejects_non_positive_quantity(client, auth_headers, subscription):
    response = client.post(
        "/billing/usage", headers=auth_headers, json={"usage_type": "api_call", "quantity": 0}
    )
    assert response.status_code == 422


# ============ Invoices ============


def test_list_invoices_for_organization(
    client, auth_headers, customer, subscription, invoice_factory, customer_factory
):
    now = datetime.now(UTC)
    invoice_factory(customer, subscription, invoice_date=now - timedelta(days=31))
    newest = invoice_factory(customer, subscription, status=InvoiceStatus.paid, invoice_date=now)
    invoice_factory(customer_factory())

    response = client.get("/billing/invoices", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] == 2
    assert data["items"][0]["id"] == str(newest.id)

    paid_only = client.get("/billing/invoices?status=paid", headers=auth_headers)
    assert paid_only.json()["data"]["total"] == 1


def test_list_invoices_without_customer_is_empty(client, auth_headers):
    response = client.get("/billing/invoices", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["data"]["items"] == []


def test_list_invoices_invalid_status(client, auth_headers, customer):
    response = client.get("/billing/invoices?status=bogus", headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_status"


# ============ Checkout & Portal ============


def test_create_checkout_session(client, auth_headers, plan, fake_gateway):
    response = client.post(
        "/billing/checkout",
        headers=auth_headers,
        json={
            "pricing_plan_id": str(plan.id),
            "success_url": "https://app.example.com/billing/success",
            "cancel_url": "https://app.example.com/billing",
        },
    )

    assert response.status_code == 200
    assert response.json()["data"] == {
        "session_id": "cs_test_1",
        "url": "https://checkout.stripe.test/cs_test_1",
    }
    args, _ = fake_gateway.create_checkout_session.call_args
    assert args[1] == "price_starter_monthly"


def test_checkout_rejects_unknown_promotion_code(client, auth_headers, plan):
    response = client.post(
        "/billing/checkout",
        headers=auth_headers,
        json={
            "pricing_plan_id": str(plan.id),
            "success_url": "https://app.example.com/ok",
            "cancel_url": "https://app.example.com/cancel",
            "promotion_code": "FREEMONEY",
        },
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_promotion_code"


def test_checkout_applies_promotion_code(client, auth_headers, plan, fake_gateway):
    fake_gateway.find_promotion_code.return_value = {"id": "promo_123"}

    response = client.post(
        "/billing/checkout",
        headers=auth_headers,
        json={
            "pricing_plan_id": str(plan.id),
            "success_url": "https://app.example.com/ok",
            "cancel_url": "https://app.example.com/cancel",
            "promotion_code": "LAUNCH20",
        },
    )

    assert response.status_code == 200
    assert fake_gateway.create_checkout_session.call_args.kwargs["promotion_code_id"] == "promo_123"


def test_create_portal_session(client, auth_headers, customer):
    response = client.post(
        "/billing/portal",
        headers=auth_headers,
        json={"return_url": "https://app.example.com/settings"},
    )
    assert response.status_code == 200
    assert response.json()["data"]["url"].startswith("https://billing.stripe.test/")
