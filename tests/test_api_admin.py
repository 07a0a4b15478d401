"""HTTP tests for the operator routes under /admin/billing."""

from datetime import UTC, datetime, timedelta

import pytest

from billing_engine.models.billing import (
    InvoiceStatus,
    RetryJob,
    RetryJobStatus,
    SubscriptionChange,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from billing_engine.services.payment_gateway import PaymentDeclined


@pytest.fixture()
def failed_invoice(invoice_factory, customer, subscription_factory, plan):
    past_due = subscription_factory(customer, plan, status=SubscriptionStatus.past_due)
    return invoice_factory(customer, past_due, attempt_count=1)


def test_admin_routes_require_admin_role(client, auth_headers, failed_invoice):
    response = client.get(f"/admin/billing/invoices/{failed_invoice.id}", headers=auth_headers)
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden"


def test_admin_routes_require_authentication(client):
    assert client.get("/admin/billing/retries/stats").status_code == 401


def test_get_invoice(client, admin_headers, failed_invoice):
    response = client.get(f"/admin/billing/invoices/{failed_invoice.id}", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "open"


def test_get_invoice_with_malformed_id(client, admin_headers):
    response = client.get("/admin/billing/invoices/not-a-uuid", headers=admin_headers)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "invoice_not_found"


def test_manual_retry_collects_payment(client, admin_headers, db_session, failed_invoice):
    response = client.post(
        f"/admin/billing/invoices/{failed_invoice.id}/retry", headers=admin_headers
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["outcome"] == "paid"
    assert data["attempt_number"] == 1
    db_session.refresh(failed_invoice)
    assert failed_invoice.status == InvoiceStatus.paid


def test_manual_retry_failure_schedules_next_attempt(
    client, admin_headers, fake_gateway, failed_invoice
):
    fake_gateway.retry_invoice_payment.side_effect = PaymentDeclined(
        "declined", code="insufficient_funds", status_code=402
    )

    response = client.post(
        f"/admin/billing/invoices/{failed_invoice.id}/retry", headers=admin_headers
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["outcome"] == "failed"
    assert data["message"] == "insufficient_funds"
    assert data["next_attempt_at"] is not None

    jobs = client.get(
        f"/admin/billing/invoices/{failed_invoice.id}/retry-jobs", headers=admin_headers
    ).json()["data"]
    assert [(job["attempt_number"], job["status"]) for job in jobs] == [
        (1, "failed"),
        (2, "pending"),
    ]


def test_manual_retry_rejects_paid_invoice(client, admin_headers, invoice_factory, customer):
    invoice = invoice_factory(customer, status=InvoiceStatus.paid)
    response = client.post(f"/admin/billing/invoices/{invoice.id}/retry", headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invoice_already_paid"


def test_retry_status_and_stats(client, admin_headers, db_session, retry_scheduler, failed_invoice):
    retry_scheduler.schedule_for_failed_invoice(db_session, failed_invoice)
    db_session.commit()

    status = client.get(
        f"/admin/billing/invoices/{failed_invoice.id}/retry-status", headers=admin_headers
    ).json()["data"]
    assert status["has_pending_retry"] is True
    assert status["attempts_made"] == 0
    assert status["max_attempts"] == 3

    stats = client.get("/admin/billing/retries/stats", headers=admin_headers).json()["data"]
    assert stats["pending"] == 1
    assert stats["recovery_rate"] == 0.0


def test_admin_cancel_records_admin_initiator(
    client, admin_headers, db_session, subscription, retry_scheduler, invoice_factory, customer
):
    invoice = invoice_factory(customer, subscription)
    retry_scheduler.schedule_for_failed_invoice(db_session, invoice)
    db_session.commit()

    response = client.post(
        f"/admin/billing/subscriptions/{subscription.id}/cancel",
        headers=admin_headers,
        json={"immediately": True, "reason": "fraud"},
    )

    assert response.status_code == 200
    assert response.json()["data"]["subscription"]["status"] == "canceled"
    change = db_session.query(SubscriptionChange).one()
    assert change.initiated_by.value == "admin"
    assert change.reason == "fraud"
    assert db_session.query(RetryJob).one().status == RetryJobStatus.canceled


def test_admin_subscription_detail_and_history(client, admin_headers, subscription):
    detail = client.get(f"/admin/billing/subscriptions/{subscription.id}", headers=admin_headers)
    assert detail.status_code == 200
    assert detail.json()["data"]["plan"]["name"] == "starter"

    history = client.get(
        f"/admin/billing/subscriptions/{subscription.id}/history", headers=admin_headers
    )
    assert history.status_code == 200
    assert history.json()["data"]["total"] == 0

    missing = client.get("/admin/billing/subscriptions/garbage/history", headers=admin_headers)
    assert missing.status_code == 404


def test_analytics_aggregate_and_dashboard(client, admin_headers, subscription):
    today = datetime.now(UTC).date()

    aggregate = client.post(
        "/admin/billing/analytics/aggregate",
        headers=admin_headers,
        json={"period_type": "daily", "period_start": today.isoformat()},
    )
    assert aggregate.status_code == 200
    data = aggregate.json()["data"]
    assert data["period_start"] == today.isoformat()
    assert data["mrr_cents"] == 900
    assert data["active_subscriptions"] == 1

    dashboard = client.get("/admin/billing/analytics/dashboard?days=7", headers=admin_headers)
    assert dashboard.status_code == 200
    assert dashboard.json()["data"]["arr_cents"] == 10800


def test_list_and_filter_webhook_events(client, admin_headers, db_session):
    db_session.add_all(
        [
            WebhookEvent(
                provider="stripe",
                event_type="invoice.paid",
                event_id="evt_1",
                status=WebhookEventStatus.processed,
            ),
            WebhookEvent(
                provider="stripe",
                event_type="invoice.payment_failed",
                event_id="evt_2",
                status=WebhookEventStatus.failed,
                error_message="Customer cus_x not found",
            ),
        ]
    )
    db_session.commit()

    everything = client.get("/admin/billing/webhook-events", headers=admin_headers)
    assert everything.json()["data"]["total"] == 2

    failed = client.get("/admin/billing/webhook-events?status=failed", headers=admin_headers)
    items = failed.json()["data"]["items"]
    assert [item["event_id"] for item in items] == ["evt_2"]

    detail = client.get(f"/admin/billing/webhook-events/{items[0]['id']}", headers=admin_headers)
    assert detail.json()["data"]["error_message"] == "Customer cus_x not found"

    bad_filter = client.get("/admin/billing/webhook-events?status=weird", headers=admin_headers)
    assert bad_filter.status_code == 400


# ── Enterprise contracts ─────────────────────────────────


def test_create_and_read_enterprise_contract(client, admin_headers, customer):
    start = datetime.now(UTC).date()
    response = client.post(
        "/admin/billing/enterprise/contracts",
        headers=admin_headers,
        json={
            "customer_id": str(customer.id),
            "base_price_cents": 500000,
            "contract_start": start.isoformat(),
            "contract_end": (start + timedelta(days=365)).isoformat(),
            "seats": 200,
            "volume_discounts": [{"threshold": 100, "discount_percent": 10}],
        },
    )

    assert response.status_code == 201
    created = response.json()["data"]
    assert created["billing_cycle"] == "annual"
    assert created["seats"] == 200

    detail = client.get(
        f"/admin/billing/enterprise/contracts/{created['id']}", headers=admin_headers
    )
    assert detail.json()["data"]["volume_discounts"] == [
        {"threshold": 100, "discount_percent": 10.0}
    ]

    duplicate = client.post(
        "/admin/billing/enterprise/contracts",
        headers=admin_headers,
        json={
            "customer_id": str(customer.id),
            "base_price_cents": 1,
            "contract_start": start.isoformat(),
            "contract_end": (start + timedelta(days=30)).isoformat(),
        },
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "contract_exists"


def test_enterprise_routes_require_admin_role(client, auth_headers):
    response = client.get("/admin/billing/enterprise/contracts/expiring", headers=auth_headers)
    assert response.status_code == 403


def test_expiring_and_renew_contract(client, admin_headers, customer, contract_factory):
    today = datetime.now(UTC).date()
    contract = contract_factory(customer, contract_end=today + timedelta(days=7))

    expiring = client.get(
        "/admin/billing/enterprise/contracts/expiring?days_ahead=14", headers=admin_headers
    )
    assert [item["id"] for item in expiring.json()["data"]] == [str(contract.id)]

    new_end = (today + timedelta(days=372)).isoformat()
    renewed = client.post(
        f"/admin/billing/enterprise/contracts/{contract.id}/renew",
        headers=admin_headers,
        json={"contract_end": new_end, "limits": {"api_calls_per_month": -1}},
    )
    assert renewed.status_code == 200
    assert renewed.json()["data"]["contract_end"] == new_end
    assert renewed.json()["data"]["api_calls_per_month"] == -1

    stale = client.post(
        f"/admin/billing/enterprise/contracts/{contract.id}/renew",
        headers=admin_headers,
        json={"contract_end": today.isoformat()},
    )
    assert stale.status_code == 400
    assert stale.json()["error"]["code"] == "invalid_contract_term"


def test_unknown_contract_is_not_found(client, admin_headers):
    response = client.patch(
        "/admin/billing/enterprise/contracts/not-a-uuid",
        headers=admin_headers,
        json={"notes": "x"},
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "contract_not_found"


def test_volume_discount_route(
    client, admin_headers, fake_gateway, customer, invoice_factory, contract_factory
):
    contract_factory(customer)
    invoice = invoice_factory(customer, status=InvoiceStatus.draft, subtotal_cents=40000)

    response = client.post(
        f"/admin/billing/invoices/{invoice.id}/volume-discount",
        headers=admin_headers,
        json={"quantity": 150},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["applied"] is True
    assert data["discount_percent"] == 5.0
    assert data["discounted_amount_cents"] == 38000
    assert fake_gateway.add_invoice_item.call_args.args[2] == -2000

    rejected = client.post(
        f"/admin/billing/invoices/{invoice.id}/volume-discount",
        headers=admin_headers,
        json={"quantity": 0},
    )
    assert rejected.status_code == 422
