"""Tests for the subscription lifecycle controller."""

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy.orm.exc import StaleDataError

from billing_engine.models.billing import (
    BillingCycle,
    ChangeInitiator,
    RetryJob,
    RetryJobStatus,
    Subscription,
    SubscriptionChange,
    SubscriptionChangeType,
    SubscriptionStatus,
)
from billing_engine.schemas.billing import SubscriptionUpdateRequest
from billing_engine.services.billing.customers import Customers
from billing_engine.services.payment_gateway import (
    GatewayRequestError,
    GatewayTimeout,
    PaymentDeclined,
)


def _changes(db_session, subscription_id):
    return (
        db_session.query(SubscriptionChange)
        .filter(SubscriptionChange.subscription_id == subscription_id)
        .order_by(SubscriptionChange.created_at.asc())
        .all()
    )


def _error_code(exc_info) -> str:
    return exc_info.value.detail["code"]


# ── create ───────────────────────────────────────────────


def test_create_links_customer_and_waits_for_webhook(db_session, lifecycle, fake_gateway, plan):
    org_id = uuid.uuid4()
    result = lifecycle.create(db_session, org_id, "owner@example.com", plan.id, name="Owner")

    assert result.status == "pending"
    assert result.processor_subscription_id == "sub_new"
    customer = Customers.get_by_organization(db_session, org_id)
    assert customer.processor_customer_id.startswith("cus_")

    args, kwargs = fake_gateway.create_subscription.call_args
    assert args == (customer.processor_customer_id, "price_starter_monthly")
    assert kwargs["metadata"]["pricing_plan_id"] == str(plan.id)
    assert kwargs["metadata"]["customer_id"] == str(customer.id)
    assert kwargs["trial_period_days"] == 14
    assert db_session.query(Subscription).count() == 0


def test_create_returns_created_when_webhook_already_landed(
    db_session, lifecycle, fake_gateway, plan, subscription_factory
):
    org_id = uuid.uuid4()

    def _create(customer_id, price_id, **kwargs):
        customer = Customers.get_by_organization(db_session, org_id)
        subscription_factory(
            customer, plan, processor_subscription_id="sub_fast", status=SubscriptionStatus.trialing
        )
        return {"id": "sub_fast", "status": "trialing"}

    fake_gateway.create_subscription.side_effect = _create

    result = lifecycle.create(db_session, org_id, "owner@example.com", plan.id)

    assert result.status == "created"
    assert result.subscription.processor_subscription_id == "sub_fast"
    assert result.subscription.status == SubscriptionStatus.trialing


def test_create_annual_uses_annual_price(db_session, lifecycle, fake_gateway, plan):
    lifecycle.create(
        db_session, uuid.uuid4(), "owner@example.com", plan.id, billing_cycle="annual", trial_days=0
    )
    args, kwargs = fake_gateway.create_subscription.call_args
    assert args[1] == "price_starter_annual"
    assert kwargs["metadata"]["billing_cycle"] == "annual"
    assert kwargs["trial_period_days"] is None


def test_create_rejects_second_live_subscription(db_session, lifecycle, fake_gateway, subscription, customer, plan):
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.create(db_session, customer.organization_id, "owner@example.com", plan.id)
    assert exc_info.value.status_code == 400
    assert _error_code(exc_info) == "already_subscribed"
    fake_gateway.create_subscription.assert_not_called()


def test_create_rejects_inactive_plan(db_session, lifecycle, plan_factory):
    retired = plan_factory(is_active=False)
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.create(db_session, uuid.uuid4(), "owner@example.com", retired.id)
    assert _error_code(exc_info) == "plan_unavailable"


def test_create_rejects_unknown_plan(db_session, lifecycle):
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.create(db_session, uuid.uuid4(), "owner@example.com", "not-a-uuid")
    assert exc_info.value.status_code == 404
    assert _error_code(exc_info) == "plan_not_found"


def test_create_timeout_is_pending_without_local_state(db_session, lifecycle, fake_gateway, plan):
    fake_gateway.create_subscription.side_effect = GatewayTimeout("timed out")

    result = lifecycle.create(db_session, uuid.uuid4(), "owner@example.com", plan.id)

    assert result.status == "pending"
    assert result.processor_subscription_id is None
    assert db_session.query(Subscription).count() == 0


def test_create_declined_card_is_mapped(db_session, lifecycle, fake_gateway, plan):
    fake_gateway.create_subscription.side_effect = PaymentDeclined(
        "Your card was declined.", code="card_declined", status_code=402
    )
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.create(db_session, uuid.uuid4(), "owner@example.com", plan.id)
    assert exc_info.value.status_code == 400
    assert _error_code(exc_info) == "payment_method_declined"
    assert exc_info.value.detail["message"] == "The payment method was declined"


def test_create_processor_rejection_hides_processor_message(db_session, lifecycle, fake_gateway, plan):
    fake_gateway.create_subscription.side_effect = GatewayRequestError(
        "No such price: 'price_x'", code="resource_missing", status_code=400
    )
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.create(db_session, uuid.uuid4(), "owner@example.com", plan.id)
    assert _error_code(exc_info) == "processor_rejected"
    assert "price_x" not in exc_info.value.detail["message"]


# ── change_plan ──────────────────────────────────────────


def test_monthly_to_cheaper_annual_is_downgrade(
    db_session, lifecycle, fake_gateway, customer, plan_factory, subscription_factory
):
    basic = plan_factory(name="basic", monthly_price_cents=900, annual_price_cents=9000)
    yearly = plan_factory(name="yearly", monthly_price_cents=1000, annual_price_cents=9900)
    subscription = subscription_factory(customer, basic)

    result = lifecycle.change_plan(db_session, subscription.id, yearly.id, billing_cycle="annual")

    assert result.status == "updated"
    assert result.subscription.pricing_plan_id == yearly.id
    assert result.subscription.billing_cycle == BillingCycle.annual
    assert result.subscription.amount_cents == 9900
    args, _ = fake_gateway.update_subscription.call_args
    assert args == (
        subscription.processor_subscription_id,
        subscription.processor_item_id,
        "price_yearly_annual",
    )
    change = _changes(db_session, subscription.id)[-1]
    assert change.change_type == SubscriptionChangeType.downgraded
    assert change.from_plan_id == basic.id
    assert change.to_plan_id == yearly.id
    assert change.from_amount_cents == 900
    assert change.to_amount_cents == 9900


def test_higher_monthly_price_is_upgrade(
    db_session, lifecycle, customer, plan_factory, subscription_factory
):
    basic = plan_factory(name="basic", monthly_price_cents=900)
    pro = plan_factory(name="pro", monthly_price_cents=4900)
    subscription = subscription_factory(customer, basic)

    lifecycle.change_plan(db_session, subscription.id, pro.id)

    change = _changes(db_session, subscription.id)[-1]
    assert change.change_type == SubscriptionChangeType.upgraded
    assert change.initiated_by == ChangeInitiator.customer


def test_equal_monthly_equivalent_is_downgrade(
    db_session, lifecycle, customer, plan_factory, subscription_factory
):
    basic = plan_factory(name="basic", monthly_price_cents=1000, annual_price_cents=12000)
    twin = plan_factory(name="twin", monthly_price_cents=1000, annual_price_cents=12000)
    subscription = subscription_factory(customer, basic)

    lifecycle.change_plan(db_session, subscription.id, twin.id, billing_cycle="annual")

    assert _changes(db_session, subscription.id)[-1].change_type == SubscriptionChangeType.downgraded


def test_change_to_same_plan_is_rejected(db_session, lifecycle, subscription, plan, fake_gateway):
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.change_plan(db_session, subscription.id, plan.id)
    assert _error_code(exc_info) == "no_change"
    fake_gateway.update_subscription.assert_not_called()


def test_change_plan_timeout_leaves_local_state(
    db_session, lifecycle, fake_gateway, customer, plan, plan_factory, subscription
):
    pro = plan_factory(name="pro", monthly_price_cents=4900)
    fake_gateway.update_subscription.side_effect = GatewayTimeout("timed out")

    result = lifecycle.change_plan(db_session, subscription.id, pro.id)

    assert result.status == "pending"
    db_session.refresh(subscription)
    assert subscription.pricing_plan_id == plan.id
    assert _changes(db_session, subscription.id) == []


def test_change_plan_on_canceled_subscription(db_session, lifecycle, customer, plan, plan_factory, subscription_factory):
    pro = plan_factory(name="pro", monthly_price_cents=4900)
    ended = subscription_factory(customer, plan, status=SubscriptionStatus.canceled)
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.change_plan(db_session, ended.id, pro.id)
    assert _error_code(exc_info) == "already_canceled"


# ── cancel / reactivate ──────────────────────────────────


def test_cancel_at_period_end_keeps_subscription_live(db_session, lifecycle, fake_gateway, subscription):
    result = lifecycle.set_cancel_at_period_end(db_session, subscription.id, True, reason="Too pricey")

    assert result.status == "canceled"
    assert result.subscription.status == SubscriptionStatus.active
    assert result.subscription.cancel_at_period_end is True
    assert result.subscription.canceled_at is not None
    fake_gateway.set_cancel_at_period_end.assert_called_once_with(
        subscription.processor_subscription_id, True
    )
    change = _changes(db_session, subscription.id)[-1]
    assert change.change_type == SubscriptionChangeType.canceled
    assert change.reason == "Too pricey"


def test_reactivate_requires_scheduled_cancellation(db_session, lifecycle, subscription):
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.reactivate(db_session, subscription.id)
    assert _error_code(exc_info) == "not_scheduled_for_cancellation"


def test_reactivate_clears_scheduled_cancellation(db_session, lifecycle, fake_gateway, subscription):
    lifecycle.set_cancel_at_period_end(db_session, subscription.id, True)

    result = lifecycle.reactivate(db_session, subscription.id)

    assert result.status == "reactivated"
    assert result.subscription.cancel_at_period_end is False
    assert result.subscription.canceled_at is None
    fake_gateway.set_cancel_at_period_end.assert_called_with(
        subscription.processor_subscription_id, False
    )
    types = [change.change_type for change in _changes(db_session, subscription.id)]
    assert types == [SubscriptionChangeType.canceled, SubscriptionChangeType.reactivated]


def test_cancel_immediately_ends_subscription_and_retries(
    db_session, lifecycle, fake_gateway, subscription, customer, invoice_factory, retry_scheduler
):
    invoice = invoice_factory(customer, subscription)
    job = retry_scheduler.schedule_for_failed_invoice(db_session, invoice)
    db_session.commit()

    result = lifecycle.cancel_immediately(db_session, subscription.id, reason="Closing down")

    assert result.status == "canceled"
    assert result.subscription.status == SubscriptionStatus.canceled
    assert result.subscription.ended_at is not None
    fake_gateway.cancel_subscription.assert_called_once_with(subscription.processor_subscription_id)
    assert db_session.get(RetryJob, job.id).status == RetryJobStatus.canceled


def test_reactivate_after_immediate_cancel_is_rejected(db_session, lifecycle, subscription):
    lifecycle.cancel_immediately(db_session, subscription.id)
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.reactivate(db_session, subscription.id)
    assert _error_code(exc_info) == "already_canceled"


def test_cancel_twice_is_rejected(db_session, lifecycle, subscription):
    lifecycle.cancel_immediately(db_session, subscription.id)
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.cancel_immediately(db_session, subscription.id)
    assert _error_code(exc_info) == "already_canceled"


def test_cancel_timeout_is_pending_and_writes_nothing(db_session, lifecycle, fake_gateway, subscription):
    fake_gateway.cancel_subscription.side_effect = GatewayTimeout("timed out")

    result = lifecycle.cancel_immediately(db_session, subscription.id)

    assert result.status == "pending"
    assert result.processor_subscription_id == subscription.processor_subscription_id
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.active
    assert _changes(db_session, subscription.id) == []


def test_cancel_rejected_by_processor_raises(db_session, lifecycle, fake_gateway, subscription):
    fake_gateway.cancel_subscription.side_effect = GatewayRequestError("No such subscription")
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.cancel_immediately(db_session, subscription.id)
    assert exc_info.value.status_code == 400
    assert _error_code(exc_info) == "processor_rejected"


def test_cancel_at_period_end_timeout_is_pending(db_session, lifecycle, fake_gateway, subscription):
    fake_gateway.set_cancel_at_period_end.side_effect = GatewayTimeout("timed out")

    result = lifecycle.set_cancel_at_period_end(db_session, subscription.id, True)

    assert result.status == "pending"
    db_session.refresh(subscription)
    assert subscription.cancel_at_period_end is False
    assert _changes(db_session, subscription.id) == []


def test_reactivate_timeout_is_pending(db_session, lifecycle, fake_gateway, subscription):
    lifecycle.set_cancel_at_period_end(db_session, subscription.id, True)
    fake_gateway.set_cancel_at_period_end.side_effect = GatewayTimeout("timed out")

    result = lifecycle.reactivate(db_session, subscription.id)

    assert result.status == "pending"
    db_session.refresh(subscription)
    assert subscription.cancel_at_period_end is True
    types = [change.change_type for change in _changes(db_session, subscription.id)]
    assert types == [SubscriptionChangeType.canceled]


def test_processor_writes_advance_processor_clock(
    db_session, lifecycle, plan_factory, subscription
):
    subscription.processor_updated_at = int(datetime.now(UTC).timestamp()) - 100
    db_session.commit()
    before = subscription.processor_updated_at
    pro = plan_factory(name="pro", monthly_price_cents=4900)

    lifecycle.change_plan(db_session, subscription.id, pro.id)

    db_session.refresh(subscription)
    assert subscription.processor_updated_at >= before + 100


# ── concurrency & update ─────────────────────────────────


def test_version_conflicts_exhaust_into_409(db_session, lifecycle, subscription, monkeypatch):
    def _stale():
        raise StaleDataError("version mismatch")

    monkeypatch.setattr(db_session, "commit", _stale)

    with pytest.raises(HTTPException) as exc_info:
        lifecycle.set_cancel_at_period_end(db_session, subscription.id, True)
    assert exc_info.value.status_code == 409
    assert _error_code(exc_info) == "concurrent_update"


def test_version_increments_on_each_write(db_session, lifecycle, subscription):
    starting = subscription.version
    lifecycle.set_cancel_at_period_end(db_session, subscription.id, True)
    lifecycle.reactivate(db_session, subscription.id)
    db_session.refresh(subscription)
    assert subscription.version == starting + 2


def test_update_merges_metadata(db_session, lifecycle, subscription_factory, customer, plan):
    subscription = subscription_factory(customer, plan, metadata_={"team": "core"})
    payload = SubscriptionUpdateRequest(metadata={"cost_center": "42"})

    result = lifecycle.update(db_session, subscription.id, payload)

    assert result.status == "updated"
    db_session.refresh(subscription)
    assert subscription.metadata_ == {"team": "core", "cost_center": "42"}


def test_update_without_changes_is_rejected(db_session, lifecycle, subscription):
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.update(db_session, subscription.id, SubscriptionUpdateRequest())
    assert _error_code(exc_info) == "no_change"


def test_detail_includes_plan_limits(db_session, lifecycle, subscription):
    detail = lifecycle.detail(db_session, subscription)
    assert detail.plan.name == "starter"
    assert detail.limits.api_calls_per_month == 1000
    assert detail.limits.seats == 3


def test_list_expiring_finds_scheduled_cancellations(db_session, lifecycle, subscription):
    lifecycle.set_cancel_at_period_end(db_session, subscription.id, True)
    assert [item.id for item in lifecycle.list_expiring(db_session, days_ahead=30)] == [subscription.id]
    assert lifecycle.list_expiring(db_session, days_ahead=7) == []


def test_list_expiring_includes_ending_trials(
    db_session, lifecycle, subscription_factory, customer_factory, plan
):
    now = datetime.now(UTC)
    ending = subscription_factory(
        customer_factory(),
        plan,
        cancel_at_period_end=True,
        current_period_end=now + timedelta(days=3),
    )
    trial = subscription_factory(
        customer_factory(),
        plan,
        status=SubscriptionStatus.trialing,
        trial_end=now + timedelta(days=2),
        current_period_end=now + timedelta(days=2),
    )
    subscription_factory(customer_factory(), plan, current_period_end=now + timedelta(days=3))
    subscription_factory(
        customer_factory(),
        plan,
        cancel_at_period_end=True,
        current_period_end=now + timedelta(days=20),
    )

    expiring = lifecycle.list_expiring(db_session, days_ahead=7)

    assert {item.id for item in expiring} == {ending.id, trial.id}
