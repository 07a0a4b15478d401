from billing_engine.services.billing.analytics import AnalyticsAggregator, analytics
from billing_engine.services.billing.checkout import CheckoutSessions, checkout_sessions
from billing_engine.services.billing.customers import Customers, customers
from billing_engine.services.billing.enterprise import EnterpriseContracts, enterprise_contracts
from billing_engine.services.billing.invoices import Invoices, invoices
from billing_engine.services.billing.notifications import BillingNotifier, billing_notifier
from billing_engine.services.billing.plans import PricingPlans, pricing_plans
from billing_engine.services.billing.retries import PaymentRetryScheduler, payment_retries
from billing_engine.services.billing.subscriptions import (
    SubscriptionLifecycle,
    subscription_lifecycle,
)
from billing_engine.services.billing.usage import UsageLedger, usage_ledger
from billing_engine.services.billing.webhooks import (
    StateSynchronizer,
    WebhookEvents,
    state_synchronizer,
    webhook_events,
)

__all__ = [
    "AnalyticsAggregator",
    "BillingNotifier",
    "CheckoutSessions",
    "Customers",
    "EnterpriseContracts",
    "Invoices",
    "PaymentRetryScheduler",
    "PricingPlans",
    "StateSynchronizer",
    "SubscriptionLifecycle",
    "UsageLedger",
    "WebhookEvents",
    "analytics",
    "billing_notifier",
    "checkout_sessions",
    "customers",
    "enterprise_contracts",
    "invoices",
    "payment_retries",
    "pricing_plans",
    "state_synchronizer",
    "subscription_lifecycle",
    "usage_ledger",
    "webhook_events",
]
