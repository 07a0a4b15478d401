from billing_engine.models.billing import (  # noqa: F401
    AnalyticsPeriod,
    AnalyticsSummary,
    BillingCycle,
    ChangeInitiator,
    Customer,
    EnterpriseContract,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    LineItemType,
    PaymentMethod,
    PricingPlan,
    RetryJob,
    RetryJobStatus,
    Subscription,
    SubscriptionChange,
    SubscriptionChangeType,
    SubscriptionStatus,
    SupportLevel,
    UsageAction,
    UsageRecord,
    UsageType,
    WebhookEvent,
    WebhookEventStatus,
)
