from dataclasses import dataclass, field
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt

from billing_engine.config import settings
from billing_engine.db import SessionLocal
from billing_engine.services.billing import (
    CheckoutSessions,
    EnterpriseContracts,
    PaymentRetryScheduler,
    StateSynchronizer,
    SubscriptionLifecycle,
    UsageLedger,
    checkout_sessions,
    enterprise_contracts,
    payment_retries,
    state_synchronizer,
    subscription_lifecycle,
    usage_ledger,
)
from billing_engine.services.common import coerce_uuid


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@dataclass(frozen=True)
class BillingContext:
    """Caller identity taken from the identity provider's access token."""

    user_id: str
    organization_id: UUID
    email: str
    name: str | None = None
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def _unauthorized(message: str = "Unauthorized") -> HTTPException:
    return HTTPException(status_code=401, detail={"code": "unauthorized", "message": message})


def decode_access_token(token: str) -> dict:
    if not settings.jwt_secret:
        raise _unauthorized("Authentication is not configured")
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise _unauthorized("Invalid or expired token") from exc


def get_billing_context(
    authorization: str | None = Header(default=None),
    request: Request = None,
) -> BillingContext:
    token = _extract_bearer_token(authorization)
    if not token:
        raise _unauthorized()
    payload = decode_access_token(token)
    subject = payload.get("sub")
    org_id = payload.get("org_id")
    email = payload.get("email")
    if not subject or not org_id or not email:
        raise _unauthorized("Token is missing required claims")
    try:
        organization_id = coerce_uuid(org_id)
    except ValueError as exc:
        raise _unauthorized("Token carries an invalid organization") from exc
    roles_value = payload.get("roles")
    roles = frozenset(str(role) for role in roles_value) if isinstance(roles_value, list) else frozenset()
    if request is not None:
        request.state.actor_id = str(subject)
    return BillingContext(
        user_id=str(subject),
        organization_id=organization_id,
        email=str(email),
        name=payload.get("name"),
        roles=roles,
    )


def require_admin(ctx: BillingContext = Depends(get_billing_context)) -> BillingContext:
    if not ctx.is_admin:
        raise HTTPException(
            status_code=403, detail={"code": "forbidden", "message": "Admin role required"}
        )
    return ctx


# Service providers, overridable through app.dependency_overrides.


def get_lifecycle() -> SubscriptionLifecycle:
    return subscription_lifecycle


def get_usage_ledger() -> UsageLedger:
    return usage_ledger


def get_checkout() -> CheckoutSessions:
    return checkout_sessions


def get_synchronizer() -> StateSynchronizer:
    return state_synchronizer


def get_retry_scheduler() -> PaymentRetryScheduler:
    return payment_retries


def get_enterprise_contracts() -> EnterpriseContracts:
    return enterprise_contracts
