"""Enterprise contracts: negotiated price, custom limits and volume discounts.

A contract sits beside the customer's plan subscription. While it is in force
its non-null limits replace the plan's, and draft invoices can take a volume
discount credited through the processor so the mirrored invoice stays the
single source of amounts.
"""

import logging
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engine.models.billing import (
    Customer,
    EnterpriseContract,
    InvoiceStatus,
)
from billing_engine.schemas.billing import (
    ContractRenewalRequest,
    EnterpriseContractCreate,
    EnterpriseContractUpdate,
    VolumeDiscount,
    VolumeDiscountResult,
)
from billing_engine.services.billing.customers import Customers
from billing_engine.services.billing.errors import (
    CONTRACT_EXISTS,
    CONTRACT_NOT_FOUND,
    INVALID_CONTRACT_TERM,
    INVOICE_NOT_DRAFT,
    billing_error,
    gateway_http_error,
)
from billing_engine.services.billing.invoices import Invoices
from billing_engine.services.common import coerce_uuid, utcnow
from billing_engine.services.payment_gateway import (
    GatewayError,
    StripeGateway,
    stripe_gateway,
)

logger = logging.getLogger(__name__)

VOLUME_DISCOUNT_LABEL = "Volume discount"


def volume_discount(base_amount_cents: int, quantity: int, rules: list[dict]) -> VolumeDiscount:
    """Apply the highest discount whose threshold the quantity reaches."""
    percent = 0.0
    for rule in rules:
        if quantity >= rule["threshold"]:
            percent = max(percent, float(rule["discount_percent"]))
    amount = int(
        (Decimal(base_amount_cents) * Decimal(str(percent)) / 100).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )
    return VolumeDiscount(
        original_amount_cents=base_amount_cents,
        discount_percent=percent,
        discount_amount_cents=amount,
        discounted_amount_cents=base_amount_cents - amount,
    )


def in_force_contract(
    db: Session, customer_id: UUID, on: date | None = None
) -> EnterpriseContract | None:
    day = on or utcnow().date()
    return (
        db.query(EnterpriseContract)
        .filter(EnterpriseContract.customer_id == customer_id)
        .filter(EnterpriseContract.is_active.is_(True))
        .filter(EnterpriseContract.contract_start <= day)
        .filter(EnterpriseContract.contract_end >= day)
        .first()
    )


def _check_term(start: date, end: date) -> None:
    if end <= start:
        raise billing_error(
            400, INVALID_CONTRACT_TERM, "Contract end must be after contract start"
        )


class EnterpriseContracts:
    def __init__(self, gateway: StripeGateway | None = None) -> None:
        self.gateway = gateway or stripe_gateway

    @staticmethod
    def get(db: Session, contract_id: str | UUID) -> EnterpriseContract:
        try:
            item = db.get(EnterpriseContract, coerce_uuid(contract_id))
        except ValueError:
            item = None
        if not item:
            raise billing_error(404, CONTRACT_NOT_FOUND, "Enterprise contract not found")
        return item

    @staticmethod
    def get_active(db: Session, customer_id: str | UUID) -> EnterpriseContract | None:
        return (
            db.query(EnterpriseContract)
            .filter(EnterpriseContract.customer_id == coerce_uuid(customer_id))
            .filter(EnterpriseContract.is_active.is_(True))
            .first()
        )

    @staticmethod
    def _commit(db: Session, contract: EnterpriseContract) -> EnterpriseContract:
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise billing_error(
                409, CONTRACT_EXISTS, "Customer already has an active enterprise contract"
            ) from exc
        db.refresh(contract)
        return contract

    def create(self, db: Session, payload: EnterpriseContractCreate) -> EnterpriseContract:
        customer = Customers.get(db, payload.customer_id)
        _check_term(payload.contract_start, payload.contract_end)
        if self.get_active(db, customer.id) is not None:
            raise billing_error(
                409, CONTRACT_EXISTS, "Customer already has an active enterprise contract"
            )
        contract = EnterpriseContract(**payload.model_dump())
        db.add(contract)
        contract = self._commit(db, contract)
        logger.info(
            "Enterprise contract %s created",
            contract.id,
            extra={"customer_id": str(customer.id)},
        )
        return contract

    def update(
        self, db: Session, contract_id: str | UUID, payload: EnterpriseContractUpdate
    ) -> EnterpriseContract:
        contract = self.get(db, contract_id)
        data = payload.model_dump(exclude_unset=True)
        _check_term(
            data.get("contract_start") or contract.contract_start,
            data.get("contract_end") or contract.contract_end,
        )
        if data.get("is_active") and not contract.is_active:
            active = self.get_active(db, contract.customer_id)
            if active is not None and active.id != contract.id:
                raise billing_error(
                    409, CONTRACT_EXISTS, "Customer already has an active enterprise contract"
                )
        for key, value in data.items():
            setattr(contract, key, value)
        contract = self._commit(db, contract)
        logger.info("Enterprise contract %s updated", contract.id)
        return contract

    def renew(
        self, db: Session, contract_id: str | UUID, payload: ContractRenewalRequest
    ) -> EnterpriseContract:
        contract = self.get(db, contract_id)
        if payload.contract_end <= contract.contract_end:
            raise billing_error(
                400, INVALID_CONTRACT_TERM, "Renewal must extend the contract end date"
            )
        contract.contract_end = payload.contract_end
        if payload.base_price_cents is not None:
            contract.base_price_cents = payload.base_price_cents
        if payload.limits is not None:
            for key, value in payload.limits.model_dump(exclude_unset=True).items():
                setattr(contract, key, value)
        contract = self._commit(db, contract)
        logger.info(
            "Enterprise contract %s renewed until %s",
            contract.id,
            contract.contract_end.isoformat(),
            extra={"customer_id": str(contract.customer_id)},
        )
        return contract

    @staticmethod
    def list_expiring(db: Session, days_ahead: int = 30) -> list[EnterpriseContract]:
        today = utcnow().date()
        return (
            db.query(EnterpriseContract)
            .filter(EnterpriseContract.is_active.is_(True))
            .filter(EnterpriseContract.contract_end >= today)
            .filter(EnterpriseContract.contract_end <= today + timedelta(days=days_ahead))
            .order_by(EnterpriseContract.contract_end.asc())
            .all()
        )

    def apply_volume_discount(
        self, db: Session, invoice_id: str | UUID, quantity: int
    ) -> VolumeDiscountResult:
        """Credit a draft invoice with the contract's volume discount.

        The credit is added at the processor; the local invoice picks it up
        from the next ``invoice.updated`` webhook.
        """
        invoice = Invoices.get(db, invoice_id)
        if invoice.status != InvoiceStatus.draft:
            raise billing_error(
                400, INVOICE_NOT_DRAFT, "Discounts can only be added to draft invoices"
            )
        contract = in_force_contract(db, invoice.customer_id)
        if contract is None:
            raise billing_error(
                404, CONTRACT_NOT_FOUND, "Customer has no enterprise contract in force"
            )

        quote = volume_discount(invoice.subtotal_cents, quantity, contract.volume_discounts or [])
        already_applied = any(
            (line.description or "").startswith(VOLUME_DISCOUNT_LABEL)
            for line in invoice.line_items
        )
        result = VolumeDiscountResult(
            **quote.model_dump(), invoice_id=invoice.id, quantity=quantity, applied=False
        )
        if quote.discount_amount_cents == 0 or already_applied:
            return result

        customer = db.get(Customer, invoice.customer_id)
        description = (
            f"{VOLUME_DISCOUNT_LABEL} ({quote.discount_percent:g}% for {quantity} units)"
        )
        try:
            self.gateway.add_invoice_item(
                customer.processor_customer_id,
                invoice.processor_invoice_id,
                -quote.discount_amount_cents,
                invoice.currency,
                description,
                idempotency_key=f"volume-discount-{invoice.id}",
            )
        except GatewayError as exc:
            raise gateway_http_error(exc) from exc
        logger.info(
            "Volume discount of %d cents added to invoice %s",
            quote.discount_amount_cents,
            invoice.id,
            extra={"invoice_id": str(invoice.id), "customer_id": str(customer.id)},
        )
        return result.model_copy(update={"applied": True})


enterprise_contracts = EnterpriseContracts()
