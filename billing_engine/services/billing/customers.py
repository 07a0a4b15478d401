import logging
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engine.models.billing import Customer
from billing_engine.services.billing.errors import CUSTOMER_NOT_FOUND, billing_error
from billing_engine.services.common import coerce_uuid, utcnow
from billing_engine.services.payment_gateway import StripeGateway, stripe_gateway

logger = logging.getLogger(__name__)


class Customers:
    def __init__(self, gateway: StripeGateway | None = None) -> None:
        self.gateway = gateway or stripe_gateway

    @staticmethod
    def get(db: Session, customer_id: str | UUID) -> Customer:
        try:
            item = db.get(Customer, coerce_uuid(customer_id))
        except ValueError:
            item = None
        if not item:
            raise billing_error(404, CUSTOMER_NOT_FOUND, "Customer not found")
        return item

    @staticmethod
    def get_by_organization(db: Session, organization_id: str | UUID) -> Customer | None:
        return (
            db.query(Customer)
            .filter(Customer.organization_id == coerce_uuid(organization_id))
            .first()
        )

    @staticmethod
    def require_for_organization(db: Session, organization_id: str | UUID) -> Customer:
        item = Customers.get_by_organization(db, organization_id)
        if not item:
            raise billing_error(404, CUSTOMER_NOT_FOUND, "No billing account for this organization")
        return item

    @staticmethod
    def get_by_processor_id(db: Session, processor_customer_id: str | None) -> Customer | None:
        if not processor_customer_id:
            return None
        return (
            db.query(Customer)
            .filter(Customer.processor_customer_id == processor_customer_id)
            .first()
        )

    def get_or_create(
        self,
        db: Session,
        organization_id: str | UUID,
        email: str,
        name: str | None = None,
    ) -> Customer:
        """Resolve the organization's customer, creating it locally and at the processor on first use."""
        org_id = coerce_uuid(organization_id)
        customer = self.get_by_organization(db, org_id)
        if customer is None:
            customer = Customer(organization_id=org_id, billing_email=email, name=name)
            db.add(customer)
            try:
                db.commit()
            except IntegrityError:
                # Another request created it first.
                db.rollback()
                customer = self.get_by_organization(db, org_id)
                if customer is None:
                    raise
            else:
                db.refresh(customer)
                logger.info("Created Customer: %s", customer.id)

        if customer.processor_customer_id and customer.is_active:
            return customer

        remote = self.gateway.create_customer(
            email=customer.billing_email,
            name=customer.name,
            metadata={
                "customer_id": str(customer.id),
                "organization_id": str(customer.organization_id),
            },
        )
        customer.processor_customer_id = remote["id"]
        customer.is_active = True
        customer.retired_at = None
        db.commit()
        db.refresh(customer)
        logger.info(
            "Linked Customer %s to processor customer %s",
            customer.id,
            customer.processor_customer_id,
        )
        return customer

    @staticmethod
    def sync_contact(
        db: Session, customer: Customer, email: str | None, name: str | None
    ) -> Customer:
        if email:
            customer.billing_email = email
        if name:
            customer.name = name
        db.flush()
        return customer

    @staticmethod
    def retire(db: Session, customer: Customer) -> Customer:
        """Soft-retire; customers are never deleted."""
        if customer.is_active:
            customer.is_active = False
            customer.retired_at = utcnow()
            db.flush()
            logger.info("Retired Customer: %s", customer.id)
        return customer


customers = Customers()
