import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from billing_engine.models.billing import (
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    LineItemType,
)
from billing_engine.schemas.events import InvoiceLineObject, InvoiceObject
from billing_engine.services.billing.errors import INVOICE_NOT_FOUND, billing_error
from billing_engine.services.common import coerce_uuid, from_unix, utcnow
from billing_engine.services.query_utils import apply_ordering, apply_pagination, validate_enum
from billing_engine.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

TERMINAL_INVOICE_STATUSES = (InvoiceStatus.paid, InvoiceStatus.void)


def _merge_status(current: InvoiceStatus | None, incoming: str | None) -> InvoiceStatus:
    """Resolve the stored status without regressing a settled invoice."""
    try:
        target = InvoiceStatus(incoming) if incoming else None
    except ValueError:
        target = None
    if current is None:
        return target or InvoiceStatus.draft
    if target is None or current in TERMINAL_INVOICE_STATUSES:
        return current
    if current == InvoiceStatus.uncollectible and target in (
        InvoiceStatus.draft,
        InvoiceStatus.open,
    ):
        return current
    return target


def _line_item_type(line: InvoiceLineObject) -> LineItemType:
    if line.amount < 0 and not line.proration:
        return LineItemType.discount
    if line.type == "invoiceitem":
        return LineItemType.one_time
    if line.price is not None and line.price.is_metered:
        return LineItemType.usage
    return LineItemType.subscription


def _build_line_item(line: InvoiceLineObject) -> InvoiceLineItem:
    quantity = line.quantity or 1
    period = line.period or {}
    return InvoiceLineItem(
        processor_line_item_id=line.id,
        description=line.description,
        item_type=_line_item_type(line),
        quantity=quantity,
        unit_amount_cents=int(line.amount / quantity) if quantity else line.amount,
        amount_cents=line.amount,
        is_proration=line.proration,
        period_start=from_unix(period.get("start")),
        period_end=from_unix(period.get("end")),
    )


class Invoices(ListResponseMixin):
    @staticmethod
    def get(db: Session, invoice_id: str | UUID) -> Invoice:
        try:
            item = db.get(Invoice, coerce_uuid(invoice_id))
        except ValueError:
            item = None
        if not item:
            raise billing_error(404, INVOICE_NOT_FOUND, "Invoice not found")
        return item

    @staticmethod
    def get_by_processor_id(db: Session, processor_invoice_id: str) -> Invoice | None:
        return (
            db.query(Invoice)
            .filter(Invoice.processor_invoice_id == processor_invoice_id)
            .first()
        )

    @staticmethod
    def list(
        db: Session,
        customer_id: str | UUID,
        status: str | None = None,
        order_by: str = "invoice_date",
        order_dir: str = "desc",
        *,
        limit: int,
        offset: int,
    ) -> tuple[list[Invoice], int]:
        query = db.query(Invoice).filter(Invoice.customer_id == coerce_uuid(customer_id))
        if status:
            query = query.filter(
                Invoice.status == validate_enum(status, InvoiceStatus, "status")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"invoice_date": Invoice.invoice_date, "created_at": Invoice.created_at},
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total

    @staticmethod
    def upsert_from_processor(
        db: Session,
        obj: InvoiceObject,
        customer_id: UUID,
        subscription_id: UUID | None,
    ) -> Invoice:
        """Insert or refresh the local invoice keyed by processor invoice id."""
        invoice = Invoices.get_by_processor_id(db, obj.id)
        created = invoice is None
        if invoice is None:
            invoice = Invoice(
                processor_invoice_id=obj.id,
                customer_id=customer_id,
                attempt_count=0,
            )
            db.add(invoice)
        invoice.subscription_id = subscription_id or invoice.subscription_id
        invoice.number = obj.number or invoice.number
        invoice.status = _merge_status(None if created else invoice.status, obj.status)
        invoice.currency = obj.currency.upper()
        invoice.subtotal_cents = obj.subtotal
        invoice.tax_cents = obj.tax or 0
        invoice.discount_cents = obj.discount_total
        invoice.total_cents = obj.total
        if invoice.status != InvoiceStatus.paid:
            invoice.amount_paid_cents = obj.amount_paid
            invoice.amount_due_cents = obj.amount_due
        invoice.invoice_date = from_unix(obj.created) or invoice.invoice_date
        invoice.due_date = from_unix(obj.due_date) or invoice.due_date
        invoice.period_start = from_unix(obj.period_start) or invoice.period_start
        invoice.period_end = from_unix(obj.period_end) or invoice.period_end
        invoice.hosted_invoice_url = obj.hosted_invoice_url or invoice.hosted_invoice_url
        invoice.invoice_pdf_url = obj.invoice_pdf or invoice.invoice_pdf_url
        if obj.lines.data:
            invoice.line_items = [_build_line_item(line) for line in obj.lines.data]
        db.flush()
        if created:
            logger.info("Created Invoice: %s", invoice.id)
        return invoice

    @staticmethod
    def mark_paid(db: Session, invoice: Invoice, paid_at: datetime | None = None) -> Invoice:
        invoice.status = InvoiceStatus.paid
        invoice.paid_at = paid_at or utcnow()
        invoice.amount_paid_cents = invoice.total_cents
        invoice.amount_due_cents = 0
        invoice.next_payment_attempt = None
        invoice.payment_failure_reason = None
        db.flush()
        logger.info("Invoice %s marked paid", invoice.id)
        return invoice


invoices = Invoices()
