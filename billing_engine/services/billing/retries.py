"""Dunning: scheduled retries for failed invoice payments.

Each failed invoice has at most one pending or running retry job. Jobs are
claimed with a conditional update so two workers never run the same job.
After ``max_attempts`` failed retries the invoice is marked uncollectible and
the subscription moves to ``unpaid``.
"""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from billing_engine.config import settings
from billing_engine.metrics import PAYMENT_RETRY_ATTEMPTS
from billing_engine.models.billing import (
    Invoice,
    InvoiceStatus,
    RetryJob,
    RetryJobStatus,
    SubscriptionChangeType,
    SubscriptionStatus,
)
from billing_engine.schemas.billing import RetryOutcome, RetryStatistics, RetryStatus
from billing_engine.services.billing.changes import record_change
from billing_engine.services.billing.errors import (
    INVOICE_ALREADY_PAID,
    INVOICE_VOID,
    billing_error,
)
from billing_engine.services.billing.invoices import invoices as invoice_service
from billing_engine.services.billing.notifications import (
    COLLECTION_FAILED,
    PAYMENT_RECOVERED,
    BillingNotifier,
    billing_notifier,
)
from billing_engine.services.common import utcnow
from billing_engine.services.payment_gateway import (
    GatewayError,
    StripeGateway,
    stripe_gateway,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_DAYS = 7
OPEN_JOB_STATUSES = (RetryJobStatus.pending, RetryJobStatus.running)


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, GatewayError):
        return exc.code or exc.message
    return f"Unexpected error: {exc.__class__.__name__}"


class PaymentRetryScheduler:
    def __init__(
        self,
        gateway: StripeGateway | None = None,
        notifier: BillingNotifier | None = None,
        max_attempts: int | None = None,
        schedule_days: tuple[int, ...] | list[int] | None = None,
    ) -> None:
        self.gateway = gateway or stripe_gateway
        self.notifier = notifier or billing_notifier
        self.max_attempts = (
            settings.payment_retry_max_attempts if max_attempts is None else max_attempts
        )
        self.schedule_days = tuple(
            settings.payment_retry_schedule_days if schedule_days is None else schedule_days
        )

    def delay_for(self, failed_attempts: int) -> timedelta:
        """Delay before the next retry; the last schedule entry repeats."""
        if not self.schedule_days:
            return timedelta(days=DEFAULT_RETRY_DELAY_DAYS)
        index = min(failed_attempts, len(self.schedule_days) - 1)
        return timedelta(days=self.schedule_days[index])

    # ── Scheduling ───────────────────────────────────────

    @staticmethod
    def _open_job(db: Session, invoice_id: UUID) -> RetryJob | None:
        return (
            db.query(RetryJob)
            .filter(RetryJob.invoice_id == invoice_id)
            .filter(RetryJob.status.in_(OPEN_JOB_STATUSES))
            .first()
        )

    @staticmethod
    def _failed_count(db: Session, invoice_id: UUID) -> int:
        return (
            db.query(func.count(RetryJob.id))
            .filter(RetryJob.invoice_id == invoice_id)
            .filter(RetryJob.status == RetryJobStatus.failed)
            .scalar()
            or 0
        )

    def schedule_retry(
        self, db: Session, invoice: Invoice, failed_attempts: int
    ) -> RetryJob | None:
        """Queue the next retry, or escalate once the attempt budget is spent.

        Flushes only; the caller owns the transaction.
        """
        if failed_attempts >= self.max_attempts:
            self._escalate(db, invoice)
            return None
        scheduled_for = utcnow() + self.delay_for(failed_attempts)
        job = RetryJob(
            invoice_id=invoice.id,
            attempt_number=failed_attempts + 1,
            scheduled_for=scheduled_for,
            status=RetryJobStatus.pending,
        )
        db.add(job)
        invoice.next_payment_attempt = scheduled_for
        db.flush()
        logger.info(
            "Scheduled payment retry %d for invoice %s at %s",
            job.attempt_number,
            invoice.id,
            scheduled_for.isoformat(),
            extra={"invoice_id": str(invoice.id)},
        )
        return job

    def schedule_for_failed_invoice(self, db: Session, invoice: Invoice) -> RetryJob | None:
        """Entry point for a processor-reported payment failure."""
        if invoice.status in (
            InvoiceStatus.paid,
            InvoiceStatus.void,
            InvoiceStatus.uncollectible,
        ):
            return None
        if self._open_job(db, invoice.id) is not None:
            logger.debug("Invoice %s already has an open retry job", invoice.id)
            return None
        return self.schedule_retry(db, invoice, self._failed_count(db, invoice.id))

    def _escalate(self, db: Session, invoice: Invoice) -> None:
        already_uncollectible = invoice.status == InvoiceStatus.uncollectible
        invoice.status = InvoiceStatus.uncollectible
        invoice.next_payment_attempt = None
        subscription = invoice.subscription
        if subscription is not None and subscription.status != SubscriptionStatus.canceled:
            if subscription.status != SubscriptionStatus.unpaid:
                subscription.status = SubscriptionStatus.unpaid
                record_change(
                    db,
                    subscription,
                    SubscriptionChangeType.unpaid,
                    reason="Payment retries exhausted",
                )
        db.flush()
        if already_uncollectible:
            return
        PAYMENT_RETRY_ATTEMPTS.labels("uncollectible").inc()
        logger.warning(
            "Invoice %s uncollectible after %d retries",
            invoice.id,
            self.max_attempts,
            extra={"invoice_id": str(invoice.id)},
        )
        self.notifier.notify(
            COLLECTION_FAILED,
            invoice_id=str(invoice.id),
            customer_id=str(invoice.customer_id),
            subscription_id=str(invoice.subscription_id) if invoice.subscription_id else None,
            amount_due_cents=invoice.amount_due_cents,
        )

    def cancel_retries(self, db: Session, invoice_id: UUID) -> int:
        count = (
            db.query(RetryJob)
            .filter(RetryJob.invoice_id == invoice_id)
            .filter(RetryJob.status == RetryJobStatus.pending)
            .update(
                {RetryJob.status: RetryJobStatus.canceled, RetryJob.completed_at: utcnow()},
                synchronize_session=False,
            )
        )
        if count:
            logger.info("Canceled %d pending retries for invoice %s", count, invoice_id)
        return count

    def cancel_for_subscription(self, db: Session, subscription_id: UUID) -> int:
        invoice_ids = [
            row[0]
            for row in db.query(Invoice.id)
            .filter(Invoice.subscription_id == subscription_id)
            .all()
        ]
        return sum(self.cancel_retries(db, invoice_id) for invoice_id in invoice_ids)

    # ── Execution ────────────────────────────────────────

    def claim_due_jobs(
        self, db: Session, now: datetime | None = None, limit: int | None = None
    ) -> list[UUID]:
        """Move due pending jobs to running. A job lost to another worker is skipped."""
        now = now or utcnow()
        limit = limit or settings.payment_retry_batch_size
        candidates = (
            db.query(RetryJob.id)
            .filter(RetryJob.status == RetryJobStatus.pending)
            .filter(RetryJob.scheduled_for <= now)
            .order_by(RetryJob.scheduled_for.asc())
            .limit(limit)
            .all()
        )
        claimed: list[UUID] = []
        for (job_id,) in candidates:
            result = db.execute(
                update(RetryJob)
                .where(RetryJob.id == job_id)
                .where(RetryJob.status == RetryJobStatus.pending)
                .values(status=RetryJobStatus.running, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append(job_id)
        db.commit()
        return claimed

    def run_job(self, db: Session, job_id: UUID, manual: bool = False) -> RetryOutcome:
        """Attempt collection for a claimed job. Never raises on processor failure."""
        job = db.get(RetryJob, job_id)
        db.refresh(job)
        invoice = job.invoice
        db.refresh(invoice)
        now = utcnow()

        if invoice.status == InvoiceStatus.paid:
            return self._finish(
                db, job, RetryJobStatus.succeeded, "already_paid", "Invoice already paid"
            )
        subscription = invoice.subscription
        closed = invoice.status == InvoiceStatus.void or (
            invoice.status == InvoiceStatus.uncollectible and not manual
        )
        if closed or (
            subscription is not None and subscription.status == SubscriptionStatus.canceled
        ):
            return self._finish(
                db, job, RetryJobStatus.canceled, "canceled", "Invoice no longer collectible"
            )

        try:
            result = self.gateway.retry_invoice_payment(invoice.processor_invoice_id)
        except Exception as exc:
            if isinstance(exc, GatewayError):
                logger.warning(
                    "Payment retry %d for invoice %s failed: %s",
                    job.attempt_number,
                    invoice.id,
                    exc.__class__.__name__,
                )
            else:
                logger.exception(
                    "Payment retry %d for invoice %s raised unexpectedly",
                    job.attempt_number,
                    invoice.id,
                )
            return self._record_failure(db, job, invoice, _failure_reason(exc))

        if result.get("status") != "paid":
            return self._record_failure(db, job, invoice, "Payment not completed")

        invoice_service.mark_paid(db, invoice, paid_at=now)
        if subscription is not None:
            record_change(
                db,
                subscription,
                SubscriptionChangeType.payment_recovered,
                reason=f"Recovered on retry {job.attempt_number}",
            )
        outcome = self._finish(db, job, RetryJobStatus.succeeded, "paid")
        self.notifier.notify(
            PAYMENT_RECOVERED,
            invoice_id=str(invoice.id),
            customer_id=str(invoice.customer_id),
            subscription_id=str(invoice.subscription_id) if invoice.subscription_id else None,
            attempt_number=job.attempt_number,
        )
        return outcome

    def _record_failure(
        self, db: Session, job: RetryJob, invoice: Invoice, reason: str
    ) -> RetryOutcome:
        job.status = RetryJobStatus.failed
        job.completed_at = utcnow()
        job.last_error = reason
        invoice.payment_failure_reason = reason
        db.flush()
        next_job = self.schedule_retry(db, invoice, self._failed_count(db, invoice.id))
        db.commit()
        PAYMENT_RETRY_ATTEMPTS.labels("failed").inc()
        if next_job is None:
            return RetryOutcome(
                invoice_id=invoice.id,
                job_id=job.id,
                attempt_number=job.attempt_number,
                outcome="uncollectible",
                message=reason,
            )
        return RetryOutcome(
            invoice_id=invoice.id,
            job_id=job.id,
            attempt_number=job.attempt_number,
            outcome="failed",
            next_attempt_at=next_job.scheduled_for,
            message=reason,
        )

    @staticmethod
    def _finish(
        db: Session,
        job: RetryJob,
        status: RetryJobStatus,
        outcome: str,
        message: str | None = None,
    ) -> RetryOutcome:
        job.status = status
        job.completed_at = utcnow()
        invoice = job.invoice
        if status == RetryJobStatus.canceled:
            invoice.next_payment_attempt = None
        db.commit()
        PAYMENT_RETRY_ATTEMPTS.labels(outcome).inc()
        logger.info(
            "Payment retry %d for invoice %s: %s",
            job.attempt_number,
            job.invoice_id,
            outcome,
            extra={"invoice_id": str(job.invoice_id)},
        )
        return RetryOutcome(
            invoice_id=job.invoice_id,
            job_id=job.id,
            attempt_number=job.attempt_number,
            outcome=outcome,
            message=message,
        )

    def process_due(
        self, db: Session, now: datetime | None = None, limit: int | None = None
    ) -> dict[str, int]:
        """Claim and run every due job. Returns a count per outcome."""
        summary: dict[str, int] = {"claimed": 0}
        for job_id in self.claim_due_jobs(db, now=now, limit=limit):
            summary["claimed"] += 1
            try:
                outcome = self.run_job(db, job_id)
            except Exception:
                db.rollback()
                logger.exception("Retry job %s crashed", job_id)
                summary["error"] = summary.get("error", 0) + 1
                continue
            summary[outcome.outcome] = summary.get(outcome.outcome, 0) + 1
        if summary["claimed"]:
            logger.info("Processed payment retries: %s", summary)
        return summary

    def manual_retry(self, db: Session, invoice_id: str | UUID) -> RetryOutcome:
        """Run a retry immediately, replacing any pending scheduled one."""
        invoice = invoice_service.get(db, invoice_id)
        if invoice.status == InvoiceStatus.paid:
            raise billing_error(400, INVOICE_ALREADY_PAID, "Invoice is already paid")
        if invoice.status == InvoiceStatus.void:
            raise billing_error(400, INVOICE_VOID, "Invoice has been voided")
        self.cancel_retries(db, invoice.id)
        now = utcnow()
        job = RetryJob(
            invoice_id=invoice.id,
            attempt_number=self._failed_count(db, invoice.id) + 1,
            scheduled_for=now,
            status=RetryJobStatus.running,
            claimed_at=now,
        )
        db.add(job)
        db.commit()
        logger.info("Manual payment retry requested for invoice %s", invoice.id)
        return self.run_job(db, job.id, manual=True)

    # ── Reporting ────────────────────────────────────────

    def retry_status(self, db: Session, invoice_id: str | UUID) -> RetryStatus:
        invoice = invoice_service.get(db, invoice_id)
        open_job = self._open_job(db, invoice.id)
        last_failed = (
            db.query(RetryJob)
            .filter(RetryJob.invoice_id == invoice.id)
            .filter(RetryJob.status == RetryJobStatus.failed)
            .order_by(RetryJob.attempt_number.desc())
            .first()
        )
        return RetryStatus(
            invoice_id=invoice.id,
            invoice_status=invoice.status,
            has_pending_retry=open_job is not None,
            next_attempt_at=open_job.scheduled_for if open_job else None,
            attempts_made=self._failed_count(db, invoice.id),
            max_attempts=self.max_attempts,
            last_error=last_failed.last_error if last_failed else None,
        )

    @staticmethod
    def statistics(db: Session) -> RetryStatistics:
        counts = {status: 0 for status in RetryJobStatus}
        rows = (
            db.query(RetryJob.status, func.count(RetryJob.id))
            .group_by(RetryJob.status)
            .all()
        )
        for status, count in rows:
            counts[RetryJobStatus(status)] = count

        retried_invoices = db.query(func.count(func.distinct(RetryJob.invoice_id))).scalar() or 0
        recovered = (
            db.query(RetryJob.attempt_number)
            .join(Invoice, Invoice.id == RetryJob.invoice_id)
            .filter(RetryJob.status == RetryJobStatus.succeeded)
            .filter(Invoice.status == InvoiceStatus.paid)
            .all()
        )
        recovery_rate = (
            round(len(recovered) / retried_invoices * 100, 2) if retried_invoices else 0.0
        )
        average_attempts = (
            round(sum(row[0] for row in recovered) / len(recovered), 2) if recovered else 0.0
        )
        return RetryStatistics(
            pending=counts[RetryJobStatus.pending],
            running=counts[RetryJobStatus.running],
            succeeded=counts[RetryJobStatus.succeeded],
            failed=counts[RetryJobStatus.failed],
            canceled=counts[RetryJobStatus.canceled],
            recovery_rate=recovery_rate,
            average_attempts_to_recover=average_attempts,
        )


payment_retries = PaymentRetryScheduler()
