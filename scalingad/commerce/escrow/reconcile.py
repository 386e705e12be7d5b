"""Reconciliation between local escrow state and the payment processor.

Pending payments whose outcome was unknown (timeouts, lost webhooks) are
re-queried and converged; approved jobs whose payout did not complete are
retried. ``audit_job`` compares stored rows against the ledger and records
any drift it finds.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from scalingad.commerce.errors import EscrowError
from scalingad.commerce.escrow.service import EscrowService
from scalingad.commerce.jobs.models import JobStatus, PaymentStatus, PayoutStatus
from scalingad.commerce.ledger.models import LedgerEventType

logger = logging.getLogger(__name__)

# Statuses reachable only with captured money
_FUNDED_STATUSES = frozenset(
    {
        JobStatus.FUNDED.value,
        JobStatus.IN_PROGRESS.value,
        JobStatus.REVIEW.value,
        JobStatus.REVISION.value,
        JobStatus.APPROVED.value,
        JobStatus.PAID_OUT.value,
    }
)


@dataclass
class ReconcileReport:
    """What a reconciliation pass changed or could not change."""

    jobs_checked: int = 0
    payments_confirmed: List[str] = field(default_factory=list)
    payments_failed: List[str] = field(default_factory=list)
    still_pending: List[str] = field(default_factory=list)
    payouts_released: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def merge(self, other: "ReconcileReport") -> None:
        self.jobs_checked += other.jobs_checked
        self.payments_confirmed.extend(other.payments_confirmed)
        self.payments_failed.extend(other.payments_failed)
        self.still_pending.extend(other.still_pending)
        self.payouts_released.extend(other.payouts_released)
        self.errors.update(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobs_checked": self.jobs_checked,
            "payments_confirmed": self.payments_confirmed,
            "payments_failed": self.payments_failed,
            "still_pending": self.still_pending,
            "payouts_released": self.payouts_released,
            "errors": self.errors,
        }


@dataclass
class Drift:
    """One inconsistency between stored rows and the ledger."""

    job_id: str
    check: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "check": self.check,
            "message": self.message,
            **self.details,
        }


class Reconciler:
    """Converges local state with the processor for one job or all pending work."""

    def __init__(self, service: EscrowService):
        self._service = service
        self._storage = service.storage
        self._ledger = service.ledger

    def reconcile_job(self, job_id: str) -> ReconcileReport:
        """Settle pending payments and retry a missing payout for one job.

        Processor errors are collected in the report rather than raised.
        """
        report = ReconcileReport(jobs_checked=1)
        for payment in self._storage.list_payments(job_id):
            if not payment.is_pending:
                continue
            try:
                result = self._service.confirm_payment(job_id, payment.payment_intent_id)
            except EscrowError as e:
                logger.warning(f"Reconcile {payment.payment_intent_id} failed: {e.code}")
                report.errors[payment.payment_intent_id] = e.code
                continue
            status = result.payment.status
            if status == PaymentStatus.SUCCEEDED.value:
                report.payments_confirmed.append(payment.payment_intent_id)
            elif status == PaymentStatus.FAILED.value:
                report.payments_failed.append(payment.payment_intent_id)
            else:
                report.still_pending.append(payment.payment_intent_id)

        job = self._service.get_job(job_id)
        unpaid = self._storage.get_payout_for_job(job_id) is None
        if job.status == JobStatus.APPROVED.value and unpaid:
            try:
                payout = self._service.release_payout(job_id)
                report.payouts_released.append(payout.id)
            except EscrowError as e:
                logger.warning(f"Reconcile payout for job {job_id} failed: {e.code}")
                report.errors[job_id] = e.code
        return report

    def reconcile_pending(self, limit: int = 100) -> ReconcileReport:
        """Reconcile every job with a pending payment or an unpaid approval."""
        job_ids: List[str] = []
        for payment in self._storage.list_pending_payments(limit=limit):
            if payment.job_id not in job_ids:
                job_ids.append(payment.job_id)
        for job in self._storage.list_jobs(status=JobStatus.APPROVED, limit=limit):
            if job.id not in job_ids:
                job_ids.append(job.id)

        report = ReconcileReport()
        for job_id in job_ids:
            report.merge(self.reconcile_job(job_id))
        logger.info(
            f"Reconciled {report.jobs_checked} jobs: "
            f"{len(report.payments_confirmed)} confirmed, {len(report.errors)} errors"
        )
        return report

    def audit_job(self, job_id: str) -> List[Drift]:
        """Compare stored rows with the ledger; append an entry per new drift."""
        job = self._service.get_job(job_id)
        payments = self._storage.list_payments(job_id)
        payout = self._storage.get_payout_for_job(job_id)
        drifts: List[Drift] = []

        for payment in payments:
            captured = payment.status in (
                PaymentStatus.SUCCEEDED.value,
                PaymentStatus.REFUNDED.value,
            )
            if captured and not self._ledger.has_event(
                job_id,
                LedgerEventType.PAYMENT_SUCCEEDED,
                payment_intent_id=payment.payment_intent_id,
            ):
                drifts.append(
                    Drift(
                        job_id,
                        "payment_without_ledger",
                        "Captured payment has no payment_succeeded entry",
                        {"payment_intent_id": payment.payment_intent_id},
                    )
                )
            if payment.status == PaymentStatus.REFUNDED.value and not self._ledger.has_event(
                job_id, LedgerEventType.JOB_REFUNDED, payment_intent_id=payment.payment_intent_id
            ):
                drifts.append(
                    Drift(
                        job_id,
                        "refund_without_ledger",
                        "Refunded payment has no job_refunded entry",
                        {"payment_intent_id": payment.payment_intent_id},
                    )
                )

        if payout is not None and not self._ledger.has_event(
            job_id, LedgerEventType.PAYOUT_COMPLETED, payout_id=payout.id
        ):
            drifts.append(
                Drift(
                    job_id,
                    "payout_without_ledger",
                    "Payout has no payout_completed entry",
                    {"payout_id": payout.id},
                )
            )

        if payout is not None and payout.status == PayoutStatus.FAILED.value:
            drifts.append(
                Drift(
                    job_id,
                    "payout_failed",
                    "Processor reported the payout transfer as failed",
                    {"payout_id": payout.id, "transfer_id": payout.transfer_id},
                )
            )

        succeeded = [p for p in payments if p.is_succeeded]
        if job.status in _FUNDED_STATUSES and not succeeded:
            drifts.append(
                Drift(
                    job_id,
                    "status_without_payment",
                    f"Job is {job.status} but has no succeeded payment",
                    {"job_status": job.status},
                )
            )
        if job.status == JobStatus.PAID_OUT.value and payout is None:
            drifts.append(
                Drift(job_id, "paid_out_without_payout", "Job is paid_out but has no payout")
            )
        if job.status == JobStatus.REFUNDED.value and not any(
            p.status == PaymentStatus.REFUNDED.value for p in payments
        ):
            drifts.append(
                Drift(job_id, "refunded_without_refund", "Job is refunded but no payment is")
            )

        for drift in drifts:
            if self._ledger.has_event(
                job_id, LedgerEventType.RECONCILIATION_DRIFT, check=drift.check
            ):
                continue
            self._ledger.append(
                job_id,
                LedgerEventType.RECONCILIATION_DRIFT,
                None,
                {"check": drift.check, "message": drift.message, **drift.details},
            )
            logger.error(f"Drift on job {job_id}: {drift.check}")
        return drifts
