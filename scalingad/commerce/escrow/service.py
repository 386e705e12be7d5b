"""Escrow orchestration for ScalingAd jobs.

The EscrowService is the only writer of job status and the only creator of
payment, payout and ledger rows. Every money-moving operation follows the
same shape:

    resolve job -> authorize actor -> lock job -> check transition
    -> processor call -> persist rows and status atomically -> ledger

Validation failures are raised before the processor is contacted. The job
lock is held across the processor call so no second operation on the same
job can interleave with it; the storage transaction is opened only around
the final writes.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, TypeVar

from scalingad.commerce.config import CHARGE_MODEL_SEPARATE, CommerceConfig
from scalingad.commerce.errors import (
    AccountNotReady,
    AlreadyFunded,
    AlreadyPaidOut,
    ConcurrentModification,
    EscrowError,
    IllegalTransition,
    NotAuthorized,
    NotFound,
    PayoutAlreadyIssued,
    ProcessorError,
    ProcessorRejected,
    ProcessorTransient,
    TerminalState,
    ValidationError,
)
from scalingad.commerce.jobs.models import (
    AgencyAccount,
    Job,
    JobPayment,
    JobPayout,
    JobStatus,
    PaymentStatus,
    PayoutStatus,
)
from scalingad.commerce.jobs.state_machine import (
    can_transition,
    check_transition,
    is_terminal,
    sources_for,
)
from scalingad.commerce.jobs.storage import JobStorage, VersionConflictError
from scalingad.commerce.ledger.models import LedgerEventType
from scalingad.commerce.ledger.service import Ledger
from scalingad.commerce.money import fee_for, normalize_currency, to_decimal
from scalingad.commerce.processor.base import PaymentConfirmation, PaymentProcessor
from scalingad.utils import new_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Actor roles accepted at operation entry
BUSINESS = "business"
AGENCY = "agency"
ADMIN = "admin"


@dataclass
class FundingResult:
    """Outcome of a funding request or payment confirmation."""

    job: Job
    payment: JobPayment
    client_secret: Optional[str] = None
    created: bool = False

    @property
    def funded(self) -> bool:
        return self.payment.is_succeeded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job.to_dict(),
            "payment": self.payment.to_dict(),
            "client_secret": self.client_secret,
            "created": self.created,
            "funded": self.funded,
        }


@dataclass
class ApprovalResult:
    """Outcome of approving work.

    The approval itself always sticks. ``error`` is set when the payout
    that follows could not be completed; the job then stays ``approved``
    and ``release_payout`` can be retried.
    """

    job: Job
    payout: Optional[JobPayout] = None
    error: Optional[EscrowError] = None

    @property
    def paid_out(self) -> bool:
        return self.payout is not None

    @property
    def retry_recommended(self) -> bool:
        if self.error is None:
            return False
        return bool(getattr(self.error, "retry_recommended", False))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job.to_dict(),
            "payout": self.payout.to_dict() if self.payout else None,
            "paid_out": self.paid_out,
            "error": self.error.to_dict() if self.error else None,
            "retry_recommended": self.retry_recommended,
        }


@dataclass
class OnboardingLink:
    account_id: str
    url: str


class EscrowService:
    """Drives jobs through funding, work, approval and payout or refund.

    Args:
        storage: Job storage backend (in-memory or SQLite)
        processor: Payment processor adapter
        config: Commerce configuration (defaults apply when omitted)
        ledger: Ledger facade; built over ``storage`` when omitted
        sleep: Backoff function, injectable for tests
    """

    def __init__(
        self,
        storage: JobStorage,
        processor: PaymentProcessor,
        config: Optional[CommerceConfig] = None,
        ledger: Optional[Ledger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._storage = storage
        self._processor = processor
        self._config = config or CommerceConfig()
        self._ledger = ledger or Ledger(storage)
        self._sleep = sleep

    @property
    def storage(self) -> JobStorage:
        return self._storage

    @property
    def processor(self) -> PaymentProcessor:
        return self._processor

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    @property
    def config(self) -> CommerceConfig:
        return self._config

    # =========================================================================
    # Internal helpers
    # =========================================================================

    def _get_job(self, job_id: str) -> Job:
        job = self._storage.get_job(job_id)
        if job is None:
            raise NotFound(f"Job not found: {job_id}", job_id=job_id)
        return job

    def _is_admin(self, actor_id: Optional[str]) -> bool:
        return bool(actor_id) and actor_id in self._config.admin_actor_ids

    def _authorize(self, job: Job, actor_id: Optional[str], *roles: str) -> None:
        if actor_id:
            if BUSINESS in roles and actor_id == job.business_id:
                return
            if AGENCY in roles and actor_id == job.agency_id:
                return
            if ADMIN in roles and self._is_admin(actor_id):
                return
        logger.warning(f"Actor {actor_id} not authorized for job {job.id} (roles: {roles})")
        raise NotAuthorized(
            "You are not allowed to perform this action on this job",
            job_id=job.id,
            actor_id=actor_id,
        )

    def _advance(
        self,
        job: Job,
        target: JobStatus,
        actor_id: Optional[str],
        event_type: LedgerEventType = LedgerEventType.JOB_STATUS_CHANGED,
        details: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Move ``job`` to ``target`` and append the ledger entry.

        Must run inside ``storage.transaction()`` while the job lock is held.
        """
        previous = job.status
        target = check_transition(previous, target)
        try:
            updated = self._storage.update_job(
                replace(job, status=target.value), expected_version=job.version
            )
        except VersionConflictError as e:
            raise ConcurrentModification(str(e), job_id=job.id) from e
        entry = {"from_status": previous, "to_status": target.value}
        entry.update(details or {})
        self._ledger.append(job.id, event_type, actor_id, entry)
        logger.info(f"Job {job.id}: {previous} -> {target.value}")
        return updated

    def _transition(self, job_id: str, actor_id: str, target: JobStatus, *roles: str) -> Job:
        with self._storage.lock_job(job_id):
            job = self._get_job(job_id)
            self._authorize(job, actor_id, *roles)
            with self._storage.transaction():
                return self._advance(job, target, actor_id)

    def _call(self, operation: str, fn: Callable[[], T], idempotent: bool = True) -> T:
        """Run a processor call, retrying once on a transient failure.

        Only calls that are safe to repeat (reads, or writes carrying an
        idempotency key) are retried.
        """
        try:
            return fn()
        except ProcessorTransient as e:
            if not idempotent:
                raise
            delay = self._config.retry_backoff_seconds
            logger.warning(
                f"Processor {operation} failed transiently "
                f"(outcome_unknown={e.outcome_unknown}), retrying in {delay}s"
            )
            self._sleep(delay)
            return fn()

    def _succeeded_payment(self, job_id: str) -> Optional[JobPayment]:
        succeeded = [p for p in self._storage.list_payments(job_id) if p.is_succeeded]
        return succeeded[0] if succeeded else None

    def _confirm_remote(self, payment: JobPayment) -> PaymentConfirmation:
        return self._call(
            "confirm_payment",
            lambda: self._processor.confirm_payment(payment.payment_intent_id),
        )

    def _apply_confirmation(
        self,
        job: Job,
        payment: JobPayment,
        confirmation: PaymentConfirmation,
        actor_id: Optional[str],
    ) -> Job:
        """Persist the processor's view of a pending payment. Lock must be held."""
        if confirmation.succeeded:
            payment.status = PaymentStatus.SUCCEEDED.value
            payment.charge_id = confirmation.charge_id or payment.charge_id
            details = {
                "payment_id": payment.id,
                "payment_intent_id": payment.payment_intent_id,
                "charge_id": payment.charge_id,
                "amount": payment.amount,
                "currency": payment.currency,
            }
            if job.status != JobStatus.UNFUNDED.value:
                # Captured after the job left unfunded; money must be returned by an operator
                with self._storage.transaction():
                    self._storage.update_payment(payment)
                    self._ledger.append(
                        job.id,
                        LedgerEventType.RECONCILIATION_DRIFT,
                        actor_id,
                        {"check": "captured_outside_unfunded", "job_status": job.status, **details},
                    )
                logger.error(
                    f"Payment {payment.payment_intent_id} captured while job {job.id} "
                    f"is {job.status}"
                )
                return job
            with self._storage.transaction():
                self._storage.update_payment(payment)
                job = self._advance(
                    job, JobStatus.FUNDED, actor_id, LedgerEventType.PAYMENT_SUCCEEDED, details
                )
            logger.info(f"Job {job.id} funded by {payment.payment_intent_id}")
            return job

        if confirmation.failed:
            payment.status = PaymentStatus.FAILED.value
            with self._storage.transaction():
                self._storage.update_payment(payment)
                self._ledger.append(
                    job.id,
                    LedgerEventType.PAYMENT_FAILED,
                    actor_id,
                    {"payment_id": payment.id, "payment_intent_id": payment.payment_intent_id},
                )
            logger.info(f"Payment {payment.payment_intent_id} for job {job.id} failed")
        return job

    def _record_rejection(
        self,
        job: Job,
        event_type: LedgerEventType,
        operation: str,
        error: ProcessorError,
        actor_id: Optional[str],
        **details: Any,
    ) -> None:
        entry = {"operation": operation, "error_code": error.code, "message": error.message}
        if isinstance(error, ProcessorRejected):
            entry["processor_code"] = error.processor_code
        if isinstance(error, ProcessorTransient):
            entry["outcome_unknown"] = error.outcome_unknown
        entry.update(details)
        self._ledger.append(job.id, event_type, actor_id, entry)

    # =========================================================================
    # Job creation and non-monetary transitions
    # =========================================================================

    def create_job(
        self,
        business_id: str,
        agency_id: str,
        title: str,
        amount,
        currency: Optional[str] = None,
        *,
        description: str = "",
        platform_fee=None,
        deal_id: Optional[str] = None,
    ) -> Job:
        """Create a draft job.

        The platform fee defaults to ``config.platform_fee_rate`` of the amount.

        Raises:
            ValidationError: bad title, amount, currency or fee
        """
        try:
            currency = normalize_currency(currency or self._config.default_currency)
            amount = to_decimal(amount)
            if platform_fee is None:
                platform_fee = fee_for(amount, self._config.platform_fee_rate, currency)
            job = Job(
                id=new_id(),
                business_id=business_id,
                agency_id=agency_id,
                title=title,
                description=description or "",
                amount=amount,
                currency=currency,
                platform_fee=to_decimal(platform_fee),
                deal_id=deal_id,
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e)) from e

        with self._storage.transaction():
            self._storage.save_job(job)
            self._ledger.append(
                job.id,
                LedgerEventType.JOB_CREATED,
                business_id,
                {
                    "amount": job.amount,
                    "currency": job.currency,
                    "platform_fee": job.platform_fee,
                    "agency_id": agency_id,
                    "deal_id": deal_id,
                },
            )
        logger.info(f"Created job {job.id} for {job.amount} {job.currency}")
        return job

    def invite_agency(self, job_id: str, actor_id: str) -> Job:
        """Send a draft job to its agency (draft -> pending)."""
        return self._transition(job_id, actor_id, JobStatus.PENDING, BUSINESS)

    def accept_job(self, job_id: str, actor_id: str) -> Job:
        """Agency accepts the offer (pending -> unfunded)."""
        return self._transition(job_id, actor_id, JobStatus.UNFUNDED, AGENCY)

    def decline_job(self, job_id: str, actor_id: str) -> Job:
        return self._transition(job_id, actor_id, JobStatus.DECLINED, AGENCY)

    def start_work(self, job_id: str, actor_id: str) -> Job:
        return self._transition(job_id, actor_id, JobStatus.IN_PROGRESS, AGENCY)

    def submit_work(self, job_id: str, actor_id: str) -> Job:
        """Deliver (or re-deliver after a revision request) for review."""
        return self._transition(job_id, actor_id, JobStatus.REVIEW, AGENCY)

    def request_revision(self, job_id: str, actor_id: str) -> Job:
        return self._transition(job_id, actor_id, JobStatus.REVISION, BUSINESS)

    # =========================================================================
    # Funding
    # =========================================================================

    def fund_job(self, job_id: str, actor_id: str) -> FundingResult:
        """Start collecting the job amount from the business.

        Creates a destination-charge intent and a ``pending`` payment. The
        job stays ``unfunded`` until capture is confirmed.

        Raises:
            NotFound, NotAuthorized
            TerminalState / IllegalTransition: job is not ``unfunded``
            AlreadyFunded: a succeeded payment exists (carries it)
            AccountNotReady: agency has no connected account
            ProcessorTransient / ProcessorRejected
        """
        with self._storage.lock_job(job_id):
            job = self._get_job(job_id)
            self._authorize(job, actor_id, BUSINESS)

            if is_terminal(job.status):
                raise TerminalState(job.status, JobStatus.FUNDED.value)
            payments = self._storage.list_payments(job.id)
            succeeded = [p for p in payments if p.is_succeeded]
            if succeeded:
                raise AlreadyFunded(
                    "Job is already funded",
                    payment=succeeded[0],
                    job_id=job.id,
                    current_status=job.status,
                )
            check_transition(job.status, JobStatus.FUNDED)

            agency = self._storage.get_agency(job.agency_id)
            if agency is None or not agency.has_connected_account:
                raise AccountNotReady(
                    "Agency has not connected a payout account yet",
                    job_id=job.id,
                    agency_id=job.agency_id,
                )

            for payment in [p for p in payments if p.is_pending]:
                confirmation = self._confirm_remote(payment)
                job = self._apply_confirmation(job, payment, confirmation, actor_id)
                if payment.is_succeeded:
                    raise AlreadyFunded(
                        "Job is already funded",
                        payment=payment,
                        job_id=job.id,
                        current_status=job.status,
                    )
                if payment.is_pending:
                    logger.info(
                        f"Reusing pending intent {payment.payment_intent_id} for job {job.id}"
                    )
                    return FundingResult(
                        job=job, payment=payment, client_secret=confirmation.client_secret
                    )

            attempt = len(payments) + 1
            idempotency_key = f"fund:{job.id}:{attempt}"
            try:
                intent = self._call(
                    "create_funding_intent",
                    lambda: self._processor.create_funding_intent(
                        job, agency.stripe_account_id, idempotency_key=idempotency_key
                    ),
                )
            except ProcessorRejected as e:
                self._record_rejection(
                    job, LedgerEventType.PAYMENT_REJECTED, "create_funding_intent", e, actor_id,
                    attempt=attempt,
                )
                raise

            payment = JobPayment(
                id=new_id(),
                job_id=job.id,
                payment_intent_id=intent.external_id,
                amount=job.amount,
                currency=job.currency,
            )
            with self._storage.transaction():
                self._storage.save_payment(payment)
                self._ledger.append(
                    job.id,
                    LedgerEventType.PAYMENT_INTENT_CREATED,
                    actor_id,
                    {
                        "payment_id": payment.id,
                        "payment_intent_id": intent.external_id,
                        "amount": job.amount,
                        "platform_fee": job.platform_fee,
                        "currency": job.currency,
                        "destination": agency.stripe_account_id,
                        "attempt": attempt,
                    },
                )
            logger.info(f"Funding intent {intent.external_id} created for job {job.id}")
            return FundingResult(
                job=job, payment=payment, client_secret=intent.client_secret, created=True
            )

    def confirm_payment(
        self,
        job_id: str,
        payment_intent_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> FundingResult:
        """Confirm capture with the processor and advance the job to ``funded``.

        Safe to repeat: an already settled payment is returned unchanged.
        ``actor_id`` is None for webhook and reconciliation callers.
        """
        with self._storage.lock_job(job_id):
            job = self._get_job(job_id)
            if actor_id is not None:
                self._authorize(job, actor_id, BUSINESS, ADMIN)

            if payment_intent_id:
                payment = self._storage.get_payment_by_intent(payment_intent_id)
                if payment is None or payment.job_id != job.id:
                    raise NotFound(
                        "Payment not found for this job",
                        job_id=job.id,
                        payment_intent_id=payment_intent_id,
                    )
            else:
                payments = self._storage.list_payments(job.id)
                pending = [p for p in payments if p.is_pending]
                candidates = pending or [p for p in payments if p.is_succeeded]
                if not candidates:
                    raise NotFound("No payment to confirm for this job", job_id=job.id)
                payment = candidates[-1]

            if not payment.is_pending:
                return FundingResult(job=job, payment=payment)

            confirmation = self._confirm_remote(payment)
            job = self._apply_confirmation(job, payment, confirmation, actor_id)
            return FundingResult(
                job=job, payment=payment, client_secret=confirmation.client_secret
            )

    # =========================================================================
    # Approval and payout
    # =========================================================================

    def approve_work(self, job_id: str, actor_id: str) -> ApprovalResult:
        """Approve delivered work and release the payout.

        A payout failure does not undo the approval: the result carries the
        error and the job stays ``approved`` for a later ``release_payout``.
        """
        with self._storage.lock_job(job_id):
            job = self._get_job(job_id)
            self._authorize(job, actor_id, BUSINESS)
            with self._storage.transaction():
                job = self._advance(job, JobStatus.APPROVED, actor_id)
            try:
                payout = self._release_locked(job, actor_id)
            except EscrowError as e:
                logger.warning(f"Payout for approved job {job.id} failed: {e.code}")
                return ApprovalResult(job=self._get_job(job_id), error=e)
            return ApprovalResult(job=self._get_job(job_id), payout=payout)

    def release_payout(self, job_id: str, actor_id: Optional[str] = None) -> JobPayout:
        """Pay the agency for an approved job.

        A payout the processor reported as failed is sent again under the
        separate charge model. ``actor_id`` is None for system retries.

        Raises:
            AlreadyPaidOut: the job was already paid (carries the payout)
        """
        with self._storage.lock_job(job_id):
            job = self._get_job(job_id)
            if actor_id is not None:
                self._authorize(job, actor_id, BUSINESS, ADMIN)
            return self._release_locked(job, actor_id)

    def _release_locked(self, job: Job, actor_id: Optional[str]) -> JobPayout:
        existing = self._storage.get_payout_for_job(job.id)
        retry = (
            existing is not None
            and existing.status == PayoutStatus.FAILED.value
            and self._config.charge_model == CHARGE_MODEL_SEPARATE
        )
        if existing is not None and not retry:
            logger.info(f"Job {job.id} already paid out ({existing.transfer_id})")
            raise AlreadyPaidOut(
                "Job is already paid out",
                payout=existing,
                job_id=job.id,
                current_status=job.status,
            )
        if not retry:
            check_transition(job.status, JobStatus.PAID_OUT)

        payment = self._succeeded_payment(job.id)
        if payment is None:
            raise NotFound("No successful payment found for this job", job_id=job.id)

        amount = job.agency_payout
        if self._config.charge_model == CHARGE_MODEL_SEPARATE:
            # A resend must not reuse the failed transfer's key
            idempotency_key = f"payout:{job.id}"
            if retry:
                idempotency_key = f"payout:{job.id}:after:{existing.transfer_id}"
            transfer_id = self._send_transfer(job, payment, amount, idempotency_key, actor_id)
        else:
            # Destination charge: the funds moved to the agency at capture
            transfer_id = payment.charge_id or payment.payment_intent_id

        details = {
            "transfer_id": transfer_id,
            "amount": amount,
            "platform_fee": job.platform_fee,
            "currency": job.currency,
            "agency_id": job.agency_id,
            "charge_model": self._config.charge_model,
        }
        if retry:
            failed_transfer = existing.transfer_id
            existing.transfer_id = transfer_id
            existing.status = PayoutStatus.PAID.value
            with self._storage.transaction():
                self._storage.update_payout(existing)
                self._ledger.append(
                    job.id,
                    LedgerEventType.PAYOUT_COMPLETED,
                    actor_id,
                    {"payout_id": existing.id, "retry_of": failed_transfer, **details},
                )
            logger.info(f"Resent payout for job {job.id} ({failed_transfer} -> {transfer_id})")
            return existing

        payout = JobPayout(
            id=new_id(),
            job_id=job.id,
            transfer_id=transfer_id,
            amount=amount,
            currency=job.currency,
            status=PayoutStatus.PAID.value,
        )
        with self._storage.transaction():
            self._storage.save_payout(payout)
            self._advance(
                job,
                JobStatus.PAID_OUT,
                actor_id,
                LedgerEventType.PAYOUT_COMPLETED,
                {"payout_id": payout.id, **details},
            )
        logger.info(f"Paid out {amount} {job.currency} for job {job.id} ({transfer_id})")
        return payout

    def _send_transfer(
        self,
        job: Job,
        payment: JobPayment,
        amount,
        idempotency_key: str,
        actor_id: Optional[str],
    ) -> str:
        agency = self._storage.get_agency(job.agency_id)
        if agency is None or not agency.has_connected_account:
            raise AccountNotReady(
                "Agency has not connected a payout account yet",
                job_id=job.id,
                agency_id=job.agency_id,
            )
        try:
            transfer = self._call(
                "create_transfer",
                lambda: self._processor.create_transfer(
                    amount=amount,
                    currency=job.currency,
                    destination_account_id=agency.stripe_account_id,
                    job_id=job.id,
                    idempotency_key=idempotency_key,
                    source_charge_id=payment.charge_id,
                ),
            )
        except (ProcessorRejected, ProcessorTransient, AccountNotReady) as e:
            self._ledger.append(
                job.id,
                LedgerEventType.PAYOUT_FAILED,
                actor_id,
                {
                    "operation": "create_transfer",
                    "error_code": e.code,
                    "message": e.message,
                    "amount": amount,
                    "currency": job.currency,
                    "retry_recommended": getattr(e, "retry_recommended", False),
                },
            )
            raise
        return transfer.external_id

    # =========================================================================
    # Cancellation and refunds
    # =========================================================================

    def cancel_job(self, job_id: str, actor_id: str) -> Job:
        """Cancel a job that has not been funded.

        Any pending intent is settled with the processor first: captured
        money blocks the cancel, otherwise the intent is cancelled so it
        can no longer be paid.
        """
        with self._storage.lock_job(job_id):
            job = self._get_job(job_id)
            self._authorize(job, actor_id, BUSINESS, AGENCY, ADMIN)
            check_transition(job.status, JobStatus.CANCELLED)

            for payment in [p for p in self._storage.list_payments(job.id) if p.is_pending]:
                confirmation = self._confirm_remote(payment)
                if not confirmation.succeeded and not confirmation.failed:
                    confirmation = self._call(
                        "cancel_funding_intent",
                        lambda: self._processor.cancel_funding_intent(payment.payment_intent_id),
                    )
                job = self._apply_confirmation(job, payment, confirmation, actor_id)
                if job.status == JobStatus.FUNDED.value:
                    raise IllegalTransition(
                        job.status,
                        JobStatus.CANCELLED.value,
                        required=[s.value for s in sources_for(JobStatus.CANCELLED)],
                        message="Job was funded before it could be cancelled",
                    )

            with self._storage.transaction():
                job = self._advance(
                    job, JobStatus.CANCELLED, actor_id, LedgerEventType.JOB_CANCELLED
                )
            return job

    def refund_job(self, job_id: str, actor_id: str) -> Job:
        """Return the full captured amount to the business.

        Raises:
            PayoutAlreadyIssued: the agency has been paid for this job
            TerminalState / IllegalTransition: job is not in a refundable status
            NotFound: no succeeded payment to refund
        """
        with self._storage.lock_job(job_id):
            job = self._get_job(job_id)
            self._authorize(job, actor_id, BUSINESS, ADMIN)

            payout = self._storage.get_payout_for_job(job.id)
            if payout is not None:
                raise PayoutAlreadyIssued(
                    "Cannot refund a job whose payout was already issued",
                    job_id=job.id,
                    current_status=job.status,
                    payout_id=payout.id,
                )
            check_transition(job.status, JobStatus.REFUNDED)

            payment = self._succeeded_payment(job.id)
            if payment is None:
                raise NotFound("No successful payment found for this job", job_id=job.id)

            reverse = self._config.charge_model != CHARGE_MODEL_SEPARATE
            try:
                refund = self._call(
                    "refund",
                    lambda: self._processor.refund(
                        external_id=payment.payment_intent_id,
                        amount=payment.amount,
                        currency=payment.currency,
                        idempotency_key=f"refund:{payment.id}",
                        reverse_transfer=reverse,
                    ),
                )
            except ProcessorRejected as e:
                self._record_rejection(
                    job, LedgerEventType.PAYMENT_REJECTED, "refund", e, actor_id,
                    payment_intent_id=payment.payment_intent_id,
                )
                raise

            payment.status = PaymentStatus.REFUNDED.value
            payment.refund_id = refund.external_id
            with self._storage.transaction():
                self._storage.update_payment(payment)
                job = self._advance(
                    job,
                    JobStatus.REFUNDED,
                    actor_id,
                    LedgerEventType.JOB_REFUNDED,
                    {
                        "payment_intent_id": payment.payment_intent_id,
                        "refund_id": refund.external_id,
                        "amount": payment.amount,
                        "currency": payment.currency,
                    },
                )
            logger.info(f"Refunded {payment.amount} {payment.currency} for job {job.id}")
            return job

    # =========================================================================
    # Processor-originated updates (webhooks, reconciliation)
    # =========================================================================

    def record_external_refund(
        self, payment_intent_id: str, refund_id: Optional[str]
    ) -> Optional[Job]:
        """Converge a job whose charge was refunded outside the platform."""
        payment = self._storage.get_payment_by_intent(payment_intent_id)
        if payment is None:
            logger.info(f"Refund for unknown intent {payment_intent_id} ignored")
            return None
        with self._storage.lock_job(payment.job_id):
            job = self._get_job(payment.job_id)
            payment = self._storage.get_payment_by_intent(payment_intent_id)
            if payment.status == PaymentStatus.REFUNDED.value:
                return job

            payment.status = PaymentStatus.REFUNDED.value
            payment.refund_id = refund_id
            details = {
                "payment_intent_id": payment_intent_id,
                "refund_id": refund_id,
                "amount": payment.amount,
                "currency": payment.currency,
                "source": "processor",
            }
            has_payout = self._storage.get_payout_for_job(job.id) is not None
            with self._storage.transaction():
                self._storage.update_payment(payment)
                if has_payout or not can_transition(job.status, JobStatus.REFUNDED):
                    self._ledger.append(
                        job.id,
                        LedgerEventType.RECONCILIATION_DRIFT,
                        None,
                        {
                            "check": "refund_outside_refundable_status",
                            "job_status": job.status,
                            **details,
                        },
                    )
                    logger.error(f"Job {job.id} refunded externally while {job.status}")
                else:
                    job = self._advance(
                        job, JobStatus.REFUNDED, None, LedgerEventType.JOB_REFUNDED, details
                    )
            return job

    def record_payout_status(self, transfer_id: str, succeeded: bool) -> Optional[JobPayout]:
        """Apply a processor transfer outcome to the matching payout."""
        payout = self._storage.get_payout_by_transfer(transfer_id)
        if payout is None:
            logger.info(f"Transfer {transfer_id} has no matching payout")
            return None
        with self._storage.lock_job(payout.job_id):
            payout = self._storage.get_payout_by_transfer(transfer_id)
            status = PayoutStatus.PAID.value if succeeded else PayoutStatus.FAILED.value
            if payout.status == status:
                return payout
            payout.status = status
            with self._storage.transaction():
                self._storage.update_payout(payout)
                if not succeeded:
                    self._ledger.append(
                        payout.job_id,
                        LedgerEventType.PAYOUT_FAILED,
                        None,
                        {
                            "payout_id": payout.id,
                            "transfer_id": transfer_id,
                            "amount": payout.amount,
                            "currency": payout.currency,
                            "source": "processor",
                        },
                    )
            if not succeeded:
                logger.error(f"Transfer {transfer_id} for job {payout.job_id} failed")
            return payout

    # =========================================================================
    # Agency onboarding
    # =========================================================================

    def register_agency(self, agency_id: str, name: str = "") -> AgencyAccount:
        """Ensure an agency record exists. Existing records are returned unchanged."""
        with self._storage.lock_job(f"agency:{agency_id}"):
            agency = self._storage.get_agency(agency_id)
            if agency is None:
                agency = AgencyAccount(agency_id=agency_id, name=name)
                self._storage.save_agency(agency)
            return agency

    def ensure_connected_account(self, agency_id: str, name: Optional[str] = None) -> str:
        """Return the agency's connected account, creating it on first use.

        The mapping is persisted before returning, so repeated calls return
        the same account.
        """
        with self._storage.lock_job(f"agency:{agency_id}"):
            agency = self._storage.get_agency(agency_id) or AgencyAccount(
                agency_id=agency_id, name=name or ""
            )
            if agency.has_connected_account:
                return agency.stripe_account_id
            account_id = self._call(
                "create_account",
                lambda: self._processor.create_account(agency_id, name or agency.name or None),
            )
            agency.stripe_account_id = account_id
            self._storage.save_agency(agency)
            logger.info(f"Agency {agency_id} linked to connected account {account_id}")
            return account_id

    def create_onboarding_link(
        self, agency_id: str, return_url: str, refresh_url: str, name: Optional[str] = None
    ) -> OnboardingLink:
        """Onboarding URL for the agency's connected account. Never retried."""
        if not return_url or not refresh_url:
            raise ValidationError("return_url and refresh_url are required")
        account_id = self.ensure_connected_account(agency_id, name)
        url = self._call(
            "create_onboarding_link",
            lambda: self._processor.create_onboarding_link(account_id, return_url, refresh_url),
            idempotent=False,
        )
        return OnboardingLink(account_id=account_id, url=url)

    def update_agency_onboarding(
        self,
        stripe_account_id: str,
        details_submitted: bool,
        charges_enabled: bool,
        payouts_enabled: bool,
    ) -> Optional[AgencyAccount]:
        """Store onboarding flags reported by the processor."""
        agency = self._storage.get_agency_by_account(stripe_account_id)
        if agency is None:
            logger.info(f"Account update for unknown account {stripe_account_id} ignored")
            return None
        agency.onboarding_complete = bool(details_submitted and charges_enabled)
        agency.payouts_enabled = bool(payouts_enabled)
        self._storage.save_agency(agency)
        return agency

    def refresh_agency_account(self, agency_id: str) -> AgencyAccount:
        """Pull onboarding flags from the processor."""
        agency = self._storage.get_agency(agency_id)
        if agency is None or not agency.has_connected_account:
            raise AccountNotReady("Agency has no connected account", agency_id=agency_id)
        status = self._call(
            "retrieve_account",
            lambda: self._processor.retrieve_account(agency.stripe_account_id),
        )
        return self.update_agency_onboarding(
            agency.stripe_account_id,
            status.details_submitted,
            status.charges_enabled,
            status.payouts_enabled,
        )

    def disconnect_agency_account(self, stripe_account_id: str) -> Optional[AgencyAccount]:
        """Forget a connected account after the agency revoked platform access."""
        agency = self._storage.get_agency_by_account(stripe_account_id)
        if agency is None:
            return None
        agency.stripe_account_id = None
        agency.onboarding_complete = False
        agency.payouts_enabled = False
        self._storage.save_agency(agency)
        logger.warning(f"Agency {agency.agency_id} disconnected account {stripe_account_id}")
        return agency

    # =========================================================================
    # Read helpers
    # =========================================================================

    def get_job(self, job_id: str) -> Job:
        return self._get_job(job_id)

    def payments_for(self, job_id: str) -> List[JobPayment]:
        return self._storage.list_payments(job_id)
