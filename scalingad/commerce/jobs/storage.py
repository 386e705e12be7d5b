"""
Jobs storage layer.

Persistence boundary for jobs, payments, payouts, agency accounts and the
ledger. Backends provide atomic single-row job updates (optimistic
``version`` check), atomic inserts, a transaction scope and a per-job
exclusive lock.
"""

import contextlib
import copy
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Protocol

from scalingad.commerce.jobs.models import (
    AgencyAccount,
    Job,
    JobPayment,
    JobPayout,
    JobStatus,
    JobTotals,
    PaymentStatus,
)
from scalingad.commerce.ledger.models import LedgerEntry
from scalingad.utils import utc_now

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base class for storage failures."""


class VersionConflictError(StorageError):
    """Job row was changed by another writer since it was read."""

    def __init__(self, job_id: str, expected_version: int):
        super().__init__(f"Job {job_id} changed concurrently (expected version {expected_version})")
        self.job_id = job_id
        self.expected_version = expected_version


class DuplicateRecordError(StorageError):
    """Insert violated a uniqueness rule (one payout per job, unique external ids)."""


class JobLockRegistry:
    """Per-job re-entrant locks, created on demand."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, job_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[job_id] = lock
            return lock

    @contextlib.contextmanager
    def hold(self, job_id: str) -> Iterator[None]:
        lock = self.get(job_id)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()


class JobStorage(Protocol):
    """Protocol for escrow persistence backends."""

    # Concurrency
    def lock_job(self, job_id: str):
        """Context manager holding exclusive access to one job."""
        ...

    def transaction(self):
        """Context manager making all writes inside it atomic."""
        ...

    # Jobs
    def save_job(self, job: Job) -> str:
        """Insert a new job. Returns the job ID."""
        ...

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        ...

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs with optional filters, newest first."""
        ...

    def summarize_jobs(
        self,
        status: Optional[JobStatus] = None,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
    ) -> JobTotals:
        """Counters and money totals over every matching job (no limit)."""
        ...

    def update_job(self, job: Job, expected_version: int) -> Job:
        """Write a job if its stored version matches. Returns the job with the bumped version."""
        ...

    # Payments
    def save_payment(self, payment: JobPayment) -> str:
        ...

    def update_payment(self, payment: JobPayment) -> bool:
        ...

    def get_payment_by_intent(self, payment_intent_id: str) -> Optional[JobPayment]:
        ...

    def list_payments(self, job_id: str) -> List[JobPayment]:
        ...

    def list_pending_payments(self, limit: int = 100) -> List[JobPayment]:
        ...

    # Payouts
    def save_payout(self, payout: JobPayout) -> str:
        ...

    def update_payout(self, payout: JobPayout) -> bool:
        ...

    def get_payout_for_job(self, job_id: str) -> Optional[JobPayout]:
        ...

    def get_payout_by_transfer(self, transfer_id: str) -> Optional[JobPayout]:
        ...

    # Agencies
    def save_agency(self, agency: AgencyAccount) -> str:
        ...

    def get_agency(self, agency_id: str) -> Optional[AgencyAccount]:
        ...

    def get_agency_by_account(self, stripe_account_id: str) -> Optional[AgencyAccount]:
        ...

    # Ledger (append-only)
    def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """Insert a ledger entry. Returns it with its sequence assigned."""
        ...

    def list_ledger_entries(self, job_id: Optional[str] = None) -> List[LedgerEntry]:
        """Ledger entries in causal order (created_at, sequence)."""
        ...

    # Processor events
    def has_processor_event(self, event_id: str) -> bool:
        ...

    def record_processor_event(self, event_id: str) -> bool:
        """Remember a processor event id. Returns False if it was already seen."""
        ...


class InMemoryJobStorage:
    """In-memory storage for testing and local development."""

    def __init__(self):
        """Initialize empty storage."""
        self._jobs: Dict[str, Job] = {}
        self._payments: Dict[str, JobPayment] = {}
        self._payouts: Dict[str, JobPayout] = {}
        self._agencies: Dict[str, AgencyAccount] = {}
        self._ledger: List[LedgerEntry] = []
        self._processor_events: set = set()
        self._sequence = 0

        self._data_lock = threading.RLock()
        self._locks = JobLockRegistry()
        self._tx_depth = threading.local()

    def _utc_now(self) -> datetime:
        """Get current UTC timestamp."""
        return datetime.now(timezone.utc)

    # === Concurrency ===

    def lock_job(self, job_id: str):
        return self._locks.hold(job_id)

    @contextlib.contextmanager
    def transaction(self):
        """Snapshot on entry, restore on exception."""
        with self._data_lock:
            depth = getattr(self._tx_depth, "value", 0)
            if depth:
                self._tx_depth.value = depth + 1
                try:
                    yield self
                finally:
                    self._tx_depth.value = depth
                return

            snapshot = self._snapshot()
            self._tx_depth.value = 1
            try:
                yield self
            except Exception:
                logger.debug("In-memory transaction rolled back")
                self._restore(snapshot)
                raise
            finally:
                self._tx_depth.value = 0

    def _snapshot(self):
        return (
            copy.deepcopy(self._jobs),
            copy.deepcopy(self._payments),
            copy.deepcopy(self._payouts),
            copy.deepcopy(self._agencies),
            list(self._ledger),
            set(self._processor_events),
            self._sequence,
        )

    def _restore(self, snapshot) -> None:
        (
            self._jobs,
            self._payments,
            self._payouts,
            self._agencies,
            self._ledger,
            self._processor_events,
            self._sequence,
        ) = snapshot

    # === Jobs ===

    def save_job(self, job: Job) -> str:
        with self._data_lock:
            if job.id in self._jobs:
                raise DuplicateRecordError(f"Job {job.id} already exists")
            self._jobs[job.id] = copy.deepcopy(job)
            return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._data_lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def _matching_jobs(
        self,
        status: Optional[JobStatus] = None,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
    ) -> List[Job]:
        with self._data_lock:
            jobs = [copy.deepcopy(j) for j in self._jobs.values()]

        if status is not None:
            status_val = status.value if isinstance(status, JobStatus) else status
            jobs = [j for j in jobs if j.status == status_val]
        if business_id is not None:
            jobs = [j for j in jobs if j.business_id == business_id]
        if agency_id is not None:
            jobs = [j for j in jobs if j.agency_id == agency_id]
        return jobs

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        jobs = self._matching_jobs(status, business_id, agency_id)

        # Sort by created_at desc
        jobs.sort(key=lambda j: j.created_at or self._utc_now(), reverse=True)

        return jobs[offset : offset + limit]

    def summarize_jobs(
        self,
        status: Optional[JobStatus] = None,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
    ) -> JobTotals:
        totals = JobTotals()
        job_ids = set()
        for job in self._matching_jobs(status, business_id, agency_id):
            job_ids.add(job.id)
            totals.add_job(job.status, job.currency, job.amount)
        with self._data_lock:
            for p in self._payments.values():
                if p.job_id in job_ids:
                    totals.add_payment(p.status, p.currency, p.amount)
            for p in self._payouts.values():
                if p.job_id in job_ids:
                    totals.add_payout(p.status, p.currency, p.amount)
        return totals

    def update_job(self, job: Job, expected_version: int) -> Job:
        with self._data_lock:
            stored = self._jobs.get(job.id)
            if stored is None:
                raise StorageError(f"Job {job.id} does not exist")
            if stored.version != expected_version:
                raise VersionConflictError(job.id, expected_version)
            updated = replace(job, version=expected_version + 1, updated_at=utc_now())
            self._jobs[job.id] = copy.deepcopy(updated)
            return updated

    # === Payments ===

    def save_payment(self, payment: JobPayment) -> str:
        with self._data_lock:
            if any(
                p.payment_intent_id == payment.payment_intent_id for p in self._payments.values()
            ):
                raise DuplicateRecordError(
                    f"Payment intent {payment.payment_intent_id} already recorded"
                )
            if payment.is_succeeded and any(
                p.job_id == payment.job_id and p.is_succeeded for p in self._payments.values()
            ):
                raise DuplicateRecordError(f"Job {payment.job_id} already has a succeeded payment")
            self._payments[payment.id] = copy.deepcopy(payment)
            return payment.id

    def update_payment(self, payment: JobPayment) -> bool:
        with self._data_lock:
            if payment.id not in self._payments:
                return False
            if payment.is_succeeded and any(
                p.job_id == payment.job_id and p.is_succeeded and p.id != payment.id
                for p in self._payments.values()
            ):
                raise DuplicateRecordError(f"Job {payment.job_id} already has a succeeded payment")
            payment.updated_at = utc_now()
            self._payments[payment.id] = copy.deepcopy(payment)
            return True

    def get_payment_by_intent(self, payment_intent_id: str) -> Optional[JobPayment]:
        with self._data_lock:
            for p in self._payments.values():
                if p.payment_intent_id == payment_intent_id:
                    return copy.deepcopy(p)
            return None

    def list_payments(self, job_id: str) -> List[JobPayment]:
        with self._data_lock:
            payments = [copy.deepcopy(p) for p in self._payments.values() if p.job_id == job_id]
        payments.sort(key=lambda p: p.created_at or self._utc_now())
        return payments

    def list_pending_payments(self, limit: int = 100) -> List[JobPayment]:
        with self._data_lock:
            payments = [
                copy.deepcopy(p)
                for p in self._payments.values()
                if p.status == PaymentStatus.PENDING.value
            ]
        payments.sort(key=lambda p: p.created_at or self._utc_now())
        return payments[:limit]

    # === Payouts ===

    def save_payout(self, payout: JobPayout) -> str:
        with self._data_lock:
            if any(p.job_id == payout.job_id for p in self._payouts.values()):
                raise DuplicateRecordError(f"Job {payout.job_id} already has a payout")
            self._payouts[payout.id] = copy.deepcopy(payout)
            return payout.id

    def update_payout(self, payout: JobPayout) -> bool:
        with self._data_lock:
            if payout.id not in self._payouts:
                return False
            payout.updated_at = utc_now()
            self._payouts[payout.id] = copy.deepcopy(payout)
            return True

    def get_payout_for_job(self, job_id: str) -> Optional[JobPayout]:
        with self._data_lock:
            for p in self._payouts.values():
                if p.job_id == job_id:
                    return copy.deepcopy(p)
            return None

    def get_payout_by_transfer(self, transfer_id: str) -> Optional[JobPayout]:
        with self._data_lock:
            for p in self._payouts.values():
                if p.transfer_id == transfer_id:
                    return copy.deepcopy(p)
            return None

    # === Agencies ===

    def save_agency(self, agency: AgencyAccount) -> str:
        with self._data_lock:
            agency.updated_at = utc_now()
            self._agencies[agency.agency_id] = copy.deepcopy(agency)
            return agency.agency_id

    def get_agency(self, agency_id: str) -> Optional[AgencyAccount]:
        with self._data_lock:
            agency = self._agencies.get(agency_id)
            return copy.deepcopy(agency) if agency else None

    def get_agency_by_account(self, stripe_account_id: str) -> Optional[AgencyAccount]:
        with self._data_lock:
            for a in self._agencies.values():
                if a.stripe_account_id == stripe_account_id:
                    return copy.deepcopy(a)
            return None

    # === Ledger ===

    def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with self._data_lock:
            self._sequence += 1
            stored = replace(entry, sequence=self._sequence)
            self._ledger.append(stored)
            return stored

    def list_ledger_entries(self, job_id: Optional[str] = None) -> List[LedgerEntry]:
        with self._data_lock:
            entries = [e for e in self._ledger if job_id is None or e.job_id == job_id]
        return sorted(entries, key=lambda e: e.sort_key)

    # === Processor events ===

    def has_processor_event(self, event_id: str) -> bool:
        with self._data_lock:
            return event_id in self._processor_events

    def record_processor_event(self, event_id: str) -> bool:
        with self._data_lock:
            if event_id in self._processor_events:
                return False
            self._processor_events.add(event_id)
            return True
