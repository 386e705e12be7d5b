"""Read-only projections over jobs, payments, payouts and the ledger.

Everything here reads storage directly and never writes. Totals are
grouped by currency; amounts in different currencies are never summed.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from scalingad.commerce.errors import NotFound
from scalingad.commerce.jobs.models import AgencyAccount, Job, JobPayment, JobPayout, JobStatus
from scalingad.commerce.jobs.storage import JobStorage
from scalingad.commerce.ledger.models import LedgerEntry

# Upper bound for one list query
MAX_LIST_LIMIT = 1000


def _money_map(totals: Dict[str, Decimal]) -> Dict[str, str]:
    return {cur: str(v) for cur, v in sorted(totals.items())}


@dataclass
class JobListView:
    """Jobs visible to a business or agency plus dashboard counters.

    The counters and money totals cover every matching job, not only the
    returned page.
    """

    jobs: List[Job] = field(default_factory=list)
    total: int = 0
    active: int = 0
    total_value: Dict[str, Decimal] = field(default_factory=dict)
    total_captured: Dict[str, Decimal] = field(default_factory=dict)
    total_refunded: Dict[str, Decimal] = field(default_factory=dict)
    total_paid_out: Dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobs": [j.to_dict() for j in self.jobs],
            "total": self.total,
            "active": self.active,
            "total_value": _money_map(self.total_value),
            "total_captured": _money_map(self.total_captured),
            "total_refunded": _money_map(self.total_refunded),
            "total_paid_out": _money_map(self.total_paid_out),
        }


@dataclass
class JobDetailView:
    """One job with its payments, payout, agency account and ledger history."""

    job: Job
    payments: List[JobPayment] = field(default_factory=list)
    payouts: List[JobPayout] = field(default_factory=list)
    agency: Optional[AgencyAccount] = None
    agency_payout: Decimal = Decimal("0")
    ledger: List[LedgerEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job.to_dict(),
            "payments": [p.to_dict() for p in self.payments],
            "payouts": [p.to_dict() for p in self.payouts],
            "agency": self.agency.to_dict() if self.agency else None,
            "agency_payout": str(self.agency_payout),
            "ledger": [e.to_dict() for e in self.ledger],
        }


class JobQueryService:
    """List and detail views for the presentation layer."""

    def __init__(self, storage: JobStorage):
        self._storage = storage

    def list_jobs(
        self,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
        status_filter: Optional[JobStatus] = None,
        limit: int = MAX_LIST_LIMIT,
    ) -> JobListView:
        """Jobs newest first, with counters and per-currency totals."""
        jobs = self._storage.list_jobs(
            status=status_filter,
            business_id=business_id,
            agency_id=agency_id,
            limit=min(limit, MAX_LIST_LIMIT),
        )
        totals = self._storage.summarize_jobs(
            status=status_filter, business_id=business_id, agency_id=agency_id
        )
        return JobListView(
            jobs=jobs,
            total=totals.total,
            active=totals.active,
            total_value=totals.total_value,
            total_captured=totals.total_captured,
            total_refunded=totals.total_refunded,
            total_paid_out=totals.total_paid_out,
        )

    def job_detail(self, job_id: str) -> JobDetailView:
        job = self._storage.get_job(job_id)
        if job is None:
            raise NotFound(f"Job not found: {job_id}", job_id=job_id)
        payout = self._storage.get_payout_for_job(job_id)
        return JobDetailView(
            job=job,
            payments=self._storage.list_payments(job_id),
            payouts=[payout] if payout else [],
            agency=self._storage.get_agency(job.agency_id),
            agency_payout=job.agency_payout,
            ledger=self._storage.list_ledger_entries(job_id),
        )

    def ledger_for(self, job_id: str) -> List[LedgerEntry]:
        if self._storage.get_job(job_id) is None:
            raise NotFound(f"Job not found: {job_id}", job_id=job_id)
        return self._storage.list_ledger_entries(job_id)
