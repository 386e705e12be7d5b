"""Jobs routes for ScalingAd Commerce.

Endpoints for the job payment lifecycle: creation, the agency handshake,
funding, delivery, approval with payout, cancellation and refund.
Every state change goes through the escrow service; errors are mapped to
HTTP responses by ``app.errors``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from scalingad.commerce.escrow import ApprovalResult, FundingResult
from scalingad.commerce.jobs import Job, JobPayment, JobPayout, JobStatus
from scalingad.commerce.ledger import LedgerEntry
from scalingad.logging_config import get_logger

from ...auth import CurrentActor
from ...database import AppSettings, Escrow, Queries
from ...rate_limit import limiter

logger = get_logger("commerce.jobs")
router = APIRouter(prefix="/jobs", tags=["commerce", "jobs"])


# =============================================================================
# Request/Response Models
# =============================================================================

JobStatusName = Literal[
    "draft",
    "pending",
    "declined",
    "unfunded",
    "funded",
    "in_progress",
    "review",
    "revision",
    "approved",
    "paid_out",
    "cancelled",
    "refunded",
]


class JobCreate(BaseModel):
    """Request to create a job. The caller becomes the business."""

    agency_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    amount: Decimal = Field(..., gt=0)
    currency: str | None = Field(None, min_length=3, max_length=3)
    platform_fee: Decimal | None = Field(None, ge=0)
    deal_id: str | None = None


class JobResponse(BaseModel):
    """Job details response."""

    id: str
    business_id: str
    agency_id: str
    deal_id: str | None = None
    title: str
    description: str
    amount: Decimal
    currency: str
    platform_fee: Decimal
    agency_payout: Decimal
    status: JobStatusName
    version: int
    created_at: datetime
    updated_at: datetime


class PaymentResponse(BaseModel):
    id: str
    payment_intent_id: str
    charge_id: str | None = None
    refund_id: str | None = None
    amount: Decimal
    currency: str
    status: str
    created_at: datetime
    updated_at: datetime


class PayoutResponse(BaseModel):
    id: str
    transfer_id: str
    amount: Decimal
    currency: str
    status: str
    created_at: datetime


class LedgerEntryResponse(BaseModel):
    id: str
    sequence: int
    event_type: str
    actor_id: str | None = None
    details: dict
    created_at: datetime


class JobListResponse(BaseModel):
    """Jobs with dashboard counters."""

    jobs: list[JobResponse]
    total: int
    active: int
    total_value: dict[str, Decimal]
    total_captured: dict[str, Decimal]
    total_refunded: dict[str, Decimal]
    total_paid_out: dict[str, Decimal]


class JobDetailResponse(BaseModel):
    job: JobResponse
    payments: list[PaymentResponse]
    payouts: list[PayoutResponse]
    agency_payout: Decimal
    agency_account_connected: bool
    ledger: list[LedgerEntryResponse]


class FundingResponse(BaseModel):
    """Funding state; ``client_secret`` completes payment on the client."""

    job: JobResponse
    payment: PaymentResponse
    client_secret: str | None = None
    created: bool
    funded: bool


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str | None = None


class ApprovalResponse(BaseModel):
    job: JobResponse
    payout: PayoutResponse | None = None
    paid_out: bool
    error: dict | None = None
    retry_recommended: bool


# =============================================================================
# Helper Functions
# =============================================================================


def to_job_response(job: Job) -> JobResponse:
    return JobResponse(
        id=job.id,
        business_id=job.business_id,
        agency_id=job.agency_id,
        deal_id=job.deal_id,
        title=job.title,
        description=job.description,
        amount=job.amount,
        currency=job.currency,
        platform_fee=job.platform_fee,
        agency_payout=job.agency_payout,
        status=job.status,
        version=job.version,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


def to_payment_response(payment: JobPayment) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        payment_intent_id=payment.payment_intent_id,
        charge_id=payment.charge_id,
        refund_id=payment.refund_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        created_at=payment.created_at,
        updated_at=payment.updated_at,
    )


def to_payout_response(payout: JobPayout) -> PayoutResponse:
    return PayoutResponse(
        id=payout.id,
        transfer_id=payout.transfer_id,
        amount=payout.amount,
        currency=payout.currency,
        status=payout.status,
        created_at=payout.created_at,
    )


def to_ledger_response(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        sequence=entry.sequence,
        event_type=entry.event_type,
        actor_id=entry.actor_id,
        details=entry.details,
        created_at=entry.created_at,
    )


def to_funding_response(result: FundingResult) -> FundingResponse:
    return FundingResponse(
        job=to_job_response(result.job),
        payment=to_payment_response(result.payment),
        client_secret=result.client_secret,
        created=result.created,
        funded=result.funded,
    )


def to_approval_response(result: ApprovalResult) -> ApprovalResponse:
    return ApprovalResponse(
        job=to_job_response(result.job),
        payout=to_payout_response(result.payout) if result.payout else None,
        paid_out=result.paid_out,
        error=result.error.to_dict() if result.error else None,
        retry_recommended=result.retry_recommended,
    )


def ensure_can_view(job: Job, actor_id: str, settings) -> None:
    """Only the two parties and platform admins may read a job."""
    if job.is_party(actor_id) or actor_id in settings.admin_actor_ids:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You are not a party to this job",
    )


# =============================================================================
# Routes
# =============================================================================


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_job(request: Request, body: JobCreate, actor: CurrentActor, escrow: Escrow):
    """
    Create a job in 'draft'.

    The caller becomes the business. The platform fee defaults to the
    configured rate of the amount.
    """
    logger.info(f"POST /jobs | business={actor} | agency={body.agency_id}")
    job = escrow.create_job(
        business_id=actor,
        agency_id=body.agency_id,
        title=body.title,
        amount=body.amount,
        currency=body.currency,
        description=body.description,
        platform_fee=body.platform_fee,
        deal_id=body.deal_id,
    )
    return to_job_response(job)


@router.get("", response_model=JobListResponse)
@limiter.limit("60/minute")
def list_jobs(
    request: Request,
    actor: CurrentActor,
    queries: Queries,
    role: Literal["business", "agency"] = Query("business"),
    status_filter: JobStatusName | None = Query(None, alias="status"),
):
    """
    List the caller's jobs.

    - role: list jobs where the caller is the business (default) or the agency
    - status: filter by job status
    """
    status_value = JobStatus(status_filter) if status_filter else None
    if role == "agency":
        view = queries.list_jobs(agency_id=actor, status_filter=status_value)
    else:
        view = queries.list_jobs(business_id=actor, status_filter=status_value)
    return JobListResponse(
        jobs=[to_job_response(j) for j in view.jobs],
        total=view.total,
        active=view.active,
        total_value=view.total_value,
        total_captured=view.total_captured,
        total_refunded=view.total_refunded,
        total_paid_out=view.total_paid_out,
    )


@router.get("/{job_id}", response_model=JobDetailResponse)
@limiter.limit("60/minute")
def get_job(
    request: Request, job_id: str, actor: CurrentActor, queries: Queries, settings: AppSettings
):
    """Job with payments, payout and ledger history."""
    detail = queries.job_detail(job_id)
    ensure_can_view(detail.job, actor, settings)
    return JobDetailResponse(
        job=to_job_response(detail.job),
        payments=[to_payment_response(p) for p in detail.payments],
        payouts=[to_payout_response(p) for p in detail.payouts],
        agency_payout=detail.agency_payout,
        agency_account_connected=bool(detail.agency and detail.agency.has_connected_account),
        ledger=[to_ledger_response(e) for e in detail.ledger],
    )


@router.get("/{job_id}/ledger", response_model=list[LedgerEntryResponse])
@limiter.limit("60/minute")
def get_job_ledger(
    request: Request, job_id: str, actor: CurrentActor, queries: Queries, settings: AppSettings
):
    """Ledger entries for a job, oldest first."""
    detail = queries.job_detail(job_id)
    ensure_can_view(detail.job, actor, settings)
    return [to_ledger_response(e) for e in detail.ledger]


# --- Agency handshake and delivery ---


@router.post("/{job_id}/invite", response_model=JobResponse)
@limiter.limit("30/minute")
def invite_agency(request: Request, job_id: str, actor: CurrentActor, escrow: Escrow):
    """Send a draft job to its agency."""
    return to_job_response(escrow.invite_agency(job_id, actor))


@router.post("/{job_id}/accept", response_model=JobResponse)
@limiter.limit("30/minute")
def accept_job(request: Request, job_id: str, actor: CurrentActor, escrow: Escrow):
    return to_job_response(escrow.accept_job(job_id, actor))


@router.post("/{job_id}/decline", response_model=JobResponse)
@limiter.limit("30/minute")
def decline_job(request: Request, job_id: str, actor: CurrentActor, escrow: Escrow):
    return to_job_response(escrow.decline_job(job_id, actor))


@router.post("/{job_id}/start", response_model=JobResponse)
@limiter.limit("30/minute")
def start_work(request: Request, job_id: str, actor: CurrentActor, escrow: Escrow):
    return to_job_response(escrow.start_work(job_id, actor))


@router.post("/{job_id}/submit", response_model=JobResponse)
@limiter.limit("30/minute")
def submit_work(request: Request, job_id: str, actor: CurrentActor, escrow: Escrow):
    """Deliver work for review (also used to resubmit after a revision request)."""
    return to_job_response(escrow.submit_work(job_id, actor))


@router.post("/{job_id}/revision", response_model=JobResponse)
@limiter.limit("30/minute")
def request_revision(request: Request, job_id: str, actor: CurrentActor, escrow: Escrow):
    return to_job_response(escrow.request_revision(job_id, actor))


# --- Money movement ---


@router.post("/{job_id}/fund", response_model=FundingResponse)
@limiter.limit("10/minute")
def fund_job(request: Request, job_id: str, actor: CurrentActor, escrow: Escrow):
    """
    Start funding a job.

    Returns the payment intent client secret. The job becomes 'funded'
    only once the processor confirms capture (see /confirm and webhooks).
    A repeated call returns the pending intent instead of creating another.
    """
    logger.info(f"POST /jobs/{job_id}/fund | actor={actor}")
    return to_funding_response(escrow.fund_job(job_id, actor))


@router.post("/{job_id}/confirm", response_model=FundingResponse)
@limiter.limit("30/minute")
def confirm_payment(
    request: Request,
    job_id: str,
    actor: CurrentActor,
    escrow: Escrow,
    body: ConfirmPaymentRequest | None = None,
):
    """Confirm capture with the processor after the client completed payment."""
    intent_id = body.payment_intent_id if body else None
    return to_funding_response(escrow.confirm_payment(job_id, intent_id, actor))


@router.post("/{job_id}/approve", response_model=ApprovalResponse)
@limiter.limit("10/minute")
def approve_work(request: Request, job_id: str, actor: CurrentActor, escrow: Escrow):
    """
    Approve delivered work and release payment to the agency.

    If the payout fails the approval still stands; the response carries
    the error and whether a retry (POST /payout) is recommended.
    """
    logger.info(f"POST /jobs/{job_id}/approve | actor={actor}")
    return to_approval_response(escrow.approve_work(job_id, actor))


@router.post("/{job_id}/payout", response_model=PayoutResponse)
@limiter.limit("10/minute")
def release_payout(request: Request, job_id: str, actor: CurrentActor, escrow: Escrow):
    """Retry the payout of an approved job.

    A job that was already paid answers 200 with ``already_paid_out`` and
    the existing payout.
    """
    return to_payout_response(escrow.release_payout(job_id, actor))


@router.post("/{job_id}/cancel", response_model=JobResponse)
@limiter.limit("10/minute")
def cancel_job(request: Request, job_id: str, actor: CurrentActor, escrow: Escrow):
    """Cancel a job that has not been funded."""
    logger.info(f"POST /jobs/{job_id}/cancel | actor={actor}")
    return to_job_response(escrow.cancel_job(job_id, actor))


@router.post("/{job_id}/refund", response_model=JobResponse)
@limiter.limit("10/minute")
def refund_job(request: Request, job_id: str, actor: CurrentActor, escrow: Escrow):
    """Refund the full amount to the business. Not possible once paid out."""
    logger.info(f"POST /jobs/{job_id}/refund | actor={actor}")
    return to_job_response(escrow.refund_job(job_id, actor))
