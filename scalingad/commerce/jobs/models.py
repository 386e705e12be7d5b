"""Job data models.

Job, JobPayment and JobPayout rows plus the agency's connected-account
facet. Amounts are exact Decimals in the job currency's major unit.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from scalingad.commerce.money import exact_amount, normalize_currency, to_decimal
from scalingad.utils import parse_datetime, utc_now

MAX_TITLE_LENGTH = 200


class JobStatus(str, Enum):
    """Job lifecycle status."""

    DRAFT = "draft"
    PENDING = "pending"  # waiting for agency acceptance
    DECLINED = "declined"
    UNFUNDED = "unfunded"  # accepted, awaiting payment
    FUNDED = "funded"  # captured, held by the processor
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    REVISION = "revision"
    APPROVED = "approved"  # release authorized
    PAID_OUT = "paid_out"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """JobPayment status."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(str, Enum):
    """JobPayout status."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset(
    {
        JobStatus.PENDING,
        JobStatus.UNFUNDED,
        JobStatus.FUNDED,
        JobStatus.IN_PROGRESS,
        JobStatus.REVIEW,
        JobStatus.REVISION,
    }
)


def _status_value(status, enum_cls) -> str:
    value = status.value if isinstance(status, enum_cls) else str(status)
    try:
        enum_cls(value)
    except ValueError:
        raise ValueError(f"Invalid status: {value}")
    return value


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


@dataclass
class Job:
    """A unit of paid work between one business and one agency."""

    id: str
    business_id: str
    agency_id: str
    title: str
    amount: Decimal
    currency: str
    platform_fee: Decimal
    description: str = ""
    status: str = JobStatus.DRAFT.value
    deal_id: Optional[str] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = _status_value(self.status, JobStatus)
        if not self.title or not self.title.strip():
            raise ValueError("Title is required")
        if len(self.title) > MAX_TITLE_LENGTH:
            raise ValueError(f"Title too long (max {MAX_TITLE_LENGTH} characters)")
        if not self.business_id or not self.agency_id:
            raise ValueError("Job requires a business and an agency")
        self.currency = normalize_currency(self.currency)
        self.amount = exact_amount(self.amount, self.currency)
        self.platform_fee = exact_amount(self.platform_fee, self.currency)
        if self.amount <= 0:
            raise ValueError("Amount must be positive")
        if self.platform_fee < 0:
            raise ValueError("Platform fee cannot be negative")
        if self.platform_fee > self.amount:
            raise ValueError("Platform fee cannot exceed amount")
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    @property
    def agency_payout(self) -> Decimal:
        """What the agency receives: amount minus the platform fee."""
        return self.amount - self.platform_fee

    @property
    def is_active(self) -> bool:
        return self.job_status in ACTIVE_STATUSES

    def is_party(self, actor_id: str) -> bool:
        return actor_id in (self.business_id, self.agency_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "agency_id": self.agency_id,
            "title": self.title,
            "description": self.description,
            "amount": str(self.amount),
            "currency": self.currency,
            "platform_fee": str(self.platform_fee),
            "agency_payout": str(self.agency_payout),
            "status": self.status,
            "deal_id": self.deal_id,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            business_id=data["business_id"],
            agency_id=data["agency_id"],
            title=data["title"],
            description=data.get("description") or "",
            amount=to_decimal(data["amount"]),
            currency=data["currency"],
            platform_fee=to_decimal(data["platform_fee"]),
            status=data.get("status", JobStatus.DRAFT.value),
            deal_id=data.get("deal_id"),
            version=int(data.get("version", 1)),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )


@dataclass
class JobPayment:
    """One attempt to collect money from the business for a job."""

    id: str
    job_id: str
    payment_intent_id: str
    amount: Decimal
    currency: str
    status: str = PaymentStatus.PENDING.value
    charge_id: Optional[str] = None
    refund_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = _status_value(self.status, PaymentStatus)
        if not self.payment_intent_id:
            raise ValueError("Payment requires an external payment intent id")
        self.currency = normalize_currency(self.currency)
        self.amount = exact_amount(self.amount, self.currency)
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def is_succeeded(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED.value

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "payment_intent_id": self.payment_intent_id,
            "charge_id": self.charge_id,
            "refund_id": self.refund_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class JobPayout:
    """One release of escrowed money to the agency."""

    id: str
    job_id: str
    transfer_id: str
    amount: Decimal
    currency: str
    status: str = PayoutStatus.PENDING.value
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = _status_value(self.status, PayoutStatus)
        self.currency = normalize_currency(self.currency)
        self.amount = exact_amount(self.amount, self.currency)
        if self.amount < 0:
            raise ValueError("Payout amount cannot be negative")
        if self.created_at is None:
            self.created_at = utc_now()
        if self.updated_at is None:
            self.updated_at = self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "transfer_id": self.transfer_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class AgencyAccount:
    """The agency's connected-account facet.

    ``stripe_account_id`` stays None until onboarding starts; a job
    cannot be funded until it is set.
    """

    agency_id: str
    name: str = ""
    stripe_account_id: Optional[str] = None
    onboarding_complete: bool = False
    payouts_enabled: bool = False
    updated_at: Optional[datetime] = field(default=None)

    def __post_init__(self):
        if self.updated_at is None:
            self.updated_at = utc_now()

    @property
    def has_connected_account(self) -> bool:
        return bool(self.stripe_account_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agency_id": self.agency_id,
            "name": self.name,
            "stripe_account_id": self.stripe_account_id,
            "onboarding_complete": self.onboarding_complete,
            "payouts_enabled": self.payouts_enabled,
            "updated_at": _iso(self.updated_at),
        }


def _accumulate(totals: Dict[str, Decimal], currency: str, amount: Decimal) -> None:
    totals[currency] = totals.get(currency, Decimal("0")) + amount


@dataclass
class JobTotals:
    """Counters over every job matching a filter.

    Sums are kept per currency. ``total_captured`` counts every payment the
    processor captured, including ones later refunded; ``total_refunded``
    is the refunded part of it.
    """

    total: int = 0
    active: int = 0
    total_value: Dict[str, Decimal] = field(default_factory=dict)
    total_captured: Dict[str, Decimal] = field(default_factory=dict)
    total_refunded: Dict[str, Decimal] = field(default_factory=dict)
    total_paid_out: Dict[str, Decimal] = field(default_factory=dict)

    def add_job(self, status: str, currency: str, amount: Decimal) -> None:
        self.total += 1
        if JobStatus(status) in ACTIVE_STATUSES:
            self.active += 1
        _accumulate(self.total_value, currency, amount)

    def add_payment(self, status: str, currency: str, amount: Decimal) -> None:
        if status in (PaymentStatus.SUCCEEDED.value, PaymentStatus.REFUNDED.value):
            _accumulate(self.total_captured, currency, amount)
        if status == PaymentStatus.REFUNDED.value:
            _accumulate(self.total_refunded, currency, amount)

    def add_payout(self, status: str, currency: str, amount: Decimal) -> None:
        if status == PayoutStatus.PAID.value:
            _accumulate(self.total_paid_out, currency, amount)
