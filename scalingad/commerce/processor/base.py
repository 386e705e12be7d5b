"""Payment processor boundary.

The protocol every processor adapter implements, the result types it
returns, and the only place Decimal major units are converted to the
processor's integer minor units.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Protocol

from scalingad.commerce.money import currency_exponent, to_decimal

INTENT_SUCCEEDED = "succeeded"
INTENT_PENDING = "pending"
INTENT_FAILED = "failed"


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Major-unit Decimal to processor integer (e.g. 10.005 USD -> 1001)."""
    exponent = currency_exponent(currency)
    scaled = to_decimal(amount).scaleb(exponent)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    """Processor integer to major-unit Decimal."""
    exponent = currency_exponent(currency)
    return Decimal(int(amount)).scaleb(-exponent)


@dataclass
class FundingIntent:
    """A created destination-charge payment intent."""

    external_id: str
    client_secret: Optional[str]
    status: str = INTENT_PENDING


@dataclass
class PaymentConfirmation:
    """Processor view of a payment intent."""

    external_id: str
    status: str
    charge_id: Optional[str] = None
    amount: Optional[Decimal] = None
    client_secret: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == INTENT_SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == INTENT_FAILED


@dataclass
class TransferResult:
    """A transfer to a connected account."""

    external_id: str
    amount: Decimal
    currency: str


@dataclass
class RefundResult:
    """A refund of a captured payment."""

    external_id: str
    amount: Decimal
    status: str


@dataclass
class AccountStatus:
    """Onboarding state of a connected account."""

    account_id: str
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False

    @property
    def can_receive_transfers(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


@dataclass
class ProcessorEvent:
    """A verified webhook event, decoded to plain data."""

    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    livemode: bool = False
    account: Optional[str] = None  # connected account the event concerns

    @property
    def object_id(self) -> Optional[str]:
        return self.data.get("id")

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.data.get("metadata") or {}


class PaymentProcessor(Protocol):
    """Operations against the external payment service.

    All calls are remote and may raise ``ProcessorTransient`` (retryable,
    possibly unknown outcome) or ``ProcessorRejected`` (terminal).
    """

    def create_account(self, agency_id: str, name: Optional[str] = None) -> str:
        """Create a connected account for an agency. Returns the account id."""
        ...

    def retrieve_account(self, account_id: str) -> AccountStatus:
        ...

    def create_onboarding_link(self, account_id: str, return_url: str, refresh_url: str) -> str:
        """One-time onboarding URL. Not idempotent."""
        ...

    def create_funding_intent(
        self, job, destination_account_id: str, *, idempotency_key: str
    ) -> FundingIntent:
        ...

    def confirm_payment(self, external_id: str) -> PaymentConfirmation:
        ...

    def cancel_funding_intent(self, external_id: str) -> PaymentConfirmation:
        """Cancel an uncaptured intent so it can no longer be paid."""
        ...

    def create_transfer(
        self,
        *,
        amount: Decimal,
        currency: str,
        destination_account_id: str,
        job_id: str,
        idempotency_key: str,
        source_charge_id: Optional[str] = None,
    ) -> TransferResult:
        ...

    def refund(
        self,
        *,
        external_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        reverse_transfer: bool = True,
    ) -> RefundResult:
        ...

    def parse_event(self, payload: bytes, signature: str) -> ProcessorEvent:
        ...
