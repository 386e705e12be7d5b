"""In-memory payment processor for tests and local development.

Implements the ``PaymentProcessor`` protocol with the same idempotency-key
behaviour as the real service: a repeated key returns the original object
instead of creating a second one. Failures can be queued per operation
and intents can be settled by hand to drive asynchronous capture.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional, Tuple

from scalingad.commerce.errors import AccountNotReady, ProcessorRejected, ValidationError
from scalingad.commerce.processor.base import (
    INTENT_FAILED,
    INTENT_PENDING,
    INTENT_SUCCEEDED,
    AccountStatus,
    FundingIntent,
    PaymentConfirmation,
    ProcessorEvent,
    RefundResult,
    TransferResult,
    to_minor_units,
)

logger = logging.getLogger(__name__)

VALID_SIGNATURE = "test-signature"


@dataclass
class FakeIntent:
    """Processor-side record of a funding intent."""

    id: str
    job_id: str
    amount: int
    application_fee: int
    currency: str
    destination: str
    client_secret: str
    status: str = INTENT_PENDING
    charge_id: Optional[str] = None


@dataclass
class FakeAccount:
    id: str
    agency_id: str
    name: Optional[str] = None
    details_submitted: bool = True
    charges_enabled: bool = True
    payouts_enabled: bool = True


@dataclass
class ProcessorCall:
    operation: str
    kwargs: Dict[str, Any] = field(default_factory=dict)


class FakeProcessor:
    """Deterministic stand-in for Stripe.

    Args:
        auto_capture: When True, intents report ``succeeded`` on the first
            ``confirm_payment``. When False they stay pending until
            ``settle_intent`` is called.
    """

    def __init__(self, auto_capture: bool = True):
        self.auto_capture = auto_capture
        self.accounts: Dict[str, FakeAccount] = {}
        self.intents: Dict[str, FakeIntent] = {}
        self.transfers: Dict[str, TransferResult] = {}
        self.refunds: Dict[str, RefundResult] = {}
        self.calls: List[ProcessorCall] = []

        self._by_key: Dict[str, Any] = {}
        self._failures: Dict[str, Deque[Exception]] = defaultdict(deque)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # === Test controls ===

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Raise ``error`` on the next ``times`` calls to ``operation``."""
        with self._lock:
            for _ in range(times):
                self._failures[operation].append(error)

    def settle_intent(self, intent_id: str, succeeded: bool = True) -> None:
        """Move a pending intent to succeeded (captured) or failed."""
        with self._lock:
            intent = self.intents[intent_id]
            if succeeded:
                intent.status = INTENT_SUCCEEDED
                intent.charge_id = intent.charge_id or f"ch_fake_{next(self._ids)}"
            else:
                intent.status = INTENT_FAILED

    def add_account(self, account_id: str, agency_id: str, ready: bool = True) -> FakeAccount:
        account = FakeAccount(
            id=account_id,
            agency_id=agency_id,
            details_submitted=ready,
            charges_enabled=ready,
            payouts_enabled=ready,
        )
        with self._lock:
            self.accounts[account_id] = account
        return account

    def calls_for(self, operation: str) -> List[ProcessorCall]:
        return [c for c in self.calls if c.operation == operation]

    def call_count(self, operation: Optional[str] = None) -> int:
        if operation is None:
            return len(self.calls)
        return len(self.calls_for(operation))

    def build_event(
        self,
        event_type: str,
        obj: Dict[str, Any],
        event_id: Optional[str] = None,
        account: Optional[str] = None,
    ) -> Tuple[bytes, str]:
        """Encode a webhook payload and the signature ``parse_event`` accepts."""
        body = {
            "id": event_id or f"evt_fake_{next(self._ids)}",
            "type": event_type,
            "livemode": False,
            "data": {"object": obj},
        }
        if account:
            body["account"] = account
        return json.dumps(body).encode("utf-8"), VALID_SIGNATURE

    def _record(self, operation: str, **kwargs: Any) -> None:
        """Log the call and raise a queued failure if one is pending."""
        with self._lock:
            self.calls.append(ProcessorCall(operation, kwargs))
            queue = self._failures.get(operation)
            error = queue.popleft() if queue else None
        if error is not None:
            logger.debug(f"Fake processor failing {operation} with {type(error).__name__}")
            raise error

    # === Connected accounts ===

    def create_account(self, agency_id: str, name: Optional[str] = None) -> str:
        self._record("create_account", agency_id=agency_id)
        key = f"account:{agency_id}"
        with self._lock:
            if key in self._by_key:
                return self._by_key[key]
            account_id = f"acct_fake_{next(self._ids)}"
            self.accounts[account_id] = FakeAccount(id=account_id, agency_id=agency_id, name=name)
            self._by_key[key] = account_id
        return account_id

    def retrieve_account(self, account_id: str) -> AccountStatus:
        self._record("retrieve_account", account_id=account_id)
        account = self.accounts.get(account_id)
        if account is None:
            raise ProcessorRejected("No such account", processor_code="resource_missing")
        return AccountStatus(
            account_id=account.id,
            details_submitted=account.details_submitted,
            charges_enabled=account.charges_enabled,
            payouts_enabled=account.payouts_enabled,
        )

    def create_onboarding_link(self, account_id: str, return_url: str, refresh_url: str) -> str:
        self._record("create_onboarding_link", account_id=account_id)
        return f"https://connect.example.test/onboarding/{account_id}/{next(self._ids)}"

    # === Payments ===

    def create_funding_intent(
        self, job, destination_account_id: str, *, idempotency_key: str
    ) -> FundingIntent:
        self._record(
            "create_funding_intent",
            job_id=job.id,
            destination=destination_account_id,
            idempotency_key=idempotency_key,
        )
        account = self.accounts.get(destination_account_id)
        if account is not None and not (account.charges_enabled and account.payouts_enabled):
            raise AccountNotReady("Agency account cannot receive transfers yet")
        with self._lock:
            existing = self._by_key.get(idempotency_key)
            if existing is not None:
                intent = self.intents[existing]
            else:
                n = next(self._ids)
                intent = FakeIntent(
                    id=f"pi_fake_{n}",
                    job_id=job.id,
                    amount=to_minor_units(job.amount, job.currency),
                    application_fee=to_minor_units(job.platform_fee, job.currency),
                    currency=job.currency,
                    destination=destination_account_id,
                    client_secret=f"pi_fake_{n}_secret",
                )
                self.intents[intent.id] = intent
                self._by_key[idempotency_key] = intent.id
        return FundingIntent(
            external_id=intent.id, client_secret=intent.client_secret, status=intent.status
        )

    def confirm_payment(self, external_id: str) -> PaymentConfirmation:
        self._record("confirm_payment", external_id=external_id)
        intent = self.intents.get(external_id)
        if intent is None:
            raise ProcessorRejected("No such payment intent", processor_code="resource_missing")
        if self.auto_capture and intent.status == INTENT_PENDING:
            self.settle_intent(external_id, succeeded=True)
        return PaymentConfirmation(
            external_id=intent.id,
            status=intent.status,
            charge_id=intent.charge_id,
            client_secret=intent.client_secret,
        )

    def cancel_funding_intent(self, external_id: str) -> PaymentConfirmation:
        self._record("cancel_funding_intent", external_id=external_id)
        intent = self.intents[external_id]
        if intent.status == INTENT_SUCCEEDED:
            raise ProcessorRejected(
                "The payment can no longer be cancelled",
                processor_code="payment_intent_unexpected_state",
            )
        intent.status = INTENT_FAILED
        return PaymentConfirmation(external_id=intent.id, status=intent.status)

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
        self._record(
            "create_transfer",
            amount=amount,
            destination=destination_account_id,
            job_id=job_id,
            idempotency_key=idempotency_key,
        )
        with self._lock:
            existing = self._by_key.get(idempotency_key)
            if existing is not None:
                return self.transfers[existing]
            transfer = TransferResult(
                external_id=f"tr_fake_{next(self._ids)}", amount=amount, currency=currency
            )
            self.transfers[transfer.external_id] = transfer
            self._by_key[idempotency_key] = transfer.external_id
        return transfer

    def refund(
        self,
        *,
        external_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        reverse_transfer: bool = True,
    ) -> RefundResult:
        self._record(
            "refund",
            external_id=external_id,
            amount=amount,
            idempotency_key=idempotency_key,
            reverse_transfer=reverse_transfer,
        )
        with self._lock:
            existing = self._by_key.get(idempotency_key)
            if existing is not None:
                return self.refunds[existing]
            intent = self.intents.get(external_id)
            if intent is None or intent.status != INTENT_SUCCEEDED:
                raise ProcessorRejected(
                    "The payment has not been captured", processor_code="charge_not_captured"
                )
            refund = RefundResult(
                external_id=f"re_fake_{next(self._ids)}", amount=amount, status="succeeded"
            )
            self.refunds[refund.external_id] = refund
            self._by_key[idempotency_key] = refund.external_id
        return refund

    # === Webhooks ===

    def parse_event(self, payload: bytes, signature: str) -> ProcessorEvent:
        self._record("parse_event")
        if signature != VALID_SIGNATURE:
            raise ValidationError("Invalid webhook signature")
        body = json.loads(payload)
        return ProcessorEvent(
            id=body["id"],
            type=body["type"],
            data=(body.get("data") or {}).get("object") or {},
            livemode=bool(body.get("livemode", False)),
            account=body.get("account"),
        )
