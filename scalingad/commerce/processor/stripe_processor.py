"""Stripe Connect adapter.

Destination charges for funding, Express connected accounts for agencies,
transfers for the separate-charge model and full refunds. Holds no
business state. Credentials and timeouts are injected once at
construction through a dedicated ``StripeClient``; the ``stripe`` module
globals are never touched.
"""

import json
import logging
from decimal import Decimal
from typing import Any, Optional

import stripe

from scalingad.commerce.config import PLATFORM_NAME, CommerceConfig
from scalingad.commerce.errors import (
    AccountNotReady,
    ProcessorRejected,
    ProcessorTransient,
    ValidationError,
)
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
    from_minor_units,
    to_minor_units,
)

logger = logging.getLogger(__name__)

# Invalid-request codes meaning the destination cannot receive funds yet
_ACCOUNT_NOT_READY_CODES = frozenset(
    {
        "insufficient_capabilities_for_transfer",
        "account_invalid",
        "account_not_yet_onboarded",
    }
)

_SAFE_REJECTION_MESSAGES = {
    "card_declined": "The card was declined",
    "expired_card": "The card has expired",
    "insufficient_funds": "The card has insufficient funds",
    "amount_too_small": "The amount is below the processor minimum",
    "amount_too_large": "The amount exceeds the processor maximum",
}


def _translate_error(exc: "stripe.StripeError", operation: str) -> Exception:
    """Map a Stripe exception onto the escrow error taxonomy."""
    code = getattr(exc, "code", None)

    if isinstance(exc, stripe.APIConnectionError):
        # The request may have been sent before the connection dropped
        logger.warning(f"Stripe {operation}: connection error, outcome unknown")
        return ProcessorTransient(outcome_unknown=True, operation=operation)
    if isinstance(exc, stripe.RateLimitError):
        logger.warning(f"Stripe {operation}: rate limited")
        return ProcessorTransient(outcome_unknown=False, operation=operation)
    if isinstance(exc, stripe.APIError):
        logger.warning(f"Stripe {operation}: API error (http {exc.http_status})")
        return ProcessorTransient(outcome_unknown=True, operation=operation)
    if isinstance(exc, stripe.InvalidRequestError):
        param = getattr(exc, "param", None) or ""
        if code in _ACCOUNT_NOT_READY_CODES or param.startswith("transfer_data"):
            return AccountNotReady(
                "Agency account cannot receive transfers yet", operation=operation
            )
    if isinstance(exc, stripe.CardError):
        decline = getattr(exc, "decline_code", None) or code
        message = _SAFE_REJECTION_MESSAGES.get(decline, "The payment method was declined")
        logger.info(f"Stripe {operation}: card error code={code} decline={decline}")
        return ProcessorRejected(message, processor_code=decline, operation=operation)

    logger.error(f"Stripe {operation} rejected: {type(exc).__name__} code={code}")
    message = _SAFE_REJECTION_MESSAGES.get(code, "The payment processor rejected the request")
    return ProcessorRejected(message, processor_code=code, operation=operation)


def _intent_status(intent: Any) -> str:
    status = getattr(intent, "status", None)
    if status == "succeeded":
        return INTENT_SUCCEEDED
    if status == "canceled":
        return INTENT_FAILED
    if status == "requires_payment_method" and getattr(intent, "last_payment_error", None):
        return INTENT_FAILED
    return INTENT_PENDING


def _object_id(value: Any) -> Optional[str]:
    """Stripe returns either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


class StripeProcessor:
    """Stripe implementation of the PaymentProcessor protocol."""

    def __init__(self, config: CommerceConfig, client: Optional["stripe.StripeClient"] = None):
        if client is None:
            if not config.stripe_secret_key:
                raise ValueError("STRIPE_SECRET_KEY is required for the Stripe processor")
            client = stripe.StripeClient(
                config.stripe_secret_key,
                stripe_version=config.stripe_api_version,
                max_network_retries=config.processor_max_network_retries,
                http_client=stripe.RequestsClient(timeout=config.processor_timeout_seconds),
            )
        self._client = client
        self._config = config

    # === Connected accounts ===

    def create_account(self, agency_id: str, name: Optional[str] = None) -> str:
        try:
            account = self._client.accounts.create(
                params={
                    "type": "express",
                    "country": self._config.stripe_account_country,
                    "capabilities": {
                        "card_payments": {"requested": True},
                        "transfers": {"requested": True},
                    },
                    "business_type": "company",
                    "metadata": {"agency_id": agency_id, "platform": PLATFORM_NAME},
                },
                options={"idempotency_key": f"account:{agency_id}"},
            )
        except stripe.StripeError as e:
            raise _translate_error(e, "create_account") from e
        logger.info(f"Created connected account {account.id} for agency {agency_id}")
        return account.id

    def retrieve_account(self, account_id: str) -> AccountStatus:
        try:
            account = self._client.accounts.retrieve(account_id)
        except stripe.StripeError as e:
            raise _translate_error(e, "retrieve_account") from e
        return AccountStatus(
            account_id=account.id,
            details_submitted=bool(getattr(account, "details_submitted", False)),
            charges_enabled=bool(getattr(account, "charges_enabled", False)),
            payouts_enabled=bool(getattr(account, "payouts_enabled", False)),
        )

    def create_onboarding_link(self, account_id: str, return_url: str, refresh_url: str) -> str:
        try:
            link = self._client.account_links.create(
                params={
                    "account": account_id,
                    "return_url": return_url,
                    "refresh_url": refresh_url,
                    "type": "account_onboarding",
                }
            )
        except stripe.StripeError as e:
            raise _translate_error(e, "create_onboarding_link") from e
        return link.url

    # === Payments ===

    def create_funding_intent(
        self, job, destination_account_id: str, *, idempotency_key: str
    ) -> FundingIntent:
        amount = to_minor_units(job.amount, job.currency)
        fee = to_minor_units(job.platform_fee, job.currency)
        if amount <= 0 or fee < 0 or fee > amount:
            raise ValidationError("Job amount and fee cannot be charged", job_id=job.id)
        try:
            intent = self._client.payment_intents.create(
                params={
                    "amount": amount,
                    "currency": job.currency.lower(),
                    "transfer_data": {"destination": destination_account_id},
                    "application_fee_amount": fee,
                    "capture_method": "automatic",
                    "metadata": {
                        "job_id": job.id,
                        "agency_id": job.agency_id,
                        "business_id": job.business_id,
                        "platform": PLATFORM_NAME,
                    },
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise _translate_error(e, "create_funding_intent") from e
        logger.info(f"Created payment intent {intent.id} for job {job.id} ({amount} minor units)")
        return FundingIntent(
            external_id=intent.id,
            client_secret=getattr(intent, "client_secret", None),
            status=_intent_status(intent),
        )

    def confirm_payment(self, external_id: str) -> PaymentConfirmation:
        try:
            intent = self._client.payment_intents.retrieve(external_id)
        except stripe.StripeError as e:
            raise _translate_error(e, "confirm_payment") from e
        currency = getattr(intent, "currency", "usd")
        received = getattr(intent, "amount_received", None)
        return PaymentConfirmation(
            external_id=intent.id,
            status=_intent_status(intent),
            charge_id=_object_id(getattr(intent, "latest_charge", None)),
            amount=from_minor_units(received, currency) if received else None,
            client_secret=getattr(intent, "client_secret", None),
        )

    def cancel_funding_intent(self, external_id: str) -> PaymentConfirmation:
        try:
            intent = self._client.payment_intents.cancel(external_id)
        except stripe.StripeError as e:
            raise _translate_error(e, "cancel_funding_intent") from e
        logger.info(f"Cancelled payment intent {external_id}")
        return PaymentConfirmation(
            external_id=intent.id,
            status=_intent_status(intent),
            charge_id=_object_id(getattr(intent, "latest_charge", None)),
        )

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
        params = {
            "amount": to_minor_units(amount, currency),
            "currency": currency.lower(),
            "destination": destination_account_id,
            "metadata": {"job_id": job_id, "platform": PLATFORM_NAME},
        }
        if source_charge_id:
            params["source_transaction"] = source_charge_id
        try:
            transfer = self._client.transfers.create(
                params=params, options={"idempotency_key": idempotency_key}
            )
        except stripe.StripeError as e:
            raise _translate_error(e, "create_transfer") from e
        logger.info(f"Created transfer {transfer.id} for job {job_id}")
        return TransferResult(external_id=transfer.id, amount=amount, currency=currency)

    def refund(
        self,
        *,
        external_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        reverse_transfer: bool = True,
    ) -> RefundResult:
        params = {
            "payment_intent": external_id,
            "amount": to_minor_units(amount, currency),
        }
        if reverse_transfer:
            params["reverse_transfer"] = True
            params["refund_application_fee"] = True
        try:
            refund = self._client.refunds.create(
                params=params, options={"idempotency_key": idempotency_key}
            )
        except stripe.StripeError as e:
            raise _translate_error(e, "refund") from e
        logger.info(f"Refunded payment intent {external_id} (refund {refund.id})")
        return RefundResult(
            external_id=refund.id,
            amount=amount,
            status=getattr(refund, "status", "succeeded"),
        )

    # === Webhooks ===

    def parse_event(self, payload: bytes, signature: str) -> ProcessorEvent:
        """Verify the Stripe-Signature header and decode the event body."""
        secret = self._config.stripe_webhook_secret
        if not secret:
            raise ValidationError("Webhook secret is not configured")
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(text, signature, secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("Rejected webhook with invalid signature")
            raise ValidationError("Invalid webhook signature") from e
        body = json.loads(text)
        return ProcessorEvent(
            id=body["id"],
            type=body["type"],
            data=(body.get("data") or {}).get("object") or {},
            livemode=bool(body.get("livemode", False)),
            account=body.get("account"),
        )
