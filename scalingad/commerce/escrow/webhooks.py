"""Processor webhook dispatch.

Verified events are routed to EscrowService methods; the handler itself
writes nothing but the ``processor_event`` ledger entry. Event ids are
recorded only after the handler succeeds, so a failed delivery is
processed again when the processor retries it.
"""

import logging
from typing import Callable, Dict, Optional

from scalingad.commerce.escrow.service import EscrowService
from scalingad.commerce.ledger.models import LedgerEventType
from scalingad.commerce.processor.base import ProcessorEvent

logger = logging.getLogger(__name__)


class WebhookHandler:
    """Routes processor events into the escrow service."""

    def __init__(self, service: EscrowService):
        self._service = service
        self._storage = service.storage
        self._handlers: Dict[str, Callable[[ProcessorEvent], Optional[str]]] = {
            "payment_intent.succeeded": self._on_payment_intent,
            "payment_intent.payment_failed": self._on_payment_intent,
            "charge.refunded": self._on_charge_refunded,
            "transfer.paid": self._on_transfer_paid,
            "transfer.failed": self._on_transfer_failed,
            "account.updated": self._on_account_updated,
            "account.application.deauthorized": self._on_account_deauthorized,
        }

    @property
    def event_types(self):
        return sorted(self._handlers)

    def handle_payload(self, payload: bytes, signature: str) -> bool:
        """Verify, decode and handle a raw webhook body."""
        event = self._service.processor.parse_event(payload, signature)
        return self.handle(event)

    def handle(self, event: ProcessorEvent) -> bool:
        """Handle one event. Returns False for an already processed event id."""
        if self._storage.has_processor_event(event.id):
            logger.info(f"Duplicate processor event {event.id} ignored")
            return False

        handler = self._handlers.get(event.type)
        job_id = event.metadata.get("job_id")
        if handler is None:
            logger.debug(f"No handler for processor event type {event.type}")
        else:
            job_id = handler(event) or job_id

        if not self._storage.record_processor_event(event.id):
            # Concurrent delivery of the same event finished first
            return False
        self._service.ledger.append(
            job_id,
            LedgerEventType.PROCESSOR_EVENT,
            None,
            {
                "processor_event_id": event.id,
                "type": event.type,
                "object_id": event.object_id,
                "livemode": event.livemode,
                "handled": handler is not None,
            },
        )
        logger.info(f"Processed processor event {event.id} ({event.type})")
        return True

    # === Handlers (return the affected job id when known) ===

    def _on_payment_intent(self, event: ProcessorEvent) -> Optional[str]:
        intent_id = event.object_id
        payment = self._storage.get_payment_by_intent(intent_id)
        if payment is None:
            logger.warning(f"Event {event.id} for unknown payment intent {intent_id}")
            return None
        # The processor is re-queried; event payloads can arrive out of order
        self._service.confirm_payment(payment.job_id, intent_id)
        return payment.job_id

    def _on_charge_refunded(self, event: ProcessorEvent) -> Optional[str]:
        intent_id = event.data.get("payment_intent")
        if not intent_id:
            return None
        refunds = (event.data.get("refunds") or {}).get("data") or []
        refund_id = refunds[0].get("id") if refunds else None
        job = self._service.record_external_refund(intent_id, refund_id)
        return job.id if job else None

    def _on_transfer_paid(self, event: ProcessorEvent) -> Optional[str]:
        payout = self._service.record_payout_status(event.object_id, succeeded=True)
        return payout.job_id if payout else None

    def _on_transfer_failed(self, event: ProcessorEvent) -> Optional[str]:
        payout = self._service.record_payout_status(event.object_id, succeeded=False)
        return payout.job_id if payout else None

    def _on_account_updated(self, event: ProcessorEvent) -> Optional[str]:
        self._service.update_agency_onboarding(
            event.object_id,
            details_submitted=bool(event.data.get("details_submitted")),
            charges_enabled=bool(event.data.get("charges_enabled")),
            payouts_enabled=bool(event.data.get("payouts_enabled")),
        )
        return None

    def _on_account_deauthorized(self, event: ProcessorEvent) -> Optional[str]:
        account_id = event.account or event.object_id
        if account_id:
            self._service.disconnect_agency_account(account_id)
        return None
