"""Ledger data models."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from scalingad.utils import parse_datetime, utc_now


class LedgerEventType(str, Enum):
    """Kinds of money- or status-affecting events."""

    JOB_CREATED = "job_created"
    JOB_STATUS_CHANGED = "job_status_changed"
    PAYMENT_INTENT_CREATED = "payment_intent_created"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REJECTED = "payment_rejected"
    PAYOUT_COMPLETED = "payout_completed"
    PAYOUT_FAILED = "payout_failed"
    JOB_CANCELLED = "job_cancelled"
    JOB_REFUNDED = "job_refunded"
    PROCESSOR_EVENT = "processor_event"
    RECONCILIATION_DRIFT = "reconciliation_drift"


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def dump_details(details: Optional[Dict[str, Any]]) -> str:
    """Serialize entry details; Decimals become strings."""
    return json.dumps(details or {}, default=_json_default, sort_keys=True)


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable audit record.

    ``sequence`` is assigned by storage on append and breaks timestamp
    ties so reads keep causal order.
    """

    id: str
    job_id: Optional[str]
    event_type: str
    actor_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        value = (
            self.event_type.value
            if isinstance(self.event_type, LedgerEventType)
            else str(self.event_type)
        )
        try:
            LedgerEventType(value)
        except ValueError:
            raise ValueError(f"Invalid ledger event type: {value}")
        object.__setattr__(self, "event_type", value)
        # Normalize details through JSON so stored and in-memory forms match
        object.__setattr__(self, "details", json.loads(dump_details(self.details)))

    @property
    def sort_key(self):
        return (self.created_at, self.sequence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "actor_id": self.actor_id,
            "event_type": self.event_type,
            "details": dict(self.details),
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEntry":
        details = data.get("details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        return cls(
            id=data["id"],
            job_id=data.get("job_id"),
            actor_id=data.get("actor_id"),
            event_type=data["event_type"],
            details=details,
            sequence=int(data.get("sequence") or 0),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
        )
