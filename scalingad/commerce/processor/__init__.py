"""Payment processor adapters for ScalingAd Commerce.

Modules:
- base.py: PaymentProcessor protocol, result types, minor-unit conversion
- stripe_processor.py: Stripe Connect implementation (destination charges)
"""

from scalingad.commerce.processor.base import (
    INTENT_FAILED,
    INTENT_PENDING,
    INTENT_SUCCEEDED,
    AccountStatus,
    FundingIntent,
    PaymentConfirmation,
    PaymentProcessor,
    ProcessorEvent,
    RefundResult,
    TransferResult,
    from_minor_units,
    to_minor_units,
)
from scalingad.commerce.processor.stripe_processor import StripeProcessor

__all__ = [
    "PaymentProcessor",
    "StripeProcessor",
    "FundingIntent",
    "PaymentConfirmation",
    "TransferResult",
    "RefundResult",
    "AccountStatus",
    "ProcessorEvent",
    "INTENT_SUCCEEDED",
    "INTENT_PENDING",
    "INTENT_FAILED",
    "to_minor_units",
    "from_minor_units",
]
