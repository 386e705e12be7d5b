"""Test doubles for ScalingAd.

- FakeProcessor: in-memory PaymentProcessor with idempotency keys,
  queued failures and manual intent settlement
"""

from scalingad.testing.fake_processor import VALID_SIGNATURE, FakeProcessor

__all__ = ["FakeProcessor", "VALID_SIGNATURE"]
