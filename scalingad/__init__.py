"""
ScalingAd - Escrow-backed job payments between brands and agencies.

Job payment lifecycle, escrow orchestration and an append-only ledger.
"""

from importlib.metadata import PackageNotFoundError, version

from .commerce.escrow.service import EscrowService

try:
    __version__ = version("scalingad")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["EscrowService"]
