"""Escrow orchestration for ScalingAd Commerce.

Service:
- EscrowService: Drives jobs through funding, approval, payout and refund
- FundingResult, ApprovalResult, OnboardingLink: Operation results

Processor-side convergence:
- WebhookHandler: Dispatches verified processor events
- Reconciler: Re-queries the processor and audits the ledger
"""

from scalingad.commerce.escrow.reconcile import Drift, Reconciler, ReconcileReport
from scalingad.commerce.escrow.service import (
    ApprovalResult,
    EscrowService,
    FundingResult,
    OnboardingLink,
)
from scalingad.commerce.escrow.webhooks import WebhookHandler

__all__ = [
    # Service
    "EscrowService",
    "FundingResult",
    "ApprovalResult",
    "OnboardingLink",
    # Convergence
    "WebhookHandler",
    "Reconciler",
    "ReconcileReport",
    "Drift",
]
