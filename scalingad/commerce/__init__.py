"""ScalingAd Commerce - job payments held in escrow between brands and agencies.

Subsystems:
- jobs: Job model, state machine and storage
- ledger: Append-only audit ledger
- processor: Payment processor adapters (Stripe Connect)
- escrow: Orchestration of funding, approval, payout and refund
- queries: Read-only projections for the presentation layer
"""
