"""Escrow inspection and reconciliation commands for ScalingAd CLI."""

import json
from typing import TYPE_CHECKING

from scalingad.commerce.jobs.models import JobStatus
from scalingad.commerce.queries import JobQueryService

if TYPE_CHECKING:
    from scalingad.commerce.escrow.reconcile import Reconciler


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _amounts(totals) -> str:
    if not totals:
        return "none"
    return ", ".join(f"{v} {cur}" for cur, v in sorted(totals.items()))


def cmd_jobs(args, queries: JobQueryService):
    """List jobs with dashboard counters."""
    status = JobStatus(args.status) if args.status else None
    view = queries.list_jobs(
        business_id=args.business,
        agency_id=args.agency,
        status_filter=status,
        limit=args.limit,
    )
    if args.json:
        _print_json(view.to_dict())
        return

    if not view.jobs:
        print("No jobs found.")
        return
    for job in view.jobs:
        print(f"{job.id}  {job.status:<12} {job.amount:>12} {job.currency}  {job.title}")
    print(f"\n{view.total} jobs, {view.active} active, total value {_amounts(view.total_value)}")
    print(
        f"Captured {_amounts(view.total_captured)}, "
        f"paid out {_amounts(view.total_paid_out)}, "
        f"refunded {_amounts(view.total_refunded)}"
    )


def cmd_show(args, queries: JobQueryService):
    """Show one job with payments, payout and ledger."""
    detail = queries.job_detail(args.job_id)
    if args.json:
        _print_json(detail.to_dict())
        return

    job = detail.job
    print(f"Job {job.id}: {job.title}")
    print(f"  Status:        {job.status}")
    print(f"  Business:      {job.business_id}")
    print(f"  Agency:        {job.agency_id}")
    print(f"  Amount:        {job.amount} {job.currency}")
    print(f"  Platform fee:  {job.platform_fee} {job.currency}")
    print(f"  Agency payout: {detail.agency_payout} {job.currency}")
    if detail.agency and detail.agency.stripe_account_id:
        print(f"  Account:       {detail.agency.stripe_account_id}")

    if detail.payments:
        print("\nPayments:")
        for p in detail.payments:
            print(f"  {p.payment_intent_id}  {p.status:<10} {p.amount} {p.currency}")
    for payout in detail.payouts:
        print(f"\nPayout: {payout.transfer_id}  {payout.status}  {payout.amount} {payout.currency}")
    print(f"\nLedger: {len(detail.ledger)} entries (scalingad ledger {job.id})")


def cmd_ledger(args, queries: JobQueryService):
    """Print the ledger of a job, oldest first."""
    entries = queries.ledger_for(args.job_id)
    if args.json:
        _print_json([e.to_dict() for e in entries])
        return

    for entry in entries:
        actor = entry.actor_id or "system"
        stamp = entry.created_at.isoformat()
        print(f"{entry.sequence:>6}  {stamp}  {entry.event_type:<24} {actor}")
        if entry.details:
            print(f"        {json.dumps(entry.details, sort_keys=True)}")


def cmd_reconcile(args, reconciler: "Reconciler"):
    """Converge pending payments and unpaid approvals with the processor."""
    if args.job_id:
        report = reconciler.reconcile_job(args.job_id)
    else:
        report = reconciler.reconcile_pending(limit=args.limit)

    if args.json:
        _print_json(report.to_dict())
        return

    print(f"Jobs checked:       {report.jobs_checked}")
    print(f"Payments confirmed: {len(report.payments_confirmed)}")
    print(f"Payments failed:    {len(report.payments_failed)}")
    print(f"Still pending:      {len(report.still_pending)}")
    print(f"Payouts released:   {len(report.payouts_released)}")
    for ref, code in report.errors.items():
        print(f"  ! {ref}: {code}")


def cmd_audit(args, reconciler: "Reconciler"):
    """Compare stored rows against the ledger for one job."""
    drifts = reconciler.audit_job(args.job_id)
    if args.json:
        _print_json([d.to_dict() for d in drifts])
        return

    if not drifts:
        print(f"Job {args.job_id}: no drift")
        return
    for drift in drifts:
        print(f"  ✗ {drift.check}: {drift.message}")
