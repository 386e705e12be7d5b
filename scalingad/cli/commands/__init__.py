"""CLI command handlers."""

from scalingad.cli.commands.escrow import (
    cmd_audit,
    cmd_jobs,
    cmd_ledger,
    cmd_reconcile,
    cmd_show,
)

__all__ = ["cmd_audit", "cmd_jobs", "cmd_ledger", "cmd_reconcile", "cmd_show"]
