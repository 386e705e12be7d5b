"""SQLite schema for the escrow store.

Amounts are stored as TEXT so Decimals round-trip exactly. The ledger
table is guarded by triggers that abort any UPDATE or DELETE.
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    business_id TEXT NOT NULL,
    agency_id TEXT NOT NULL,
    deal_id TEXT,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    platform_fee TEXT NOT NULL,
    status TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_business ON jobs(business_id);
CREATE INDEX IF NOT EXISTS idx_jobs_agency ON jobs(agency_id);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);

CREATE TABLE IF NOT EXISTS job_payments (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id),
    payment_intent_id TEXT NOT NULL UNIQUE,
    charge_id TEXT,
    refund_id TEXT,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_payments_job ON job_payments(job_id);
CREATE INDEX IF NOT EXISTS idx_payments_status ON job_payments(status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_one_succeeded
    ON job_payments(job_id) WHERE status = 'succeeded';

CREATE TABLE IF NOT EXISTS job_payouts (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL UNIQUE REFERENCES jobs(id),
    transfer_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_payouts_transfer ON job_payouts(transfer_id);

CREATE TABLE IF NOT EXISTS agency_accounts (
    agency_id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    stripe_account_id TEXT,
    onboarding_complete INTEGER NOT NULL DEFAULT 0,
    payouts_enabled INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_agency_stripe ON agency_accounts(stripe_account_id);

CREATE TABLE IF NOT EXISTS ledger_entries (
    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    job_id TEXT,
    actor_id TEXT,
    event_type TEXT NOT NULL,
    details TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ledger_job ON ledger_entries(job_id, created_at, sequence);

CREATE TRIGGER IF NOT EXISTS ledger_entries_no_update
BEFORE UPDATE ON ledger_entries
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are append-only');
END;

CREATE TRIGGER IF NOT EXISTS ledger_entries_no_delete
BEFORE DELETE ON ledger_entries
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are append-only');
END;

CREATE TABLE IF NOT EXISTS processor_events (
    event_id TEXT PRIMARY KEY,
    received_at TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables, indexes and ledger guards if missing."""
    conn.executescript(SCHEMA)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row else None
    if current is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.info(f"Initialized escrow schema v{SCHEMA_VERSION}")
    elif current > SCHEMA_VERSION:
        logger.warning(
            f"Database schema v{current} is newer than this code (v{SCHEMA_VERSION})"
        )
