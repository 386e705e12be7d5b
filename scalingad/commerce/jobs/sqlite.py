"""SQLite storage backend for the escrow core.

Local-first durable storage with:
- one transaction per escrow step (row writes + status advance commit together)
- optimistic ``version`` check on every job update
- per-job in-process locks for mutual exclusion
- an append-only ledger table guarded by triggers
"""

import contextlib
import json
import logging
import sqlite3
import threading
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

from scalingad.commerce.jobs.models import (
    AgencyAccount,
    Job,
    JobPayment,
    JobPayout,
    JobStatus,
    JobTotals,
    PaymentStatus,
)
from scalingad.commerce.jobs.schema import init_db
from scalingad.commerce.jobs.storage import (
    DuplicateRecordError,
    JobLockRegistry,
    StorageError,
    VersionConflictError,
)
from scalingad.commerce.ledger.models import LedgerEntry, dump_details
from scalingad.commerce.money import to_decimal
from scalingad.utils import get_scalingad_home, parse_datetime, utc_now

logger = logging.getLogger(__name__)


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _job_filter(
    status: Optional[JobStatus], business_id: Optional[str], agency_id: Optional[str]
) -> Tuple[str, list]:
    """WHERE clause over the ``jobs`` table aliased as ``j``."""
    clauses = ["1=1"]
    params: list = []
    if status is not None:
        clauses.append("j.status = ?")
        params.append(status.value if isinstance(status, JobStatus) else status)
    if business_id is not None:
        clauses.append("j.business_id = ?")
        params.append(business_id)
    if agency_id is not None:
        clauses.append("j.agency_id = ?")
        params.append(agency_id)
    return " AND ".join(clauses), params


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        business_id=row["business_id"],
        agency_id=row["agency_id"],
        deal_id=row["deal_id"],
        title=row["title"],
        description=row["description"] or "",
        amount=to_decimal(row["amount"]),
        currency=row["currency"],
        platform_fee=to_decimal(row["platform_fee"]),
        status=row["status"],
        version=row["version"],
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def _row_to_payment(row: sqlite3.Row) -> JobPayment:
    return JobPayment(
        id=row["id"],
        job_id=row["job_id"],
        payment_intent_id=row["payment_intent_id"],
        charge_id=row["charge_id"],
        refund_id=row["refund_id"],
        amount=to_decimal(row["amount"]),
        currency=row["currency"],
        status=row["status"],
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def _row_to_payout(row: sqlite3.Row) -> JobPayout:
    return JobPayout(
        id=row["id"],
        job_id=row["job_id"],
        transfer_id=row["transfer_id"],
        amount=to_decimal(row["amount"]),
        currency=row["currency"],
        status=row["status"],
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def _row_to_agency(row: sqlite3.Row) -> AgencyAccount:
    return AgencyAccount(
        agency_id=row["agency_id"],
        name=row["name"] or "",
        stripe_account_id=row["stripe_account_id"],
        onboarding_complete=bool(row["onboarding_complete"]),
        payouts_enabled=bool(row["payouts_enabled"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        job_id=row["job_id"],
        actor_id=row["actor_id"],
        event_type=row["event_type"],
        details=json.loads(row["details"] or "{}"),
        sequence=row["sequence"],
        created_at=parse_datetime(row["created_at"]),
    )


class SQLiteJobStorage:
    """Escrow storage backed by a single SQLite database file."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or get_scalingad_home() / "escrow.db").expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._locks = JobLockRegistry()
        self._local = threading.local()

        with self._connect() as conn:
            init_db(conn)

    def _get_conn(self) -> sqlite3.Connection:
        """Open a connection. Prefer :meth:`_connect`, which also closes it."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        Inside :meth:`transaction` the active connection is reused and the
        outer scope owns commit/rollback.
        """
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return

        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """No persistent connections are held; kept for API symmetry."""
        pass

    # === Concurrency ===

    def lock_job(self, job_id: str):
        return self._locks.hold(job_id)

    @contextlib.contextmanager
    def transaction(self):
        """Run the enclosed writes in one IMMEDIATE transaction."""
        if getattr(self._local, "conn", None) is not None:
            yield self
            return

        conn = self._get_conn()
        conn.execute("BEGIN IMMEDIATE")
        self._local.conn = conn
        try:
            yield self
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            conn.close()

    # === Jobs ===

    def save_job(self, job: Job) -> str:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO jobs (id, business_id, agency_id, deal_id, title, description,
                                      amount, currency, platform_fee, status, version,
                                      created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.business_id,
                        job.agency_id,
                        job.deal_id,
                        job.title,
                        job.description,
                        str(job.amount),
                        job.currency,
                        str(job.platform_fee),
                        job.status,
                        job.version,
                        _iso(job.created_at),
                        _iso(job.updated_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(f"Job {job.id} already exists") from e
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        where, params = _job_filter(status, business_id, agency_id)
        query = f"SELECT * FROM jobs j WHERE {where} ORDER BY j.created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_job(r) for r in rows]

    def summarize_jobs(
        self,
        status: Optional[JobStatus] = None,
        business_id: Optional[str] = None,
        agency_id: Optional[str] = None,
    ) -> JobTotals:
        # Amounts are TEXT; summing happens in Decimal, not in SQL
        where, params = _job_filter(status, business_id, agency_id)
        totals = JobTotals()
        with self._connect() as conn:
            for row in conn.execute(
                f"SELECT j.status, j.currency, j.amount FROM jobs j WHERE {where}", params
            ):
                totals.add_job(row["status"], row["currency"], to_decimal(row["amount"]))
            for row in conn.execute(
                "SELECT p.status, p.currency, p.amount FROM job_payments p "
                f"JOIN jobs j ON j.id = p.job_id WHERE {where}",
                params,
            ):
                totals.add_payment(row["status"], row["currency"], to_decimal(row["amount"]))
            for row in conn.execute(
                "SELECT o.status, o.currency, o.amount FROM job_payouts o "
                f"JOIN jobs j ON j.id = o.job_id WHERE {where}",
                params,
            ):
                totals.add_payout(row["status"], row["currency"], to_decimal(row["amount"]))
        return totals

    def update_job(self, job: Job, expected_version: int) -> Job:
        now = utc_now()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?, title = ?, description = ?, version = version + 1,
                    updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (job.status, job.title, job.description, _iso(now), job.id, expected_version),
            )
            if cursor.rowcount == 0:
                exists = conn.execute("SELECT 1 FROM jobs WHERE id = ?", (job.id,)).fetchone()
                if not exists:
                    raise StorageError(f"Job {job.id} does not exist")
                raise VersionConflictError(job.id, expected_version)
        return replace(job, version=expected_version + 1, updated_at=now)

    # === Payments ===

    def save_payment(self, payment: JobPayment) -> str:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO job_payments (id, job_id, payment_intent_id, charge_id, refund_id,
                                              amount, currency, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        payment.id,
                        payment.job_id,
                        payment.payment_intent_id,
                        payment.charge_id,
                        payment.refund_id,
                        str(payment.amount),
                        payment.currency,
                        payment.status,
                        _iso(payment.created_at),
                        _iso(payment.updated_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(
                f"Payment {payment.payment_intent_id} violates a uniqueness rule"
            ) from e
        return payment.id

    def update_payment(self, payment: JobPayment) -> bool:
        payment.updated_at = utc_now()
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE job_payments
                    SET status = ?, charge_id = ?, refund_id = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        payment.status,
                        payment.charge_id,
                        payment.refund_id,
                        _iso(payment.updated_at),
                        payment.id,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(
                f"Job {payment.job_id} already has a succeeded payment"
            ) from e
        return cursor.rowcount > 0

    def get_payment_by_intent(self, payment_intent_id: str) -> Optional[JobPayment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM job_payments WHERE payment_intent_id = ?", (payment_intent_id,)
            ).fetchone()
        return _row_to_payment(row) if row else None

    def list_payments(self, job_id: str) -> List[JobPayment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM job_payments WHERE job_id = ? ORDER BY created_at ASC",
                (job_id,),
            ).fetchall()
        return [_row_to_payment(r) for r in rows]

    def list_pending_payments(self, limit: int = 100) -> List[JobPayment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM job_payments WHERE status = ? ORDER BY created_at ASC LIMIT ?",
                (PaymentStatus.PENDING.value, limit),
            ).fetchall()
        return [_row_to_payment(r) for r in rows]

    # === Payouts ===

    def save_payout(self, payout: JobPayout) -> str:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO job_payouts (id, job_id, transfer_id, amount, currency, status,
                                             created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        payout.id,
                        payout.job_id,
                        payout.transfer_id,
                        str(payout.amount),
                        payout.currency,
                        payout.status,
                        _iso(payout.created_at),
                        _iso(payout.updated_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(f"Job {payout.job_id} already has a payout") from e
        return payout.id

    def update_payout(self, payout: JobPayout) -> bool:
        payout.updated_at = utc_now()
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE job_payouts SET status = ?, transfer_id = ?, updated_at = ? WHERE id = ?",
                (payout.status, payout.transfer_id, _iso(payout.updated_at), payout.id),
            )
        return cursor.rowcount > 0

    def get_payout_for_job(self, job_id: str) -> Optional[JobPayout]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM job_payouts WHERE job_id = ?", (job_id,)).fetchone()
        return _row_to_payout(row) if row else None

    def get_payout_by_transfer(self, transfer_id: str) -> Optional[JobPayout]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM job_payouts WHERE transfer_id = ?", (transfer_id,)
            ).fetchone()
        return _row_to_payout(row) if row else None

    # === Agencies ===

    def save_agency(self, agency: AgencyAccount) -> str:
        agency.updated_at = utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO agency_accounts (agency_id, name, stripe_account_id,
                                             onboarding_complete, payouts_enabled, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(agency_id) DO UPDATE SET
                    name = excluded.name,
                    stripe_account_id = excluded.stripe_account_id,
                    onboarding_complete = excluded.onboarding_complete,
                    payouts_enabled = excluded.payouts_enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    agency.agency_id,
                    agency.name,
                    agency.stripe_account_id,
                    int(agency.onboarding_complete),
                    int(agency.payouts_enabled),
                    _iso(agency.updated_at),
                ),
            )
        return agency.agency_id

    def get_agency(self, agency_id: str) -> Optional[AgencyAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agency_accounts WHERE agency_id = ?", (agency_id,)
            ).fetchone()
        return _row_to_agency(row) if row else None

    def get_agency_by_account(self, stripe_account_id: str) -> Optional[AgencyAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agency_accounts WHERE stripe_account_id = ?", (stripe_account_id,)
            ).fetchone()
        return _row_to_agency(row) if row else None

    # === Ledger ===

    def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO ledger_entries (id, job_id, actor_id, event_type, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.job_id,
                    entry.actor_id,
                    entry.event_type,
                    dump_details(entry.details),
                    _iso(entry.created_at),
                ),
            )
            sequence = cursor.lastrowid
        return replace(entry, sequence=sequence)

    def list_ledger_entries(self, job_id: Optional[str] = None) -> List[LedgerEntry]:
        with self._connect() as conn:
            if job_id is None:
                rows = conn.execute(
                    "SELECT * FROM ledger_entries ORDER BY created_at ASC, sequence ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM ledger_entries WHERE job_id = ?
                    ORDER BY created_at ASC, sequence ASC
                    """,
                    (job_id,),
                ).fetchall()
        return [_row_to_entry(r) for r in rows]

    # === Processor events ===

    def has_processor_event(self, event_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM processor_events WHERE event_id = ?", (event_id,)
            ).fetchone()
        return row is not None

    def record_processor_event(self, event_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO processor_events (event_id, received_at) VALUES (?, ?)",
                (event_id, _iso(utc_now())),
            )
        return cursor.rowcount > 0
