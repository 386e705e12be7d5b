"""Tests for reconciliation and ledger audits."""

from dataclasses import replace
from decimal import Decimal

import pytest

from scalingad.commerce.errors import ProcessorTransient
from scalingad.commerce.escrow import EscrowService, Reconciler
from scalingad.commerce.jobs import JobPayout, JobStatus
from scalingad.commerce.ledger import LedgerEventType
from scalingad.testing import FakeProcessor


@pytest.fixture
def manual_processor():
    return FakeProcessor(auto_capture=False)


@pytest.fixture
def manual_service(storage, manual_processor, config):
    return EscrowService(storage, manual_processor, config=config, sleep=lambda s: None)


class TestReconcilePending:
    def test_confirms_captured_and_failed_payments(
        self, make_job, manual_service, manual_processor
    ):
        captured = make_job(JobStatus.UNFUNDED, svc=manual_service)
        declined = make_job(JobStatus.UNFUNDED, svc=manual_service)
        waiting = make_job(JobStatus.UNFUNDED, svc=manual_service)
        intents = {}
        for job in (captured, declined, waiting):
            intents[job.id] = manual_service.fund_job(job.id, "business-1").payment
        manual_processor.settle_intent(intents[captured.id].payment_intent_id)
        manual_processor.settle_intent(intents[declined.id].payment_intent_id, succeeded=False)

        report = Reconciler(manual_service).reconcile_pending()

        assert report.jobs_checked == 3
        assert report.payments_confirmed == [intents[captured.id].payment_intent_id]
        assert report.payments_failed == [intents[declined.id].payment_intent_id]
        assert report.still_pending == [intents[waiting.id].payment_intent_id]
        assert report.errors == {}
        assert manual_service.get_job(captured.id).status == "funded"
        assert manual_service.get_job(declined.id).status == "unfunded"

    def test_errors_collected_not_raised(self, make_job, manual_service, manual_processor):
        job = make_job(JobStatus.UNFUNDED, svc=manual_service)
        manual_service.fund_job(job.id, "business-1")
        manual_processor.fail_next("confirm_payment", ProcessorTransient(), times=2)

        report = Reconciler(manual_service).reconcile_job(job.id)
        assert list(report.errors.values()) == ["processor_transient"]
        assert manual_service.get_job(job.id).status == "unfunded"

    def test_retries_unpaid_approval(self, storage, processor, separate_config, make_job):
        separate = EscrowService(storage, processor, config=separate_config, sleep=lambda s: None)
        job = make_job(JobStatus.REVIEW, svc=separate)
        processor.fail_next("create_transfer", ProcessorTransient(), times=2)
        assert separate.approve_work(job.id, "business-1").error is not None

        report = Reconciler(separate).reconcile_pending()
        assert len(report.payouts_released) == 1
        assert separate.get_job(job.id).status == "paid_out"

    def test_report_to_dict(self, service):
        data = Reconciler(service).reconcile_pending().to_dict()
        assert data == {
            "jobs_checked": 0,
            "payments_confirmed": [],
            "payments_failed": [],
            "still_pending": [],
            "payouts_released": [],
            "errors": {},
        }


class TestAudit:
    def test_clean_job_has_no_drift(self, make_job, service):
        job = make_job(JobStatus.PAID_OUT)
        assert Reconciler(service).audit_job(job.id) == []

    def test_refunded_job_has_no_drift(self, make_job, service):
        job = make_job(JobStatus.FUNDED)
        service.refund_job(job.id, "business-1")
        assert Reconciler(service).audit_job(job.id) == []

    def test_payout_without_ledger_entry(self, make_job, service, storage):
        job = make_job(JobStatus.REVIEW)
        # A payout row written behind the service's back
        storage.save_payout(
            JobPayout(
                id="rogue",
                job_id=job.id,
                transfer_id="tr_rogue",
                amount=Decimal("900.00"),
                currency="USD",
            )
        )
        drifts = Reconciler(service).audit_job(job.id)
        assert [d.check for d in drifts] == ["payout_without_ledger"]

        entry = service.ledger.entries_for_job(job.id)[-1]
        assert entry.event_type == LedgerEventType.RECONCILIATION_DRIFT.value
        assert entry.details["payout_id"] == "rogue"

    def test_failed_payout_reported(self, make_job, service, storage):
        job = make_job(JobStatus.PAID_OUT)
        payout = storage.get_payout_for_job(job.id)
        service.record_payout_status(payout.transfer_id, succeeded=False)

        drifts = Reconciler(service).audit_job(job.id)
        assert [d.check for d in drifts] == ["payout_failed"]
        assert drifts[0].details["transfer_id"] == payout.transfer_id

    def test_drift_recorded_once(self, make_job, service, storage):
        job = make_job(JobStatus.UNFUNDED)
        stored = storage.get_job(job.id)
        storage.update_job(replace(stored, status="funded"), expected_version=stored.version)

        reconciler = Reconciler(service)
        first = reconciler.audit_job(job.id)
        second = reconciler.audit_job(job.id)
        assert [d.check for d in first] == ["status_without_payment"]
        assert [d.check for d in second] == ["status_without_payment"]
        drift_entries = [
            e
            for e in service.ledger.entries_for_job(job.id)
            if e.event_type == "reconciliation_drift"
        ]
        assert len(drift_entries) == 1
