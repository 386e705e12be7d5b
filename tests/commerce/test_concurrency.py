"""Concurrent callers racing on the same job.

Each scenario runs against both storage backends with a thread pool; the
assertions are about processor side effects and ledger entries, which must
happen exactly once regardless of interleaving.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from scalingad.commerce.config import CHARGE_MODEL_SEPARATE, CommerceConfig
from scalingad.commerce.errors import EscrowError, ProcessorTransient
from scalingad.commerce.escrow import EscrowService, WebhookHandler
from scalingad.commerce.jobs import JobStatus
from scalingad.testing import FakeProcessor

WORKERS = 8


@pytest.fixture(params=["memory", "sqlite"])
def racing_storage(request):
    name = "storage" if request.param == "memory" else "sqlite_storage"
    return request.getfixturevalue(name)


def _race(fn, n=WORKERS):
    """Run ``fn`` n times in parallel; return results and EscrowErrors."""
    outcomes = []

    def _wrapped():
        try:
            return fn()
        except EscrowError as e:
            return e

    with ThreadPoolExecutor(max_workers=n) as pool:
        futures = [pool.submit(_wrapped) for _ in range(n)]
        for future in futures:
            outcomes.append(future.result())
    return outcomes


def _service(storage, processor, **config):
    config.setdefault("retry_backoff_seconds", 0)
    return EscrowService(
        storage, processor, config=CommerceConfig(**config), sleep=lambda s: None
    )


class TestConcurrentFunding:
    def test_single_intent_created(self, racing_storage, make_job):
        processor = FakeProcessor(auto_capture=False)
        service = _service(racing_storage, processor)
        job = make_job(JobStatus.UNFUNDED, svc=service)

        outcomes = _race(lambda: service.fund_job(job.id, "business-1"))

        assert processor.call_count("create_funding_intent") == 1
        intents = {o.payment.payment_intent_id for o in outcomes}
        assert len(intents) == 1
        assert len(racing_storage.list_payments(job.id)) == 1

    def test_concurrent_confirmation_funds_once(self, racing_storage, make_job):
        processor = FakeProcessor(auto_capture=False)
        service = _service(racing_storage, processor)
        job = make_job(JobStatus.UNFUNDED, svc=service)
        intent_id = service.fund_job(job.id, "business-1").payment.payment_intent_id
        processor.settle_intent(intent_id)

        _race(lambda: service.confirm_payment(job.id, intent_id))

        assert service.get_job(job.id).status == "funded"
        funded = [
            e
            for e in service.ledger.entries_for_job(job.id)
            if e.event_type == "payment_succeeded"
        ]
        assert len(funded) == 1


class TestConcurrentRelease:
    def test_one_transfer_for_racing_approvals(self, racing_storage, make_job):
        processor = FakeProcessor()
        service = _service(racing_storage, processor, charge_model=CHARGE_MODEL_SEPARATE)
        job = make_job(JobStatus.REVIEW, svc=service)

        outcomes = _race(lambda: service.approve_work(job.id, "business-1"))

        assert processor.call_count("create_transfer") == 1
        assert service.get_job(job.id).status == "paid_out"
        assert sum(1 for o in outcomes if not isinstance(o, EscrowError)) == 1
        payouts = [
            e
            for e in service.ledger.entries_for_job(job.id)
            if e.event_type == "payout_completed"
        ]
        assert len(payouts) == 1

    def test_racing_payout_retries(self, racing_storage, make_job):
        processor = FakeProcessor()
        service = _service(racing_storage, processor, charge_model=CHARGE_MODEL_SEPARATE)
        job = make_job(JobStatus.REVIEW, svc=service)
        processor.fail_next("create_transfer", ProcessorTransient(), times=2)
        assert service.approve_work(job.id, "business-1").error is not None

        _race(lambda: service.release_payout(job.id))

        # two failed attempts during approval, then exactly one more
        assert processor.call_count("create_transfer") == 3
        assert racing_storage.get_payout_for_job(job.id) is not None
        assert service.get_job(job.id).status == "paid_out"


class TestConcurrentWebhooks:
    def test_duplicate_deliveries_handled_once(self, racing_storage, make_job):
        processor = FakeProcessor(auto_capture=False)
        service = _service(racing_storage, processor)
        handler = WebhookHandler(service)
        job = make_job(JobStatus.UNFUNDED, svc=service)
        intent_id = service.fund_job(job.id, "business-1").payment.payment_intent_id
        processor.settle_intent(intent_id)
        payload, signature = processor.build_event(
            "payment_intent.succeeded", {"id": intent_id}, event_id="evt_race"
        )

        outcomes = _race(lambda: handler.handle_payload(payload, signature))

        assert outcomes.count(True) == 1
        assert service.get_job(job.id).status == "funded"
        events = [
            e
            for e in service.ledger.entries_for_job(job.id)
            if e.event_type == "processor_event"
        ]
        assert len(events) == 1


class TestFundCancelRace:
    @pytest.mark.parametrize("round_", range(5))
    def test_fund_and_cancel_never_both_succeed(self, racing_storage, make_job, round_):
        processor = FakeProcessor()
        service = _service(racing_storage, processor)
        job = make_job(JobStatus.UNFUNDED, svc=service)
        start = threading.Barrier(2)

        def fund():
            start.wait()
            service.fund_job(job.id, "business-1")
            return service.confirm_payment(job.id, actor_id="business-1")

        def cancel():
            start.wait()
            return service.cancel_job(job.id, "agency-1")

        def _outcome(fn):
            try:
                return fn()
            except EscrowError as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            funding_future = pool.submit(_outcome, fund)
            cancel_future = pool.submit(_outcome, cancel)
        funding = funding_future.result()
        cancelling = cancel_future.result()

        funded = not isinstance(funding, EscrowError) and funding.funded
        cancelled = not isinstance(cancelling, EscrowError)
        assert funded != cancelled

        final = service.get_job(job.id)
        payments = racing_storage.list_payments(job.id)
        if funded:
            assert final.status == "funded"
            assert [p.status for p in payments] == ["succeeded"]
        else:
            assert final.status == "cancelled"
            assert all(p.status == "failed" for p in payments)
            assert "payment_succeeded" not in [
                e.event_type for e in service.ledger.entries_for_job(job.id)
            ]
