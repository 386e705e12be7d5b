"""
Pytest fixtures and test configuration for ScalingAd tests.
"""

from decimal import Decimal

import pytest

from scalingad.commerce.config import CHARGE_MODEL_SEPARATE, CommerceConfig
from scalingad.commerce.escrow import EscrowService
from scalingad.commerce.jobs import InMemoryJobStorage, JobStatus, SQLiteJobStorage
from scalingad.testing import FakeProcessor

BUSINESS_ID = "business-1"
AGENCY_ID = "agency-1"
ADMIN_ID = "admin-1"
OUTSIDER_ID = "outsider-1"


def _fund_and_confirm(service, job_id):
    service.fund_job(job_id, BUSINESS_ID)
    service.confirm_payment(job_id, actor_id=BUSINESS_ID)


# Happy-path steps in order; each moves the job to the status next to it
LIFECYCLE = [
    (JobStatus.PENDING, lambda s, job_id: s.invite_agency(job_id, BUSINESS_ID)),
    (JobStatus.UNFUNDED, lambda s, job_id: s.accept_job(job_id, AGENCY_ID)),
    (JobStatus.FUNDED, _fund_and_confirm),
    (JobStatus.IN_PROGRESS, lambda s, job_id: s.start_work(job_id, AGENCY_ID)),
    (JobStatus.REVIEW, lambda s, job_id: s.submit_work(job_id, AGENCY_ID)),
    (JobStatus.PAID_OUT, lambda s, job_id: s.approve_work(job_id, BUSINESS_ID)),
]


def drive_job(service, job_id, target: JobStatus):
    """Walk a job along the happy path until it reaches ``target``."""
    for _, step in LIFECYCLE:
        if service.get_job(job_id).status == target.value:
            break
        step(service, job_id)
    job = service.get_job(job_id)
    assert job.status == target.value, f"could not drive job to {target.value}"
    return job


@pytest.fixture
def config():
    """Commerce configuration with no backoff and one admin."""
    return CommerceConfig(
        retry_backoff_seconds=0,
        admin_actor_ids=frozenset({ADMIN_ID}),
    )


@pytest.fixture
def separate_config():
    """Configuration using separate charges and transfers."""
    return CommerceConfig(
        retry_backoff_seconds=0,
        admin_actor_ids=frozenset({ADMIN_ID}),
        charge_model=CHARGE_MODEL_SEPARATE,
    )


@pytest.fixture
def storage():
    """Fresh in-memory job storage."""
    return InMemoryJobStorage()


@pytest.fixture
def sqlite_storage(tmp_path):
    """SQLite job storage in a temporary directory."""
    storage = SQLiteJobStorage(tmp_path / "escrow.db")
    yield storage
    storage.close()


@pytest.fixture
def processor():
    """Fake processor that captures on the first confirmation."""
    return FakeProcessor()


@pytest.fixture
def sleeps():
    """Records backoff delays requested by the service."""
    return []


@pytest.fixture
def service(storage, processor, config, sleeps):
    """Escrow service over in-memory storage and the fake processor."""
    return EscrowService(storage, processor, config=config, sleep=sleeps.append)


@pytest.fixture
def connected_agency(service):
    """Agency with a connected account. Returns the account id."""
    service.register_agency(AGENCY_ID, "Acme Creative")
    return service.ensure_connected_account(AGENCY_ID)


@pytest.fixture
def make_job(service):
    """Factory creating a job and driving it to a status.

    The agency's connected account is created unless ``connect=False``.
    """

    def _make(
        status: JobStatus = JobStatus.DRAFT,
        amount="1000.00",
        platform_fee="100.00",
        currency="USD",
        connect: bool = True,
        svc=None,
    ):
        svc = svc or service
        if connect:
            svc.ensure_connected_account(AGENCY_ID)
        job = svc.create_job(
            BUSINESS_ID,
            AGENCY_ID,
            "Spring campaign",
            Decimal(amount),
            currency,
            platform_fee=Decimal(platform_fee) if platform_fee is not None else None,
        )
        return drive_job(svc, job.id, status)

    return _make


@pytest.fixture
def drive():
    """The ``drive_job(service, job_id, target)`` helper."""
    return drive_job
