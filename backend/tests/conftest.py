"""Pytest configuration and fixtures."""

import os

import pytest

# Keep a developer's .env out of unit tests
os.environ.setdefault("STRIPE_SECRET_KEY", "")
os.environ.setdefault("SCALINGAD_LOG_LEVEL", "WARNING")

from api_helpers import ADMIN_ID, AGENCY_ID, API, BUSINESS_ID, headers  # noqa: E402
from app.config import Settings, get_settings  # noqa: E402
from app.database import get_processor, get_storage  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from scalingad.commerce.jobs import InMemoryJobStorage  # noqa: E402
from scalingad.testing import FakeProcessor  # noqa: E402


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        admin_actor_ids=[ADMIN_ID],
        retry_backoff_seconds=0,
    )


@pytest.fixture
def storage():
    return InMemoryJobStorage()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def client(settings, storage, processor):
    """Test client wired to in-memory storage and the fake processor."""
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_processor] = lambda: processor
    limiter.enabled = False
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        limiter.enabled = True


def headers(actor_id: str) -> dict:
    """Identity headers for an actor."""
    return {"X-Actor-Id": actor_id}


@pytest.fixture
def as_actor():
    return headers


@pytest.fixture
def connected_agency(client):
    """Give the agency a connected account through the API."""
    response = client.post(
        f"{API}/agencies/me/onboarding-link",
        json={"return_url": "https://app.test/done", "refresh_url": "https://app.test/retry"},
        headers=headers(AGENCY_ID),
    )
    assert response.status_code == 200
    return response.json()["account_id"]


@pytest.fixture
def create_job(client):
    """Factory posting a new job as the business."""

    def _create(amount="1000.00", **extra):
        body = {"agency_id": AGENCY_ID, "title": "Spring campaign", "amount": amount, **extra}
        response = client.post(f"{API}/jobs", json=body, headers=headers(BUSINESS_ID))
        assert response.status_code == 201, response.text
        return response.json()

    return _create


@pytest.fixture
def funded_job(client, create_job, connected_agency):
    """A job driven through invite, accept and funding."""
    job = create_job()
    job_id = job["id"]
    for path, actor in (("invite", BUSINESS_ID), ("accept", AGENCY_ID)):
        response = client.post(f"{API}/jobs/{job_id}/{path}", headers=headers(actor))
        assert response.status_code == 200, response.text
    response = client.post(f"{API}/jobs/{job_id}/fund", headers=headers(BUSINESS_ID))
    assert response.status_code == 200, response.text
    response = client.post(f"{API}/jobs/{job_id}/confirm", headers=headers(BUSINESS_ID))
    assert response.json()["funded"] is True
    return job_id
