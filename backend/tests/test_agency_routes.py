"""Tests for agency onboarding routes."""

from api_helpers import AGENCY_ID, API, headers

ONBOARDING = {"return_url": "https://app.test/done", "refresh_url": "https://app.test/retry"}


class TestMyAccount:
    def test_unknown_agency_has_no_account(self, client):
        response = client.get(f"{API}/agencies/me", headers=headers(AGENCY_ID))
        assert response.status_code == 200
        body = response.json()
        assert body["agency_id"] == AGENCY_ID
        assert body["stripe_account_id"] is None
        assert body["onboarding_complete"] is False

    def test_requires_identity(self, client):
        assert client.get(f"{API}/agencies/me").status_code == 401


class TestOnboardingLink:
    def test_creates_account_once(self, client, processor):
        first = client.post(
            f"{API}/agencies/me/onboarding-link", json=ONBOARDING, headers=headers(AGENCY_ID)
        ).json()
        second = client.post(
            f"{API}/agencies/me/onboarding-link", json=ONBOARDING, headers=headers(AGENCY_ID)
        ).json()

        assert first["account_id"] == second["account_id"]
        assert first["url"].startswith("https://connect.example.test/onboarding/")
        assert first["url"] != second["url"]
        assert processor.call_count("create_account") == 1

    def test_missing_urls_rejected(self, client):
        response = client.post(
            f"{API}/agencies/me/onboarding-link",
            json={"return_url": "", "refresh_url": "https://app.test/retry"},
            headers=headers(AGENCY_ID),
        )
        assert response.status_code == 422


class TestRefresh:
    def test_refresh_pulls_processor_state(self, client, processor, connected_agency):
        processor.accounts[connected_agency].payouts_enabled = False
        response = client.post(f"{API}/agencies/me/refresh", headers=headers(AGENCY_ID))
        assert response.status_code == 200
        body = response.json()
        assert body["stripe_account_id"] == connected_agency
        assert body["onboarding_complete"] is True
        assert body["payouts_enabled"] is False

    def test_refresh_without_account(self, client):
        response = client.post(f"{API}/agencies/me/refresh", headers=headers(AGENCY_ID))
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "account_not_ready"
