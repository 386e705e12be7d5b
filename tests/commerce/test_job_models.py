"""Tests for job, payment, payout and agency models."""

from decimal import Decimal

import pytest

from scalingad.commerce.jobs.models import (
    AgencyAccount,
    Job,
    JobPayment,
    JobPayout,
    JobStatus,
    PaymentStatus,
)


def _job(**overrides):
    fields = dict(
        id="job-1",
        business_id="business-1",
        agency_id="agency-1",
        title="Spring campaign",
        amount=Decimal("1000.00"),
        currency="usd",
        platform_fee=Decimal("100.00"),
    )
    fields.update(overrides)
    return Job(**fields)


class TestJobValidation:
    """Job construction rules."""

    def test_defaults(self):
        job = _job()
        assert job.status == "draft"
        assert job.currency == "USD"
        assert job.version == 1
        assert job.created_at is not None
        assert job.updated_at == job.created_at

    def test_agency_payout_is_amount_minus_fee(self):
        """1000.00 with a 100.00 fee pays the agency 900.00."""
        assert _job().agency_payout == Decimal("900.00")

    def test_amount_padded_to_currency_precision(self):
        job = _job(amount=Decimal("10.5"), platform_fee=Decimal("1"))
        assert str(job.amount) == "10.50"
        assert str(job.platform_fee) == "1.00"

    def test_sub_cent_amount_rejected(self):
        with pytest.raises(ValueError, match="decimal places"):
            _job(amount=Decimal("10.005"), platform_fee=Decimal("1"))
        with pytest.raises(ValueError, match="decimal places"):
            _job(platform_fee=Decimal("0.004"))

    def test_zero_decimal_currency(self):
        job = _job(amount=Decimal("5000"), platform_fee=Decimal("500"), currency="JPY")
        assert job.amount == Decimal("5000")
        assert job.agency_payout == Decimal("4500")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00")])
    def test_non_positive_amount_rejected(self, amount):
        with pytest.raises(ValueError, match="positive"):
            _job(amount=amount, platform_fee=Decimal("0"))

    def test_negative_fee_rejected(self):
        with pytest.raises(ValueError, match="negative"):
            _job(platform_fee=Decimal("-1"))

    def test_fee_above_amount_rejected(self):
        with pytest.raises(ValueError, match="exceed"):
            _job(platform_fee=Decimal("1000.01"))

    def test_fee_equal_to_amount_allowed(self):
        assert _job(platform_fee=Decimal("1000.00")).agency_payout == Decimal("0.00")

    def test_float_amount_rejected(self):
        with pytest.raises(TypeError):
            _job(amount=1000.0)

    def test_empty_title_rejected(self):
        with pytest.raises(ValueError, match="Title"):
            _job(title="   ")

    def test_long_title_rejected(self):
        with pytest.raises(ValueError, match="too long"):
            _job(title="x" * 201)

    def test_bad_currency_rejected(self):
        with pytest.raises(ValueError, match="currency"):
            _job(currency="dollars")

    def test_invalid_status_rejected(self):
        with pytest.raises(ValueError, match="Invalid status"):
            _job(status="shipped")

    def test_status_enum_accepted(self):
        assert _job(status=JobStatus.FUNDED).status == "funded"

    def test_missing_parties_rejected(self):
        with pytest.raises(ValueError):
            _job(agency_id="")


class TestJobProperties:
    def test_is_active(self):
        assert _job(status="in_progress").is_active
        assert not _job(status="draft").is_active
        assert not _job(status="paid_out").is_active

    def test_is_party(self):
        job = _job()
        assert job.is_party("business-1")
        assert job.is_party("agency-1")
        assert not job.is_party("someone-else")


class TestJobSerialization:
    def test_to_dict_renders_amounts_as_strings(self):
        data = _job().to_dict()
        assert data["amount"] == "1000.00"
        assert data["platform_fee"] == "100.00"
        assert data["agency_payout"] == "900.00"
        assert data["status"] == "draft"

    def test_from_dict_restores_job(self):
        original = _job(status="review", deal_id="deal-7", description="Two videos")
        restored = Job.from_dict(original.to_dict())
        assert restored.amount == original.amount
        assert restored.status == "review"
        assert restored.deal_id == "deal-7"
        assert restored.created_at == original.created_at


class TestPaymentAndPayout:
    def test_payment_requires_intent_id(self):
        with pytest.raises(ValueError, match="intent"):
            JobPayment(
                id="p1", job_id="job-1", payment_intent_id="", amount="10", currency="USD"
            )

    def test_payment_status_helpers(self):
        payment = JobPayment(
            id="p1", job_id="job-1", payment_intent_id="pi_1", amount="10", currency="USD"
        )
        assert payment.is_pending
        payment.status = PaymentStatus.SUCCEEDED.value
        assert payment.is_succeeded

    def test_payout_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            JobPayout(id="o1", job_id="job-1", transfer_id="tr_1", amount="-1", currency="USD")

    def test_payout_to_dict(self):
        payout = JobPayout(
            id="o1", job_id="job-1", transfer_id="tr_1", amount="900", currency="usd"
        )
        data = payout.to_dict()
        assert data["amount"] == "900.00"
        assert data["currency"] == "USD"
        assert data["status"] == "pending"


class TestAgencyAccount:
    def test_has_connected_account(self):
        agency = AgencyAccount(agency_id="agency-1")
        assert not agency.has_connected_account
        agency.stripe_account_id = "acct_1"
        assert agency.has_connected_account
