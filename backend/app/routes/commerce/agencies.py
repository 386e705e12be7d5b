"""Agency routes for ScalingAd Commerce.

Connected-account onboarding for the calling agency. An agency must have
a connected account before any of its jobs can be funded.
"""

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from scalingad.commerce.jobs import AgencyAccount
from scalingad.logging_config import get_logger

from ...auth import CurrentActor
from ...database import Escrow, Storage
from ...rate_limit import limiter

logger = get_logger("commerce.agencies")
router = APIRouter(prefix="/agencies", tags=["commerce", "agencies"])


class AgencyAccountResponse(BaseModel):
    agency_id: str
    name: str
    stripe_account_id: str | None = None
    onboarding_complete: bool
    payouts_enabled: bool


class OnboardingLinkRequest(BaseModel):
    return_url: str = Field(..., min_length=1)
    refresh_url: str = Field(..., min_length=1)
    name: str | None = Field(None, max_length=200)


class OnboardingLinkResponse(BaseModel):
    account_id: str
    url: str


def to_agency_response(agency: AgencyAccount) -> AgencyAccountResponse:
    return AgencyAccountResponse(
        agency_id=agency.agency_id,
        name=agency.name,
        stripe_account_id=agency.stripe_account_id,
        onboarding_complete=agency.onboarding_complete,
        payouts_enabled=agency.payouts_enabled,
    )


@router.get("/me", response_model=AgencyAccountResponse)
@limiter.limit("60/minute")
def get_my_account(request: Request, actor: CurrentActor, storage: Storage):
    """Connected-account state of the calling agency."""
    agency = storage.get_agency(actor) or AgencyAccount(agency_id=actor)
    return to_agency_response(agency)


@router.post("/me/onboarding-link", response_model=OnboardingLinkResponse)
@limiter.limit("10/minute")
def create_onboarding_link(
    request: Request, body: OnboardingLinkRequest, actor: CurrentActor, escrow: Escrow
):
    """
    Create (on first use) the agency's connected account and return a
    one-time onboarding URL.
    """
    logger.info(f"POST /agencies/me/onboarding-link | agency={actor}")
    link = escrow.create_onboarding_link(actor, body.return_url, body.refresh_url, body.name)
    return OnboardingLinkResponse(account_id=link.account_id, url=link.url)


@router.post("/me/refresh", response_model=AgencyAccountResponse)
@limiter.limit("10/minute")
def refresh_my_account(request: Request, actor: CurrentActor, escrow: Escrow):
    """Pull onboarding state from the processor."""
    return to_agency_response(escrow.refresh_agency_account(actor))
