"""Commerce API routes for ScalingAd."""

from .agencies import router as agencies_router
from .jobs import router as jobs_router
from .webhooks import router as webhooks_router

__all__ = ["jobs_router", "agencies_router", "webhooks_router"]
