"""API routes."""

from .commerce import agencies_router, jobs_router, webhooks_router

__all__ = [
    "jobs_router",
    "agencies_router",
    "webhooks_router",
]
