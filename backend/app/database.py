"""Storage and service wiring for the escrow core.

One storage instance per process: its per-job lock registry is what
serializes concurrent requests on the same job.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, status

from scalingad.commerce.escrow import EscrowService, WebhookHandler
from scalingad.commerce.jobs import JobStorage, SQLiteJobStorage
from scalingad.commerce.processor import PaymentProcessor, StripeProcessor
from scalingad.commerce.queries import JobQueryService

from .config import Settings, get_settings

_storage: JobStorage | None = None
_processor: PaymentProcessor | None = None


def get_storage(settings: Annotated[Settings, Depends(get_settings)]) -> JobStorage:
    """FastAPI dependency for the shared job storage."""
    global _storage
    if _storage is None:
        _storage = SQLiteJobStorage(settings.commerce_config().resolved_db_path)
    return _storage


def get_processor(settings: Annotated[Settings, Depends(get_settings)]) -> PaymentProcessor:
    """FastAPI dependency for the Stripe processor."""
    global _processor
    if _processor is None:
        if not settings.stripe_secret_key:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Payment processor is not configured",
            )
        _processor = StripeProcessor(settings.commerce_config())
    return _processor


def get_escrow_service(
    storage: Annotated[JobStorage, Depends(get_storage)],
    processor: Annotated[PaymentProcessor, Depends(get_processor)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> EscrowService:
    return EscrowService(storage, processor, config=settings.commerce_config())


def get_query_service(storage: Annotated[JobStorage, Depends(get_storage)]) -> JobQueryService:
    return JobQueryService(storage)


def get_webhook_handler(
    service: Annotated[EscrowService, Depends(get_escrow_service)],
) -> WebhookHandler:
    return WebhookHandler(service)


# Type aliases for dependency injection
Storage = Annotated[JobStorage, Depends(get_storage)]
Escrow = Annotated[EscrowService, Depends(get_escrow_service)]
Queries = Annotated[JobQueryService, Depends(get_query_service)]
Webhooks = Annotated[WebhookHandler, Depends(get_webhook_handler)]
AppSettings = Annotated[Settings, Depends(get_settings)]
