"""Escrow error to HTTP response mapping.

Errors are returned as ``{"error": {"code", "message", ...context}}``.
Idempotent short-circuits (already funded, already paid out) are not
failures and answer 200 with the existing record.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from scalingad.commerce.errors import (
    AccountNotReady,
    AlreadyFunded,
    AlreadyPaidOut,
    ConcurrentModification,
    EscrowError,
    IllegalTransition,
    NotAuthorized,
    NotFound,
    PayoutAlreadyIssued,
    ProcessorRejected,
    ProcessorTransient,
    TerminalState,
    ValidationError,
)
from scalingad.logging_config import get_logger

logger = get_logger("backend.errors")

# Seconds a client should wait before retrying a transient processor failure
RETRY_AFTER_SECONDS = 5

STATUS_BY_ERROR: list[tuple[type[EscrowError], int]] = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (NotAuthorized, status.HTTP_403_FORBIDDEN),
    (IllegalTransition, status.HTTP_409_CONFLICT),
    (TerminalState, status.HTTP_409_CONFLICT),
    (AccountNotReady, status.HTTP_409_CONFLICT),
    (PayoutAlreadyIssued, status.HTTP_409_CONFLICT),
    (ConcurrentModification, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ProcessorRejected, status.HTTP_402_PAYMENT_REQUIRED),
    (ProcessorTransient, status.HTTP_503_SERVICE_UNAVAILABLE),
    (AlreadyFunded, status.HTTP_200_OK),
    (AlreadyPaidOut, status.HTTP_200_OK),
]


def status_for(exc: EscrowError) -> int:
    for error_cls, code in STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    status_code = status_for(exc)

    if isinstance(exc, AlreadyFunded):
        content = {"already_funded": True, "message": exc.message, **exc.context}
        if exc.payment is not None:
            content["payment"] = exc.payment.to_dict()
        return JSONResponse(status_code=status_code, content=content)
    if isinstance(exc, AlreadyPaidOut):
        content = {"already_paid_out": True, "message": exc.message, **exc.context}
        if exc.payout is not None:
            content["payout"] = exc.payout.to_dict()
        return JSONResponse(status_code=status_code, content=content)

    headers = None
    if isinstance(exc, ProcessorTransient):
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} | {exc.code}")
    else:
        logger.info(f"{request.method} {request.url.path} | {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.to_dict()},
        headers=headers,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EscrowError, escrow_error_handler)
