"""Error taxonomy for the escrow core.

Every error carries a stable ``code`` and enough context (current and
required status) for a caller to explain why an action was blocked.
Processor rejections never carry the processor's raw message.
"""

from typing import Any, Dict, Iterable, Optional


class EscrowError(Exception):
    """Base class for escrow core errors."""

    code = "escrow_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        """Tagged error payload for the presentation layer."""
        return {"code": self.code, "message": self.message, **self.context}


class ValidationError(EscrowError):
    """Input failed validation (bad amount, missing field, ...)."""

    code = "validation_error"


class NotFound(EscrowError):
    """Job, payment or agency does not exist."""

    code = "not_found"


class NotAuthorized(EscrowError):
    """Actor is not allowed to perform this action on the job."""

    code = "not_authorized"


class IllegalTransition(EscrowError):
    """Requested status change is not an edge of the transition table."""

    code = "illegal_transition"

    def __init__(
        self,
        current: str,
        target: str,
        required: Optional[Iterable[str]] = None,
        message: Optional[str] = None,
    ):
        self.current = current
        self.target = target
        self.required = sorted(required) if required else None
        if message is None:
            message = f"Cannot move job from {current} to {target}"
            if self.required:
                message += f" (requires {' or '.join(self.required)})"
        super().__init__(
            message,
            current_status=current,
            target_status=target,
            required_status=self.required,
        )


class TerminalState(EscrowError):
    """Job is in a terminal status and accepts no further transitions."""

    code = "terminal_state"

    def __init__(self, current: str, target: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(
            f"Job is {current} and can no longer change",
            current_status=current,
            target_status=target,
        )


class ConcurrentModification(EscrowError):
    """Another writer changed the job between read and write; retry the action."""

    code = "concurrent_modification"


class AccountNotReady(EscrowError):
    """Agency has no connected account, or it cannot receive transfers yet."""

    code = "account_not_ready"


class AlreadyFunded(EscrowError):
    """Job already has a succeeded payment; carries the existing record."""

    code = "already_funded"

    def __init__(self, message: str, payment=None, **context: Any):
        super().__init__(message, **context)
        self.payment = payment


class AlreadyPaidOut(EscrowError):
    """Job already has a payout; carries the existing record."""

    code = "already_paid_out"

    def __init__(self, message: str, payout=None, **context: Any):
        super().__init__(message, **context)
        self.payout = payout


class PayoutAlreadyIssued(EscrowError):
    """Refund refused because money was already released to the agency."""

    code = "payout_already_issued"


class ProcessorError(EscrowError):
    """Base class for payment processor failures."""

    code = "processor_error"


class ProcessorTransient(ProcessorError):
    """Retryable processor failure (network, timeout, rate limit, 5xx).

    ``outcome_unknown`` is set when the request may have reached the
    processor; the caller must reconcile before assuming failure.
    """

    code = "processor_transient"

    def __init__(
        self,
        message: str = "Payment processor temporarily unavailable",
        outcome_unknown: bool = False,
        retry_recommended: bool = True,
        **context: Any,
    ):
        super().__init__(
            message,
            outcome_unknown=outcome_unknown,
            retry_recommended=retry_recommended,
            **context,
        )
        self.outcome_unknown = outcome_unknown
        self.retry_recommended = retry_recommended


class ProcessorRejected(ProcessorError):
    """Terminal processor failure for this attempt (declined, invalid request)."""

    code = "processor_rejected"

    def __init__(
        self,
        message: str = "Payment was rejected by the processor",
        processor_code: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, processor_code=processor_code, **context)
        self.processor_code = processor_code
