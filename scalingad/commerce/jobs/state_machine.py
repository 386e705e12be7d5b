"""Job state machine.

A pure decision function over the transition table: given the current
status and a requested target it allows the move or raises. No I/O, no
side effects; the escrow service is the only caller that acts on the
decision.
"""

from typing import Dict, FrozenSet, Union

from scalingad.commerce.errors import IllegalTransition, TerminalState
from scalingad.commerce.jobs.models import JobStatus

StatusLike = Union[JobStatus, str]

S = JobStatus

VALID_JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    S.DRAFT: frozenset({S.PENDING, S.CANCELLED}),
    S.PENDING: frozenset({S.UNFUNDED, S.DECLINED, S.CANCELLED}),
    S.UNFUNDED: frozenset({S.FUNDED, S.CANCELLED}),
    S.FUNDED: frozenset({S.IN_PROGRESS, S.REFUNDED}),
    S.IN_PROGRESS: frozenset({S.REVIEW, S.REFUNDED}),
    S.REVIEW: frozenset({S.APPROVED, S.REVISION, S.REFUNDED}),
    S.REVISION: frozenset({S.REVIEW}),
    S.APPROVED: frozenset({S.PAID_OUT, S.REFUNDED}),
    S.PAID_OUT: frozenset(),
    S.DECLINED: frozenset(),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    status for status, targets in VALID_JOB_TRANSITIONS.items() if not targets
)


def _coerce(status: StatusLike) -> JobStatus:
    return status if isinstance(status, JobStatus) else JobStatus(str(status))


def sources_for(target: StatusLike) -> FrozenSet[JobStatus]:
    """Statuses from which ``target`` can be reached."""
    target = _coerce(target)
    return frozenset(src for src, targets in VALID_JOB_TRANSITIONS.items() if target in targets)


def allowed_targets(current: StatusLike) -> FrozenSet[JobStatus]:
    """Statuses reachable in one step from ``current``."""
    return VALID_JOB_TRANSITIONS[_coerce(current)]


def is_terminal(status: StatusLike) -> bool:
    return _coerce(status) in TERMINAL_STATUSES


def can_transition(current: StatusLike, target: StatusLike) -> bool:
    """True if ``current -> target`` is an edge of the table."""
    return _coerce(target) in VALID_JOB_TRANSITIONS[_coerce(current)]


def check_transition(current: StatusLike, target: StatusLike) -> JobStatus:
    """Validate ``current -> target``.

    Returns:
        The target as a JobStatus

    Raises:
        TerminalState: current status accepts no transitions
        IllegalTransition: the edge is not in the table
    """
    current = _coerce(current)
    target = _coerce(target)
    if current in TERMINAL_STATUSES:
        raise TerminalState(current.value, target.value)
    if target not in VALID_JOB_TRANSITIONS[current]:
        raise IllegalTransition(
            current.value,
            target.value,
            required=[s.value for s in sources_for(target)],
        )
    return target
