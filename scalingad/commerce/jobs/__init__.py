"""Jobs subsystem for ScalingAd Commerce.

Models:
- Job: A unit of paid work between a business and an agency
- JobPayment: One attempt to collect money for a job
- JobPayout: One release of escrowed money to the agency
- AgencyAccount: The agency's connected-account facet
- JobTotals: Counters and per-currency sums over a filtered set of jobs

State machine:
- VALID_JOB_TRANSITIONS, check_transition, can_transition

Storage:
- JobStorage protocol, InMemoryJobStorage, SQLiteJobStorage
"""

from scalingad.commerce.jobs.models import (
    ACTIVE_STATUSES,
    AgencyAccount,
    Job,
    JobPayment,
    JobPayout,
    JobStatus,
    JobTotals,
    PaymentStatus,
    PayoutStatus,
)
from scalingad.commerce.jobs.sqlite import SQLiteJobStorage
from scalingad.commerce.jobs.state_machine import (
    TERMINAL_STATUSES,
    VALID_JOB_TRANSITIONS,
    allowed_targets,
    can_transition,
    check_transition,
    is_terminal,
)
from scalingad.commerce.jobs.storage import (
    DuplicateRecordError,
    InMemoryJobStorage,
    JobStorage,
    StorageError,
    VersionConflictError,
)

__all__ = [
    # Models
    "Job",
    "JobPayment",
    "JobPayout",
    "AgencyAccount",
    "JobStatus",
    "JobTotals",
    "PaymentStatus",
    "PayoutStatus",
    "ACTIVE_STATUSES",
    # State machine
    "VALID_JOB_TRANSITIONS",
    "TERMINAL_STATUSES",
    "allowed_targets",
    "can_transition",
    "check_transition",
    "is_terminal",
    # Storage
    "JobStorage",
    "InMemoryJobStorage",
    "SQLiteJobStorage",
    "StorageError",
    "VersionConflictError",
    "DuplicateRecordError",
]
