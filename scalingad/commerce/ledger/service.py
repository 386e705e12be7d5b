"""Append-only ledger.

One entry per meaningful event. There is no update or delete path:
entries are written once and read back in causal order.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from scalingad.commerce.ledger.models import LedgerEntry, LedgerEventType
from scalingad.utils import new_id, utc_now

logger = logging.getLogger(__name__)


class Ledger:
    """Thin append/read facade over the storage ledger table."""

    def __init__(self, storage):
        self._storage = storage

    def append(
        self,
        job_id: Optional[str],
        event_type: Union[LedgerEventType, str],
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Append one entry and return it with its sequence assigned."""
        entry = LedgerEntry(
            id=new_id(),
            job_id=job_id,
            event_type=event_type,
            actor_id=actor_id,
            details=details or {},
            created_at=utc_now(),
        )
        stored = self._storage.append_ledger_entry(entry)
        logger.debug(f"Ledger {stored.event_type} job={job_id} seq={stored.sequence}")
        return stored

    def entries_for_job(self, job_id: str) -> List[LedgerEntry]:
        """Entries for a job, oldest first."""
        return self._storage.list_ledger_entries(job_id)

    def all_entries(self) -> List[LedgerEntry]:
        return self._storage.list_ledger_entries(None)

    def has_event(self, job_id: str, event_type: LedgerEventType, **match: Any) -> bool:
        """True if an entry of ``event_type`` exists whose details contain ``match``."""
        for entry in self.entries_for_job(job_id):
            if entry.event_type != event_type.value:
                continue
            if all(entry.details.get(k) == v for k, v in match.items()):
                return True
        return False
