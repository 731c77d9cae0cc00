"""
Per (user, year, month) usage records with compare-and-swap writes
"""

from threading import Lock
from typing import Dict, List, Optional, Protocol, Tuple

from clinic_scribe.models.domain import UsageRecord

UsageKey = Tuple[str, int, int]


class UsageStore(Protocol):
    def get(self, user_id: str, year: int, month: int) -> Optional[UsageRecord]:
        ...

    def compare_and_swap(self, expected_version: Optional[int], record: UsageRecord) -> bool:
        """
        Writes ``record`` only if the stored version equals ``expected_version``
        (``None`` meaning no record exists yet). Returns False on a lost race.
        """
        ...

    def list_for_user(self, user_id: str) -> List[UsageRecord]:
        ...


class InMemoryUsageStore:
    def __init__(self):
        self._lock = Lock()
        self._records: Dict[UsageKey, UsageRecord] = {}

    def get(self, user_id: str, year: int, month: int) -> Optional[UsageRecord]:
        with self._lock:
            record = self._records.get((user_id, year, month))
            return record.model_copy() if record else None

    def compare_and_swap(self, expected_version: Optional[int], record: UsageRecord) -> bool:
        key = (record.user_id, record.year, record.month)
        with self._lock:
            current = self._records.get(key)
            current_version = current.version if current else None
            if current_version != expected_version:
                return False
            self._records[key] = record.model_copy(update={"version": (expected_version or 0) + 1})
            return True

    def list_for_user(self, user_id: str) -> List[UsageRecord]:
        with self._lock:
            records = [r.model_copy() for (uid, _, _), r in self._records.items() if uid == user_id]
        return sorted(records, key=lambda r: (r.year, r.month), reverse=True)
