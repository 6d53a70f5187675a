"""Thread-safe in-memory roster of client identities."""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, Iterable, List

from .errors import NotFoundError
from .models import IdentityRecord


class IdentityStore:
    """Owns the identity records for the lifetime of the process.

    Writers are serialized by a re-entrant lock and readers receive copies
    taken under the same lock, so a reader never observes a half-applied
    update. ``revision`` increases with every successful mutation.
    """

    def __init__(self, records: Iterable[IdentityRecord] = ()) -> None:
        self._lock = threading.RLock()
        self._records: Dict[str, IdentityRecord] = {}
        self._revision = 0
        for record in records:
            self._records[record.name] = record

    @property
    def revision(self) -> int:
        with self._lock:
            return self._revision

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._records

    def list(self) -> List[IdentityRecord]:
        """Return a snapshot of all records ordered by name."""

        with self._lock:
            snapshot = [replace(record) for record in self._records.values()]
        snapshot.sort(key=lambda record: record.name)
        return snapshot

    def find(self, name: str) -> IdentityRecord:
        with self._lock:
            record = self._records.get(name)
            if record is None:
                raise NotFoundError(name)
            return replace(record)

    def upsert(self, record: IdentityRecord) -> None:
        with self._lock:
            self._records[record.name] = record
            self._revision += 1

    def remove(self, name: str) -> IdentityRecord:
        with self._lock:
            record = self._records.pop(name, None)
            if record is None:
                raise NotFoundError(name)
            self._revision += 1
            return record

    def replace_all(self, records: Iterable[IdentityRecord]) -> None:
        """Swap in a freshly loaded roster in a single step."""

        fresh = {record.name: record for record in records}
        with self._lock:
            self._records = fresh
            self._revision += 1


__all__ = ["IdentityStore"]
