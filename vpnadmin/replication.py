"""Primary/replica awareness for this node."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Iterable, Optional, Union

from .models import Module, OperatorContext, Role


class ReplicationState:
    """Process-wide role and last successful sync with the primary.

    The role is fixed at startup. ``mark_synced`` is called by the sync
    subsystem; the timestamp is reported as-is and never judged for staleness.
    """

    def __init__(
        self,
        role: Union[str, Role] = Role.PRIMARY,
        *,
        last_successful_sync: Optional[datetime] = None,
    ) -> None:
        self._role = Role.parse(role)
        self._last_successful_sync = last_successful_sync
        self._lock = threading.Lock()

    @property
    def role(self) -> Role:
        return self._role

    @property
    def is_primary(self) -> bool:
        return self._role is Role.PRIMARY

    @property
    def last_successful_sync(self) -> Optional[datetime]:
        if self._role is Role.PRIMARY:
            return None
        with self._lock:
            return self._last_successful_sync

    def mark_synced(self, instant: datetime) -> None:
        with self._lock:
            self._last_successful_sync = instant

    def operator_context(self, modules: Iterable[Union[str, Module]]) -> OperatorContext:
        """Build the per-request context for a caller on this node."""

        return OperatorContext.build(self._role, modules)


__all__ = ["ReplicationState"]
