from __future__ import annotations

import sys
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vpnadmin.errors import BackingStoreError, NotFoundError
from vpnadmin.models import CreateOptions, IdentityRecord, RoutingPolicy

FIXED_NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeAuthority:
    """In-memory certificate authority recording every call."""

    def __init__(self, records: Optional[List[IdentityRecord]] = None) -> None:
        self.records: Dict[str, IdentityRecord] = {record.name: record for record in records or []}
        self.calls: List[tuple] = []
        self.fail_on: set[str] = set()
        self.issue_gate: Optional[threading.Event] = None
        self.issue_started = threading.Event()
        self.list_gate: Optional[threading.Event] = None
        self.list_started = threading.Event()
        self._lock = threading.Lock()

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise BackingStoreError(f"{operation} failed")

    def issue(self, name: str, options: CreateOptions) -> None:
        with self._lock:
            self.calls.append(("issue", name))
        self.issue_started.set()
        if self.issue_gate is not None:
            self.issue_gate.wait(timeout=5)
        self._check("issue")
        with self._lock:
            self.records[name] = IdentityRecord(name=name, expiration="2099-12-31 23:59:59", serial=f"S-{len(self.calls)}")

    def revoke(self, name: str) -> None:
        self.calls.append(("revoke", name))
        self._check("revoke")
        self.records[name] = replace(self.records[name], revocation="2025-06-01 12:00:00")

    def unrevoke(self, name: str) -> None:
        self.calls.append(("unrevoke", name))
        self._check("unrevoke")
        self.records[name] = replace(self.records[name], revocation=None)

    def rotate(self, name: str) -> None:
        self.calls.append(("rotate", name))
        self._check("rotate")
        self.records[name] = IdentityRecord(name=name, expiration="2099-12-31 23:59:59")

    def delete(self, name: str) -> None:
        self.calls.append(("delete", name))
        self._check("delete")
        self.records.pop(name, None)

    def list_records(self) -> List[IdentityRecord]:
        self._check("list_records")
        with self._lock:
            snapshot = sorted(self.records.values(), key=lambda record: record.name)
        if self.list_gate is not None:
            self.list_started.set()
            self.list_gate.wait(timeout=5)
        return snapshot

    def render_client_config(self, name: str) -> str:
        self.calls.append(("render_client_config", name))
        if name not in self.records:
            raise NotFoundError(name)
        return f"client\nremote vpn.example.com 1194\n# {name}\n"


class FakeRoutingStore:
    def __init__(self) -> None:
        self.policies: Dict[str, RoutingPolicy] = {}

    def load(self, name: str) -> RoutingPolicy:
        return self.policies.get(name, RoutingPolicy(owner=name))

    def save(self, policy: RoutingPolicy) -> None:
        self.policies[policy.owner] = policy

    def delete(self, name: str) -> None:
        self.policies.pop(name, None)


class FakePasswordStore:
    def __init__(self) -> None:
        self.passwords: Dict[str, str] = {}

    def set_password(self, name: str, password: str) -> None:
        self.passwords[name] = password

    def verify(self, name: str, password: str) -> bool:
        return self.passwords.get(name) == password

    def delete(self, name: str) -> None:
        self.passwords.pop(name, None)


@pytest.fixture()
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture()
def authority() -> FakeAuthority:
    return FakeAuthority(
        [
            IdentityRecord(name="alice", expiration="2099-12-31 23:59:59", connections=2),
            IdentityRecord(name="bob", expiration="2025-06-15 12:00:00", connections=1),
            IdentityRecord(name="charlie", expiration="2099-12-31 23:59:59", revocation="2025-01-01 00:00:00"),
            IdentityRecord(name="dave", expiration="2024-01-01 00:00:00"),
        ]
    )
