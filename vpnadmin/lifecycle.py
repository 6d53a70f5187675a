"""Status and expiry derivation for client identities."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from .models import AccountStatus, DashboardAggregate, Identity, IdentityRecord, RawTimestamp

EXPIRING_SOON_WINDOW = timedelta(days=30)

_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%y%m%d%H%M%SZ",
    "%Y%m%d%H%M%SZ",
)


@dataclass(frozen=True)
class Classification:
    account_status: AccountStatus
    expiring_soon: bool


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: RawTimestamp) -> Optional[datetime]:
    """Interpret a raw timestamp, returning ``None`` when it cannot be parsed.

    Accepts ``datetime`` objects, ``YYYY-MM-DD HH:MM:SS``, ISO 8601 and the
    easy-rsa ``index.txt`` notation. Naive values are treated as UTC.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    for fmt in _TIMESTAMP_FORMATS:
        try:
            return _as_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    try:
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def _is_present(value: RawTimestamp) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def classify(record: IdentityRecord, now: datetime) -> Classification:
    """Derive the account status and expiry risk of ``record`` at ``now``."""

    if _is_present(record.revocation):
        return Classification(AccountStatus.REVOKED, False)

    current = _as_utc(now)
    expiration = parse_timestamp(record.expiration)
    if expiration is not None and current > expiration:
        return Classification(AccountStatus.EXPIRED, False)

    expiring_soon = expiration is not None and timedelta(0) <= expiration - current <= EXPIRING_SOON_WINDOW
    return Classification(AccountStatus.ACTIVE, expiring_soon)


def derive_identity(record: IdentityRecord, now: datetime) -> Identity:
    """Build the classified :class:`Identity` view for ``record``."""

    classification = classify(record, now)
    active = classification.account_status is AccountStatus.ACTIVE
    revocation = None
    if classification.account_status is AccountStatus.REVOKED:
        revocation = parse_timestamp(record.revocation)
    return Identity(
        name=record.name,
        account_status=classification.account_status,
        connection_count=max(record.connections, 0) if active else 0,
        expiration=parse_timestamp(record.expiration),
        revocation=revocation,
        expiring_soon=classification.expiring_soon,
        serial=record.serial,
    )


def aggregate(identities: Iterable[Identity]) -> DashboardAggregate:
    """Reduce classified identities into dashboard counters."""

    total = connections = revoked = expiring = 0
    for identity in identities:
        total += 1
        if identity.account_status is AccountStatus.ACTIVE:
            connections += identity.connection_count
        elif identity.account_status is AccountStatus.REVOKED:
            revoked += 1
        if identity.expiring_soon:
            expiring += 1
    return DashboardAggregate(
        total_identities=total,
        active_connections=connections,
        revoked_count=revoked,
        expiring_soon_count=expiring,
    )


__all__ = [
    "Classification",
    "EXPIRING_SOON_WINDOW",
    "aggregate",
    "classify",
    "derive_identity",
    "parse_timestamp",
]
