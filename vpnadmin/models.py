"""Domain models for VPN client identities and their derived views."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Union

RawTimestamp = Union[str, datetime, None]


class AccountStatus(str, Enum):
    """Effective status of a client certificate."""

    ACTIVE = "Active"
    REVOKED = "Revoked"
    EXPIRED = "Expired"


class ConnectionState(str, Enum):
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"


class Role(str, Enum):
    """Replication role of this node."""

    PRIMARY = "primary"
    REPLICA = "replica"

    @classmethod
    def parse(cls, value: Union[str, "Role"]) -> "Role":
        if isinstance(value, Role):
            return value
        cleaned = str(value).strip().lower()
        if cleaned in {"primary", "master"}:
            return cls.PRIMARY
        if cleaned in {"replica", "slave"}:
            return cls.REPLICA
        raise ValueError(f"Unknown server role '{value}'")


class Module(str, Enum):
    """Optional feature modules; ``core`` is always enabled."""

    CORE = "core"
    PASSWORD_AUTH = "password-auth"
    PER_CLIENT_ROUTING = "per-client-routing"

    @classmethod
    def parse(cls, value: Union[str, "Module"]) -> "Module":
        if isinstance(value, Module):
            return value
        cleaned = str(value).strip()
        alias = _MODULE_ALIASES.get(cleaned.lower())
        if alias is not None:
            return alias
        raise ValueError(f"Unknown module '{value}'")


_MODULE_ALIASES = {
    "core": Module.CORE,
    "password-auth": Module.PASSWORD_AUTH,
    "passwdauth": Module.PASSWORD_AUTH,
    "per-client-routing": Module.PER_CLIENT_ROUTING,
    "ccd": Module.PER_CLIENT_ROUTING,
}


def normalise_modules(modules: Iterable[Union[str, Module]]) -> FrozenSet[Module]:
    """Parse module names and make sure ``core`` is present."""

    parsed = {Module.parse(item) for item in modules if str(item).strip()}
    parsed.add(Module.CORE)
    return frozenset(parsed)


class Action(str, Enum):
    VIEW = "view"
    DOWNLOAD_CONFIG = "download_config"
    SET_PASSWORD = "set_password"
    MANAGE_ROUTES = "manage_routes"
    REVOKE = "revoke"
    UNREVOKE = "unrevoke"
    ROTATE_CERTIFICATE = "rotate_certificate"
    DELETE = "delete"


@dataclass(frozen=True)
class IdentityRecord:
    """Raw identity data as loaded from the certificate authority.

    Timestamps are kept exactly as the backing store reported them. They are
    interpreted on every read by :func:`vpnadmin.lifecycle.classify`.
    """

    name: str
    expiration: RawTimestamp = None
    revocation: RawTimestamp = None
    connections: int = 0
    serial: Optional[str] = None


@dataclass(frozen=True)
class Identity:
    """Classified view of an identity relative to a point in time."""

    name: str
    account_status: AccountStatus
    connection_count: int
    expiration: Optional[datetime]
    revocation: Optional[datetime]
    expiring_soon: bool
    serial: Optional[str] = None

    @property
    def connection_state(self) -> ConnectionState:
        if self.connection_count > 0:
            return ConnectionState.CONNECTED
        return ConnectionState.DISCONNECTED


@dataclass(frozen=True)
class Route:
    address: str
    mask: str
    description: str = ""


@dataclass(frozen=True)
class RoutingPolicy:
    """Per-client network configuration (client-config-dir entry)."""

    owner: str
    assigned_address: Optional[str] = None
    custom_routes: List[Route] = field(default_factory=list)


@dataclass(frozen=True)
class DashboardAggregate:
    total_identities: int = 0
    active_connections: int = 0
    revoked_count: int = 0
    expiring_soon_count: int = 0


@dataclass(frozen=True)
class OperatorContext:
    """Per-request view of who is acting and which features exist."""

    role: Role
    enabled_modules: FrozenSet[Module] = frozenset({Module.CORE})

    @classmethod
    def build(cls, role: Union[str, Role], modules: Iterable[Union[str, Module]] = ()) -> "OperatorContext":
        return cls(role=Role.parse(role), enabled_modules=normalise_modules(modules))

    def has_module(self, module: Module) -> bool:
        return module in self.enabled_modules


@dataclass(frozen=True)
class CreateOptions:
    password: Optional[str] = None


__all__ = [
    "AccountStatus",
    "Action",
    "ConnectionState",
    "CreateOptions",
    "DashboardAggregate",
    "Identity",
    "IdentityRecord",
    "Module",
    "OperatorContext",
    "RawTimestamp",
    "Role",
    "Route",
    "RoutingPolicy",
    "normalise_modules",
]
