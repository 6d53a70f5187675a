"""Identity lifecycle operations exposed to the transport layer."""
from __future__ import annotations

import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Protocol, Union

from .authority import CertificateAuthority
from .capabilities import actions_for, ensure_creation_permitted, ensure_permitted
from .ccd import validate_policy
from .errors import AuthorizationError, BackingStoreError, ConflictError, NotFoundError, ValidationError
from .lifecycle import aggregate, derive_identity
from .models import (
    AccountStatus,
    Action,
    CreateOptions,
    DashboardAggregate,
    Identity,
    IdentityRecord,
    Module,
    OperatorContext,
    RoutingPolicy,
    normalise_modules,
)
from .passwords import validate_password
from .replication import ReplicationState
from .store import IdentityStore

logger = logging.getLogger("vpnadmin.manager")

NAME_PATTERN = re.compile(r"^[-A-Za-z0-9_.@]+$")

Clock = Callable[[], datetime]


class RoutingPolicyStore(Protocol):
    def load(self, name: str) -> RoutingPolicy: ...

    def save(self, policy: RoutingPolicy) -> None: ...

    def delete(self, name: str) -> None: ...


class PasswordBackend(Protocol):
    def set_password(self, name: str, password: str) -> None: ...

    def verify(self, name: str, password: str) -> bool: ...

    def delete(self, name: str) -> None: ...


class ConnectionSource(Protocol):
    def connection_counts(self) -> Mapping[str, int]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_name(name: Optional[str]) -> str:
    if name is None or not name.strip():
        raise ValidationError("Identity name must not be empty")
    cleaned = name.strip()
    if not NAME_PATTERN.fullmatch(cleaned):
        raise ValidationError(
            "Identity name may only contain letters, numbers, hyphens, underscores, dots, or '@'"
        )
    return cleaned


class CreationSerializer:
    """Single process-wide lock around identity creation.

    Every creation attempt shares one exclusion domain regardless of the
    requested name; creation is rare enough that per-name locking is not
    worth its bookkeeping.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._lock:
            yield


class IdentityManager:
    """Coordinates the roster, the policy table and the external collaborators."""

    _MODULE_BACKENDS = {
        Action.SET_PASSWORD: "_passwords",
        Action.MANAGE_ROUTES: "_routing",
    }

    def __init__(
        self,
        store: IdentityStore,
        authority: CertificateAuthority,
        *,
        replication: Optional[ReplicationState] = None,
        modules: Iterable[Union[str, Module]] = (),
        routing: Optional[RoutingPolicyStore] = None,
        passwords: Optional[PasswordBackend] = None,
        connections: Optional[ConnectionSource] = None,
        clock: Clock = _utcnow,
        serializer: Optional[CreationSerializer] = None,
    ) -> None:
        self._store = store
        self._authority = authority
        self._replication = replication or ReplicationState()
        self._modules = normalise_modules(modules)
        self._routing = routing
        self._passwords = passwords
        self._connections = connections
        self._clock = clock
        self._serializer = serializer or CreationSerializer()

        if Module.PER_CLIENT_ROUTING in self._modules and routing is None:
            raise ValueError("The per-client-routing module requires a routing policy store")
        if Module.PASSWORD_AUTH in self._modules and passwords is None:
            raise ValueError("The password-auth module requires a password store")

    @property
    def store(self) -> IdentityStore:
        return self._store

    @property
    def replication(self) -> ReplicationState:
        return self._replication

    @property
    def modules(self) -> FrozenSet[Module]:
        return self._modules

    def operator_context(self) -> OperatorContext:
        return self._replication.operator_context(self._modules)

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Backing store synchronisation
    # ------------------------------------------------------------------
    def refresh(self) -> None:
        """Reload the roster from the certificate authority.

        Runs under the creation lock so a snapshot taken before a creation
        commits can never replace the roster after it.
        """

        with self._serializer.exclusive():
            records = self._authority.list_records()
            if self._connections is not None:
                counts: Mapping[str, int] = self._connections.connection_counts()
                records = [
                    replace(record, connections=int(counts.get(record.name, 0)))
                    for record in records
                ]
            self._store.replace_all(records)
        logger.debug("Loaded %d identities from the certificate authority", len(records))

    def _refresh_after(self, operation: str, name: str) -> None:
        try:
            self.refresh()
        except BackingStoreError:
            logger.exception("Refreshing identities after %s of %s failed", operation, name)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------
    def list_identities(
        self,
        *,
        search_text: Optional[str] = None,
        hide_revoked: bool = False,
        now: Optional[datetime] = None,
    ) -> List[Identity]:
        """Return classified identities ordered by name."""

        instant = now or self._clock()
        needle = search_text.strip().lower() if search_text else ""
        identities: List[Identity] = []
        for record in self._store.list():
            if needle and needle not in record.name.lower():
                continue
            identity = derive_identity(record, instant)
            if hide_revoked and identity.account_status is AccountStatus.REVOKED:
                continue
            identities.append(identity)
        return identities

    def get_identity(self, name: str, *, now: Optional[datetime] = None) -> Identity:
        return derive_identity(self._store.find(name), now or self._clock())

    def get_dashboard_aggregate(self, *, now: Optional[datetime] = None) -> DashboardAggregate:
        return aggregate(self.list_identities(now=now))

    def permitted_actions(
        self,
        identity: Identity,
        context: Optional[OperatorContext] = None,
    ) -> FrozenSet[Action]:
        return actions_for(context or self.operator_context(), identity.account_status)

    def action_table(
        self,
        identities: Iterable[Identity],
        context: Optional[OperatorContext] = None,
    ) -> Dict[str, FrozenSet[Action]]:
        ctx = context or self.operator_context()
        return {identity.name: actions_for(ctx, identity.account_status) for identity in identities}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def _authorize(
        self,
        name: str,
        action: Action,
        context: Optional[OperatorContext],
        *,
        write: bool = False,
    ) -> IdentityRecord:
        record = self._store.find(name)
        identity = derive_identity(record, self._clock())
        ensure_permitted(context or self.operator_context(), identity.account_status, action, write=write)
        backend = self._MODULE_BACKENDS.get(action)
        if backend is not None and getattr(self, backend) is None:
            raise AuthorizationError(f"Action '{action.value}' is not available on this node")
        return record

    def create_identity(
        self,
        name: str,
        options: Optional[CreateOptions] = None,
        *,
        context: Optional[OperatorContext] = None,
    ) -> Identity:
        """Issue a certificate for a new identity and add it to the roster."""

        cleaned = validate_name(name)
        ctx = context or self.operator_context()
        ensure_creation_permitted(ctx)
        options = options or CreateOptions()
        wants_password = Module.PASSWORD_AUTH in ctx.enabled_modules and self._passwords is not None
        if wants_password:
            validate_password(options.password)

        if cleaned in self._store:
            raise ConflictError(cleaned)

        with self._serializer.exclusive():
            if cleaned in self._store:
                raise ConflictError(cleaned)

            if wants_password:
                self._passwords.set_password(cleaned, options.password)
            try:
                self._authority.issue(cleaned, options)
            except BackingStoreError:
                if wants_password:
                    self._passwords.delete(cleaned)
                raise

            self._store.upsert(IdentityRecord(name=cleaned))
            logger.info("Created identity %s", cleaned)

        self._refresh_after("creation", cleaned)
        return self.get_identity(cleaned)

    def revoke_identity(self, name: str, *, context: Optional[OperatorContext] = None) -> Identity:
        record = self._authorize(name, Action.REVOKE, context)
        self._authority.revoke(name)
        self._store.upsert(replace(record, revocation=self._clock(), connections=0))
        logger.info("Revoked identity %s", name)
        self._refresh_after("revocation", name)
        return self.get_identity(name)

    def unrevoke_identity(self, name: str, *, context: Optional[OperatorContext] = None) -> Identity:
        record = self._authorize(name, Action.UNREVOKE, context)
        self._authority.unrevoke(name)
        self._store.upsert(replace(record, revocation=None))
        logger.info("Restored identity %s", name)
        self._refresh_after("unrevocation", name)
        return self.get_identity(name)

    def rotate_identity(self, name: str, *, context: Optional[OperatorContext] = None) -> Identity:
        record = self._authorize(name, Action.ROTATE_CERTIFICATE, context)
        self._authority.rotate(name)
        self._store.upsert(replace(record, revocation=None, expiration=None, connections=0))
        logger.info("Rotated certificate for identity %s", name)
        self._refresh_after("rotation", name)
        return self.get_identity(name)

    def delete_identity(self, name: str, *, context: Optional[OperatorContext] = None) -> None:
        self._authorize(name, Action.DELETE, context)
        self._authority.delete(name)
        self._store.remove(name)
        logger.info("Deleted identity %s", name)

        # The certificate is gone; leftover per-identity files must not undo that.
        for label, backend in (("routing policy", self._routing), ("password", self._passwords)):
            if backend is None:
                continue
            try:
                backend.delete(name)
            except BackingStoreError:
                logger.exception("Removing the %s of deleted identity %s failed", label, name)
        self._refresh_after("deletion", name)

    def set_password(
        self,
        name: str,
        password: str,
        *,
        context: Optional[OperatorContext] = None,
    ) -> None:
        self._authorize(name, Action.SET_PASSWORD, context)
        validate_password(password)
        self._passwords.set_password(name, password)
        logger.info("Updated password for identity %s", name)

    def verify_credentials(self, name: str, password: str) -> bool:
        """Check a client login; only Active identities may authenticate."""

        if self._passwords is None:
            return False
        try:
            identity = self.get_identity(name)
        except NotFoundError:
            logger.warning("Rejected login for unknown identity %s", name)
            return False
        if identity.account_status is not AccountStatus.ACTIVE:
            logger.warning("Rejected login for %s identity %s", identity.account_status.value, name)
            return False
        return self._passwords.verify(name, password)

    def get_routing_policy(
        self,
        name: str,
        *,
        context: Optional[OperatorContext] = None,
    ) -> RoutingPolicy:
        self._authorize(name, Action.MANAGE_ROUTES, context)
        return self._routing.load(name)

    def save_routing_policy(
        self,
        policy: RoutingPolicy,
        *,
        context: Optional[OperatorContext] = None,
    ) -> RoutingPolicy:
        self._authorize(policy.owner, Action.MANAGE_ROUTES, context, write=True)
        normalised = validate_policy(policy)
        self._routing.save(normalised)
        return normalised

    def download_config(self, name: str, *, context: Optional[OperatorContext] = None) -> str:
        self._authorize(name, Action.DOWNLOAD_CONFIG, context)
        return self._authority.render_client_config(name)


__all__ = [
    "ConnectionSource",
    "CreationSerializer",
    "IdentityManager",
    "NAME_PATTERN",
    "PasswordBackend",
    "RoutingPolicyStore",
    "validate_name",
]
