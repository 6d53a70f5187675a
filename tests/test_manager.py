"""Tests for the identity manager operations."""

from __future__ import annotations

import threading
from typing import List

import pytest

from conftest import FIXED_NOW, FakeAuthority, FakePasswordStore, FakeRoutingStore
from vpnadmin.errors import (
    AuthorizationError,
    BackingStoreError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from vpnadmin.manager import IdentityManager
from vpnadmin.models import (
    AccountStatus,
    Action,
    CreateOptions,
    IdentityRecord,
    Module,
    OperatorContext,
    Route,
    RoutingPolicy,
)
from vpnadmin.replication import ReplicationState
from vpnadmin.store import IdentityStore


def _manager(authority: FakeAuthority, *, role: str = "primary", modules=(), **kwargs) -> IdentityManager:
    manager = IdentityManager(
        IdentityStore(),
        authority,
        replication=ReplicationState(role),
        modules=modules,
        clock=lambda: FIXED_NOW,
        **kwargs,
    )
    manager.refresh()
    return manager


def _names(identities) -> List[str]:
    return [identity.name for identity in identities]


def test_refresh_loads_records_and_connection_counts(authority: FakeAuthority) -> None:
    class Connections:
        def connection_counts(self):
            return {"alice": 3, "charlie": 2}

    manager = _manager(authority, connections=Connections())
    alice = manager.get_identity("alice")
    charlie = manager.get_identity("charlie")
    assert alice.connection_count == 3
    assert charlie.connection_count == 0
    assert manager.get_identity("bob").connection_count == 0


def test_list_search_is_substring_match(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    assert _names(manager.list_identities(search_text="ali")) == ["alice"]
    assert _names(manager.list_identities(search_text="ALI")) == ["alice"]
    assert _names(manager.list_identities(search_text="")) == ["alice", "bob", "charlie", "dave"]


def test_list_hide_revoked_preserves_order(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    identities = manager.list_identities(hide_revoked=True)
    assert _names(identities) == ["alice", "bob", "dave"]
    assert all(identity.account_status is not AccountStatus.REVOKED for identity in identities)


def test_dashboard_aggregate(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    summary = manager.get_dashboard_aggregate()
    assert summary.total_identities == 4
    assert summary.active_connections == 3
    assert summary.revoked_count == 1
    assert summary.expiring_soon_count == 1


def test_aggregate_follows_mutations(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    manager.revoke_identity("alice")
    summary = manager.get_dashboard_aggregate()
    assert summary.revoked_count == 2
    assert summary.active_connections == 1


def test_create_identity(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    identity = manager.create_identity("erin@corp.example")
    assert identity.name == "erin@corp.example"
    assert identity.account_status is AccountStatus.ACTIVE
    assert ("issue", "erin@corp.example") in authority.calls
    assert "erin@corp.example" in manager.store


@pytest.mark.parametrize("name", ["", "   ", "bad name", "semi;colon", "slash/name", None])
def test_create_rejects_invalid_names(authority: FakeAuthority, name) -> None:
    manager = _manager(authority)
    with pytest.raises(ValidationError):
        manager.create_identity(name)
    assert not [call for call in authority.calls if call[0] == "issue"]


def test_create_rejects_duplicate_before_issuance(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    with pytest.raises(ConflictError):
        manager.create_identity("alice")
    assert authority.calls == []


def test_create_failure_leaves_roster_unchanged_and_releases_lock(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    authority.fail_on.add("issue")
    before = manager.store.list()

    with pytest.raises(BackingStoreError):
        manager.create_identity("frank")

    assert manager.store.list() == before
    authority.fail_on.clear()
    assert manager.create_identity("frank").name == "frank"


def test_concurrent_creation_of_same_name(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    authority.issue_gate = threading.Event()
    outcomes: List[object] = []
    lock = threading.Lock()

    def attempt() -> None:
        try:
            result = manager.create_identity("bobby")
        except ConflictError as exc:
            result = exc
        with lock:
            outcomes.append(result)

    first = threading.Thread(target=attempt)
    second = threading.Thread(target=attempt)
    first.start()
    assert authority.issue_started.wait(timeout=5)
    second.start()
    authority.issue_gate.set()
    first.join(timeout=5)
    second.join(timeout=5)

    conflicts = [item for item in outcomes if isinstance(item, ConflictError)]
    successes = [item for item in outcomes if not isinstance(item, ConflictError)]
    assert len(successes) == 1
    assert len(conflicts) == 1
    assert [call for call in authority.calls if call == ("issue", "bobby")] == [("issue", "bobby")]


def test_replica_cannot_create_or_mutate(authority: FakeAuthority) -> None:
    manager = _manager(authority, role="replica")

    with pytest.raises(AuthorizationError):
        manager.create_identity("erin")
    with pytest.raises(AuthorizationError):
        manager.revoke_identity("alice")
    with pytest.raises(AuthorizationError):
        manager.unrevoke_identity("charlie")
    with pytest.raises(AuthorizationError):
        manager.delete_identity("charlie")
    assert authority.calls == []


def test_revoke_and_unrevoke(authority: FakeAuthority) -> None:
    manager = _manager(authority)

    revoked = manager.revoke_identity("alice")
    assert revoked.account_status is AccountStatus.REVOKED
    assert revoked.connection_count == 0

    restored = manager.unrevoke_identity("alice")
    assert restored.account_status is AccountStatus.ACTIVE


def test_action_not_allowed_for_status(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    with pytest.raises(AuthorizationError):
        manager.unrevoke_identity("alice")
    with pytest.raises(AuthorizationError):
        manager.delete_identity("alice")
    with pytest.raises(AuthorizationError):
        manager.revoke_identity("charlie")
    assert authority.calls == []


def test_unknown_identity(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    with pytest.raises(NotFoundError):
        manager.revoke_identity("mallory")


def test_revoke_failure_keeps_record(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    authority.fail_on.add("revoke")
    with pytest.raises(BackingStoreError):
        manager.revoke_identity("alice")
    assert manager.get_identity("alice").account_status is AccountStatus.ACTIVE


def test_rotate_expired_identity(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    assert manager.get_identity("dave").account_status is AccountStatus.EXPIRED
    rotated = manager.rotate_identity("dave")
    assert rotated.account_status is AccountStatus.ACTIVE


def test_delete_removes_routing_and_password(authority: FakeAuthority) -> None:
    routing = FakeRoutingStore()
    passwords = FakePasswordStore()
    routing.policies["charlie"] = RoutingPolicy(owner="charlie", assigned_address="10.8.0.10")
    passwords.passwords["charlie"] = "secret-password"
    manager = _manager(
        authority,
        modules=[Module.PASSWORD_AUTH, Module.PER_CLIENT_ROUTING],
        routing=routing,
        passwords=passwords,
    )

    manager.delete_identity("charlie")

    assert "charlie" not in manager.store
    assert "charlie" not in routing.policies
    assert "charlie" not in passwords.passwords


def test_password_auth_requires_password_on_create(authority: FakeAuthority) -> None:
    passwords = FakePasswordStore()
    manager = _manager(authority, modules=["passwdAuth"], passwords=passwords)

    with pytest.raises(ValidationError):
        manager.create_identity("erin")
    assert authority.calls == []

    manager.create_identity("erin", CreateOptions(password="hunter22"))
    assert passwords.passwords["erin"] == "hunter22"


def test_failed_issuance_discards_stored_password(authority: FakeAuthority) -> None:
    passwords = FakePasswordStore()
    manager = _manager(authority, modules=["password-auth"], passwords=passwords)
    authority.fail_on.add("issue")

    with pytest.raises(BackingStoreError):
        manager.create_identity("erin", CreateOptions(password="hunter22"))
    assert "erin" not in passwords.passwords


def test_set_password(authority: FakeAuthority) -> None:
    passwords = FakePasswordStore()
    manager = _manager(authority, modules=["password-auth"], passwords=passwords)

    manager.set_password("alice", "new-password")
    assert passwords.passwords["alice"] == "new-password"

    with pytest.raises(ValidationError):
        manager.set_password("alice", "123")


def test_set_password_requires_module(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    with pytest.raises(AuthorizationError):
        manager.set_password("alice", "new-password")


def test_routing_policy_round_trip(authority: FakeAuthority) -> None:
    routing = FakeRoutingStore()
    manager = _manager(authority, modules=["ccd"], routing=routing)
    policy = RoutingPolicy(
        owner="alice",
        assigned_address="10.8.0.100",
        custom_routes=[
            Route("192.168.2.0", "255.255.255.0", "Office"),
            Route("192.168.1.0", "255.255.255.0", "LAN"),
        ],
    )

    manager.save_routing_policy(policy)
    loaded = manager.get_routing_policy("alice")

    assert loaded.assigned_address == "10.8.0.100"
    assert [route.address for route in loaded.custom_routes] == ["192.168.2.0", "192.168.1.0"]


def test_routing_policy_validation(authority: FakeAuthority) -> None:
    manager = _manager(authority, modules=["ccd"], routing=FakeRoutingStore())
    with pytest.raises(ValidationError):
        manager.save_routing_policy(RoutingPolicy(owner="alice", assigned_address="not-an-ip"))
    with pytest.raises(ValidationError):
        manager.save_routing_policy(
            RoutingPolicy(owner="alice", custom_routes=[Route("10.0.0.0", "255.0.255.0")])
        )


def test_replica_may_view_but_not_save_routes(authority: FakeAuthority) -> None:
    routing = FakeRoutingStore()
    routing.policies["alice"] = RoutingPolicy(owner="alice", assigned_address="10.8.0.5")
    manager = _manager(authority, role="replica", modules=["ccd"], routing=routing)

    assert manager.get_routing_policy("alice").assigned_address == "10.8.0.5"
    with pytest.raises(AuthorizationError):
        manager.save_routing_policy(RoutingPolicy(owner="alice", assigned_address="10.8.0.6"))
    assert routing.policies["alice"].assigned_address == "10.8.0.5"


def test_download_config_only_for_active(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    assert "remote vpn.example.com" in manager.download_config("alice")
    with pytest.raises(AuthorizationError):
        manager.download_config("charlie")


def test_permitted_actions_for_listing(authority: FakeAuthority) -> None:
    manager = _manager(authority, modules=["password-auth"], passwords=FakePasswordStore())
    table = manager.action_table(manager.list_identities())
    assert Action.SET_PASSWORD in table["alice"]
    assert Action.UNREVOKE in table["charlie"]
    assert table["dave"] == {Action.VIEW, Action.ROTATE_CERTIFICATE, Action.DELETE}


def test_module_requires_collaborator(authority: FakeAuthority) -> None:
    with pytest.raises(ValueError):
        IdentityManager(IdentityStore(), authority, modules=["ccd"])


def test_refresh_failure_after_mutation_is_logged(authority: FakeAuthority, caplog) -> None:
    manager = _manager(authority)
    authority.fail_on.add("list_records")
    with caplog.at_level("ERROR", logger="vpnadmin.manager"):
        identity = manager.revoke_identity("alice")
    assert identity.account_status is AccountStatus.REVOKED
    assert "Refreshing identities after revocation of alice failed" in caplog.text


def test_store_initialised_directly(authority: FakeAuthority) -> None:
    store = IdentityStore([IdentityRecord(name="zed", expiration="invalid")])
    manager = IdentityManager(store, authority, clock=lambda: FIXED_NOW)
    assert _names(manager.list_identities()) == ["zed"]
    assert manager.get_dashboard_aggregate().expiring_soon_count == 0


def test_refresh_cannot_overwrite_concurrent_creation(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    authority.list_gate = threading.Event()
    errors: List[Exception] = []

    def run(operation) -> None:
        try:
            operation()
        except Exception as exc:
            errors.append(exc)

    revoker = threading.Thread(target=run, args=(lambda: manager.revoke_identity("alice"),))
    creator = threading.Thread(target=run, args=(lambda: manager.create_identity("erin"),))
    revoker.start()
    assert authority.list_started.wait(timeout=5)
    creator.start()
    creator.join(timeout=0.3)
    authority.list_gate.set()
    revoker.join(timeout=5)
    creator.join(timeout=5)

    assert errors == []
    assert "erin" in manager.store
    with pytest.raises(ConflictError):
        manager.create_identity("erin")
    assert [call for call in authority.calls if call == ("issue", "erin")] == [("issue", "erin")]


def test_delete_completes_when_cleanup_fails(authority: FakeAuthority, caplog) -> None:
    class BrokenRoutingStore(FakeRoutingStore):
        def delete(self, name: str) -> None:
            raise BackingStoreError(f"Unable to remove routing policy for '{name}'")

    passwords = FakePasswordStore()
    passwords.passwords["charlie"] = "secret-password"
    manager = _manager(
        authority,
        modules=["ccd", "password-auth"],
        routing=BrokenRoutingStore(),
        passwords=passwords,
    )

    with caplog.at_level("ERROR", logger="vpnadmin.manager"):
        manager.delete_identity("charlie")

    assert "charlie" not in manager.store
    assert "charlie" not in passwords.passwords
    assert "Removing the routing policy of deleted identity charlie failed" in caplog.text


def test_module_actions_need_a_configured_backend(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    context = OperatorContext.build("primary", ["password-auth", "ccd"])

    with pytest.raises(AuthorizationError):
        manager.set_password("alice", "new-password", context=context)
    with pytest.raises(AuthorizationError):
        manager.get_routing_policy("alice", context=context)
    with pytest.raises(AuthorizationError):
        manager.save_routing_policy(RoutingPolicy(owner="alice"), context=context)


def test_verify_credentials(authority: FakeAuthority) -> None:
    passwords = FakePasswordStore()
    passwords.passwords.update({"alice": "alice-pass", "charlie": "charlie-pass", "dave": "dave-pass"})
    manager = _manager(authority, modules=["password-auth"], passwords=passwords)

    assert manager.verify_credentials("alice", "alice-pass")
    assert not manager.verify_credentials("alice", "wrong")
    assert not manager.verify_credentials("charlie", "charlie-pass")
    assert not manager.verify_credentials("dave", "dave-pass")
    assert not manager.verify_credentials("mallory", "anything")


def test_verify_credentials_without_password_module(authority: FakeAuthority) -> None:
    manager = _manager(authority)
    assert not manager.verify_credentials("alice", "alice-pass")
