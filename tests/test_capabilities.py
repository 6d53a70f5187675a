"""Tests for the role/module/status capability table."""

from __future__ import annotations

import itertools
import unittest

from vpnadmin.capabilities import (
    MUTATING_ACTIONS,
    creation_permitted,
    ensure_permitted,
    permitted_actions,
)
from vpnadmin.errors import AuthorizationError
from vpnadmin.models import AccountStatus, Action, Module, OperatorContext, Role, normalise_modules

ALL_MODULE_SETS = [
    normalise_modules(combination)
    for size in range(3)
    for combination in itertools.combinations([Module.PASSWORD_AUTH, Module.PER_CLIENT_ROUTING], size)
]


class CapabilityMatrixTests(unittest.TestCase):
    def test_primary_active_base_actions(self) -> None:
        actions = permitted_actions(Role.PRIMARY, normalise_modules([]), AccountStatus.ACTIVE)
        self.assertEqual(actions, {Action.VIEW, Action.DOWNLOAD_CONFIG, Action.REVOKE})

    def test_password_module_adds_set_password(self) -> None:
        with_module = permitted_actions(
            Role.PRIMARY, normalise_modules([Module.PASSWORD_AUTH]), AccountStatus.ACTIVE
        )
        without_module = permitted_actions(Role.PRIMARY, normalise_modules([]), AccountStatus.ACTIVE)
        self.assertIn(Action.SET_PASSWORD, with_module)
        self.assertNotIn(Action.SET_PASSWORD, without_module)

    def test_routing_module_adds_manage_routes(self) -> None:
        actions = permitted_actions(
            Role.PRIMARY,
            normalise_modules(["passwdAuth", "ccd"]),
            AccountStatus.ACTIVE,
        )
        self.assertTrue({Action.DOWNLOAD_CONFIG, Action.SET_PASSWORD, Action.MANAGE_ROUTES, Action.REVOKE} <= actions)

    def test_revoked_actions_are_module_independent(self) -> None:
        for modules in ALL_MODULE_SETS:
            actions = permitted_actions(Role.PRIMARY, modules, AccountStatus.REVOKED)
            self.assertEqual(
                actions,
                {Action.VIEW, Action.UNREVOKE, Action.ROTATE_CERTIFICATE, Action.DELETE},
            )

    def test_expired_actions(self) -> None:
        for modules in ALL_MODULE_SETS:
            actions = permitted_actions(Role.PRIMARY, modules, AccountStatus.EXPIRED)
            self.assertEqual(actions, {Action.VIEW, Action.ROTATE_CERTIFICATE, Action.DELETE})

    def test_replica_never_receives_mutating_actions(self) -> None:
        for modules, status in itertools.product(ALL_MODULE_SETS, list(AccountStatus)):
            actions = permitted_actions(Role.REPLICA, modules, status)
            self.assertFalse(actions & MUTATING_ACTIONS, (modules, status))
            self.assertNotIn(Action.REVOKE, actions)
            self.assertNotIn(Action.SET_PASSWORD, actions)

    def test_replica_active_is_read_only(self) -> None:
        plain = permitted_actions(Role.REPLICA, normalise_modules([]), AccountStatus.ACTIVE)
        routed = permitted_actions(
            Role.REPLICA,
            normalise_modules([Module.PASSWORD_AUTH, Module.PER_CLIENT_ROUTING]),
            AccountStatus.ACTIVE,
        )
        self.assertEqual(plain, {Action.VIEW, Action.DOWNLOAD_CONFIG})
        self.assertEqual(routed, {Action.VIEW, Action.DOWNLOAD_CONFIG, Action.MANAGE_ROUTES})

    def test_replica_cannot_save_routes(self) -> None:
        context = OperatorContext.build("slave", ["ccd"])
        ensure_permitted(context, AccountStatus.ACTIVE, Action.MANAGE_ROUTES)
        with self.assertRaises(AuthorizationError):
            ensure_permitted(context, AccountStatus.ACTIVE, Action.MANAGE_ROUTES, write=True)

    def test_primary_can_save_routes(self) -> None:
        context = OperatorContext.build("master", ["ccd"])
        ensure_permitted(context, AccountStatus.ACTIVE, Action.MANAGE_ROUTES, write=True)

    def test_ensure_permitted_rejects_actions_outside_the_table(self) -> None:
        context = OperatorContext.build(Role.PRIMARY)
        with self.assertRaises(AuthorizationError):
            ensure_permitted(context, AccountStatus.ACTIVE, Action.UNREVOKE)
        with self.assertRaises(AuthorizationError):
            ensure_permitted(context, AccountStatus.ACTIVE, Action.SET_PASSWORD)

    def test_only_primary_creates(self) -> None:
        self.assertTrue(creation_permitted(Role.PRIMARY))
        self.assertFalse(creation_permitted(Role.REPLICA))

    def test_core_module_is_always_enabled(self) -> None:
        context = OperatorContext.build("primary", [])
        self.assertIn(Module.CORE, context.enabled_modules)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
