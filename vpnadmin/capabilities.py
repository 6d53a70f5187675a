"""Policy table mapping operator role, modules and identity status to actions.

This is the single place where the permitted action set is decided. The HTTP
layer and the identity manager only query it.
"""

from __future__ import annotations

from typing import AbstractSet, Dict, FrozenSet

from .errors import AuthorizationError
from .models import AccountStatus, Action, Module, OperatorContext, Role

MUTATING_ACTIONS: FrozenSet[Action] = frozenset(
    {
        Action.SET_PASSWORD,
        Action.REVOKE,
        Action.UNREVOKE,
        Action.ROTATE_CERTIFICATE,
        Action.DELETE,
    }
)

_PRIMARY_BASE: Dict[AccountStatus, FrozenSet[Action]] = {
    AccountStatus.ACTIVE: frozenset({Action.VIEW, Action.DOWNLOAD_CONFIG, Action.REVOKE}),
    AccountStatus.REVOKED: frozenset(
        {Action.VIEW, Action.UNREVOKE, Action.ROTATE_CERTIFICATE, Action.DELETE}
    ),
    AccountStatus.EXPIRED: frozenset({Action.VIEW, Action.ROTATE_CERTIFICATE, Action.DELETE}),
}

_MODULE_ACTIONS: Dict[Module, Action] = {
    Module.PASSWORD_AUTH: Action.SET_PASSWORD,
    Module.PER_CLIENT_ROUTING: Action.MANAGE_ROUTES,
}


def permitted_actions(
    role: Role,
    modules: AbstractSet[Module],
    status: AccountStatus,
) -> FrozenSet[Action]:
    """Return the actions an operator may take on an identity in ``status``.

    Replicas only ever receive read-only capabilities. ``MANAGE_ROUTES`` on a
    replica means the routes may be viewed, never saved.
    """

    if role is Role.REPLICA:
        if status is not AccountStatus.ACTIVE:
            return frozenset({Action.VIEW})
        actions = {Action.VIEW, Action.DOWNLOAD_CONFIG}
        if Module.PER_CLIENT_ROUTING in modules:
            actions.add(Action.MANAGE_ROUTES)
        return frozenset(actions)

    actions = set(_PRIMARY_BASE[status])
    if status is AccountStatus.ACTIVE:
        for module, action in _MODULE_ACTIONS.items():
            if module in modules:
                actions.add(action)
    return frozenset(actions)


def actions_for(context: OperatorContext, status: AccountStatus) -> FrozenSet[Action]:
    return permitted_actions(context.role, context.enabled_modules, status)


def creation_permitted(role: Role) -> bool:
    """Only the primary node may originate new identities."""

    return role is Role.PRIMARY


def ensure_permitted(
    context: OperatorContext,
    status: AccountStatus,
    action: Action,
    *,
    write: bool = False,
) -> None:
    """Raise :class:`AuthorizationError` unless ``action`` is allowed.

    ``write`` marks the saving variant of an action that is also available
    read-only (route management), which requires the primary role.
    """

    allowed = actions_for(context, status)
    if action not in allowed:
        raise AuthorizationError(
            f"Action '{action.value}' is not permitted for {status.value} identities "
            f"on a {context.role.value} node"
        )
    if (write or action in MUTATING_ACTIONS) and context.role is not Role.PRIMARY:
        raise AuthorizationError(f"Replica nodes cannot perform '{action.value}'")


def ensure_creation_permitted(context: OperatorContext) -> None:
    if not creation_permitted(context.role):
        raise AuthorizationError("Replica nodes cannot create identities")


__all__ = [
    "MUTATING_ACTIONS",
    "actions_for",
    "creation_permitted",
    "ensure_creation_permitted",
    "ensure_permitted",
    "permitted_actions",
]
