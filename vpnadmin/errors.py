"""Exceptions raised by the identity lifecycle core."""
from __future__ import annotations

from typing import Optional

from .commands import CommandResult


class IdentityError(Exception):
    """Base class for every recoverable identity operation failure."""


class ValidationError(IdentityError, ValueError):
    """Raised when a request is malformed (bad name, missing field)."""


class ConflictError(IdentityError):
    """Raised when an identity with the requested name already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Identity '{name}' already exists")
        self.name = name


class NotFoundError(IdentityError, LookupError):
    """Raised when an operation targets an unknown identity."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Identity '{name}' not found")
        self.name = name

    def __str__(self) -> str:
        return str(self.args[0])


class BackingStoreError(IdentityError, RuntimeError):
    """Raised when the certificate authority or a persistence call fails."""

    def __init__(self, message: str, result: Optional[CommandResult] = None) -> None:
        super().__init__(message)
        self.result = result


class AuthorizationError(IdentityError, PermissionError):
    """Raised when the caller's role or modules do not allow an action."""


__all__ = [
    "AuthorizationError",
    "BackingStoreError",
    "ConflictError",
    "IdentityError",
    "NotFoundError",
    "ValidationError",
]
