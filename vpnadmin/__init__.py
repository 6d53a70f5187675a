"""Lifecycle and authorization core for certificate-backed VPN identities."""

from __future__ import annotations

from typing import Any

from .lifecycle import aggregate, classify
from .manager import IdentityManager
from .store import IdentityStore


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the HTTP API application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "IdentityManager",
    "IdentityStore",
    "aggregate",
    "classify",
    "create_app",
]
