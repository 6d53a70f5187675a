"""Client-config-dir persistence for per-client routing policies."""

from __future__ import annotations

import ipaddress
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional

from .errors import BackingStoreError, ValidationError
from .models import Route, RoutingPolicy

logger = logging.getLogger("vpnadmin.ccd")

_IFCONFIG_PUSH = re.compile(r"^ifconfig-push\s+(\S+)\s+(\S+)\s*$")
_PUSH_ROUTE = re.compile(r'^push\s+"route\s+(\S+)\s+(\S+)"\s*(?:#\s*(.*))?$')
_DEFAULT_CLIENT_MASK = "255.255.255.0"


def _validate_address(value: str, *, field_name: str) -> str:
    cleaned = value.strip()
    try:
        ipaddress.ip_address(cleaned)
    except ValueError as exc:
        raise ValidationError(f"{field_name} '{value}' is not a valid IP address") from exc
    return cleaned


def _validate_mask(value: str) -> str:
    cleaned = value.strip()
    try:
        ipaddress.IPv4Network(f"0.0.0.0/{cleaned}")
    except ValueError as exc:
        raise ValidationError(f"'{value}' is not a valid netmask") from exc
    return cleaned


def validate_policy(policy: RoutingPolicy) -> RoutingPolicy:
    """Return a normalised copy of ``policy`` or raise :class:`ValidationError`."""

    assigned: Optional[str] = None
    if policy.assigned_address and policy.assigned_address.strip():
        assigned = _validate_address(policy.assigned_address, field_name="Client address")

    routes: List[Route] = []
    for route in policy.custom_routes:
        description = " ".join((route.description or "").split())
        routes.append(
            Route(
                address=_validate_address(route.address, field_name="Route address"),
                mask=_validate_mask(route.mask),
                description=description,
            )
        )
    return RoutingPolicy(owner=policy.owner, assigned_address=assigned, custom_routes=routes)


def render_policy(policy: RoutingPolicy, *, client_mask: str = _DEFAULT_CLIENT_MASK) -> str:
    lines: List[str] = []
    if policy.assigned_address:
        lines.append(f"ifconfig-push {policy.assigned_address} {client_mask}")
    for route in policy.custom_routes:
        line = f'push "route {route.address} {route.mask}"'
        if route.description:
            line += f" # {route.description}"
        lines.append(line)
    return "\n".join(lines) + ("\n" if lines else "")


def parse_policy(owner: str, text: str) -> RoutingPolicy:
    """Parse a ccd file; unrecognised directives are ignored."""

    assigned: Optional[str] = None
    routes: List[Route] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _IFCONFIG_PUSH.match(line)
        if match:
            assigned = match.group(1)
            continue
        match = _PUSH_ROUTE.match(line)
        if match:
            routes.append(
                Route(
                    address=match.group(1),
                    mask=match.group(2),
                    description=(match.group(3) or "").strip(),
                )
            )
    return RoutingPolicy(owner=owner, assigned_address=assigned, custom_routes=routes)


class CcdPolicyStore:
    """Reads and writes one ccd file per identity under ``directory``."""

    def __init__(self, directory: Path, *, client_mask: str = _DEFAULT_CLIENT_MASK) -> None:
        self._directory = directory
        self._client_mask = client_mask

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, name: str) -> Path:
        return self._directory / name

    def load(self, name: str) -> RoutingPolicy:
        path = self._path(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return RoutingPolicy(owner=name)
        except OSError as exc:
            raise BackingStoreError(f"Unable to read routing policy for '{name}': {exc}") from exc
        return parse_policy(name, text)

    def save(self, policy: RoutingPolicy) -> None:
        content = render_policy(policy, client_mask=self._client_mask)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            handle, temp_name = tempfile.mkstemp(dir=str(self._directory), prefix=".ccd-")
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                stream.write(content)
            os.replace(temp_name, self._path(policy.owner))
        except OSError as exc:
            raise BackingStoreError(
                f"Unable to write routing policy for '{policy.owner}': {exc}"
            ) from exc
        logger.info("Saved %d route(s) for %s", len(policy.custom_routes), policy.owner)

    def delete(self, name: str) -> None:
        try:
            self._path(name).unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise BackingStoreError(f"Unable to remove routing policy for '{name}': {exc}") from exc


__all__ = ["CcdPolicyStore", "parse_policy", "render_policy", "validate_policy"]
