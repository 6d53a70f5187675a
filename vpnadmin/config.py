"""Configuration management for the VPN identity administration service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, FrozenSet, Mapping, Optional

import yaml

from .models import Module, Role, normalise_modules


def _resolve_path(value: object, base_path: Path | None) -> Path:
    raw = Path(str(value)).expanduser()
    if raw.is_absolute() or base_path is None:
        return raw.resolve(strict=False)
    return (base_path / raw).resolve(strict=False)


def _optional_path(data: Mapping[str, object], key: str, base_path: Path | None) -> Optional[Path]:
    value = data.get(key)
    if not value:
        return None
    return _resolve_path(value, base_path)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for a single vpnadmin node."""

    pki_dir: Path
    role: Role = Role.PRIMARY
    modules: FrozenSet[Module] = field(default_factory=lambda: frozenset({Module.CORE}))
    easyrsa_binary: str = "easyrsa"
    server_name: str = "server"
    remote_host: str = "127.0.0.1"
    remote_port: int = 1194
    protocol: str = "udp"
    ccd_dir: Optional[Path] = None
    status_path: Optional[Path] = None
    password_db_path: Optional[Path] = None
    template_dir: Optional[Path] = None

    @staticmethod
    def from_dict(data: Dict[str, object], base_path: Path | None = None) -> "Settings":
        """Create :class:`Settings` from raw dictionary data."""

        if "pki_dir" not in data:
            raise ValueError("Missing required configuration field: pki_dir")

        raw_modules = data.get("modules") or []
        if isinstance(raw_modules, str):
            raw_modules = [item for item in raw_modules.split(",")]
        if not isinstance(raw_modules, (list, tuple)):
            raise ValueError("'modules' must be a list of module names")

        return Settings(
            pki_dir=_resolve_path(data["pki_dir"], base_path),
            role=Role.parse(str(data.get("role", "primary"))),
            modules=normalise_modules(raw_modules),
            easyrsa_binary=str(data.get("easyrsa_binary", "easyrsa")),
            server_name=str(data.get("server_name", "server")),
            remote_host=str(data.get("remote_host", "127.0.0.1")),
            remote_port=int(data.get("remote_port", 1194)),
            protocol=str(data.get("protocol", "udp")),
            ccd_dir=_optional_path(data, "ccd_dir", base_path),
            status_path=_optional_path(data, "status_path", base_path),
            password_db_path=_optional_path(data, "password_db_path", base_path),
            template_dir=_optional_path(data, "template_dir", base_path),
        )

    def with_environment(self, environ: Mapping[str, str]) -> "Settings":
        """Apply ``VPNADMIN_ROLE`` / ``VPNADMIN_MODULES`` overrides."""

        updated = self
        role = environ.get("VPNADMIN_ROLE")
        if role:
            updated = replace(updated, role=Role.parse(role))
        modules = environ.get("VPNADMIN_MODULES")
        if modules is not None:
            updated = replace(updated, modules=normalise_modules(modules.split(",")))
        return updated


def load_settings(config_path: Path, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load settings from a YAML file, then apply environment overrides."""

    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping")

    settings = Settings.from_dict(raw, base_path=config_path.parent)
    return settings.with_environment(os.environ if environ is None else environ)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "vpnadmin.yaml").resolve(strict=False)


__all__ = ["Settings", "load_settings", "resolve_config_path"]
