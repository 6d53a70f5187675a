"""Certificate authority collaborators backed by easy-rsa."""
from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .commands import CommandResult, CommandRunner
from .errors import BackingStoreError, NotFoundError
from .models import CreateOptions, IdentityRecord

logger = logging.getLogger("vpnadmin.authority")

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
CLIENT_TEMPLATE_NAME = "client.conf.j2"

_CN_PATTERN = re.compile(r"/CN=([^/]+)")
_PEM_CERTIFICATE = re.compile(
    r"-----BEGIN CERTIFICATE-----.*?-----END CERTIFICATE-----", re.DOTALL
)


class CertificateAuthority(Protocol):
    """Operations the identity core delegates to the certificate tooling."""

    def issue(self, name: str, options: CreateOptions) -> None: ...

    def revoke(self, name: str) -> None: ...

    def unrevoke(self, name: str) -> None: ...

    def rotate(self, name: str) -> None: ...

    def delete(self, name: str) -> None: ...

    def list_records(self) -> List[IdentityRecord]: ...

    def render_client_config(self, name: str) -> str: ...


@dataclass
class IndexEntry:
    """One row of the easy-rsa ``index.txt`` database."""

    flag: str
    expiration: str
    revocation: str
    serial: str
    filename: str
    subject: str

    @property
    def common_name(self) -> Optional[str]:
        match = _CN_PATTERN.search(self.subject)
        return match.group(1) if match else None

    def to_line(self) -> str:
        return "\t".join(
            [self.flag, self.expiration, self.revocation, self.serial, self.filename, self.subject]
        )


def parse_index(text: str) -> List[IndexEntry]:
    entries: List[IndexEntry] = []
    for raw_line in text.splitlines():
        if not raw_line.strip():
            continue
        fields = raw_line.split("\t")
        if len(fields) < 6:
            logger.warning("Skipping malformed index.txt line: %r", raw_line)
            continue
        flag, expiration, revocation, serial, filename = fields[:5]
        subject = "\t".join(fields[5:])
        entries.append(IndexEntry(flag, expiration, revocation, serial, filename, subject))
    return entries


def records_from_index(entries: Sequence[IndexEntry], *, server_name: str = "server") -> List[IdentityRecord]:
    """Collapse index rows into one record per common name.

    A valid certificate wins over revoked ones for the same name; otherwise the
    most recent row is kept.
    """

    selected: Dict[str, IndexEntry] = {}
    for entry in entries:
        name = entry.common_name
        if not name or name == server_name:
            continue
        current = selected.get(name)
        if current is not None and current.flag == "V" and entry.flag != "V":
            continue
        selected[name] = entry

    records: List[IdentityRecord] = []
    for name, entry in selected.items():
        revocation = entry.revocation.split(",", 1)[0].strip() if entry.flag == "R" else None
        records.append(
            IdentityRecord(
                name=name,
                expiration=entry.expiration or None,
                revocation=revocation or None,
                serial=entry.serial or None,
            )
        )
    records.sort(key=lambda record: record.name)
    return records


def _extract_certificate(text: str) -> str:
    match = _PEM_CERTIFICATE.search(text)
    return match.group(0) if match else text.strip()


class EasyRsaAuthority:
    """Drive an easy-rsa PKI through its command line interface."""

    def __init__(
        self,
        pki_dir: Path,
        *,
        runner: Optional[CommandRunner] = None,
        easyrsa_binary: str = "easyrsa",
        server_name: str = "server",
        remote_host: str = "127.0.0.1",
        remote_port: int = 1194,
        protocol: str = "udp",
        template_dir: Optional[Path] = None,
        password_auth: bool = False,
    ) -> None:
        self._pki_dir = pki_dir
        self._runner = runner or CommandRunner(env={"EASYRSA_PKI": str(pki_dir)})
        self._binary = easyrsa_binary
        self._server_name = server_name
        self._remote_host = remote_host
        self._remote_port = remote_port
        self._protocol = protocol
        self._password_auth = password_auth
        self._templates = Environment(
            loader=FileSystemLoader(str(template_dir or TEMPLATE_DIR)),
            keep_trailing_newline=True,
            undefined=StrictUndefined,
            autoescape=False,
        )

    @property
    def index_path(self) -> Path:
        return self._pki_dir / "index.txt"

    # ------------------------------------------------------------------
    # Command helpers
    # ------------------------------------------------------------------
    def _run(self, *args: str) -> CommandResult:
        try:
            result = self._runner.run([self._binary, "--batch", *args])
        except OSError as exc:
            raise BackingStoreError(f"Unable to execute {self._binary}: {exc}") from exc
        if not result.succeeded:
            logger.error("easy-rsa command failed: %s", result.describe_failure())
            raise BackingStoreError(result.describe_failure(), result)
        return result

    def _generate_crl(self) -> None:
        self._run("gen-crl")

    def _read_index(self) -> List[IndexEntry]:
        try:
            text = self.index_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise BackingStoreError(f"Unable to read {self.index_path}: {exc}") from exc
        return parse_index(text)

    def _write_index(self, entries: Sequence[IndexEntry]) -> None:
        content = "".join(entry.to_line() + "\n" for entry in entries)
        try:
            handle, temp_name = tempfile.mkstemp(dir=str(self._pki_dir), prefix=".index-")
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                stream.write(content)
            os.replace(temp_name, self.index_path)
        except OSError as exc:
            raise BackingStoreError(f"Unable to update {self.index_path}: {exc}") from exc

    def _client_files(self, name: str) -> List[Path]:
        return [
            self._pki_dir / "issued" / f"{name}.crt",
            self._pki_dir / "private" / f"{name}.key",
            self._pki_dir / "reqs" / f"{name}.req",
        ]

    def _archive_client_files(self, name: str) -> None:
        suffix = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        for path in self._client_files(name):
            if path.exists():
                path.rename(path.with_name(f"{path.name}.rotated-{suffix}"))

    # ------------------------------------------------------------------
    # CertificateAuthority protocol
    # ------------------------------------------------------------------
    def issue(self, name: str, options: CreateOptions) -> None:
        self._run("build-client-full", name, "nopass")
        logger.info("Issued client certificate for %s", name)

    def revoke(self, name: str) -> None:
        self._run("revoke", name)
        self._generate_crl()
        logger.info("Revoked client certificate for %s", name)

    def unrevoke(self, name: str) -> None:
        entries = self._read_index()
        target: Optional[IndexEntry] = None
        for entry in entries:
            if entry.common_name == name and entry.flag == "R":
                target = entry
        if target is None:
            raise NotFoundError(name)

        target.flag = "V"
        target.revocation = ""
        self._restore_revoked_files(name, target.serial)
        self._write_index(entries)
        self._generate_crl()
        logger.info("Restored client certificate for %s", name)

    def _restore_revoked_files(self, name: str, serial: str) -> None:
        moves = (
            (self._pki_dir / "revoked" / "certs_by_serial" / f"{serial}.crt", self._pki_dir / "issued" / f"{name}.crt"),
            (self._pki_dir / "revoked" / "private_by_serial" / f"{serial}.key", self._pki_dir / "private" / f"{name}.key"),
            (self._pki_dir / "revoked" / "reqs_by_serial" / f"{serial}.req", self._pki_dir / "reqs" / f"{name}.req"),
        )
        for source, destination in moves:
            if source.exists() and not destination.exists():
                try:
                    source.rename(destination)
                except OSError as exc:
                    raise BackingStoreError(f"Unable to restore {source}: {exc}") from exc

    def rotate(self, name: str) -> None:
        self._archive_client_files(name)
        self._run("build-client-full", name, "nopass")
        self._generate_crl()
        logger.info("Rotated client certificate for %s", name)

    def delete(self, name: str) -> None:
        entries = self._read_index()
        remaining = [entry for entry in entries if entry.common_name != name]
        if len(remaining) == len(entries):
            raise NotFoundError(name)
        self._write_index(remaining)
        for path in self._client_files(name):
            if path.exists():
                path.unlink()
        self._generate_crl()
        logger.info("Deleted client certificate for %s", name)

    def list_records(self) -> List[IdentityRecord]:
        return records_from_index(self._read_index(), server_name=self._server_name)

    def render_client_config(self, name: str) -> str:
        try:
            ca_cert = (self._pki_dir / "ca.crt").read_text(encoding="utf-8")
            client_cert = (self._pki_dir / "issued" / f"{name}.crt").read_text(encoding="utf-8")
            client_key = (self._pki_dir / "private" / f"{name}.key").read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotFoundError(name) from exc
        except OSError as exc:
            raise BackingStoreError(f"Unable to read certificate material for '{name}': {exc}") from exc

        tls_auth_path = self._pki_dir / "ta.key"
        tls_auth = tls_auth_path.read_text(encoding="utf-8").strip() if tls_auth_path.exists() else None

        template = self._templates.get_template(CLIENT_TEMPLATE_NAME)
        return template.render(
            name=name,
            remote_host=self._remote_host,
            remote_port=self._remote_port,
            protocol=self._protocol,
            password_auth=self._password_auth,
            ca_cert=ca_cert.strip(),
            client_cert=_extract_certificate(client_cert),
            client_key=client_key.strip(),
            tls_auth=tls_auth,
        )


__all__ = [
    "CLIENT_TEMPLATE_NAME",
    "CertificateAuthority",
    "EasyRsaAuthority",
    "IndexEntry",
    "TEMPLATE_DIR",
    "parse_index",
    "records_from_index",
]
