"""SQLite-backed password storage for identities using password authentication."""
from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from passlib.context import CryptContext

from .errors import BackingStoreError, ValidationError

PASSWORD_MIN_LENGTH = 6

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_password_db_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the password database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "passwords.sqlite3").resolve(strict=False)


def _current_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def validate_password(password: Optional[str]) -> str:
    if not password:
        raise ValidationError("Password must not be empty")
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    return password


class PasswordStore:
    """Persist password hashes keyed by identity name."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        """Create the password table if it does not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS identity_passwords (
                    name TEXT PRIMARY KEY,
                    password_hash TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    def set_password(self, name: str, password: str) -> None:
        password_hash = _pwd_context.hash(validate_password(password))
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identity_passwords (name, password_hash, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        password_hash = excluded.password_hash,
                        updated_at = excluded.updated_at
                    """,
                    (name, password_hash, _current_timestamp()),
                )
        except sqlite3.Error as exc:
            raise BackingStoreError(f"Unable to store password for '{name}': {exc}") from exc

    def verify(self, name: str, password: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM identity_passwords WHERE name = ?",
                (name,),
            ).fetchone()
        if row is None:
            return False
        try:
            return _pwd_context.verify(password, row["password_hash"])
        except ValueError:
            return False

    def delete(self, name: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM identity_passwords WHERE name = ?", (name,))
        except sqlite3.Error as exc:
            raise BackingStoreError(f"Unable to remove password for '{name}': {exc}") from exc


__all__ = ["PASSWORD_MIN_LENGTH", "PasswordStore", "resolve_password_db_path", "validate_password"]
