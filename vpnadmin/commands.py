"""Thin wrapper around the external certificate tooling processes."""
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

logger = logging.getLogger("vpnadmin.commands")


@dataclass
class CommandResult:
    """Result of an executed local command."""

    command: Sequence[str]
    exit_status: int
    stdout: str
    stderr: str

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0

    def describe_failure(self) -> str:
        detail = (self.stderr or self.stdout).strip()
        base = f"{' '.join(self.command)} exited with status {self.exit_status}"
        return f"{base}: {detail}" if detail else base


class CommandRunner:
    """Execute blocking commands and capture their output."""

    def __init__(
        self,
        *,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._cwd = cwd
        self._env = dict(env) if env else None
        self._timeout = timeout

    def run(self, command: Sequence[str]) -> CommandResult:
        """Run ``command`` and return its result without raising on failure."""

        env = None
        if self._env is not None:
            env = dict(os.environ)
            env.update(self._env)

        logger.debug("Running %s", " ".join(command))
        completed = subprocess.run(
            list(command),
            cwd=str(self._cwd) if self._cwd else None,
            env=env,
            capture_output=True,
            text=True,
            timeout=self._timeout,
            check=False,
        )
        return CommandResult(
            command=list(command),
            exit_status=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )


__all__ = ["CommandResult", "CommandRunner"]
