"""Connection counts read from the OpenVPN server status file."""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import Dict

from .errors import BackingStoreError

logger = logging.getLogger("vpnadmin.status")

_UNDEF_NAME = "UNDEF"


def parse_status(text: str) -> Dict[str, int]:
    """Count live sessions per common name.

    Understands ``status-version`` 1 (the classic client list table) as well
    as the ``CLIENT_LIST`` rows of versions 2 (comma separated) and 3 (tab
    separated).
    """

    counts: Counter[str] = Counter()
    in_classic_table = False
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        if line.startswith("CLIENT_LIST"):
            separator = "\t" if "\t" in line else ","
            fields = line.split(separator)
            if len(fields) > 1 and fields[1] and fields[1] != _UNDEF_NAME:
                counts[fields[1]] += 1
            continue

        if line.startswith("Common Name,"):
            in_classic_table = True
            continue
        if line in {"ROUTING TABLE", "GLOBAL STATS", "END"}:
            in_classic_table = False
            continue
        if in_classic_table:
            name = line.split(",", 1)[0]
            if name and name != _UNDEF_NAME:
                counts[name] += 1
    return dict(counts)


class StatusFileSource:
    """Connection source backed by the file written by ``--status``."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def connection_counts(self) -> Dict[str, int]:
        try:
            text = self._path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            logger.warning("OpenVPN status file %s does not exist", self._path)
            return {}
        except OSError as exc:
            raise BackingStoreError(f"Unable to read status file {self._path}: {exc}") from exc
        return parse_status(text)


__all__ = ["StatusFileSource", "parse_status"]
