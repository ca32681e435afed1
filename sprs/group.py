"""Ensure the system group whose processes bypass the proxy exists."""

from __future__ import annotations

import grp
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Union

log = logging.getLogger(__name__)

GROUP_NAME = "sprs"
GROUP_FILE = "/etc/group"

_UINT32_MAX = (1 << 32) - 1


class GroupError(RuntimeError):
    """Raised when the group cannot be found or created."""


def _parse_gid(text: str) -> int:
    if not text or not text.isascii() or not text.isdigit():
        raise ValueError(text)
    value = int(text)
    if value > _UINT32_MAX:
        raise ValueError(text)
    return value


def _lookup_gid(name: str) -> int:
    gid = grp.getgrnam(name).gr_gid
    if not 0 <= gid <= _UINT32_MAX:
        raise GroupError(f"gid {gid} out of range")
    return gid


def ensure() -> int:
    """Look up or create the proxy group and return its GID."""
    try:
        return _lookup_gid(GROUP_NAME)
    except KeyError:
        pass

    log.info("group: %r not found, creating", GROUP_NAME)

    groupadd = shutil.which("groupadd")
    if groupadd is not None:
        try:
            result = subprocess.run(
                [groupadd, "--system", GROUP_NAME],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise GroupError(f"groupadd: {exc}") from exc
        if result.returncode != 0:
            output = (result.stdout or "").strip()
            raise GroupError(
                f"groupadd: exit status {result.returncode} (output: {output})"
            )
        try:
            gid = _lookup_gid(GROUP_NAME)
        except KeyError as exc:
            raise GroupError(f"lookup group after create: {exc}") from exc
        log.info("group: created %r (gid=%d)", GROUP_NAME, gid)
        return gid

    return write_group_entry(GROUP_NAME, GROUP_FILE)


def write_group_entry(name: str, group_file: Union[str, Path] = GROUP_FILE) -> int:
    """Append a group entry with the lowest free GID from 500 upward."""
    path = Path(group_file)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise GroupError(f"read {group_file}: {exc}") from exc

    used: set[int] = set()
    for line in text.split("\n"):
        parts = line.split(":")
        if len(parts) < 3:
            continue
        try:
            used.add(_parse_gid(parts[2]))
        except ValueError:
            continue

    chosen = next((gid for gid in range(500, 65000) if gid not in used), None)
    if chosen is None:
        raise GroupError("no free GID available")

    try:
        with path.open("a", encoding="utf-8") as f:
            f.write(f"{name}:x:{chosen}:\n")
    except OSError as exc:
        raise GroupError(f"write group entry: {exc}") from exc
    log.info("group: wrote %r gid=%d to %s", name, chosen, group_file)
    return chosen