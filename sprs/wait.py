"""Wait until named processes are running."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Iterable, Optional, Union

log = logging.getLogger(__name__)

WAIT_POLL_INTERVAL = 5.0


class WaitTimeoutError(TimeoutError):
    """Raised when the awaited processes do not appear in time."""

    def __init__(self, message: str, missing: list[str]) -> None:
        super().__init__(message)
        self.missing = missing


def _fmt(names: Iterable[str]) -> str:
    return "[" + " ".join(names) + "]"


def running_process_names(proc_root: Union[str, Path] = "/proc") -> set[str]:
    """Return the set of ``comm`` names of all running processes."""
    found: set[str] = set()
    for comm in Path(proc_root).glob("*/comm"):
        try:
            name = comm.read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            continue
        if name:
            found.add(name)
    return found


def find_missing_processes(
    names: Iterable[str], running: Optional[set[str]] = None
) -> list[str]:
    """Return the names, in order, that are not among the running processes."""
    if running is None:
        running = running_process_names()
    return [name for name in names if name not in running]


def wait_for_processes(
    names: list[str],
    timeout_sec: int = 0,
    poll_interval: float = WAIT_POLL_INTERVAL,
) -> int:
    """Block until every name is running; a timeout of 0 waits forever.

    Returns the number of checks made.
    """
    if not names:
        return 0

    log.info("wait_process: waiting for processes: %s (timeout=%ds)", _fmt(names), timeout_sec)
    deadline = time.monotonic() + timeout_sec if timeout_sec > 0 else None

    checks = 0
    while True:
        checks += 1
        missing = find_missing_processes(names)
        if not missing:
            log.info("wait_process: all processes found: %s", _fmt(names))
            return checks
        log.info("wait_process: still waiting for: %s", _fmt(missing))

        if deadline is not None and time.monotonic() + poll_interval > deadline:
            raise WaitTimeoutError(
                f"wait_process: timeout after {timeout_sec}s, missing: {_fmt(missing)}",
                missing,
            )
        time.sleep(poll_interval)