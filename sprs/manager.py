"""Supervision of the proxy core process."""

from __future__ import annotations

import json
import logging
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, Callable, Optional, Union

from .config import Config
from .cron import CronError, parse as parse_cron
from .firewall import Firewall

log = logging.getLogger(__name__)

_UINT64_LIMIT = 1 << 64
_STOP_GRACE = 5.0
_CRON_TICK = 30.0
_TUN_POLLS = 20
_TUN_POLL_INTERVAL = 0.5
_MAX_BACKOFF = 30


class LaunchError(RuntimeError):
    """Raised when the proxy core cannot be started."""


@dataclass(frozen=True)
class CpuSample:
    """CPU jiffies of one process and of the whole system."""

    utime: int = 0
    stime: int = 0
    total: int = 0


def split_cmd(s: str) -> list[str]:
    """Split a command line on spaces, honouring double quotes."""
    parts: list[str] = []
    current: list[str] = []
    in_quote = False
    for ch in s:
        if ch == '"':
            in_quote = not in_quote
        elif ch == " " and not in_quote:
            if current:
                parts.append("".join(current))
                current = []
        else:
            current.append(ch)
    if current:
        parts.append("".join(current))
    return parts


def is_alive(pid: int) -> bool:
    """Whether a process with this pid exists."""
    return Path(f"/proc/{pid}").exists()


def proc_mem_mb(pid: int, proc_root: Union[str, Path] = "/proc") -> int:
    """Resident memory of a process in MB, read from its status file."""
    status = Path(proc_root) / str(pid) / "status"
    text = status.read_text(encoding="utf-8", errors="replace")
    for line in text.split("\n"):
        if line.startswith("VmRSS:"):
            fields = line.split()
            if len(fields) < 2:
                continue
            return int(fields[1]) // 1024
    raise ValueError(f"VmRSS not found in {status}")


def _parse_uint(text: str) -> int:
    if text.isascii() and text.isdigit():
        value = int(text)
        if value < _UINT64_LIMIT:
            return value
    return 0


def proc_cpu_sample(pid: int, proc_root: Union[str, Path] = "/proc") -> CpuSample:
    """Read user and system jiffies of a process and the system total."""
    root = Path(proc_root)
    stat_path = root / str(pid) / "stat"
    data = stat_path.read_text(encoding="utf-8", errors="replace")
    # The command name may hold spaces and parentheses; fields follow the last ')'.
    rp = data.rfind(")")
    if rp < 0:
        raise ValueError(f"malformed {stat_path}")
    fields = data[rp + 1 :].split()
    if len(fields) < 13:
        raise ValueError(f"short {stat_path}")
    utime = _parse_uint(fields[11])
    stime = _parse_uint(fields[12])

    first_line = (root / "stat").read_text(encoding="utf-8").split("\n", 1)[0]
    total = sum(_parse_uint(f) for f in first_line.split()[1:]) % _UINT64_LIMIT
    return CpuSample(utime=utime, stime=stime, total=total)


def cpu_percent(prev: CpuSample, cur: CpuSample) -> float:
    """CPU usage in percent between two samples."""
    proc_delta = ((cur.utime + cur.stime) - (prev.utime + prev.stime)) % _UINT64_LIMIT
    sys_delta = (cur.total - prev.total) % _UINT64_LIMIT
    if sys_delta == 0:
        return 0.0
    return proc_delta / sys_delta * 100.0


def _stream_log(prefix: str, stream: IO[bytes]) -> None:
    with stream:
        for raw in stream:
            log.info("[%s] %s", prefix, raw.decode("utf-8", "replace").rstrip("\r\n"))


def _spawn(target: Callable[..., object], *args: object) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


def _terminate(proc: subprocess.Popen) -> None:
    try:
        proc.send_signal(signal.SIGTERM)
    except ProcessLookupError:
        pass
    try:
        proc.wait(timeout=_STOP_GRACE)
    except subprocess.TimeoutExpired:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        proc.wait()


def _exit_reason(returncode: int) -> str:
    if returncode < 0:
        try:
            return f"signal: {signal.Signals(-returncode).name}"
        except ValueError:
            return f"signal {-returncode}"
    return f"exit status {returncode}"


class Manager:
    """Runs the proxy core and keeps it alive according to the configuration.

    With ``gid`` set, the core runs as uid 0 in that group; ``None`` keeps the
    caller's credentials.
    """

    def __init__(
        self,
        cfg: Config,
        gid: Optional[int] = None,
        use_ipt: bool = False,
        firewall: Optional[Firewall] = None,
    ) -> None:
        self.cfg = cfg
        self.gid = gid
        self.use_ipt = use_ipt
        self.firewall = firewall if firewall is not None else Firewall()

        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._stopped = False
        self._restarts = 0
        self._halt = threading.Event()

    @property
    def pid(self) -> int:
        """Pid of the running core, or 0 when none is running."""
        with self._lock:
            return self._proc.pid if self._proc is not None else 0

    # ── lifecycle ──────────────────────────────────────────────────────

    def start(self) -> None:
        """Launch the core and the background watchers."""
        with self._lock:
            self._stopped = False
            self._restarts = 0
            self._halt = threading.Event()
            halt = self._halt

            self._launch()

            if self.cfg.modes().needs_tun_inbound():
                _spawn(self._wait_for_tun)
            if self.cfg.keepalive:
                _spawn(self._watch_loop, halt)
            if self.cfg.cron_restart and self.cfg.cron_expr:
                self._start_cron(halt)
            if self.cfg.max_memory_mb > 0 or self.cfg.max_cpu_pct > 0:
                _spawn(self._resource_loop, halt)

    def stop(self) -> None:
        """Stop the core and tear down the firewall."""
        with self._lock:
            self._stopped = True
            proc = self._proc
            self._halt.set()

        if proc is not None:
            log.info("process: stopping pid=%d", proc.pid)
            _terminate(proc)

        if self.use_ipt:
            self.firewall.stop_iptables()
        else:
            self.firewall.stop()
        log.info("process: stopped")

    def restart_core(self, reason: str) -> None:
        """Restart only the core process; rules and routes stay in place."""
        with self._lock:
            proc = self._proc
            # Detach first so the exit handler treats this as a replacement.
            self._proc = None

        if proc is not None:
            log.info("process: restarting core (%s), stopping pid=%d", reason, proc.pid)
            _terminate(proc)

        with self._lock:
            if self._stopped:
                return
            try:
                self._launch()
            except LaunchError as exc:
                log.warning("process: restart failed: %s", exc)

    # ── launching ──────────────────────────────────────────────────────

    def _launch(self) -> None:
        """Start the core; the caller holds the lock."""
        parts = split_cmd(self.cfg.run)
        if not parts:
            raise LaunchError("run command is empty")

        credentials: dict = {}
        if self.gid is not None:
            credentials = {"user": 0, "group": self.gid, "extra_groups": [self.gid]}
        try:
            proc = subprocess.Popen(
                parts,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **credentials,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            raise LaunchError(
                f"exec {json.dumps(parts[0], ensure_ascii=False)}: {exc}"
            ) from exc
        log.info("process: started pid=%d", proc.pid)

        assert proc.stdout is not None and proc.stderr is not None
        _spawn(_stream_log, "core/out", proc.stdout)
        _spawn(_stream_log, "core/err", proc.stderr)

        # Confirm the process did not crash right away (bad config, wrong path).
        if self.cfg.start_timeout > 0:
            time.sleep(self.cfg.start_timeout)
            if proc.poll() is not None:
                raise LaunchError(
                    f"process exited within {self.cfg.start_timeout}s of start "
                    "(check proxy config)"
                )

        self._proc = proc
        _spawn(self._on_exit, proc)

    def _on_exit(self, proc: subprocess.Popen) -> None:
        returncode = proc.wait()
        with self._lock:
            if self._proc is not proc:
                return
            self._proc = None
            stopped = self._stopped
        if stopped:
            return
        if returncode != 0:
            log.warning("process: exited with error: %s", _exit_reason(returncode))
            if self.cfg.restart_on_fail:
                self._maybe_restart("restart_on_fail")
        else:
            log.info("process: exited cleanly")

    def _maybe_restart(self, reason: str) -> None:
        with self._lock:
            if self._stopped:
                return
            if self.cfg.max_restarts > 0 and self._restarts >= self.cfg.max_restarts:
                log.warning(
                    "process: max_restarts=%d reached, giving up", self.cfg.max_restarts
                )
                return
            self._restarts += 1
            attempt = self._restarts
            halt = self._halt

        backoff = min(attempt, _MAX_BACKOFF)
        log.info("process: restart in %ds (%s, attempt %d)", backoff, reason, attempt)
        halt.wait(backoff)

        with self._lock:
            if self._stopped:
                return
            try:
                self._launch()
            except LaunchError as exc:
                log.warning("process: restart failed: %s", exc)

    # ── background watchers ────────────────────────────────────────────

    def _current(self) -> tuple[int, bool]:
        with self._lock:
            pid = self._proc.pid if self._proc is not None else 0
            return pid, self._stopped

    def _watch_loop(self, halt: threading.Event) -> None:
        while not halt.wait(self.cfg.watch_interval):
            pid, stopped = self._current()
            if stopped:
                return
            if pid == 0 or not is_alive(pid):
                log.warning("process: keepalive: process gone (pid=%d), restarting", pid)
                with self._lock:
                    self._proc = None
                self._maybe_restart("keepalive")

    def _resource_loop(self, halt: threading.Event) -> None:
        prev: Optional[CpuSample] = None
        while not halt.wait(self.cfg.resource_check_interval):
            pid, stopped = self._current()
            if stopped or pid == 0:
                continue

            if self.cfg.max_memory_mb > 0:
                try:
                    mem = proc_mem_mb(pid)
                except (OSError, ValueError) as exc:
                    log.warning("process: resource: read mem pid=%d: %s", pid, exc)
                else:
                    if mem > self.cfg.max_memory_mb:
                        log.warning(
                            "process: memory limit exceeded: %dMB > %dMB, restarting core",
                            mem,
                            self.cfg.max_memory_mb,
                        )
                        _spawn(
                            self.restart_core,
                            f"memory limit {self.cfg.max_memory_mb}MB exceeded ({mem}MB)",
                        )
                        prev = None
                        continue

            if self.cfg.max_cpu_pct > 0:
                try:
                    cur = proc_cpu_sample(pid)
                except (OSError, ValueError) as exc:
                    log.warning("process: resource: read cpu pid=%d: %s", pid, exc)
                    prev = None
                    continue
                if prev is not None and prev.total > 0:
                    pct = cpu_percent(prev, cur)
                    if pct > self.cfg.max_cpu_pct:
                        log.warning(
                            "process: CPU limit exceeded: %.1f%% > %.1f%%, restarting core",
                            pct,
                            self.cfg.max_cpu_pct,
                        )
                        _spawn(
                            self.restart_core,
                            f"CPU limit {self.cfg.max_cpu_pct:.1f}% exceeded ({pct:.1f}%)",
                        )
                        prev = None
                        continue
                prev = cur

    def _start_cron(self, halt: threading.Event) -> None:
        try:
            entry = parse_cron(self.cfg.cron_expr)
        except CronError as exc:
            log.warning("process: invalid cron %r: %s", self.cfg.cron_expr, exc)
            return
        _spawn(self._cron_loop, halt, entry)

    def _cron_loop(self, halt: threading.Event, entry) -> None:
        last_fired: Optional[datetime] = None
        while not halt.wait(_CRON_TICK):
            rounded = datetime.now().replace(second=0, microsecond=0)
            if entry.matches(rounded) and (last_fired is None or rounded > last_fired):
                last_fired = rounded
                log.info("process: cron %r fired", self.cfg.cron_expr)
                _spawn(self.restart_core, "cron")

    def _wait_for_tun(self) -> None:
        dev = self.cfg.tun_name
        for _ in range(_TUN_POLLS):
            time.sleep(_TUN_POLL_INTERVAL)
            if Path("/sys/class/net", dev).exists():
                log.info("process: tun device %r appeared, applying tun routes", dev)
                self.firewall.apply_tun_routes()
                return
        log.warning("process: warn: tun device %r did not appear within 10s", dev)