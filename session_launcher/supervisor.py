"""Detached launches of the session's managed processes.

A managed process is started in its own session (no controlling terminal,
SIGHUP ignored), with stdin from /dev/null and stdout+stderr appended to a
dedicated log file. The supervisor does not wait for, poll, or restart the
children: launches are fire-and-forget. ``wait_for_path`` is available for
callers that want a readiness probe on a socket or PID file.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import SpawnError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessSpec:
    name: str
    argv: Sequence[str]
    log_path: Path
    truncate_log: bool = False
    log_mode: Optional[int] = None
    cwd: Optional[Path] = None


@dataclass
class ManagedProcess:
    name: str
    argv: List[str]
    pid: int
    pgid: Optional[int]
    log_path: Optional[Path]
    started_ts: float
    popen: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)


def _detach_child() -> None:
    # Runs in the child after setsid(); terminal hangups must not reach it.
    signal.signal(signal.SIGHUP, signal.SIG_IGN)


def process_group(pid: int) -> Optional[int]:
    try:
        return os.getpgid(int(pid))
    except (ProcessLookupError, PermissionError):
        return None


def resolve_executable(name: str, cmd: str, env: Optional[Mapping[str, str]] = None) -> str:
    search = (env or os.environ).get("PATH")
    exe = shutil.which(cmd, path=search)
    if not exe:
        raise SpawnError(name, f"{cmd!r} not found on PATH")
    return exe


def prepare_log(path: str | Path, *, truncate: bool = False, mode: Optional[int] = None) -> Path:
    """Make the log file ready for appending.

    With ``truncate`` the file is emptied (or created) exactly once here and its
    mode is applied before anything is written to it.
    """
    p = Path(path)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        if truncate:
            with p.open("wb"):
                pass
        if mode is not None:
            if not p.exists():
                p.touch()
            os.chmod(p, mode)
    except OSError as e:
        raise SpawnError(p.name, f"cannot prepare log {p}: {e}") from e
    return p


def spawn_detached(spec: ProcessSpec, env: Optional[Mapping[str, str]] = None) -> ManagedProcess:
    argv = [str(a) for a in spec.argv]
    if not argv:
        raise SpawnError(spec.name, "empty command")
    exe = resolve_executable(spec.name, argv[0], env)
    log_path = prepare_log(spec.log_path, truncate=spec.truncate_log, mode=spec.log_mode)

    logger.info("starting %s: %s", spec.name, " ".join(argv))
    logger.debug("%s logs -> %s", spec.name, log_path)
    try:
        log_file = open(log_path, "ab", buffering=0)
    except OSError as e:
        raise SpawnError(spec.name, f"cannot open log {log_path}: {e}") from e
    try:
        p = subprocess.Popen(
            [exe, *argv[1:]],
            cwd=str(spec.cwd) if spec.cwd else None,
            env=dict(env) if env is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            preexec_fn=_detach_child,
            close_fds=True,
        )
    except OSError as e:
        raise SpawnError(spec.name, str(e)) from e
    finally:
        log_file.close()

    return ManagedProcess(
        name=spec.name,
        argv=argv,
        pid=int(p.pid),
        # start_new_session makes the child its own group leader.
        pgid=int(p.pid),
        log_path=log_path,
        started_ts=time.time(),
        popen=p,
    )


def wait_for_path(path: str | Path, timeout_s: float, *, poll_s: float = 0.1) -> bool:
    p = Path(path)
    deadline = time.monotonic() + max(0.0, float(timeout_s))
    while True:
        if p.exists():
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(max(0.01, float(poll_s)))


class Supervisor:
    """Keeps the launch order; never joins the children."""

    def __init__(self) -> None:
        self.processes: List[ManagedProcess] = []

    def launch(self, spec: ProcessSpec, env: Optional[Mapping[str, str]] = None) -> ManagedProcess:
        mp = spawn_detached(spec, env)
        self.processes.append(mp)
        logger.info("%s started (pid %s)", mp.name, mp.pid)
        return mp

    def adopt(
        self,
        name: str,
        argv: Sequence[str],
        pid: int,
        *,
        log_path: Optional[Path] = None,
        started_ts: Optional[float] = None,
    ) -> ManagedProcess:
        """Record a process someone else forked (e.g. the daemon behind dbus-launch)."""
        mp = ManagedProcess(
            name=name,
            argv=[str(a) for a in argv],
            pid=int(pid),
            pgid=process_group(pid),
            log_path=Path(log_path) if log_path else None,
            started_ts=float(started_ts if started_ts is not None else time.time()),
        )
        self.processes.append(mp)
        logger.info("%s running (pid %s)", name, pid)
        return mp

    def by_name(self) -> Dict[str, ManagedProcess]:
        return {mp.name: mp for mp in self.processes}


__all__ = [
    "ManagedProcess",
    "ProcessSpec",
    "Supervisor",
    "prepare_log",
    "process_group",
    "resolve_executable",
    "spawn_detached",
    "wait_for_path",
]
