"""Launch record persistence and teardown.

The launcher itself never tracks its children after starting them. To make a
session stoppable anyway, each successful launch leaves a JSON record of what
was started; ``stop_session`` walks it in reverse launch order.
"""

from __future__ import annotations

import logging
import os
import signal
import time
from pathlib import Path
from typing import List, Optional

import psutil
from pydantic import ValidationError

from .common.schemas import LaunchRecord, ProcessRecord
from .errors import StateError

logger = logging.getLogger(__name__)

# How far a live process's start time may sit from the recorded one before
# the pid is taken to belong to someone else.
START_SLACK_S = 30.0


def write_record(path: str | Path, record: LaunchRecord) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
    tmp.replace(p)
    return p


def read_record(path: str | Path) -> Optional[LaunchRecord]:
    """Return the record, or None when absent. A corrupt record is discarded.

    A record that exists but cannot be read raises ``StateError``: it may still
    name live processes, so it is neither ignored nor removed.
    """
    p = Path(path)
    if not p.exists():
        return None
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise StateError(f"cannot read launch record {p}: {e}") from e
    try:
        return LaunchRecord.model_validate_json(text)
    except (ValidationError, ValueError) as e:
        logger.warning("discarding unreadable launch record %s: %s", p, e)
        p.unlink(missing_ok=True)
        return None


def _reap(pid: int) -> bool:
    """Collect our own exited child, if it is one. True when it was reaped."""
    try:
        done, _ = os.waitpid(int(pid), os.WNOHANG)
    except ChildProcessError:
        return False
    return done != 0


def _alive(proc: ProcessRecord, *, use_group: bool) -> bool:
    reaped = _reap(proc.pid)
    try:
        if use_group and proc.pgid:
            os.killpg(int(proc.pgid), 0)
        elif reaped:
            return False
        else:
            os.kill(int(proc.pid), 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _signal(proc: ProcessRecord, sig: int, *, use_group: bool) -> bool:
    try:
        if use_group and proc.pgid:
            os.killpg(int(proc.pgid), sig)
        else:
            os.kill(int(proc.pid), sig)
    except ProcessLookupError:
        return False
    except PermissionError as e:
        logger.warning("cannot signal %s (pid %s): %s", proc.name, proc.pid, e)
        return False
    return True


def is_recorded_process(proc: ProcessRecord) -> bool:
    """False when ``proc.pid`` now belongs to a process started at another time.

    A pid that no longer exists counts as recorded; the group it led may
    still hold children.
    """
    try:
        created = psutil.Process(int(proc.pid)).create_time()
    except psutil.NoSuchProcess:
        return True
    except psutil.AccessDenied:
        # Cannot tell; the signal itself will be refused if it is not ours.
        return True
    return abs(float(created) - float(proc.started_ts)) <= START_SLACK_S


def terminate_process(proc: ProcessRecord, *, timeout_s: float = 10.0) -> bool:
    """SIGTERM, wait, then SIGKILL. Returns True if a signal was delivered."""
    if not is_recorded_process(proc):
        logger.warning(
            "pid %s is no longer %s (start time does not match the record); leaving it alone",
            proc.pid,
            proc.name,
        )
        return False
    own_pgid = os.getpgrp()
    # Never signal our own group, even if a stale record says so.
    use_group = bool(proc.pgid) and int(proc.pgid) != int(own_pgid)
    if not _signal(proc, signal.SIGTERM, use_group=use_group):
        logger.info("%s (pid %s) already gone", proc.name, proc.pid)
        return False
    logger.info("sent SIGTERM to %s (pid %s)", proc.name, proc.pid)
    deadline = time.monotonic() + max(0.0, float(timeout_s))
    while time.monotonic() < deadline:
        if not _alive(proc, use_group=use_group):
            return True
        time.sleep(0.1)
    if _alive(proc, use_group=use_group):
        logger.warning("%s (pid %s) ignored SIGTERM; sending SIGKILL", proc.name, proc.pid)
        _signal(proc, signal.SIGKILL, use_group=use_group)
        _reap(proc.pid)
    return True


def stop_session(path: str | Path, *, timeout_s: float = 10.0) -> List[str]:
    """Stop everything the last launch recorded. Returns the names signalled."""
    p = Path(path)
    record = read_record(p)
    if record is None:
        logger.info("no launch record at %s; nothing to stop", p)
        return []
    stopped: List[str] = []
    for proc in reversed(record.processes):
        if terminate_process(proc, timeout_s=timeout_s):
            stopped.append(proc.name)
    p.unlink(missing_ok=True)
    return stopped


__all__ = ["is_recorded_process", "read_record", "stop_session", "terminate_process", "write_record"]
