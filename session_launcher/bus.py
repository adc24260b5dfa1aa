"""Message-bus startup.

``dbus-launch --sh-syntax`` forks the bus daemon and prints shell assignments
for the session (``DBUS_SESSION_BUS_ADDRESS='...';`` / ``export ...;``). We
parse those into a mapping that later steps receive through the session
context instead of via ``eval`` into the process environment.
"""

from __future__ import annotations

import logging
import re
import shlex
import shutil
import subprocess
import time
from typing import Dict, Mapping, Optional

from .config import BusConfig
from .errors import SpawnError
from .supervisor import Supervisor, prepare_log

logger = logging.getLogger(__name__)

BUS_ADDRESS = "DBUS_SESSION_BUS_ADDRESS"
BUS_PID = "DBUS_SESSION_BUS_PID"

_ASSIGN_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)=(.*?);?\s*$")


def parse_sh_env(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or line.startswith("export "):
            continue
        m = _ASSIGN_RE.match(line)
        if not m:
            continue
        key, value = m.group(1), m.group(2).strip()
        try:
            parts = shlex.split(value) if value else []
        except ValueError:
            logger.warning("unparseable bus assignment: %s", line)
            continue
        out[key] = parts[0] if parts else ""
    return out


def launch_bus(
    cfg: BusConfig,
    env: Mapping[str, str],
    supervisor: Supervisor,
) -> Optional[Dict[str, str]]:
    """Start the bus and return its session env, or None when skipped."""
    if not cfg.enabled:
        logger.info("message bus disabled by config")
        return None
    exe = shutil.which(cfg.command, path=env.get("PATH"))
    if not exe:
        if cfg.required:
            raise SpawnError("bus", f"{cfg.command!r} not found on PATH")
        logger.warning("%s not found; continuing without a session bus", cfg.command)
        return None

    argv = [exe, *cfg.args]
    log_path = prepare_log(cfg.log)
    logger.info("starting bus: %s", " ".join(argv))
    started = time.time()
    try:
        with open(log_path, "ab", buffering=0) as log_file:
            r = subprocess.run(
                argv,
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=log_file,
                start_new_session=True,
                timeout=float(cfg.timeout_s),
                check=False,
            )
    except subprocess.TimeoutExpired as e:
        raise SpawnError("bus", f"{cfg.command} did not return within {cfg.timeout_s}s") from e
    except OSError as e:
        raise SpawnError("bus", str(e)) from e

    if r.returncode != 0:
        raise SpawnError("bus", f"{cfg.command} exited with {r.returncode} (see {log_path})")
    bus_env = parse_sh_env((r.stdout or b"").decode("utf-8", "replace"))
    if not bus_env.get(BUS_ADDRESS):
        raise SpawnError("bus", f"{cfg.command} printed no {BUS_ADDRESS}")

    pid_raw = str(bus_env.get(BUS_PID) or "").strip()
    if pid_raw.isdigit():
        supervisor.adopt("bus", argv, int(pid_raw), log_path=log_path, started_ts=started)
    else:
        logger.warning("%s did not report %s; bus daemon will not be recorded", cfg.command, BUS_PID)
    logger.info("session bus at %s", bus_env[BUS_ADDRESS])
    return bus_env


__all__ = ["BUS_ADDRESS", "BUS_PID", "launch_bus", "parse_sh_env"]
