from __future__ import annotations

import os
import signal
import stat
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List

import pytest

from session_launcher.config import SessionConfig
from session_launcher.state import stop_session


FAKE_BUS = """#!/bin/sh
sleep 30 >/dev/null 2>&1 </dev/null &
echo "DBUS_SESSION_BUS_ADDRESS='unix:path=/tmp/fake-bus-$$,guid=0123456789abcdef';"
echo "export DBUS_SESSION_BUS_ADDRESS;"
echo "DBUS_SESSION_BUS_PID=$!;"
echo "fake bus up" >&2
"""

FAKE_XORG = """#!/bin/sh
echo "xorg args: $*"
echo "xorg DISPLAY=${DISPLAY:-unset}"
echo "xorg XDG_RUNTIME_DIR=${XDG_RUNTIME_DIR:-unset}"
if [ -n "$FAKE_SOCKET_DIR" ]; then
  mkdir -p "$FAKE_SOCKET_DIR" && : > "$FAKE_SOCKET_DIR/X0"
fi
exec sleep 30
"""

FAKE_SESSION = """#!/bin/sh
echo "session DISPLAY=${DISPLAY:-unset}"
echo "session BUS=${DBUS_SESSION_BUS_ADDRESS:-unset}"
echo "session XDG_RUNTIME_DIR=${XDG_RUNTIME_DIR:-unset}"
exec sleep 30
"""


@pytest.fixture
def fake_bin(tmp_path: Path) -> Callable[[str, str], Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _make(name: str, body: str) -> Path:
        p = bin_dir / name
        p.write_text(body, encoding="utf-8")
        p.chmod(p.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return p

    return _make


@pytest.fixture
def fake_tools(fake_bin: Callable[[str, str], Path]) -> Path:
    fake_bin("dbus-launch", FAKE_BUS)
    fake_bin("Xorg", FAKE_XORG)
    return fake_bin("xfce4-session", FAKE_SESSION).parent


@pytest.fixture
def root(tmp_path: Path) -> Path:
    """Stand-in for / (runtime dirs, /nix/store, /var/log)."""
    r = tmp_path / "root"
    r.mkdir()
    return r


@pytest.fixture
def store(root: Path) -> Path:
    s = root / "nix" / "store"
    s.mkdir(parents=True)
    return s


def config_mapping(root: Path) -> Dict[str, Any]:
    return {
        "paths": {
            "required_dirs": [str(root / "var/lib/dbus"), str(root / "usr/share/X11/xorg.conf.d")],
            "machine_id": str(root / "var/lib/dbus/machine-id"),
            "uuidgen": None,
            "runtime_dir": str(root / "run/user/0"),
            "runtime_dir_mode": "0700",
            "state_file": str(root / "run/session-launcher/last_session.json"),
        },
        "driver": {
            "search_dir": str(root / "nix/store"),
            "pattern": "*-graphics-drivers",
            "alias": str(root / "run/opengl-driver"),
        },
        "bus": {"command": "dbus-launch", "log": str(root / "var/log/dbus-launch.log"), "timeout_s": 5},
        "display": {
            "command": "Xorg",
            "display": ":0",
            "server_log": str(root / "var/log/xorg_debug.log"),
            "log": str(root / "var/log/xorg.log"),
            "socket_dir": str(root / "tmp/.X11-unix"),
        },
        "desktop": {
            "command": "xfce4-session",
            "log": str(root / "var/log/xfce-session.log"),
            "log_mode": "0600",
            "truncate_log": True,
        },
    }


@pytest.fixture
def make_mapping() -> Callable[[Path], Dict[str, Any]]:
    return config_mapping


@pytest.fixture
def session_cfg(root: Path) -> SessionConfig:
    return SessionConfig.from_mapping(config_mapping(root), profile="test")


@pytest.fixture
def base_env(fake_tools: Path, root: Path) -> Dict[str, str]:
    return {
        "PATH": f"{fake_tools}:/usr/bin:/bin",
        "HOME": str(root),
        "DISPLAY": ":99",
    }


@pytest.fixture
def reaper(session_cfg: SessionConfig) -> Iterator[List[int]]:
    """Kill anything a test launched: the recorded session plus listed pgids."""
    pgids: List[int] = []
    yield pgids
    stop_session(session_cfg.paths.state_file, timeout_s=2.0)
    for pgid in pgids:
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        try:
            os.waitpid(pgid, os.WNOHANG)
        except ChildProcessError:
            pass
