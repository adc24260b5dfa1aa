"""Display server and desktop session command lines."""

from __future__ import annotations

from pathlib import Path
from typing import List

from .config import DesktopConfig, DisplayConfig
from .supervisor import ProcessSpec


def display_server_argv(cfg: DisplayConfig) -> List[str]:
    argv: List[str] = [
        cfg.command,
        cfg.display,
        "-modulepath",
        cfg.module_path,
        "-xkbdir",
        cfg.xkb_dir,
        "-logverbose",
        str(int(cfg.log_verbose)),
        "-logfile",
        cfg.server_log,
    ]
    if cfg.novtswitch:
        argv.append("-novtswitch")
    if cfg.keeptty:
        argv.append("-keeptty")
    if cfg.keyboard:
        argv += ["-keyboard", cfg.keyboard]
    if cfg.pointer:
        argv += ["-pointer", cfg.pointer]
    argv += list(cfg.extra_args)
    return argv


def display_socket_path(cfg: DisplayConfig) -> Path:
    """Unix socket the X server creates once it accepts clients."""
    return Path(cfg.socket_dir) / f"X{cfg.display_number}"


def desktop_session_argv(cfg: DesktopConfig) -> List[str]:
    return [cfg.command, *cfg.args]


def display_server_spec(cfg: DisplayConfig) -> ProcessSpec:
    return ProcessSpec(name="display-server", argv=display_server_argv(cfg), log_path=Path(cfg.log))


def desktop_session_spec(cfg: DesktopConfig) -> ProcessSpec:
    # The session log may carry user data: emptied once per launch and owner-only.
    return ProcessSpec(
        name="desktop-session",
        argv=desktop_session_argv(cfg),
        log_path=Path(cfg.log),
        truncate_log=bool(cfg.truncate_log),
        log_mode=int(cfg.log_mode),
    )


__all__ = [
    "desktop_session_argv",
    "desktop_session_spec",
    "display_server_argv",
    "display_server_spec",
    "display_socket_path",
]
