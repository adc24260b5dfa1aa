"""Centralized configuration loading for the session launcher.

The bootstrap used to be a shell script with paths and flags baked in. This
module provides a small, typed config layer that:
  - reads defaults from a YAML config file (session_launcher/configs/session.yaml)
  - merges the ``base`` profile with the selected profile
  - allows a few env vars / CLI flags to override the result
  - validates paths and modes early, before anything touches the filesystem
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

import yaml


PACKAGE_ROOT = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = PACKAGE_ROOT / "configs" / "session.yaml"
DEFAULT_PROFILE = "xfce"

ENV_CONFIG = "SESSION_LAUNCH_CONFIG"
ENV_PROFILE = "SESSION_LAUNCH_PROFILE"
ENV_DISPLAY = "SESSION_LAUNCH_DISPLAY"
ENV_DRIVER_DIR = "SESSION_LAUNCH_DRIVER_DIR"


def _truthy(v: object) -> bool:
    return str(v or "").strip().lower() in ("1", "true", "yes", "on")


def _deep_get(d: Mapping[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = d
    for key in path.split("."):
        if not isinstance(cur, Mapping) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = dict(base)
    for k, v in override.items():
        if k in out and isinstance(out.get(k), Mapping) and isinstance(v, Mapping):
            out[k] = _deep_merge(out[k], v)  # type: ignore[arg-type]
        else:
            out[k] = v
    return out


def _str_tuple(raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,)
    return tuple(str(x) for x in raw if str(x or "").strip())


def _mode(raw: Any, default: Optional[int]) -> Optional[int]:
    """Parse a permission mode; YAML hands us either 448 or "0700"."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, int):
        return raw
    s = str(raw).strip().lower()
    return int(s[2:] if s.startswith("0o") else s, 8)


def _opt_str(raw: Any) -> Optional[str]:
    s = str(raw or "").strip()
    return s or None


@dataclass(frozen=True)
class PathsConfig:
    required_dirs: Tuple[str, ...] = ("/var/lib/dbus", "/usr/share/X11/xorg.conf.d")
    machine_id: str = "/var/lib/dbus/machine-id"
    uuidgen: Optional[str] = "dbus-uuidgen"
    runtime_dir: str = "/run/user/0"
    runtime_dir_mode: int = 0o700
    state_file: str = "/run/session-launcher/last_session.json"

    def validate(self) -> None:
        if not str(self.machine_id or "").strip():
            raise ValueError("paths.machine_id must be non-empty")
        if not str(self.runtime_dir or "").strip():
            raise ValueError("paths.runtime_dir must be non-empty")
        if not 0 <= int(self.runtime_dir_mode) <= 0o7777:
            raise ValueError(f"paths.runtime_dir_mode out of range: {self.runtime_dir_mode:o}")
        if not str(self.state_file or "").strip():
            raise ValueError("paths.state_file must be non-empty")


@dataclass(frozen=True)
class DriverConfig:
    search_dir: str = "/nix/store"
    pattern: str = "*-graphics-drivers"
    alias: str = "/run/opengl-driver"

    def validate(self) -> None:
        if not str(self.search_dir or "").strip():
            raise ValueError("driver.search_dir must be non-empty")
        p = str(self.pattern or "").strip()
        if not p or "/" in p:
            raise ValueError(f"driver.pattern must be a single path component glob, got {self.pattern!r}")
        if not str(self.alias or "").strip():
            raise ValueError("driver.alias must be non-empty")


@dataclass(frozen=True)
class BusConfig:
    enabled: bool = True
    required: bool = False
    command: str = "dbus-launch"
    args: Tuple[str, ...] = ("--sh-syntax",)
    log: str = "/var/log/dbus-launch.log"
    timeout_s: float = 10.0

    def validate(self) -> None:
        if self.enabled and not str(self.command or "").strip():
            raise ValueError("bus.command must be non-empty when the bus is enabled")
        if float(self.timeout_s) <= 0:
            raise ValueError("bus.timeout_s must be > 0")


@dataclass(frozen=True)
class DisplayConfig:
    command: str = "Xorg"
    display: str = ":0"
    module_path: str = "/run/current-system/sw/lib/xorg/modules"
    xkb_dir: str = "/run/current-system/sw/share/X11/xkb"
    log_verbose: int = 0
    server_log: str = "/var/log/xorg_debug.log"
    keyboard: Optional[str] = "keyboard"
    pointer: Optional[str] = "mouse0"
    novtswitch: bool = True
    keeptty: bool = True
    extra_args: Tuple[str, ...] = ()
    log: str = "/var/log/xorg.log"
    socket_dir: str = "/tmp/.X11-unix"
    ready_timeout_s: float = 0.0

    @property
    def display_number(self) -> int:
        return int(str(self.display).strip().lstrip(":").split(".", 1)[0])

    def validate(self) -> None:
        if not str(self.command or "").strip():
            raise ValueError("display.command must be non-empty")
        d = str(self.display or "").strip()
        if not d.startswith(":"):
            raise ValueError(f"display.display must look like ':N', got {self.display!r}")
        try:
            self.display_number
        except ValueError:
            raise ValueError(f"display.display must look like ':N', got {self.display!r}") from None
        if int(self.log_verbose) < 0:
            raise ValueError("display.log_verbose must be >= 0")
        if float(self.ready_timeout_s) < 0:
            raise ValueError("display.ready_timeout_s must be >= 0")


@dataclass(frozen=True)
class DesktopConfig:
    command: str = "xfce4-session"
    args: Tuple[str, ...] = ()
    log: str = "/var/log/xfce-session.log"
    log_mode: int = 0o600
    truncate_log: bool = True

    def validate(self) -> None:
        if not str(self.command or "").strip():
            raise ValueError("desktop.command must be non-empty")
        if not 0 <= int(self.log_mode) <= 0o777:
            raise ValueError(f"desktop.log_mode out of range: {self.log_mode:o}")


@dataclass(frozen=True)
class SessionConfig:
    profile: str = DEFAULT_PROFILE
    paths: PathsConfig = field(default_factory=PathsConfig)
    driver: DriverConfig = field(default_factory=DriverConfig)
    bus: BusConfig = field(default_factory=BusConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    desktop: DesktopConfig = field(default_factory=DesktopConfig)

    def validate(self) -> None:
        self.paths.validate()
        self.driver.validate()
        self.bus.validate()
        self.display.validate()
        self.desktop.validate()

    @classmethod
    def from_mapping(cls, merged: Mapping[str, Any], *, profile: str) -> "SessionConfig":
        dp, dd, db, dx, dk = PathsConfig(), DriverConfig(), BusConfig(), DisplayConfig(), DesktopConfig()

        raw_dirs = _deep_get(merged, "paths.required_dirs", None)
        paths = PathsConfig(
            required_dirs=_str_tuple(raw_dirs) if raw_dirs is not None else dp.required_dirs,
            machine_id=str(_deep_get(merged, "paths.machine_id", dp.machine_id) or dp.machine_id),
            uuidgen=_opt_str(_deep_get(merged, "paths.uuidgen", dp.uuidgen)),
            runtime_dir=str(_deep_get(merged, "paths.runtime_dir", dp.runtime_dir) or dp.runtime_dir),
            runtime_dir_mode=int(_mode(_deep_get(merged, "paths.runtime_dir_mode"), dp.runtime_dir_mode) or 0),
            state_file=str(_deep_get(merged, "paths.state_file", dp.state_file) or dp.state_file),
        )

        driver = DriverConfig(
            search_dir=str(_deep_get(merged, "driver.search_dir", dd.search_dir) or dd.search_dir),
            pattern=str(_deep_get(merged, "driver.pattern", dd.pattern) or dd.pattern),
            alias=str(_deep_get(merged, "driver.alias", dd.alias) or dd.alias),
        )

        raw_bus_args = _deep_get(merged, "bus.args", None)
        bus = BusConfig(
            enabled=_truthy(_deep_get(merged, "bus.enabled", db.enabled)),
            required=_truthy(_deep_get(merged, "bus.required", db.required)),
            command=str(_deep_get(merged, "bus.command", db.command) or ""),
            args=_str_tuple(raw_bus_args) if raw_bus_args is not None else db.args,
            log=str(_deep_get(merged, "bus.log", db.log) or db.log),
            timeout_s=float(_deep_get(merged, "bus.timeout_s", db.timeout_s) or db.timeout_s),
        )

        display = DisplayConfig(
            command=str(_deep_get(merged, "display.command", dx.command) or ""),
            display=str(_deep_get(merged, "display.display", dx.display) or dx.display),
            module_path=str(_deep_get(merged, "display.module_path", dx.module_path) or dx.module_path),
            xkb_dir=str(_deep_get(merged, "display.xkb_dir", dx.xkb_dir) or dx.xkb_dir),
            log_verbose=int(_deep_get(merged, "display.log_verbose", dx.log_verbose) or 0),
            server_log=str(_deep_get(merged, "display.server_log", dx.server_log) or dx.server_log),
            keyboard=_opt_str(_deep_get(merged, "display.keyboard", dx.keyboard)),
            pointer=_opt_str(_deep_get(merged, "display.pointer", dx.pointer)),
            novtswitch=_truthy(_deep_get(merged, "display.novtswitch", dx.novtswitch)),
            keeptty=_truthy(_deep_get(merged, "display.keeptty", dx.keeptty)),
            extra_args=_str_tuple(_deep_get(merged, "display.extra_args", None)),
            log=str(_deep_get(merged, "display.log", dx.log) or dx.log),
            socket_dir=str(_deep_get(merged, "display.socket_dir", dx.socket_dir) or dx.socket_dir),
            ready_timeout_s=float(_deep_get(merged, "display.ready_timeout_s", dx.ready_timeout_s) or 0.0),
        )

        desktop = DesktopConfig(
            command=str(_deep_get(merged, "desktop.command", dk.command) or ""),
            args=_str_tuple(_deep_get(merged, "desktop.args", None)),
            log=str(_deep_get(merged, "desktop.log", dk.log) or dk.log),
            log_mode=int(_mode(_deep_get(merged, "desktop.log_mode"), dk.log_mode) or 0),
            truncate_log=_truthy(_deep_get(merged, "desktop.truncate_log", dk.truncate_log)),
        )

        cfg = cls(profile=str(profile), paths=paths, driver=driver, bus=bus, display=display, desktop=desktop)
        cfg.validate()
        return cfg

    @classmethod
    def load(
        cls,
        *,
        profile: Optional[str] = None,
        path: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "SessionConfig":
        env = os.environ if env is None else env
        cfg_path = Path(path or env.get(ENV_CONFIG) or DEFAULT_CONFIG_PATH).expanduser()
        if not cfg_path.exists():
            raise FileNotFoundError(f"session config not found: {cfg_path}")
        raw = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"invalid YAML root in {cfg_path} (expected mapping)")

        profiles = raw.get("profiles")
        if not isinstance(profiles, Mapping):
            raise ValueError(f"invalid YAML in {cfg_path}: missing profiles mapping")

        chosen = str(profile or env.get(ENV_PROFILE) or DEFAULT_PROFILE).strip()
        base = profiles.get("base") if isinstance(profiles.get("base"), Mapping) else {}
        prof = profiles.get(chosen) if isinstance(profiles.get(chosen), Mapping) else None
        if prof is None:
            raise ValueError(
                f"unknown session profile {chosen!r} (expected one of: {', '.join(sorted(map(str, profiles.keys())))})"
            )

        merged = _deep_merge(base, prof) if base else dict(prof)
        cfg = cls.from_mapping(merged, profile=chosen)
        return cfg.with_env_overrides(env)

    def with_env_overrides(self, env: Mapping[str, str]) -> "SessionConfig":
        """Apply the handful of single-value env overrides on top of the file."""
        out = self
        display = str(env.get(ENV_DISPLAY, "") or "").strip()
        if display:
            out = replace(out, display=replace(out.display, display=display))
        driver_dir = str(env.get(ENV_DRIVER_DIR, "") or "").strip()
        if driver_dir:
            out = replace(out, driver=replace(out.driver, search_dir=driver_dir))
        out.validate()
        return out


def load_session_config(
    *,
    profile: Optional[str] = None,
    config_path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> SessionConfig:
    """Load configs/session.yaml and resolve a profile.

    Env vars/CLI override the file, so explicit arguments win over
    SESSION_LAUNCH_PROFILE / SESSION_LAUNCH_CONFIG.
    """
    return SessionConfig.load(profile=profile, path=config_path, env=env)


__all__ = [
    "BusConfig",
    "DesktopConfig",
    "DisplayConfig",
    "DriverConfig",
    "PathsConfig",
    "SessionConfig",
    "load_session_config",
]
