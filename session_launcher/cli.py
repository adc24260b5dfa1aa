"""Command line entry point (``session-launch`` / ``./launch.py``)."""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import sys
from dataclasses import replace
from typing import List, Optional, Sequence

from .config import SessionConfig, load_session_config
from .drivers import find_driver_candidates
from .errors import LaunchError
from .session import SessionLauncher, plan
from .state import stop_session

PREFIX = "[session-launch]"


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _err(msg: str) -> None:
    print(f"{PREFIX} ERROR: {msg}", file=sys.stderr)


def cmd_start(cfg: SessionConfig, *, stop_timeout_s: float = 10.0) -> int:
    result = SessionLauncher(cfg, stop_timeout_s=stop_timeout_s).run()
    if not result.ok:
        _err(str(result.error))
        return result.exit_code
    for mp in result.processes:
        print(f"{PREFIX} {mp.name}: pid {mp.pid} logs -> {mp.log_path}")
    print(f"{PREFIX} session up on {cfg.display.display} (record: {cfg.paths.state_file})")
    return 0


def cmd_dry_run(cfg: SessionConfig) -> int:
    print(f"{PREFIX} profile {cfg.profile}")
    candidates = find_driver_candidates(cfg.driver.search_dir, cfg.driver.pattern)
    if candidates:
        print(f"{PREFIX} would link {cfg.driver.alias} -> {candidates[0]}")
        if len(candidates) > 1:
            print(f"{PREFIX}   ({len(candidates) - 1} other match(es) ignored)")
    for spec in plan(cfg):
        print(f"{PREFIX} would start {spec.name}: {' '.join(spec.argv)} >> {spec.log_path}")
    if not candidates:
        _err(f"graphics-drivers not found ({cfg.driver.search_dir}/{cfg.driver.pattern})")
        return 1
    return 0


def cmd_check(cfg: SessionConfig) -> int:
    """Preflight: report what a launch would trip over, without side effects."""
    problems: List[str] = []
    path = os.environ.get("PATH")

    tools = [("display server", cfg.display.command, True), ("desktop session", cfg.desktop.command, True)]
    if cfg.bus.enabled:
        tools.insert(0, ("bus", cfg.bus.command, cfg.bus.required))
    if cfg.paths.uuidgen:
        tools.append(("machine id generator", cfg.paths.uuidgen, False))
    for label, cmd, required in tools:
        exe = shutil.which(cmd, path=path)
        if exe:
            print(f"{PREFIX} ok   {label}: {exe}")
        elif required:
            print(f"{PREFIX} FAIL {label}: {cmd} not found on PATH")
            problems.append(label)
        else:
            print(f"{PREFIX} warn {label}: {cmd} not found on PATH (optional)")

    candidates = find_driver_candidates(cfg.driver.search_dir, cfg.driver.pattern)
    if not candidates:
        print(f"{PREFIX} FAIL drivers: nothing matches {cfg.driver.search_dir}/{cfg.driver.pattern}")
        problems.append("drivers")
    else:
        print(f"{PREFIX} ok   drivers: {candidates[0]}")
        for extra in candidates[1:]:
            print(f"{PREFIX} warn drivers: ambiguous match {extra}")

    return 1 if problems else 0


def cmd_stop(cfg: SessionConfig, *, timeout_s: float) -> int:
    try:
        stopped = stop_session(cfg.paths.state_file, timeout_s=timeout_s)
    except LaunchError as e:
        _err(str(e))
        return 1
    if stopped:
        print(f"{PREFIX} stopped: {', '.join(stopped)}")
    else:
        print(f"{PREFIX} nothing to stop")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="session-launch",
        description="Session launcher: runtime dirs, driver link, bus, display server, desktop session.",
    )
    ap.add_argument(
        "command",
        nargs="?",
        default="start",
        choices=["start", "stop", "check"],
        help="start (default), stop the last launch, or run a preflight check",
    )
    ap.add_argument("--profile", default=None, help="Config profile (default: $SESSION_LAUNCH_PROFILE or xfce)")
    ap.add_argument("--config-file", default=None, help="Path to a YAML config file")
    ap.add_argument("--dry-run", action="store_true", help="Print what start would do and exit")
    ap.add_argument(
        "--wait-display",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Wait for the X socket before starting the desktop session (0 disables)",
    )
    ap.add_argument("--stop-timeout", type=float, default=10.0, help="Seconds before SIGKILL when stopping a session (also the one a new start replaces)")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(bool(args.verbose))

    try:
        cfg = load_session_config(profile=args.profile, config_path=args.config_file)
        if args.wait_display is not None:
            cfg = replace(cfg, display=replace(cfg.display, ready_timeout_s=float(args.wait_display)))
            cfg.validate()
    except (FileNotFoundError, ValueError, OSError) as e:
        _err(f"config: {e}")
        return 2

    if args.command == "stop":
        return cmd_stop(cfg, timeout_s=float(args.stop_timeout))
    if args.command == "check":
        return cmd_check(cfg)
    if args.dry_run:
        return cmd_dry_run(cfg)
    return cmd_start(cfg, stop_timeout_s=float(args.stop_timeout))


if __name__ == "__main__":
    raise SystemExit(main())
