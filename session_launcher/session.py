"""The launch sequence.

    START -> PREPARE_ENV -> LINK_DRIVER -> LAUNCH_BUS
          -> LAUNCH_DISPLAY_SERVER -> LAUNCH_SESSION -> DONE

Any ``LaunchError`` moves the machine to FATAL; the distinguished case is a
missing driver directory in LINK_DRIVER. Steps share state only through an
explicit ``SessionContext``: the bus address, runtime dir and display are
handed to the next step's child environment, never exported into our own.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .bus import BUS_ADDRESS, launch_bus
from .common.schemas import LaunchRecord, ProcessRecord
from .config import SessionConfig
from .display import desktop_session_spec, display_server_spec, display_socket_path
from .drivers import link_driver
from .environment import PreparedEnvironment, prepare_environment
from .errors import LaunchError, ReadinessError
from .state import stop_session, write_record
from .supervisor import ManagedProcess, ProcessSpec, Supervisor, wait_for_path

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    START = "start"
    PREPARE_ENV = "prepare_env"
    LINK_DRIVER = "link_driver"
    LAUNCH_BUS = "launch_bus"
    LAUNCH_DISPLAY_SERVER = "launch_display_server"
    LAUNCH_SESSION = "launch_session"
    DONE = "done"
    FATAL = "fatal"


@dataclass
class SessionContext:
    base_env: Dict[str, str]
    runtime_dir: Optional[Path] = None
    driver_path: Optional[Path] = None
    bus_env: Dict[str, str] = field(default_factory=dict)
    display: Optional[str] = None
    prepared: Optional[PreparedEnvironment] = None

    def child_env(self, *, with_display: bool) -> Dict[str, str]:
        env = dict(self.base_env)
        if self.runtime_dir is not None:
            env["XDG_RUNTIME_DIR"] = str(self.runtime_dir)
        env.update(self.bus_env)
        if with_display and self.display:
            env["DISPLAY"] = self.display
        else:
            # The display server must not inherit a DISPLAY pointing at itself.
            env.pop("DISPLAY", None)
        return env


@dataclass
class SessionResult:
    stage: Stage
    context: SessionContext
    processes: List[ManagedProcess] = field(default_factory=list)
    error: Optional[LaunchError] = None
    failed_stage: Optional[Stage] = None

    @property
    def ok(self) -> bool:
        return self.stage == Stage.DONE

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


def plan(cfg: SessionConfig) -> List[ProcessSpec]:
    """The processes a launch would start, in order. No side effects."""
    specs: List[ProcessSpec] = []
    if cfg.bus.enabled:
        specs.append(ProcessSpec(name="bus", argv=[cfg.bus.command, *cfg.bus.args], log_path=Path(cfg.bus.log)))
    specs.append(display_server_spec(cfg.display))
    specs.append(desktop_session_spec(cfg.desktop))
    return specs


class SessionLauncher:
    def __init__(
        self,
        cfg: SessionConfig,
        *,
        base_env: Optional[Mapping[str, str]] = None,
        write_state: bool = True,
        stop_timeout_s: float = 10.0,
    ):
        self.cfg = cfg
        self.write_state = bool(write_state)
        self.stop_timeout_s = float(stop_timeout_s)
        self.supervisor = Supervisor()
        self.context = SessionContext(base_env=dict(os.environ if base_env is None else base_env))
        self.stage = Stage.START
        self._started_ts = time.time()

    def _enter(self, stage: Stage) -> None:
        logger.debug("stage %s -> %s", self.stage.value, stage.value)
        self.stage = stage

    def _steps(self) -> List[tuple[Stage, Callable[[], None]]]:
        return [
            (Stage.PREPARE_ENV, self._prepare_env),
            (Stage.LINK_DRIVER, self._link_driver),
            (Stage.LAUNCH_BUS, self._launch_bus),
            (Stage.LAUNCH_DISPLAY_SERVER, self._launch_display_server),
            (Stage.LAUNCH_SESSION, self._launch_session),
        ]

    def run(self) -> SessionResult:
        try:
            self._stop_previous()
        except LaunchError as e:
            logger.error("cannot replace the previous session: %s", e)
            self._enter(Stage.FATAL)
            return SessionResult(stage=Stage.FATAL, context=self.context, error=e, failed_stage=Stage.START)
        for stage, step in self._steps():
            self._enter(stage)
            try:
                step()
            except LaunchError as e:
                logger.error("%s failed: %s", stage.value, e)
                self._enter(Stage.FATAL)
                self._record()
                return SessionResult(
                    stage=Stage.FATAL,
                    context=self.context,
                    processes=list(self.supervisor.processes),
                    error=e,
                    failed_stage=stage,
                )
        self._enter(Stage.DONE)
        self._record()
        return SessionResult(stage=Stage.DONE, context=self.context, processes=list(self.supervisor.processes))

    def _stop_previous(self) -> None:
        # An earlier launch is only reachable through its record.
        if not self.write_state:
            return
        path = self.cfg.paths.state_file
        stopped = stop_session(path, timeout_s=self.stop_timeout_s)
        if stopped:
            logger.info("stopped previous session: %s", ", ".join(stopped))

    def _prepare_env(self) -> None:
        prepared = prepare_environment(self.cfg)
        self.context.prepared = prepared
        self.context.runtime_dir = prepared.runtime_dir

    def _link_driver(self) -> None:
        self.context.driver_path = link_driver(self.cfg.driver)

    def _launch_bus(self) -> None:
        bus_env = launch_bus(self.cfg.bus, self.context.child_env(with_display=False), self.supervisor)
        if bus_env:
            self.context.bus_env = dict(bus_env)

    def _launch_display_server(self) -> None:
        dcfg = self.cfg.display
        self.supervisor.launch(display_server_spec(dcfg), self.context.child_env(with_display=False))
        self.context.display = dcfg.display
        if float(dcfg.ready_timeout_s) > 0:
            sock = display_socket_path(dcfg)
            logger.info("waiting up to %.1fs for %s", float(dcfg.ready_timeout_s), sock)
            if not wait_for_path(sock, float(dcfg.ready_timeout_s)):
                raise ReadinessError(f"display {dcfg.display} not ready after {dcfg.ready_timeout_s}s ({sock} missing)")

    def _launch_session(self) -> None:
        self.supervisor.launch(desktop_session_spec(self.cfg.desktop), self.context.child_env(with_display=True))

    def build_record(self) -> LaunchRecord:
        try:
            own_pgid: Optional[int] = os.getpgrp()
        except OSError:
            own_pgid = None
        return LaunchRecord(
            profile=self.cfg.profile,
            launcher_pid=os.getpid(),
            launcher_pgid=own_pgid,
            display=self.cfg.display.display,
            runtime_dir=str(self.context.runtime_dir or self.cfg.paths.runtime_dir),
            driver_path=str(self.context.driver_path) if self.context.driver_path else None,
            bus_address=self.context.bus_env.get(BUS_ADDRESS),
            processes=[
                ProcessRecord(
                    name=mp.name,
                    argv=list(mp.argv),
                    pid=mp.pid,
                    pgid=mp.pgid,
                    log_path=str(mp.log_path) if mp.log_path else None,
                    started_ts=mp.started_ts,
                )
                for mp in self.supervisor.processes
            ],
            started_ts=self._started_ts,
            finished_ts=time.time(),
        )

    def _record(self) -> None:
        # A failed launch that started nothing leaves no record behind.
        if not self.write_state or not self.supervisor.processes:
            return
        path = Path(self.cfg.paths.state_file)
        try:
            write_record(path, self.build_record())
        except OSError as e:
            logger.warning("could not write launch record %s: %s", path, e)
            return
        logger.debug("launch record -> %s", path)


def run_session(cfg: SessionConfig, *, base_env: Optional[Mapping[str, str]] = None) -> SessionResult:
    return SessionLauncher(cfg, base_env=base_env).run()


__all__ = ["SessionContext", "SessionLauncher", "SessionResult", "Stage", "plan", "run_session"]
