from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, List

import pytest

from session_launcher.common.schemas import LaunchRecord, ProcessRecord
from session_launcher.errors import StateError
from session_launcher.state import is_recorded_process, read_record, stop_session, write_record
from session_launcher.supervisor import ProcessSpec, spawn_detached


def _record(*procs: ProcessRecord) -> LaunchRecord:
    return LaunchRecord(
        profile="test",
        launcher_pid=os.getpid(),
        display=":0",
        runtime_dir="/run/user/0",
        processes=list(procs),
    )


def test_record_survives_disk(tmp_path: Path) -> None:
    rec = _record(ProcessRecord(name="display-server", argv=["Xorg", ":0"], pid=123, pgid=123, log_path="/var/log/xorg.log"))
    path = write_record(tmp_path / "state" / "last.json", rec)
    back = read_record(path)
    assert back is not None
    assert back.process("display-server") == rec.processes[0]
    assert back.process("bus") is None


def test_missing_record_means_nothing_to_stop(tmp_path: Path) -> None:
    assert read_record(tmp_path / "absent.json") is None
    assert stop_session(tmp_path / "absent.json", timeout_s=0.5) == []


def test_corrupt_record_is_discarded(tmp_path: Path) -> None:
    path = tmp_path / "last.json"
    path.write_text("{not json", encoding="utf-8")
    assert read_record(path) is None
    assert not path.exists()


def test_stop_terminates_in_reverse_order(tmp_path: Path, fake_bin: Callable[[str, str], Path]) -> None:
    order_log = tmp_path / "order.log"
    body = '#!/bin/sh\ntrap \'echo "$0" >> "{log}"; exit 0\' TERM\nwhile :; do sleep 0.05; done\n'.format(log=order_log)
    tools = [fake_bin(name, body) for name in ("first", "second")]
    env = {"PATH": f"{tools[0].parent}:/usr/bin:/bin"}

    procs: List[ProcessRecord] = []
    for tool in tools:
        mp = spawn_detached(ProcessSpec(name=tool.name, argv=[tool.name], log_path=tmp_path / f"{tool.name}.log"), env)
        procs.append(ProcessRecord(name=mp.name, argv=mp.argv, pid=mp.pid, pgid=mp.pgid, started_ts=mp.started_ts))
    time.sleep(0.3)  # let the traps install

    path = write_record(tmp_path / "last.json", _record(*procs))
    assert stop_session(path, timeout_s=3.0) == ["second", "first"]
    assert not path.exists()

    lines = [Path(ln).name for ln in order_log.read_text(encoding="utf-8").splitlines()]
    assert lines == ["second", "first"]
    for pr in procs:
        try:
            os.kill(pr.pid, 0)
            alive = True
        except ProcessLookupError:
            alive = False
        assert not alive


def test_stop_escalates_to_sigkill(tmp_path: Path, fake_bin: Callable[[str, str], Path]) -> None:
    tool = fake_bin("stubborn", "#!/bin/sh\ntrap '' TERM\nwhile :; do sleep 0.05; done\n")
    mp = spawn_detached(
        ProcessSpec(name="stubborn", argv=["stubborn"], log_path=tmp_path / "stubborn.log"),
        {"PATH": f"{tool.parent}:/usr/bin:/bin"},
    )
    time.sleep(0.3)
    path = write_record(
        tmp_path / "last.json",
        _record(ProcessRecord(name="stubborn", argv=mp.argv, pid=mp.pid, pgid=mp.pgid)),
    )
    t0 = time.time()
    assert stop_session(path, timeout_s=0.5) == ["stubborn"]
    assert time.time() - t0 < 5.0
    assert mp.popen is not None
    assert mp.popen.wait(timeout=5) is not None


def test_stop_skips_already_dead_processes(tmp_path: Path, fake_bin: Callable[[str, str], Path]) -> None:
    tool = fake_bin("brief", "#!/bin/sh\nexit 0\n")
    mp = spawn_detached(
        ProcessSpec(name="brief", argv=["brief"], log_path=tmp_path / "brief.log"),
        {"PATH": f"{tool.parent}:/usr/bin:/bin"},
    )
    assert mp.popen is not None
    mp.popen.wait(timeout=5)
    path = write_record(tmp_path / "last.json", _record(ProcessRecord(name="brief", pid=mp.pid, pgid=mp.pgid)))
    assert stop_session(path, timeout_s=0.5) == []
    assert not path.exists()


def test_stop_leaves_a_reused_pid_alone(tmp_path: Path) -> None:
    # Same pid as the record, but a process that started a day later.
    stranger = subprocess.Popen(["sleep", "30"], start_new_session=True)
    try:
        rec = ProcessRecord(
            name="display-server",
            argv=["Xorg", ":0"],
            pid=stranger.pid,
            pgid=stranger.pid,
            started_ts=time.time() - 86400,
        )
        assert is_recorded_process(rec) is False
        path = write_record(tmp_path / "last.json", _record(rec))
        assert stop_session(path, timeout_s=0.5) == []
        time.sleep(0.2)
        assert stranger.poll() is None
    finally:
        stranger.kill()
        stranger.wait(timeout=5)


def test_fresh_process_matches_its_record(tmp_path: Path, fake_bin: Callable[[str, str], Path]) -> None:
    tool = fake_bin("idle", "#!/bin/sh\nexec sleep 30\n")
    mp = spawn_detached(
        ProcessSpec(name="idle", argv=["idle"], log_path=tmp_path / "idle.log"),
        {"PATH": f"{tool.parent}:/usr/bin:/bin"},
    )
    rec = ProcessRecord(name="idle", argv=mp.argv, pid=mp.pid, pgid=mp.pgid, started_ts=mp.started_ts)
    assert is_recorded_process(rec) is True
    path = write_record(tmp_path / "last.json", _record(rec))
    assert stop_session(path, timeout_s=3.0) == ["idle"]


def test_unreadable_record_is_an_error_and_kept(tmp_path: Path) -> None:
    path = tmp_path / "last.json"
    path.mkdir()  # exists, but reading it fails with an OSError
    with pytest.raises(StateError, match="cannot read launch record"):
        read_record(path)
    with pytest.raises(StateError):
        stop_session(path, timeout_s=0.5)
    assert path.exists()


def test_stop_deadline_ignores_wall_clock_steps(
    tmp_path: Path, fake_bin: Callable[[str, str], Path], monkeypatch: pytest.MonkeyPatch
) -> None:
    import session_launcher.state as state_mod

    tool = fake_bin("stubborn", "#!/bin/sh\ntrap '' TERM\nwhile :; do sleep 0.05; done\n")
    mp = spawn_detached(
        ProcessSpec(name="stubborn", argv=["stubborn"], log_path=tmp_path / "stubborn.log"),
        {"PATH": f"{tool.parent}:/usr/bin:/bin"},
    )
    time.sleep(0.3)
    path = write_record(
        tmp_path / "last.json",
        _record(ProcessRecord(name="stubborn", argv=mp.argv, pid=mp.pid, pgid=mp.pgid, started_ts=mp.started_ts)),
    )
    # Wall clock steps back an hour on every read.
    steps = iter(range(0, -10_000_000, -3600))
    clock = SimpleNamespace(time=lambda: float(next(steps)), monotonic=time.monotonic, sleep=time.sleep)
    monkeypatch.setattr(state_mod, "time", clock)
    t0 = time.monotonic()
    assert stop_session(path, timeout_s=0.5) == ["stubborn"]
    assert time.monotonic() - t0 < 5.0
    assert mp.popen is not None
    assert mp.popen.wait(timeout=5) is not None
