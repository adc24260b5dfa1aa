"""Runtime directories and the message-bus machine identity.

Everything here is idempotent: a second run over an already-prepared
filesystem changes nothing (except re-asserting the runtime dir mode).
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from .config import SessionConfig
from .errors import EnvironmentPrepError

logger = logging.getLogger(__name__)


@dataclass
class PreparedEnvironment:
    runtime_dir: Path
    machine_id: Path
    machine_id_created: bool = False
    created_dirs: List[Path] = field(default_factory=list)


def ensure_directories(paths: Iterable[str | Path]) -> List[Path]:
    """Create each directory if missing. Returns the ones actually created."""
    created: List[Path] = []
    for raw in paths:
        p = Path(raw)
        if p.is_dir():
            continue
        try:
            p.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise EnvironmentPrepError(f"cannot create directory {p}: {e}") from e
        logger.info("created directory %s", p)
        created.append(p)
    return created


def ensure_runtime_dir(path: str | Path, mode: int = 0o700) -> Path:
    p = Path(path)
    ensure_directories([p])
    try:
        os.chmod(p, mode)
    except OSError as e:
        raise EnvironmentPrepError(f"cannot chmod {mode:o} {p}: {e}") from e
    return p


def _write_machine_id(p: Path) -> None:
    tmp = p.with_name(p.name + ".tmp")
    try:
        tmp.write_text(uuid.uuid4().hex + "\n", encoding="utf-8")
        os.chmod(tmp, 0o444)
        tmp.replace(p)
    except OSError as e:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise EnvironmentPrepError(f"cannot write machine id {p}: {e}") from e


def ensure_machine_id(path: str | Path, *, uuidgen: Optional[str] = "dbus-uuidgen") -> bool:
    """Generate the bus machine identity unless it already exists.

    Prefers ``dbus-uuidgen --ensure=<path>`` when it is installed and falls back
    to a random 128-bit hex token (the same format). Returns True only when a
    new identity was written.
    """
    p = Path(path)
    if p.exists():
        logger.debug("machine id present: %s", p)
        return False
    ensure_directories([p.parent])

    exe = shutil.which(uuidgen) if uuidgen else None
    if exe:
        try:
            subprocess.run(
                [exe, f"--ensure={p}"],
                check=True,
                capture_output=True,
                text=True,
                timeout=10,
            )
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or "").strip() or f"exit {e.returncode}"
            raise EnvironmentPrepError(f"{uuidgen} failed for {p}: {detail}") from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise EnvironmentPrepError(f"{uuidgen} failed for {p}: {e}") from e
        if not p.exists():
            raise EnvironmentPrepError(f"{uuidgen} exited cleanly but {p} was not written")
    else:
        if uuidgen:
            logger.debug("%s not on PATH; generating machine id in-process", uuidgen)
        _write_machine_id(p)
    logger.info("generated machine id %s", p)
    return True


def prepare_environment(cfg: SessionConfig) -> PreparedEnvironment:
    """Directories first, then the runtime dir, then the identity file."""
    created = ensure_directories(cfg.paths.required_dirs)
    runtime_dir = ensure_runtime_dir(cfg.paths.runtime_dir, cfg.paths.runtime_dir_mode)
    machine_id = Path(cfg.paths.machine_id)
    made_id = ensure_machine_id(machine_id, uuidgen=cfg.paths.uuidgen)
    return PreparedEnvironment(
        runtime_dir=runtime_dir,
        machine_id=machine_id,
        machine_id_created=made_id,
        created_dirs=created,
    )


__all__ = [
    "PreparedEnvironment",
    "ensure_directories",
    "ensure_machine_id",
    "ensure_runtime_dir",
    "prepare_environment",
]
