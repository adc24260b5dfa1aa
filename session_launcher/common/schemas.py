"""Pydantic models for the launch record.

The record is written once per successful launch and read back by
``session-launch stop``. It is the only persistent structured state the
launcher keeps.
"""

from __future__ import annotations

import time
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

RECORD_VERSION = 1


class SLBaseModel(BaseModel):
    """Shared base: unknown keys from newer records are kept, not rejected."""

    model_config = ConfigDict(extra="allow")


class ProcessRecord(SLBaseModel):
    name: str  # bus | display-server | desktop-session
    argv: List[str] = Field(default_factory=list)
    pid: int = Field(..., gt=0)
    pgid: Optional[int] = None
    log_path: Optional[str] = None
    started_ts: float = Field(default_factory=time.time)


class LaunchRecord(SLBaseModel):
    version: int = RECORD_VERSION
    profile: str
    launcher_pid: int
    launcher_pgid: Optional[int] = None
    display: str
    runtime_dir: str
    driver_path: Optional[str] = None
    bus_address: Optional[str] = None
    # Launch order; stop walks this list backwards.
    processes: List[ProcessRecord] = Field(default_factory=list)
    started_ts: float = Field(default_factory=time.time)
    finished_ts: Optional[float] = None

    def process(self, name: str) -> Optional[ProcessRecord]:
        for p in self.processes:
            if p.name == name:
                return p
        return None


__all__ = ["LaunchRecord", "ProcessRecord", "RECORD_VERSION", "SLBaseModel"]
