"""Session launcher.

Prepares runtime directories and the bus machine id, publishes the graphics
driver alias, then starts the message bus, the X server and the desktop
session as detached processes.
"""

from __future__ import annotations

from .config import SessionConfig, load_session_config
from .errors import DriverNotFoundError, LaunchError
from .session import SessionLauncher, SessionResult, Stage, plan, run_session

__version__ = "0.1.0"

__all__ = [
    "DriverNotFoundError",
    "LaunchError",
    "SessionConfig",
    "SessionLauncher",
    "SessionResult",
    "Stage",
    "load_session_config",
    "plan",
    "run_session",
]
