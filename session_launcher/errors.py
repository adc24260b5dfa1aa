"""Launch failures.

Everything here is fatal for the session: the launcher stops at the stage that
raised and reports the message on stderr.
"""

from __future__ import annotations


class LaunchError(RuntimeError):
    pass


class EnvironmentPrepError(LaunchError):
    pass


class DriverNotFoundError(LaunchError):
    """No directory matched the driver pattern; nothing was linked."""

    def __init__(self, search_dir: str, pattern: str):
        self.search_dir = str(search_dir)
        self.pattern = str(pattern)
        super().__init__(f"graphics-drivers not found ({self.search_dir}/{self.pattern})")


class DriverLinkError(LaunchError):
    pass


class SpawnError(LaunchError):
    def __init__(self, name: str, detail: str):
        self.name = str(name)
        self.detail = str(detail)
        super().__init__(f"failed to launch {self.name}: {self.detail}")


class ReadinessError(LaunchError):
    pass


class StateError(LaunchError):
    """The launch record exists but cannot be read."""


__all__ = [
    "DriverLinkError",
    "DriverNotFoundError",
    "EnvironmentPrepError",
    "LaunchError",
    "ReadinessError",
    "SpawnError",
    "StateError",
]
