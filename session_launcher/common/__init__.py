"""Data shapes shared by the launcher and its stop command."""

from .schemas import LaunchRecord, ProcessRecord

__all__ = ["LaunchRecord", "ProcessRecord"]
