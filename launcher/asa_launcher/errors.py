"""
Exception hierarchy for the fleet manager.

Filesystem and process errors abort the current provisioning step, RCON
errors are distinguishable by cause so status polling can tell "not up yet"
from "misconfigured", validation errors carry a user-facing message.
"""

from __future__ import annotations
from pathlib import Path
from typing import Optional


class LauncherError(Exception):
    """Base class for all errors raised by asa_launcher."""


# --- filesystem ---

class FilesystemError(LauncherError):
    def __init__(self, step: str, path: Path, cause: Optional[BaseException] = None):
        self.step = step
        self.path = Path(path)
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{step} failed for {self.path}{detail}")


# --- process ---

class ProcessError(LauncherError):
    pass


class SpawnError(ProcessError):
    pass


class AmbiguousProcessMatchError(ProcessError):
    def __init__(self, name: str, pids):
        self.name = name
        self.pids = list(pids)
        super().__init__(f"Multiple processes match server {name!r}: pids={self.pids}")


# --- network / protocol ---

class RconError(LauncherError):
    pass


class RconConnectionError(RconError):
    pass


class RconAuthError(RconError):
    pass


class RconTimeoutError(RconError):
    pass


class RconProtocolError(RconError):
    pass


# --- validation ---

class ConfigValidationError(LauncherError):
    pass


class PortCollisionError(ConfigValidationError):
    def __init__(self, port: int, owner: str, requested_by: str):
        self.port = port
        self.owner = owner
        self.requested_by = requested_by
        super().__init__(f"Port {port} requested by {requested_by!r} is already used by {owner!r}")


class DuplicateNameError(ConfigValidationError):
    pass


class NotFoundError(ConfigValidationError):
    pass


# --- binaries ---

class BinaryInstallError(LauncherError):
    pass


class InstallBusyError(BinaryInstallError):
    pass


# --- jobs ---

class JobStateError(LauncherError):
    pass
