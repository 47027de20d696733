"""
Exception types shared across kstress-mcp.

Fault-injection errors are always recoverable (the run continues without
injection), worker errors are isolated per category, and only ConfigError
aborts a run.
"""

from typing import Iterable, Optional


class KstressError(Exception):
    """Base class for all kstress-mcp errors."""


class ConfigError(KstressError):
    """Run configuration is invalid or could not be parsed."""


class FaultInjectionError(KstressError):
    """Building the faulty block device failed."""


class AllocationError(FaultInjectionError):
    """Backing store could not be created (no space, bad path)."""


class NoFreeSlotError(FaultInjectionError):
    """No unbound loop device slot was found."""


class LoopPermissionError(FaultInjectionError, PermissionError):
    """Loop binding failed even after retrying with sudo."""


class MappingError(FaultInjectionError):
    """Device-mapper table could not be activated."""


class WorkerSpawnError(KstressError):
    """A load generator could not be started."""

    def __init__(self, message: str, category: Optional[str] = None):
        super().__init__(message)
        self.category = category


class MonitorReadError(KstressError):
    """Kernel log could not be read on this tick."""


class ShutdownTimeoutError(KstressError):
    """Workers survived the grace period and need a forced kill."""

    def __init__(self, survivors: Iterable[int]):
        self.survivors = sorted(survivors)
        super().__init__(f"{len(self.survivors)} worker(s) still alive after grace period")
