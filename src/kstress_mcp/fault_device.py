"""
Synthetic faulty block device - backing file, loop device, device-mapper error table.

The mapped device reads and writes through to the loop device everywhere
except one sector range, which is backed by the dm "error" target and fails
every I/O. Resources are released in reverse order of acquisition:
mount -> mapped device -> loop binding -> backing file.
"""

import logging
import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config import SECTOR_SIZE, FaultInjectionConfig
from .errors import AllocationError, LoopPermissionError, MappingError, NoFreeSlotError

logger = logging.getLogger(__name__)

MAX_LOOP_SLOTS = 256
DEVICE_WAIT_TIMEOUT = 5.0

_NOT_FOUND_MARKERS = ("No such device", "not found", "does not exist", "No such file")


@dataclass(frozen=True)
class TableSegment:
    """One device-mapper target line, in 512-byte sectors."""

    start: int
    length: int
    target: str  # "linear" or "error"
    device: Optional[str] = None
    offset: int = 0

    @property
    def end(self) -> int:
        return self.start + self.length

    def to_dmsetup(self) -> str:
        if self.target == "linear":
            return f"{self.start} {self.length} linear {self.device} {self.offset}"
        return f"{self.start} {self.length} {self.target}"


@dataclass(frozen=True)
class MappingTable:
    """Ordered device-mapper segments covering [0, total_sectors)."""

    segments: Tuple[TableSegment, ...]

    @property
    def total_sectors(self) -> int:
        return sum(segment.length for segment in self.segments)

    def is_contiguous(self) -> bool:
        position = 0
        for segment in self.segments:
            if segment.start != position or segment.length < 0:
                return False
            position = segment.end
        return True

    def error_segment(self) -> Optional[TableSegment]:
        for segment in self.segments:
            if segment.target == "error":
                return segment
        return None

    def to_dmsetup(self) -> str:
        """Table text for `dmsetup create`.

        Zero-length segments are left out because the kernel rejects them.
        """
        lines = [segment.to_dmsetup() for segment in self.segments if segment.length > 0]
        return "\n".join(lines) + "\n"


def build_error_table(
    total_sectors: int, error_start: int, error_len: int, device: str
) -> MappingTable:
    """Build the linear / error / linear table for a device.

    Args:
        total_sectors: Size of the underlying device in sectors
        error_start: First failing sector
        error_len: Number of failing sectors
        device: Underlying block device for the linear segments

    Returns:
        MappingTable with exactly three segments (outer ones may be empty)

    Raises:
        ValueError: If the error range does not fit inside the device
    """
    if total_sectors < 0 or error_start < 0 or error_len < 0:
        raise ValueError("Sector values cannot be negative")
    if error_start + error_len > total_sectors:
        raise ValueError(
            f"Error range [{error_start}, {error_start + error_len}) exceeds {total_sectors} sectors"
        )

    error_end = error_start + error_len
    return MappingTable(
        segments=(
            TableSegment(0, error_start, "linear", device, 0),
            TableSegment(error_start, error_len, "error"),
            TableSegment(error_end, total_sectors - error_end, "linear", device, error_end),
        )
    )


@dataclass
class FaultDevice:
    """Resources making up the faulty device; None means not acquired."""

    backing_path: Optional[Path] = None
    loop_device: Optional[str] = None
    mapped_device: Optional[str] = None
    total_sectors: int = 0
    error_start: int = 0
    error_length: int = 0
    mount_point: Optional[Path] = None
    mounted: bool = False
    table: Optional[MappingTable] = field(default=None, repr=False)

    @property
    def is_released(self) -> bool:
        return not (self.mounted or self.mapped_device or self.loop_device or self.backing_path)

    def io_target(self) -> Optional[str]:
        """Where I/O workers should aim: the filesystem if mounted, else the raw device."""
        if self.mounted and self.mount_point:
            return str(self.mount_point)
        return self.mapped_device

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backing_path": str(self.backing_path) if self.backing_path else None,
            "loop_device": self.loop_device,
            "mapped_device": self.mapped_device,
            "total_sectors": self.total_sectors,
            "error_start": self.error_start,
            "error_length": self.error_length,
            "mount_point": str(self.mount_point) if self.mount_point else None,
            "mounted": self.mounted,
        }


def _is_not_found(stderr: str) -> bool:
    return any(marker in stderr for marker in _NOT_FOUND_MARKERS)


class VirtualBlockDeviceBuilder:
    """Builds and tears down one FaultDevice.

    Every acquisition is recorded on self.device as soon as it succeeds, so
    teardown() can always release exactly what exists.
    """

    def __init__(
        self,
        config: FaultInjectionConfig,
        use_sudo: Optional[bool] = None,
        sysfs_root: Path = Path("/sys/block"),
        dev_root: Path = Path("/dev"),
    ):
        """Initialize builder.

        Args:
            config: Fault device geometry and placement
            use_sudo: Prefix privileged commands with `sudo -n`; None = only when not root
            sysfs_root: Location of /sys/block (overridable for tests)
            dev_root: Location of /dev (overridable for tests)
        """
        self.config = config
        self.use_sudo = use_sudo
        self.sysfs_root = Path(sysfs_root)
        self.dev_root = Path(dev_root)
        self.device = FaultDevice(mount_point=config.mount_point)

    def _needs_sudo(self) -> bool:
        if self.use_sudo is not None:
            return self.use_sudo
        return os.geteuid() != 0

    def _privileged(self, cmd: List[str]) -> List[str]:
        return ["sudo", "-n"] + cmd if self._needs_sudo() else cmd

    def _run(self, cmd: List[str], timeout: int = 60, **kwargs) -> subprocess.CompletedProcess:
        return subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=timeout, **kwargs)

    # Acquisition

    def allocate_backing_store(self, size_bytes: int) -> Path:
        """Create a zero-filled backing file.

        Args:
            size_bytes: File size in bytes

        Returns:
            Path to the backing file

        Raises:
            AllocationError: If there is not enough free space or the file cannot be created
        """
        backing_dir = Path(self.config.backing_dir)
        try:
            backing_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AllocationError(f"Cannot create backing directory {backing_dir}: {e}") from e

        backing_file = backing_dir / f"{self.config.device_name}.img"
        # fallocate keeps the old contents of a leftover file, and its blocks
        # would hide from the free space check
        if backing_file.exists():
            logger.info(f"Removing stale backing file {backing_file}")
            try:
                backing_file.unlink()
            except OSError as e:
                raise AllocationError(f"Cannot remove stale backing file {backing_file}: {e}") from e

        try:
            free = shutil.disk_usage(backing_dir).free
        except OSError as e:
            raise AllocationError(f"Cannot check free space in {backing_dir}: {e}") from e
        if free < size_bytes:
            raise AllocationError(
                f"Not enough space in {backing_dir}: need {size_bytes} bytes, {free} available"
            )

        try:
            try:
                self._run(["fallocate", "-l", str(size_bytes), str(backing_file)])
            except (subprocess.CalledProcessError, FileNotFoundError) as e:
                # fallocate is unsupported on some filesystems (tmpfs on old kernels, NFS)
                logger.debug(f"fallocate failed, falling back to truncate: {e}")
                self._run(["truncate", "-s", str(size_bytes), str(backing_file)])
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as e:
            stderr = getattr(e, "stderr", None)
            if backing_file.exists():
                backing_file.unlink()
            raise AllocationError(
                f"Cannot create backing file {backing_file}: {stderr.strip() if stderr else e}"
            ) from e

        self.device.backing_path = backing_file
        logger.info(f"✓ Allocated backing store {backing_file} ({size_bytes} bytes)")
        return backing_file

    def _slot_is_free(self, slot: str) -> bool:
        name = Path(slot).name
        if not re.match(r"^loop\d+$", name):
            return False
        if not (self.dev_root / name).exists():
            return False
        return not (self.sysfs_root / name / "loop" / "backing_file").exists()

    def _next_free_hint(self) -> Optional[str]:
        try:
            result = self._run(self._privileged(["losetup", "-f"]), timeout=10)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as e:
            logger.debug(f"losetup -f failed: {e}")
            return None
        return result.stdout.strip() or None

    def find_free_loop_slot(self) -> str:
        """Find an unbound loop device.

        The `losetup -f` hint is only trusted after the same check the linear
        scan applies (device node exists, no backing file in sysfs), since the
        hint can be stale by the time we bind.

        Raises:
            NoFreeSlotError: If every slot is in use
        """
        hint = self._next_free_hint()
        if hint and self._slot_is_free(hint):
            return str(self.dev_root / Path(hint).name)
        if hint:
            logger.debug(f"losetup -f suggested {hint} but it failed verification, scanning")

        for index in range(MAX_LOOP_SLOTS):
            candidate = f"loop{index}"
            if self._slot_is_free(candidate):
                return str(self.dev_root / candidate)

        raise NoFreeSlotError(f"No free loop device among {self.dev_root}/loop0-{MAX_LOOP_SLOTS - 1}")

    def bind_loop_device(self, backing_path: Path) -> str:
        """Bind the backing file to a free loop device.

        Tries without privilege first, then once more with sudo.

        Returns:
            Loop device path (e.g. /dev/loop3)

        Raises:
            NoFreeSlotError: If no unbound slot exists
            LoopPermissionError: If binding fails even with elevated privilege
        """
        slot = self.find_free_loop_slot()
        cmd = ["losetup", slot, str(backing_path)]

        attempts = [cmd]
        if self.use_sudo is not False and (self.use_sudo or os.geteuid() != 0):
            attempts.append(["sudo", "-n"] + cmd)

        last_error = ""
        for attempt in attempts:
            try:
                self._run(attempt, timeout=30)
            except subprocess.CalledProcessError as e:
                last_error = (e.stderr or str(e)).strip()
                logger.debug(f"{' '.join(attempt)} failed: {last_error}")
                continue
            except (subprocess.TimeoutExpired, FileNotFoundError) as e:
                last_error = str(e)
                continue

            self.device.loop_device = slot
            logger.info(f"✓ Bound {backing_path} to {slot}")
            return slot

        raise LoopPermissionError(f"Cannot bind {backing_path} to {slot}: {last_error}")

    def device_sectors(self, device_path: str) -> int:
        """Size of a block device in sectors, falling back to the configured size."""
        try:
            result = self._run(self._privileged(["blockdev", "--getsz", device_path]), timeout=10)
            return int(result.stdout.strip())
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError, ValueError) as e:
            logger.debug(f"blockdev --getsz {device_path} failed, using configured size: {e}")
            return self.config.size_bytes // SECTOR_SIZE

    def build_error_table(self, total_sectors: int, error_start: int, error_len: int) -> MappingTable:
        """Three-segment table over the bound loop device.

        Raises:
            MappingError: If no loop device is bound or the range does not fit
        """
        if not self.device.loop_device:
            raise MappingError("No loop device bound")
        try:
            table = build_error_table(total_sectors, error_start, error_len, self.device.loop_device)
        except ValueError as e:
            raise MappingError(str(e)) from e

        self.device.total_sectors = total_sectors
        self.device.error_start = error_start
        self.device.error_length = error_len
        self.device.table = table
        return table

    def _remove_mapping(self, name: str) -> None:
        """Remove a mapped device, treating "not found" as success."""
        try:
            self._run(self._privileged(["dmsetup", "remove", name]), timeout=30)
        except subprocess.CalledProcessError as e:
            if not _is_not_found(e.stderr or ""):
                raise

    def activate(self, table: MappingTable) -> str:
        """Create the mapped device, replacing any stale one with the same name.

        Returns:
            Mapped device path (/dev/mapper/<name>)

        Raises:
            MappingError: If dmsetup fails or the device node never appears
        """
        name = self.config.device_name

        try:
            self._remove_mapping(name)
        except subprocess.CalledProcessError as e:
            raise MappingError(f"Cannot remove stale mapping {name}: {(e.stderr or '').strip()}") from e
        except (subprocess.TimeoutExpired, FileNotFoundError) as e:
            raise MappingError(f"dmsetup unavailable: {e}") from e

        try:
            self._run(self._privileged(["dmsetup", "create", name]), input=table.to_dmsetup(), timeout=30)
        except subprocess.CalledProcessError as e:
            raise MappingError(f"dmsetup create {name} failed: {(e.stderr or '').strip()}") from e
        except (subprocess.TimeoutExpired, FileNotFoundError) as e:
            raise MappingError(f"dmsetup create {name} failed: {e}") from e

        mapped = self.dev_root / "mapper" / name
        self.device.mapped_device = str(mapped)

        deadline = time.monotonic() + DEVICE_WAIT_TIMEOUT
        while not mapped.exists():
            if time.monotonic() >= deadline:
                raise MappingError(f"Device {mapped} did not appear after activation")
            time.sleep(0.1)

        error = table.error_segment()
        logger.info(
            f"✓ Activated {mapped}: sectors {error.start}-{error.end} fail with EIO"
            if error
            else f"✓ Activated {mapped}"
        )
        return str(mapped)

    def format_and_mount(self, mapped_device_path: str, mount_point: Path) -> bool:
        """Create a filesystem on the mapped device and mount it.

        Failure is soft: the raw mapped device stays usable for direct I/O.

        Returns:
            True if the device is mounted
        """
        fstype = self.config.filesystem
        force = "-f" if fstype in ("xfs", "btrfs") else "-F"

        try:
            self._run(self._privileged([f"mkfs.{fstype}", force, mapped_device_path]), timeout=300)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as e:
            stderr = getattr(e, "stderr", None)
            logger.warning(f"⚠ mkfs.{fstype} on {mapped_device_path} failed: {stderr.strip() if stderr else e}")
            return False

        try:
            self._run(self._privileged(["mkdir", "-p", str(mount_point)]), timeout=10)
            self._run(self._privileged(["mount", mapped_device_path, str(mount_point)]), timeout=60)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as e:
            stderr = getattr(e, "stderr", None)
            logger.warning(f"⚠ Cannot mount {mapped_device_path} on {mount_point}: {stderr.strip() if stderr else e}")
            return False

        self.device.mount_point = Path(mount_point)
        self.device.mounted = True

        # Workers run unprivileged
        try:
            self._run(self._privileged(["chmod", "777", str(mount_point)]), timeout=10)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as e:
            logger.debug(f"chmod {mount_point} failed: {e}")

        logger.info(f"✓ Mounted {mapped_device_path} ({fstype}) on {mount_point}")
        return True

    def build(self) -> FaultDevice:
        """Run every acquisition step.

        On failure everything acquired so far is released before re-raising.

        Raises:
            FaultInjectionError: Any subclass, from the step that failed
        """
        try:
            backing = self.allocate_backing_store(self.config.size_bytes)
            loop_dev = self.bind_loop_device(backing)
            total = self.device_sectors(loop_dev)
            start, length = self.config.resolve_error_range(total)
            table = self.build_error_table(total, start, length)
            mapped = self.activate(table)
            if self.config.mount_point:
                self.format_and_mount(mapped, self.config.mount_point)
        except Exception:
            self.teardown()
            raise

        return self.device

    # Release

    def teardown(self) -> List[str]:
        """Release everything in reverse order of acquisition.

        Each step is attempted regardless of earlier failures, and a second
        call is a no-op.

        Returns:
            Warnings for steps that failed (never raises)
        """
        warnings: List[str] = []
        device = self.device
        if device.is_released:
            return warnings

        if device.mounted and device.mount_point:
            try:
                self._run(self._privileged(["umount", str(device.mount_point)]), timeout=60)
                device.mounted = False
            except Exception as e:
                logger.debug(f"umount {device.mount_point} failed, trying lazy unmount: {e}")
                try:
                    self._run(self._privileged(["umount", "-l", str(device.mount_point)]), timeout=60)
                    device.mounted = False
                except Exception as e2:
                    warnings.append(f"Failed to unmount {device.mount_point}: {e2}")

        if device.mapped_device:
            try:
                self._remove_mapping(self.config.device_name)
                device.mapped_device = None
            except subprocess.CalledProcessError as e:
                warnings.append(f"Failed to remove {device.mapped_device}: {(e.stderr or '').strip()}")
            except Exception as e:
                warnings.append(f"Failed to remove {device.mapped_device}: {e}")

        if device.loop_device:
            try:
                self._run(self._privileged(["losetup", "-d", device.loop_device]), timeout=30)
                device.loop_device = None
            except subprocess.CalledProcessError as e:
                stderr = e.stderr or ""
                if _is_not_found(stderr):
                    device.loop_device = None
                else:
                    warnings.append(f"Failed to detach {device.loop_device}: {stderr.strip()}")
            except Exception as e:
                warnings.append(f"Failed to detach {device.loop_device}: {e}")

        if device.backing_path:
            try:
                device.backing_path.unlink()
                device.backing_path = None
            except FileNotFoundError:
                device.backing_path = None
            except OSError as e:
                warnings.append(f"Failed to remove backing file {device.backing_path}: {e}")

        if warnings:
            for warning in warnings:
                logger.warning(f"⚠ {warning}")
        else:
            logger.info("✓ Fault device released")

        return warnings
