"""
Run configuration - defaults, size parsing, JSON file and environment loading.
"""

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ConfigError

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512
CONFIG_VERSION = "1.0"

DEFAULT_LOG_DIR = Path("./kstress_logs")
DEFAULT_TEST_DIR = Path("./kstress_test_files")
DEFAULT_BACKING_DIR = Path("/var/tmp/kstress-fault")
DEFAULT_MOUNT_POINT = Path("/mnt/kstress_faulty")

_SIZE_UNITS = {
    "": 1,
    "B": 1,
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
    "T": 1024**4,
}


def parse_size_to_bytes(size: Union[str, int]) -> int:
    """Parse a size string to bytes.

    Args:
        size: Size string (e.g., "10G", "512M", "1024K") or a byte count

    Returns:
        Size in bytes

    Raises:
        ConfigError: If the size is malformed or zero
    """
    if isinstance(size, int):
        if size <= 0:
            raise ConfigError(f"Size must be positive: {size}")
        return size

    match = re.match(r"^\s*(\d+)\s*([KMGTB]?)(?:i?B)?\s*$", str(size), re.IGNORECASE)
    if not match:
        raise ConfigError(f"Invalid size format: {size}. Use format like '10G', '512M', or '1024K'")

    size_num = int(match.group(1))
    if size_num == 0:
        raise ConfigError("Size cannot be zero")

    return size_num * _SIZE_UNITS[match.group(2).upper()]


@dataclass(frozen=True)
class FaultInjectionConfig:
    """Geometry and placement of the synthetic faulty device."""

    enabled: bool = False
    size: str = "1G"  # Backing store size
    error_start_sector: Optional[int] = None  # None = middle of the device
    error_sectors: int = 2048
    device_name: str = "kstress_faulty"  # /dev/mapper/<device_name>
    backing_dir: Path = DEFAULT_BACKING_DIR
    mount_point: Optional[Path] = DEFAULT_MOUNT_POINT  # None = raw device only
    filesystem: str = "ext4"

    @property
    def size_bytes(self) -> int:
        return parse_size_to_bytes(self.size)

    @property
    def total_sectors(self) -> int:
        return self.size_bytes // SECTOR_SIZE

    def resolve_error_range(self, total_sectors: Optional[int] = None) -> Tuple[int, int]:
        """Return (error_start, error_length) in sectors for a device size."""
        total = total_sectors if total_sectors is not None else self.total_sectors
        start = self.error_start_sector
        if start is None:
            start = max(0, (total - self.error_sectors) // 2)
        return start, self.error_sectors

    def validate(self) -> None:
        if not self.enabled:
            return
        total = self.total_sectors
        if total <= 0:
            raise ConfigError(f"Fault device size {self.size} is smaller than one sector")
        if self.error_sectors < 0:
            raise ConfigError("error_sectors cannot be negative")
        start, length = self.resolve_error_range(total)
        if start < 0 or start + length > total:
            raise ConfigError(
                f"Error range [{start}, {start + length}) does not fit in {total} sectors"
            )
        if not re.match(r"^[A-Za-z0-9_.+-]+$", self.device_name):
            raise ConfigError(f"Invalid device-mapper name: {self.device_name}")


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration snapshot for one stress run."""

    duration: int = 600  # seconds
    memory_size: str = "4G"
    memory_workers: int = 4
    io_threads: int = 8
    file_count: int = 100000
    test_dir: Path = DEFAULT_TEST_DIR
    log_dir: Path = DEFAULT_LOG_DIR

    enable_memory: bool = True
    enable_file_churn: bool = True
    enable_io: bool = True
    enable_system_monitors: bool = False

    grace_period: float = 5.0  # seconds between SIGTERM and SIGKILL
    sample_interval: float = 1.0
    progress_every: int = 30  # ticks
    detail_limit: Optional[int] = 1000  # lines kept per category, None = unbounded
    kernel_log_path: Optional[Path] = None  # None = read via dmesg

    fault: FaultInjectionConfig = field(default_factory=FaultInjectionConfig)

    def validate(self) -> None:
        """Raise ConfigError if the configuration cannot describe a run."""
        if self.duration <= 0:
            raise ConfigError(f"duration must be positive, got {self.duration}")
        for name in ("memory_workers", "io_threads", "file_count"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} cannot be negative")
        if self.grace_period < 0:
            raise ConfigError("grace_period cannot be negative")
        if self.sample_interval <= 0:
            raise ConfigError("sample_interval must be positive")
        if self.progress_every <= 0:
            raise ConfigError("progress_every must be positive")
        if self.detail_limit is not None and self.detail_limit < 0:
            raise ConfigError("detail_limit cannot be negative")
        parse_size_to_bytes(self.memory_size)
        self.fault.validate()

    def with_overrides(self, **changes: Any) -> "RunConfig":
        """Return a copy with the given fields replaced."""
        fault_changes = changes.pop("fault", None)
        config = replace(self, **_coerce_run_fields(changes))
        if fault_changes:
            if isinstance(fault_changes, FaultInjectionConfig):
                config = replace(config, fault=fault_changes)
            else:
                config = replace(
                    config, fault=replace(config.fault, **_coerce_fault_fields(fault_changes))
                )
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        for key, value in list(data.items()):
            if isinstance(value, Path):
                data[key] = str(value)
        data["fault"] = {
            key: str(value) if isinstance(value, Path) else value
            for key, value in data["fault"].items()
        }
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "RunConfig":
        """Create RunConfig from a dictionary (same shape as to_dict)."""
        data = dict(data)
        fault_data = data.pop("fault", None) or {}
        fault = FaultInjectionConfig(**_coerce_fault_fields(fault_data))
        return RunConfig(fault=fault, **_coerce_run_fields(data))


_PATH_RUN_FIELDS = {"test_dir", "log_dir", "kernel_log_path"}
_PATH_FAULT_FIELDS = {"backing_dir", "mount_point"}


def _coerce(data: Dict[str, Any], allowed: List[str], path_fields: set, what: str) -> Dict[str, Any]:
    unknown = set(data) - set(allowed)
    if unknown:
        raise ConfigError(f"Unknown {what} option(s): {', '.join(sorted(unknown))}")
    result = {}
    for key, value in data.items():
        if key in path_fields and value is not None:
            value = Path(value)
        result[key] = value
    return result


def _coerce_run_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    allowed = [f.name for f in fields(RunConfig) if f.name != "fault"]
    return _coerce(data, allowed, _PATH_RUN_FIELDS, "run")


def _coerce_fault_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    allowed = [f.name for f in fields(FaultInjectionConfig)]
    return _coerce(data, allowed, _PATH_FAULT_FIELDS, "fault")


# Environment overrides: variable name -> (field, converter)
ENV_OVERRIDES = {
    "KSTRESS_DURATION": ("duration", int),
    "KSTRESS_GRACE_PERIOD": ("grace_period", float),
    "KSTRESS_LOG_DIR": ("log_dir", Path),
    "KSTRESS_TEST_DIR": ("test_dir", Path),
}


def _env_overrides() -> Dict[str, Any]:
    overrides = {}
    for var, (name, convert) in ENV_OVERRIDES.items():
        raw = os.getenv(var)
        if raw is None or raw == "":
            continue
        try:
            overrides[name] = convert(raw)
        except (ValueError, TypeError):
            logger.warning(f"Invalid {var} environment variable {raw!r}, using default")
    return overrides


def load_run_config(
    path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None
) -> RunConfig:
    """Load a validated RunConfig.

    Layers, lowest priority first: defaults, JSON file, KSTRESS_* environment
    variables, explicit overrides.

    Args:
        path: Optional JSON file ({"version": "1.0", "run": {...}, "fault": {...}})
        overrides: Optional field overrides; a nested "fault" dict is allowed

    Returns:
        Validated RunConfig

    Raises:
        ConfigError: If the file cannot be parsed or a value is invalid
    """
    config = RunConfig()

    if path is not None:
        path = Path(path)
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")

        version = data.get("version", CONFIG_VERSION)
        if version != CONFIG_VERSION:
            logger.warning(f"Unknown config version: {version}")

        run_data = dict(data.get("run", {}))
        if "fault" in data:
            run_data["fault"] = data["fault"]
        config = config.with_overrides(**run_data)
        logger.info(f"Loaded run configuration from {path}")

    env = _env_overrides()
    if env:
        config = config.with_overrides(**env)

    if overrides:
        config = config.with_overrides(**dict(overrides))

    config.validate()
    return config


SENSITIVE_LOCATIONS = ["/etc", "/var", "/usr", "/boot", "/lib", "/sbin", "/bin", "/dev", "/proc", "/sys"]


def check_test_dir_safety(test_dir: Path) -> List[str]:
    """Return warnings for test directories in system locations.

    Never fatal; the caller logs the warnings and carries on.
    """
    warnings = []
    resolved = Path(test_dir).resolve()
    text = str(resolved)

    for location in SENSITIVE_LOCATIONS:
        if text == location or text.startswith(location + "/"):
            warnings.append(
                f"Test directory {resolved} is under system location {location}; "
                "consider /tmp or your home directory"
            )
            return warnings

    if len(resolved.parts) <= 2:
        warnings.append(
            f"Test directory {resolved} is directly under the root filesystem; "
            "consider /tmp or your home directory"
        )

    return warnings
