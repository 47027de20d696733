"""
Load generator command templates.

The tools themselves (stress-ng, fio, sar, iostat) are opaque: this module
only builds their command lines, decides where their output goes, and
starts them through a WorkerRegistry.
"""

import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .config import RunConfig
from .errors import WorkerSpawnError
from .workers import WorkerCategory, WorkerRegistry

logger = logging.getLogger(__name__)

# Tool -> what it is used for
DEPENDENCIES = {
    "stress-ng": "memory pressure",
    "fio": "block I/O load",
    "dmesg": "kernel log monitoring",
    "sar": "system monitors (optional)",
    "iostat": "system monitors (optional)",
    "losetup": "fault injection",
    "dmsetup": "fault injection",
}

REQUIRED = ("stress-ng", "fio", "dmesg")


@dataclass
class WorkerSpec:
    """Everything needed to start one load generator."""

    category: WorkerCategory
    name: str
    cmd: List[str]
    artifact_path: Optional[Path] = None
    output_path: Optional[Path] = None  # stdout/stderr destination
    cwd: Optional[Path] = None
    env: Optional[Dict[str, str]] = field(default=None, repr=False)


def resolve_binary(name: str) -> Optional[str]:
    """Find an executable on PATH, then in the current directory.

    Args:
        name: Binary name or path

    Returns:
        Path to the executable, or None if not found
    """
    if os.sep in name:
        return name if os.path.isfile(name) and os.access(name, os.X_OK) else None

    found = shutil.which(name)
    if found:
        return found

    local = Path(".") / name
    if local.is_file() and os.access(local, os.X_OK):
        return str(local.resolve())
    return None


def check_dependencies() -> Dict[str, Dict[str, Optional[str]]]:
    """Report availability of every external tool.

    Returns:
        {tool: {"path": path_or_None, "purpose": ..., "required": bool}}
    """
    report = {}
    for tool, purpose in DEPENDENCIES.items():
        report[tool] = {
            "path": resolve_binary(tool),
            "purpose": purpose,
            "required": tool in REQUIRED,
        }
    return report


def memory_pressure_spec(config: RunConfig) -> WorkerSpec:
    """stress-ng VM workers keeping kswapd busy for the whole run."""
    output = config.log_dir / "memory_stress.log"
    return WorkerSpec(
        category=WorkerCategory.MEMORY,
        name="stress-ng-vm",
        cmd=[
            "stress-ng",
            "--vm", str(config.memory_workers),
            "--vm-bytes", config.memory_size,
            "--vm-method", "all",
            "--vm-hang", "0",
            "--timeout", f"{config.duration}s",
            "--metrics-brief",
        ],
        artifact_path=output,
        output_path=output,
    )


def file_churn_spec(config: RunConfig) -> WorkerSpec:
    """Python churn worker creating and deleting small files in test_dir."""
    log_file = config.log_dir / "file_operations.log"
    return WorkerSpec(
        category=WorkerCategory.FILE_CHURN,
        name="file-churn",
        cmd=[
            sys.executable,
            "-m", "kstress_mcp.churn",
            str(config.test_dir),
            str(config.file_count),
            "--log-file", str(log_file),
        ],
        artifact_path=log_file,
    )


def io_specs(config: RunConfig, target: Optional[str] = None) -> List[WorkerSpec]:
    """Two fio jobs: 512-byte random writes and 4k random read/write with verify.

    Args:
        config: Run configuration
        target: Mount point or raw block device to aim at (default: test_dir)

    Returns:
        fio worker specs writing JSON results to the log directory
    """
    if target and target.startswith("/dev/"):
        # Raw mapped device: no filesystem, size comes from the device
        location = [f"--filename={target}"]
        write_size: List[str] = []
        verify_size: List[str] = []
    else:
        location = [f"--directory={target or config.test_dir}"]
        write_size = ["--size=2G"]
        verify_size = ["--size=1G"]

    common = [
        "--ioengine=posixaio",
        "--direct=1",
        f"--runtime={config.duration}",
        "--time_based",
        "--group_reporting",
        "--output-format=json",
    ]

    write_output = config.log_dir / "fio_io.json"
    verify_output = config.log_dir / "fio_verify.json"

    return [
        WorkerSpec(
            category=WorkerCategory.IO,
            name="fio-randwrite",
            cmd=["fio", "--name=kstress_randwrite", *location, "--bs=512", "--iodepth=256", *write_size,
                 "--rw=randwrite", f"--numjobs={config.io_threads * 2}", *common,
                 f"--output={write_output}"],
            artifact_path=write_output,
        ),
        WorkerSpec(
            category=WorkerCategory.IO,
            name="fio-verify",
            cmd=["fio", "--name=kstress_verify", *location, "--bs=4k", "--iodepth=128", *verify_size,
                 "--rw=randrw", "--rwmixread=50", "--verify=crc32c",
                 f"--numjobs={config.io_threads}", *common, f"--output={verify_output}"],
            artifact_path=verify_output,
        ),
    ]


def system_monitor_specs(config: RunConfig) -> List[WorkerSpec]:
    """sar/iostat samplers, skipping tools that are not installed."""
    system_dir = config.log_dir / "system"
    candidates = [
        ("sar-cpu", ["sar", "-u", "1"], system_dir / "cpu.log"),
        ("sar-memory", ["sar", "-r", "1"], system_dir / "memory.log"),
        ("sar-disk", ["sar", "-d", "1"], system_dir / "disk.log"),
        ("iostat", ["iostat", "-x", "1"], system_dir / "iostat.log"),
    ]

    specs = []
    for name, cmd, output in candidates:
        if resolve_binary(cmd[0]) is None:
            logger.info(f"{cmd[0]} not installed, skipping {name} monitor")
            continue
        specs.append(
            WorkerSpec(
                category=WorkerCategory.MONITOR,
                name=name,
                cmd=cmd,
                artifact_path=output,
                output_path=output,
            )
        )
    return specs


def plan_workers(config: RunConfig, io_target: Optional[str] = None) -> List[WorkerSpec]:
    """Worker specs for every enabled category, in start order."""
    specs: List[WorkerSpec] = []
    if config.enable_system_monitors:
        specs.extend(system_monitor_specs(config))
    if config.enable_memory and config.memory_workers > 0:
        specs.append(memory_pressure_spec(config))
    if config.enable_file_churn and config.file_count > 0:
        specs.append(file_churn_spec(config))
    if config.enable_io and config.io_threads > 0:
        specs.extend(io_specs(config, io_target))
    return specs


def launch(registry: WorkerRegistry, spec: WorkerSpec) -> int:
    """Resolve the binary and start the worker through the registry.

    Returns:
        worker_id

    Raises:
        WorkerSpawnError: If the binary is missing or the process cannot start
    """
    binary = resolve_binary(spec.cmd[0])
    if binary is None:
        raise WorkerSpawnError(f"{spec.cmd[0]} not found on PATH or in ./", spec.category.value)

    return registry.spawn(
        spec.category,
        [binary] + spec.cmd[1:],
        artifact_path=spec.artifact_path,
        name=spec.name,
        output_path=spec.output_path,
        cwd=spec.cwd,
        env=spec.env,
    )
