#!/usr/bin/env python3
"""
Integration tests for the device-mapper fault device.

Builds a real loop device and error mapping, reads across the failing range
and tears everything down again.

Requirements:
- Root or passwordless sudo (tests skip otherwise)
- losetup, dmsetup and dd installed
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path

import pytest

from kstress_mcp.config import FaultInjectionConfig
from kstress_mcp.fault_device import VirtualBlockDeviceBuilder

logger = logging.getLogger(__name__)

pytestmark = pytest.mark.integration

HAS_SUDO = False
try:
    result = subprocess.run(["sudo", "-n", "true"], capture_output=True, timeout=5)
    HAS_SUDO = result.returncode == 0
except (FileNotFoundError, subprocess.TimeoutExpired):
    pass

HAS_TOOLS = all(shutil.which(tool) for tool in ("losetup", "dmsetup", "dd"))

requires_device_tools = pytest.mark.skipif(
    not (HAS_SUDO and HAS_TOOLS), reason="Requires sudo, losetup, dmsetup and dd"
)

ERROR_START = 8192
ERROR_SECTORS = 256


def read_sector(device: str, sector: int) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["sudo", "-n", "dd", f"if={device}", "of=/dev/null", "bs=512",
         f"skip={sector}", "count=1", "iflag=direct"],
        capture_output=True,
        text=True,
        timeout=30,
    )


@pytest.fixture
def builder(tmp_path):
    config = FaultInjectionConfig(
        enabled=True,
        size="16M",
        error_start_sector=ERROR_START,
        error_sectors=ERROR_SECTORS,
        device_name=f"kstress_it_{os.getpid()}",
        backing_dir=tmp_path,
        mount_point=None,
    )
    builder = VirtualBlockDeviceBuilder(config)
    yield builder
    warnings = builder.teardown()
    for warning in warnings:
        logger.warning(warning)


@requires_device_tools
class TestFaultDevice:
    def test_error_range_fails_reads(self, builder):
        device = builder.build()

        assert Path(device.mapped_device).exists()
        assert device.total_sectors == 16 * 1024 * 1024 // 512
        assert (device.error_start, device.error_length) == (ERROR_START, ERROR_SECTORS)

        assert read_sector(device.mapped_device, 0).returncode == 0
        assert read_sector(device.mapped_device, ERROR_START - 1).returncode == 0
        assert read_sector(device.mapped_device, ERROR_START).returncode != 0
        assert read_sector(device.mapped_device, ERROR_START + ERROR_SECTORS - 1).returncode != 0
        assert read_sector(device.mapped_device, ERROR_START + ERROR_SECTORS).returncode == 0

    def test_teardown_releases_everything(self, builder):
        device = builder.build()
        mapped, loop_dev, backing = device.mapped_device, device.loop_device, device.backing_path

        assert builder.teardown() == []
        assert builder.teardown() == []
        assert device.is_released

        assert not Path(mapped).exists()
        assert not Path(backing).exists()
        status = subprocess.run(
            ["sudo", "-n", "losetup", loop_dev], capture_output=True, text=True, timeout=10
        )
        assert str(backing) not in status.stdout

    def test_table_loaded(self, builder):
        device = builder.build()
        name = Path(device.mapped_device).name

        table = subprocess.run(
            ["sudo", "-n", "dmsetup", "table", name], capture_output=True, text=True, timeout=10
        ).stdout.splitlines()

        assert len(table) == 3
        assert table[1].split()[:3] == [str(ERROR_START), str(ERROR_SECTORS), "error"]
