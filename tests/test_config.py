"""
Tests for run configuration loading and validation.
"""

import json
from pathlib import Path

import pytest

from kstress_mcp.config import (
    FaultInjectionConfig,
    RunConfig,
    check_test_dir_safety,
    load_run_config,
    parse_size_to_bytes,
)
from kstress_mcp.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep KSTRESS_* variables from the developer's shell out of the tests."""
    for var in ("KSTRESS_DURATION", "KSTRESS_GRACE_PERIOD", "KSTRESS_LOG_DIR", "KSTRESS_TEST_DIR"):
        monkeypatch.delenv(var, raising=False)


class TestParseSize:
    """Test size string parsing."""

    @pytest.mark.parametrize(
        "size,expected",
        [
            ("1024K", 1024 * 1024),
            ("512M", 512 * 1024**2),
            ("10G", 10 * 1024**3),
            ("1T", 1024**4),
            ("4096", 4096),
            ("2g", 2 * 1024**3),
            ("1GiB", 1024**3),
            (8192, 8192),
        ],
    )
    def test_valid_sizes(self, size, expected):
        assert parse_size_to_bytes(size) == expected

    @pytest.mark.parametrize("size", ["", "abc", "10X", "-5G", "1.5G"])
    def test_invalid_sizes(self, size):
        with pytest.raises(ConfigError):
            parse_size_to_bytes(size)

    def test_zero_size_rejected(self):
        with pytest.raises(ConfigError, match="zero"):
            parse_size_to_bytes("0G")


class TestFaultInjectionConfig:
    """Test fault device geometry."""

    def test_default_error_range_is_centered(self):
        fault = FaultInjectionConfig(size="1M")  # 2048 sectors
        start, length = fault.resolve_error_range()
        assert fault.total_sectors == 2048
        assert length == 2048
        assert start == 0

    def test_explicit_error_range(self):
        fault = FaultInjectionConfig(size="1G", error_start_sector=100, error_sectors=50)
        assert fault.resolve_error_range() == (100, 50)

    def test_middle_of_large_device(self):
        fault = FaultInjectionConfig(size="1G")
        start, length = fault.resolve_error_range()
        total = 1024**3 // 512
        assert start == (total - 2048) // 2
        assert start + length <= total

    def test_range_outside_device_rejected(self):
        fault = FaultInjectionConfig(enabled=True, size="1M", error_start_sector=2000, error_sectors=100)
        with pytest.raises(ConfigError, match="does not fit"):
            fault.validate()

    def test_disabled_fault_config_not_validated(self):
        fault = FaultInjectionConfig(enabled=False, size="1M", error_start_sector=5000)
        fault.validate()

    def test_invalid_device_name(self):
        fault = FaultInjectionConfig(enabled=True, device_name="bad name/with slash")
        with pytest.raises(ConfigError, match="device-mapper name"):
            fault.validate()


class TestRunConfig:
    """Test RunConfig defaults, overrides and serialization."""

    def test_defaults(self):
        config = RunConfig()
        assert config.duration == 600
        assert config.memory_size == "4G"
        assert config.memory_workers == 4
        assert config.io_threads == 8
        assert config.file_count == 100000
        assert config.grace_period == 5.0
        assert config.sample_interval == 1.0
        assert config.progress_every == 30
        assert config.detail_limit == 1000
        assert config.fault.enabled is False
        config.validate()

    def test_config_is_immutable(self):
        config = RunConfig()
        with pytest.raises(Exception):
            config.duration = 5

    def test_with_overrides_returns_new_instance(self):
        config = RunConfig()
        changed = config.with_overrides(duration=5, test_dir="/tmp/x")
        assert config.duration == 600
        assert changed.duration == 5
        assert changed.test_dir == Path("/tmp/x")

    def test_with_overrides_nested_fault(self):
        config = RunConfig().with_overrides(fault={"enabled": True, "size": "64M"})
        assert config.fault.enabled is True
        assert config.fault.size == "64M"
        assert config.fault.device_name == "kstress_faulty"

    def test_unknown_option_rejected(self):
        with pytest.raises(ConfigError, match="Unknown run option"):
            RunConfig().with_overrides(bogus=1)

    @pytest.mark.parametrize(
        "changes",
        [
            {"duration": 0},
            {"memory_workers": -1},
            {"grace_period": -1},
            {"sample_interval": 0},
            {"progress_every": 0},
            {"memory_size": "lots"},
        ],
    )
    def test_validate_rejects_impossible_values(self, changes):
        with pytest.raises(ConfigError):
            RunConfig().with_overrides(**changes).validate()

    def test_to_dict_from_dict(self, tmp_path):
        config = RunConfig(duration=30, log_dir=tmp_path / "logs").with_overrides(
            fault={"enabled": True, "mount_point": None}
        )
        data = config.to_dict()
        json.dumps(data)  # must be serializable
        assert data["log_dir"] == str(tmp_path / "logs")
        assert data["fault"]["mount_point"] is None

        restored = RunConfig.from_dict(data)
        assert restored == config


class TestLoadRunConfig:
    """Test layered configuration loading."""

    def test_defaults_only(self):
        assert load_run_config() == RunConfig()

    def test_json_file(self, tmp_path):
        path = tmp_path / "run.json"
        path.write_text(
            json.dumps(
                {
                    "version": "1.0",
                    "run": {"duration": 120, "io_threads": 2},
                    "fault": {"enabled": True, "size": "256M"},
                }
            )
        )

        config = load_run_config(path)

        assert config.duration == 120
        assert config.io_threads == 2
        assert config.fault.enabled is True
        assert config.fault.size == "256M"

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "run.json"
        path.write_text(json.dumps({"run": {"duration": 120}}))
        monkeypatch.setenv("KSTRESS_DURATION", "30")
        monkeypatch.setenv("KSTRESS_LOG_DIR", str(tmp_path / "env-logs"))

        config = load_run_config(path)

        assert config.duration == 30
        assert config.log_dir == tmp_path / "env-logs"

    def test_explicit_overrides_win(self, monkeypatch):
        monkeypatch.setenv("KSTRESS_DURATION", "30")
        config = load_run_config(overrides={"duration": 10})
        assert config.duration == 10

    def test_invalid_env_value_falls_back(self, monkeypatch):
        monkeypatch.setenv("KSTRESS_DURATION", "soon")
        config = load_run_config()
        assert config.duration == 600

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read config file"):
            load_run_config(tmp_path / "missing.json")

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            load_run_config(path)

    def test_unknown_key_in_file(self, tmp_path):
        path = tmp_path / "run.json"
        path.write_text(json.dumps({"run": {"threads": 4}}))
        with pytest.raises(ConfigError, match="threads"):
            load_run_config(path)

    def test_invalid_values_rejected(self):
        with pytest.raises(ConfigError):
            load_run_config(overrides={"duration": -1})


class TestTestDirSafety:
    """Test warnings for dangerous test directory locations."""

    @pytest.mark.parametrize("path", ["/etc/kstress", "/usr/local/tmp", "/var/lib/stress", "/proc"])
    def test_system_locations_warn(self, path):
        warnings = check_test_dir_safety(Path(path))
        assert len(warnings) == 1
        assert "system location" in warnings[0]

    def test_root_level_directory_warns(self):
        warnings = check_test_dir_safety(Path("/kstress"))
        assert warnings
        assert "root filesystem" in warnings[0]

    def test_tmp_path_is_fine(self, tmp_path):
        assert check_test_dir_safety(tmp_path / "files") == []
