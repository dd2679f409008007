"""
Tests for common and utils modules (errors, logging, settings, host facts).
"""

import json
import logging
import os
import subprocess
import time
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest


class TestExceptions:
    """Tests for exception hierarchy."""

    def test_base_error_basic(self):
        """Test basic GpuSetupError."""
        from common.exceptions import GpuSetupError

        error = GpuSetupError("Something failed")
        assert str(error) == "[GpuSetupError] Something failed"
        assert error.recoverable is True

    def test_base_error_with_details(self):
        """Test GpuSetupError with details."""
        from common.exceptions import GpuSetupError

        error = GpuSetupError(
            "Operation failed",
            code="OP_FAILED",
            details={"field": "value"},
            recoverable=False,
        )

        assert error.code == "OP_FAILED"
        assert error.details == {"field": "value"}
        assert error.recoverable is False
        assert "details:" in str(error)

    def test_base_error_to_dict(self):
        """Test JSON serialization."""
        from common.exceptions import GpuSetupError

        error = GpuSetupError("Test", code="TEST", details={"key": 1})
        d = error.to_dict()

        assert d["error"] == "TEST"
        assert d["message"] == "Test"
        assert d["details"]["key"] == 1

    def test_hardware_not_found(self):
        from common.exceptions import HardwareNotFound, HardwareError

        error = HardwareNotFound("amd")
        assert isinstance(error, HardwareError)
        assert error.code == "HARDWARE_NOT_FOUND"
        assert "amd" in str(error)
        assert error.recoverable is False

    def test_ambiguous_selection_lists_candidates(self):
        from common.exceptions import AmbiguousGpuSelection

        error = AmbiguousGpuSelection("nvidia", ["0000:01:00.0", "0000:02:00.0"])
        assert error.details["candidates"] == ["0000:01:00.0", "0000:02:00.0"]
        assert "--pci" in error.message

    def test_device_node_unresolvable_mentions_by_path(self):
        from common.exceptions import DeviceNodeUnresolvable

        error = DeviceNodeUnresolvable("0000:c3:00.0")
        assert "by-path" in error.message
        assert error.details["pci_address"] == "0000:c3:00.0"

    def test_config_errors_share_base(self):
        from common.exceptions import (
            ConfigError, InvalidConfigError, SandboxConfigWriteFailed,
            BootBackendNotFound, BootConfigError,
        )

        assert issubclass(InvalidConfigError, ConfigError)
        assert issubclass(SandboxConfigWriteFailed, ConfigError)
        assert issubclass(BootBackendNotFound, ConfigError)
        assert issubclass(BootConfigError, ConfigError)

        error = BootBackendNotFound(["/etc/kernel/cmdline", "/etc/default/grub"])
        assert error.code == "BOOT_BACKEND_NOT_FOUND"
        assert "/etc/default/grub" in str(error)

    def test_tool_errors(self):
        from common.exceptions import ToolMissing, ToolNonFunctional, ToolError

        missing = ToolMissing("rocminfo", package="rocminfo")
        broken = ToolNonFunctional("nvidia-smi", "no devices were found")
        assert isinstance(missing, ToolError)
        assert missing.code == "TOOL_MISSING"
        assert broken.code == "TOOL_NON_FUNCTIONAL"
        assert "no devices" in str(broken)

    def test_error_codes_match_failure_causes(self):
        """Exception codes and verification causes use the same names."""
        from common.exceptions import (
            HardwareNotFound, DriverNotLoaded, DeviceNodeMissing, PermissionDenied,
        )
        from gpu_verify.models import FailureCause

        for error in (
            HardwareNotFound("amd"),
            DriverNotLoaded("amdgpu"),
            DeviceNodeMissing("/dev/kfd"),
            PermissionDenied("/dev/kfd"),
        ):
            assert FailureCause(error.code).value == error.code


class TestDecorators:
    """Tests for error handling decorators."""

    def test_handle_errors_returns_default(self):
        """Test @handle_errors returns default on exception."""
        from common.decorators import handle_errors

        @handle_errors(ValueError, default="fallback")
        def failing_func():
            raise ValueError("test error")

        result = failing_func()
        assert result == "fallback"

    def test_handle_errors_reraise(self):
        """Test @handle_errors can reraise."""
        from common.decorators import handle_errors

        @handle_errors(ValueError, reraise=True)
        def failing_func():
            raise ValueError("test")

        with pytest.raises(ValueError):
            failing_func()

    def test_retry_succeeds_eventually(self):
        """Test @retry succeeds after failures."""
        from common.decorators import retry

        attempt_count = 0

        @retry(max_attempts=3, delay=0.01)
        def flaky_func():
            nonlocal attempt_count
            attempt_count += 1
            if attempt_count < 3:
                raise ConnectionError("not yet")
            return "success"

        result = flaky_func()
        assert result == "success"
        assert attempt_count == 3

    def test_retry_exhausts_attempts(self):
        """Test @retry raises after exhausting attempts."""
        from common.decorators import retry

        @retry(max_attempts=2, delay=0.01)
        def always_fails():
            raise ConnectionError("always fails")

        with pytest.raises(ConnectionError):
            always_fails()

    def test_require_root_rejects_unprivileged(self):
        from common.decorators import require_root
        from common.exceptions import PermissionDenied

        @require_root
        def mutate():
            return "done"

        with patch("os.geteuid", return_value=1000):
            with pytest.raises(PermissionDenied):
                mutate()

        with patch("os.geteuid", return_value=0):
            assert mutate() == "done"

    def test_timed_decorator(self, caplog):
        """Test @timed logs execution time."""
        from common.decorators import timed

        @timed
        def slow_func():
            time.sleep(0.01)
            return "done"

        with caplog.at_level(logging.DEBUG):
            result = slow_func()

        assert result == "done"
        assert "slow_func completed" in caplog.text


class TestLogging:
    """Tests for logging configuration."""

    def test_setup_logging_creates_handlers(self):
        """Test setup_logging configures handlers."""
        from common.logging_config import setup_logging

        setup_logging(level=logging.DEBUG)

        root = logging.getLogger()
        assert len(root.handlers) >= 1

    def test_setup_logging_with_json_file(self, tmp_path):
        from common.logging_config import setup_logging, LogContext

        log_file = tmp_path / "logs" / "gpu.log"
        setup_logging(level=logging.WARNING, log_file=log_file, json_logs=True)

        with LogContext(container_id="101"):
            logging.getLogger("gpupass.test").info("written to file only")
        for handler in logging.getLogger().handlers:
            handler.flush()

        record = json.loads(log_file.read_text().splitlines()[-1])
        assert record["message"] == "written to file only"
        assert record["data"]["container_id"] == "101"

        setup_logging(level=logging.WARNING)

    def test_get_logger_prefix(self):
        """Test get_logger adds the tool prefix."""
        from common.logging_config import get_logger

        logger = get_logger("test_module")
        assert logger.name == "gpupass.test_module"

    def test_log_context_nests(self, caplog):
        from common.logging_config import LogContext

        with caplog.at_level(logging.INFO):
            with LogContext(container_id="101", vendor="amd"):
                with LogContext(vendor="nvidia", stage="DriverLoaded"):
                    logging.getLogger("gpupass.test").info("inner")
                logging.getLogger("gpupass.test").info("outer")

        inner, outer = caplog.records[-2:]
        assert inner.extra_data == {
            "container_id": "101", "vendor": "nvidia", "stage": "DriverLoaded",
        }
        assert outer.extra_data == {"container_id": "101", "vendor": "amd"}

    def test_context_formatter_appends_pairs(self):
        from common.logging_config import ContextFormatter

        record = logging.LogRecord("gpupass.x", logging.INFO, __file__, 1, "hello", None, None)
        record.extra_data = {"container_id": "205"}

        assert ContextFormatter("%(message)s").format(record) == "hello [container_id=205]"

    @pytest.mark.parametrize("verbose,level", [
        (0, logging.WARNING),
        (1, logging.INFO),
        (2, logging.DEBUG),
        (5, logging.DEBUG),
    ])
    def test_level_for_verbosity(self, verbose, level):
        from common.logging_config import level_for_verbosity

        assert level_for_verbosity(verbose) == level


class TestSettings:
    """Tests for settings loading."""

    def test_defaults_without_file(self, tmp_path):
        from common.settings import load_settings

        settings = load_settings(tmp_path / "missing.json")
        assert settings.probe_timeout == 30.0
        assert settings.container_config_dir == "/etc/pve/lxc"
        assert settings.mask_apparmor_parameter is None

    def test_load_from_file(self, tmp_path):
        from common.settings import load_settings

        path = tmp_path / "settings.json"
        path.write_text(json.dumps({
            "probe_timeout": 5,
            "mask_apparmor_parameter": False,
            "stable_by_path_mounts": True,
        }))

        settings = load_settings(path)
        assert settings.probe_timeout == 5
        assert settings.mask_apparmor_parameter is False
        assert settings.stable_by_path_mounts is True

    def test_env_var_takes_precedence(self, tmp_path, monkeypatch):
        from common.settings import load_settings, ENV_VAR

        path = tmp_path / "env.json"
        path.write_text(json.dumps({"probe_timeout": 7}))
        monkeypatch.setenv(ENV_VAR, str(path))

        assert load_settings().probe_timeout == 7

    def test_unknown_keys_ignored(self, tmp_path, caplog):
        from common.settings import load_settings

        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"probe_timeout": 3, "colour": "blue"}))

        with caplog.at_level(logging.WARNING):
            settings = load_settings(path)
        assert settings.probe_timeout == 3
        assert "colour" in caplog.text

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"probe_timeout": -1}'])
    def test_invalid_files_raise(self, tmp_path, content):
        from common.settings import load_settings
        from common.exceptions import InvalidConfigError

        path = tmp_path / "settings.json"
        path.write_text(content)

        with pytest.raises(InvalidConfigError):
            load_settings(path)


class TestHostFacts:
    """Tests for injected host facts."""

    def test_path_maps_below_root(self, tmp_path):
        from common.host import HostFacts

        host = HostFacts(root=tmp_path)
        assert host.path("/dev/kfd") == tmp_path / "dev/kfd"

    def test_running_cmdline_prefers_captured(self, tmp_path):
        from common.host import HostFacts

        (tmp_path / "proc").mkdir()
        (tmp_path / "proc/cmdline").write_text("quiet amdgpu.gttsize=1024\n")

        assert HostFacts(root=tmp_path).read_running_cmdline() == "quiet amdgpu.gttsize=1024"
        assert HostFacts(root=tmp_path, running_cmdline="quiet").read_running_cmdline() == "quiet"

    @pytest.mark.parametrize("version,major", [
        ("pve-manager/9.0.3/025864202ebb6109 (running kernel: 6.14.8-2-pve)", 9),
        ("pve-manager/8.4.1/2a5fa54a8503f96d", 8),
        ("9", 9),
        ("garbage", None),
        (None, None),
    ])
    def test_platform_major(self, version, major):
        from common.host import HostFacts

        assert HostFacts(platform_version=version).platform_major == major

    def test_which_uses_search_path(self, synthetic_host):
        host = synthetic_host
        host.add_tool("rocminfo")

        facts = host.facts()
        assert facts.which("rocminfo") == str(host.bin / "rocminfo")
        assert facts.which("nvidia-smi") is None


class TestCommandRunner:
    """Tests for bounded command execution."""

    def test_success(self, mock_subprocess):
        from utils.process import CommandRunner

        mock_subprocess.return_value = MagicMock(returncode=0, stdout="ok\n", stderr="")
        result = CommandRunner(timeout=5).run(["true"])

        assert result.ok
        assert result.stdout == "ok\n"
        assert mock_subprocess.call_args.kwargs["timeout"] == 5

    def test_missing_executable(self, mock_subprocess):
        from utils.process import CommandRunner

        mock_subprocess.side_effect = FileNotFoundError()
        result = CommandRunner().run(["rocminfo"])

        assert result.not_found
        assert not result.ok

    def test_timeout(self, mock_subprocess):
        from utils.process import CommandRunner

        mock_subprocess.side_effect = subprocess.TimeoutExpired(["rocminfo"], 1, output=b"partial")
        result = CommandRunner().run(["rocminfo"], timeout=1)

        assert result.timed_out
        assert not result.ok
        assert result.stdout == "partial"


class TestAtomicWrite:
    """Tests for atomic file operations."""

    def test_write_and_keep_mode(self, tmp_path):
        from utils.atomic_write import atomic_write_text

        path = tmp_path / "101.conf"
        path.write_text("old\n")
        os.chmod(path, 0o640)

        atomic_write_text(path, "new\n")

        assert path.read_text() == "new\n"
        assert path.stat().st_mode & 0o777 == 0o640
        assert not list(tmp_path.glob(".101.conf.*"))

    def test_safe_backup(self, tmp_path):
        from utils.atomic_write import safe_backup

        path = tmp_path / "grub"
        path.write_text("GRUB_CMDLINE_LINUX_DEFAULT=\"quiet\"\n")

        backup = safe_backup(path)
        assert backup == Path(str(path) + ".bak")
        assert backup.read_text() == path.read_text()

    def test_update_file_skips_identical_content(self, tmp_path):
        from utils.atomic_write import update_file

        path = tmp_path / "cmdline"
        path.write_text("quiet\n")
        mtime = path.stat().st_mtime_ns

        assert not update_file(path, "quiet\n")
        assert path.stat().st_mtime_ns == mtime
        assert not (tmp_path / "cmdline.bak").exists()

    def test_update_file_backs_up_previous(self, tmp_path):
        from utils.atomic_write import update_file

        path = tmp_path / "cmdline"
        path.write_text("quiet\n")

        assert update_file(path, "quiet iommu=pt\n")
        assert path.read_text() == "quiet iommu=pt\n"
        assert (tmp_path / "cmdline.bak").read_text() == "quiet\n"

    def test_update_file_creates_missing(self, tmp_path):
        from utils.atomic_write import update_file

        path = tmp_path / "rules.d" / "99-gpu.rules"

        assert update_file(path, "KERNEL==\"kfd\"\n", backup=False)
        assert path.stat().st_mode & 0o777 == 0o644
