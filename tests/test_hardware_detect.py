"""
Tests for DRM device path resolution and the gpu-detect command.
"""

import json
import os

import pytest

from conftest import AMD_LSPCI


class TestCanonicalAddress:
    """Tests for PCI address normalisation."""

    @pytest.mark.unit
    @pytest.mark.parametrize("address,expected", [
        ("0000:c3:00.0", "0000:c3:00.0"),
        ("0000:C3:00.0", "0000:c3:00.0"),
        ("c3:00.0", "0000:c3:00.0"),
        (" 01:00.0 ", "0000:01:00.0"),
        ("not-an-address", "not-an-address"),
    ])
    def test_canonical(self, address, expected):
        from hardware_detect.device_paths import canonical_pci_address

        assert canonical_pci_address(address) == expected


class TestDevicePathResolver:
    """Tests for by-path resolution."""

    @pytest.mark.unit
    def test_resolves_matching_entries_only(self, synthetic_host):
        from hardware_detect.device_paths import DevicePathResolver

        synthetic_host.add_drm("0000:01:00.0", card="card0", render="renderD128")
        synthetic_host.add_drm("0000:c3:00.0", card="card1", render="renderD129")

        paths = DevicePathResolver(synthetic_host.facts()).resolve("0000:c3:00.0")

        assert paths.ok
        assert paths.card_path == "/dev/dri/card1"
        assert paths.render_path == "/dev/dri/renderD129"
        assert paths.card_link == "/dev/dri/by-path/pci-0000:c3:00.0-card"
        assert paths.render_link == "/dev/dri/by-path/pci-0000:c3:00.0-render"

    @pytest.mark.unit
    def test_never_guesses_index(self, synthetic_host):
        """No matching entry means not ok, even when other nodes exist."""
        from hardware_detect.device_paths import DevicePathResolver

        synthetic_host.add_drm("0000:01:00.0", card="card0")

        paths = DevicePathResolver(synthetic_host.facts()).resolve("0000:c3:00.0")

        assert not paths.ok
        assert paths.card_path is None
        assert paths.render_path is None

    @pytest.mark.unit
    def test_card_without_render_not_ok(self, synthetic_host):
        from hardware_detect.device_paths import DevicePathResolver

        synthetic_host.write("/dev/dri/card1")
        os.symlink("../card1", synthetic_host.path("/dev/dri/by-path/pci-0000:c3:00.0-card"))

        paths = DevicePathResolver(synthetic_host.facts()).resolve("0000:c3:00.0")

        assert paths.card_path == "/dev/dri/card1"
        assert paths.render_path is None
        assert not paths.ok

    @pytest.mark.unit
    def test_address_compared_canonically(self, synthetic_host):
        from hardware_detect.device_paths import DevicePathResolver

        synthetic_host.add_drm("0000:c3:00.0")

        assert DevicePathResolver(synthetic_host.facts()).resolve("C3:00.0").ok

    @pytest.mark.unit
    def test_absolute_link_target(self, synthetic_host):
        from hardware_detect.device_paths import DevicePathResolver

        synthetic_host.write("/dev/dri/card2")
        synthetic_host.write("/dev/dri/renderD130")
        by_path = synthetic_host.path("/dev/dri/by-path")
        os.symlink("/dev/dri/card2", by_path / "pci-0000:04:00.0-card")
        os.symlink("/dev/dri/renderD130", by_path / "pci-0000:04:00.0-render")

        paths = DevicePathResolver(synthetic_host.facts()).resolve("0000:04:00.0")

        assert paths.card_path == "/dev/dri/card2"
        assert paths.render_path == "/dev/dri/renderD130"

    @pytest.mark.unit
    def test_skips_dangling_and_foreign_entries(self, synthetic_host):
        from hardware_detect.device_paths import DevicePathResolver

        by_path = synthetic_host.path("/dev/dri/by-path")
        os.symlink("../card9", by_path / "pci-0000:c3:00.0-card")
        os.symlink("../card0", by_path / "platform-simple-framebuffer.0-card")
        (by_path / "pci-0000:c3:00.0-render").write_text("")

        entries = DevicePathResolver(synthetic_host.facts()).list_entries()

        assert entries == []

    @pytest.mark.unit
    def test_missing_by_path_dir(self, tmp_path):
        from common.host import HostFacts
        from hardware_detect.device_paths import DevicePathResolver

        resolver = DevicePathResolver(HostFacts(root=tmp_path))

        assert resolver.list_entries() == []
        assert not resolver.resolve("0000:c3:00.0").ok


class TestDetectCLI:
    """Tests for the gpu-detect command."""

    @pytest.fixture
    def base_args(self, synthetic_host, tmp_path):
        return ["--root", str(synthetic_host.root), "-c", str(tmp_path / "none.json")]

    @pytest.mark.unit
    def test_resolve_ok(self, synthetic_host, base_args, capsys):
        from hardware_detect.cli import main

        synthetic_host.add_drm("0000:c3:00.0")

        code = main(base_args + ["resolve", "c3:00.0", "--json"])
        data = json.loads(capsys.readouterr().out)

        assert code == 0
        assert data["pci_address"] == "0000:c3:00.0"
        assert data["ok"] is True
        assert data["render_path"] == "/dev/dri/renderD128"

    @pytest.mark.unit
    def test_resolve_failure_exit_code(self, base_args, capsys):
        from hardware_detect.cli import main

        assert main(base_args + ["resolve", "0000:c3:00.0"]) == 1
        assert "No /dev/dri/by-path entries" in capsys.readouterr().err

    @pytest.mark.unit
    def test_select_uses_scanner(self, amd_host, fake_runner, base_args, capsys):
        from unittest.mock import patch
        from hardware_detect.cli import main

        with patch("hardware_detect.cli.CommandRunner", return_value=fake_runner):
            code = main(base_args + ["select", "amd", "--json"])

        assert code == 0
        assert json.loads(capsys.readouterr().out)["card_path"] == "/dev/dri/card1"

    @pytest.mark.unit
    def test_select_missing_vendor(self, amd_host, fake_runner, base_args, capsys):
        from unittest.mock import patch
        from hardware_detect.cli import main

        with patch("hardware_detect.cli.CommandRunner", return_value=fake_runner):
            code = main(base_args + ["select", "nvidia"])

        assert code == 1
        assert "HARDWARE_NOT_FOUND" in capsys.readouterr().err

    @pytest.mark.unit
    def test_default_command_is_scan(self, synthetic_host, fake_runner, base_args, capsys):
        from unittest.mock import patch
        from hardware_detect.cli import main

        fake_runner.add("lspci -nn -D", stdout=AMD_LSPCI + "\n")
        with patch("hardware_detect.cli.CommandRunner", return_value=fake_runner):
            code = main(base_args)

        out = capsys.readouterr().out
        assert code == 0
        assert "AMD GPU: 0000:c3:00.0" in out
        assert "not resolvable" in out

    @pytest.mark.unit
    def test_bad_vendor_is_usage_error(self, base_args):
        from hardware_detect.cli import main

        with pytest.raises(SystemExit) as exc:
            main(base_args + ["select", "intel"])
        assert exc.value.code == 2
