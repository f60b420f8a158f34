"""Tests for CLI commands."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from vm_carbon.cli import main
from vm_carbon.config import Config
from vm_carbon.discovery import ProcessRecord


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path, model_config: Config, clean_env) -> Path:
    """Config file holding the reference model."""
    path = tmp_path / "config.toml"
    model_config.save(path)
    return path


class TestEstimateCommand:
    """Tests for the estimate command."""

    def test_estimate_table(self, runner: CliRunner, config_file: Path) -> None:
        """estimate prints static, dynamic, total and carbon."""
        result = runner.invoke(main, ["--config", str(config_file), "estimate", "2", "-c", "4"])

        assert result.exit_code == 0, result.output
        assert "Static:" in result.output
        assert "2.5000" in result.output
        assert "5.0000" in result.output
        assert "7.5000" in result.output
        assert "0.4875" in result.output

    def test_estimate_json(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(
            main, ["--config", str(config_file), "estimate", "2", "--vcpus", "4", "--json"]
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["total"] == pytest.approx(7.5)
        assert data["gco2_per_hour"] == pytest.approx(0.4875)

    def test_estimate_ratio_override(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(
            main, ["--config", str(config_file), "estimate", "2", "-c", "4", "-r", "0", "--json"]
        )

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["dynamic"] == 0.0

    def test_estimate_env_override(
        self, runner: CliRunner, config_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Environment variables win over the config file."""
        monkeypatch.setenv("REG_COEFF", "20,5")
        result = runner.invoke(
            main, ["--config", str(config_file), "estimate", "0", "-c", "16", "--json"]
        )

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["static"] == pytest.approx(20.0)

    def test_estimate_requires_vcpus(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(main, ["--config", str(config_file), "estimate", "2"])
        assert result.exit_code != 0

    def test_estimate_rejects_zero_vcpus(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(main, ["--config", str(config_file), "estimate", "2", "-c", "0"])
        assert result.exit_code != 0

    def test_missing_coefficients_exits(
        self, runner: CliRunner, tmp_path: Path, clean_env
    ) -> None:
        """A config without coefficients is rejected before estimating."""
        result = runner.invoke(
            main, ["--config", str(tmp_path / "absent.toml"), "estimate", "1", "-c", "1"]
        )

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestScanCommand:
    """Tests for the scan command."""

    def test_scan_no_processes(self, runner: CliRunner, config_file: Path) -> None:
        with patch("vm_carbon.discovery.discover", return_value=[]):
            result = runner.invoke(main, ["--config", str(config_file), "scan"])

        assert result.exit_code == 0
        assert "No qemu processes found" in result.output

    def test_scan_lists_vms(self, runner: CliRunner, config_file: Path) -> None:
        records = [
            ProcessRecord(pid=4321, vm_name="web01", vcpu_count=4),
            ProcessRecord(pid=4400, vm_name="Unknown", vcpu_count=1),
        ]
        with patch("vm_carbon.discovery.discover", return_value=records) as discover:
            result = runner.invoke(main, ["--config", str(config_file), "scan"])

        assert result.exit_code == 0, result.output
        assert "4321" in result.output
        assert "web01" in result.output
        assert "Unknown" in result.output
        discover.assert_called_once_with(match="qemu")

    def test_scan_with_interval(self, runner: CliRunner, config_file: Path) -> None:
        """Two samples are taken and the measured usage is shown."""
        records = [ProcessRecord(pid=4321, vm_name="web01", vcpu_count=4)]
        with (
            patch("vm_carbon.discovery.discover", return_value=records),
            patch("vm_carbon.procfs.read_cpu_time", side_effect=[100, 150]),
        ):
            result = runner.invoke(main, ["--config", str(config_file), "scan", "-i", "0.01"])

        assert result.exit_code == 0, result.output
        assert "Usage" in result.output
        assert "web01" in result.output

    def test_scan_rejects_non_positive_interval(
        self, runner: CliRunner, config_file: Path
    ) -> None:
        result = runner.invoke(main, ["--config", str(config_file), "scan", "-i", "0"])
        assert result.exit_code != 0


class TestServeCommand:
    def test_serve_runs_uvicorn(self, runner: CliRunner, config_file: Path) -> None:
        with (
            patch("uvicorn.run") as mock_run,
            patch("vm_carbon.logging.configure") as mock_configure,
            patch("importlib.metadata.version", return_value="0.3.0"),
        ):
            result = runner.invoke(
                main, ["--config", str(config_file), "serve", "--host", "0.0.0.0", "-p", "9001"]
            )

        assert result.exit_code == 0, result.output
        mock_configure.assert_called_once()
        assert mock_run.call_args.kwargs["host"] == "0.0.0.0"
        assert mock_run.call_args.kwargs["port"] == 9001
        assert "http://0.0.0.0:9001" in result.output

    def test_serve_refuses_invalid_config(
        self, runner: CliRunner, tmp_path: Path, clean_env
    ) -> None:
        with patch("uvicorn.run") as mock_run:
            result = runner.invoke(main, ["--config", str(tmp_path / "absent.toml"), "serve"])

        assert result.exit_code == 1
        mock_run.assert_not_called()

    def test_serve_rejects_out_of_range_port(self, runner: CliRunner, config_file: Path) -> None:
        with patch("uvicorn.run") as mock_run:
            result = runner.invoke(main, ["--config", str(config_file), "serve", "-p", "70000"])

        assert result.exit_code != 0
        mock_run.assert_not_called()

    def test_serve_revalidates_host_override(self, runner: CliRunner, config_file: Path) -> None:
        """Overrides go through the same validation as the config file."""
        with patch("uvicorn.run") as mock_run:
            result = runner.invoke(main, ["--config", str(config_file), "serve", "--host", ""])

        assert result.exit_code == 1
        assert "Invalid configuration: server.host" in result.output
        mock_run.assert_not_called()

    def test_serve_rejects_mistyped_port_in_file(
        self, runner: CliRunner, tmp_path: Path, clean_env
    ) -> None:
        path = tmp_path / "config.toml"
        path.write_text('[model]\ncoefficients = [10.0, 5.0]\n[server]\nport = "http"\n')
        with patch("uvicorn.run") as mock_run:
            result = runner.invoke(main, ["--config", str(path), "serve"])

        assert result.exit_code == 1
        assert "Invalid configuration: server.port" in result.output
        mock_run.assert_not_called()


class TestConfigCommand:
    """Tests for the config command group."""

    def test_config_show(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(main, ["--config", str(config_file), "config", "show"])

        assert result.exit_code == 0
        assert f"Config file: {config_file}" in result.output
        assert "Exists: True" in result.output
        assert "coefficients = [10.0, 5.0]" in result.output
        assert "emission_factor = 50.0" in result.output

    def test_config_show_lists_every_section(self, runner: CliRunner, config_file: Path) -> None:
        """Every key written by save() is displayed."""
        result = runner.invoke(main, ["--config", str(config_file), "config", "show"])

        assert result.exit_code == 0
        for section in ("[model]", "[carbon]", "[sampling]", "[server]", "[system]"):
            assert section in result.output
        assert "heartbeat_cycles = 60" in result.output
        assert f"log_max_bytes = {5 * 1024 * 1024}" in result.output
        assert "log_backup_count = 3" in result.output

    def test_config_reset(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(main, ["--config", str(config_file), "config", "reset"], input="y\n")

        assert result.exit_code == 0
        assert "Config reset to defaults" in result.output
        assert Config.load(config_file).model.coefficients == []

    def test_config_reset_aborted(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(main, ["--config", str(config_file), "config", "reset"], input="n\n")

        assert result.exit_code != 0
        assert Config.load(config_file).model.coefficients == [10.0, 5.0]

    def test_config_edit_creates_file(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "new" / "config.toml"
        with patch("subprocess.run") as mock_run:
            result = runner.invoke(main, ["--config", str(path), "config", "edit"])

        assert result.exit_code == 0
        assert path.exists()
        assert mock_run.call_args.args[0][-1] == str(path)
