"""Tests for the talosctl adapter."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from cluster_bootstrap.exceptions import ToolNotFoundError
from cluster_bootstrap.models.credentials import TrustContext
from cluster_bootstrap.models.outcomes import TrustMode
from cluster_bootstrap.talos import TalosClient, etcd_failed, parse_service_table
from conftest import SERVICE_TABLE

TRUST = TrustContext(Path("/state/talosconfig"))


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


def command_of(mock_run, call=-1):
    return mock_run.call_args_list[call][0][0]


@patch("cluster_bootstrap.talos.subprocess.run")
def test_insecure_apply_omits_trust(mock_run):
    mock_run.return_value = completed()

    result = TalosClient().apply_config(
        "10.0.0.2", "10.0.0.2", Path("worker.yaml"), TrustMode.INSECURE, TRUST
    )

    assert result.ok
    command = command_of(mock_run)
    assert command[:2] == ["talosctl", "apply-config"]
    assert "--insecure" in command
    assert "--talosconfig" not in command
    assert command[command.index("--file") + 1] == "worker.yaml"


@patch("cluster_bootstrap.talos.subprocess.run")
def test_secure_apply_passes_trust_explicitly(mock_run):
    mock_run.return_value = completed()

    TalosClient().apply_config(
        "10.0.0.1", "10.0.0.1", Path("controlplane.yaml"), TrustMode.SECURE, TRUST
    )

    command = command_of(mock_run)
    assert "--insecure" not in command
    assert command[command.index("--talosconfig") + 1] == "/state/talosconfig"
    assert command[command.index("--nodes") + 1] == "10.0.0.1"
    assert command[command.index("--endpoints") + 1] == "10.0.0.1"


@patch("cluster_bootstrap.talos.subprocess.run")
def test_apply_after_reset_is_insecure(mock_run):
    mock_run.return_value = completed()

    TalosClient().apply_config(
        "10.0.0.1", "10.0.0.1", Path("cp.yaml"), TrustMode.INSECURE_AFTER_RESET, TRUST
    )

    assert "--insecure" in command_of(mock_run)


@patch("cluster_bootstrap.talos.subprocess.run")
def test_reset_wipes_state_and_ephemeral(mock_run):
    mock_run.return_value = completed()

    TalosClient().reset("10.0.0.3", "10.0.0.3", TrustMode.SECURE, TRUST)

    command = command_of(mock_run)
    assert command[1] == "reset"
    assert "--graceful=false" in command
    assert "--reboot" in command
    assert "--wait=false" in command
    labels = [command[i + 1] for i, arg in enumerate(command) if arg == "--system-labels-to-wipe"]
    assert labels == ["STATE", "EPHEMERAL"]
    assert "--talosconfig" in command


@patch("cluster_bootstrap.talos.subprocess.run")
def test_generate_config(mock_run, tmp_path):
    mock_run.return_value = completed()

    TalosClient().generate_config("lab", "https://10.0.0.1:6443", tmp_path)

    command = command_of(mock_run)
    assert command[:5] == ["talosctl", "gen", "config", "lab", "https://10.0.0.1:6443"]
    assert command[command.index("--output-dir") + 1] == str(tmp_path)
    assert "--force" in command


@patch("cluster_bootstrap.talos.subprocess.run")
def test_configure_endpoints_runs_both_commands(mock_run):
    mock_run.return_value = completed()

    result = TalosClient().configure_endpoints(TRUST, "10.0.0.1", "10.0.0.1")

    assert result.ok
    assert mock_run.call_count == 2
    assert command_of(mock_run, 0)[1:4] == ["config", "endpoint", "10.0.0.1"]
    assert command_of(mock_run, 1)[1:4] == ["config", "node", "10.0.0.1"]


@patch("cluster_bootstrap.talos.subprocess.run")
def test_configure_endpoints_stops_on_failure(mock_run):
    mock_run.return_value = completed(1, stderr="open talosconfig: no such file")

    result = TalosClient().configure_endpoints(TRUST, "10.0.0.1", "10.0.0.1")

    assert not result.ok
    assert mock_run.call_count == 1


@patch("cluster_bootstrap.talos.subprocess.run")
def test_fetch_kubeconfig(mock_run):
    mock_run.return_value = completed()

    TalosClient().fetch_kubeconfig(TRUST, "10.0.0.1", Path("/state/kubeconfig"))

    command = command_of(mock_run)
    assert command[1:3] == ["kubeconfig", "/state/kubeconfig"]
    assert "--force" in command
    assert "--talosconfig" in command


@patch("cluster_bootstrap.talos.subprocess.run")
def test_failed_command_captures_output(mock_run):
    mock_run.return_value = completed(1, stdout="", stderr="x509: certificate signed by unknown authority")

    result = TalosClient().bootstrap_etcd(TRUST, "10.0.0.1")

    assert not result.ok
    assert result.returncode == 1
    assert "x509" in result.output


@patch("cluster_bootstrap.talos.subprocess.run")
def test_timeout_becomes_failed_result(mock_run):
    mock_run.side_effect = subprocess.TimeoutExpired("talosctl", 120)

    result = TalosClient(timeout=120).service_status(TRUST, "10.0.0.1")

    assert result.returncode == 124
    assert "timed out" in result.output


@patch("cluster_bootstrap.talos.subprocess.run")
def test_missing_binary_raises(mock_run):
    mock_run.side_effect = FileNotFoundError()

    with pytest.raises(ToolNotFoundError):
        TalosClient().bootstrap_etcd(TRUST, "10.0.0.1")


@patch("cluster_bootstrap.talos.shutil.which")
def test_check_installed(mock_which):
    mock_which.return_value = "/usr/local/bin/talosctl"

    assert TalosClient().check_installed() == "/usr/local/bin/talosctl"


@patch("cluster_bootstrap.talos.shutil.which")
def test_check_installed_missing(mock_which):
    mock_which.return_value = None

    with pytest.raises(ToolNotFoundError) as exc_info:
        TalosClient().check_installed()
    assert "talosctl" in exc_info.value.message


def test_parse_service_table():
    output = SERVICE_TABLE.format(state="Running", health="OK", event="Health check successful")

    services = parse_service_table(output)

    assert set(services) == {"apid", "etcd", "kubelet"}
    assert services["etcd"].node == "10.0.0.1"
    assert services["etcd"].state == "Running"
    assert not services["etcd"].failed


def test_etcd_failed_from_table():
    output = SERVICE_TABLE.format(state="Failed", health="Fail", event="Failed to start")

    assert etcd_failed(output)


def test_etcd_running_is_not_failed():
    output = SERVICE_TABLE.format(state="Running", health="OK", event="Health check successful")

    assert not etcd_failed(output)


def test_etcd_unhealthy_counts_as_failed():
    output = SERVICE_TABLE.format(state="Running", health="Fail", event="Health check failed")

    assert etcd_failed(output)


def test_short_trailing_columns_still_parsed():
    output = (
        "NODE       SERVICE   STATE     HEALTH   LAST CHANGE   LAST EVENT\n"
        "10.0.0.1   apid      Running   OK       2m ago        Started\n"
        "10.0.0.1   etcd      Running   Fail     Unhealthy\n"
    )

    services = parse_service_table(output)

    assert services["apid"].state == "Running"
    assert services["etcd"].health == "Fail"
    assert etcd_failed(output)


def test_etcd_failed_without_header_falls_back_to_line_match():
    assert etcd_failed("10.0.0.1 etcd Failed ?")
    assert not etcd_failed("10.0.0.1 etcd Preparing ?")


def test_parse_service_table_empty():
    assert parse_service_table("") == {}
