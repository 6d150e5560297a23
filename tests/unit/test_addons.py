"""Tests for add-on installation."""

from unittest.mock import MagicMock

import pytest
import yaml

from cluster_bootstrap.addons import ADDONS, AddonInstaller, render_address_pool
from cluster_bootstrap.exceptions import AddonError
from cluster_bootstrap.models.outcomes import CommandResult
from conftest import FakeProber, fail, ok


@pytest.fixture
def addons_dir(tmp_path):
    root = tmp_path / "addons"
    for addon in ADDONS:
        (root / addon.directory).mkdir(parents=True)
    return root


@pytest.fixture
def kubectl():
    mock = MagicMock()
    mock.apply_manifest.return_value = ok("apply")
    mock.rollout_status.return_value = ok("rollout")
    mock.get_resource.return_value = CommandResult(("get",), 0, stdout="10.0.0.9")
    return mock


@pytest.fixture
def installer(kubectl, addons_dir, tmp_path):
    return AddonInstaller(kubectl, FakeProber(), addons_dir, tmp_path / "work")


def test_render_address_pool():
    pool, advertisement = render_address_pool("10.0.0.9")

    assert pool["kind"] == "IPAddressPool"
    assert pool["spec"]["addresses"] == ["10.0.0.9/32"]
    assert pool["metadata"]["namespace"] == "metallb-system"
    assert advertisement["kind"] == "L2Advertisement"
    assert advertisement["spec"]["ipAddressPools"] == [pool["metadata"]["name"]]


def test_check_payloads_missing(kubectl, tmp_path):
    installer = AddonInstaller(kubectl, FakeProber(), tmp_path / "nowhere", tmp_path)

    with pytest.raises(AddonError) as exc_info:
        installer.check_payloads()
    assert "metallb" in exc_info.value.details
    assert "sample-app" in exc_info.value.details


def test_install_order(installer, kubectl, addons_dir, tmp_path):
    installer.install(tmp_path / "kubeconfig", "10.0.0.9")

    applied = [call.args[1] for call in kubectl.apply_manifest.call_args_list]
    assert applied == [
        addons_dir / "metallb",
        tmp_path / "work" / "metallb-pool.yaml",
        addons_dir / "ingress-nginx",
        addons_dir / "sample-app",
    ]
    rolled_out = [call.args[1] for call in kubectl.rollout_status.call_args_list]
    assert rolled_out == [
        "deployment/controller",
        "deployment/ingress-nginx-controller",
        "deployment/sample-app",
    ]


def test_pool_manifest_written(installer, tmp_path):
    installer.install(tmp_path / "kubeconfig", "10.0.0.9")

    with open(tmp_path / "work" / "metallb-pool.yaml") as f:
        documents = list(yaml.safe_load_all(f))
    assert [d["kind"] for d in documents] == ["IPAddressPool", "L2Advertisement"]


def test_pool_retried_until_webhook_ready(installer, kubectl, tmp_path):
    webhook_down = fail("failed calling webhook \"ipaddresspoolvalidationwebhook.metallb.io\"")
    kubectl.apply_manifest.side_effect = [ok(), webhook_down, webhook_down, ok(), ok(), ok()]

    installer.install(tmp_path / "kubeconfig", "10.0.0.9")

    assert kubectl.apply_manifest.call_count == 6


def test_apply_failure(installer, kubectl, tmp_path):
    kubectl.apply_manifest.return_value = fail("error validating data")

    with pytest.raises(AddonError) as exc_info:
        installer.install(tmp_path / "kubeconfig", "10.0.0.9")
    assert "metallb" in exc_info.value.message


def test_rollout_failure(installer, kubectl, tmp_path):
    kubectl.rollout_status.return_value = fail("timed out waiting for the condition")

    with pytest.raises(AddonError) as exc_info:
        installer.install(tmp_path / "kubeconfig", "10.0.0.9")
    assert "deployment/controller" in exc_info.value.message


def test_external_address_never_assigned(installer, kubectl, tmp_path):
    kubectl.get_resource.return_value = CommandResult(("get",), 0, stdout="")

    with pytest.raises(AddonError) as exc_info:
        installer.install(tmp_path / "kubeconfig", "10.0.0.9")
    assert "external address" in exc_info.value.message
    assert all(
        "sample-app" not in str(call.args[1]) for call in kubectl.apply_manifest.call_args_list
    )


def test_unexpected_external_address_only_warns(installer, kubectl, tmp_path):
    kubectl.get_resource.return_value = CommandResult(("get",), 0, stdout="10.0.0.50")

    installer.install(tmp_path / "kubeconfig", "10.0.0.9")

    assert kubectl.rollout_status.call_count == 3
