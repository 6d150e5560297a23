"""Pytest configuration, shared fixtures and scripted fake adapters."""

from pathlib import Path

import pytest
from hypothesis import Verbosity, settings

from cluster_bootstrap.apply import ConfigApplyCoordinator
from cluster_bootstrap.config import BootstrapSettings
from cluster_bootstrap.credentials import CredentialManager
from cluster_bootstrap.models.outcomes import CommandResult
from cluster_bootstrap.models.target import ClusterTarget
from cluster_bootstrap.orchestrator import BootstrapOrchestrator
from cluster_bootstrap.probe import ConnectivityProber
from cluster_bootstrap.reset import NodeResetCoordinator

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")

TRUST_MISMATCH = "rpc error: x509: certificate signed by unknown authority"
CERT_REQUIRED = "rpc error: remote error: tls: certificate required"
MAINTENANCE = "rpc error: code = Unimplemented desc = API is not implemented in maintenance mode"

SERVICE_TABLE = """NODE       SERVICE   STATE     HEALTH   LAST CHANGE   LAST EVENT
10.0.0.1   apid      Running   OK       2m ago        Health check successful
10.0.0.1   etcd      {state}   {health}     1m ago        {event}
10.0.0.1   kubelet   Running   OK       1m ago        Health check successful
"""


def ok(*args: str) -> CommandResult:
    return CommandResult(args, 0, stdout="ok")


def fail(output: str, *args: str) -> CommandResult:
    return CommandResult(args, 1, stderr=output)


class Script:
    """Per-key queue of failure outputs; None means success. The last entry repeats."""

    def __init__(self):
        self.queues: dict = {}

    def set(self, key, *responses) -> None:
        self.queues[key] = list(responses)

    def next(self, key, *args) -> CommandResult:
        queue = self.queues.get(key)
        if not queue:
            return ok(*args)
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        return ok(*args) if response is None else fail(response, *args)


class FakeTalos:
    """Stand-in for TalosClient that records calls in a shared log."""

    def __init__(self, calls: list):
        self.calls = calls
        self.resets = Script()
        self.applies = Script()
        self.generation = 0
        self.generate_ok = True
        self.artifact_size = 512
        self.bootstrap_ok = True
        self.kubeconfig_ok = True
        self.etcd_state = "Running"

    def generate_config(self, cluster_name, endpoint, output_dir) -> CommandResult:
        self.generation += 1
        self.calls.append(("generate", self.generation))
        if not self.generate_ok:
            return fail("failed to generate secrets bundle")
        output_dir = Path(output_dir)
        for name in ("controlplane.yaml", "worker.yaml", "talosconfig"):
            (output_dir / name).write_text(f"# generation {self.generation}\n" + "x" * self.artifact_size)
        return ok("gen", "config")

    def configure_endpoints(self, trust, endpoint, node) -> CommandResult:
        return ok("config", "endpoint")

    def apply_config(self, node, endpoint, payload, mode, trust=None) -> CommandResult:
        self.calls.append(("apply", node, mode))
        return self.applies.next((node, mode), "apply-config", node)

    def reset(self, node, endpoint, mode, trust=None) -> CommandResult:
        self.calls.append(("reset", node, mode))
        return self.resets.next((node, mode), "reset", node)

    def bootstrap_etcd(self, trust, node) -> CommandResult:
        self.calls.append(("bootstrap", node))
        return ok("bootstrap") if self.bootstrap_ok else fail("etcd bootstrap: connection refused")

    def fetch_kubeconfig(self, trust, node, output_path) -> CommandResult:
        self.calls.append(("kubeconfig", node))
        if not self.kubeconfig_ok:
            return fail(TRUST_MISMATCH)
        Path(output_path).write_text(
            "apiVersion: v1\nkind: Config\nclusters:\n"
            f"- name: lab\n  cluster:\n    server: https://{node}:6443\n"
        )
        return ok("kubeconfig")

    def service_status(self, trust, node) -> CommandResult:
        self.calls.append(("service", node))
        if self.etcd_state == "Failed":
            table = SERVICE_TABLE.format(state="Failed", health="Fail", event="Failed to start")
        else:
            table = SERVICE_TABLE.format(state="Running", health="OK", event="Health check successful")
        return CommandResult(("service",), 0, stdout=table)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class FakeKubectl:
    """Stand-in for KubectlClient; a kubeconfig works once the cluster is up."""

    def __init__(self, calls: list):
        self.calls = calls
        self.cluster_up = True

    def is_cluster_reachable(self, kubeconfig) -> bool:
        self.calls.append(("kubectl-nodes", str(kubeconfig)))
        return kubeconfig is not None and Path(kubeconfig).is_file() and self.cluster_up


class FakeProber(ConnectivityProber):
    """Prober on a simulated clock. Ports open ``open_after[address]`` seconds in."""

    def __init__(self, open_after: dict | None = None, never_open: set | None = None):
        self.now = 0.0
        super().__init__(interval=5, sleep=self._advance, clock=lambda: self.now)
        self.open_after = open_after or {}
        self.never_open = never_open or set()
        self.probes: list = []

    def _advance(self, seconds: float) -> None:
        self.now += seconds

    def is_port_open(self, address: str, port: int) -> bool:
        self.probes.append((address, port))
        if address in self.never_open:
            return False
        return self.now >= self.open_after.get(address, 0.0)

    def is_reachable(self, address: str) -> bool:
        return address not in self.never_open


@pytest.fixture
def calls():
    """Shared call log for call-order assertions."""
    return []


@pytest.fixture
def target():
    return ClusterTarget(
        cluster_name="lab",
        control_plane="10.0.0.1",
        workers=("10.0.0.2", "10.0.0.3"),
        vip="10.0.0.9",
    )


@pytest.fixture
def fake_talos(calls):
    return FakeTalos(calls)


@pytest.fixture
def fake_kubectl(calls):
    return FakeKubectl(calls)


@pytest.fixture
def fake_prober():
    return FakeProber()


@pytest.fixture
def bootstrap_settings(tmp_path):
    return BootstrapSettings(
        state_dir=tmp_path / "clusterconfig",
        kubeconfig_path=tmp_path / "kubeconfig",
        fallback_kubeconfigs=[],
    )


@pytest.fixture
def credentials(fake_talos, fake_kubectl, bootstrap_settings):
    return CredentialManager(
        fake_talos,
        fake_kubectl,
        bootstrap_settings.state_dir,
        bootstrap_settings.kubeconfig_path,
        fallback_kubeconfigs=[],
    )


@pytest.fixture
def reset_coordinator(fake_talos, fake_prober):
    return NodeResetCoordinator(fake_talos, fake_prober, management_timeout=300)


@pytest.fixture
def apply_coordinator(fake_talos, reset_coordinator):
    return ConfigApplyCoordinator(fake_talos, reset_coordinator, sleep=lambda s: None)


@pytest.fixture
def make_orchestrator(
    target,
    bootstrap_settings,
    credentials,
    reset_coordinator,
    apply_coordinator,
    fake_talos,
    fake_kubectl,
    fake_prober,
):
    """Factory building an orchestrator over the fakes."""

    def factory(addon_installer=None, **overrides):
        return BootstrapOrchestrator(
            target=target,
            settings=bootstrap_settings.model_copy(update=overrides),
            credentials=credentials,
            reset_coordinator=reset_coordinator,
            apply_coordinator=apply_coordinator,
            talos=fake_talos,
            kubectl=fake_kubectl,
            prober=fake_prober,
            addon_installer=addon_installer,
            sleep=lambda s: None,
        )

    return factory


@pytest.fixture
def trust_mismatch():
    return TRUST_MISMATCH


@pytest.fixture
def cert_required():
    return CERT_REQUIRED


@pytest.fixture
def maintenance():
    return MAINTENANCE

