"""Add-on installation once the cluster answers.

The manifests themselves are supplied by the operator in the add-ons
directory; this module only applies them in order, renders the MetalLB
address pool for the cluster VIP, and waits for each piece to come up.
"""

from dataclasses import dataclass
from pathlib import Path

import yaml

from cluster_bootstrap.exceptions import AddonError
from cluster_bootstrap.kubectl import KubectlClient
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.probe import ConnectivityProber, ReadinessGate

logger = get_logger(__name__)

POOL_NAME = "cluster-vip"
POOL_FILE = "metallb-pool.yaml"


@dataclass(frozen=True)
class Addon:
    """A payload directory and the deployment that signals it is ready."""

    directory: str
    deployment: str
    namespace: str


METALLB = Addon("metallb", "deployment/controller", "metallb-system")
INGRESS = Addon("ingress-nginx", "deployment/ingress-nginx-controller", "ingress-nginx")
SAMPLE_APP = Addon("sample-app", "deployment/sample-app", "default")
ADDONS = (METALLB, INGRESS, SAMPLE_APP)

INGRESS_SERVICE = "ingress-nginx-controller"


def render_address_pool(vip: str, namespace: str = METALLB.namespace) -> list[dict]:
    """Build the MetalLB IPAddressPool and L2Advertisement for a single VIP."""
    return [
        {
            "apiVersion": "metallb.io/v1beta1",
            "kind": "IPAddressPool",
            "metadata": {"name": POOL_NAME, "namespace": namespace},
            "spec": {"addresses": [f"{vip}/32"]},
        },
        {
            "apiVersion": "metallb.io/v1beta1",
            "kind": "L2Advertisement",
            "metadata": {"name": POOL_NAME, "namespace": namespace},
            "spec": {"ipAddressPools": [POOL_NAME]},
        },
    ]


class AddonInstaller:
    """Installs the load balancer, its VIP pool, the ingress controller and a sample app."""

    def __init__(
        self,
        kubectl: KubectlClient,
        prober: ConnectivityProber,
        addons_dir: Path,
        work_dir: Path,
        rollout_timeout: float = 300,
        address_timeout: float = 300,
    ):
        """Initialize the installer.

        Args:
            kubectl: Orchestrator CLI adapter
            prober: Prober used for readiness polling
            addons_dir: Directory holding one sub-directory per add-on
            work_dir: Where rendered manifests are written
            rollout_timeout: Per-deployment rollout timeout in seconds
            address_timeout: How long to wait for webhooks and the external address
        """
        self.kubectl = kubectl
        self.prober = prober
        self.addons_dir = Path(addons_dir)
        self.work_dir = Path(work_dir)
        self.rollout_timeout = rollout_timeout
        self.address_timeout = address_timeout

    def check_payloads(self) -> None:
        """Raise AddonError if any add-on payload directory is missing."""
        missing = [
            str(self.addons_dir / addon.directory)
            for addon in ADDONS
            if not (self.addons_dir / addon.directory).is_dir()
        ]
        if missing:
            raise AddonError(
                "Add-on payloads not found",
                "Missing directories:\n" + "\n".join(f"  - {m}" for m in missing),
            )

    def install(self, kubeconfig: Path, vip: str) -> None:
        """Install every add-on against the cluster behind kubeconfig.

        Raises:
            AddonError: On a missing payload or any failed step
        """
        self.check_payloads()

        self._apply_and_wait(kubeconfig, METALLB)
        self._apply_address_pool(kubeconfig, vip)
        self._apply_and_wait(kubeconfig, INGRESS)
        self._wait_for_external_address(kubeconfig, vip)
        self._apply_and_wait(kubeconfig, SAMPLE_APP)
        logger.info("All add-ons installed")

    def _apply_and_wait(self, kubeconfig: Path, addon: Addon) -> None:
        logger.info(f"Applying {addon.directory}")
        result = self.kubectl.apply_manifest(kubeconfig, self.addons_dir / addon.directory)
        if not result.ok:
            raise AddonError(f"Failed to apply {addon.directory}", result.output)

        result = self.kubectl.rollout_status(
            kubeconfig, addon.deployment, addon.namespace, self.rollout_timeout
        )
        if not result.ok:
            raise AddonError(
                f"{addon.deployment} in {addon.namespace} did not roll out", result.output
            )

    def _apply_address_pool(self, kubeconfig: Path, vip: str) -> None:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        pool_path = self.work_dir / POOL_FILE
        with open(pool_path, "w") as f:
            yaml.safe_dump_all(render_address_pool(vip), f, default_flow_style=False)

        # The MetalLB admission webhook rejects pools until its endpoint is serving
        last = []
        gate = ReadinessGate("MetalLB address pool", self.address_timeout, self.prober.interval)

        def applied() -> bool:
            result = self.kubectl.apply_manifest(kubeconfig, pool_path)
            last[:] = [result]
            return result.ok

        if not gate.wait(self.prober, applied):
            raise AddonError(
                f"Failed to apply address pool for {vip}", last[0].output if last else None
            )

    def _wait_for_external_address(self, kubeconfig: Path, vip: str) -> None:
        assigned = []

        def has_address() -> bool:
            result = self.kubectl.get_resource(
                kubeconfig,
                "service",
                INGRESS_SERVICE,
                namespace=INGRESS.namespace,
                output="jsonpath={.status.loadBalancer.ingress[0].ip}",
            )
            address = result.stdout.strip() if result.ok else ""
            assigned[:] = [address]
            return bool(address)

        gate = ReadinessGate(
            f"external address on {INGRESS_SERVICE}", self.address_timeout, self.prober.interval
        )
        if not gate.wait(self.prober, has_address):
            raise AddonError(
                f"{INGRESS_SERVICE} was not assigned an external address",
                f"Expected {vip}; check the MetalLB speaker logs",
            )
        if assigned[0] != vip:
            logger.warning(f"{INGRESS_SERVICE} got {assigned[0]}, expected {vip}")
