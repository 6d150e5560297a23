"""Data model for the on-disk credential bundle."""

from dataclasses import dataclass, replace
from pathlib import Path

from cluster_bootstrap.models.outcomes import NodeRole

CONTROLPLANE_CONFIG = "controlplane.yaml"
WORKER_CONFIG = "worker.yaml"
TRUST_CONFIG = "talosconfig"


@dataclass(frozen=True)
class TrustContext:
    """Client trust material passed explicitly to every secure control-plane call."""

    talosconfig: Path

    def exists(self) -> bool:
        return self.talosconfig.is_file()

    def __str__(self) -> str:
        return str(self.talosconfig)


@dataclass(frozen=True)
class CredentialBundle:
    """The active trust material and the admin kubeconfig derived from it.

    Attributes:
        cluster_name: Cluster the bundle belongs to
        state_dir: Directory holding the generated artifacts
        kubeconfig: Admin kubeconfig, None until fetched
        generated: True if created by generation during this run
        nodes: Node addresses the bundle was resolved for
    """

    cluster_name: str
    state_dir: Path
    kubeconfig: Path | None = None
    generated: bool = False
    nodes: tuple[str, ...] = ()

    @property
    def trust(self) -> TrustContext:
        return TrustContext(self.state_dir / TRUST_CONFIG)

    @property
    def controlplane_config(self) -> Path:
        return self.state_dir / CONTROLPLANE_CONFIG

    @property
    def worker_config(self) -> Path:
        return self.state_dir / WORKER_CONFIG

    def payload_for(self, role: NodeRole) -> Path:
        """Return the configuration payload for a node role."""
        if role is NodeRole.CONTROL_PLANE:
            return self.controlplane_config
        return self.worker_config

    def artifacts(self) -> list[Path]:
        return [self.controlplane_config, self.worker_config, self.trust.talosconfig]

    def has_trust_material(self) -> bool:
        return all(path.is_file() for path in self.artifacts())

    def with_kubeconfig(self, kubeconfig: Path) -> "CredentialBundle":
        return replace(self, kubeconfig=kubeconfig)
