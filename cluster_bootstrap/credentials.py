"""Ownership of the on-disk credential bundle.

The state directory holds ``controlplane.yaml``, ``worker.yaml`` and
``talosconfig``; the admin kubeconfig lives at its own well-known path.
Files are only ever replaced whole, never edited in place.

A freshly generated bundle must be followed by a reset of every node before
any of its payloads is applied. The orchestrator owns that ordering.
"""

from pathlib import Path
from urllib.parse import urlparse

import yaml

from cluster_bootstrap.exceptions import ArtifactError, CredentialError
from cluster_bootstrap.kubectl import KubectlClient
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.credentials import CredentialBundle
from cluster_bootstrap.models.target import ClusterTarget
from cluster_bootstrap.talos import TalosClient

logger = get_logger(__name__)

MIN_ARTIFACT_BYTES = 100


def kubeconfig_servers(path: Path) -> list[str]:
    """Return the API server hosts referenced by a kubeconfig file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.debug(f"Could not read kubeconfig {path}: {e}")
        return []

    if not isinstance(data, dict):
        logger.debug(f"Ignoring kubeconfig {path}: not a mapping")
        return []

    hosts = []
    for entry in data.get("clusters") or []:
        if not isinstance(entry, dict) or not isinstance(entry.get("cluster"), dict):
            continue
        server = entry["cluster"].get("server")
        if not isinstance(server, str):
            continue
        try:
            host = urlparse(server).hostname
        except ValueError:
            logger.debug(f"Ignoring malformed server URL {server!r} in {path}")
            continue
        if host:
            hosts.append(host)
    return hosts


class CredentialManager:
    """Decides whether to reuse, recover or regenerate cluster credentials."""

    def __init__(
        self,
        talos: TalosClient,
        kubectl: KubectlClient,
        state_dir: Path,
        kubeconfig_path: Path,
        fallback_kubeconfigs: list[Path] | None = None,
        min_artifact_bytes: int = MIN_ARTIFACT_BYTES,
        api_port: int = 6443,
    ):
        """Initialize the credential manager.

        Args:
            talos: Control-plane CLI adapter
            kubectl: Orchestrator CLI adapter
            state_dir: Directory for generated trust material and payloads
            kubeconfig_path: Where the admin kubeconfig is written
            fallback_kubeconfigs: Other kubeconfigs worth trying on the fast path
            min_artifact_bytes: Smallest plausible size of a generated artifact
            api_port: Kubernetes API port advertised in generated configs
        """
        self.talos = talos
        self.kubectl = kubectl
        self.state_dir = Path(state_dir)
        self.kubeconfig_path = Path(kubeconfig_path)
        self.fallback_kubeconfigs = [Path(p).expanduser() for p in fallback_kubeconfigs or []]
        self.min_artifact_bytes = min_artifact_bytes
        self.api_port = api_port

    def bundle(
        self, target: ClusterTarget, kubeconfig: Path | None = None, generated: bool = False
    ) -> CredentialBundle:
        return CredentialBundle(
            cluster_name=target.cluster_name,
            state_dir=self.state_dir,
            kubeconfig=kubeconfig,
            generated=generated,
            nodes=target.nodes,
        )

    def resolve_working_credentials(self, target: ClusterTarget) -> CredentialBundle | None:
        """Return a bundle whose kubeconfig already reaches a working cluster.

        The local admin kubeconfig is tried first, then any fallback kubeconfig
        that points at this target's control plane or VIP.
        """
        if self.kubectl.is_cluster_reachable(self.kubeconfig_path):
            logger.info(f"Existing kubeconfig {self.kubeconfig_path} reaches a working cluster")
            return self.bundle(target, kubeconfig=self.kubeconfig_path)

        for candidate in self.fallback_kubeconfigs:
            if not candidate.is_file():
                continue
            hosts = kubeconfig_servers(candidate)
            if target.control_plane not in hosts and target.vip not in hosts:
                logger.debug(f"Skipping {candidate}: servers {hosts} are not this cluster")
                continue
            if self.kubectl.is_cluster_reachable(candidate):
                logger.info(f"Fallback kubeconfig {candidate} reaches a working cluster")
                return self.bundle(target, kubeconfig=candidate)

        logger.info("No working kubeconfig found")
        return None

    def recover_credentials_from_existing_trust(
        self, target: ClusterTarget
    ) -> CredentialBundle | None:
        """Re-derive the admin kubeconfig from trust material already on disk.

        Succeeds only if the live control plane still accepts that trust.
        """
        bundle = self.bundle(target)
        if not bundle.has_trust_material():
            logger.info(f"No existing trust material in {self.state_dir}")
            return None

        logger.info(f"Trying to recover a kubeconfig with existing trust from {target.control_plane}")
        result = self.talos.fetch_kubeconfig(bundle.trust, target.control_plane, self.kubeconfig_path)
        if not result.ok or not self.kubeconfig_path.is_file():
            logger.warning(
                f"Existing trust material rejected by {target.control_plane}: {result.output}"
            )
            return None

        logger.info("Recovered admin kubeconfig from existing trust material")
        return bundle.with_kubeconfig(self.kubeconfig_path)

    def generate_fresh_credentials(self, target: ClusterTarget) -> CredentialBundle:
        """Wipe existing credentials and generate new trust material.

        Raises:
            CredentialError: If talosctl fails to generate or configure
            ArtifactError: If an artifact is missing or implausibly small
        """
        bundle = self.bundle(target, generated=True)
        self._wipe(bundle)
        self.state_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Generating fresh credentials for cluster {target.cluster_name}")
        result = self.talos.generate_config(
            target.cluster_name, target.endpoint(self.api_port), self.state_dir
        )
        if not result.ok:
            raise CredentialError(
                f"Failed to generate credentials for cluster {target.cluster_name}", result.output
            )

        self._verify_artifacts(bundle)

        cp = target.control_plane
        result = self.talos.configure_endpoints(bundle.trust, cp, cp)
        if not result.ok:
            raise CredentialError(
                f"Failed to set endpoint {target.control_plane} in {bundle.trust}", result.output
            )
        return bundle

    def fetch_admin_credential(
        self, target: ClusterTarget, bundle: CredentialBundle
    ) -> CredentialBundle:
        """Fetch the admin kubeconfig from the control plane with the active trust."""
        result = self.talos.fetch_kubeconfig(bundle.trust, target.control_plane, self.kubeconfig_path)
        if not result.ok:
            raise CredentialError(
                f"Failed to fetch admin kubeconfig from {target.control_plane}", result.output
            )
        if not self.kubeconfig_path.is_file():
            raise CredentialError(
                f"talosctl reported success but {self.kubeconfig_path} does not exist",
                result.output,
            )
        logger.info(f"Admin kubeconfig written to {self.kubeconfig_path}")
        return bundle.with_kubeconfig(self.kubeconfig_path)

    def _wipe(self, bundle: CredentialBundle) -> None:
        for path in [*bundle.artifacts(), self.kubeconfig_path]:
            if path.exists():
                logger.debug(f"Removing stale credential file {path}")
                path.unlink()

    def _verify_artifacts(self, bundle: CredentialBundle) -> None:
        problems = []
        for path in bundle.artifacts():
            if not path.is_file():
                problems.append(f"{path}: missing")
            elif path.stat().st_size < self.min_artifact_bytes:
                problems.append(f"{path}: only {path.stat().st_size} bytes")
        if problems:
            raise ArtifactError(
                "Generated credential artifacts are missing or truncated",
                "\n".join(problems),
            )
