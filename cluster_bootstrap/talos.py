"""Adapter around the talosctl command line.

Every call returns a :class:`CommandResult` instead of raising on a non-zero
exit, so the coordinators can classify the failure. Trust is passed in
explicitly as a :class:`TrustContext`; ``TALOSCONFIG`` from the environment
is never consulted.
"""

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from cluster_bootstrap.exceptions import ToolNotFoundError
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.credentials import TrustContext
from cluster_bootstrap.models.outcomes import CommandResult, TrustMode

logger = get_logger(__name__)

TIMEOUT_EXIT_CODE = 124
WIPE_LABELS = ("STATE", "EPHEMERAL")


@dataclass(frozen=True)
class ServiceState:
    """One row of ``talosctl service`` output."""

    node: str
    service: str
    state: str
    health: str

    @property
    def failed(self) -> bool:
        return self.state.lower() == "failed" or self.health.lower() == "fail"


def parse_service_table(output: str) -> dict[str, ServiceState]:
    """Parse the table printed by ``talosctl service``.

    Returns:
        Mapping of service id to its state; rows that do not fit the header
        are skipped.
    """
    services = {}
    columns = None
    required = 0
    for line in output.splitlines():
        fields = line.split()
        if not fields:
            continue
        if "SERVICE" in fields and "STATE" in fields:
            columns = {name: index for index, name in enumerate(fields)}
            # Trailing LAST CHANGE / LAST EVENT cells may be short or empty
            required = 1 + max(
                columns[name] for name in ("NODE", "SERVICE", "STATE", "HEALTH") if name in columns
            )
            continue
        if columns is None or len(fields) < required:
            continue
        state = ServiceState(
            node=fields[columns["NODE"]] if "NODE" in columns else "",
            service=fields[columns["SERVICE"]],
            state=fields[columns["STATE"]],
            health=fields[columns["HEALTH"]] if "HEALTH" in columns else "?",
        )
        services[state.service] = state
    return services


def etcd_failed(output: str) -> bool:
    """Return True if the service table reports etcd in a failed state."""
    services = parse_service_table(output)
    if "etcd" in services:
        return services["etcd"].failed
    # Unparseable table: fall back to a plain line match
    return any("etcd" in line and "Failed" in line for line in output.splitlines())


class TalosClient:
    """Runs talosctl and captures its result."""

    def __init__(self, binary: str = "talosctl", timeout: float = 120):
        """Initialize the client.

        Args:
            binary: talosctl executable name or path
            timeout: Per-invocation timeout in seconds
        """
        self.binary = binary
        self.timeout = timeout

    def check_installed(self) -> str:
        """Return the resolved talosctl path.

        Raises:
            ToolNotFoundError: If talosctl is not in PATH
        """
        path = shutil.which(self.binary)
        if not path:
            raise ToolNotFoundError(
                f"{self.binary} is not installed or not in PATH",
                "Install talosctl from https://www.talos.dev/latest/talos-guides/install/talosctl/",
            )
        return path

    def _run(self, args: list[str], trust: TrustContext | None = None) -> CommandResult:
        command = [self.binary, *args]
        if trust is not None:
            command += ["--talosconfig", str(trust.talosconfig)]
        logger.debug(f"Running: {' '.join(command)}")

        try:
            proc = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            logger.error(f"{self.binary} binary not found in PATH")
            raise ToolNotFoundError(
                f"{self.binary} is not installed or not in PATH",
                "Install talosctl or pass its location with the talosctl_binary setting",
            )
        except subprocess.TimeoutExpired:
            logger.error(f"{' '.join(command[:2])} timed out after {self.timeout}s")
            return CommandResult(
                tuple(command), TIMEOUT_EXIT_CODE, stderr=f"timed out after {self.timeout}s"
            )

        result = CommandResult(tuple(command), proc.returncode, proc.stdout, proc.stderr)
        if result.ok:
            logger.debug(f"{args[0]} completed")
        else:
            logger.debug(f"{args[0]} exited {result.returncode}: {result.output}")
        return result

    @staticmethod
    def _target(node: str, endpoint: str) -> list[str]:
        return ["--nodes", node, "--endpoints", endpoint]

    @staticmethod
    def _auth(mode: TrustMode, trust: TrustContext | None) -> tuple[list[str], TrustContext | None]:
        if mode is TrustMode.SECURE:
            return [], trust
        return ["--insecure"], None

    def generate_config(self, cluster_name: str, endpoint: str, output_dir: Path) -> CommandResult:
        """Generate fresh secrets, role payloads and the client trust file."""
        return self._run(
            ["gen", "config", cluster_name, endpoint, "--output-dir", str(output_dir), "--force"]
        )

    def configure_endpoints(self, trust: TrustContext, endpoint: str, node: str) -> CommandResult:
        """Point the trust file's default context at the control plane."""
        result = self._run(["config", "endpoint", endpoint], trust)
        if not result.ok:
            return result
        return self._run(["config", "node", node], trust)

    def apply_config(
        self,
        node: str,
        endpoint: str,
        payload: Path,
        mode: TrustMode,
        trust: TrustContext | None = None,
    ) -> CommandResult:
        """Apply a role payload to a node."""
        flags, auth = self._auth(mode, trust)
        return self._run(
            ["apply-config", *self._target(node, endpoint), "--file", str(payload), *flags], auth
        )

    def reset(
        self, node: str, endpoint: str, mode: TrustMode, trust: TrustContext | None = None
    ) -> CommandResult:
        """Wipe STATE and EPHEMERAL on a node and reboot it without waiting."""
        flags, auth = self._auth(mode, trust)
        args = ["reset", *self._target(node, endpoint), "--graceful=false", "--reboot", "--wait=false"]
        for label in WIPE_LABELS:
            args += ["--system-labels-to-wipe", label]
        return self._run([*args, *flags], auth)

    def bootstrap_etcd(self, trust: TrustContext, node: str) -> CommandResult:
        return self._run(["bootstrap", *self._target(node, node)], trust)

    def fetch_kubeconfig(self, trust: TrustContext, node: str, output_path: Path) -> CommandResult:
        """Write the admin kubeconfig to output_path, overwriting any existing file."""
        return self._run(
            ["kubeconfig", str(output_path), *self._target(node, node), "--force"], trust
        )

    def service_status(self, trust: TrustContext, node: str) -> CommandResult:
        return self._run(["service", *self._target(node, node)], trust)
