"""Node reset protocol and the fleet-wide reset gate.

Per node: reset with the active trust, falling back to an insecure reset when
the node trusts a different authority. A node in maintenance mode cannot be
reset through the API at all.

Across the fleet, the default all-or-nothing policy refuses to continue with
a mix of wiped and unwiped nodes; best-effort only warns.
"""

from concurrent.futures import ThreadPoolExecutor

from cluster_bootstrap.classify import DEFAULT_RULES, FailureRules
from cluster_bootstrap.escalation import Attempt, escalate
from cluster_bootstrap.exceptions import ManagementApiTimeout, NodeResetError
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.credentials import TrustContext
from cluster_bootstrap.models.outcomes import FailureKind, NodeOutcome, ResetPolicy, TrustMode
from cluster_bootstrap.models.target import ClusterTarget
from cluster_bootstrap.probe import ConnectivityProber
from cluster_bootstrap.talos import TalosClient

logger = get_logger(__name__)

TALOS_API_PORT = 50000


class NodeResetCoordinator:
    """Wipes node state and waits for the control plane to come back."""

    def __init__(
        self,
        talos: TalosClient,
        prober: ConnectivityProber,
        rules: FailureRules = DEFAULT_RULES,
        management_port: int = TALOS_API_PORT,
        management_timeout: float = 600,
        shutdown_timeout: float = 60,
        max_workers: int | None = None,
    ):
        """Initialize the coordinator.

        Args:
            talos: Control-plane CLI adapter
            prober: Connectivity prober
            rules: Failure classification rules
            management_port: Talos API port
            management_timeout: How long to wait for the API after a reset
            shutdown_timeout: How long to watch for the API going down first
            max_workers: Reset concurrency; defaults to the node count
        """
        self.talos = talos
        self.prober = prober
        self.rules = rules
        self.management_port = management_port
        self.management_timeout = management_timeout
        self.shutdown_timeout = shutdown_timeout
        self.max_workers = max_workers

    def reset_node(self, address: str, trust: TrustContext | None) -> NodeOutcome:
        """Run the single-node reset protocol."""
        secure = Attempt(
            TrustMode.SECURE,
            lambda: self.talos.reset(address, address, TrustMode.SECURE, trust),
            {FailureKind.TLS_TRUST_MISMATCH: TrustMode.INSECURE},
        )
        insecure = Attempt(
            TrustMode.INSECURE,
            lambda: self.talos.reset(address, address, TrustMode.INSECURE),
        )
        if trust is not None and trust.exists():
            ladder = [secure, insecure]
        else:
            logger.info(f"{address}: no trust material available, resetting insecurely")
            ladder = [insecure]

        result = escalate(address, ladder, self.rules)
        if result.succeeded:
            return NodeOutcome.success(address, result.modes)

        diagnostics = result.diagnostics()
        if result.final_kind is FailureKind.MAINTENANCE_MODE:
            return NodeOutcome.fatal(
                address, "maintenance mode: cannot reset via API", result.modes, diagnostics
            )
        if result.last.mode is TrustMode.INSECURE and len(result.records) > 1:
            return NodeOutcome.recoverable(
                address, "insecure reset also failed", result.modes, diagnostics
            )
        reason = result.last.result.output or f"exit code {result.last.result.returncode}"
        logger.warning(f"{address}: reset failed: {reason}")
        return NodeOutcome.recoverable(address, reason, result.modes, diagnostics)

    def reset_all(
        self,
        target: ClusterTarget,
        trust: TrustContext | None,
        policy: ResetPolicy = ResetPolicy.ALL_OR_NOTHING,
    ) -> list[NodeOutcome]:
        """Reset every node of the target, then wait for the control plane API.

        Returns:
            Outcomes in node order (control plane first)

        Raises:
            NodeResetError: Under all-or-nothing, if any node did not reset
            ManagementApiTimeout: If the control plane API does not return
        """
        nodes = target.nodes
        workers = min(self.max_workers or len(nodes), len(nodes))
        logger.info(f"Resetting {len(nodes)} node(s) with policy {policy.value}")

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self.reset_node, node, trust) for node in nodes]
            outcomes = [future.result() for future in futures]

        for outcome in outcomes:
            if outcome.succeeded:
                logger.info(f"{outcome.address}: reset accepted")
            else:
                logger.warning(f"{outcome.address}: {outcome.status.value}: {outcome.reason}")

        failed = [o for o in outcomes if not o.succeeded]
        if failed:
            if policy is ResetPolicy.ALL_OR_NOTHING:
                logger.error(f"Reset failed on {len(failed)} node(s), aborting")
                raise NodeResetError("Node reset failed", outcomes)
            logger.warning(
                f"Continuing after reset failures on {', '.join(o.address for o in failed)}; "
                "configuration may hit trust errors"
            )

        self.wait_for_management_api(target.control_plane)
        return outcomes

    def wait_for_management_api(self, address: str) -> None:
        """Wait for a rebooting node's Talos API to go away and come back.

        Raises:
            ManagementApiTimeout: If the port does not open within the timeout
        """
        went_down = self.prober.poll_until(
            lambda: not self.prober.is_port_open(address, self.management_port),
            self.shutdown_timeout,
        )
        if not went_down:
            logger.debug(
                f"{address}:{self.management_port} never closed, node may not have rebooted yet"
            )

        if not self.prober.wait_for_port(address, self.management_port, self.management_timeout):
            raise ManagementApiTimeout(address, self.management_port, self.management_timeout)
