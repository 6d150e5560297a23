"""Delivery of role payloads to nodes across trust transitions.

A node's trust state cannot be observed in advance, so each apply climbs a
ladder: insecure (fresh node), secure (configured node that trusts the
active bundle), then one forced reset followed by an insecure apply (node
that trusts some other bundle). Every other failure is fatal.
"""

import time
from collections.abc import Callable
from pathlib import Path

from cluster_bootstrap.classify import DEFAULT_RULES, FailureRules
from cluster_bootstrap.escalation import Attempt, escalate
from cluster_bootstrap.exceptions import ConfigApplyError, ManagementApiTimeout
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.credentials import CredentialBundle
from cluster_bootstrap.models.outcomes import (
    CommandResult,
    FailureKind,
    NodeOutcome,
    NodeRole,
    TrustMode,
)
from cluster_bootstrap.models.target import ClusterTarget
from cluster_bootstrap.reset import NodeResetCoordinator
from cluster_bootstrap.talos import TalosClient

logger = get_logger(__name__)


class ConfigApplyCoordinator:
    """Applies control-plane and worker payloads in order."""

    def __init__(
        self,
        talos: TalosClient,
        reset_coordinator: NodeResetCoordinator,
        rules: FailureRules = DEFAULT_RULES,
        settle_delay: float = 10,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.talos = talos
        self.reset_coordinator = reset_coordinator
        self.rules = rules
        self.settle_delay = settle_delay
        self.sleep = sleep

    def apply_node(self, address: str, role: NodeRole, bundle: CredentialBundle) -> NodeOutcome:
        """Run the apply protocol on one node."""
        payload = bundle.payload_for(role)
        logger.info(f"{address}: applying {role.value} configuration from {payload}")

        ladder = [
            Attempt(
                TrustMode.INSECURE,
                lambda: self.talos.apply_config(address, address, payload, TrustMode.INSECURE),
                {
                    FailureKind.CERTIFICATE_REQUIRED: TrustMode.SECURE,
                    FailureKind.TLS_TRUST_MISMATCH: TrustMode.SECURE,
                },
            ),
            Attempt(
                TrustMode.SECURE,
                lambda: self.talos.apply_config(
                    address, address, payload, TrustMode.SECURE, bundle.trust
                ),
                {FailureKind.TLS_TRUST_MISMATCH: TrustMode.INSECURE_AFTER_RESET},
            ),
            Attempt(
                TrustMode.INSECURE_AFTER_RESET,
                lambda: self._reset_then_apply(address, payload, bundle),
            ),
        ]

        result = escalate(address, ladder, self.rules)
        if result.succeeded:
            return NodeOutcome.success(address, result.modes)

        last = result.last
        reason = f"{last.mode.value} apply failed ({last.kind.value})"
        return NodeOutcome.fatal(address, reason, result.modes, result.diagnostics())

    def _reset_then_apply(
        self, address: str, payload: Path, bundle: CredentialBundle
    ) -> CommandResult:
        logger.warning(f"{address}: trusts a different authority, forcing a reset")
        outcome = self.reset_coordinator.reset_node(address, bundle.trust)
        if not outcome.succeeded:
            return CommandResult(
                ("reset", address),
                1,
                stderr=f"forced reset failed: {outcome.reason}\n{outcome.diagnostics}",
            )

        try:
            self.reset_coordinator.wait_for_management_api(address)
        except ManagementApiTimeout as e:
            return CommandResult(("reset", address), 1, stderr=f"forced reset: {e.message}")

        return self.talos.apply_config(address, address, payload, TrustMode.INSECURE_AFTER_RESET)

    def apply_all(self, target: ClusterTarget, bundle: CredentialBundle) -> list[NodeOutcome]:
        """Apply the control plane first, settle, then each worker in order.

        Raises:
            ConfigApplyError: On the first node that cannot be configured
        """
        outcomes = [self.apply_node(target.control_plane, NodeRole.CONTROL_PLANE, bundle)]
        if not outcomes[0].succeeded:
            raise ConfigApplyError("Control plane configuration failed", outcomes)

        logger.info(f"Control plane configured, settling for {self.settle_delay:.0f}s")
        self.sleep(self.settle_delay)

        for worker in target.workers:
            outcome = self.apply_node(worker, NodeRole.WORKER, bundle)
            outcomes.append(outcome)
            if not outcome.succeeded:
                raise ConfigApplyError("Worker configuration failed", outcomes)

        return outcomes
