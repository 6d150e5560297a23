"""Custom exceptions for cluster bootstrap."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cluster_bootstrap.models.outcomes import NodeOutcome, PipelineCondition


class BootstrapError(Exception):
    """Base exception for all cluster bootstrap errors.

    ``retryable`` tells the orchestrator whether the failure may trigger the
    single whole-pipeline rebuild retry.
    """

    retryable = False

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details, usually raw command output
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ToolNotFoundError(BootstrapError):
    """Exception raised when a required external CLI is missing."""

    pass


class ConfigurationError(BootstrapError):
    """Exception raised for configuration errors."""

    pass


class LockError(BootstrapError):
    """Exception raised when another run already holds the state directory."""

    pass


class CredentialError(BootstrapError):
    """Exception raised when credentials cannot be produced or fetched."""

    retryable = True


class ArtifactError(CredentialError):
    """Exception raised when generated trust artifacts are missing or truncated."""

    retryable = False


class ManagementApiTimeout(BootstrapError):
    """Exception raised when a node's management API does not come back in time."""

    retryable = True

    def __init__(self, address: str, port: int, timeout: float):
        self.address = address
        self.port = port
        self.timeout = timeout
        super().__init__(
            f"Management API on {address}:{port} not reachable after {timeout:.0f}s",
            "The node may still be rebooting, or it may have booted into maintenance mode. "
            "Check the node console.",
        )


class NodeUnreachableError(BootstrapError):
    """Exception raised when nodes do not answer at the network layer."""

    def __init__(self, addresses: list[str], port: int):
        self.addresses = list(addresses)
        super().__init__(
            f"Node(s) unreachable: {', '.join(self.addresses)}",
            f"No ping reply and nothing listening on port {port}. "
            "Check the addresses and that the nodes are powered on.",
        )


class NodeOperationError(BootstrapError):
    """Exception carrying the per-node outcomes of a failed fleet operation."""

    def __init__(self, message: str, outcomes: list[NodeOutcome]):
        self.outcomes = list(outcomes)
        super().__init__(f"{message}: {', '.join(self.failed_nodes)}", self._describe())

    @property
    def failed_nodes(self) -> list[str]:
        """Addresses of the nodes whose outcome was not a success."""
        return [o.address for o in self.outcomes if not o.succeeded]

    def _describe(self) -> str:
        lines = []
        for outcome in self.outcomes:
            if outcome.succeeded:
                continue
            lines.append(f"{outcome.address} [{outcome.status.value}]: {outcome.reason}")
            if outcome.diagnostics:
                lines.append(outcome.diagnostics.rstrip())
        return "\n".join(lines)


class NodeResetError(NodeOperationError):
    """Exception raised when the all-or-nothing reset gate rejects the fleet."""

    pass


class ConfigApplyError(NodeOperationError):
    """Exception raised when a node could not accept its configuration."""

    retryable = True


class EtcdBootstrapError(BootstrapError):
    """Exception raised when the etcd bootstrap call itself fails."""

    retryable = True


class PipelineError(BootstrapError):
    """Exception raised for a named pipeline-level failure condition."""

    retryable = True

    def __init__(self, condition: PipelineCondition, message: str, details: str = None):
        self.condition = condition
        super().__init__(f"[{condition.value}] {message}", details)


class RebuildFailedError(BootstrapError):
    """Exception raised when every allowed rebuild attempt has failed."""

    def __init__(self, attempts: int, last_error: BootstrapError):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Cluster rebuild failed after {attempts} attempt(s): {last_error.message}",
            last_error.details,
        )


class AddonError(BootstrapError):
    """Exception raised for add-on installation errors."""

    pass
