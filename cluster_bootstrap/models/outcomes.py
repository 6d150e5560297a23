"""Enumerations and result types shared by the coordinators."""

from dataclasses import dataclass, field
from enum import Enum


class NodeRole(str, Enum):
    """Role of a node; selects the configuration payload it receives."""

    CONTROL_PLANE = "controlplane"
    WORKER = "worker"


class TrustMode(str, Enum):
    """How a control-plane call authenticates to a node."""

    INSECURE = "insecure"
    SECURE = "secure"
    INSECURE_AFTER_RESET = "insecure-after-reset"


class FailureKind(str, Enum):
    """Classification of a failed control-plane command."""

    TLS_TRUST_MISMATCH = "tls-trust-mismatch"
    CERTIFICATE_REQUIRED = "certificate-required"
    MAINTENANCE_MODE = "maintenance-mode"
    UNKNOWN = "unknown"


class OutcomeStatus(str, Enum):
    """Terminal status of a per-node operation."""

    SUCCESS = "success"
    FAILED_RECOVERABLE = "failed-recoverable"
    FAILED_FATAL = "failed-fatal"


class ResetPolicy(str, Enum):
    """How the reset coordinator treats individual node failures."""

    BEST_EFFORT = "best-effort"
    ALL_OR_NOTHING = "all-or-nothing"


class BootstrapState(str, Enum):
    """States of the top-level bootstrap state machine."""

    CHECKING_HEALTH = "checking-health"
    FAST_PATH_DONE = "fast-path-done"
    RESOLVING_CREDENTIALS = "resolving-credentials"
    RECOVERED_DONE = "recovered-done"
    RESETTING_NODES = "resetting-nodes"
    APPLYING_CONFIGS = "applying-configs"
    BOOTSTRAPPING_ETCD = "bootstrapping-etcd"
    AWAITING_K8S_API = "awaiting-k8s-api"
    FETCHING_KUBECONFIG = "fetching-kubeconfig"
    AWAITING_KUBECTL = "awaiting-kubectl"
    INSTALLING_ADDONS = "installing-addons"
    DONE = "done"
    FAILED_FATAL = "failed-fatal"


class PipelineCondition(str, Enum):
    """Named pipeline-level failures that trigger the rebuild retry."""

    ETCD_FAILED = "etcd_failed"
    K8S_API_DOWN = "k8s_api_down"
    KUBECTL_NOT_READY = "kubectl_not_ready"


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of one external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined, as an operator would see them."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


@dataclass(frozen=True)
class NodeOutcome:
    """Result of a reset or apply protocol on one node.

    ``attempts`` records the trust modes tried, in order.
    """

    address: str
    status: OutcomeStatus
    reason: str | None = None
    attempts: tuple[TrustMode, ...] = field(default_factory=tuple)
    diagnostics: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @classmethod
    def success(cls, address: str, attempts: tuple[TrustMode, ...]) -> "NodeOutcome":
        return cls(address, OutcomeStatus.SUCCESS, attempts=attempts)

    @classmethod
    def recoverable(
        cls, address: str, reason: str, attempts: tuple[TrustMode, ...], diagnostics: str = ""
    ) -> "NodeOutcome":
        return cls(address, OutcomeStatus.FAILED_RECOVERABLE, reason, attempts, diagnostics)

    @classmethod
    def fatal(
        cls, address: str, reason: str, attempts: tuple[TrustMode, ...], diagnostics: str = ""
    ) -> "NodeOutcome":
        return cls(address, OutcomeStatus.FAILED_FATAL, reason, attempts, diagnostics)
