"""Data models for cluster targets, credentials and per-node outcomes."""

from cluster_bootstrap.models.cluster import ClusterState, NodeStatus
from cluster_bootstrap.models.credentials import CredentialBundle, TrustContext
from cluster_bootstrap.models.outcomes import (
    BootstrapState,
    CommandResult,
    FailureKind,
    NodeOutcome,
    NodeRole,
    OutcomeStatus,
    PipelineCondition,
    ResetPolicy,
    TrustMode,
)
from cluster_bootstrap.models.target import ClusterTarget

__all__ = [
    "BootstrapState",
    "ClusterState",
    "ClusterTarget",
    "CommandResult",
    "CredentialBundle",
    "FailureKind",
    "NodeOutcome",
    "NodeRole",
    "NodeStatus",
    "OutcomeStatus",
    "PipelineCondition",
    "ResetPolicy",
    "TrustContext",
    "TrustMode",
]
