"""Data model for the cluster being bootstrapped."""

import ipaddress
import re

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from cluster_bootstrap.models.outcomes import NodeRole

CLUSTER_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


def _validate_address(v: str) -> str:
    v = v.strip()
    try:
        ipaddress.ip_address(v)
    except ValueError:
        raise ValueError(f"'{v}' is not a valid IP address")
    return v


class ClusterTarget(BaseModel):
    """The cluster a run operates on. Immutable for the duration of the run."""

    model_config = ConfigDict(frozen=True)

    cluster_name: str
    control_plane: str
    workers: tuple[str, ...]
    vip: str

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, v: str) -> str:
        """Validate cluster name is a DNS-1123 label."""
        if not v:
            raise ValueError("cluster_name cannot be empty")
        if len(v) > 63 or not CLUSTER_NAME_PATTERN.match(v):
            raise ValueError(
                f"cluster_name '{v}' must be a lowercase DNS label "
                "(letters, digits and hyphens, at most 63 characters)"
            )
        return v

    @field_validator("control_plane", "vip")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Validate a single node or service address."""
        return _validate_address(v)

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Validate the worker list is non-empty, well-formed and duplicate-free."""
        if not v:
            raise ValueError("at least one worker address is required")
        workers = tuple(_validate_address(w) for w in v)
        seen = set()
        for worker in workers:
            if worker in seen:
                raise ValueError(f"duplicate worker address '{worker}'")
            seen.add(worker)
        return workers

    @model_validator(mode="after")
    def validate_distinct_addresses(self) -> "ClusterTarget":
        """Validate the control plane, workers and VIP never share an address."""
        if self.control_plane in self.workers:
            raise ValueError(f"control plane {self.control_plane} is also listed as a worker")
        if self.vip in self.nodes:
            raise ValueError(f"vip {self.vip} collides with a node address")
        return self

    @property
    def nodes(self) -> tuple[str, ...]:
        """All node addresses, control plane first, workers in the given order."""
        return (self.control_plane, *self.workers)

    def role_of(self, address: str) -> NodeRole:
        """Return the role of a node in this target."""
        if address == self.control_plane:
            return NodeRole.CONTROL_PLANE
        if address in self.workers:
            return NodeRole.WORKER
        raise KeyError(f"{address} is not a node of cluster {self.cluster_name}")

    def endpoint(self, port: int = 6443) -> str:
        """Kubernetes API endpoint URL advertised in generated configs."""
        return f"https://{self.control_plane}:{port}"
