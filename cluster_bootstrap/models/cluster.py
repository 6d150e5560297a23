"""Data models for live cluster state."""

from datetime import datetime

from pydantic import BaseModel, Field


class NodeStatus(BaseModel):
    """Kubernetes node status information."""

    name: str
    role: str
    status: str  # Ready, NotReady, Unknown
    internal_ip: str
    kubelet_version: str
    os_image: str
    last_heartbeat: datetime | None = None


class ClusterState(BaseModel):
    """Current cluster state as seen through the admin kubeconfig."""

    name: str
    api_server: str
    nodes: list[NodeStatus] = Field(default_factory=list)

    @property
    def ready_count(self) -> int:
        return sum(1 for n in self.nodes if n.status == "Ready")

    @classmethod
    def from_kubernetes_api(cls, api_client, cluster_name: str, api_server: str) -> "ClusterState":
        """Fetch current node state from the Kubernetes API."""
        nodes_response = api_client.list_node()
        nodes = []
        for node in nodes_response.items:
            status = "Unknown"
            last_heartbeat = None
            for condition in node.status.conditions or []:
                if condition.type == "Ready":
                    status = "Ready" if condition.status == "True" else "NotReady"
                    last_heartbeat = condition.last_heartbeat_time

            labels = node.metadata.labels or {}
            if "node-role.kubernetes.io/control-plane" in labels:
                role = "control-plane"
            else:
                role = "worker"

            internal_ip = next(
                (a.address for a in node.status.addresses or [] if a.type == "InternalIP"), "N/A"
            )

            nodes.append(
                NodeStatus(
                    name=node.metadata.name,
                    role=role,
                    status=status,
                    internal_ip=internal_ip,
                    kubelet_version=node.status.node_info.kubelet_version,
                    os_image=node.status.node_info.os_image,
                    last_heartbeat=last_heartbeat,
                )
            )

        return cls(
            name=cluster_name,
            api_server=api_server,
            nodes=sorted(nodes, key=lambda n: n.name),
        )
