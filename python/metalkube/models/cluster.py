"""
metalkube/models/cluster.py

Defines Pydantic models describing a bare-metal cluster to provision:
 - NodeRole / ClusterKind (Enums)
 - NodeEndpoint: one reachable node
 - PhaseTimeouts: per-phase deadline budget
 - ClusterSpec: everything a provisioning run needs, frozen after validation
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from metalkube.models.ssh import SSHCredentials


class NodeRole(str, Enum):
    """Whether a node runs the control plane or only joins it."""

    CONTROL = "control"
    WORKER = "worker"


class ClusterKind(str, Enum):
    """Selects the node lifecycle driver."""

    K3S = "k3s"
    TALOS = "talos"


class NodeEndpoint(BaseModel):
    """
    Represents one node of the cluster. Identity is the address; the hostname
    is advisory metadata baked into generated config.

    Attributes:
        address: IP address (or resolvable name) the node is reached on.
        hostname: Optional hostname to assign; defaults are derived per role.
        role: control or worker.
        ssh: SSH credentials (k3s only; talos nodes are reached via talosctl).
    """

    model_config = ConfigDict(frozen=True)

    address: str = Field(..., min_length=1)
    hostname: Optional[str] = None
    role: NodeRole = NodeRole.WORKER
    ssh: SSHCredentials = Field(default_factory=SSHCredentials)


class PhaseTimeouts(BaseModel):
    """Independent deadline budgets, in seconds, for each waiting phase."""

    model_config = ConfigDict(frozen=True)

    node_install: float = Field(default=600.0, ge=0)
    bootstrap_settle: float = Field(default=10.0, ge=0)
    api_ready: float = Field(default=600.0, ge=0)
    node_ready: float = Field(default=300.0, ge=0)
    health: float = Field(default=600.0, ge=0)


class ClusterSpec(BaseModel):
    """
    Everything one provisioning run needs. Validated once and never mutated.

    Attributes:
        kind: Which flavor (k3s or talos) to provision.
        name: Cluster name; also the default hostname prefix.
        endpoint: Kubernetes API URL. Required for talos; k3s defaults to
            https://<first control node>:6443.
        k3s_version: INSTALL_K3S_VERSION pin (k3s); empty => channel default.
        kubernetes_version: --kubernetes-version pin (talos).
        install_disk: Disk talos installs itself to.
        pod_cidr / service_cidr: Cluster networking (k3s).
        control_plane: At least one control node; the first one is the bootstrap node.
        workers: Zero or more workers.
        allow_scheduling_on_control_plane: Let workloads land on control nodes.
        timeouts: Per-phase deadlines.
        cluster_token: Caller-supplied k3s join secret; generated when absent.
        secrets_yaml: Existing talos secrets bundle; when set it is reused and
            never regenerated.
    """

    model_config = ConfigDict(frozen=True)

    kind: ClusterKind
    name: str = Field(..., min_length=1)
    endpoint: Optional[str] = None
    k3s_version: Optional[str] = None
    kubernetes_version: Optional[str] = None
    install_disk: str = "/dev/mmcblk0"
    pod_cidr: Optional[str] = "10.244.0.0/16"
    service_cidr: Optional[str] = "10.96.0.0/12"
    control_plane: List[NodeEndpoint] = Field(..., min_length=1)
    workers: List[NodeEndpoint] = Field(default_factory=list)
    allow_scheduling_on_control_plane: bool = False
    timeouts: PhaseTimeouts = Field(default_factory=PhaseTimeouts)
    cluster_token: Optional[str] = Field(default=None, repr=False)
    secrets_yaml: Optional[str] = Field(default=None, repr=False)

    @model_validator(mode="before")
    @classmethod
    def assign_roles(cls, data: Any) -> Any:
        """Stamp each raw node entry with the role implied by the list it sits in."""
        if not isinstance(data, dict):
            return data

        def _with_role(nodes: Any, role: NodeRole) -> Any:
            if not isinstance(nodes, list):
                return nodes
            stamped_nodes: List[Any] = []
            for node in nodes:
                if isinstance(node, dict):
                    node = {**node, "role": node.get("role", role)}
                elif isinstance(node, NodeEndpoint) and "role" not in node.model_fields_set:
                    node = node.model_copy(update={"role": role})
                stamped_nodes.append(node)
            return stamped_nodes

        stamped: Dict[str, Any] = dict(data)
        stamped["control_plane"] = _with_role(data.get("control_plane"), NodeRole.CONTROL)
        if "workers" in data:
            stamped["workers"] = _with_role(data.get("workers"), NodeRole.WORKER)
        return stamped

    @model_validator(mode="after")
    def check_consistency(self) -> ClusterSpec:
        """
        Reject specs that would confuse the orchestrator: role mismatches,
        duplicate addresses, or a talos cluster without an endpoint.
        """
        if any(n.role != NodeRole.CONTROL for n in self.control_plane):
            raise ValueError("control_plane entries must have role 'control'.")
        if any(n.role != NodeRole.WORKER for n in self.workers):
            raise ValueError("workers entries must have role 'worker'.")

        addresses = [n.address for n in self.all_nodes]
        duplicates = sorted({a for a in addresses if addresses.count(a) > 1})
        if duplicates:
            raise ValueError(f"Duplicate node addresses: {', '.join(duplicates)}")

        if self.kind == ClusterKind.TALOS and not self.endpoint:
            raise ValueError("talos clusters require 'endpoint'.")
        return self

    @property
    def all_nodes(self) -> List[NodeEndpoint]:
        return [*self.control_plane, *self.workers]

    @property
    def bootstrap_node(self) -> NodeEndpoint:
        return self.control_plane[0]

    @property
    def api_endpoint(self) -> str:
        return self.endpoint or f"https://{self.bootstrap_node.address}:6443"

    def node_for_address(self, address: str) -> Optional[NodeEndpoint]:
        return next((n for n in self.all_nodes if n.address == address), None)

    def hostname_for(self, node: NodeEndpoint) -> str:
        """The node's hostname, or `<name>-cp-N` / `<name>-w-N` (1-based) by position."""
        if node.hostname:
            return node.hostname
        if node.role == NodeRole.CONTROL:
            return f"{self.name}-cp-{self.control_plane.index(node) + 1}"
        return f"{self.name}-w-{self.workers.index(node) + 1}"


__all__ = [
    "NodeRole",
    "ClusterKind",
    "NodeEndpoint",
    "PhaseTimeouts",
    "ClusterSpec",
]
