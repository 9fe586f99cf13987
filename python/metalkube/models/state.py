"""
metalkube/models/state.py

Defines Pydantic models for what a provisioning run produces:
 - ProvisionPhase / ClusterStatus (Enums)
 - ClusterCredentials: opaque credential blobs read back from the nodes/tool
 - ClusterState: the value returned to the caller and persisted by the CLI
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from metalkube.models.cluster import ClusterKind


class ProvisionPhase(str, Enum):
    """The bootstrap phases, in the only order they may run."""

    GENERATE_SECRETS = "generate_secrets"
    GENERATE_CONFIG = "generate_config"
    APPLY_CONTROL_PLANE = "apply_control_plane"
    CHECK_BOOTSTRAPPED = "check_bootstrapped"
    BOOTSTRAP = "bootstrap"
    WAIT_API = "wait_api"
    APPLY_WORKERS = "apply_workers"
    WAIT_HEALTHY = "wait_healthy"
    FETCH_CREDENTIALS = "fetch_credentials"
    DONE = "done"


class ClusterStatus(str, Enum):
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    DEGRADED = "degraded"


class ClusterCredentials(BaseModel):
    """
    Captures the cluster's access material post-deployment:
      - kubeconfig: admin kubeconfig with the API address rewritten off loopback
      - talosconfig: talosctl admin profile (talos)
      - secrets_yaml: raw talos secrets/PKI bundle, reused on re-runs (talos)
      - cluster_token: the K3S_TOKEN the cluster was created with (k3s)
      - node_token: the server node-token workers joined with (k3s)
    """

    kubeconfig: str = Field(default="", repr=False)
    talosconfig: Optional[str] = Field(default=None, repr=False)
    secrets_yaml: Optional[str] = Field(default=None, repr=False)
    cluster_token: Optional[str] = Field(default=None, repr=False)
    node_token: Optional[str] = Field(default=None, repr=False)


class ClusterState(BaseModel):
    """
    What the orchestrator believes succeeded. Only ever returned complete.

    Attributes:
        kind: Flavor the cluster was provisioned with.
        name: Cluster name.
        status: ready, or degraded if health could not be confirmed in budget.
        api_endpoint: Kubernetes API URL.
        control_plane_addresses: Control nodes configured, in order.
        worker_addresses: Workers configured, in order.
        credentials: Extracted credential bundle.
        phases: The phases that actually ran, in order.
    """

    kind: ClusterKind
    name: str
    status: ClusterStatus = ClusterStatus.BOOTSTRAPPING
    api_endpoint: str = ""
    control_plane_addresses: List[str] = Field(default_factory=list)
    worker_addresses: List[str] = Field(default_factory=list)
    credentials: ClusterCredentials = Field(default_factory=ClusterCredentials)
    phases: List[ProvisionPhase] = Field(default_factory=list)
