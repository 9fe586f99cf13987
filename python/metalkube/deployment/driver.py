"""
metalkube/deployment/driver.py

Defines the NodeLifecycleDriver capability shared by both cluster flavors:
install-or-apply a node, wait for readiness, and tear a node down. The
orchestrator sequences phases against this interface only, so the nine-phase
bootstrap exists once regardless of transport.

Also defines the reset result variant (ResetOutcome / NodeResetResult) used
by the destroyer.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from types import TracebackType
from typing import Optional, Type

from pydantic import BaseModel

from metalkube.models.cluster import ClusterSpec, NodeEndpoint, NodeRole
from metalkube.models.settings import ProvisionerSettings
from metalkube.models.state import ClusterCredentials


class ResetOutcome(str, Enum):
    """
    Result of resetting one node. A reset normally reboots the node, so losing
    the connection mid-call is EXPECTED_DISCONNECT and counts as success.
    """

    SUCCESS = "success"
    EXPECTED_DISCONNECT = "expected_disconnect"
    FAILURE = "failure"


class NodeResetResult(BaseModel):
    address: str
    role: NodeRole
    outcome: ResetOutcome
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome != ResetOutcome.FAILURE


class NodeLifecycleDriver(ABC):
    """Abstract base class for one cluster flavor's node lifecycle."""

    def __init__(self, spec: ClusterSpec, settings: ProvisionerSettings) -> None:
        """
        Initialize a driver.

        Args:
            spec (ClusterSpec): The validated cluster spec; never mutated.
            settings (ProvisionerSettings): Poll interval, binaries, etc.
        """
        self.spec = spec
        self.settings = settings
        self.cancel_event: Optional[asyncio.Event] = None

    def watch_cancel(self, cancel_event: asyncio.Event) -> None:
        """Make every readiness wait stop early once `cancel_event` is set."""
        self.cancel_event = cancel_event

    async def __aenter__(self) -> NodeLifecycleDriver:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Release local resources (working directories, sessions)."""

    # -- secrets and configuration ------------------------------------------

    @abstractmethod
    async def generate_secrets(self) -> None:
        """Produce (or reuse) the cluster-wide secret material, exactly once."""

    @abstractmethod
    async def generate_config(self) -> None:
        """Render the base configuration every node is derived from."""

    # -- install / apply ----------------------------------------------------

    @abstractmethod
    async def apply_control_plane_node(self, node: NodeEndpoint) -> None:
        """Install or apply configuration on one control node."""

    @abstractmethod
    async def apply_worker_node(self, node: NodeEndpoint) -> None:
        """Install or apply configuration on one worker node."""

    # -- bootstrap ----------------------------------------------------------

    @abstractmethod
    async def is_bootstrapped(self) -> bool:
        """
        Probe the bootstrap node for existing cluster members. Any probe
        failure means "not bootstrapped", never an error.
        """

    @abstractmethod
    async def bootstrap(self) -> None:
        """Initialize the cluster state store on the bootstrap node."""

    # -- readiness ----------------------------------------------------------

    @abstractmethod
    async def wait_api_ready(self, timeout: float) -> None:
        """Poll until the control API serves. Raises PollTimeoutError or PollCancelledError."""

    @abstractmethod
    async def wait_healthy(self, timeout: float) -> None:
        """Poll until the whole cluster reports healthy. Raises PollTimeoutError or PollCancelledError."""

    @abstractmethod
    async def fetch_credentials(self) -> ClusterCredentials:
        """Read the credential bundle back from the bootstrap node/tool."""

    # -- existing clusters --------------------------------------------------

    async def use_credentials(self, credentials: ClusterCredentials) -> None:
        """Load stored credentials before teardown or health checks."""

    @abstractmethod
    async def check_health(self) -> bool:
        """Single health probe against an existing cluster."""

    @abstractmethod
    async def reset_node(self, address: str, role: NodeRole) -> NodeResetResult:
        """Tear one node down. Never raises for per-node failures."""
