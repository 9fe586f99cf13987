"""
metalkube/deployment/errors.py

Errors surfaced by provisioning and teardown. Provisioning failures always
name the phase (and node, when one was being processed); teardown failures
are aggregated over every node that was attempted.
"""

from __future__ import annotations

from typing import List, Optional

from metalkube.deployment.driver import NodeResetResult
from metalkube.models.state import ProvisionPhase


class ProvisioningError(Exception):
    """A fatal failure before credential extraction; no ClusterState is returned.

    Attributes:
        phase (ProvisionPhase): The phase that failed.
        node (Optional[str]): Address of the node being processed, if any.
    """

    def __init__(
        self, phase: ProvisionPhase, message: str, node: Optional[str] = None
    ) -> None:
        where = f"phase '{phase.value}'" + (f" on node {node}" if node else "")
        super().__init__(f"Provisioning failed in {where}: {message}")
        self.phase = phase
        self.node = node


class ProvisioningCancelled(ProvisioningError):
    """The caller's cancellation signal was raised; already-applied nodes are left as-is."""

    def __init__(self, phase: ProvisionPhase, node: Optional[str] = None) -> None:
        super().__init__(phase, "cancelled by caller", node)


class DestroyError(Exception):
    """One or more nodes could not be reset. Every node was still attempted.

    Attributes:
        failures (List[NodeResetResult]): The failed nodes, in attempt order.
    """

    def __init__(self, failures: List[NodeResetResult]) -> None:
        summary = "; ".join(
            f"{f.role.value} {f.address}: {f.detail or 'reset failed'}" for f in failures
        )
        super().__init__(f"Failed to reset {len(failures)} node(s): {summary}")
        self.failures = failures
