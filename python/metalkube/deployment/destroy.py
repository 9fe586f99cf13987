"""
metalkube/deployment/destroy.py

Resets every node of a previously provisioned cluster: workers first, then
control nodes, in recorded order. Every node is attempted even after a
failure. A reset that drops the connection (the node is rebooting) counts as
success; anything else is collected and raised together as DestroyError.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from metalkube.deployment.driver import NodeLifecycleDriver, NodeResetResult, ResetOutcome
from metalkube.deployment.errors import DestroyError
from metalkube.deployment.orchestrator import DriverFactory, default_driver_factory
from metalkube.models.cluster import ClusterSpec, NodeRole
from metalkube.models.settings import ProvisionerSettings
from metalkube.models.state import ClusterState

logger = logging.getLogger(__name__)


class DestroyReport(BaseModel):
    results: List[NodeResetResult] = Field(default_factory=list)

    @property
    def failures(self) -> List[NodeResetResult]:
        return [r for r in self.results if not r.succeeded]


async def _reset(driver: NodeLifecycleDriver, address: str, role: NodeRole) -> NodeResetResult:
    logger.info("Resetting %s node %s.", role.value, address)
    result = await driver.reset_node(address, role)
    if result.outcome == ResetOutcome.FAILURE:
        logger.warning("Reset of %s failed: %s", address, result.detail)
    elif result.outcome == ResetOutcome.EXPECTED_DISCONNECT:
        logger.info("Node %s disconnected during reset (rebooting).", address)
    return result


async def destroy_cluster(
    spec: ClusterSpec,
    state: ClusterState,
    *,
    settings: Optional[ProvisionerSettings] = None,
    driver_factory: Optional[DriverFactory] = None,
) -> DestroyReport:
    """
    Reset all nodes recorded in `state`.

    Args:
        spec: The cluster spec (per-node SSH credentials for k3s).
        state: The state returned by provision_cluster (addresses + credentials).
        settings: Provisioner settings.
        driver_factory: Override driver construction.

    Returns:
        DestroyReport: Per-node outcomes, all successful.

    Raises:
        DestroyError: If any node failed to reset; lists every failure.
        ValueError: If the stored credentials cannot drive a teardown.
    """
    factory = driver_factory or default_driver_factory(settings)
    report = DestroyReport()
    async with factory(spec) as driver:
        await driver.use_credentials(state.credentials)
        for address in state.worker_addresses:
            report.results.append(await _reset(driver, address, NodeRole.WORKER))
        for address in state.control_plane_addresses:
            report.results.append(await _reset(driver, address, NodeRole.CONTROL))

    if report.failures:
        raise DestroyError(report.failures)
    logger.info("Cluster %s destroyed (%d nodes).", spec.name, len(report.results))
    return report
