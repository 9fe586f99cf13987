"""
metalkube/deployment/orchestrator.py

Sequences a provisioning run as an explicit phase machine over a
NodeLifecycleDriver. The legal order lives in one transition table keyed by
(phase, outcome); the only branches are "already bootstrapped" (skip the
bootstrap call) and "health timed out" (continue, but mark degraded).

Public entry points:
  - provision_cluster: run every phase and return a complete ClusterState.
  - check_cluster_health: one health probe against an existing cluster.
  - default_driver_factory: picks K3sDriver or TalosDriver by ClusterKind.

Any failure before FETCH_CREDENTIALS raises ProvisioningError naming the
phase (and node); a partial ClusterState is never returned.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from metalkube.deployment.driver import NodeLifecycleDriver
from metalkube.deployment.errors import ProvisioningCancelled, ProvisioningError
from metalkube.deployment.k3s import K3sDriver
from metalkube.deployment.talos import TalosDriver
from metalkube.models.cluster import ClusterKind, ClusterSpec, NodeEndpoint
from metalkube.models.settings import ProvisionerSettings
from metalkube.models.state import (
    ClusterCredentials,
    ClusterState,
    ClusterStatus,
    ProvisionPhase,
)
from metalkube.utils.async_command_runner import CommandError
from metalkube.utils.async_poll import PollCancelledError, PollTimeoutError
from metalkube.utils.kubeconfig import rewrite_loopback_server
from metalkube.utils.ssh import OpenSSHExecutor, RemoteExecutor

logger = logging.getLogger(__name__)

DriverFactory = Callable[[ClusterSpec], NodeLifecycleDriver]


class PhaseOutcome(str, Enum):
    OK = "ok"
    NEEDS_BOOTSTRAP = "needs_bootstrap"
    ALREADY_BOOTSTRAPPED = "already_bootstrapped"
    DEGRADED = "degraded"


P = ProvisionPhase

TRANSITIONS: Dict[Tuple[ProvisionPhase, PhaseOutcome], ProvisionPhase] = {
    (P.GENERATE_SECRETS, PhaseOutcome.OK): P.GENERATE_CONFIG,
    (P.GENERATE_CONFIG, PhaseOutcome.OK): P.APPLY_CONTROL_PLANE,
    (P.APPLY_CONTROL_PLANE, PhaseOutcome.OK): P.CHECK_BOOTSTRAPPED,
    (P.CHECK_BOOTSTRAPPED, PhaseOutcome.NEEDS_BOOTSTRAP): P.BOOTSTRAP,
    (P.CHECK_BOOTSTRAPPED, PhaseOutcome.ALREADY_BOOTSTRAPPED): P.WAIT_API,
    (P.BOOTSTRAP, PhaseOutcome.OK): P.WAIT_API,
    (P.WAIT_API, PhaseOutcome.OK): P.APPLY_WORKERS,
    (P.APPLY_WORKERS, PhaseOutcome.OK): P.WAIT_HEALTHY,
    (P.WAIT_HEALTHY, PhaseOutcome.OK): P.FETCH_CREDENTIALS,
    (P.WAIT_HEALTHY, PhaseOutcome.DEGRADED): P.FETCH_CREDENTIALS,
    (P.FETCH_CREDENTIALS, PhaseOutcome.OK): P.DONE,
}

# Errors a phase may raise that are reported as a ProvisioningError.
PHASE_ERRORS = (CommandError, PollTimeoutError, OSError, ValueError)


class ClusterOrchestrator:
    """Runs the bootstrap phases for one ClusterSpec against one driver."""

    def __init__(
        self,
        spec: ClusterSpec,
        driver: NodeLifecycleDriver,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.spec = spec
        self.driver = driver
        self.cancel_event = cancel_event
        if cancel_event is not None:
            driver.watch_cancel(cancel_event)
        self.state = ClusterState(
            kind=spec.kind, name=spec.name, api_endpoint=spec.api_endpoint
        )
        self._handlers: Dict[ProvisionPhase, Callable[[], Awaitable[PhaseOutcome]]] = {
            P.GENERATE_SECRETS: self._generate_secrets,
            P.GENERATE_CONFIG: self._generate_config,
            P.APPLY_CONTROL_PLANE: self._apply_control_plane,
            P.CHECK_BOOTSTRAPPED: self._check_bootstrapped,
            P.BOOTSTRAP: self._bootstrap,
            P.WAIT_API: self._wait_api,
            P.APPLY_WORKERS: self._apply_workers,
            P.WAIT_HEALTHY: self._wait_healthy,
            P.FETCH_CREDENTIALS: self._fetch_credentials,
        }

    def _check_cancelled(self, phase: ProvisionPhase, node: Optional[str] = None) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            logger.warning("Provisioning of %s cancelled at %s.", self.spec.name, phase.value)
            raise ProvisioningCancelled(phase, node)

    async def run(self) -> ClusterState:
        """
        Drive the phase machine from GENERATE_SECRETS to DONE.

        Returns:
            ClusterState: Complete state with credentials and status ready/degraded.

        Raises:
            ProvisioningError: If any phase fails (ProvisioningCancelled if cancelled).
        """
        phase = P.GENERATE_SECRETS
        while phase != P.DONE:
            self._check_cancelled(phase)
            logger.info("[%s] phase %s", self.spec.name, phase.value)
            try:
                outcome = await self._handlers[phase]()
            except ProvisioningError:
                raise
            except PollCancelledError as exc:
                logger.warning("Provisioning of %s cancelled at %s: %s", self.spec.name, phase.value, exc)
                raise ProvisioningCancelled(phase) from exc
            except PHASE_ERRORS as exc:
                raise ProvisioningError(phase, str(exc)) from exc
            self.state.phases.append(phase)
            phase = TRANSITIONS[(phase, outcome)]

        logger.info("Cluster %s provisioned (%s).", self.spec.name, self.state.status.value)
        return self.state

    async def _for_each_node(
        self,
        phase: ProvisionPhase,
        nodes: List[NodeEndpoint],
        step: Callable[[NodeEndpoint], Awaitable[None]],
    ) -> None:
        """Run `step` per node in order, attributing failures to the node."""
        for node in nodes:
            self._check_cancelled(phase, node.address)
            logger.info("[%s] %s: %s", self.spec.name, phase.value, node.address)
            try:
                await step(node)
            except PollCancelledError as exc:
                logger.warning(
                    "Provisioning of %s cancelled at %s on %s: %s",
                    self.spec.name,
                    phase.value,
                    node.address,
                    exc,
                )
                raise ProvisioningCancelled(phase, node.address) from exc
            except PHASE_ERRORS as exc:
                raise ProvisioningError(phase, str(exc), node=node.address) from exc

    async def _generate_secrets(self) -> PhaseOutcome:
        await self.driver.generate_secrets()
        return PhaseOutcome.OK

    async def _generate_config(self) -> PhaseOutcome:
        await self.driver.generate_config()
        return PhaseOutcome.OK

    async def _apply_control_plane(self) -> PhaseOutcome:
        async def _apply(node: NodeEndpoint) -> None:
            await self.driver.apply_control_plane_node(node)
            self.state.control_plane_addresses.append(node.address)

        await self._for_each_node(P.APPLY_CONTROL_PLANE, self.spec.control_plane, _apply)
        return PhaseOutcome.OK

    async def _check_bootstrapped(self) -> PhaseOutcome:
        # Settle delay before probing membership.
        await asyncio.sleep(self.spec.timeouts.bootstrap_settle)
        if await self.driver.is_bootstrapped():
            logger.info("Cluster %s is already bootstrapped; skipping bootstrap.", self.spec.name)
            return PhaseOutcome.ALREADY_BOOTSTRAPPED
        return PhaseOutcome.NEEDS_BOOTSTRAP

    async def _bootstrap(self) -> PhaseOutcome:
        try:
            await self.driver.bootstrap()
        except PHASE_ERRORS as exc:
            raise ProvisioningError(
                P.BOOTSTRAP, str(exc), node=self.spec.bootstrap_node.address
            ) from exc
        return PhaseOutcome.OK

    async def _wait_api(self) -> PhaseOutcome:
        await self.driver.wait_api_ready(self.spec.timeouts.api_ready)
        return PhaseOutcome.OK

    async def _apply_workers(self) -> PhaseOutcome:
        async def _apply(node: NodeEndpoint) -> None:
            await self.driver.apply_worker_node(node)
            self.state.worker_addresses.append(node.address)

        await self._for_each_node(P.APPLY_WORKERS, self.spec.workers, _apply)
        return PhaseOutcome.OK

    async def _wait_healthy(self) -> PhaseOutcome:
        try:
            await self.driver.wait_healthy(self.spec.timeouts.health)
        except PollTimeoutError as exc:
            logger.warning("Cluster %s not healthy in time; continuing as degraded: %s", self.spec.name, exc)
            self.state.status = ClusterStatus.DEGRADED
            return PhaseOutcome.DEGRADED
        return PhaseOutcome.OK

    async def _fetch_credentials(self) -> PhaseOutcome:
        credentials = await self.driver.fetch_credentials()
        kubeconfig = rewrite_loopback_server(credentials.kubeconfig, self.spec.bootstrap_node.address)
        self.state.credentials = credentials.model_copy(update={"kubeconfig": kubeconfig})
        if self.state.status != ClusterStatus.DEGRADED:
            self.state.status = ClusterStatus.READY
        return PhaseOutcome.OK


def default_driver_factory(
    settings: Optional[ProvisionerSettings] = None,
    executor: Optional[RemoteExecutor] = None,
) -> DriverFactory:
    """
    Build a factory returning the driver for a spec's kind. The SSH executor
    is only created for k3s specs.
    """
    settings = settings or ProvisionerSettings()

    def _factory(spec: ClusterSpec) -> NodeLifecycleDriver:
        if spec.kind == ClusterKind.K3S:
            return K3sDriver(spec, settings, executor or OpenSSHExecutor(settings))
        return TalosDriver(spec, settings)

    return _factory


async def provision_cluster(
    spec: ClusterSpec,
    *,
    settings: Optional[ProvisionerSettings] = None,
    driver_factory: Optional[DriverFactory] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ClusterState:
    """
    Provision (or converge) the cluster described by `spec`.

    Args:
        spec: Validated cluster spec.
        settings: Provisioner settings; read from METALKUBE_* env vars if None.
        driver_factory: Override driver construction (tests, custom transports).
        cancel_event: Set it to stop before the next phase or node step; readiness
            waits in progress stop after their current probe.

    Returns:
        ClusterState: status READY, or DEGRADED if health was not confirmed.

    Raises:
        ProvisioningError: On any failure before credentials were fetched.
    """
    factory = driver_factory or default_driver_factory(settings)
    async with factory(spec) as driver:
        return await ClusterOrchestrator(spec, driver, cancel_event).run()


async def check_cluster_health(
    spec: ClusterSpec,
    credentials: ClusterCredentials,
    *,
    settings: Optional[ProvisionerSettings] = None,
    driver_factory: Optional[DriverFactory] = None,
) -> ClusterStatus:
    """Probe an existing cluster once; READY or DEGRADED, never raising for probe errors."""
    factory = driver_factory or default_driver_factory(settings)
    async with factory(spec) as driver:
        await driver.use_credentials(credentials)
        try:
            healthy = await driver.check_health()
        except CommandError as exc:
            logger.warning("Health probe for %s failed: %s", spec.name, exc)
            healthy = False
    return ClusterStatus.READY if healthy else ClusterStatus.DEGRADED
