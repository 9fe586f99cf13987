"""
Provides an idempotent k3s cluster deployment over SSH. Remote execution is in
metalkube.utils.ssh; the phase sequencing is in metalkube.deployment.orchestrator.

Every step checks before it acts: a node whose k3s binary is already present is
only (re)enabled and started, never reinstalled, so re-running against a
half-built cluster converges instead of failing.

Flow, as driven by the orchestrator:
  1) Generate (or reuse) the cluster token. If the first server is already
     installed, the token it was created with is read back instead.
  2) First control node installs with --cluster-init when the control plane
     has more than one member; its node token is read back once it exists.
  3) Additional control nodes join the first with the node token.
  4) Workers install as agents and are each awaited until the control plane
     lists them Ready.
  5) The kubeconfig is read from the first control node.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Dict, List, Optional, Tuple

from metalkube.deployment.driver import NodeLifecycleDriver, NodeResetResult, ResetOutcome
from metalkube.models.cluster import ClusterSpec, NodeEndpoint, NodeRole
from metalkube.models.settings import ProvisionerSettings
from metalkube.models.state import ClusterCredentials
from metalkube.utils.async_command_runner import CommandError, ConnectError
from metalkube.utils.async_poll import poll_until
from metalkube.utils.ssh import RemoteExecutor, RemoteSession, env_command

logger = logging.getLogger(__name__)

K3S_BINARY = "/usr/local/bin/k3s"
K3S_CONFIG_DIR = "/etc/rancher/k3s"
K3S_KUBECONFIG = "/etc/rancher/k3s/k3s.yaml"
K3S_NODE_TOKEN = "/var/lib/rancher/k3s/server/node-token"
K3S_SERVER_TOKEN = "/var/lib/rancher/k3s/server/token"
INSTALL_SCRIPT = "/tmp/k3s-install.sh"
SERVER_UNINSTALL = "/usr/local/bin/k3s-uninstall.sh"
AGENT_UNINSTALL = "/usr/local/bin/k3s-agent-uninstall.sh"
SUPERVISOR_PORT = 6443


def generate_cluster_token() -> str:
    """
    Return a fresh 64-hex-character join secret. Falls back to a
    timestamp-derived token only if the OS has no randomness source.
    """
    try:
        return secrets.token_hex(32)
    except (NotImplementedError, OSError):
        logger.warning("No secure randomness available; deriving cluster token from time.")
        return f"k3s-token-{time.time_ns()}"


def parse_node_table(output: str) -> List[Dict[str, str]]:
    """
    Parse `kubectl get nodes` output into one dict per row, keyed by header.

    Columns are whitespace-separated. Only columns up to OS-IMAGE are reliable
    in `-o wide` output, since OS-IMAGE itself may contain spaces; every
    column this module reads (NAME, STATUS, INTERNAL-IP, EXTERNAL-IP) comes
    before it.
    """
    lines = [line for line in output.splitlines() if line.strip()]
    header_index = next(
        (i for i, line in enumerate(lines) if line.split()[0] == "NAME"), None
    )
    if header_index is None:
        return []
    headers = lines[header_index].split()
    return [dict(zip(headers, line.split())) for line in lines[header_index + 1 :]]


def row_is_ready(row: Dict[str, str]) -> bool:
    # STATUS may be e.g. "Ready,SchedulingDisabled"
    return "Ready" in row.get("STATUS", "").split(",")


def row_matches_address(row: Dict[str, str], address: str) -> bool:
    """Exact match on the node's internal or external IP column."""
    return address in (row.get("INTERNAL-IP"), row.get("EXTERNAL-IP"))


class K3sNodeInstaller:
    """
    Per-node install, readiness and teardown steps over a RemoteExecutor.
    Holds no cluster state of its own; every method opens its own session.
    """

    def __init__(self, executor: RemoteExecutor, settings: ProvisionerSettings) -> None:
        self.executor = executor
        self.settings = settings
        self.cancel_event: Optional[asyncio.Event] = None

    async def connect(self, node: NodeEndpoint) -> RemoteSession:
        return await self.executor.connect(node.address, node.ssh.port, node.ssh)

    async def wait_for_ssh(self, node: NodeEndpoint, timeout: float) -> None:
        """Poll until an SSH session to the node can be opened."""

        async def _probe() -> Tuple[bool, str]:
            session = await self.connect(node)
            await session.close()
            return True, ""

        await poll_until(
            _probe,
            timeout=timeout,
            interval=self.settings.poll_interval_seconds,
            cancel_event=self.cancel_event,
            description=f"SSH on {node.address}",
        )

    async def is_installed(self, session: RemoteSession) -> bool:
        """Whether the k3s binary is present. Any probe error reads as absent."""
        try:
            out = await session.run(
                f"test -f {K3S_BINARY} && echo installed || echo not_installed"
            )
        except CommandError as exc:
            logger.debug("Install probe on %s failed: %s", session.host, exc)
            return False
        return out.strip() == "installed"

    async def _prepare(self, session: RemoteSession) -> None:
        await session.run("swapoff -a")
        await session.run(f"mkdir -p {K3S_CONFIG_DIR}")

    async def _download_installer(self, session: RemoteSession) -> None:
        await session.run(
            f"curl -sfL {self.settings.k3s_install_url} -o {INSTALL_SCRIPT} && chmod +x {INSTALL_SCRIPT}"
        )

    async def install_server(
        self,
        node: NodeEndpoint,
        *,
        version: Optional[str],
        token: Optional[str],
        server_url: Optional[str] = None,
        cluster_init: bool = False,
        extra_args: Optional[List[str]] = None,
    ) -> bool:
        """
        Install (or restart) k3s in server mode.

        Args:
            node: Target control node.
            version: INSTALL_K3S_VERSION pin; omitted when empty.
            token: K3S_TOKEN. The cluster token for the first server, the node
                token for joining servers.
            server_url: K3S_URL of an existing server to join, if any.
            cluster_init: Start embedded etcd (HA control plane).
            extra_args: Additional `server` flags.

        Returns:
            bool: True if a fresh install ran, False if k3s was already present.
        """
        async with await self.connect(node) as session:
            await self._prepare(session)

            if await self.is_installed(session):
                logger.info("k3s already installed on %s; ensuring it is running.", node.address)
                await session.run("systemctl enable k3s")
                await session.run("systemctl start k3s")
                return False

            await self._download_installer(session)
            args = ["server"]
            if cluster_init:
                args.append("--cluster-init")
            args += extra_args or []
            env = {
                "INSTALL_K3S_VERSION": version,
                "K3S_TOKEN": token,
                "K3S_URL": server_url,
            }
            logger.info("Installing k3s server on %s.", node.address)
            await session.run(env_command(env, " ".join([INSTALL_SCRIPT] + args)))
            return True

    async def install_agent(
        self,
        node: NodeEndpoint,
        *,
        version: Optional[str],
        server_url: str,
        node_token: str,
    ) -> bool:
        """
        Install (or restart) k3s in agent mode, joined to `server_url`.

        Returns:
            bool: True if a fresh install ran, False if k3s was already present.
        """
        async with await self.connect(node) as session:
            await self._prepare(session)

            if await self.is_installed(session):
                logger.info("k3s already installed on %s; ensuring the agent runs.", node.address)
                try:
                    await session.run("systemctl enable k3s-agent")
                    await session.run("systemctl start k3s-agent")
                except ConnectError:
                    raise
                except CommandError as exc:
                    logger.warning("Could not start k3s-agent on %s: %s", node.address, exc)
                return False

            await self._download_installer(session)
            env = {
                "INSTALL_K3S_VERSION": version,
                "K3S_TOKEN": node_token,
                "K3S_URL": server_url,
            }
            logger.info("Installing k3s agent on %s.", node.address)
            await session.run(env_command(env, f"{INSTALL_SCRIPT} agent"))
            return True

    async def list_nodes(self, server: NodeEndpoint, wide: bool = False) -> List[Dict[str, str]]:
        command = "k3s kubectl get nodes" + (" -o wide" if wide else "")
        async with await self.connect(server) as session:
            return parse_node_table(await session.run(command))

    async def list_node_names(self, server: NodeEndpoint) -> List[str]:
        async with await self.connect(server) as session:
            out = await session.run(
                "k3s kubectl get nodes -o jsonpath='{.items[*].metadata.name}'"
            )
        return out.split()

    async def get_version(self, node: NodeEndpoint) -> str:
        async with await self.connect(node) as session:
            return (await session.run(f"{K3S_BINARY} --version | head -1")).strip()

    async def wait_server_ready(self, server: NodeEndpoint, timeout: float) -> None:
        """Poll until the server's own API lists at least one Ready node."""

        async def _probe() -> Tuple[bool, str]:
            rows = await self.list_nodes(server)
            return any(row_is_ready(r) for r in rows), f"{len(rows)} node(s) listed"

        await poll_until(
            _probe,
            timeout=timeout,
            interval=self.settings.poll_interval_seconds,
            cancel_event=self.cancel_event,
            description=f"k3s server on {server.address} to be Ready",
        )

    async def wait_node_ready(self, server: NodeEndpoint, address: str, timeout: float) -> None:
        """Poll `server` until the node with exactly `address` reports Ready."""

        async def _probe() -> Tuple[bool, str]:
            rows = await self.list_nodes(server, wide=True)
            match = next((r for r in rows if row_matches_address(r, address)), None)
            if match is None:
                return False, f"{address} not registered yet"
            return row_is_ready(match), f"{address} status {match.get('STATUS', '?')}"

        await poll_until(
            _probe,
            timeout=timeout,
            interval=self.settings.poll_interval_seconds,
            cancel_event=self.cancel_event,
            description=f"node {address} to be Ready",
        )

    async def get_node_token(self, server: NodeEndpoint, timeout: float) -> str:
        """Poll until the server's node-token file exists and is non-empty."""
        token = ""

        async def _probe() -> Tuple[bool, str]:
            nonlocal token
            async with await self.connect(server) as session:
                token = (await session.run(f"cat {K3S_NODE_TOKEN}")).strip()
            return bool(token), ""

        await poll_until(
            _probe,
            timeout=timeout,
            interval=self.settings.poll_interval_seconds,
            cancel_event=self.cancel_event,
            description=f"node token on {server.address}",
        )
        return token

    async def read_server_token(self, server: NodeEndpoint) -> Optional[str]:
        """The token an installed server was created with, or None if unreadable."""
        async with await self.connect(server) as session:
            try:
                token = (await session.run(f"cat {K3S_SERVER_TOKEN}")).strip()
            except ConnectError:
                raise
            except CommandError as exc:
                logger.warning("Could not read the cluster token on %s: %s", server.address, exc)
                return None
        return token or None

    async def get_kubeconfig(self, server: NodeEndpoint) -> str:
        async with await self.connect(server) as session:
            return await session.run(f"cat {K3S_KUBECONFIG}")

    async def uninstall(self, node: NodeEndpoint, role: NodeRole) -> bool:
        """
        Run the role's uninstall script.

        Returns:
            bool: True if the script ran, False if the node was already clean.
        """
        script = AGENT_UNINSTALL if role == NodeRole.WORKER else SERVER_UNINSTALL
        async with await self.connect(node) as session:
            present = await session.run(f"test -x {script} && echo present || echo absent")
            if present.strip() != "present":
                logger.info("No k3s uninstall script on %s; already clean.", node.address)
                return False
            await session.run(script)
            return True


class K3sDriver(NodeLifecycleDriver):
    """NodeLifecycleDriver for k3s: a script-driven install over SSH."""

    def __init__(
        self,
        spec: ClusterSpec,
        settings: ProvisionerSettings,
        executor: RemoteExecutor,
    ) -> None:
        super().__init__(spec, settings)
        self.installer = K3sNodeInstaller(executor, settings)
        self.cluster_token: Optional[str] = None
        self._node_token: Optional[str] = None

    def watch_cancel(self, cancel_event: asyncio.Event) -> None:
        super().watch_cancel(cancel_event)
        self.installer.cancel_event = cancel_event

    @property
    def server_url(self) -> str:
        return f"https://{self.spec.bootstrap_node.address}:{SUPERVISOR_PORT}"

    def _server_args(self) -> List[str]:
        args = []
        if self.spec.pod_cidr:
            args.append(f"--cluster-cidr={self.spec.pod_cidr}")
        if self.spec.service_cidr:
            args.append(f"--service-cidr={self.spec.service_cidr}")
        return args

    async def _join_token(self) -> str:
        if self._node_token is None:
            self._node_token = await self.installer.get_node_token(
                self.spec.bootstrap_node, self.spec.timeouts.node_install
            )
        return self._node_token

    async def generate_secrets(self) -> None:
        if self.spec.cluster_token:
            logger.info("Using the supplied cluster token.")
            self.cluster_token = self.spec.cluster_token
        else:
            self.cluster_token = generate_cluster_token()
            logger.info("Generated a candidate cluster token; an existing first server keeps its own.")

    async def generate_config(self) -> None:
        # k3s renders its own configuration from the install environment.
        logger.debug("k3s server flags: %s", self._server_args())

    async def apply_control_plane_node(self, node: NodeEndpoint) -> None:
        timeout = self.spec.timeouts.node_install
        await self.installer.wait_for_ssh(node, timeout)

        if node == self.spec.bootstrap_node:
            fresh = await self.installer.install_server(
                node,
                version=self.spec.k3s_version,
                token=self.cluster_token,
                cluster_init=len(self.spec.control_plane) > 1,
                extra_args=self._server_args(),
            )
            if not fresh and not self.spec.cluster_token:
                # The existing datastore keeps its original token.
                self.cluster_token = await self.installer.read_server_token(node)
            await self.installer.wait_server_ready(node, timeout)
        else:
            await self.installer.install_server(
                node,
                version=self.spec.k3s_version,
                token=await self._join_token(),
                server_url=self.server_url,
                extra_args=self._server_args(),
            )
            await self.installer.wait_node_ready(self.spec.bootstrap_node, node.address, timeout)

    async def is_bootstrapped(self) -> bool:
        try:
            rows = await self.installer.list_nodes(self.spec.bootstrap_node)
        except CommandError as exc:
            logger.debug("Bootstrap probe failed: %s", exc)
            return False
        return bool(rows)

    async def bootstrap(self) -> None:
        # The first server initializes the datastore itself on start.
        async with await self.installer.connect(self.spec.bootstrap_node) as session:
            await session.run("systemctl start k3s")

    async def wait_api_ready(self, timeout: float) -> None:
        await self.installer.wait_server_ready(self.spec.bootstrap_node, timeout)

    async def apply_worker_node(self, node: NodeEndpoint) -> None:
        await self.installer.wait_for_ssh(node, self.spec.timeouts.node_install)
        await self.installer.install_agent(
            node,
            version=self.spec.k3s_version,
            server_url=self.server_url,
            node_token=await self._join_token(),
        )
        await self.installer.wait_node_ready(
            self.spec.bootstrap_node, node.address, self.spec.timeouts.node_ready
        )

    async def _all_nodes_ready(self) -> Tuple[bool, str]:
        rows = await self.installer.list_nodes(self.spec.bootstrap_node, wide=True)
        pending = [
            n.address
            for n in self.spec.all_nodes
            if not any(row_matches_address(r, n.address) and row_is_ready(r) for r in rows)
        ]
        return not pending, f"not Ready: {', '.join(pending)}" if pending else ""

    async def wait_healthy(self, timeout: float) -> None:
        await poll_until(
            self._all_nodes_ready,
            timeout=timeout,
            interval=self.settings.poll_interval_seconds,
            cancel_event=self.cancel_event,
            description="all k3s nodes to be Ready",
        )

    async def fetch_credentials(self) -> ClusterCredentials:
        kubeconfig = await self.installer.get_kubeconfig(self.spec.bootstrap_node)
        try:
            version = await self.installer.get_version(self.spec.bootstrap_node)
            names = await self.installer.list_node_names(self.spec.bootstrap_node)
        except CommandError as exc:
            logger.warning("Could not describe cluster %s: %s", self.spec.name, exc)
        else:
            logger.info("Cluster runs %s with nodes: %s", version, ", ".join(names))
        return ClusterCredentials(
            kubeconfig=kubeconfig,
            cluster_token=self.cluster_token,
            node_token=await self._join_token(),
        )

    async def check_health(self) -> bool:
        ready, detail = await self._all_nodes_ready()
        if not ready:
            logger.warning("Cluster %s unhealthy: %s", self.spec.name, detail)
        return ready

    async def reset_node(self, address: str, role: NodeRole) -> NodeResetResult:
        node = self.spec.node_for_address(address)
        if node is None:
            return NodeResetResult(
                address=address,
                role=role,
                outcome=ResetOutcome.FAILURE,
                detail="node is not in the cluster spec; no SSH credentials",
            )
        try:
            ran = await self.installer.uninstall(node, role)
        except CommandError as exc:
            return NodeResetResult(
                address=address, role=role, outcome=ResetOutcome.FAILURE, detail=str(exc)
            )
        return NodeResetResult(
            address=address,
            role=role,
            outcome=ResetOutcome.SUCCESS,
            detail="" if ran else "already clean",
        )
