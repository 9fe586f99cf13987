"""
Provides the talos cluster deployment, driven entirely through the local
`talosctl` binary (metalkube.utils.talosctl). Nodes are never reached over SSH:
each one boots into maintenance mode and accepts a machine configuration over
its API, first insecurely, then with the admin profile that config defines.

All generated files live in one private working directory created when the
driver is entered and removed when it exits:

    <work_dir>/secrets.yaml          cluster PKI and tokens (generated or supplied)
    <work_dir>/configs/              base controlplane.yaml, worker.yaml, talosconfig
    <work_dir>/<role>-<n>.yaml       per-node patched configs
    <work_dir>/talosconfig           admin profile loaded for destroy/health
    <work_dir>/kubeconfig            fetched admin kubeconfig
"""

from __future__ import annotations

import logging
import os
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional, Tuple

import aiofiles
import yaml

from metalkube.deployment.driver import NodeLifecycleDriver, NodeResetResult, ResetOutcome
from metalkube.models.cluster import ClusterSpec, NodeEndpoint, NodeRole
from metalkube.models.settings import ProvisionerSettings
from metalkube.models.state import ClusterCredentials
from metalkube.utils.async_command_runner import CommandError, ConnectError
from metalkube.utils.async_poll import poll_until
from metalkube.utils.ephemeral_file import ephemeral_manager
from metalkube.utils.talosctl import TalosctlRunner

logger = logging.getLogger(__name__)

SECRETS_FILE = "secrets.yaml"
CONFIG_DIR = "configs"
TALOSCONFIG_FILE = "talosconfig"
KUBECONFIG_FILE = "kubeconfig"


def build_patch(
    hostname: str, role: NodeRole, allow_scheduling_on_control_plane: bool
) -> Dict[str, Any]:
    """
    The per-node machine config patch: always the hostname, plus control-plane
    scheduling for control nodes when enabled. Workers never get the latter.
    """
    patch: Dict[str, Any] = {"machine": {"network": {"hostname": hostname}}}
    if role == NodeRole.CONTROL and allow_scheduling_on_control_plane:
        patch["cluster"] = {"allowSchedulingOnControlPlanes": True}
    return patch


def parse_etcd_members(output: str) -> List[str]:
    """
    Extract member IDs from `talosctl etcd members` output.

    Rows look like `NODE  ID  HOSTNAME  PEER URLS  CLIENT URLS  LEARNER`; the
    header row and blank lines are skipped.
    """
    members = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 2 or fields[0] in ("NODE", "MEMBER") or fields[1] == "ID":
            continue
        members.append(fields[1])
    return members


def service_is_running(output: str) -> bool:
    """Whether `talosctl service <id>` reports STATE Running."""
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[0] == "STATE":
            return fields[1] == "Running"
    return False


async def _write_text(path: str, content: str) -> None:
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(content)
    os.chmod(path, 0o600)


async def _read_text(path: str) -> str:
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        return await f.read()


class TalosConfigGenerator:
    """Secret, base-config and per-node patch generation via talosctl."""

    def __init__(self, runner: TalosctlRunner) -> None:
        self.runner = runner

    @property
    def work_dir(self) -> str:
        return self.runner.work_dir

    async def generate_secrets(self, existing: Optional[str] = None) -> str:
        """
        Write the secrets bundle to the working directory and return its content.
        An existing bundle is written as-is; talosctl is only asked to generate
        one when none is supplied.
        """
        path = os.path.join(self.work_dir, SECRETS_FILE)
        if existing:
            logger.info("Reusing the supplied talos secrets bundle.")
            await _write_text(path, existing)
            return existing
        await self.runner.run("gen", "secrets", "-o", SECRETS_FILE)
        return await _read_text(path)

    async def generate_config(
        self,
        cluster_name: str,
        endpoint: str,
        install_disk: str,
        kubernetes_version: Optional[str] = None,
    ) -> str:
        """
        Generate base control-plane/worker configs and the admin talosconfig
        from the secrets bundle. Returns the talosconfig content.
        """
        args = [
            "gen",
            "config",
            "--with-secrets",
            SECRETS_FILE,
            cluster_name,
            endpoint,
            "--install-disk",
            install_disk,
            "--output-dir",
            CONFIG_DIR,
        ]
        if kubernetes_version:
            args += ["--kubernetes-version", kubernetes_version]
        await self.runner.run(*args)
        return await _read_text(os.path.join(self.work_dir, CONFIG_DIR, TALOSCONFIG_FILE))

    def base_config_path(self, role: NodeRole) -> str:
        name = "controlplane.yaml" if role == NodeRole.CONTROL else "worker.yaml"
        return os.path.join(self.work_dir, CONFIG_DIR, name)

    async def patch_config(self, base_path: str, patch: Dict[str, Any], output_name: str) -> str:
        """
        Apply `patch` to `base_path` into `<work_dir>/<output_name>`. The patch
        file is removed afterwards whether or not patching succeeded.
        """
        patch_path = os.path.join(self.work_dir, f"patch-{output_name}")
        output_path = os.path.join(self.work_dir, output_name)
        await _write_text(patch_path, yaml.safe_dump(patch, sort_keys=False))
        try:
            await self.runner.run(
                "machineconfig", "patch", base_path, "--patch", f"@{patch_path}", "--output", output_path
            )
        finally:
            if os.path.exists(patch_path):
                os.remove(patch_path)
        return output_path


class TalosDriver(NodeLifecycleDriver):
    """NodeLifecycleDriver for talos: declarative config applied over the node API."""

    def __init__(
        self,
        spec: ClusterSpec,
        settings: ProvisionerSettings,
        runner: Optional[TalosctlRunner] = None,
    ) -> None:
        """
        Args:
            spec: The cluster spec.
            settings: Provisioner settings.
            runner: Pre-built runner (its work_dir is then used as-is and not
                removed). When None, a private working directory is created
                on entry.
        """
        super().__init__(spec, settings)
        self._runner = runner
        self._stack = AsyncExitStack()
        self.secrets_yaml: Optional[str] = None
        self.talosconfig: Optional[str] = None

    async def __aenter__(self) -> TalosDriver:
        await self.open()
        return self

    async def open(self) -> None:
        if self._runner is not None:
            return
        paths = await self._stack.enter_async_context(
            ephemeral_manager(
                [SECRETS_FILE], prefix="talos-", parent_dir=self.settings.work_dir_parent
            )
        )
        work_dir = os.path.dirname(paths[SECRETS_FILE])
        self._runner = TalosctlRunner(work_dir, binary=self.settings.talosctl_path)

    async def close(self) -> None:
        await self._stack.aclose()

    @property
    def runner(self) -> TalosctlRunner:
        if self._runner is None:
            raise RuntimeError("TalosDriver used outside its async context.")
        return self._runner

    @property
    def generator(self) -> TalosConfigGenerator:
        return TalosConfigGenerator(self.runner)

    @property
    def bootstrap_address(self) -> str:
        return self.spec.bootstrap_node.address

    @property
    def talosconfig_path(self) -> str:
        """The admin profile path, whether generated or loaded from credentials."""
        generated = os.path.join(self.runner.work_dir, CONFIG_DIR, TALOSCONFIG_FILE)
        if os.path.exists(generated):
            return generated
        return os.path.join(self.runner.work_dir, TALOSCONFIG_FILE)

    async def _talosctl(self, *args: str) -> str:
        return await self.runner.run(*args, talosconfig=self.talosconfig_path)

    # -- provisioning -------------------------------------------------------

    async def generate_secrets(self) -> None:
        self.secrets_yaml = await self.generator.generate_secrets(self.spec.secrets_yaml)

    async def generate_config(self) -> None:
        os.makedirs(os.path.join(self.runner.work_dir, CONFIG_DIR), exist_ok=True)
        self.talosconfig = await self.generator.generate_config(
            self.spec.name,
            self.spec.api_endpoint,
            self.spec.install_disk,
            self.spec.kubernetes_version,
        )

    async def _apply(self, node: NodeEndpoint, output_name: str) -> None:
        patch = build_patch(
            self.spec.hostname_for(node), node.role, self.spec.allow_scheduling_on_control_plane
        )
        config_path = await self.generator.patch_config(
            self.generator.base_config_path(node.role), patch, output_name
        )
        logger.info("Applying %s config to %s.", node.role.value, node.address)
        await self.runner.run("apply-config", "--insecure", "--nodes", node.address, "--file", config_path)

    async def apply_control_plane_node(self, node: NodeEndpoint) -> None:
        index = self.spec.control_plane.index(node)
        await self._apply(node, f"controlplane-{index}.yaml")

    async def apply_worker_node(self, node: NodeEndpoint) -> None:
        index = self.spec.workers.index(node)
        await self._apply(node, f"worker-{index}.yaml")

    async def cluster_members(self) -> List[str]:
        address = self.bootstrap_address
        out = await self._talosctl("etcd", "members", "--nodes", address, "--endpoints", address)
        return parse_etcd_members(out)

    async def is_bootstrapped(self) -> bool:
        try:
            members = await self.cluster_members()
        except CommandError as exc:
            logger.debug("etcd membership probe failed: %s", exc)
            return False
        return bool(members)

    async def bootstrap(self) -> None:
        address = self.bootstrap_address
        logger.info("Bootstrapping etcd on %s.", address)
        await self._talosctl("bootstrap", "--nodes", address, "--endpoints", address)

    async def wait_api_ready(self, timeout: float) -> None:
        address = self.bootstrap_address

        async def _probe() -> Tuple[bool, str]:
            out = await self._talosctl("service", "kube-apiserver", "--nodes", address, "--endpoints", address)
            return service_is_running(out), out.strip()

        await poll_until(
            _probe,
            timeout=timeout,
            interval=self.settings.poll_interval_seconds,
            cancel_event=self.cancel_event,
            description=f"kube-apiserver on {address}",
        )

    async def _health_probe(self) -> Tuple[bool, str]:
        address = self.bootstrap_address
        await self._talosctl(
            "health",
            "--nodes",
            address,
            "--endpoints",
            address,
            "--wait-timeout",
            self.settings.talos_health_wait,
        )
        return True, ""

    async def wait_healthy(self, timeout: float) -> None:
        await poll_until(
            self._health_probe,
            timeout=timeout,
            interval=self.settings.poll_interval_seconds,
            cancel_event=self.cancel_event,
            description="talos cluster health",
        )

    async def fetch_credentials(self) -> ClusterCredentials:
        address = self.bootstrap_address
        path = os.path.join(self.runner.work_dir, KUBECONFIG_FILE)
        await self._talosctl("kubeconfig", "--nodes", address, "--endpoints", address, "--force", path)
        return ClusterCredentials(
            kubeconfig=await _read_text(path),
            talosconfig=self.talosconfig,
            secrets_yaml=self.secrets_yaml,
        )

    # -- existing clusters --------------------------------------------------

    async def use_credentials(self, credentials: ClusterCredentials) -> None:
        if not credentials.talosconfig:
            raise ValueError("talos clusters need a talosconfig to be managed.")
        self.talosconfig = credentials.talosconfig
        await _write_text(os.path.join(self.runner.work_dir, TALOSCONFIG_FILE), credentials.talosconfig)

    async def check_health(self) -> bool:
        try:
            await self._health_probe()
        except CommandError as exc:
            logger.warning("Cluster %s unhealthy: %s", self.spec.name, exc)
            return False
        return True

    async def reset_node(self, address: str, role: NodeRole) -> NodeResetResult:
        try:
            await self._talosctl(
                "reset", "--nodes", address, "--endpoints", address, "--reboot", "--graceful=false"
            )
        except ConnectError as exc:
            if exc.is_disconnect:
                return NodeResetResult(
                    address=address,
                    role=role,
                    outcome=ResetOutcome.EXPECTED_DISCONNECT,
                    detail=str(exc),
                )
            return NodeResetResult(
                address=address, role=role, outcome=ResetOutcome.FAILURE, detail=str(exc)
            )
        except CommandError as exc:
            return NodeResetResult(
                address=address, role=role, outcome=ResetOutcome.FAILURE, detail=str(exc)
            )
        return NodeResetResult(address=address, role=role, outcome=ResetOutcome.SUCCESS)
