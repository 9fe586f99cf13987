import os
from typing import Any, Dict, List, Optional, Tuple

import pytest

from metalkube.deployment.driver import NodeLifecycleDriver, NodeResetResult, ResetOutcome
from metalkube.models.cluster import ClusterKind, ClusterSpec, NodeRole
from metalkube.models.settings import ProvisionerSettings
from metalkube.models.state import ClusterCredentials
from metalkube.models.ssh import SSHCredentials
from metalkube.utils.async_command_runner import ConnectError, ConnectFailure
from metalkube.utils.async_poll import PollTimeoutError
from metalkube.utils.ssh import RemoteExecutor, RemoteSession
from metalkube.utils.talosctl import TalosctlRunner

# ----------------- Fake SSH -----------------


class FakeSession(RemoteSession):
    def __init__(self, executor: "FakeExecutor", host: str):
        self.executor = executor
        self.host = host

    async def run(self, command: str) -> str:
        self.executor.log.append((self.host, command))
        return self.executor.respond(self.host, command)

    async def close(self) -> None:
        pass


class FakeExecutor(RemoteExecutor):
    """
    Responses map a substring (or (host, substring)) to an output string, an
    exception to raise, or a list consumed one item per call (last one sticks).
    Unmatched commands return "".
    """

    def __init__(self, responses: Optional[Dict[Any, Any]] = None):
        self.responses: Dict[Any, Any] = responses or {}
        self.log: List[Tuple[str, str]] = []
        self.connect_failures: Dict[str, int] = {}

    async def connect(self, host: str, port: int, credentials: SSHCredentials) -> RemoteSession:
        if self.connect_failures.get(host, 0) > 0:
            self.connect_failures[host] -= 1
            raise ConnectError("refused", ConnectFailure.REFUSED, 255)
        return FakeSession(self, host)

    def respond(self, host: str, command: str) -> str:
        for key, value in self.responses.items():
            if isinstance(key, tuple):
                matched = key[0] == host and key[1] in command
            else:
                matched = key in command
            if not matched:
                continue
            if isinstance(value, list):
                value = value.pop(0) if len(value) > 1 else value[0]
            if isinstance(value, Exception):
                raise value
            return value
        return ""

    def commands(self, host: Optional[str] = None) -> List[str]:
        return [c for h, c in self.log if host is None or h == host]


# ----------------- Fake talosctl -----------------


class FakeTalosctl(TalosctlRunner):
    """Records every invocation and fakes the files talosctl would write."""

    def __init__(self, work_dir: str, responses: Optional[Dict[str, Any]] = None):
        super().__init__(work_dir)
        self.calls: List[Tuple[str, ...]] = []
        self.talosconfigs: List[Optional[str]] = []
        self.patches: Dict[str, str] = {}
        self.responses: Dict[str, Any] = responses or {}

    def _write(self, relpath: str, content: str) -> None:
        path = os.path.join(self.work_dir, relpath)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            f.write(content)

    async def run(self, *args: str, talosconfig: Optional[str] = None) -> str:
        self.calls.append(args)
        self.talosconfigs.append(talosconfig)

        response = self.responses.get(args[0])
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, Exception):
            raise response

        if args[:2] == ("gen", "secrets"):
            self._write(args[args.index("-o") + 1], "cluster:\n  id: generated\n")
        elif args[:2] == ("gen", "config"):
            out = args[args.index("--output-dir") + 1]
            self._write(os.path.join(out, "controlplane.yaml"), "type: controlplane\n")
            self._write(os.path.join(out, "worker.yaml"), "type: worker\n")
            self._write(os.path.join(out, "talosconfig"), "context: generated\n")
        elif args[:2] == ("machineconfig", "patch"):
            patch_path = args[args.index("--patch") + 1].lstrip("@")
            with open(patch_path) as f:
                content = f.read()
            output = args[args.index("--output") + 1]
            self.patches[os.path.basename(output)] = content
            self._write(output, content)
        elif args[0] == "kubeconfig":
            kubeconfig = self.responses.get(
                "kubeconfig-content",
                "clusters:\n- cluster:\n    server: https://127.0.0.1:6443\n  name: demo\n",
            )
            self._write(args[-1], kubeconfig)

        return response if isinstance(response, str) else ""

    def verbs(self) -> List[str]:
        return [" ".join(c[:2]) if c[0] in ("gen", "machineconfig") else c[0] for c in self.calls]


# ----------------- Recording driver -----------------


class RecordingDriver(NodeLifecycleDriver):
    """Records the order of lifecycle calls; behavior is set by attributes."""

    def __init__(self, spec: ClusterSpec, settings: Optional[ProvisionerSettings] = None):
        super().__init__(spec, settings or ProvisionerSettings())
        self.calls: List[str] = []
        self.bootstrapped = False
        self.healthy = True
        self.fail: Dict[str, Exception] = {}
        self.reset_outcomes: Dict[str, ResetOutcome] = {}
        self.on_call = None
        self.closed = False
        self.loaded_credentials: Optional[ClusterCredentials] = None

    async def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.on_call is not None:
            self.on_call(name)
        if name in self.fail:
            raise self.fail[name]

    async def close(self) -> None:
        self.closed = True

    async def generate_secrets(self) -> None:
        await self._record("generate_secrets")

    async def generate_config(self) -> None:
        await self._record("generate_config")

    async def apply_control_plane_node(self, node) -> None:
        await self._record(f"apply_control_plane:{node.address}")

    async def apply_worker_node(self, node) -> None:
        await self._record(f"apply_worker:{node.address}")

    async def is_bootstrapped(self) -> bool:
        await self._record("is_bootstrapped")
        return self.bootstrapped

    async def bootstrap(self) -> None:
        await self._record("bootstrap")

    async def wait_api_ready(self, timeout: float) -> None:
        await self._record("wait_api_ready")

    async def wait_healthy(self, timeout: float) -> None:
        await self._record("wait_healthy")
        if not self.healthy:
            raise PollTimeoutError("cluster health", timeout, 3, last_detail="etcd not ready")

    async def fetch_credentials(self) -> ClusterCredentials:
        await self._record("fetch_credentials")
        return ClusterCredentials(
            kubeconfig="clusters:\n- cluster:\n    server: https://127.0.0.1:6443\n  name: demo\n",
            talosconfig="context: demo\n",
        )

    async def use_credentials(self, credentials: ClusterCredentials) -> None:
        self.loaded_credentials = credentials

    async def check_health(self) -> bool:
        await self._record("check_health")
        return self.healthy

    async def reset_node(self, address: str, role: NodeRole) -> NodeResetResult:
        await self._record(f"reset:{address}")
        outcome = self.reset_outcomes.get(address, ResetOutcome.SUCCESS)
        detail = "disk full" if outcome == ResetOutcome.FAILURE else ""
        return NodeResetResult(address=address, role=role, outcome=outcome, detail=detail)


# ----------------- Fixtures -----------------


@pytest.fixture
def fast_settings(tmp_path) -> ProvisionerSettings:
    return ProvisionerSettings(poll_interval_seconds=0.01, work_dir_parent=str(tmp_path))


def _timeouts() -> Dict[str, float]:
    return {
        "node_install": 0.2,
        "bootstrap_settle": 0,
        "api_ready": 0.2,
        "node_ready": 0.2,
        "health": 0.2,
    }


@pytest.fixture
def k3s_spec() -> ClusterSpec:
    return ClusterSpec(
        kind=ClusterKind.K3S,
        name="demo",
        k3s_version="v1.30.2+k3s1",
        control_plane=[{"address": "10.0.0.1"}],
        workers=[{"address": "10.0.0.2"}, {"address": "10.0.0.3"}],
        timeouts=_timeouts(),
    )


@pytest.fixture
def talos_spec() -> ClusterSpec:
    return ClusterSpec(
        kind=ClusterKind.TALOS,
        name="demo",
        endpoint="https://10.0.0.1:6443",
        control_plane=[{"address": "10.0.0.1"}],
        workers=[{"address": "10.0.0.2"}],
        allow_scheduling_on_control_plane=True,
        timeouts=_timeouts(),
    )


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()

