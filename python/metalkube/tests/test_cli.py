import json
import sys

import pytest

from metalkube.cli import cluster as cli
from metalkube.cli import metalkubectl
from metalkube.models.cluster import ClusterKind
from metalkube.models.state import ClusterCredentials, ClusterState, ClusterStatus

SPEC_YAML = """
kind: talos
name: lab
endpoint: https://10.0.0.1:6443
control_plane:
  - address: 10.0.0.1
"""


def _state(status=ClusterStatus.READY):
    return ClusterState(
        kind=ClusterKind.TALOS,
        name="lab",
        status=status,
        api_endpoint="https://10.0.0.1:6443",
        control_plane_addresses=["10.0.0.1"],
        credentials=ClusterCredentials(kubeconfig="kube", talosconfig="talos"),
    )


@pytest.fixture
def spec_file(tmp_path):
    path = tmp_path / "cluster.yaml"
    path.write_text(SPEC_YAML)
    return path


def _main(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["metalkube.cli.cluster", *argv])
    cli.main()


def test_provision_writes_outputs(monkeypatch, tmp_path, spec_file, capsys):
    async def fake_provision(spec, **kwargs):
        assert spec.name == "lab"
        assert kwargs["cancel_event"] is not None
        return _state()

    monkeypatch.setattr(cli, "provision_cluster", fake_provision)
    out = tmp_path / "out"

    _main(monkeypatch, "provision", "--spec", str(spec_file), "--output-dir", str(out))

    assert "is ready" in capsys.readouterr().out
    assert (out / "kubeconfig").read_text() == "kube"
    assert json.loads((out / "cluster-state.json").read_text())["status"] == "ready"


def test_degraded_provision_exits_2(monkeypatch, tmp_path, spec_file):
    async def fake_provision(spec, **kwargs):
        return _state(ClusterStatus.DEGRADED)

    monkeypatch.setattr(cli, "provision_cluster", fake_provision)

    with pytest.raises(SystemExit) as excinfo:
        _main(monkeypatch, "provision", "--spec", str(spec_file), "--output-dir", str(tmp_path / "o"))
    assert excinfo.value.code == 2


def test_errors_exit_1(monkeypatch, tmp_path, spec_file, capsys):
    with pytest.raises(SystemExit) as excinfo:
        _main(monkeypatch, "destroy", "--spec", str(spec_file), "--state", str(tmp_path / "missing.json"))
    assert excinfo.value.code == 1
    assert "No cluster state" in capsys.readouterr().err


def test_health_reads_saved_state(monkeypatch, tmp_path, spec_file, capsys):
    (tmp_path / "cluster-state.json").write_text(_state().model_dump_json())
    seen = {}

    async def fake_health(spec, credentials, **kwargs):
        seen["talosconfig"] = credentials.talosconfig
        return ClusterStatus.READY

    monkeypatch.setattr(cli, "check_cluster_health", fake_health)

    _main(monkeypatch, "health", "--spec", str(spec_file), "--state", str(tmp_path))

    assert seen == {"talosconfig": "talos"}
    assert "is ready" in capsys.readouterr().out


def test_metalkubectl_runs_cluster_tool_in_process(monkeypatch, tmp_path, spec_file, capsys):
    (tmp_path / "cluster-state.json").write_text(_state().model_dump_json())

    async def fake_health(spec, credentials, **kwargs):
        return ClusterStatus.READY

    monkeypatch.setattr(cli, "check_cluster_health", fake_health)
    monkeypatch.setattr(
        sys,
        "argv",
        ["metalkubectl", "cluster", "health", "--spec", str(spec_file), "--state", str(tmp_path)],
    )

    metalkubectl.main()

    assert "is ready" in capsys.readouterr().out


def test_metalkubectl_rejects_unknown_tool(monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["metalkubectl", "vault"])
    with pytest.raises(SystemExit) as excinfo:
        metalkubectl.main()
    assert excinfo.value.code == 1
    assert "Usage: metalkubectl {cluster}" in capsys.readouterr().err
