#!/usr/bin/env python3
"""
metalkube/cli/cluster.py

Provides a CLI tool to provision, destroy and health-check bare-metal clusters.
Example usage:

    python -m metalkube.cli.cluster provision --spec cluster.yaml --output-dir ./out
    python -m metalkube.cli.cluster health --spec cluster.yaml --state ./out
    python -m metalkube.cli.cluster destroy --spec cluster.yaml --state ./out

Provisioning writes the kubeconfig (and, for talos, the talosconfig and
secrets bundle) plus a cluster-state.json into the output directory, all mode
0600. Ctrl-C during provisioning stops before the next phase or node.
"""

import argparse
import asyncio
import logging
import signal
import sys

from metalkube.deployment.destroy import destroy_cluster
from metalkube.deployment.errors import DestroyError
from metalkube.deployment.orchestrator import check_cluster_health, provision_cluster
from metalkube.models.loader import load_cluster_spec
from metalkube.models.settings import ProvisionerSettings
from metalkube.models.state import ClusterStatus
from metalkube.secrets.cluster_state import load_cluster_state, save_cluster_state


async def _run_provision(args: argparse.Namespace) -> None:
    """
    Handler for the 'provision' subcommand:
      1) Load and validate the cluster spec file
      2) Run every phase (Ctrl-C requests cancellation)
      3) Save state + credentials into --output-dir
    """
    spec = await load_cluster_spec(args.spec)
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    try:
        state = await provision_cluster(
            spec, settings=ProvisionerSettings(), cancel_event=cancel_event
        )
    finally:
        loop.remove_signal_handler(signal.SIGINT)

    written = await save_cluster_state(args.output_dir, state)
    print(f"Cluster '{state.name}' is {state.status.value}; API at {state.api_endpoint}")
    for name, path in written.items():
        print(f"  wrote {name}: {path}")
    if state.status == ClusterStatus.DEGRADED:
        sys.exit(2)


async def _run_destroy(args: argparse.Namespace) -> None:
    spec = await load_cluster_spec(args.spec)
    state = await load_cluster_state(args.state)
    try:
        report = await destroy_cluster(spec, state, settings=ProvisionerSettings())
    except DestroyError as exc:
        for failure in exc.failures:
            print(f"  FAILED {failure.role.value} {failure.address}: {failure.detail}", file=sys.stderr)
        raise
    for result in report.results:
        print(f"  {result.role.value} {result.address}: {result.outcome.value}")
    print(f"Cluster '{spec.name}' destroyed.")


async def _run_health(args: argparse.Namespace) -> None:
    spec = await load_cluster_spec(args.spec)
    state = await load_cluster_state(args.state)
    status = await check_cluster_health(
        spec, state.credentials, settings=ProvisionerSettings()
    )
    print(f"Cluster '{spec.name}' is {status.value}")
    if status != ClusterStatus.READY:
        sys.exit(2)


def main() -> None:
    """
    Entry point for the 'cluster' CLI utility.
    Subcommands:
      - provision: create or converge a cluster from a spec file
      - destroy: reset every node recorded in a state file
      - health: probe an existing cluster once
    """
    parser = argparse.ArgumentParser(
        prog="metalkube.cli.cluster",
        description="CLI for bootstrapping k3s and talos clusters on bare metal.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    prov = subparsers.add_parser("provision", help="Provision a cluster.")
    prov.add_argument("--spec", required=True, help="Path to the cluster spec (YAML/JSON).")
    prov.add_argument(
        "--output-dir",
        default="./cluster-out",
        help="Where to write credentials and state (default: ./cluster-out).",
    )
    prov.set_defaults(func=_run_provision)

    for name, handler, help_text in (
        ("destroy", _run_destroy, "Reset every node of a cluster."),
        ("health", _run_health, "Check cluster health once."),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--spec", required=True, help="Path to the cluster spec (YAML/JSON).")
        sub.add_argument(
            "--state",
            required=True,
            help="cluster-state.json, or the provision output directory.",
        )
        sub.set_defaults(func=handler)

    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(args.func(args))
    except Exception as exc:
        print(f"Cluster CLI error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
