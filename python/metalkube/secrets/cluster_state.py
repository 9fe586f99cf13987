"""
metalkube/secrets/cluster_state.py

Functions for saving/loading a ClusterState to/from a local output directory.
The CLI calls these after provisioning so that a later `destroy` or `health`
run can find the cluster's addresses and credentials again.

Layout (every file mode 0600):
    <dir>/cluster-state.json   the full ClusterState, credentials included
    <dir>/kubeconfig           admin kubeconfig
    <dir>/talosconfig          talos admin profile (talos only)
    <dir>/secrets.yaml         talos secrets bundle (talos only)
"""

from __future__ import annotations

import os
from typing import Dict

import aiofiles
from pydantic import ValidationError

from metalkube.models.state import ClusterState

STATE_FILE = "cluster-state.json"


async def _write_private(path: str, content: str) -> None:
    # Create with 0600 up front so secrets are never briefly world-readable.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.close(fd)
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(content)
    os.chmod(path, 0o600)


async def save_cluster_state(output_dir: str, state: ClusterState) -> Dict[str, str]:
    """
    Save the given ClusterState and its credential files into output_dir.

    Args:
        output_dir: Directory to write to; created (0700) if missing.
        state: The ClusterState returned by provisioning.

    Returns:
        Dict[str, str]: Written file name -> path.
    """
    os.makedirs(output_dir, mode=0o700, exist_ok=True)
    creds = state.credentials
    files = {STATE_FILE: state.model_dump_json(indent=2)}
    if creds.kubeconfig:
        files["kubeconfig"] = creds.kubeconfig
    if creds.talosconfig:
        files["talosconfig"] = creds.talosconfig
    if creds.secrets_yaml:
        files["secrets.yaml"] = creds.secrets_yaml

    written = {}
    for name, content in files.items():
        path = os.path.join(output_dir, name)
        await _write_private(path, content)
        written[name] = path
    return written


async def load_cluster_state(path: str) -> ClusterState:
    """
    Load a ClusterState previously written by save_cluster_state.

    Args:
        path: The state JSON file, or the directory containing it.

    Raises:
        RuntimeError if missing or invalid.
    """
    if os.path.isdir(path):
        path = os.path.join(path, STATE_FILE)
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            raw = await f.read()
    except FileNotFoundError as e:
        raise RuntimeError(f"No cluster state at '{path}'.") from e
    try:
        return ClusterState.model_validate_json(raw)
    except ValidationError as ve:
        raise RuntimeError(f"Failed to parse ClusterState from '{path}': {ve}") from ve
