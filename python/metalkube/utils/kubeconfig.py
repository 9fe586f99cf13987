"""
metalkube/utils/kubeconfig.py

Kubeconfigs read back from a node point at the API through the node's own
loopback address. rewrite_loopback_server swaps that host for an address the
caller can actually reach, leaving every other field untouched.
"""

import logging
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import yaml

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1")


def _rewrite_url(server: str, address: str) -> str:
    parts = urlsplit(server)
    if parts.hostname not in LOOPBACK_HOSTS:
        return server
    host = f"[{address}]" if ":" in address else address
    netloc = f"{host}:{parts.port}" if parts.port else host
    return urlunsplit(parts._replace(netloc=netloc))


def rewrite_loopback_server(kubeconfig: str, address: str) -> str:
    """
    Replace a loopback host in every `clusters[].cluster.server` URL with `address`.

    Args:
        kubeconfig (str): The kubeconfig YAML as read from the node.
        address (str): The externally reachable control-node address.

    Returns:
        str: The rewritten kubeconfig; unchanged if no server uses loopback.
    """
    try:
        doc: Any = yaml.safe_load(kubeconfig)
    except yaml.YAMLError as exc:
        logger.warning("Kubeconfig is not valid YAML (%s); rewriting textually.", exc)
        return kubeconfig.replace("https://127.0.0.1:", f"https://{address}:")

    if not isinstance(doc, dict):
        return kubeconfig

    changed = False
    for entry in doc.get("clusters") or []:
        cluster = entry.get("cluster") if isinstance(entry, dict) else None
        if not isinstance(cluster, dict) or not isinstance(cluster.get("server"), str):
            continue
        rewritten = _rewrite_url(cluster["server"], address)
        if rewritten != cluster["server"]:
            cluster["server"] = rewritten
            changed = True

    if not changed:
        return kubeconfig
    return yaml.safe_dump(doc, sort_keys=False)
