"""
metalkube/models/loader.py

Loads ClusterSpec documents (YAML or JSON) from disk.
"""

import aiofiles
import yaml
from pydantic import ValidationError

from metalkube.models.cluster import ClusterSpec


async def load_cluster_spec(path: str) -> ClusterSpec:
    """
    Read a cluster spec file. JSON is accepted too, being a subset of YAML.

    Raises:
        ValueError: If the file is not a mapping or fails validation.
    """
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(await f.read())
    if not isinstance(raw, dict):
        raise ValueError(f"Cluster spec '{path}' must be a mapping.")
    try:
        return ClusterSpec.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid cluster spec '{path}': {e}") from e
