"""
metalkube/utils/ephemeral_file.py

Provides an async context manager for ephemeral files in `/dev/shm` (or the
system temp directory where `/dev/shm` does not exist). Several file names are
reserved inside one private directory; callers write the files themselves.
The directory and everything in it are removed on exit.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List, Optional


def default_parent_dir() -> str:
    """Prefer the memory-backed /dev/shm so key material never touches a disk."""
    return "/dev/shm" if os.path.isdir("/dev/shm") else tempfile.gettempdir()


@asynccontextmanager
async def ephemeral_manager(
    file_names: List[str],
    *,
    prefix: str = "ephemeral-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Reserve ephemeral file paths inside a fresh 0700 directory.

    Args:
        file_names: The ephemeral filenames sharing one directory.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to place the ephemeral directory; defaults to
            `default_parent_dir()`.

    Yields:
        Dict[str, str]: file name -> ephemeral path.

    Raises:
        ValueError: If no file names are given.
    """
    if not file_names:
        raise ValueError("ephemeral_manager needs at least one file name.")

    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir or default_parent_dir(), prefix=prefix)
    os.chmod(ephemeral_dir, 0o700)

    try:
        yield {name: os.path.join(ephemeral_dir, name) for name in file_names}
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)
