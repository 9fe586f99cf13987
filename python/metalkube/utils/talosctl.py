"""
metalkube/utils/talosctl.py

Runs the `talosctl` binary as a subprocess inside a working directory. Every
invocation is stateless: the only identity the tool sees is the talosconfig
path passed explicitly with `--talosconfig`, never the process environment.
That is what makes concurrent invocations against different nodes safe.

Failures are classified here, once, into typed errors so that callers never
inspect error text themselves.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from metalkube.utils.async_command_runner import (
    CommandError,
    ConnectError,
    ConnectFailure,
    run_command,
)

logger = logging.getLogger(__name__)

# talosctl reads these when set; stripping them keeps the profile explicit.
_AMBIENT_TALOS_VARS = ["TALOSCONFIG", "TALOS_HOME"]

_TIMEOUT_MARKERS = ("context deadline exceeded", "deadlineexceeded", "i/o timeout")
_REFUSED_MARKERS = ("connection refused", "connection reset by peer", "error reading from server: eof")
_UNREACHABLE_MARKERS = ("no route to host", "network is unreachable", "host is down")


def classify_talosctl_failure(return_code: int, output: str) -> Optional[CommandError]:
    """Turn talosctl's gRPC transport failures into ConnectError kinds."""
    low = output.lower()
    if any(marker in low for marker in _TIMEOUT_MARKERS):
        kind = ConnectFailure.TIMEOUT
    elif any(marker in low for marker in _REFUSED_MARKERS):
        kind = ConnectFailure.REFUSED
    elif any(marker in low for marker in _UNREACHABLE_MARKERS):
        kind = ConnectFailure.UNREACHABLE
    else:
        return None
    return ConnectError(f"talosctl could not reach the node ({kind.value}).", kind, return_code, output)


class TalosctlRunner:
    """Invokes talosctl against a fixed working directory."""

    def __init__(self, work_dir: str, binary: str = "talosctl") -> None:
        self.work_dir = work_dir
        self.binary = binary

    async def run(self, *args: str, talosconfig: Optional[str] = None) -> str:
        """
        Run `talosctl [--talosconfig PATH] ARGS...` and return combined output.

        Args:
            *args: Verb plus positional/flag arguments.
            talosconfig: Optional admin profile path.

        Raises:
            ConnectError: Node unreachable, or binary missing (NOT_FOUND).
            CommandError: Any other non-zero exit, with output attached.
        """
        command: List[str] = [self.binary]
        if talosconfig:
            command += ["--talosconfig", talosconfig]
        command += list(args)

        logger.debug("talosctl %s", args[0] if args else "")
        try:
            return await run_command(
                command,
                cwd=self.work_dir,
                combine_output=True,
                suppress_env_vars=_AMBIENT_TALOS_VARS,
                error_classifier=classify_talosctl_failure,
            )
        except ConnectError:
            raise
        except CommandError as exc:
            raise CommandError(
                f"talosctl {' '.join(args[:2])} failed: {exc.output or exc}",
                exc.return_code,
                exc.output,
            ) from exc
