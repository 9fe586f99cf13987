"""
metalkube/utils/async_command_runner.py

Provides a reusable asynchronous command runner. Optionally, allows passing a
custom error_classifier callback that inspects the exit code and captured
output and returns a more specific CommandError subclass (e.g. a ConnectError
when the failure is the transport rather than the command itself).

There is deliberately no retry here: callers that need to wait for something
wrap their calls with metalkube.utils.async_poll.poll_until.

Usage example:
    from metalkube.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["talosctl", "version", "--client"])
        print(output)
    except CommandError as err:
        print(f"Command failed: {err} (output: {err.output})")
"""

from __future__ import annotations

import os
import asyncio
from enum import Enum
from typing import Callable, Dict, List, Optional


class ConnectFailure(str, Enum):
    """Why a remote endpoint or local tool could not be reached."""

    TIMEOUT = "timeout"
    REFUSED = "refused"
    UNREACHABLE = "unreachable"
    AUTH = "auth"
    NOT_FOUND = "not_found"


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        output (str): Whatever output was captured before the failure.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, output: str = ""
    ) -> None:
        """
        Initialize a CommandError.

        Args:
            message (str): The error message describing the command failure.
            return_code (Optional[int]): The exit code if known.
            output (str): Captured output, kept for diagnostics.
        """
        super().__init__(message)
        self.return_code = return_code
        self.output = output


class ConnectError(CommandError):
    """The endpoint (or the tool that reaches it) could not be contacted.

    Attributes:
        kind (ConnectFailure): Classified reason of the connectivity failure.
    """

    def __init__(
        self,
        message: str,
        kind: ConnectFailure,
        return_code: Optional[int] = None,
        output: str = "",
    ) -> None:
        super().__init__(message, return_code, output)
        self.kind = kind

    @property
    def is_disconnect(self) -> bool:
        """True when the peer went away (timed out or refused) rather than being misconfigured."""
        return self.kind in (ConnectFailure.TIMEOUT, ConnectFailure.REFUSED)


ErrorClassifier = Callable[[int, str], Optional[CommandError]]


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    combine_output: bool = False,
    timeout: Optional[float] = None,
    suppress_env_vars: Optional[List[str]] = None,
    error_classifier: Optional[ErrorClassifier] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, exactly once.

    If the command fails (return code not in successful_return_codes), we raise
    CommandError. If `error_classifier` is given, it receives the return code and
    the captured output; if it returns an exception, that one is raised instead.

    When `sensitive=True`, we omit the command and its output from the error
    message. The output is still attached to the exception as `.output`.

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error message.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        input_data (Optional[str]):
            If provided, passed to stdin.
        successful_return_codes (Optional[List[int]]):
            Which return codes won't be treated as errors. Defaults to [0].
        combine_output (bool):
            If True, stderr is merged into stdout and returned with it.
        timeout (Optional[float]):
            Seconds to wait before killing the process; raises ConnectError(TIMEOUT).
        suppress_env_vars (Optional[List[str]]):
            A list of environment variables to remove from the environment.
        error_classifier (Optional[ErrorClassifier]):
            Callback mapping (return_code, output) to a specific CommandError.

    Returns:
        str: The captured stdout (or combined output) of the command on success.

    Raises:
        ConnectError: If the executable is missing, the timeout expires, or the
            classifier reports a connectivity failure.
        CommandError: If the command returns a code not in `successful_return_codes`.
    """
    ok_codes = successful_return_codes if successful_return_codes is not None else [0]

    # Build environment
    if env is None and not suppress_env_vars:
        proc_env = None
    else:
        proc_env = os.environ.copy()
        if suppress_env_vars:
            for var in suppress_env_vars:
                proc_env.pop(var, None)
        if env:
            proc_env.update(env)

    # Decide how we pass stdin
    stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL
    stderr = asyncio.subprocess.STDOUT if combine_output else asyncio.subprocess.PIPE

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=stderr,
            env=proc_env,
            cwd=cwd,
        )
    except FileNotFoundError as exc:
        raise ConnectError(
            f"Executable not found: {command[0]}", ConnectFailure.NOT_FOUND
        ) from exc

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(input=input_data.encode() if input_data else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise ConnectError(
            f"Command timed out after {timeout}s.", ConnectFailure.TIMEOUT
        ) from exc

    stdout_str = stdout_bytes.decode(errors="replace").strip()
    stderr_str = (stderr_bytes or b"").decode(errors="replace").strip()
    captured = stdout_str if combine_output else "\n".join(
        part for part in (stdout_str, stderr_str) if part
    )

    # Check return code
    if proc.returncode not in ok_codes:
        return_code = proc.returncode if proc.returncode is not None else -1
        if error_classifier:
            classified = error_classifier(return_code, captured)
            if classified is not None:
                raise classified

        detail = ""
        if not sensitive:
            detail = f"\nCommand: {' '.join(command)}\nOutput: {captured}"

        raise CommandError(
            f"Command failed with return code {proc.returncode}.{detail}",
            proc.returncode,
            captured,
        )

    return stdout_str
