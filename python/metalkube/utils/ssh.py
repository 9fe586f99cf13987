"""
metalkube/utils/ssh.py

The remote executor used by the k3s flavor. A session is an OpenSSH client
configuration (ephemeral private key + known_hosts in /dev/shm) that every
`run` reuses; each `run` executes one command to completion and returns its
combined output.

  - RemoteSession / RemoteExecutor: the minimal contract the installers consume.
  - OpenSSHExecutor: the real implementation over the `ssh` binary (and
    `sshpass -e` for password authentication).
  - classify_ssh_failure: maps the SSH client's own failures (exit code 255)
    onto typed ConnectError kinds.

Known host keys are trusted on first use unless the credentials carry
`host_keys`, in which case checking is strict.
"""

from __future__ import annotations

import os
import shlex
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from types import TracebackType
from typing import Dict, List, Optional, Type

import aiofiles

from metalkube.models.settings import ProvisionerSettings
from metalkube.models.ssh import SSHCredentials
from metalkube.utils.async_command_runner import (
    CommandError,
    ConnectError,
    ConnectFailure,
    run_command,
)
from metalkube.utils.ephemeral_file import ephemeral_manager

SSH_CLIENT_FAILURE = 255


class RemoteSession(ABC):
    """An open command channel to one host."""

    host: str

    @abstractmethod
    async def run(self, command: str) -> str:
        """
        Run one shell command remotely and return its combined output.

        Raises:
            ConnectError: If the host could not be reached.
            CommandError: If the command exited non-zero (output attached).
        """

    @abstractmethod
    async def close(self) -> None:
        """Release anything the session holds. Safe to call twice."""

    async def __aenter__(self) -> RemoteSession:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.close()


class RemoteExecutor(ABC):
    """Opens RemoteSessions. Passed explicitly into drivers so tests can swap it."""

    @abstractmethod
    async def connect(
        self, host: str, port: int, credentials: SSHCredentials
    ) -> RemoteSession:
        """
        Open a session to host:port.

        Raises:
            ConnectError: On timeout, refusal, unreachable host or auth failure.
        """


def classify_ssh_failure(return_code: int, output: str) -> Optional[CommandError]:
    """
    Map an `ssh` exit status onto a typed error.

    OpenSSH reserves 255 for its own failures; every other non-zero code is the
    remote command's.
    """
    if return_code != SSH_CLIENT_FAILURE:
        return None

    low = output.lower()
    if "connection refused" in low:
        kind = ConnectFailure.REFUSED
    elif "timed out" in low:
        kind = ConnectFailure.TIMEOUT
    elif "permission denied" in low or "authentication" in low:
        kind = ConnectFailure.AUTH
    elif "could not resolve" in low or "no route to host" in low or "unreachable" in low:
        kind = ConnectFailure.UNREACHABLE
    elif "closed by remote host" in low or "connection reset" in low:
        # The peer dropped the channel mid-command (e.g. a reboot).
        kind = ConnectFailure.REFUSED
    else:
        kind = ConnectFailure.UNREACHABLE
    return ConnectError(f"SSH connection failed ({kind.value}).", kind, return_code, output)


class OpenSSHSession(RemoteSession):
    """A RemoteSession backed by the OpenSSH client binary."""

    def __init__(
        self,
        host: str,
        port: int,
        credentials: SSHCredentials,
        settings: ProvisionerSettings,
    ) -> None:
        self.host = host
        self.port = port
        self.credentials = credentials
        self.settings = settings
        self._stack = AsyncExitStack()
        self._paths: Dict[str, str] = {}

    async def open(self) -> None:
        """Materialize key/known_hosts files, then prove the channel works."""
        self._paths = await self._stack.enter_async_context(
            ephemeral_manager(["ssh_known_hosts", "ssh_idkey"], prefix="sshkh-")
        )

        # Write known_hosts (may be empty => TOFU populates it)
        async with aiofiles.open(self._paths["ssh_known_hosts"], "w", encoding="utf-8") as fkh:
            for line in self.credentials.host_keys or []:
                await fkh.write(line + "\n")

        # Write private key
        if self.credentials.private_key:
            async with aiofiles.open(self._paths["ssh_idkey"], "wb") as fpk:
                key = self.credentials.private_key
                await fpk.write((key if key.endswith("\n") else key + "\n").encode("utf-8"))
            os.chmod(self._paths["ssh_idkey"], 0o600)

        try:
            await self.run("true")
        except ConnectError:
            await self.close()
            raise
        except CommandError as exc:
            await self.close()
            raise ConnectError(
                f"SSH channel to {self.host}:{self.port} is not usable: {exc}",
                ConnectFailure.UNREACHABLE,
                exc.return_code,
                exc.output,
            ) from exc

    def _build_ssh_command(self, remote_command: str) -> List[str]:
        creds = self.credentials
        strict = "yes" if creds.host_keys else "accept-new"
        ssh_cmd = [
            self.settings.ssh_binary,
            "-p",
            str(self.port),
            "-o",
            f"StrictHostKeyChecking={strict}",
            "-o",
            f"UserKnownHostsFile={self._paths['ssh_known_hosts']}",
            "-o",
            "GlobalKnownHostsFile=/dev/null",
            "-o",
            f"ConnectTimeout={self.settings.ssh_connect_timeout_seconds}",
            "-o",
            "LogLevel=ERROR",
        ]
        if creds.private_key:
            ssh_cmd += ["-i", self._paths["ssh_idkey"], "-o", "IdentitiesOnly=yes"]
        if creds.password and not creds.private_key:
            ssh_cmd += [
                "-o",
                "BatchMode=no",
                "-o",
                "PreferredAuthentications=password,keyboard-interactive",
                "-o",
                "NumberOfPasswordPrompts=1",
            ]
            ssh_cmd = [self.settings.sshpass_binary, "-e"] + ssh_cmd
        else:
            ssh_cmd += ["-o", "BatchMode=yes"]

        ssh_cmd += [f"{creds.user}@{self.host}", remote_command]
        return ssh_cmd

    async def run(self, command: str) -> str:
        if not self._paths:
            raise ConnectError(
                f"Session to {self.host} is closed.", ConnectFailure.UNREACHABLE
            )
        env = None
        if self.credentials.password and not self.credentials.private_key:
            env = {"SSHPASS": self.credentials.password}

        return await run_command(
            self._build_ssh_command(command),
            sensitive=True,
            env=env,
            combine_output=True,
            error_classifier=classify_ssh_failure,
        )

    async def close(self) -> None:
        self._paths = {}
        await self._stack.aclose()


class OpenSSHExecutor(RemoteExecutor):
    """RemoteExecutor that spawns the local `ssh` client per command."""

    def __init__(self, settings: Optional[ProvisionerSettings] = None) -> None:
        self.settings = settings or ProvisionerSettings()

    async def connect(
        self, host: str, port: int, credentials: SSHCredentials
    ) -> RemoteSession:
        session = OpenSSHSession(host, port, credentials, self.settings)
        await session.open()
        return session


def env_command(env: Dict[str, Optional[str]], command: str) -> str:
    """
    Prefix `command` with KEY=VALUE assignments, shell-quoted.
    Empty or missing values are omitted rather than passed as empty strings.
    """
    assignments = [f"{k}={shlex.quote(v)}" for k, v in env.items() if v]
    return " ".join(assignments + [command])
