"""Remote command channel to a Proxmox node over SSH."""

import logging
import os
import shlex
import socket
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import paramiko

from pvefleet.config import ConnectionSettings
from pvefleet.models import (
    CommandMode,
    CommandResult,
    ExecutionMode,
    HypervisorConnectionError,
    RemoteCommandError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 32768
_POLL_INTERVAL = 0.05


class RemoteChannel:
    """Runs shell commands on the Proxmox node.

    One SSH connection is opened lazily and reused for every command; paramiko
    multiplexes a channel per command, so worker threads can share it.
    """

    def __init__(
        self,
        settings: ConnectionSettings,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self.settings = settings
        self._client_factory = client_factory
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    def __enter__(self) -> "RemoteChannel":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _connect_kwargs(self, client: paramiko.SSHClient) -> Dict[str, Any]:
        """Translate the ssh(1)-style option string into paramiko arguments."""
        kwargs: Dict[str, Any] = {
            "hostname": self.settings.host,
            "port": self.settings.port,
            "username": self.settings.user,
        }
        policy: paramiko.MissingHostKeyPolicy = paramiko.AutoAddPolicy()

        for flag, value in self.settings.option_pairs():
            if flag == "-i" and value:
                kwargs["key_filename"] = os.path.expanduser(value)
                continue
            if flag != "-o" or not value:
                logger.warning(f"Ignoring unsupported SSH option: {flag}")
                continue

            key, _, opt = value.partition("=")
            key = key.strip().lower()
            opt = opt.strip()
            if key == "identityfile":
                kwargs["key_filename"] = os.path.expanduser(opt)
            elif key == "stricthostkeychecking":
                if opt.lower() == "yes":
                    policy = paramiko.RejectPolicy()
                else:
                    policy = paramiko.AutoAddPolicy()
            elif key == "connecttimeout":
                kwargs["timeout"] = self.settings.connect_timeout()
            elif key == "userknownhostsfile":
                if opt != "/dev/null":
                    client.load_host_keys(os.path.expanduser(opt))
            else:
                logger.warning(f"Ignoring unsupported SSH option: -o {value}")

        client.set_missing_host_key_policy(policy)
        return kwargs

    def connect(self) -> paramiko.SSHClient:
        """Open the SSH connection if it is not open yet."""
        with self._lock:
            if self._client is not None:
                return self._client

            client = self._client_factory()
            try:
                client.load_system_host_keys()
            except OSError:
                logger.debug("No system known_hosts file available")
            try:
                kwargs = self._connect_kwargs(client)
            except ValidationError as e:
                client.close()
                raise HypervisorConnectionError(f"Cannot connect to {self.settings.target}: {e}") from e

            logger.info(f"🔌 Connecting to {self.settings.target}:{self.settings.port}")
            try:
                client.connect(**kwargs)
            except (paramiko.SSHException, OSError) as e:
                client.close()
                raise HypervisorConnectionError(
                    f"Cannot connect to {self.settings.target}:{self.settings.port}: {e}"
                ) from e

            self._client = client
            return client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    @staticmethod
    def _collect(channel: paramiko.Channel, command: str, timeout: Optional[float]) -> Tuple[str, str, int]:
        """Drain stdout/stderr until the command exits or the deadline passes.

        The deadline bounds total runtime; paramiko's own timeout only bounds
        each read, so a command that keeps printing would never hit it.

        Raises:
            RemoteCommandError: With exit code -1 when the deadline passes
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        out: List[bytes] = []
        err: List[bytes] = []

        while True:
            progressed = False
            if channel.recv_ready():
                out.append(channel.recv(_CHUNK_SIZE))
                progressed = True
            if channel.recv_stderr_ready():
                err.append(channel.recv_stderr(_CHUNK_SIZE))
                progressed = True
            if not progressed and channel.exit_status_ready():
                break
            if deadline is not None and time.monotonic() >= deadline:
                raise RemoteCommandError(
                    command,
                    -1,
                    stdout=b"".join(out).decode(errors="replace").strip(),
                    stderr=f"timed out after {timeout}s",
                )
            if not progressed:
                time.sleep(_POLL_INTERVAL)

        return (
            b"".join(out).decode(errors="replace").strip(),
            b"".join(err).decode(errors="replace").strip(),
            channel.recv_exit_status(),
        )

    def execute(
        self,
        command: str,
        mode: CommandMode = CommandMode.READ,
        execution: ExecutionMode = ExecutionMode.APPLY,
        check: bool = True,
    ) -> CommandResult:
        """Run a command on the node.

        Mutations under plan mode are not executed; they come back as planned,
        successful results.

        Raises:
            RemoteCommandError: Non-zero exit (when check is set) or timeout
            HypervisorConnectionError: The SSH transport is unusable
        """
        if mode is CommandMode.MUTATE and execution is ExecutionMode.PLAN:
            return CommandResult(command=command, planned=True)

        client = self.connect()
        timeout = self.settings.command_timeout
        logger.debug(f"[{self.settings.host}]$ {command}")

        try:
            _, stdout, _ = client.exec_command(f"bash -lc {shlex.quote(command)}", timeout=timeout)
            channel = stdout.channel
            try:
                out, err, exit_code = self._collect(channel, command, timeout)
            finally:
                channel.close()
        except socket.timeout as e:
            raise RemoteCommandError(command, -1, stderr=f"timed out after {timeout}s") from e
        except (paramiko.SSHException, OSError) as e:
            raise HypervisorConnectionError(f"Lost connection to {self.settings.host}: {e}") from e

        result = CommandResult(command=command, output=out, exit_code=exit_code, stderr=err)
        if check and not result.ok:
            raise RemoteCommandError(command, exit_code, stdout=out, stderr=err)
        return result
