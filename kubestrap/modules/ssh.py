"""
SSH command execution on cluster nodes using paramiko.
"""
import logging
import shlex
import socket
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

import paramiko

from kubestrap.errors import RemoteCommandError
from kubestrap.modules.models import Node

logger = logging.getLogger("kubestrap.ssh")


@dataclass
class CommandResult:
    """Outcome of a remote command."""
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class SSHExecutor:
    """Runs commands on nodes over SSH, one cached client per node.

    Commands are wrapped in ``sudo -n`` unless the login user is root.
    Every call is bounded by a connect timeout and a command timeout.
    """

    def __init__(self, ssh_config, poll_interval: float = 0.5):
        self.config = ssh_config
        self.poll_interval = poll_interval
        self.clients: Dict[str, paramiko.SSHClient] = {}
        self.lock = threading.RLock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_all()

    def _user(self, node: Node) -> str:
        return node.ssh_user or self.config.user

    def _connect(self, node: Node) -> paramiko.SSHClient:
        with self.lock:
            client = self.clients.get(node.id)
            if client is not None:
                transport = client.get_transport()
                if transport is not None and transport.is_active():
                    return client
                client.close()
                del self.clients[node.id]

            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            logger.debug(f"Opening SSH connection to {self._user(node)}@{node.address}")
            try:
                client.connect(
                    node.address,
                    port=node.ssh_port or self.config.port,
                    username=self._user(node),
                    key_filename=node.ssh_key_path or self.config.key_path,
                    timeout=self.config.connect_timeout,
                    banner_timeout=self.config.connect_timeout,
                    auth_timeout=self.config.connect_timeout,
                )
            except (paramiko.SSHException, socket.error) as e:
                client.close()
                raise RemoteCommandError(node.id, f"SSH connection to {node.address} failed: {e}") from e
            self.clients[node.id] = client
            return client

    def _wrap(self, node: Node, command: str) -> str:
        command = f"set -eo pipefail; {command}"
        if self._user(node) == 'root':
            return f"bash -c {shlex.quote(command)}"
        return f"sudo -n bash -c {shlex.quote(command)}"

    def run(
        self,
        node: Node,
        command: str,
        check: bool = True,
        timeout: Optional[int] = None,
        sensitive: bool = False,
        stdin_data: Optional[str] = None,
    ) -> CommandResult:
        """Execute ``command`` on ``node``.

        Args:
            node: Target node
            command: Shell command, run as root
            check: Raise :class:`RemoteCommandError` on non-zero exit status
            timeout: Command timeout in seconds (config default when None)
            sensitive: Keep the command text out of logs and errors
            stdin_data: Data written to the command's standard input

        Returns:
            CommandResult with decoded output
        """
        timeout = timeout or self.config.command_timeout
        shown = "<sensitive command>" if sensitive else command
        logger.debug(f"[{node.id}] $ {shown} [timeout={timeout}s]")

        client = self._connect(node)
        start_time = time.time()
        try:
            stdin, stdout, stderr = client.exec_command(self._wrap(node, command), timeout=timeout)
            if stdin_data is not None:
                stdin.write(stdin_data)
                stdin.flush()
                stdin.channel.shutdown_write()

            channel = stdout.channel
            while not channel.exit_status_ready():
                if time.time() - start_time > timeout:
                    channel.close()
                    raise RemoteCommandError(node.id, f"Command timed out after {timeout}s: {shown}")
                time.sleep(self.poll_interval)

            exit_status = channel.recv_exit_status()
            result = CommandResult(
                exit_status=exit_status,
                stdout=stdout.read().decode('utf-8', 'replace').strip(),
                stderr=stderr.read().decode('utf-8', 'replace').strip(),
            )
        except (paramiko.SSHException, socket.error) as e:
            # Drop the client so the next call reconnects
            with self.lock:
                self.clients.pop(node.id, None)
            client.close()
            raise RemoteCommandError(node.id, f"SSH error while running {shown}: {e}") from e

        elapsed = time.time() - start_time
        logger.debug(f"[{node.id}] Command completed in {elapsed:.1f}s with status {result.exit_status}")

        if check and not result.ok:
            stderr_text = "" if sensitive else result.stderr
            raise RemoteCommandError(node.id, f"Command failed: {shown}", result.exit_status, stderr_text)
        return result

    def file_exists(self, node: Node, path: str) -> bool:
        return self.run(node, f"test -f {shlex.quote(path)}", check=False).ok

    def read_file(self, node: Node, path: str, sensitive: bool = False) -> Optional[str]:
        """Return the file's content, or None when it does not exist."""
        result = self.run(node, f"cat {shlex.quote(path)}", check=False, sensitive=sensitive)
        return result.stdout if result.ok else None

    def file_checksum(self, node: Node, path: str) -> Optional[str]:
        result = self.run(node, f"sha256sum {shlex.quote(path)}", check=False)
        if not result.ok or not result.stdout:
            return None
        return result.stdout.split()[0]

    def write_file(self, node: Node, path: str, content: str, mode: int = 0o644, sensitive: bool = False) -> None:
        """Write ``content`` to ``path`` on the node, creating parent directories."""
        quoted = shlex.quote(path)
        command = (
            f"mkdir -p $(dirname {quoted}) && "
            f"umask 077 && cat > {quoted}.tmp && "
            f"chmod {mode:o} {quoted}.tmp && mv {quoted}.tmp {quoted}"
        )
        self.run(node, command, stdin_data=content, sensitive=sensitive)

    def close_all(self) -> None:
        """Close all cached connections."""
        with self.lock:
            for client in self.clients.values():
                client.close()
            self.clients.clear()
