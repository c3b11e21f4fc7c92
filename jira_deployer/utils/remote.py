"""
Remote Command Execution Utilities

Provides scoped SSH/SFTP sessions for executing commands and transferring
files on remote machines.

This module uses `asyncssh`. Each session owns a private event loop so it can
be driven from the synchronous worker thread of a provisioning stage.
"""

import asyncio
import posixpath
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional

import asyncssh
from loguru import logger

from ..errors import ProvisioningError, TransientRemoteError
from .actions import RemoteAction


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        return value
    return str(value)


@dataclass(frozen=True)
class RemoteTarget:
    """Network address, login user and private key of one machine"""
    address: str
    user: str = "ubuntu"
    key_path: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.user}@{self.address}"


@dataclass(frozen=True)
class RemoteLocation:
    """Where a durable artifact lives on a remote machine"""
    host: RemoteTarget
    path: str

    def __str__(self) -> str:
        return f"{self.host}:{self.path}"


@dataclass
class CommandResult:
    """Result of a remote command execution"""
    host: str
    success: bool
    stdout: str
    stderr: str
    return_code: int

    @property
    def output(self) -> str:
        return self.stdout


class RemoteCommandError(ProvisioningError):
    """A remote command exited with a non-zero status"""

    def __init__(self, command: str, result: CommandResult):
        super().__init__(
            f"`{command}` failed on {result.host} with exit status {result.return_code}: "
            f"{result.stderr.strip() or result.stdout.strip()}"
        )
        self.command = command
        self.result = result


class RemoteSession:
    """
    A live connection to one machine.

    Obtained from :meth:`RemoteExecutor.connect`, which closes it on exit.
    A session must only be used by the thread that opened it.
    """

    def __init__(
        self,
        target: RemoteTarget,
        loop: asyncio.AbstractEventLoop,
        conn: asyncssh.SSHClientConnection,
    ):
        self.target = target
        self._loop = loop
        self._conn = conn

    def _await(self, coro):
        return self._loop.run_until_complete(coro)

    def safe_execute(self, command: str, timeout: int = 60) -> CommandResult:
        """
        Execute a command and report its outcome without raising on failure.

        Raises:
            TransientRemoteError: if the connection broke or the command timed out
        """
        logger.debug(f"{self.target}$ {command}")
        try:
            res = self._await(asyncio.wait_for(self._conn.run(command, check=False), timeout=timeout))
        except asyncio.TimeoutError as e:
            raise TransientRemoteError(f"`{command}` timed out after {timeout}s on {self.target}") from e
        except (asyncssh.Error, OSError) as e:
            raise TransientRemoteError(f"`{command}` failed on {self.target}: {e}") from e
        exit_status = res.exit_status if res.exit_status is not None else -1
        return CommandResult(
            host=self.target.address,
            success=exit_status == 0,
            stdout=_as_text(res.stdout),
            stderr=_as_text(res.stderr),
            return_code=int(exit_status),
        )

    def execute(self, command: str, timeout: int = 60) -> CommandResult:
        """
        Execute a command that must succeed.

        Raises:
            RemoteCommandError: on a non-zero exit status
            TransientRemoteError: if the connection broke or the command timed out
        """
        result = self.safe_execute(command, timeout=timeout)
        if not result.success:
            raise RemoteCommandError(command, result)
        return result

    def run(self, action: RemoteAction) -> CommandResult:
        """Execute a declarative remote action"""
        command = action.to_command()
        if action.tolerate_failure:
            result = self.safe_execute(command, timeout=action.timeout)
            if not result.success:
                logger.warning(f"{action} failed on {self.target}, proceeding: {result.stderr.strip()}")
            return result
        return self.execute(command, timeout=action.timeout)

    def read_text(self, remote_path: str) -> str:
        async def do_read() -> str:
            async with self._conn.start_sftp_client() as sftp:
                f = await sftp.open(remote_path, "r")
                try:
                    return _as_text(await f.read())
                finally:
                    await f.close()

        try:
            return self._await(do_read())
        except (asyncssh.Error, OSError) as e:
            raise TransientRemoteError(f"Failed to read {remote_path} on {self.target}: {e}") from e

    def write_text(self, remote_path: str, content: str) -> None:
        async def do_write() -> None:
            remote_dir = posixpath.dirname(remote_path)
            async with self._conn.start_sftp_client() as sftp:
                if remote_dir:
                    await sftp.makedirs(remote_dir, exist_ok=True)
                f = await sftp.open(remote_path, "w")
                try:
                    await f.write(content)
                finally:
                    await f.close()

        try:
            self._await(do_write())
        except (asyncssh.Error, OSError) as e:
            raise TransientRemoteError(f"Failed to write {remote_path} on {self.target}: {e}") from e

    def close(self) -> None:
        self._conn.close()
        self._await(self._conn.wait_closed())


class RemoteExecutor:
    """
    Opens SSH sessions to remote machines (asyncssh).

    Connection attempts are retried ``connectivity_patience`` times, which
    covers machines whose SSH daemon is still booting.
    """

    def __init__(
        self,
        known_hosts: Optional[str] = None,
        connect_timeout: float = 30.0,
        keepalive_interval: float = 30.0,
        connectivity_patience: int = 4,
        retry_delay: float = 5.0,
    ):
        """
        Initialize the remote executor.

        Args:
            known_hosts: Path to known_hosts file (or None to disable host key checks)
            connect_timeout: SSH connect timeout seconds
            keepalive_interval: SSH keepalive interval seconds
            connectivity_patience: Connection attempts before giving up
            retry_delay: Seconds between connection attempts
        """
        self.known_hosts = known_hosts
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.connectivity_patience = connectivity_patience
        self.retry_delay = retry_delay

    async def _connect(self, target: RemoteTarget) -> asyncssh.SSHClientConnection:
        client_keys: Optional[List[str]] = None
        if target.key_path:
            client_keys = [target.key_path]

        return await asyncssh.connect(
            target.address,
            username=target.user,
            client_keys=client_keys,
            known_hosts=self.known_hosts,
            connect_timeout=self.connect_timeout,
            keepalive_interval=self.keepalive_interval,
        )

    def _open(self, target: RemoteTarget, loop: asyncio.AbstractEventLoop) -> asyncssh.SSHClientConnection:
        last_exc: Optional[BaseException] = None
        for attempt in range(self.connectivity_patience):
            try:
                return loop.run_until_complete(self._connect(target))
            except (asyncio.TimeoutError, asyncssh.Error, OSError) as e:
                last_exc = e
                if attempt < self.connectivity_patience - 1:
                    logger.debug(f"SSH to {target} failed (attempt {attempt + 1}), retrying: {e}")
                    time.sleep(self.retry_delay)
        raise TransientRemoteError(
            f"Cannot connect to {target} after {self.connectivity_patience} attempts: {last_exc}"
        )

    @contextmanager
    def connect(self, target: RemoteTarget) -> Iterator[RemoteSession]:
        """Open a session that is closed on every exit path"""
        loop = asyncio.new_event_loop()
        try:
            conn = self._open(target, loop)
            session = RemoteSession(target, loop, conn)
            try:
                yield session
            finally:
                try:
                    session.close()
                except (asyncssh.Error, OSError) as e:
                    logger.debug(f"Closing session to {target} failed: {e}")
        finally:
            loop.close()
