"""Authenticated command and file-transfer channel to one host.

A session is owned by the single call that opened it and must be closed on
every exit path; use it as an async context manager.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
from collections import deque
from typing import Callable

import asyncssh

from botfleet.config import settings
from botfleet.errors import ConnectivityError, RemoteCommandError, RemoteCommandTimeout
from botfleet.metrics import remote_command_failures_total
from botfleet.remote.upload import Uploader, open_uploader

logger = logging.getLogger(__name__)

# sink(stream_name, line) where stream_name is "stdout" or "stderr"
LineSink = Callable[[str, str], None]

# Lines of output kept per stream for error reporting on streamed commands
_STREAM_KEEP_LINES = 200


class RemoteSession:
    """SSH session to a fleet host with password auth.

    Host keys are not verified: hosts are freshly created VMs whose keys
    are unknown until first boot.
    """

    def __init__(
        self,
        address: str,
        password: str,
        *,
        username: str | None = None,
        port: int | None = None,
        connect_attempts: int | None = None,
        retry_delay: float | None = None,
        connect_timeout: float | None = None,
        upload_backend: str | None = None,
    ):
        self.address = address
        self.password = password
        self.username = username or settings.ssh_username
        self.port = port or settings.ssh_port
        self.connect_attempts = max(1, connect_attempts or settings.ssh_connect_attempts)
        self.retry_delay = settings.ssh_retry_delay if retry_delay is None else retry_delay
        self.connect_timeout = connect_timeout or settings.ssh_connect_timeout
        self.upload_backend = upload_backend or settings.upload_backend
        self._conn: asyncssh.SSHClientConnection | None = None
        self._uploader: Uploader | None = None

    async def __aenter__(self) -> "RemoteSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        """Connect, retrying at a fixed delay while sshd comes up."""
        if self._conn is not None:
            return

        last_error: BaseException | None = None
        for attempt in range(1, self.connect_attempts + 1):
            try:
                self._conn = await asyncssh.connect(
                    self.address,
                    port=self.port,
                    username=self.username,
                    password=self.password,
                    known_hosts=None,
                    connect_timeout=self.connect_timeout,
                )
                logger.info(f"SSH connected to {self.address} (attempt {attempt})")
                return
            except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
                last_error = e
                logger.info(
                    f"SSH connect to {self.address} failed "
                    f"(attempt {attempt}/{self.connect_attempts}): {e}"
                )
                if attempt < self.connect_attempts:
                    await asyncio.sleep(self.retry_delay)

        raise ConnectivityError(
            f"could not connect to {self.address} after {self.connect_attempts} attempts: {last_error}"
        ) from last_error

    def _require_conn(self) -> asyncssh.SSHClientConnection:
        if self._conn is None:
            raise ConnectivityError(f"session to {self.address} is not open")
        return self._conn

    async def execute(self, command: str, *, input: str | None = None) -> str:
        """Run a command to completion and return its stdout.

        No timeout is applied. Raises RemoteCommandError on non-zero exit.
        """
        conn = self._require_conn()
        try:
            result = await conn.run(command, check=False, input=input)
        except (asyncssh.Error, OSError) as e:
            raise ConnectivityError(f"lost connection to {self.address}: {e}") from e

        stdout = _as_text(result.stdout)
        if result.exit_status != 0:
            remote_command_failures_total.labels(kind="exit_status").inc()
            raise RemoteCommandError(command, result.exit_status, stdout, _as_text(result.stderr))
        return stdout

    async def execute_with_timeout(self, command: str, timeout: float) -> str:
        """Run a command, giving up locally after ``timeout`` seconds.

        Only the local wait is cancelled. The remote process is not signalled
        and may keep running after this raises RemoteCommandTimeout.
        """
        try:
            return await asyncio.wait_for(self.execute(command), timeout=timeout)
        except asyncio.TimeoutError as e:
            remote_command_failures_total.labels(kind="timeout").inc()
            logger.warning(
                f"Command on {self.address} timed out after {timeout:g}s, "
                f"remote process may still be running: {command.splitlines()[0] if command else ''}"
            )
            raise RemoteCommandTimeout(command, timeout) from e

    async def execute_streamed(
        self,
        command: str,
        sink: LineSink | None = None,
        prefix: str = "",
    ) -> str:
        """Run a command while draining stdout and stderr line by line.

        Each non-blank line is handed to ``sink`` as it arrives (or logged
        at DEBUG with ``prefix`` when no sink is given). Returns the stdout
        lines that were kept.
        """
        conn = self._require_conn()
        stdout_lines: deque[str] = deque(maxlen=_STREAM_KEEP_LINES)
        stderr_lines: deque[str] = deque(maxlen=_STREAM_KEEP_LINES)

        def emit(stream_name: str, line: str) -> None:
            if sink is not None:
                sink(stream_name, line)
            elif stream_name == "stderr":
                logger.debug(f"{prefix}[stderr] {line}")
            else:
                logger.debug(f"{prefix}{line}")

        async def drain(stream, stream_name: str, kept: deque[str]) -> None:
            async for raw in stream:
                line = _as_text(raw).rstrip("\r\n")
                if not line.strip():
                    continue
                kept.append(line)
                emit(stream_name, line)

        try:
            async with conn.create_process(command) as process:
                await asyncio.gather(
                    drain(process.stdout, "stdout", stdout_lines),
                    drain(process.stderr, "stderr", stderr_lines),
                )
                completed = await process.wait(check=False)
        except (asyncssh.Error, OSError) as e:
            raise ConnectivityError(f"lost connection to {self.address}: {e}") from e

        stdout = "\n".join(stdout_lines)
        if completed.exit_status != 0:
            remote_command_failures_total.labels(kind="exit_status").inc()
            raise RemoteCommandError(command, completed.exit_status, stdout, "\n".join(stderr_lines))
        return stdout

    async def upload_file(self, data: bytes, remote_path: str, mode: int | None = None) -> None:
        """Write ``data`` to ``remote_path``, creating parent directories."""
        conn = self._require_conn()
        try:
            if self._uploader is None:
                self._uploader = await open_uploader(conn, self.execute, self.upload_backend)
                logger.debug(f"Using {self._uploader.name} uploads for {self.address}")
            await self._uploader.upload(data, remote_path, mode)
        except (asyncssh.Error, OSError) as e:
            raise ConnectivityError(f"upload of {remote_path} to {self.address} failed: {e}") from e

    async def read_file(self, remote_path: str) -> str:
        return await self.execute(f"cat {shlex.quote(remote_path)}")

    async def close(self) -> None:
        """Close the upload channel and the connection. Safe to call twice."""
        uploader, self._uploader = self._uploader, None
        conn, self._conn = self._conn, None
        if uploader is not None:
            await uploader.close()
        if conn is not None:
            conn.close()
            await conn.wait_closed()
            logger.debug(f"SSH session to {self.address} closed")


async def open_session(address: str, password: str, **kwargs) -> RemoteSession:
    """Create and open a session. Caller owns closing it."""
    session = RemoteSession(address, password, **kwargs)
    await session.open()
    return session


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
