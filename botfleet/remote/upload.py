"""File upload backends for remote sessions.

Two ways of getting bytes onto a host: the SFTP subsystem, or a base64
stream piped into ``base64 -d`` over a plain exec channel for hosts where
the SFTP subsystem is disabled. Both create the parent directory first.
"""
from __future__ import annotations

import base64
import logging
import posixpath
import shlex
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

import asyncssh

logger = logging.getLogger(__name__)

# (command, stdin) -> stdout
RunCommand = Callable[..., Awaitable[str]]

UPLOAD_BACKENDS = ("auto", "sftp", "base64")


class Uploader(ABC):
    """Writes a byte payload to a remote path."""

    name: str = ""

    @abstractmethod
    async def upload(self, data: bytes, remote_path: str, mode: int | None = None) -> None:
        ...

    async def close(self) -> None:
        return None


class SftpUploader(Uploader):
    name = "sftp"

    def __init__(self, sftp: asyncssh.SFTPClient):
        self._sftp = sftp

    async def upload(self, data: bytes, remote_path: str, mode: int | None = None) -> None:
        parent = posixpath.dirname(remote_path)
        if parent:
            await self._sftp.makedirs(parent, exist_ok=True)
        async with self._sftp.open(remote_path, "wb") as remote_file:
            await remote_file.write(data)
        if mode is not None:
            await self._sftp.chmod(remote_path, mode)

    async def close(self) -> None:
        self._sftp.exit()


class Base64Uploader(Uploader):
    name = "base64"

    def __init__(self, run: RunCommand):
        self._run = run

    async def upload(self, data: bytes, remote_path: str, mode: int | None = None) -> None:
        path = shlex.quote(remote_path)
        parent = shlex.quote(posixpath.dirname(remote_path) or ".")
        command = f"mkdir -p {parent} && base64 -d > {path}"
        if mode is not None:
            command = f"{command} && chmod {mode:o} {path}"
        await self._run(command, input=base64.b64encode(data).decode("ascii"))


async def open_uploader(
    conn: asyncssh.SSHClientConnection,
    run: RunCommand,
    preference: str = "auto",
) -> Uploader:
    """Pick an upload backend for this connection.

    ``auto`` prefers SFTP and falls back to base64 when the host refuses
    the SFTP subsystem.
    """
    if preference not in UPLOAD_BACKENDS:
        raise ValueError(f"unknown upload backend {preference!r}")
    if preference == "base64":
        return Base64Uploader(run)
    try:
        sftp = await conn.start_sftp_client()
    except (asyncssh.Error, OSError) as exc:
        if preference == "sftp":
            raise
        logger.info(f"SFTP unavailable ({exc}), using base64 uploads")
        return Base64Uploader(run)
    return SftpUploader(sftp)
