# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""One-shot SFTP file operations.

Every call opens its own SSH connection and SFTP session, performs one
logical operation and closes both. Nothing is pooled or retried. Connector
errors (unreachable host, bad credentials) propagate unchanged; failures of
the operation itself are raised as SFTPOperationError naming the operation
and path.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import shlex
import stat as stat_module
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Tuple

import asyncssh

from remotectl.errors import FileTooLargeError, SFTPOperationError
from remotectl.terminal.connector import DEFAULT_DIAL_TIMEOUT, ConnectorConfig, HostKeyPolicy
from remotectl.terminal.ssh import open_ssh_connection

logger = logging.getLogger(__name__)

MAX_READ_BYTES = 2 * 1024 * 1024
MAX_WRITE_BYTES = 2 * 1024 * 1024
MAX_UPLOAD_BYTES = 50 * 1024 * 1024
COPY_CHUNK_SIZE = 32 * 1024
DOWNLOAD_CHUNK_SIZE = 64 * 1024
SEARCH_MAX_RESULTS = 500

TYPE_FILE = "file"
TYPE_DIR = "dir"
TYPE_SYMLINK = "symlink"

ProgressCallback = Callable[[int, int], None]
ConnectFn = Callable[..., Awaitable[Any]]

_REMOTE_ERRORS = (asyncssh.Error, OSError)


@dataclass
class FileEntry:
    name: str
    path: str
    type: str
    size: int = 0
    mode: str = ""
    permissions: int = 0
    mtime: int = 0
    uid: Optional[int] = None
    gid: Optional[int] = None
    owner: str = ""
    group: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def _entry_type(permissions: Optional[int]) -> str:
    if permissions is None:
        return TYPE_FILE
    if stat_module.S_ISLNK(permissions):
        return TYPE_SYMLINK
    if stat_module.S_ISDIR(permissions):
        return TYPE_DIR
    return TYPE_FILE


def _make_entry(path: str, attrs: Any) -> FileEntry:
    permissions = attrs.permissions or 0
    return FileEntry(
        name=posixpath.basename(path.rstrip("/")) or path,
        path=path,
        type=_entry_type(attrs.permissions),
        size=attrs.size or 0,
        mode=stat_module.filemode(permissions) if attrs.permissions is not None else "",
        permissions=stat_module.S_IMODE(permissions),
        mtime=int(attrs.mtime or 0),
        uid=attrs.uid,
        gid=attrs.gid,
    )


class _Progress:
    def __init__(self, total: int, callback: Optional[ProgressCallback]):
        self.total = total
        self.copied = 0
        self._callback = callback

    def add(self, n: int) -> None:
        self.copied += n
        if self._callback is not None:
            self._callback(self.copied, self.total)


class SFTPService:
    """File operations against a resolved ConnectorConfig."""

    def __init__(
        self,
        connect: ConnectFn = open_ssh_connection,
        dial_timeout: float = DEFAULT_DIAL_TIMEOUT,
        host_key_policy: Optional[HostKeyPolicy] = None,
        max_read_bytes: int = MAX_READ_BYTES,
        max_write_bytes: int = MAX_WRITE_BYTES,
        search_max_results: int = SEARCH_MAX_RESULTS,
        command_timeout: Optional[float] = None,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
    ):
        self._connect = connect
        self.dial_timeout = dial_timeout
        self.command_timeout = command_timeout if command_timeout is not None else dial_timeout
        self.max_upload_bytes = max_upload_bytes
        self.host_key_policy = host_key_policy
        self.max_read_bytes = max_read_bytes
        self.max_write_bytes = max_write_bytes
        self.search_max_results = search_max_results

    @asynccontextmanager
    async def _session(
        self, config: ConnectorConfig, operation: str, path: str
    ) -> AsyncIterator[Tuple[Any, Any]]:
        conn = await self._connect(config, self.dial_timeout, self.host_key_policy)
        try:
            sftp = await conn.start_sftp_client()
        except _REMOTE_ERRORS as e:
            conn.close()
            raise SFTPOperationError(operation, path, e) from e

        try:
            yield conn, sftp
        except SFTPOperationError:
            raise
        except _REMOTE_ERRORS as e:
            raise SFTPOperationError(operation, path, e) from e
        finally:
            sftp.exit()
            conn.close()

    # Read-only operations

    async def list_dir(self, config: ConnectorConfig, path: str) -> List[FileEntry]:
        async with self._session(config, "list", path) as (_, sftp):
            names = await sftp.readdir(path)
        entries = [
            _make_entry(posixpath.join(path, name.filename), name.attrs)
            for name in names
            if name.filename not in (".", "..")
        ]
        entries.sort(key=lambda e: (e.type != TYPE_DIR, e.name.lower()))
        return entries

    async def stat(self, config: ConnectorConfig, path: str) -> FileEntry:
        async with self._session(config, "stat", path) as (conn, sftp):
            entry = _make_entry(path, await sftp.lstat(path))
            lookup = _CommandRunner(conn, self.command_timeout, "stat", path)
            if entry.uid is not None:
                entry.owner = await lookup.name(f"id -nu {entry.uid}") or str(entry.uid)
            if entry.gid is not None:
                entry.group = (
                    await lookup.name(f"getent group {entry.gid} | cut -d: -f1")
                    or str(entry.gid)
                )
        return entry

    async def read_file(
        self, config: ConnectorConfig, path: str, max_bytes: Optional[int] = None
    ) -> bytes:
        """Read a whole file, refusing anything over ``max_bytes``."""
        limit = max_bytes if max_bytes is not None else self.max_read_bytes
        async with self._session(config, "read", path) as (_, sftp):
            attrs = await sftp.stat(path)
            if attrs.size is not None and attrs.size > limit:
                raise FileTooLargeError("read", path, limit)
            async with sftp.open(path, "rb") as f:
                data = await f.read(limit + 1)
        if len(data) > limit:
            raise FileTooLargeError("read", path, limit)
        return data

    async def download(
        self, config: ConnectorConfig, path: str, chunk_size: int = DOWNLOAD_CHUNK_SIZE
    ) -> AsyncIterator[bytes]:
        async with self._session(config, "download", path) as (_, sftp):
            async with sftp.open(path, "rb") as f:
                while True:
                    chunk = await f.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk

    async def search(
        self,
        config: ConnectorConfig,
        root: str,
        pattern: str,
        max_results: Optional[int] = None,
    ) -> List[FileEntry]:
        """Case-insensitive name search below ``root``. Symlinks are not followed."""
        limit = max_results or self.search_max_results
        needle = pattern.lower()
        results: List[FileEntry] = []
        async with self._session(config, "search", root) as (_, sftp):
            pending = [root]
            while pending and len(results) < limit:
                directory = pending.pop(0)
                try:
                    names = await sftp.readdir(directory)
                except asyncssh.SFTPError as e:
                    logger.debug(f"search: skipping {directory}: {e}")
                    continue
                for name in names:
                    if name.filename in (".", ".."):
                        continue
                    entry = _make_entry(posixpath.join(directory, name.filename), name.attrs)
                    if needle in entry.name.lower():
                        results.append(entry)
                        if len(results) >= limit:
                            break
                    if entry.type == TYPE_DIR:
                        pending.append(entry.path)
        return results

    # Mutating operations

    async def write_file(
        self,
        config: ConnectorConfig,
        path: str,
        data: bytes,
        max_bytes: Optional[int] = None,
    ) -> int:
        limit = max_bytes if max_bytes is not None else self.max_write_bytes
        if len(data) > limit:
            raise FileTooLargeError("write", path, limit)
        async with self._session(config, "write", path) as (_, sftp):
            async with sftp.open(path, "wb") as f:
                await f.write(data)
        return len(data)

    async def mkdir(self, config: ConnectorConfig, path: str, parents: bool = True) -> None:
        async with self._session(config, "mkdir", path) as (_, sftp):
            if parents:
                await sftp.makedirs(path, exist_ok=True)
            else:
                await sftp.mkdir(path)

    async def rename(self, config: ConnectorConfig, source: str, target: str) -> None:
        async with self._session(config, "rename", source) as (_, sftp):
            await sftp.rename(source, target)

    async def delete(self, config: ConnectorConfig, path: str) -> None:
        if path.rstrip("/") in ("", "/"):
            raise SFTPOperationError("delete", path, message="Refusing to delete /")
        async with self._session(config, "delete", path) as (_, sftp):
            attrs = await sftp.lstat(path)
            if _entry_type(attrs.permissions) == TYPE_DIR:
                await _remove_tree(sftp, path)
            else:
                await sftp.remove(path)

    async def chmod(
        self, config: ConnectorConfig, path: str, mode: int, recursive: bool = False
    ) -> int:
        """Change permissions. Returns the number of entries changed."""
        async with self._session(config, "chmod", path) as (_, sftp):
            if not recursive:
                await sftp.chmod(path, mode)
                return 1
            changed = 0
            async for entry_path, entry_attrs in _walk(sftp, path):
                # chmod on a link would change whatever it points at
                if _entry_type(entry_attrs.permissions) == TYPE_SYMLINK:
                    continue
                await sftp.chmod(entry_path, mode)
                changed += 1
            return changed

    async def chown_by_name(
        self,
        config: ConnectorConfig,
        path: str,
        owner: str = "",
        group: str = "",
        recursive: bool = False,
    ) -> Tuple[int, int]:
        """Change ownership by user/group name. Empty names keep the current id."""
        async with self._session(config, "chown", path) as (conn, sftp):
            attrs = await sftp.lstat(path)
            uid = attrs.uid
            gid = attrs.gid
            lookup = _CommandRunner(conn, self.command_timeout, "chown", path)
            if owner:
                uid = await lookup.id(f"id -u {shlex.quote(owner)}", owner)
            if group:
                gid = await lookup.id(f"getent group {shlex.quote(group)} | cut -d: -f3", group)
            if recursive:
                async for entry_path, entry_attrs in _walk(sftp, path):
                    if _entry_type(entry_attrs.permissions) == TYPE_SYMLINK:
                        continue
                    await sftp.chown(
                        entry_path,
                        uid if owner else entry_attrs.uid,
                        gid if group else entry_attrs.gid,
                    )
            else:
                await sftp.chown(path, uid, gid)
        return uid, gid

    async def symlink(self, config: ConnectorConfig, target: str, link_path: str) -> None:
        async with self._session(config, "symlink", link_path) as (_, sftp):
            await sftp.symlink(target, link_path)

    async def copy(
        self,
        config: ConnectorConfig,
        source: str,
        target: str,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Copy a file or directory tree on the remote host.

        ``progress(copied, total)`` is called after every chunk. Returns the
        number of bytes copied.
        """
        counter = _Progress(0, progress)
        async with self._session(config, "copy", source) as (_, sftp):
            try:
                attrs = await sftp.stat(source)
                if _entry_type(attrs.permissions) == TYPE_DIR:
                    counter.total = await _tree_size(sftp, source)
                    await _copy_tree(sftp, source, target, counter)
                else:
                    counter.total = attrs.size or 0
                    await _copy_file(sftp, source, target, counter)
            except SFTPOperationError as e:
                e.bytes_copied = max(e.bytes_copied, counter.copied)
                raise
            except _REMOTE_ERRORS as e:
                raise SFTPOperationError("copy", source, e, bytes_copied=counter.copied) from e
        return counter.copied

    async def upload(
        self,
        config: ConnectorConfig,
        directory: str,
        filename: str,
        chunks: AsyncIterator[bytes],
        max_bytes: Optional[int] = None,
    ) -> Tuple[str, int]:
        """Stream an uploaded file into ``directory``.

        The target is removed again if the upload fails or grows past
        ``max_bytes``. Returns the remote path and the number of bytes written.
        """
        name = posixpath.basename(filename.replace("\\", "/"))
        if name in ("", ".", ".."):
            raise SFTPOperationError("upload", directory, message="Invalid file name")
        limit = max_bytes if max_bytes is not None else self.max_upload_bytes
        path = posixpath.join(directory, name)
        size = 0
        async with self._session(config, "upload", path) as (_, sftp):
            try:
                async with sftp.open(path, "wb") as f:
                    async for chunk in chunks:
                        size += len(chunk)
                        if size > limit:
                            raise FileTooLargeError("upload", path, limit)
                        await f.write(chunk)
            except (SFTPOperationError, *_REMOTE_ERRORS):
                await _discard(sftp, path)
                raise
        logger.debug(f"Uploaded {size} bytes to {path}")
        return path, size


class _CommandRunner:
    """Runs lookup commands on an open connection, each under a deadline."""

    def __init__(self, conn: Any, timeout: float, operation: str, path: str):
        self.conn = conn
        self.timeout = timeout
        self.operation = operation
        self.path = path

    async def output(self, command: str) -> Tuple[int, str]:
        try:
            result = await asyncio.wait_for(
                self.conn.run(command, check=False), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise SFTPOperationError(
                self.operation,
                self.path,
                message=f"{self.operation} {self.path} failed: '{command}' timed out",
            )
        return result.exit_status, str(result.stdout or "").strip()

    async def name(self, command: str) -> str:
        try:
            status, output = await self.output(command)
        except _REMOTE_ERRORS as e:
            logger.debug(f"Name lookup '{command}' failed: {e}")
            return ""
        return output if status == 0 else ""

    async def id(self, command: str, name: str) -> int:
        status, output = await self.output(command)
        if status != 0 or not output.isdigit():
            raise SFTPOperationError(
                self.operation, self.path, message=f"Unknown user or group: {name}"
            )
        return int(output)


async def _discard(sftp: Any, path: str) -> None:
    try:
        await sftp.remove(path)
    except _REMOTE_ERRORS as e:
        logger.debug(f"Could not remove partial file {path}: {e}")


async def _walk(sftp: Any, root: str):
    """Yield (path, attrs) for root and everything below it, without following links."""
    attrs = await sftp.lstat(root)
    yield root, attrs
    if _entry_type(attrs.permissions) != TYPE_DIR:
        return
    for name in await sftp.readdir(root):
        if name.filename in (".", ".."):
            continue
        child = posixpath.join(root, name.filename)
        if _entry_type(name.attrs.permissions) == TYPE_DIR:
            async for item in _walk(sftp, child):
                yield item
        else:
            yield child, name.attrs


async def _remove_tree(sftp: Any, path: str) -> None:
    for name in await sftp.readdir(path):
        if name.filename in (".", ".."):
            continue
        child = posixpath.join(path, name.filename)
        if _entry_type(name.attrs.permissions) == TYPE_DIR:
            await _remove_tree(sftp, child)
        else:
            await sftp.remove(child)
    await sftp.rmdir(path)


async def _tree_size(sftp: Any, root: str) -> int:
    total = 0
    async for _, attrs in _walk(sftp, root):
        if _entry_type(attrs.permissions) == TYPE_FILE:
            total += attrs.size or 0
    return total


async def _copy_tree(sftp: Any, source: str, target: str, counter: _Progress) -> None:
    await sftp.makedirs(target, exist_ok=True)
    for name in await sftp.readdir(source):
        if name.filename in (".", ".."):
            continue
        src = posixpath.join(source, name.filename)
        dst = posixpath.join(target, name.filename)
        kind = _entry_type(name.attrs.permissions)
        if kind == TYPE_DIR:
            await _copy_tree(sftp, src, dst, counter)
        elif kind == TYPE_SYMLINK:
            await sftp.symlink(await sftp.readlink(src), dst)
        else:
            await _copy_file(sftp, src, dst, counter)


async def _copy_file(sftp: Any, source: str, target: str, counter: _Progress) -> None:
    try:
        async with sftp.open(source, "rb") as reader:
            async with sftp.open(target, "wb") as writer:
                while True:
                    chunk = await reader.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    await writer.write(chunk)
                    counter.add(len(chunk))
    except _REMOTE_ERRORS as e:
        await _discard(sftp, target)
        raise SFTPOperationError("copy", source, e, bytes_copied=counter.copied) from e
