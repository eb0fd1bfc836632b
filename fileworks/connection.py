"""SSH/SFTP session used by the built-in SFTP transport.

One :class:`SftpSession` is opened per job and reused for every file in it.
Connection and authentication failures are raised as
:class:`~fileworks.errors.ProtocolError`; per-file I/O errors surface as
plain ``OSError`` so the caller can record them and keep going.
"""

from __future__ import annotations

import logging
import os
import socket
import stat
from pathlib import Path
from typing import Callable

import keyring
import keyring.errors
import paramiko
from paramiko import SFTPAttributes

from fileworks.cancel import CancelToken
from fileworks.errors import ProtocolError
from fileworks.utils.path_helpers import posix_join, validate_remote_path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types & constants
# ---------------------------------------------------------------------------

ChunkCallback = Callable[[int, int], None]   # (done_bytes, total_bytes)

KEYRING_SERVICE = "fileworks"
CHUNK_SIZE = 256 * 1024
TMP_SUFFIX = ".tmp"
_KEEPALIVE_INTERVAL = 30  # seconds

# ---------------------------------------------------------------------------
# Credential helpers
# ---------------------------------------------------------------------------


def _account(username: str, host: str) -> str:
    """Keyring account key for a profile (user@host)."""
    return f"{username}@{host}"


def lookup_password(username: str, host: str) -> str | None:
    """Return the stored password for ``username@host``, or ``None``."""
    try:
        password = keyring.get_password(KEYRING_SERVICE, _account(username, host))
    except keyring.errors.KeyringError as exc:
        logger.warning("Keyring lookup failed for %s: %s", _account(username, host), exc)
        return None
    if password:
        logger.debug("Using stored password for %s", _account(username, host))
    return password


def store_password(username: str, host: str, password: str) -> None:
    """Store *password* in the OS keyring for ``username@host``."""
    keyring.set_password(KEYRING_SERVICE, _account(username, host), password)
    logger.debug("Password stored in keyring for %s", _account(username, host))


def delete_password(username: str, host: str) -> None:
    """Remove the stored password for ``username@host``, if there is one."""
    try:
        keyring.delete_password(KEYRING_SERVICE, _account(username, host))
    except keyring.errors.PasswordDeleteError:
        logger.debug("No stored password for %s", _account(username, host))
        return
    logger.debug("Password deleted from keyring for %s", _account(username, host))


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


def fingerprint(key: paramiko.PKey) -> str:
    """Colon-separated MD5 fingerprint of *key*."""
    return ":".join(f"{b:02x}" for b in key.get_fingerprint())


class _LoggingPolicy(paramiko.MissingHostKeyPolicy):
    """Accepts unknown host keys for this session only, logging the fingerprint.

    Matches the external tools, which run with ``StrictHostKeyChecking=no``.
    Keys are never written to ``known_hosts``.
    """

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        logger.warning(
            "Accepting unknown host key for %s (%s %s)",
            hostname, key.get_name(), fingerprint(key),
        )
        client.get_host_keys().add(hostname, key.get_name(), key)


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client*, logging rather than raising cleanup noise."""
    try:
        client.close()
    except (OSError, paramiko.SSHException) as exc:
        logger.debug("Ignoring error while closing SSH client: %s", exc)


# ---------------------------------------------------------------------------
# SftpSession
# ---------------------------------------------------------------------------


class SftpSession:
    """A single SSH connection with an open SFTP channel.

    Not thread-safe: a session belongs to the job thread that opened it.
    Use as a context manager::

        with SftpSession(host, username="deck", password=pw) as session:
            session.upload_file(local, remote, token, on_chunk)
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "",
        password: str | None = None,
        key_path: str | None = None,
        passphrase: str | None = None,
        timeout: float = 15.0,
    ) -> None:
        """Initialise connection parameters (does NOT connect yet).

        Args:
            host: Hostname or IP address.
            port: SSH port (default 22).
            username: SSH username.
            password: Password; when neither this nor *key_path* is given the
                OS keyring is consulted.
            key_path: Path to a private key file (``~`` is expanded).
            passphrase: Passphrase for *key_path*.
            timeout: Connection timeout in seconds.
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.key_path = key_path
        self.passphrase = passphrase
        self.timeout = timeout

        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None

    def __repr__(self) -> str:
        state = "open" if self._sftp is not None else "closed"
        return f"<SftpSession {self.username}@{self.host}:{self.port} {state}>"

    def __enter__(self) -> SftpSession:
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Connect / close
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Establish the SSH and SFTP channels.

        Raises:
            ProtocolError: Authentication failure, unreachable host, timeout
                or any other SSH-level failure.
        """
        if self._sftp is not None:
            return
        logger.info("Connecting to %s@%s:%d", self.username, self.host, self.port)

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(_LoggingPolicy())

        connect_kwargs: dict = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.timeout,
            "allow_agent": True,
            "look_for_keys": self.key_path is not None,
        }
        if self.key_path:
            connect_kwargs["key_filename"] = os.path.expanduser(self.key_path)
            if self.passphrase:
                connect_kwargs["passphrase"] = self.passphrase
        else:
            password = self.password or lookup_password(self.username, self.host)
            if password:
                connect_kwargs["password"] = password

        try:
            client.connect(**connect_kwargs)
            sftp = client.open_sftp()
        except paramiko.AuthenticationException as exc:
            _close_client_safely(client)
            raise ProtocolError(f"Authentication failed for {self._target}: {exc}") from exc
        except socket.timeout as exc:
            _close_client_safely(client)
            raise ProtocolError(f"Connection to {self._target} timed out") from exc
        except (paramiko.SSHException, OSError) as exc:
            _close_client_safely(client)
            raise ProtocolError(f"Could not connect to {self._target}: {exc}") from exc

        # Large window and no mid-transfer rekeying for bulk file transfers
        transport = client.get_transport()
        if transport:
            transport.set_keepalive(_KEEPALIVE_INTERVAL)
            transport.default_window_size = 64 * 1024 * 1024  # 64 MB
            transport.packetizer.REKEY_BYTES = pow(2, 40)
            transport.packetizer.REKEY_TIME = pow(2, 40)

        self._client = client
        self._sftp = sftp
        logger.info("Connected to %s", self.host)

    def close(self) -> None:
        """Close the SFTP and SSH channels; safe to call twice."""
        if self._sftp is not None:
            try:
                self._sftp.close()
            except (OSError, paramiko.SSHException) as exc:
                logger.debug("Ignoring error while closing SFTP: %s", exc)
            self._sftp = None
        if self._client is not None:
            _close_client_safely(self._client)
            self._client = None
            logger.info("Disconnected from %s", self.host)

    @property
    def _target(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    @property
    def sftp(self) -> paramiko.SFTPClient:
        """The open SFTP client.

        Raises:
            ProtocolError: If the session is not connected.
        """
        if self._sftp is None:
            raise ProtocolError(f"Not connected to {self.host}")
        return self._sftp

    # ------------------------------------------------------------------
    # Remote filesystem
    # ------------------------------------------------------------------

    def stat(self, remote_path: str) -> SFTPAttributes:
        return self.sftp.stat(remote_path)

    def is_dir(self, remote_path: str) -> bool:
        """Return True if *remote_path* exists and is a directory."""
        try:
            attr = self.sftp.stat(remote_path)
        except OSError:
            return False
        return isinstance(attr.st_mode, int) and stat.S_ISDIR(attr.st_mode)

    def list_dir(self, remote_path: str) -> list[SFTPAttributes]:
        """List *remote_path*.

        Raises:
            ValueError: If *remote_path* fails validation.
            OSError: On permission denied or path-not-found.
        """
        if not validate_remote_path(remote_path):
            raise ValueError(f"Invalid remote path: {remote_path!r}")
        entries: list[SFTPAttributes] = self.sftp.listdir_attr(remote_path)
        logger.debug("Listed %d entries in %s", len(entries), remote_path)
        return entries

    def walk(self, remote_dir: str) -> list[tuple[str, bool, int]]:
        """Return ``(path, is_dir, size)`` for every entry under *remote_dir*.

        Parents come before their children.
        """
        results: list[tuple[str, bool, int]] = []
        for attr in self.list_dir(remote_dir):
            full = posix_join(remote_dir, attr.filename)
            is_dir = bool(attr.st_mode and stat.S_ISDIR(attr.st_mode))
            results.append((full, is_dir, attr.st_size or 0))
            if is_dir:
                results.extend(self.walk(full))
        return results

    def makedirs(self, remote_path: str) -> None:
        """Create *remote_path* and any missing ancestor directories."""
        parts = [p for p in remote_path.split("/") if p]
        cumulative = "" if remote_path.startswith("/") else "."
        for part in parts:
            cumulative = f"{cumulative}/{part}"
            if self.is_dir(cumulative):
                continue
            self.sftp.mkdir(cumulative)

    # ------------------------------------------------------------------
    # File transfer
    # ------------------------------------------------------------------

    def upload_file(
        self,
        local_path: str | os.PathLike[str],
        remote_path: str,
        token: CancelToken,
        on_chunk: ChunkCallback | None = None,
    ) -> bool:
        """Upload one file to ``remote_path`` via ``remote_path.tmp`` + rename.

        Returns False (and removes the partial ``.tmp``) if cancelled.
        """
        size = os.path.getsize(local_path)
        tmp_remote = remote_path + TMP_SUFFIX
        try:
            with open(local_path, "rb") as local_fh:
                with self.sftp.open(tmp_remote, "wb") as remote_fh:
                    # Pipelined mode keeps many write requests in flight;
                    # close() still waits for every ACK before the rename.
                    remote_fh.set_pipelined(True)
                    finished = _stream(local_fh, remote_fh, size, token, on_chunk)
            if not finished:
                self._remove_quietly(tmp_remote)
                return False
            self._finalise(tmp_remote, remote_path)
        except OSError:
            self._remove_quietly(tmp_remote)
            raise
        logger.debug("Upload complete: %s -> %s", local_path, remote_path)
        return True

    def download_file(
        self,
        remote_path: str,
        local_path: str | os.PathLike[str],
        token: CancelToken,
        on_chunk: ChunkCallback | None = None,
    ) -> bool:
        """Download one file to ``local_path`` via ``local_path.tmp`` + replace.

        Returns False (and removes the partial ``.tmp``) if cancelled.
        """
        tmp_local = Path(str(local_path) + TMP_SUFFIX)
        try:
            size = self.sftp.stat(remote_path).st_size or 0
            with self.sftp.open(remote_path, "rb") as remote_fh:
                remote_fh.prefetch(size)
                with open(tmp_local, "wb") as local_fh:
                    finished = _stream(remote_fh, local_fh, size, token, on_chunk)
            if not finished:
                tmp_local.unlink()
                return False
            os.replace(tmp_local, local_path)
        except OSError:
            if tmp_local.exists():
                tmp_local.unlink()
            raise
        logger.debug("Download complete: %s -> %s", remote_path, local_path)
        return True

    def _finalise(self, tmp_remote: str, remote_path: str) -> None:
        """Atomically move an uploaded ``.tmp`` onto *remote_path*."""
        try:
            self.sftp.posix_rename(tmp_remote, remote_path)
            return
        except OSError:
            logger.debug("posix-rename unsupported, falling back to remove + rename")
        try:
            self.sftp.remove(remote_path)
        except FileNotFoundError:
            pass
        self.sftp.rename(tmp_remote, remote_path)

    def _remove_quietly(self, remote_path: str) -> None:
        try:
            self.sftp.remove(remote_path)
        except OSError as exc:
            logger.debug("Could not remove %s: %s", remote_path, exc)


def _stream(src, dst, size: int, token: CancelToken, on_chunk: ChunkCallback | None) -> bool:
    """Stream *src* into *dst* in chunks; return False if cancelled.

    The token is checked before every chunk, so a cancel stops issuing
    requests within one chunk.
    """
    done = 0
    while True:
        if token.is_cancelled():
            return False
        chunk = src.read(CHUNK_SIZE)
        if not chunk:
            break
        dst.write(chunk)
        done += len(chunk)
        if on_chunk is not None:
            on_chunk(done, size)
    return True
