"""Remote wire transports and the rsync -> scp -> SFTP cascade.

Each :class:`Transport` moves the items of one :class:`TransferRequest` and
reports through the job's progress sender.  Every item lands at
``<target>/<basename(item)>`` whichever transport carries it.

Failure handling:

- A *hard* failure (connection refused, authentication rejected, host
  unreachable) raises :class:`~fileworks.errors.ProtocolError`; the
  remaining items would fail the same way.
- Any other failure is recorded against its item and the batch continues.
"""

from __future__ import annotations

import logging
import os
import shlex
import socket
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Sequence

import paramiko

from fileworks.cancel import CancelToken
from fileworks.connection import SftpSession, lookup_password
from fileworks.errors import ProtocolError
from fileworks.progress import (
    BatchTally,
    FileCompleted,
    FileProgress,
    FileStarted,
    ProgressSender,
)
from fileworks.utils.path_helpers import join_base, posix_join, remote_spec
from fileworks.utils.tools import (
    StreamCollector,
    has_executable,
    has_rsync,
    has_sshpass,
    masked,
    popen_kwargs,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Profiles & requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordAuth:
    """Password authentication; ``None`` means "look it up in the keyring"."""

    password: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class KeyFileAuth:
    path: str
    passphrase: str | None = field(default=None, repr=False)

    @property
    def expanded_path(self) -> str:
        return os.path.expanduser(self.path)


@dataclass(frozen=True)
class RemoteProfile:
    """Where and how to reach one SSH server."""

    host: str
    user: str
    port: int = 22
    auth: PasswordAuth | KeyFileAuth = field(default_factory=PasswordAuth)

    @property
    def uses_password(self) -> bool:
        return isinstance(self.auth, PasswordAuth)

    def resolve_password(self) -> str | None:
        """Return the password to inject, consulting the keyring if needed."""
        if not isinstance(self.auth, PasswordAuth):
            return None
        return self.auth.password or lookup_password(self.user, self.host)

    def spec(self, path: str) -> str:
        """``user@host:path`` for rsync/scp."""
        return remote_spec(self.user, self.host, path)


class TransferDirection(Enum):
    LOCAL_TO_REMOTE = auto()
    REMOTE_TO_LOCAL = auto()


@dataclass(frozen=True)
class TransferRequest:
    """One remote job: *source_files* are relative to *source_base*."""

    direction: TransferDirection
    profile: RemoteProfile
    source_files: tuple[str, ...]
    source_base: str
    target_path: str

    def source_path(self, item: str) -> str:
        """Full source path of *item* (local path or remote POSIX path)."""
        return join_base(self.source_base, item)

    def endpoints(self, item: str) -> tuple[str, str]:
        """``(source, destination)`` arguments for an external tool."""
        src = self.source_path(item)
        if self.direction is TransferDirection.LOCAL_TO_REMOTE:
            return src, self.profile.spec(self.target_path)
        return self.profile.spec(src), self.target_path


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

_SSH_OPTIONS = (
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "LogLevel=ERROR",
)

# Exit codes that mean "could not talk to the server at all"
_HARD_EXIT_CODES = {
    "rsync": {255, 5, 10, 12, 35},
    "scp": {255},
}
_SSHPASS_HARD_EXIT_CODES = {5, 6}   # wrong password, host key unknown

_HARD_STDERR_PATTERNS = (
    "Permission denied (",
    "Connection refused",
    "Could not resolve hostname",
    "Connection timed out",
    "Host key verification failed",
    "No route to host",
    "Connection closed by",
)


def parse_rsync_progress(line: str) -> tuple[int, int] | None:
    """Parse an ``--info=progress2`` line into ``(done_bytes, total_bytes)``.

    ``"  1,234,567  42%  1.23MB/s  0:01:23"`` -> ``(1234567, 2939445)``.
    The total is derived from the percentage; at 0% it is unknown and the
    bytes seen so far are reported as the total.
    """
    parts = line.split()
    if len(parts) < 2 or not parts[1].endswith("%"):
        return None
    try:
        done = int(parts[0].replace(",", ""))
        pct = int(parts[1].rstrip("%"))
    except ValueError:
        return None
    if pct > 0:
        return done, done * 100 // pct
    if done > 0:
        return 0, done
    return None


def is_hard_failure(tool: str, returncode: int, stderr: str, via_sshpass: bool = False) -> bool:
    """Return True if a failed tool run means the whole batch is doomed."""
    if returncode in _HARD_EXIT_CODES.get(tool, ()):
        return True
    if via_sshpass and returncode in _SSHPASS_HARD_EXIT_CODES:
        return True
    return any(pattern in stderr for pattern in _HARD_STDERR_PATTERNS)


def failure_message(tool: str, returncode: int, stderr: str) -> str:
    for line in stderr.splitlines():
        if line.strip():
            return line.strip()
    return f"{tool} exited with code {returncode}"


def build_ssh_option(profile: RemoteProfile) -> str:
    """The ``-e`` remote-shell string for rsync."""
    parts = ["ssh"]
    if profile.port != 22:
        parts += ["-p", str(profile.port)]
    if isinstance(profile.auth, KeyFileAuth):
        parts += ["-i", shlex.quote(profile.auth.expanded_path)]
    parts += _SSH_OPTIONS
    return " ".join(parts)


def rsync_command(request: TransferRequest, item: str) -> list[str]:
    src, dst = request.endpoints(item)
    return [
        "rsync", "-avz", "--info=progress2", "--no-inc-recursive",
        "-e", build_ssh_option(request.profile),
        src, dst,
    ]


def scp_command(request: TransferRequest, item: str) -> list[str]:
    profile = request.profile
    argv = ["scp", "-r"]
    if profile.port != 22:
        argv += ["-P", str(profile.port)]
    if isinstance(profile.auth, KeyFileAuth):
        argv += ["-i", profile.auth.expanded_path]
    argv += _SSH_OPTIONS
    argv += request.endpoints(item)
    return argv


# ---------------------------------------------------------------------------
# Transport base
# ---------------------------------------------------------------------------


class Transport(ABC):
    """One wire protocol.  Subclasses implement :meth:`_transfer_item`."""

    name = "transport"

    @abstractmethod
    def is_available(self, profile: RemoteProfile) -> bool:
        """Return True if this transport can serve *profile* on this machine."""

    def transfer(
        self,
        request: TransferRequest,
        token: CancelToken,
        sender: ProgressSender,
        tally: BatchTally,
    ) -> str | None:
        """Move every item of *request*, recording outcomes in *tally*.

        Returns ``None`` when the list ran to the end, or the name of the item
        that cancellation interrupted (empty if it landed between items).
        Items that arrived are listed in ``self.completed`` afterwards.

        Raises:
            ProtocolError: On a hard failure; the failing item is already
                recorded in *tally* and on the channel.
        """
        logger.info(
            "%s transfer of %d item(s) via %s",
            request.direction.name, len(request.source_files), self.name,
        )
        self.completed: list[str] = []
        try:
            self._open(request)
        except ProtocolError as exc:
            tally.record_failure(str(exc))
            sender.error("", str(exc))
            raise
        try:
            for item in request.source_files:
                if token.is_cancelled():
                    return ""
                sender.send(FileStarted(item))
                try:
                    finished = self._transfer_item(request, item, token, sender)
                except ProtocolError as exc:
                    tally.record_failure(str(exc))
                    sender.error(item, str(exc))
                    raise
                except OSError as exc:
                    message = exc.strerror or str(exc)
                    logger.warning("%s failed for %s: %s", self.name, item, message)
                    tally.record_failure(message)
                    sender.error(item, message)
                    continue
                if not finished:
                    return item
                tally.record_success()
                self.completed.append(item)
                sender.send(FileCompleted(item))
        finally:
            self._close()
        return None

    def _open(self, request: TransferRequest) -> None:
        """Per-job setup (e.g. opening a session)."""

    def _close(self) -> None:
        """Per-job teardown; always runs."""

    @abstractmethod
    def _transfer_item(
        self, request: TransferRequest, item: str, token: CancelToken, sender: ProgressSender
    ) -> bool:
        """Move one item; return False if cancelled.  Raise ``OSError`` on failure."""


# ---------------------------------------------------------------------------
# External tools
# ---------------------------------------------------------------------------


class _ExternalTransport(Transport):
    """Runs one external process per item, optionally behind ``sshpass -e``."""

    tool = ""

    def __init__(self) -> None:
        self._password: str | None = None

    def _external_auth_ok(self, profile: RemoteProfile) -> bool:
        """Key auth without a passphrase, or a password plus sshpass."""
        if isinstance(profile.auth, KeyFileAuth):
            # A passphrase would have to be typed; only the SFTP client can supply it
            return not profile.auth.passphrase
        return has_sshpass() and profile.resolve_password() is not None

    def _open(self, request: TransferRequest) -> None:
        self._password = request.profile.resolve_password()

    def _close(self) -> None:
        self._password = None

    @abstractmethod
    def _command(self, request: TransferRequest, item: str) -> list[str]:
        """Return the argv that moves *item*."""

    def _on_line(self, line: str, sender: ProgressSender) -> None:
        """Handle one stdout line (progress parsing)."""

    def _transfer_item(
        self, request: TransferRequest, item: str, token: CancelToken, sender: ProgressSender
    ) -> bool:
        argv = self._command(request, item)
        env = None
        via_sshpass = self._password is not None
        if via_sshpass:
            argv = ["sshpass", "-e", *argv]
            env = {**os.environ, "SSHPASS": self._password}
        logger.debug("Running: %s", masked(argv, [self._password or ""]))

        kwargs = popen_kwargs()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                env=env,
                **kwargs,
            )
        except OSError as exc:
            raise OSError(f"Failed to start {self.tool}: {exc}") from exc

        token.register_child(proc.pid, process_group=bool(kwargs))
        stderr = StreamCollector(proc.stderr)
        try:
            # Text mode turns rsync's \r progress updates into separate lines
            for line in proc.stdout:
                if token.is_cancelled():
                    break
                self._on_line(line, sender)
        finally:
            if token.is_cancelled() and proc.poll() is None:
                proc.kill()
            returncode = proc.wait()
            token.clear_child()
            proc.stdout.close()

        if token.is_cancelled():
            logger.info("%s of %s interrupted by cancellation", self.tool, item)
            return False
        if returncode == 0:
            return True

        errors = stderr.text()
        message = failure_message(self.tool, returncode, errors)
        if is_hard_failure(self.tool, returncode, errors, via_sshpass):
            raise ProtocolError(message)
        raise OSError(message)


class RsyncTransport(_ExternalTransport):
    name = tool = "rsync"

    def is_available(self, profile: RemoteProfile) -> bool:
        return self._external_auth_ok(profile) and has_rsync()

    def _command(self, request: TransferRequest, item: str) -> list[str]:
        return rsync_command(request, item)

    def _on_line(self, line: str, sender: ProgressSender) -> None:
        parsed = parse_rsync_progress(line)
        if parsed is not None:
            sender.send(FileProgress(*parsed))


class ScpTransport(_ExternalTransport):
    """Start/complete per item only; scp has no parseable progress."""

    name = tool = "scp"

    def is_available(self, profile: RemoteProfile) -> bool:
        return self._external_auth_ok(profile) and has_executable("scp")

    def _command(self, request: TransferRequest, item: str) -> list[str]:
        return scp_command(request, item)


# ---------------------------------------------------------------------------
# Built-in SFTP
# ---------------------------------------------------------------------------

SessionFactory = Callable[[RemoteProfile], SftpSession]


def open_session(profile: RemoteProfile, timeout: float = 15.0) -> SftpSession:
    """Build a connected :class:`SftpSession` for *profile*."""
    if isinstance(profile.auth, KeyFileAuth):
        session = SftpSession(
            profile.host, profile.port, profile.user,
            key_path=profile.auth.path, passphrase=profile.auth.passphrase, timeout=timeout,
        )
    else:
        session = SftpSession(
            profile.host, profile.port, profile.user,
            password=profile.resolve_password(), timeout=timeout,
        )
    session.connect()
    return session


class SftpTransport(Transport):
    """paramiko fallback: one session per job, client-side recursion."""

    name = "sftp"

    def __init__(self, session_factory: SessionFactory | None = None, timeout: float = 15.0) -> None:
        self._factory = session_factory or (lambda profile: open_session(profile, timeout))
        self._session: SftpSession | None = None

    def is_available(self, profile: RemoteProfile) -> bool:
        return True

    def _open(self, request: TransferRequest) -> None:
        self._session = self._factory(request.profile)

    def _close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def _transfer_item(
        self, request: TransferRequest, item: str, token: CancelToken, sender: ProgressSender
    ) -> bool:
        src = request.source_path(item)
        try:
            if request.direction is TransferDirection.LOCAL_TO_REMOTE:
                return self._upload(src, request.target_path, token, sender)
            return self._download(src, request.target_path, token, sender)
        except (paramiko.SSHException, EOFError, socket.timeout) as exc:
            raise ProtocolError(f"SFTP session to {request.profile.host} failed: {exc}") from exc

    # -- upload ---------------------------------------------------------

    def _upload(self, src: str, target: str, token: CancelToken, sender: ProgressSender) -> bool:
        session = self._session
        dest = posix_join(target, os.path.basename(src.rstrip("/")))
        if not os.path.isdir(src):
            return session.upload_file(src, dest, token, _progress(sender, 0, os.path.getsize(src)))

        files: list[tuple[str, str, int]] = []
        dirs = [dest]
        for dirpath, dirnames, filenames in os.walk(src):
            rel_dir = Path(os.path.relpath(dirpath, src)).as_posix()
            remote_dir = dest if rel_dir == "." else posix_join(dest, rel_dir)
            dirs += [posix_join(remote_dir, d) for d in sorted(dirnames)]
            for name in sorted(filenames):
                local = os.path.join(dirpath, name)
                if os.path.islink(local) and not os.path.exists(local):
                    logger.debug("Skipping dangling link %s", local)
                    continue
                files.append((local, posix_join(remote_dir, name), os.path.getsize(local)))

        for remote_dir in dirs:
            session.makedirs(remote_dir)
        total = sum(size for _, _, size in files)
        done = 0
        for local, remote, size in files:
            if token.is_cancelled():
                return False
            if not session.upload_file(local, remote, token, _progress(sender, done, total)):
                return False
            done += size
        return True

    # -- download -------------------------------------------------------

    def _download(self, src: str, target: str, token: CancelToken, sender: ProgressSender) -> bool:
        session = self._session
        dest = Path(target) / os.path.basename(src.rstrip("/"))
        if not session.is_dir(src):
            size = session.stat(src).st_size or 0
            return session.download_file(src, dest, token, _progress(sender, 0, size))

        entries = session.walk(src)
        dest.mkdir(parents=True, exist_ok=True)
        total = sum(size for _, is_dir, size in entries if not is_dir)
        done = 0
        for remote, is_dir, size in entries:
            if token.is_cancelled():
                return False
            local = dest / remote[len(src.rstrip("/")):].lstrip("/")
            if is_dir:
                local.mkdir(parents=True, exist_ok=True)
                continue
            if not session.download_file(remote, local, token, _progress(sender, done, total)):
                return False
            done += size
        return True


def _progress(sender: ProgressSender, offset: int, total: int):
    """Chunk callback that reports item-level bytes as FileProgress."""

    def on_chunk(done: int, _size: int) -> None:
        sender.send(FileProgress(offset + done, total))

    return on_chunk


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------


def default_transports(timeout: float = 15.0) -> list[Transport]:
    """The cascade in priority order."""
    return [RsyncTransport(), ScpTransport(), SftpTransport(timeout=timeout)]


def select_transport(profile: RemoteProfile, transports: Sequence[Transport]) -> Transport:
    """Return the first transport available for *profile*.

    Raises:
        ProtocolError: If none is available (only possible with a custom list).
    """
    for transport in transports:
        if transport.is_available(profile):
            logger.debug("Selected %s transport for %s", transport.name, profile.host)
            return transport
    raise ProtocolError(f"No transport available for {profile.user}@{profile.host}")
