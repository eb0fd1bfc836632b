"""Tests for fileworks/connection.py — keyring helpers and SftpSession.

paramiko's SSHClient is mocked throughout; file transfers run against small
in-memory stand-ins for SFTP file handles.
"""

from __future__ import annotations

import io
import socket
import stat
from pathlib import Path
from unittest.mock import MagicMock, patch

import keyring.errors
import paramiko
import pytest

from fileworks.cancel import CancelToken
from fileworks.connection import (
    KEYRING_SERVICE,
    SftpSession,
    _LoggingPolicy,
    delete_password,
    lookup_password,
    store_password,
)
from fileworks.errors import ProtocolError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class _RemoteFile(io.BytesIO):
    """BytesIO with the paramiko SFTPFile extras the session calls."""

    def __init__(self, store: dict, path: str, data: bytes = b"") -> None:
        super().__init__(data)
        self._store = store
        self._path = path

    def set_pipelined(self, pipelined: bool = True) -> None:
        pass

    def prefetch(self, file_size: int | None = None) -> None:
        pass

    def close(self) -> None:
        if not self.closed:
            self._store[self._path] = self.getvalue()
        super().close()


@pytest.fixture()
def fake_sftp() -> MagicMock:
    """A mock SFTPClient backed by a dict of path -> bytes."""
    files: dict[str, bytes] = {}
    sftp = MagicMock()
    sftp.files = files

    def open_(path: str, mode: str = "r"):
        if "w" in mode:
            return _RemoteFile(files, path)
        if path not in files:
            raise FileNotFoundError(path)
        return _RemoteFile(files, path, files[path])

    def stat_(path: str):
        if path not in files:
            raise FileNotFoundError(path)
        return MagicMock(st_size=len(files[path]), st_mode=stat.S_IFREG | 0o644)

    def posix_rename(old: str, new: str) -> None:
        files[new] = files.pop(old)

    def remove(path: str) -> None:
        if path not in files:
            raise FileNotFoundError(path)
        del files[path]

    sftp.open.side_effect = open_
    sftp.stat.side_effect = stat_
    sftp.posix_rename.side_effect = posix_rename
    sftp.remove.side_effect = remove
    return sftp


@pytest.fixture()
def session(fake_sftp: MagicMock) -> SftpSession:
    """An SftpSession that looks connected, wired to ``fake_sftp``."""
    s = SftpSession("deck.local", username="deck", password="pw")
    s._sftp = fake_sftp
    return s


def _attr(name: str, mode: int, size: int = 0) -> paramiko.SFTPAttributes:
    attr = paramiko.SFTPAttributes()
    attr.filename = name
    attr.st_mode = mode
    attr.st_size = size
    return attr


# ---------------------------------------------------------------------------
# Keyring
# ---------------------------------------------------------------------------


class TestKeyring:
    def test_lookup(self) -> None:
        with patch("fileworks.connection.keyring.get_password", return_value="pw") as get:
            assert lookup_password("deck", "deck.local") == "pw"
        get.assert_called_once_with(KEYRING_SERVICE, "deck@deck.local")

    def test_lookup_backend_error_is_none(self) -> None:
        with patch(
            "fileworks.connection.keyring.get_password",
            side_effect=keyring.errors.KeyringError("locked"),
        ):
            assert lookup_password("deck", "deck.local") is None

    def test_store(self) -> None:
        with patch("fileworks.connection.keyring.set_password") as set_:
            store_password("deck", "deck.local", "pw")
        set_.assert_called_once_with(KEYRING_SERVICE, "deck@deck.local", "pw")

    def test_delete_missing_is_quiet(self) -> None:
        with patch(
            "fileworks.connection.keyring.delete_password",
            side_effect=keyring.errors.PasswordDeleteError("none"),
        ):
            delete_password("deck", "deck.local")


# ---------------------------------------------------------------------------
# Connect
# ---------------------------------------------------------------------------


class TestConnect:
    def test_password_connect(self) -> None:
        with patch("fileworks.connection.paramiko.SSHClient") as client_cls:
            client = client_cls.return_value
            session = SftpSession("deck.local", 2222, "deck", password="pw")
            session.connect()

        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "deck.local"
        assert kwargs["port"] == 2222
        assert kwargs["password"] == "pw"
        assert kwargs["look_for_keys"] is False
        assert session.sftp is client.open_sftp.return_value

    def test_keyring_consulted_without_password(self) -> None:
        with patch("fileworks.connection.paramiko.SSHClient") as client_cls, \
             patch("fileworks.connection.lookup_password", return_value="stored"):
            SftpSession("deck.local", username="deck").connect()
        assert client_cls.return_value.connect.call_args.kwargs["password"] == "stored"

    def test_key_connect(self) -> None:
        with patch("fileworks.connection.paramiko.SSHClient") as client_cls:
            SftpSession(
                "deck.local", username="deck", key_path="/keys/id", passphrase="pp"
            ).connect()
        kwargs = client_cls.return_value.connect.call_args.kwargs
        assert kwargs["key_filename"] == "/keys/id"
        assert kwargs["passphrase"] == "pp"
        assert "password" not in kwargs

    def test_transport_tuned(self) -> None:
        with patch("fileworks.connection.paramiko.SSHClient") as client_cls:
            SftpSession("deck.local", username="deck", password="pw").connect()
        transport = client_cls.return_value.get_transport.return_value
        assert transport.default_window_size == 64 * 1024 * 1024
        transport.set_keepalive.assert_called_once()

    @pytest.mark.parametrize(
        "exc, fragment",
        [
            (paramiko.AuthenticationException("bad"), "Authentication failed"),
            (socket.timeout(), "timed out"),
            (ConnectionRefusedError(111, "Connection refused"), "Could not connect"),
            (paramiko.SSHException("banner"), "Could not connect"),
        ],
    )
    def test_failures_become_protocol_errors(self, exc: Exception, fragment: str) -> None:
        with patch("fileworks.connection.paramiko.SSHClient") as client_cls:
            client = client_cls.return_value
            client.connect.side_effect = exc
            session = SftpSession("deck.local", username="deck", password="pw")
            with pytest.raises(ProtocolError, match=fragment):
                session.connect()
        client.close.assert_called_once()
        with pytest.raises(ProtocolError):
            session.sftp

    def test_close_twice(self) -> None:
        with patch("fileworks.connection.paramiko.SSHClient") as client_cls:
            session = SftpSession("deck.local", username="deck", password="pw")
            session.connect()
            session.close()
            session.close()
        client_cls.return_value.close.assert_called_once()

    def test_policy_accepts_and_remembers_key(self) -> None:
        client = MagicMock()
        key = MagicMock()
        key.get_name.return_value = "ssh-ed25519"
        key.get_fingerprint.return_value = b"\x01\xab"

        _LoggingPolicy().missing_host_key(client, "deck.local", key)

        client.get_host_keys.return_value.add.assert_called_once_with(
            "deck.local", "ssh-ed25519", key
        )


# ---------------------------------------------------------------------------
# Remote filesystem
# ---------------------------------------------------------------------------


class TestRemoteFilesystem:
    def test_walk_parents_first(self, session: SftpSession, fake_sftp: MagicMock) -> None:
        listing = {
            "/srv/proj": [_attr("sub", stat.S_IFDIR | 0o755), _attr("one.txt", stat.S_IFREG | 0o644, 1)],
            "/srv/proj/sub": [_attr("two.txt", stat.S_IFREG | 0o644, 2)],
        }
        fake_sftp.listdir_attr.side_effect = lambda path: listing[path]

        assert session.walk("/srv/proj") == [
            ("/srv/proj/sub", True, 0),
            ("/srv/proj/sub/two.txt", False, 2),
            ("/srv/proj/one.txt", False, 1),
        ]

    def test_list_dir_rejects_traversal(self, session: SftpSession) -> None:
        with pytest.raises(ValueError):
            session.list_dir("/srv/../etc")

    def test_makedirs_creates_missing_only(self, session: SftpSession, fake_sftp: MagicMock) -> None:
        existing = {"/srv"}

        def stat_(path: str):
            if path not in existing:
                raise FileNotFoundError(path)
            return MagicMock(st_mode=stat.S_IFDIR | 0o755)

        fake_sftp.stat.side_effect = stat_
        session.makedirs("/srv/a/b")
        assert [c.args[0] for c in fake_sftp.mkdir.call_args_list] == ["/srv/a", "/srv/a/b"]


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------


class TestUpload:
    def test_upload_via_tmp(self, session: SftpSession, fake_sftp: MagicMock, tmp_path: Path) -> None:
        local = tmp_path / "a.bin"
        local.write_bytes(b"x" * 1000)
        chunks: list[tuple[int, int]] = []

        assert session.upload_file(local, "/srv/a.bin", CancelToken(), lambda d, t: chunks.append((d, t)))

        assert fake_sftp.files == {"/srv/a.bin": b"x" * 1000}
        fake_sftp.posix_rename.assert_called_once_with("/srv/a.bin.tmp", "/srv/a.bin")
        assert chunks[-1] == (1000, 1000)

    def test_rename_fallback(self, session: SftpSession, fake_sftp: MagicMock, tmp_path: Path) -> None:
        local = tmp_path / "a.bin"
        local.write_bytes(b"new")
        fake_sftp.files["/srv/a.bin"] = b"old"
        fake_sftp.posix_rename.side_effect = IOError("unsupported")

        def rename(old: str, new: str) -> None:
            fake_sftp.files[new] = fake_sftp.files.pop(old)

        fake_sftp.rename.side_effect = rename

        assert session.upload_file(local, "/srv/a.bin", CancelToken())
        assert fake_sftp.files == {"/srv/a.bin": b"new"}

    def test_cancel_removes_tmp(self, session: SftpSession, fake_sftp: MagicMock, tmp_path: Path) -> None:
        local = tmp_path / "a.bin"
        local.write_bytes(b"data")
        token = CancelToken()
        token.cancel()

        assert session.upload_file(local, "/srv/a.bin", token) is False
        assert fake_sftp.files == {}
        fake_sftp.posix_rename.assert_not_called()

    def test_write_error_removes_tmp(self, session: SftpSession, fake_sftp: MagicMock, tmp_path: Path) -> None:
        local = tmp_path / "a.bin"
        local.write_bytes(b"data")
        fake_sftp.posix_rename.side_effect = PermissionError(13, "Permission denied")
        fake_sftp.rename.side_effect = PermissionError(13, "Permission denied")

        with pytest.raises(PermissionError):
            session.upload_file(local, "/srv/a.bin", CancelToken())
        assert "/srv/a.bin.tmp" not in fake_sftp.files


class TestDownload:
    def test_download_via_tmp(self, session: SftpSession, fake_sftp: MagicMock, tmp_path: Path) -> None:
        fake_sftp.files["/srv/a.bin"] = b"payload"
        dest = tmp_path / "a.bin"

        assert session.download_file("/srv/a.bin", dest, CancelToken())

        assert dest.read_bytes() == b"payload"
        assert not (tmp_path / "a.bin.tmp").exists()

    def test_cancel_leaves_nothing(self, session: SftpSession, fake_sftp: MagicMock, tmp_path: Path) -> None:
        fake_sftp.files["/srv/a.bin"] = b"payload"
        dest = tmp_path / "a.bin"
        token = CancelToken()
        token.cancel()

        assert session.download_file("/srv/a.bin", dest, token) is False
        assert list(tmp_path.iterdir()) == []

    def test_missing_remote(self, session: SftpSession, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            session.download_file("/srv/missing", tmp_path / "x", CancelToken())
        assert list(tmp_path.iterdir()) == []
