"""Tests for fileworks/jobs.py — synchronous validation, threads and the job wrapper."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import patch

import pytest

from fileworks.config import ConfigManager
from fileworks.errors import ToolMissing, ValidationError
from fileworks.jobs import (
    start_archive_create,
    start_archive_extract,
    start_local_copy_batch,
    start_local_move_batch,
    start_remote_to_remote_transfer,
    start_remote_transfer,
    start_same_folder_duplicate,
)
from fileworks.progress import BatchTally, Completed, Error
from fileworks.transport import (
    KeyFileAuth,
    RemoteProfile,
    Transport,
    TransferDirection,
    TransferRequest,
)

PROFILE = RemoteProfile("deck.local", "deck", auth=KeyFileAuth("/keys/id"))


def _collect(receiver, timeout: float = 10.0) -> list:
    """Drain *receiver* until Completed arrives (or fail after *timeout*)."""
    events: list = []
    deadline = time.monotonic() + timeout
    while not receiver.finished:
        events.extend(receiver.drain())
        if time.monotonic() > deadline:
            pytest.fail("job did not complete in time")
        time.sleep(0.01)
    return events


@pytest.fixture()
def dirs(tmp_path: Path) -> tuple[Path, Path]:
    src, dst = tmp_path / "src", tmp_path / "dst"
    src.mkdir()
    dst.mkdir()
    (src / "a.txt").write_text("alpha", encoding="utf-8")
    return src, dst


class _Recorder(Transport):
    name = "recorder"

    def __init__(self) -> None:
        self.items: list[str] = []

    def is_available(self, profile: RemoteProfile) -> bool:
        return True

    def _transfer_item(self, request, item, token, sender) -> bool:
        if request.direction is TransferDirection.REMOTE_TO_LOCAL:
            Path(request.target_path, item).write_text(item, encoding="utf-8")
        self.items.append(item)
        return True


# ---------------------------------------------------------------------------
# Local jobs
# ---------------------------------------------------------------------------


class TestLocalJobs:
    def test_copy_runs_to_completion(self, dirs) -> None:
        src, dst = dirs
        receiver, token = start_local_copy_batch(["a.txt"], src, dst)

        events = _collect(receiver)

        assert events[-1] == Completed(1, 0)
        assert sum(isinstance(e, Completed) for e in events) == 1
        assert (dst / "a.txt").read_text(encoding="utf-8") == "alpha"
        assert not token.is_cancelled()

    def test_copy_onto_same_folder_duplicates(self, dirs) -> None:
        src, _ = dirs
        receiver, _ = start_local_copy_batch(["a.txt"], src, src)
        _collect(receiver)
        assert (src / "a_dup.txt").read_text(encoding="utf-8") == "alpha"

    def test_explicit_duplicate(self, dirs) -> None:
        src, _ = dirs
        receiver, _ = start_same_folder_duplicate(["a.txt", "a.txt"], src)
        _collect(receiver)
        assert (src / "a_dup.txt").exists()
        assert (src / "a_dup2.txt").exists()

    def test_move_onto_same_folder_rejected(self, dirs) -> None:
        src, _ = dirs
        with pytest.raises(ValidationError):
            start_local_move_batch(["a.txt"], src, src)

    def test_move_runs(self, dirs) -> None:
        src, dst = dirs
        receiver, _ = start_local_move_batch(["a.txt"], src, dst)
        assert _collect(receiver)[-1] == Completed(1, 0)
        assert not (src / "a.txt").exists()
        assert (dst / "a.txt").exists()

    @pytest.mark.parametrize("files", [[], ["../a.txt"], ["/etc/passwd"], [""]])
    def test_bad_selection_rejected(self, dirs, files) -> None:
        src, dst = dirs
        with pytest.raises(ValidationError):
            start_local_copy_batch(files, src, dst)

    def test_missing_target_rejected(self, dirs) -> None:
        src, dst = dirs
        with pytest.raises(ValidationError):
            start_local_copy_batch(["a.txt"], src, dst / "nope")

    def test_settings_tuning_is_passed(self, dirs, tmp_path: Path) -> None:
        src, dst = dirs
        settings = ConfigManager(base_dir=tmp_path / "cfg")
        settings.set("copy_chunk_size", 2)
        with patch("fileworks.jobs.localops.copy_many") as copy_many:
            copy_many.side_effect = lambda *a, **kw: a[4].complete(BatchTally())
            receiver, _ = start_local_copy_batch(["a.txt"], src, dst, settings=settings)
            _collect(receiver)
        assert copy_many.call_args.kwargs["chunk_size"] == 2


# ---------------------------------------------------------------------------
# Job wrapper
# ---------------------------------------------------------------------------


class TestJobWrapper:
    def test_crash_still_completes(self, dirs) -> None:
        src, dst = dirs
        with patch("fileworks.jobs.localops.copy_many", side_effect=RuntimeError("boom")):
            receiver, _ = start_local_copy_batch(["a.txt"], src, dst)
            events = _collect(receiver)

        assert events[-2] == Error("", "Unexpected error: boom")
        assert events[-1] == Completed(0, 1)
        assert receiver.result.last_error == "Unexpected error: boom"

    def test_worker_that_forgets_to_complete(self, dirs) -> None:
        src, dst = dirs
        with patch("fileworks.jobs.localops.copy_many", return_value=None):
            receiver, _ = start_local_copy_batch(["a.txt"], src, dst)
            events = _collect(receiver)
        assert events == [Completed(0, 0)]

    def test_cancel_reaches_worker(self, dirs) -> None:
        src, dst = dirs

        def slow(files, source_dir, target_dir, token, sender, **kwargs):
            token.wait(10)
            sender.error("a.txt", "Cancelled")
            return sender.complete(BatchTally(), cancelled=True)

        with patch("fileworks.jobs.localops.copy_many", side_effect=slow):
            receiver, token = start_local_copy_batch(["a.txt"], src, dst)
            token.cancel()
            events = _collect(receiver)

        assert receiver.result.cancelled
        assert events[-2].is_cancellation

    def test_crash_after_cancel_reports_cancellation(self, dirs) -> None:
        src, dst = dirs

        def crash(files, source_dir, target_dir, token, sender, **kwargs):
            token.wait(10)
            raise OSError("late failure")

        with patch("fileworks.jobs.localops.copy_many", side_effect=crash):
            receiver, token = start_local_copy_batch(["a.txt"], src, dst)
            token.cancel()
            events = _collect(receiver)

        assert events[-2] == Error("", "Cancelled")
        assert events[-1] == Completed(0, 0)


# ---------------------------------------------------------------------------
# Archive jobs
# ---------------------------------------------------------------------------


class TestArchiveJobs:
    def test_existing_archive_rejected(self, dirs) -> None:
        src, _ = dirs
        (src / "out.tar").touch()
        with pytest.raises(ValidationError):
            start_archive_create(src, "out.tar", ["a.txt"])

    def test_missing_tool(self, dirs) -> None:
        src, _ = dirs
        with patch("fileworks.archive.probe_version", return_value=False):
            with pytest.raises(ToolMissing):
                start_archive_create(src, "out.tar", ["a.txt"], tar_path="/opt/mytar")

    def test_tar_path_from_settings(self, dirs, tmp_path: Path) -> None:
        src, _ = dirs
        (src / "in.tar").touch()
        settings = ConfigManager(base_dir=tmp_path / "cfg")
        settings.set("tar_path", "/opt/mytar")
        with patch("fileworks.archive.probe_version", return_value=False) as probe:
            with pytest.raises(ToolMissing):
                start_archive_extract(src / "in.tar", settings=settings)
        probe.assert_called_once_with("/opt/mytar")

    def test_extract_dir_exists_rejected(self, dirs) -> None:
        src, _ = dirs
        (src / "in.tar").touch()
        (src / "in").mkdir()
        with pytest.raises(ValidationError):
            start_archive_extract(src / "in.tar")


# ---------------------------------------------------------------------------
# Remote jobs
# ---------------------------------------------------------------------------


class TestRemoteJobs:
    def test_upload_job(self, dirs) -> None:
        src, _ = dirs
        recorder = _Recorder()
        request = TransferRequest(
            TransferDirection.LOCAL_TO_REMOTE, PROFILE, ("a.txt",), str(src), "/home/deck"
        )
        receiver, _ = start_remote_transfer(request, transports=[recorder])
        assert _collect(receiver)[-1] == Completed(1, 0)
        assert recorder.items == ["a.txt"]

    def test_remote_target_traversal_rejected(self, dirs) -> None:
        src, _ = dirs
        request = TransferRequest(
            TransferDirection.LOCAL_TO_REMOTE, PROFILE, ("a.txt",), str(src), "/home/../etc"
        )
        with pytest.raises(ValidationError):
            start_remote_transfer(request)

    def test_download_target_must_exist(self, tmp_path: Path) -> None:
        request = TransferRequest(
            TransferDirection.REMOTE_TO_LOCAL, PROFILE, ("a.txt",), "/srv", str(tmp_path / "nope")
        )
        with pytest.raises(ValidationError):
            start_remote_transfer(request)

    def test_remote_to_remote_uses_configured_staging(self, tmp_path: Path) -> None:
        settings = ConfigManager(base_dir=tmp_path / "cfg")
        staging = tmp_path / "stage"
        settings.set("staging_dir", str(staging))
        down, up = _Recorder(), _Recorder()

        receiver, _ = start_remote_to_remote_transfer(
            PROFILE, PROFILE, ["a.txt", "b.txt"], "/srv", "/incoming",
            source_transports=[down], target_transports=[up], settings=settings,
        )

        assert _collect(receiver)[-1] == Completed(2, 0)
        assert up.items == ["a.txt", "b.txt"]
        assert staging.is_dir()
        assert list(staging.iterdir()) == []
