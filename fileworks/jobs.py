"""Job-start functions: validate synchronously, then run the worker on a thread.

Every ``start_*`` function either raises before any thread exists
(:class:`~fileworks.errors.ValidationError`,
:class:`~fileworks.errors.ToolMissing`) or returns
``(ProgressReceiver, CancelToken)`` immediately.  The job wrapper guarantees
that the channel ends with exactly one ``Completed``, even if the worker
raises.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Iterable, Sequence

from fileworks import archive, localops, remote
from fileworks.cancel import CancelToken
from fileworks.config import ConfigManager
from fileworks.errors import ValidationError
from fileworks.progress import (
    CANCELLED_MESSAGE,
    BatchTally,
    ProgressReceiver,
    ProgressSender,
    open_channel,
)
from fileworks.transport import RemoteProfile, Transport, TransferDirection, TransferRequest
from fileworks.utils.path_helpers import (
    is_valid_relative_path,
    same_directory,
    validate_remote_path,
)

logger = logging.getLogger(__name__)

JobHandle = tuple[ProgressReceiver, CancelToken]

# ---------------------------------------------------------------------------
# Job wrapper
# ---------------------------------------------------------------------------


def _run_job(label: str, worker: Callable, sender: ProgressSender, token: CancelToken) -> None:
    """Thread body: run *worker* and make sure ``Completed`` is sent once."""
    try:
        worker(token, sender)
    except Exception as exc:
        logger.exception("Job %s crashed", label)
        if sender.completed:
            return
        tally = BatchTally()
        if token.is_cancelled():
            sender.error("", CANCELLED_MESSAGE)
            sender.complete(tally, cancelled=True)
            return
        tally.record_failure(f"Unexpected error: {exc}")
        sender.error("", tally.last_error)
        sender.complete(tally)
        return
    if not sender.completed:
        logger.error("Job %s returned without completing", label)
        sender.complete(BatchTally(), cancelled=token.is_cancelled())


def _spawn(label: str, worker: Callable[[CancelToken, ProgressSender], object]) -> JobHandle:
    sender, receiver = open_channel()
    token = CancelToken()
    thread = threading.Thread(
        target=_run_job,
        args=(label, worker, sender, token),
        name=f"job-{label}",
        daemon=True,
    )
    thread.start()
    logger.info("Started %s job", label)
    return receiver, token


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_selection(files: Iterable[str]) -> list[str]:
    files = list(files)
    if not files:
        raise ValidationError("No files selected")
    for name in files:
        reason = is_valid_relative_path(name)
        if reason:
            raise ValidationError(f"Invalid file name '{name}': {reason}")
    return files


def _check_dir(path: str | os.PathLike[str], what: str) -> Path:
    path = Path(path)
    if not path.is_dir():
        raise ValidationError(f"{what} is not a valid directory: {path}")
    return path


def _tuning(settings: ConfigManager | None) -> dict:
    if settings is None:
        return {}
    return {
        "chunk_size": settings.copy_chunk_size,
        "progress_interval": settings.progress_interval,
    }


# ---------------------------------------------------------------------------
# Local jobs
# ---------------------------------------------------------------------------


def start_local_copy_batch(
    files: Iterable[str],
    source_dir: str | os.PathLike[str],
    target_dir: str | os.PathLike[str],
    *,
    overwrite: Iterable[str | os.PathLike[str]] = (),
    skip: Iterable[str | os.PathLike[str]] = (),
    exclude: Iterable[str] = (),
    settings: ConfigManager | None = None,
) -> JobHandle:
    """Copy *files* from *source_dir* into *target_dir* in the background.

    A copy onto the folder it comes from becomes a same-folder duplicate.

    Raises:
        ValidationError: On an empty or unsafe selection or a missing folder.
    """
    files = _check_selection(files)
    source_dir = _check_dir(source_dir, "Source")
    target_dir = _check_dir(target_dir, "Target")
    if same_directory(source_dir, target_dir):
        logger.debug("Copy onto its own folder; duplicating instead")
        return start_same_folder_duplicate(files, source_dir, settings=settings)

    overwrite, skip, exclude = list(overwrite), list(skip), list(exclude)
    tuning = _tuning(settings)

    def worker(token: CancelToken, sender: ProgressSender):
        return localops.copy_many(
            files, source_dir, target_dir, token, sender,
            overwrite=overwrite, skip=skip, exclude=exclude, **tuning,
        )

    return _spawn("copy", worker)


def start_local_move_batch(
    files: Iterable[str],
    source_dir: str | os.PathLike[str],
    target_dir: str | os.PathLike[str],
    *,
    overwrite: Iterable[str | os.PathLike[str]] = (),
    skip: Iterable[str | os.PathLike[str]] = (),
    exclude: Iterable[str] = (),
    settings: ConfigManager | None = None,
) -> JobHandle:
    """Move *files* from *source_dir* into *target_dir* in the background.

    Raises:
        ValidationError: On an unsafe selection, a missing folder, or a move
            onto the folder the files are already in.
    """
    files = _check_selection(files)
    source_dir = _check_dir(source_dir, "Source")
    target_dir = _check_dir(target_dir, "Target")
    if same_directory(source_dir, target_dir):
        raise ValidationError("Source and target are the same folder")

    overwrite, skip, exclude = list(overwrite), list(skip), list(exclude)
    tuning = _tuning(settings)

    def worker(token: CancelToken, sender: ProgressSender):
        return localops.move_many(
            files, source_dir, target_dir, token, sender,
            overwrite=overwrite, skip=skip, exclude=exclude, **tuning,
        )

    return _spawn("move", worker)


def start_same_folder_duplicate(
    files: Iterable[str],
    directory: str | os.PathLike[str],
    *,
    settings: ConfigManager | None = None,
) -> JobHandle:
    """Duplicate *files* next to themselves (``a.txt`` -> ``a_dup.txt``)."""
    files = _check_selection(files)
    directory = _check_dir(directory, "Folder")
    tuning = _tuning(settings)

    def worker(token: CancelToken, sender: ProgressSender):
        return localops.duplicate_many(files, directory, token, sender, **tuning)

    return _spawn("duplicate", worker)


# ---------------------------------------------------------------------------
# Archive jobs
# ---------------------------------------------------------------------------


def start_archive_create(
    source_dir: str | os.PathLike[str],
    archive_name: str,
    files: Iterable[str],
    *,
    excluded: Iterable[str] = (),
    tar_path: str | None = None,
    settings: ConfigManager | None = None,
) -> JobHandle:
    """Create *archive_name* in *source_dir* from *files*.

    *excluded* holds the unsafe symlinks the caller confirmed to leave out
    (see :func:`fileworks.symlinks.filter_symlinks_for_archive`).

    Raises:
        ValidationError: On an invalid name or an existing archive.
        ToolMissing: If no tar executable answers.
    """
    source_dir = _check_dir(source_dir, "Source")
    files = list(files)
    archive.validate_create(source_dir, archive_name, files)
    tar_cmd = archive.resolve_tar_command(tar_path or (settings.tar_path if settings else None))
    excluded = list(excluded)

    def worker(token: CancelToken, sender: ProgressSender):
        return archive.create_archive(
            tar_cmd, source_dir, archive_name, files, token, sender, excluded
        )

    return _spawn("archive-create", worker)


def start_archive_extract(
    archive_path: str | os.PathLike[str],
    *,
    tar_path: str | None = None,
    settings: ConfigManager | None = None,
) -> JobHandle:
    """Extract *archive_path* into a sibling folder named after it.

    Raises:
        ValidationError: If the archive is missing or the folder exists.
        ToolMissing: If no tar executable answers.
    """
    archive.validate_extract(archive_path)
    tar_cmd = archive.resolve_tar_command(tar_path or (settings.tar_path if settings else None))

    def worker(token: CancelToken, sender: ProgressSender):
        return archive.extract_archive(tar_cmd, archive_path, token, sender)

    return _spawn("archive-extract", worker)


# ---------------------------------------------------------------------------
# Remote jobs
# ---------------------------------------------------------------------------


def _check_remote_target(direction: TransferDirection, target_path: str) -> None:
    if not target_path:
        raise ValidationError("Target path cannot be empty")
    if direction is TransferDirection.REMOTE_TO_LOCAL:
        _check_dir(target_path, "Target")
    elif not validate_remote_path(target_path):
        raise ValidationError(f"Invalid remote path: {target_path!r}")


def start_remote_transfer(
    request: TransferRequest,
    *,
    transports: Sequence[Transport] | None = None,
    settings: ConfigManager | None = None,
) -> JobHandle:
    """Run a local<->remote transfer described by *request*.

    Raises:
        ValidationError: On an unsafe selection or an invalid target.
    """
    _check_selection(request.source_files)
    _check_remote_target(request.direction, request.target_path)
    timeout = settings.ssh_timeout if settings else 15.0

    def worker(token: CancelToken, sender: ProgressSender):
        return remote.run_remote_transfer(request, token, sender, transports, timeout)

    return _spawn("remote", worker)


def start_remote_to_remote_transfer(
    source_profile: RemoteProfile,
    target_profile: RemoteProfile,
    source_files: Iterable[str],
    source_base: str,
    target_path: str,
    *,
    staging_root: str | os.PathLike[str] | None = None,
    source_transports: Sequence[Transport] | None = None,
    target_transports: Sequence[Transport] | None = None,
    settings: ConfigManager | None = None,
) -> JobHandle:
    """Copy items from one server to another, staged through a local temp dir.

    Raises:
        ValidationError: On an unsafe selection or an invalid target.
    """
    files = tuple(_check_selection(source_files))
    _check_remote_target(TransferDirection.LOCAL_TO_REMOTE, target_path)
    if staging_root is None and settings is not None:
        staging_root = settings.staging_dir
    timeout = settings.ssh_timeout if settings else 15.0

    def worker(token: CancelToken, sender: ProgressSender):
        return remote.run_remote_to_remote_transfer(
            source_profile, target_profile, files, source_base, target_path,
            token, sender,
            staging_root=staging_root,
            source_transports=source_transports,
            target_transports=target_transports,
            timeout=timeout,
        )

    return _spawn("remote-to-remote", worker)
