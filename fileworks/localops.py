"""Local file operations: primitives and the progress-reporting batch workers.

Primitives (:func:`copy_path`, :func:`move_path`, :func:`delete_path`,
:func:`create_directory`, :func:`rename_path`) are synchronous single-path
calls that return an :class:`OpResult`.

The batch workers (:func:`copy_many`, :func:`move_many`,
:func:`duplicate_many`) run on a job thread and report through a
:class:`~fileworks.progress.ProgressSender`:

- Regular files stream in chunks into a uniquely named ``.part`` sibling,
  then ``os.replace`` onto the destination, so an overwritten file is never
  half-written.  Named pipes, sockets and devices are per-entry errors.
- One entry's failure is recorded and the batch continues.
- The cancel token is checked before each entry and after each chunk.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import stat
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from fileworks.cancel import CancelToken
from fileworks.conflicts import source_key
from fileworks.progress import (
    CANCELLED_MESSAGE,
    BatchTally,
    FileCompleted,
    FileProgress,
    FileStarted,
    JobResult,
    PrepareComplete,
    Preparing,
    ProgressSender,
    TotalProgress,
)
from fileworks.utils.path_helpers import (
    human_readable_size,
    is_valid_filename,
    is_within,
    split_extension,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024          # 256 KB per read/write call
PROGRESS_INTERVAL = 0.05         # seconds between FileProgress events
PART_SUFFIX = ".part"
_DUP_PROBE_LIMIT = 10000

# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OpResult:
    """Outcome of a synchronous primitive: success, or the reason it failed."""

    success: bool
    error: str | None = None

    def __bool__(self) -> bool:
        return self.success


_OK = OpResult(True)


def _fail(message: str) -> OpResult:
    logger.warning("File operation failed: %s", message)
    return OpResult(False, message)


def copy_path(src: str | os.PathLike[str], dest: str | os.PathLike[str]) -> OpResult:
    """Copy a file, symlink or directory tree to *dest*, which must not exist."""
    src, dest = Path(src), Path(dest)
    if os.path.abspath(src) == os.path.abspath(dest):
        return _fail("Source and destination are the same file")
    if os.path.lexists(dest):
        return _fail("Target already exists. Delete it first or choose a different name.")
    try:
        if src.is_symlink():
            os.symlink(os.readlink(src), dest)
        elif src.is_dir():
            if is_within(os.path.realpath(dest), os.path.realpath(src)):
                return _fail(f"Cannot copy '{src.name}' into itself")
            shutil.copytree(src, dest, symlinks=True)
        else:
            shutil.copy2(src, dest)
    except OSError as exc:
        return _fail(str(exc))
    return _OK


def move_path(src: str | os.PathLike[str], dest: str | os.PathLike[str]) -> OpResult:
    """Move *src* to *dest* (which must not exist), copying across devices."""
    src, dest = Path(src), Path(dest)
    if os.path.abspath(src) == os.path.abspath(dest):
        return _fail("Source and destination are the same")
    if os.path.lexists(dest):
        return _fail("Target already exists. Delete it first or choose a different name.")
    try:
        os.rename(src, dest)
        return _OK
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            return _fail(str(exc))
    copied = copy_path(src, dest)
    if not copied:
        return copied
    return delete_path(src)


def delete_path(path: str | os.PathLike[str]) -> OpResult:
    """Delete a file or directory tree; a symlink is removed, never followed."""
    try:
        _remove(Path(path))
    except OSError as exc:
        return _fail(str(exc))
    return _OK


def create_directory(parent: str | os.PathLike[str], name: str) -> OpResult:
    """Create directory *name* inside *parent*."""
    reason = is_valid_filename(name)
    if reason:
        return _fail(reason)
    parent = Path(parent)
    path = parent / name
    if not _stays_inside(path, parent):
        return _fail("Path traversal attempt detected")
    if os.path.lexists(path):
        return _fail(f"'{name}' already exists")
    try:
        path.mkdir()
    except OSError as exc:
        return _fail(str(exc))
    return _OK


def rename_path(path: str | os.PathLike[str], new_name: str) -> OpResult:
    """Rename *path* to *new_name* within the same directory."""
    reason = is_valid_filename(new_name)
    if reason:
        return _fail(reason)
    path = Path(path)
    target = path.parent / new_name
    if not _stays_inside(target, path.parent):
        return _fail("Path traversal attempt detected")
    if os.path.lexists(target):
        return _fail(f"'{new_name}' already exists")
    try:
        path.rename(target)
    except OSError as exc:
        return _fail(str(exc))
    return _OK


def _stays_inside(path: Path, parent: Path) -> bool:
    return os.path.realpath(path.parent) == os.path.realpath(parent)


def _remove(path: Path) -> None:
    """Remove *path* whatever it is; raise ``OSError`` on failure."""
    mode = os.lstat(path).st_mode
    if stat.S_ISDIR(mode):
        shutil.rmtree(path)
    else:
        os.unlink(path)


def generate_dup_name(name: str, directory: str | os.PathLike[str]) -> str:
    """Return the first free ``_dup`` variant of *name* in *directory*.

    ``a.txt`` -> ``a_dup.txt``, then ``a_dup2.txt``, ``a_dup3.txt`` ...
    """
    directory = Path(directory)
    stem, ext = split_extension(name)
    candidate = f"{stem}_dup{ext}"
    if not os.path.lexists(directory / candidate):
        return candidate
    for counter in range(2, _DUP_PROBE_LIMIT + 1):
        candidate = f"{stem}_dup{counter}{ext}"
        if not os.path.lexists(directory / candidate):
            return candidate
    return f"{stem}_dup{int(time.time() * 1000)}{ext}"


# ---------------------------------------------------------------------------
# Batch copier
# ---------------------------------------------------------------------------


class _Interrupted(Exception):
    """Cancellation observed in the middle of an entry."""


@dataclass
class _Measure:
    files: int = 0
    bytes: int = 0


def _measure(path: Path, excluded: set[str]) -> _Measure:
    """Count nodes and bytes under *path* the way the copier will visit them."""
    total = _Measure()
    try:
        st = os.lstat(path)
    except OSError:
        return total
    if not stat.S_ISDIR(st.st_mode):
        if stat.S_ISREG(st.st_mode):
            total.files, total.bytes = 1, st.st_size
        elif stat.S_ISLNK(st.st_mode):
            total.files = 1
        return total
    total.files = 1
    for dirpath, dirnames, filenames in os.walk(path, followlinks=False):
        dirnames[:] = [d for d in dirnames if os.path.join(dirpath, d) not in excluded]
        total.files += len(dirnames)
        for entry in filenames:
            full = os.path.join(dirpath, entry)
            if full in excluded:
                continue
            try:
                st = os.lstat(full)
            except OSError:
                total.files += 1
                continue
            # Pipes, sockets and devices are reported, never copied
            if stat.S_ISREG(st.st_mode):
                total.files += 1
                total.bytes += st.st_size
            elif stat.S_ISLNK(st.st_mode):
                total.files += 1
    return total


class _Copier:
    """Streams one batch's entries and keeps the running totals.

    ``current`` names the leaf in flight so the cancellation marker can
    reference it.
    """

    def __init__(
        self,
        token: CancelToken,
        sender: ProgressSender,
        total: _Measure,
        excluded: set[str],
        chunk_size: int = CHUNK_SIZE,
        progress_interval: float = PROGRESS_INTERVAL,
    ) -> None:
        self._token = token
        self._sender = sender
        self._total = total
        self._excluded = excluded
        self._chunk_size = chunk_size
        self._interval = progress_interval
        self.done_files = 0
        self.done_bytes = 0
        self.current: str | None = None
        self.entry_error: str | None = None

    # -- progress -------------------------------------------------------

    def emit_total(self, extra_bytes: int = 0) -> None:
        self._sender.send(
            TotalProgress(
                self.done_files,
                self._total.files,
                self.done_bytes + extra_bytes,
                self._total.bytes,
            )
        )

    def account(self, measure: _Measure) -> None:
        """Credit a whole entry handled without streaming (rename, skip)."""
        self.done_files += measure.files
        self.done_bytes += measure.bytes
        self.emit_total()

    def _started(self, name: str) -> None:
        self.current = name
        self._sender.send(FileStarted(name))

    def _completed(self, name: str, size: int = 0) -> None:
        self.current = None
        self.done_files += 1
        self.done_bytes += size
        self._sender.send(FileCompleted(name))
        self.emit_total()

    def _failed(self, name: str, message: str) -> None:
        self.current = None
        self.entry_error = message
        self._sender.error(name, message)
        logger.warning("Copy failed for %s: %s", name, message)

    # -- entries --------------------------------------------------------

    def copy_entry(self, src: Path, dest: Path, name: str, exclusive: bool = False) -> bool:
        """Copy one top-level entry; return True if it fully succeeded.

        Raises:
            _Interrupted: If cancellation was observed mid-entry.
        """
        self.entry_error = None
        try:
            mode = os.lstat(src).st_mode
        except OSError as exc:
            self._started(name)
            self._failed(name, str(exc))
            return False

        if stat.S_ISDIR(mode):
            if is_within(os.path.realpath(dest), os.path.realpath(src)):
                self._started(name)
                self._failed(name, f"Cannot copy '{name}' into itself")
                return False
            self._copy_dir(src, dest, name, exclusive)
        elif stat.S_ISLNK(mode):
            self._copy_link(src, dest, name, exclusive)
        else:
            self._copy_file(src, dest, name, exclusive)
        return self.entry_error is None

    def _copy_dir(self, src: Path, dest: Path, name: str, exclusive: bool) -> None:
        self._started(name)
        try:
            if exclusive:
                os.mkdir(dest)
            elif os.path.lexists(dest) and not dest.is_dir():
                raise OSError(errno.EEXIST, "Cannot overwrite a file with a directory")
            else:
                dest.mkdir(exist_ok=True)
            children = sorted(os.listdir(src))
        except OSError as exc:
            self._failed(name, exc.strerror or str(exc))
            return
        self._completed(name)

        for child in children:
            if self._token.is_cancelled():
                raise _Interrupted()
            child_src = src / child
            if str(child_src) in self._excluded:
                logger.debug("Excluded from copy: %s", child_src)
                continue
            child_name = f"{name}/{child}"
            child_dest = dest / child
            try:
                mode = os.lstat(child_src).st_mode
            except OSError as exc:
                self._started(child_name)
                self._failed(child_name, str(exc))
                continue
            if stat.S_ISDIR(mode):
                self._copy_dir(child_src, child_dest, child_name, exclusive=False)
            elif stat.S_ISLNK(mode):
                self._copy_link(child_src, child_dest, child_name, exclusive=False)
            else:
                self._copy_file(child_src, child_dest, child_name, exclusive=False)

    def _copy_link(self, src: Path, dest: Path, name: str, exclusive: bool) -> None:
        self._started(name)
        try:
            target = os.readlink(src)
            if os.path.lexists(dest):
                if exclusive:
                    raise FileExistsError(errno.EEXIST, "destination already exists")
                if dest.is_dir() and not dest.is_symlink():
                    raise OSError(errno.EISDIR, "Cannot overwrite a directory with a link")
                os.unlink(dest)
            os.symlink(target, dest)
        except OSError as exc:
            self._failed(name, exc.strerror or str(exc))
            return
        self._completed(name)

    def _copy_file(self, src: Path, dest: Path, name: str, exclusive: bool) -> None:
        self._started(name)
        try:
            st = os.lstat(src)
            if not stat.S_ISREG(st.st_mode):
                raise shutil.SpecialFileError(
                    f"'{src.name}' is a {_special_kind(st.st_mode)} and cannot be copied"
                )
            size = st.st_size
            if exclusive:
                finished = self._write_exclusive(src, dest, size)
            else:
                if dest.is_dir() and not dest.is_symlink():
                    raise OSError(errno.EISDIR, "Cannot overwrite a directory with a file")
                finished = self._write_replacing(src, dest, size)
        except OSError as exc:
            self._failed(name, exc.strerror or str(exc))
            return
        if not finished:
            logger.info("Copy of %s interrupted by cancellation", name)
            raise _Interrupted()
        self._completed(name, size)

    def _write_replacing(self, src: Path, dest: Path, size: int) -> bool:
        """Stream into a fresh ``.part`` sibling then atomically replace *dest*.

        The staging file is created with ``mkstemp``, so an existing file
        that merely looks like one (``a.txt.part``) is never touched.
        """
        with open(src, "rb") as src_fh:
            fd, part_name = tempfile.mkstemp(
                dir=dest.parent, prefix=f".{dest.name}.", suffix=PART_SUFFIX
            )
            part = Path(part_name)
            try:
                with os.fdopen(fd, "wb") as dst_fh:
                    finished = self._stream(src_fh, dst_fh, size)
                if finished:
                    _copy_metadata(src, part)
                    os.replace(part, dest)
            except OSError:
                part.unlink(missing_ok=True)
                raise
        if not finished:
            part.unlink()
        return finished

    def _write_exclusive(self, src: Path, dest: Path, size: int) -> bool:
        """Stream into *dest*, created with O_EXCL so nothing is overwritten."""
        with open(src, "rb") as src_fh:
            # "x" mode: fail if dest appeared since the name was probed
            dst_fh = open(dest, "xb")
            try:
                with dst_fh:
                    finished = self._stream(src_fh, dst_fh, size)
                if finished:
                    _copy_metadata(src, dest)
            except OSError:
                dest.unlink()
                raise
        if not finished:
            dest.unlink()
        return finished

    def _stream(self, src, dst, size: int) -> bool:
        """Copy *src* to *dst* chunk by chunk; return False if cancelled.

        Progress is throttled to one event per ``progress_interval`` plus a
        final event at 100%.
        """
        copied = 0
        last_emit = time.monotonic()
        while True:
            if self._token.is_cancelled():
                return False
            chunk = src.read(self._chunk_size)
            if not chunk:
                break
            dst.write(chunk)
            copied += len(chunk)
            now = time.monotonic()
            if now - last_emit >= self._interval:
                last_emit = now
                self._sender.send(FileProgress(copied, size))
                self.emit_total(extra_bytes=copied)
        self._sender.send(FileProgress(copied, size))
        return True


def _special_kind(mode: int) -> str:
    if stat.S_ISFIFO(mode):
        return "named pipe"
    if stat.S_ISSOCK(mode):
        return "socket"
    return "device file"


def _copy_metadata(src: Path, dest: Path) -> None:
    """Copy permission bits and timestamps; tolerate filesystems that refuse."""
    try:
        shutil.copystat(src, dest)
    except OSError as exc:
        logger.debug("copystat %s -> %s failed: %s", src, dest, exc)


# ---------------------------------------------------------------------------
# Batch workers
# ---------------------------------------------------------------------------


def _prepare(
    sender: ProgressSender,
    sources: list[tuple[str, Path]],
    excluded: set[str],
) -> tuple[_Measure, dict[str, _Measure]]:
    sender.send(Preparing("Calculating file sizes..."))
    per_entry: dict[str, _Measure] = {}
    total = _Measure()
    for name, src in sources:
        measure = _measure(src, excluded)
        per_entry[name] = measure
        total.files += measure.files
        total.bytes += measure.bytes
    logger.debug("Selection: %d node(s), %s", total.files, human_readable_size(total.bytes))
    sender.send(PrepareComplete())
    sender.send(TotalProgress(0, total.files, 0, total.bytes))
    return total, per_entry


def _finish(
    sender: ProgressSender, tally: BatchTally, interrupted: bool, current: str | None
) -> JobResult:
    if interrupted:
        sender.error(current or "", CANCELLED_MESSAGE)
        return sender.complete(tally, cancelled=True)
    return sender.complete(tally)


def _resolve_excluded(source_dir: Path, exclude: Iterable[str]) -> set[str]:
    return {str(source_dir / rel) for rel in exclude}


def copy_many(
    files: Iterable[str],
    source_dir: str | os.PathLike[str],
    target_dir: str | os.PathLike[str],
    token: CancelToken,
    sender: ProgressSender,
    *,
    overwrite: Iterable[str | os.PathLike[str]] = (),
    skip: Iterable[str | os.PathLike[str]] = (),
    exclude: Iterable[str] = (),
    chunk_size: int = CHUNK_SIZE,
    progress_interval: float = PROGRESS_INTERVAL,
) -> JobResult:
    """Copy *files* (names relative to *source_dir*) into *target_dir*.

    Entries whose source path is in *skip* are left alone; every other entry
    overwrites an existing destination.  *overwrite* only documents the
    caller's explicit decisions.  *exclude* holds paths relative to
    *source_dir* (unsafe symlinks) that are never copied.
    """
    source_dir, target_dir = Path(source_dir), Path(target_dir)
    files = list(files)
    skip_keys = {source_key(p) for p in skip}
    overwrite_keys = {source_key(p) for p in overwrite}
    excluded = _resolve_excluded(source_dir, exclude)
    tally = BatchTally()

    todo = []
    for name in files:
        if source_key(source_dir / name) in skip_keys:
            tally.record_skip()
        elif str(source_dir / name) in excluded:
            logger.debug("Excluded from copy: %s", name)
        else:
            todo.append((name, source_dir / name))

    if not todo:
        logger.info("Copy: nothing to do (%d skipped)", tally.skipped)
        return sender.complete(tally)

    logger.info("Copy %d item(s) %s -> %s", len(todo), source_dir, target_dir)
    total, _ = _prepare(sender, todo, excluded)
    copier = _Copier(token, sender, total, excluded, chunk_size, progress_interval)

    interrupted = False
    for name, src in todo:
        if token.is_cancelled():
            interrupted = True
            break
        if source_key(src) in overwrite_keys:
            logger.debug("Overwriting %s by request", name)
        try:
            ok = copier.copy_entry(src, target_dir / name, name)
        except _Interrupted:
            interrupted = True
            break
        if ok:
            tally.record_success()
        else:
            tally.record_failure(copier.entry_error or "copy failed")

    return _finish(sender, tally, interrupted, copier.current)


def move_many(
    files: Iterable[str],
    source_dir: str | os.PathLike[str],
    target_dir: str | os.PathLike[str],
    token: CancelToken,
    sender: ProgressSender,
    *,
    overwrite: Iterable[str | os.PathLike[str]] = (),
    skip: Iterable[str | os.PathLike[str]] = (),
    exclude: Iterable[str] = (),
    chunk_size: int = CHUNK_SIZE,
    progress_interval: float = PROGRESS_INTERVAL,
) -> JobResult:
    """Move *files* into *target_dir*.

    A same-filesystem move is a single ``os.replace``.  Otherwise the entry is
    copied and the source deleted afterwards; if that delete fails the
    destination is kept and the entry counts as a failure.
    """
    source_dir, target_dir = Path(source_dir), Path(target_dir)
    files = list(files)
    skip_keys = {source_key(p) for p in skip}
    excluded = _resolve_excluded(source_dir, exclude)
    tally = BatchTally()

    todo = []
    for name in files:
        if source_key(source_dir / name) in skip_keys:
            tally.record_skip()
        elif str(source_dir / name) in excluded:
            logger.debug("Excluded from move: %s", name)
        else:
            todo.append((name, source_dir / name))

    if not todo:
        logger.info("Move: nothing to do (%d skipped)", tally.skipped)
        return sender.complete(tally)

    logger.info("Move %d item(s) %s -> %s", len(todo), source_dir, target_dir)
    total, per_entry = _prepare(sender, todo, excluded)
    copier = _Copier(token, sender, total, excluded, chunk_size, progress_interval)

    interrupted = False
    for name, src in todo:
        if token.is_cancelled():
            interrupted = True
            break
        dest = target_dir / name
        try:
            ok = _move_entry(copier, src, dest, name, per_entry[name], bool(excluded))
        except _Interrupted:
            interrupted = True
            break
        if ok:
            tally.record_success()
        else:
            tally.record_failure(copier.entry_error or "move failed")

    return _finish(sender, tally, interrupted, copier.current)


def _move_entry(
    copier: _Copier, src: Path, dest: Path, name: str, measure: _Measure, has_exclusions: bool
) -> bool:
    """Move one entry; return True on success.  Raises ``_Interrupted``."""
    copier.entry_error = None
    try:
        src_is_dir = stat.S_ISDIR(os.lstat(src).st_mode)
    except OSError as exc:
        copier._started(name)
        copier._failed(name, str(exc))
        return False

    if src_is_dir and is_within(os.path.realpath(dest), os.path.realpath(src)):
        copier._started(name)
        copier._failed(name, f"Cannot move '{name}' into itself")
        return False

    dest_is_dir = dest.is_dir() and not dest.is_symlink()
    must_copy = has_exclusions and src_is_dir
    if os.path.lexists(dest) and src_is_dir != dest_is_dir:
        copier._started(name)
        kind = "directory" if dest_is_dir else "file"
        copier._failed(name, f"Cannot overwrite a {kind} with a {'directory' if src_is_dir else 'file'}")
        return False
    if src_is_dir and dest_is_dir:
        # Directory onto existing directory: merge, then remove the source
        must_copy = True

    if not must_copy:
        try:
            os.replace(src, dest)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                copier._started(name)
                copier._failed(name, exc.strerror or str(exc))
                return False
            logger.debug("Cross-device move of %s — copying", name)
        else:
            copier._sender.send(FileStarted(name))
            copier._sender.send(FileCompleted(name))
            copier.account(measure)
            return True

    if not copier.copy_entry(src, dest, name):
        return False
    try:
        _remove(src)
    except OSError as exc:
        # Destination is complete and already reported; the source stays put
        message = f"Copied '{name}' but source could not be removed: {exc}"
        copier.entry_error = message
        copier._sender.error("", message)
        logger.error("Move of %s left the source in place: %s", name, exc)
        return False
    return True


def duplicate_many(
    files: Iterable[str],
    directory: str | os.PathLike[str],
    token: CancelToken,
    sender: ProgressSender,
    *,
    chunk_size: int = CHUNK_SIZE,
    progress_interval: float = PROGRESS_INTERVAL,
) -> JobResult:
    """Duplicate each entry of *files* inside *directory* under a ``_dup`` name.

    Destinations are created exclusively (``O_EXCL`` / ``mkdir``), so an
    existing file is never overwritten even if it appears after probing.
    """
    directory = Path(directory)
    todo = [(name, directory / name) for name in files if name != ".."]
    tally = BatchTally()
    if not todo:
        return sender.complete(tally)

    logger.info("Duplicate %d item(s) in %s", len(todo), directory)
    total, _ = _prepare(sender, todo, set())
    copier = _Copier(token, sender, total, set(), chunk_size, progress_interval)

    interrupted = False
    for name, src in todo:
        if token.is_cancelled():
            interrupted = True
            break
        dup_name = generate_dup_name(name, directory)
        logger.debug("Duplicating %s as %s", name, dup_name)
        try:
            ok = copier.copy_entry(src, directory / dup_name, dup_name, exclusive=True)
        except _Interrupted:
            interrupted = True
            break
        if ok:
            tally.record_success()
        else:
            tally.record_failure(copier.entry_error or "duplicate failed")

    return _finish(sender, tally, interrupted, copier.current)
