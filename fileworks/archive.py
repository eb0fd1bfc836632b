"""tar archive creation and extraction driven through the system tar binary.

The tool runs with its verbose listing on stdout; each line names one entry
and becomes a FileStarted/FileCompleted pair plus a TotalProgress update
computed from a size table built before the run.  A failed or cancelled
run never leaves a partial archive or extraction directory behind.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import subprocess
from pathlib import Path
from typing import Iterable, NamedTuple

from fileworks.cancel import CancelToken
from fileworks.errors import ToolMissing, ValidationError
from fileworks.progress import (
    CANCELLED_MESSAGE,
    BatchTally,
    FileCompleted,
    FileStarted,
    JobResult,
    PrepareComplete,
    Preparing,
    ProgressSender,
    TotalProgress,
)
from fileworks.utils.path_helpers import (
    human_readable_size,
    is_archive_file,
    is_valid_filename,
    is_valid_relative_path,
    strip_archive_extension,
)
from fileworks.utils.tools import StreamCollector, has_stdbuf, masked, popen_kwargs, probe_version

logger = logging.getLogger(__name__)

_TAR_CANDIDATES = ("gtar", "tar")
_COMPRESSION = (
    ((".tar.gz", ".tgz"), "z"),
    ((".tar.bz2", ".tbz2"), "j"),
    ((".tar.xz", ".txz"), "J"),
)

# ---------------------------------------------------------------------------
# Tool resolution & pure helpers
# ---------------------------------------------------------------------------


def resolve_tar_command(custom: str | None = None) -> str:
    """Return the tar executable to use for one job.

    A configured *custom* path is the only candidate when given; otherwise
    ``gtar`` is preferred over ``tar``.

    Raises:
        ToolMissing: If no candidate answers ``--version``.
    """
    candidates = (custom,) if custom else _TAR_CANDIDATES
    for candidate in candidates:
        if probe_version(candidate):
            logger.debug("Using tar command: %s", candidate)
            return candidate
    raise ToolMissing(
        f"No working tar found (tried: {', '.join(candidates)})", probed=candidates
    )


def compression_flag(archive_name: str) -> str:
    """Return the tar compression letter implied by *archive_name*."""
    lowered = archive_name.lower()
    for suffixes, flag in _COMPRESSION:
        if lowered.endswith(suffixes):
            return flag
    return ""


def tool_prefix(tar_cmd: str) -> str:
    return os.path.basename(tar_cmd) + ":"


class TarLine(NamedTuple):
    """One classified line of tar's verbose output."""

    is_error: bool
    text: str


def classify_tar_line(line: str, tool: str = "tar") -> TarLine | None:
    """Classify a verbose-output line as an entry path or an error message.

    Returns ``None`` for blank lines.
    """
    text = line.rstrip("\r\n")
    if not text.strip():
        return None
    prefixes = {"tar:", "gtar:", tool_prefix(tool)}
    if any(text.startswith(p) for p in prefixes):
        return TarLine(True, text)
    return TarLine(False, text)


def parse_tar_list_line(line: str) -> tuple[str, int] | None:
    """Parse one ``tar tv`` line into ``(name, size)``.

    Two layouts are understood:

    - GNU tar: ``-rw-r--r-- user/group  1234 2024-01-01 12:00 ./dir/file``,
      size in the third column, name from the sixth.
    - bsdtar: ``-rw-r--r--  0 user  group  1234 Jan  1 12:00 ./dir/file``,
      size in the fifth column, name from the ninth.

    The symlink suffix ``-> target`` and a directory's trailing slash are
    stripped.  Runs of spaces inside a name collapse to one, so the size
    table is keyed on a best-effort name.  Lines that fit neither layout
    return ``None``.
    """
    parts = line.split()
    if len(parts) >= 6 and "/" in parts[1]:
        size_col, name_col = 2, 5
    elif len(parts) >= 9 and parts[1].isdigit():
        size_col, name_col = 4, 8
    else:
        return None
    try:
        size = int(parts[size_col])
    except ValueError:
        size = 0
    name = " ".join(parts[name_col:])
    if parts[0].startswith("l") and " -> " in name:
        name = name.split(" -> ", 1)[0]
    if parts[0].startswith("h") and " link to " in name:
        name = name.split(" link to ", 1)[0]
    return _entry_key(name), size


def _entry_key(name: str) -> str:
    stripped = name.rstrip("/")
    return stripped or name


# ---------------------------------------------------------------------------
# Validation (runs on the caller's thread)
# ---------------------------------------------------------------------------


def validate_create(
    source_dir: str | os.PathLike[str], archive_name: str, files: Iterable[str]
) -> Path:
    """Check an archive-create request and return the archive path.

    Raises:
        ValidationError: On an invalid name or an existing archive.
    """
    reason = is_valid_filename(archive_name)
    if reason:
        raise ValidationError(f"Invalid archive name: {reason}")
    files = list(files)
    if not files:
        raise ValidationError("No files selected")
    for name in files:
        reason = is_valid_relative_path(name)
        if reason:
            raise ValidationError(f"Invalid file name '{name}': {reason}")
    archive_path = Path(source_dir) / archive_name
    if os.path.lexists(archive_path):
        raise ValidationError(f"'{archive_name}' already exists")
    return archive_path


def validate_extract(archive_path: str | os.PathLike[str]) -> Path:
    """Check an extract request and return the extraction directory.

    Raises:
        ValidationError: If the archive is missing or the directory exists.
    """
    archive_path = Path(archive_path)
    if not archive_path.is_file():
        raise ValidationError(f"'{archive_path.name}' is not a file")
    if not is_archive_file(archive_path.name):
        raise ValidationError(f"'{archive_path.name}' is not a recognised archive")
    dir_name = strip_archive_extension(archive_path.name)
    if not dir_name:
        raise ValidationError(f"'{archive_path.name}' has no name to extract into")
    extract_dir = archive_path.parent / dir_name
    if os.path.lexists(extract_dir):
        raise ValidationError(f"'{dir_name}' already exists")
    return extract_dir


# ---------------------------------------------------------------------------
# Size tables
# ---------------------------------------------------------------------------


def tar_size_table(
    base_dir: str | os.PathLike[str], files: Iterable[str], excluded: Iterable[str] = ()
) -> dict[str, int]:
    """Map each ``./name/...`` entry tar will emit to its byte size.

    Directory nodes and symlinks count as zero bytes; *excluded* entries
    (relative paths) are left out.
    """
    base = str(base_dir)
    skip = {"./" + Path(p).as_posix() for p in excluded}
    table: dict[str, int] = {}

    def collect(full: str, key: str) -> None:
        if key in skip:
            return
        try:
            st = os.lstat(full)
        except OSError as exc:
            logger.debug("Cannot stat %s: %s", full, exc)
            return
        if stat.S_ISDIR(st.st_mode):
            table[key] = 0
            try:
                children = sorted(os.listdir(full))
            except OSError as exc:
                logger.debug("Cannot list %s: %s", full, exc)
                return
            for child in children:
                collect(os.path.join(full, child), f"{key}/{child}")
        else:
            table[key] = st.st_size if stat.S_ISREG(st.st_mode) else 0

    for name in files:
        collect(os.path.join(base, name), "./" + Path(name).as_posix())
    return table


def list_archive(tar_cmd: str, archive_path: str | os.PathLike[str]) -> dict[str, int]:
    """Return the size table of an existing archive from ``tar tv``."""
    archive_path = Path(archive_path)
    options = "tvf" + compression_flag(archive_path.name)
    try:
        completed = subprocess.run(
            [tar_cmd, options, str(archive_path)],
            capture_output=True,
            text=True,
            errors="replace",
            check=False,
        )
    except OSError as exc:
        logger.warning("Could not list %s: %s", archive_path, exc)
        return {}
    if completed.returncode != 0:
        logger.warning(
            "Listing %s failed (exit %d): %s",
            archive_path, completed.returncode, completed.stderr.strip(),
        )
        return {}
    table: dict[str, int] = {}
    for line in completed.stdout.splitlines():
        parsed = parse_tar_list_line(line)
        if parsed:
            name, size = parsed
            table[name] = size
    return table


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------


def _wrap(argv: list[str]) -> list[str]:
    """Line-buffer the tool's output through stdbuf when it is available."""
    if has_stdbuf():
        return ["stdbuf", "-oL", "-eL", *argv]
    return argv


def _cancelled(sender: ProgressSender, label: str, tally: BatchTally) -> JobResult:
    sender.error(label, CANCELLED_MESSAGE)
    return sender.complete(tally, cancelled=True)


def _failed(sender: ProgressSender, label: str, message: str) -> JobResult:
    logger.error("Archive job %s failed: %s", label, message)
    tally = BatchTally()
    tally.record_failure(message)
    sender.error(label, message)
    return sender.complete(tally)


def _run_tar(
    argv: list[str],
    cwd: Path,
    table: dict[str, int],
    tar_cmd: str,
    label: str,
    cleanup,
    default_error: str,
    token: CancelToken,
    sender: ProgressSender,
) -> JobResult:
    """Run tar and translate its verbose output into progress events."""
    total_files = len(table)
    total_bytes = sum(table.values())
    tally = BatchTally()
    done_bytes = 0
    last_error: str | None = None
    logger.info("Archive job %s: %d entries, %s", label, total_files, human_readable_size(total_bytes))

    logger.info("Running: %s (in %s)", masked(argv), cwd)
    kwargs = popen_kwargs()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,
            **kwargs,
        )
    except OSError as exc:
        cleanup()
        return _failed(sender, label, f"Failed to run tar: {exc}")

    token.register_child(proc.pid, process_group=bool(kwargs))
    stderr = StreamCollector(proc.stderr)
    try:
        for line in proc.stdout:
            if token.is_cancelled():
                break
            parsed = classify_tar_line(line, tar_cmd)
            if parsed is None:
                continue
            if parsed.is_error:
                last_error = parsed.text
                logger.debug("tar: %s", parsed.text)
                continue
            name = parsed.text
            tally.record_success()
            done_bytes += table.get(_entry_key(name), 0)
            sender.send(FileStarted(name))
            sender.send(FileCompleted(name))
            sender.send(TotalProgress(tally.success, total_files, done_bytes, total_bytes))
    finally:
        if token.is_cancelled() and proc.poll() is None:
            proc.kill()
        returncode = proc.wait()
        token.clear_child()
        proc.stdout.close()

    if token.is_cancelled():
        logger.info("Archive job %s cancelled after %d entries", label, tally.success)
        cleanup()
        return _cancelled(sender, label, tally)

    if returncode != 0:
        cleanup()
        message = last_error or stderr.first_line() or default_error
        return _failed(sender, label, message)

    logger.info("Archive job %s finished: %d entries", label, tally.success)
    return sender.complete(tally)


def create_archive(
    tar_cmd: str,
    source_dir: str | os.PathLike[str],
    archive_name: str,
    files: Iterable[str],
    token: CancelToken,
    sender: ProgressSender,
    excluded: Iterable[str] = (),
) -> JobResult:
    """Create *archive_name* in *source_dir* from the selected *files*."""
    source_dir = Path(source_dir)
    files = list(files)
    excluded = [Path(p).as_posix() for p in excluded]
    archive_path = source_dir / archive_name

    if token.is_cancelled():
        return _cancelled(sender, archive_name, BatchTally())

    sender.send(Preparing("Calculating file sizes..."))
    table = tar_size_table(source_dir, files, excluded)
    if token.is_cancelled():
        return _cancelled(sender, archive_name, BatchTally())
    sender.send(PrepareComplete())
    sender.send(TotalProgress(0, len(table), 0, sum(table.values())))

    options = "cvfp" + compression_flag(archive_name)
    argv = [tar_cmd, options, archive_name]
    argv += [f"--exclude=./{p}" for p in excluded]
    argv += ["./" + Path(f).as_posix() for f in files]

    def cleanup() -> None:
        try:
            archive_path.unlink()
            logger.debug("Removed partial archive %s", archive_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove partial archive %s: %s", archive_path, exc)

    return _run_tar(
        _wrap(argv), source_dir, table, tar_cmd, archive_name, cleanup,
        "tar command failed", token, sender,
    )


def extract_archive(
    tar_cmd: str,
    archive_path: str | os.PathLike[str],
    token: CancelToken,
    sender: ProgressSender,
) -> JobResult:
    """Extract *archive_path* into a sibling directory named after it."""
    archive_path = Path(archive_path).absolute()
    extract_dir = archive_path.parent / strip_archive_extension(archive_path.name)
    label = extract_dir.name

    if token.is_cancelled():
        return _cancelled(sender, label, BatchTally())

    sender.send(Preparing("Reading archive contents..."))
    table = list_archive(tar_cmd, archive_path)
    if token.is_cancelled():
        return _cancelled(sender, label, BatchTally())
    if not table:
        return _failed(sender, label, "Archive appears to be empty or corrupted")

    try:
        os.mkdir(extract_dir)
    except OSError as exc:
        return _failed(sender, label, f"Failed to create directory: {exc}")

    sender.send(PrepareComplete())
    sender.send(TotalProgress(0, len(table), 0, sum(table.values())))

    argv = [tar_cmd, "xvfp" + compression_flag(archive_path.name), str(archive_path)]

    def cleanup() -> None:
        shutil.rmtree(extract_dir, ignore_errors=True)
        logger.debug("Removed partial extraction %s", extract_dir)

    return _run_tar(
        _wrap(argv), extract_dir, table, tar_cmd, label, cleanup,
        "tar extraction failed", token, sender,
    )
