"""Name validation, path normalisation and remote path building."""

from __future__ import annotations

import logging
import os
import posixpath
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

MAX_NAME_BYTES = 255

# Archive extensions, longest first so ".tar.gz" wins over ".tar".
ARCHIVE_EXTENSIONS = (".tar.gz", ".tar.bz2", ".tar.xz", ".tgz", ".tbz2", ".txz", ".tar")


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote paths regardless of the local OS.
    """
    return posixpath.join(*parts)


def join_base(base: str, relative: str) -> str:
    """Resolve *relative* against *base* by plain string concatenation.

    Remote paths are never parsed as URIs: ``join_base("/srv/", "a b")``
    is ``"/srv/a b"``.
    """
    return f"{base.rstrip('/')}/{relative}" if base else relative


def remote_spec(user: str, host: str, path: str) -> str:
    """Return the ``user@host:path`` spec used by rsync and scp."""
    return f"{user}@{host}:{path}"


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def is_valid_filename(name: str) -> str | None:
    """Return ``None`` if *name* is a safe single path component, else the reason."""
    if not name or not name.strip():
        return "Name cannot be empty"
    if name in (".", ".."):
        return "Invalid name"
    if "/" in name or "\\" in name:
        return "Name cannot contain path separators"
    if "\x00" in name:
        return "Name cannot contain null bytes"
    if len(name.encode("utf-8", errors="surrogateescape")) > MAX_NAME_BYTES:
        return "Name is too long"
    return None


def is_valid_relative_path(path: str) -> str | None:
    """Return ``None`` if *path* is relative and never climbs out with ``..``."""
    if not path:
        return "Path cannot be empty"
    if "\x00" in path:
        return "Path cannot contain null bytes"
    pure = PurePosixPath(path.replace("\\", "/"))
    if pure.is_absolute() or os.path.isabs(path):
        return "Path must be relative"
    if ".." in pure.parts:
        return "Path cannot contain '..'"
    return None


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe for SFTP operations.

    Rejects paths that contain null bytes or path-traversal sequences (``..``).
    """
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True


def is_within(path: str | os.PathLike[str], root: str | os.PathLike[str]) -> bool:
    """Return True if *path* equals *root* or lies underneath it (no resolving)."""
    path, root = os.path.abspath(path), os.path.abspath(root)
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        # Different drives on Windows
        return False


def same_directory(a: str | os.PathLike[str], b: str | os.PathLike[str]) -> bool:
    """Compare two directories by canonical path, falling back to a plain compare."""
    try:
        return Path(a).resolve(strict=True) == Path(b).resolve(strict=True)
    except OSError:
        return os.path.abspath(a) == os.path.abspath(b)


def split_extension(name: str) -> tuple[str, str]:
    """Split *name* into (stem, extension) at the last dot.

    A leading dot belongs to the stem, so ``.bashrc`` has no extension and
    ``.config.json`` splits into ``(".config", ".json")``.
    """
    search_start = 1 if name.startswith(".") else 0
    dot = name.rfind(".", search_start)
    if dot == -1:
        return name, ""
    return name[:dot], name[dot:]


def strip_archive_extension(name: str) -> str:
    """Return *name* without its archive extension (``a.tar.gz`` -> ``a``)."""
    lower = name.lower()
    for ext in ARCHIVE_EXTENSIONS:
        if lower.endswith(ext):
            return name[: -len(ext)]
    return name


def is_archive_file(name: str) -> bool:
    """Return True if *name* has one of the supported tar extensions."""
    return name.lower().endswith(ARCHIVE_EXTENSIONS)
