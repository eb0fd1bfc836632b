"""Symlink safety pre-scan run on the caller's thread before a job starts.

A symlink is unsafe when its resolved target lies outside the source
directory: archiving or copying it would pull in (or expose) data the user
never selected.  The scan only reports; the caller confirms and passes the
exclusions to the job.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

from fileworks.utils.path_helpers import is_within

logger = logging.getLogger(__name__)


def _escapes(link: str, root: str) -> bool:
    """Return True if the symlink at *link* resolves outside *root*."""
    try:
        target = os.readlink(link)
    except OSError as exc:
        logger.debug("Could not read link %s: %s", link, exc)
        return True
    if not os.path.isabs(target):
        target = os.path.join(os.path.dirname(link), target)
    # realpath() follows chains and resolves dangling links lexically
    resolved = os.path.realpath(target)
    return not is_within(resolved, root)


def _relative(path: str, root: str) -> str:
    return Path(os.path.relpath(path, root)).as_posix()


def _scan(base_dir: str | os.PathLike[str], files: Iterable[str]) -> list[str]:
    """Walk the selection and return unsafe symlinks relative to *base_dir*."""
    root = os.path.realpath(base_dir)
    unsafe: list[str] = []
    for name in files:
        top = os.path.join(root, name)
        if os.path.islink(top):
            if _escapes(top, root):
                unsafe.append(_relative(top, root))
            continue
        if not os.path.isdir(top):
            continue
        for dirpath, dirnames, filenames in os.walk(top, followlinks=False):
            # os.walk lists symlinked directories in dirnames without descending
            for entry in dirnames + filenames:
                full = os.path.join(dirpath, entry)
                if os.path.islink(full) and _escapes(full, root):
                    unsafe.append(_relative(full, root))
    if unsafe:
        logger.info("Found %d symlink(s) escaping %s", len(unsafe), root)
    return unsafe


def filter_symlinks_for_archive(
    base_dir: str | os.PathLike[str], files: Iterable[str]
) -> tuple[list[str], list[str]]:
    """Split *files* for archiving into ``(safe_files, excluded_paths)``.

    ``safe_files`` keeps the selected top-level names that are not
    themselves unsafe links; ``excluded_paths`` lists every unsafe link
    (top-level or nested) for ``--exclude`` and for the confirmation dialog.
    """
    files = list(files)
    excluded = _scan(base_dir, files)
    excluded_set = set(excluded)
    safe = [f for f in files if Path(f).as_posix() not in excluded_set]
    return safe, excluded


def filter_sensitive_symlinks_for_copy(
    source_dir: str | os.PathLike[str], files: Iterable[str]
) -> list[str]:
    """Return the symlinks in a copy/move selection that escape *source_dir*."""
    return _scan(source_dir, files)
