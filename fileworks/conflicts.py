"""Destination conflict pre-scan and the caller-driven resolver.

Usage::

    conflicts = detect_conflicts(src_dir, dst_dir, files)
    if conflicts:
        resolver = ConflictResolver(conflicts)
        while not resolver.done:
            resolver.resolve(ask_user(resolver.current))
        overwrite, skip = resolver.decisions()
    start_local_copy_batch(files, src_dir, dst_dir, overwrite=overwrite, skip=skip)

The skip/overwrite sets are exceptions layered on the executor's
default-overwrite rule, keyed by source path.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Iterable

from fileworks.errors import ConflictPending

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Conflict:
    """A destination that already exists and needs a caller decision."""

    source_path: Path
    dest_path: Path
    display_name: str


class ConflictResolution(Enum):
    OVERWRITE = auto()
    SKIP = auto()
    OVERWRITE_ALL = auto()
    SKIP_ALL = auto()


def detect_conflicts(
    source_dir: str | os.PathLike[str],
    target_dir: str | os.PathLike[str],
    files: Iterable[str],
) -> list[Conflict]:
    """Return a :class:`Conflict` for every entry whose destination exists."""
    source_dir, target_dir = Path(source_dir), Path(target_dir)
    conflicts: list[Conflict] = []
    for name in files:
        dest = target_dir / name
        # lexists: a dangling symlink at the destination is still in the way
        if os.path.lexists(dest):
            conflicts.append(Conflict(source_dir / name, dest, name))
    logger.debug("Conflict pre-scan: %d of the selection already exist", len(conflicts))
    return conflicts


class ConflictResolver:
    """Walks a conflict list one decision at a time.

    ``*_ALL`` resolutions apply to the current conflict and every remaining
    one.
    """

    def __init__(self, conflicts: Iterable[Conflict]) -> None:
        self._conflicts = list(conflicts)
        self._index = 0
        self.overwrite_set: set[Path] = set()
        self.skip_set: set[Path] = set()

    @property
    def conflicts(self) -> list[Conflict]:
        return list(self._conflicts)

    @property
    def current(self) -> Conflict | None:
        """The conflict awaiting a decision, or ``None`` when done."""
        if self._index < len(self._conflicts):
            return self._conflicts[self._index]
        return None

    @property
    def done(self) -> bool:
        return self._index >= len(self._conflicts)

    def resolve(self, resolution: ConflictResolution) -> None:
        """Apply *resolution* to the current conflict (or all remaining)."""
        if self.done:
            raise IndexError("No conflict left to resolve")
        if resolution in (ConflictResolution.OVERWRITE_ALL, ConflictResolution.SKIP_ALL):
            batch = self._conflicts[self._index:]
            self._index = len(self._conflicts)
        else:
            batch = [self._conflicts[self._index]]
            self._index += 1

        target = (
            self.overwrite_set
            if resolution in (ConflictResolution.OVERWRITE, ConflictResolution.OVERWRITE_ALL)
            else self.skip_set
        )
        for conflict in batch:
            target.add(conflict.source_path)
        logger.debug("Resolved %d conflict(s) as %s", len(batch), resolution.name)

    def decisions(self) -> tuple[set[Path], set[Path]]:
        """Return ``(overwrite_set, skip_set)``.

        Raises:
            ConflictPending: If some conflicts have not been decided yet.
        """
        if not self.done:
            raise ConflictPending(self._conflicts[self._index:])
        return set(self.overwrite_set), set(self.skip_set)


def all_skipped(
    source_dir: str | os.PathLike[str], files: Iterable[str], skip_set: Iterable[Path]
) -> bool:
    """Return True if every entry of *files* is in *skip_set*."""
    skip = {source_key(p) for p in skip_set}
    files = list(files)
    return bool(files) and all(source_key(Path(source_dir) / name) in skip for name in files)


def source_key(path: str | os.PathLike[str]) -> Path:
    """Normalise a source path for skip/overwrite set membership."""
    return Path(os.path.abspath(path))
