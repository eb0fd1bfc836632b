"""Probing and spawning helpers for the external binaries fileworks drives."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from typing import Sequence

logger = logging.getLogger(__name__)

_PROBE_TIMEOUT = 10.0  # seconds for a --version probe
_MASK = "********"


def probe_version(executable: str, flag: str = "--version") -> bool:
    """Return True if ``executable flag`` runs and exits 0."""
    try:
        completed = subprocess.run(
            [executable, flag],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=_PROBE_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("Probe %s %s failed: %s", executable, flag, exc)
        return False
    return completed.returncode == 0


def has_executable(name: str) -> bool:
    """Return True if *name* is on PATH (for tools without a version flag)."""
    return shutil.which(name) is not None


def has_stdbuf() -> bool:
    return probe_version("stdbuf")


def has_sshpass() -> bool:
    """Return True if the sshpass password-injection helper is usable."""
    return probe_version("sshpass", "-V")


def has_rsync() -> bool:
    return probe_version("rsync")


def masked(command: Sequence[str], secrets: Sequence[str] = ()) -> str:
    """Render *command* for a log line with every secret replaced."""
    hidden = {s for s in secrets if s}
    return " ".join(_MASK if part in hidden else part for part in command)


def popen_kwargs() -> dict:
    """Keyword arguments that put a child in its own process group on POSIX.

    The cancel token can then signal the whole group, reaching processes a
    wrapper such as ``sshpass`` or ``stdbuf`` spawned.
    """
    if os.name == "posix":
        return {"start_new_session": True}
    return {}


class StreamCollector:
    """Drain a text stream on a daemon thread so the child never blocks on it."""

    def __init__(self, stream, name: str = "stderr-collector") -> None:
        self._chunks: list[str] = []
        self._thread = threading.Thread(
            target=self._run, args=(stream,), name=name, daemon=True
        )
        self._thread.start()

    def _run(self, stream) -> None:
        try:
            for line in stream:
                self._chunks.append(line)
        except (OSError, ValueError) as exc:
            # The pipe is closed under us when the child is killed
            logger.debug("Stream collector stopped: %s", exc)

    def text(self, timeout: float = 5.0) -> str:
        """Wait for the stream to close and return everything read."""
        self._thread.join(timeout)
        return "".join(self._chunks)

    def first_line(self, timeout: float = 5.0) -> str | None:
        """Return the first non-blank line of the collected text, if any."""
        for line in self.text(timeout).splitlines():
            if line.strip():
                return line.strip()
        return None
