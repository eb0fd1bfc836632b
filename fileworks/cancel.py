"""Per-job cancellation token shared by the caller, the worker and its child.

The token pairs a ``threading.Event`` with a lock-guarded slot for the pid of
the subprocess the worker currently owns.  ``cancel()`` sets the flag and
signals that pid so a worker blocked on the child's output pipe wakes up.
"""

from __future__ import annotations

import logging
import os
import signal
import threading

logger = logging.getLogger(__name__)


class CancelToken:
    """Shared abort flag plus an optional owned child process.

    One token per job — never share a token between jobs.

    Thread-safety:
    - ``_event`` is the flag; reads never block.
    - ``_lock`` guards the registered pid so that signal delivery and
      registration rendezvous on the same value.
    """

    def __init__(self) -> None:
        """Create an un-cancelled token with no registered child."""
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._child_pid: int | None = None
        self._child_group = False

    def __repr__(self) -> str:
        state = "cancelled" if self.is_cancelled() else "active"
        return f"<CancelToken {state} child={self._child_pid}>"

    # ------------------------------------------------------------------
    # Flag
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation and terminate the registered child, if any."""
        self._event.set()
        with self._lock:
            pid, group = self._child_pid, self._child_group
            if pid is not None:
                _terminate(pid, group)
        logger.debug("Cancellation requested (child=%s)", pid)

    def is_cancelled(self) -> bool:
        """Return True once :meth:`cancel` has been called."""
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses; return the flag."""
        return self._event.wait(timeout)

    # ------------------------------------------------------------------
    # Child process
    # ------------------------------------------------------------------

    def register_child(self, pid: int, process_group: bool = False) -> None:
        """Record *pid* as the subprocess owned by the current job.

        Set *process_group* when the child was spawned with
        ``start_new_session=True``; the whole group is then signalled, which
        also reaches grandchildren such as the ``rsync`` under ``sshpass``.

        Spawning and registering are two steps, so a cancel that lands in
        between is honoured here by signalling the child immediately.
        """
        with self._lock:
            self._child_pid = pid
            self._child_group = process_group
            if self._event.is_set():
                _terminate(pid, process_group)

    def clear_child(self) -> None:
        """Forget the registered child (call once it has been reaped)."""
        with self._lock:
            self._child_pid = None
            self._child_group = False

    @property
    def child_pid(self) -> int | None:
        """Pid of the registered child, or ``None``."""
        with self._lock:
            return self._child_pid


def _terminate(pid: int, group: bool) -> None:
    """Send SIGTERM to *pid* (or its process group); ignore vanished processes."""
    try:
        if group and hasattr(os, "killpg"):
            os.killpg(pid, signal.SIGTERM)
        else:
            os.kill(pid, signal.SIGTERM)
        logger.debug("Sent SIGTERM to %s %d", "group" if group else "pid", pid)
    except ProcessLookupError:
        logger.debug("Child %d already exited", pid)
    except OSError as exc:
        logger.warning("Could not signal child %d: %s", pid, exc)
