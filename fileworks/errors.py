"""Exception taxonomy for fileworks jobs.

Only the errors a caller must react to synchronously are exceptions.
Per-file ``OSError``s never escape a worker — they become
:class:`~fileworks.progress.Error` events — and cancellation is reported
with the ``"Cancelled"`` marker rather than raised.
"""

from __future__ import annotations

from typing import Sequence


class FileworksError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(FileworksError, ValueError):
    """Raised before any I/O when a name or path is unacceptable.

    Examples: an empty file name, a ``..`` component, an archive that already
    exists, or a move whose source and target folders are the same.
    """


class ToolMissing(FileworksError):
    """Raised when a required external binary cannot be found.

    Carries the list of executables that were probed so the caller can tell
    the user what to install.
    """

    def __init__(self, message: str, probed: Sequence[str] = ()) -> None:
        """Initialise with the probed executable names."""
        super().__init__(message)
        self.probed = list(probed)


class ProtocolError(FileworksError):
    """Raised when a remote connection or authentication fails.

    A protocol error is fatal to the rest of the batch; the orchestrator turns
    it into the job's ``last_error``.
    """


class ConflictPending(FileworksError):
    """Raised when conflict decisions are requested before all are resolved.

    Not a failure: it tells the caller to keep prompting.
    """

    def __init__(self, remaining: Sequence) -> None:
        """Initialise with the conflicts still waiting for a decision."""
        super().__init__(f"{len(remaining)} conflict(s) still need a decision")
        self.remaining = list(remaining)
