"""Progress event vocabulary and the per-job channel that carries it.

A worker thread owns a :class:`ProgressSender`; the caller owns the matching
:class:`ProgressReceiver` and drains it on every UI tick::

    receiver, token = start_local_copy_batch(...)
    while not receiver.finished:
        for event in receiver.drain():
            render(event)
        time.sleep(POLL_INTERVAL)

Every job ends with exactly one :class:`Completed`, always the last event.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1 / 60  # seconds between caller drains while a job is visible
CANCELLED_MESSAGE = "Cancelled"

# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class ProgressEvent:
    """Base class of the tagged union; test variants with ``isinstance``."""

    __slots__ = ()


@dataclass(frozen=True)
class Preparing(ProgressEvent):
    """Worker is doing pre-work (probing tools, sizing the selection)."""

    text: str


@dataclass(frozen=True)
class PrepareComplete(ProgressEvent):
    """Pre-work finished; real totals follow."""


@dataclass(frozen=True)
class FileStarted(ProgressEvent):
    name: str


@dataclass(frozen=True)
class FileProgress(ProgressEvent):
    """Bytes done within the current file."""

    done_bytes: int
    total_bytes: int


@dataclass(frozen=True)
class FileCompleted(ProgressEvent):
    name: str


@dataclass(frozen=True)
class TotalProgress(ProgressEvent):
    done_files: int
    total_files: int
    done_bytes: int
    total_bytes: int


@dataclass(frozen=True)
class Error(ProgressEvent):
    """A failure for *name* (empty for job-level errors).

    ``Error(name, "Cancelled")`` is the informational cancellation marker.
    """

    name: str
    message: str

    @property
    def is_cancellation(self) -> bool:
        return self.message == CANCELLED_MESSAGE


@dataclass(frozen=True)
class JobResult:
    """Final accounting for one job, built once when :class:`Completed` is sent."""

    success_count: int
    failure_count: int
    last_error: str | None = None
    skipped_count: int = 0
    cancelled: bool = False

    @property
    def all_skipped(self) -> bool:
        """True when every candidate was skipped and nothing was written."""
        return (
            self.skipped_count > 0
            and self.success_count == 0
            and self.failure_count == 0
            and not self.cancelled
        )

    def summary(self) -> str:
        """One-line outcome for a status bar, e.g. ``"2/3 succeeded: disk full"``."""
        if self.all_skipped:
            return "All files skipped"
        attempted = self.success_count + self.failure_count
        if self.cancelled:
            return f"Cancelled after {self.success_count} file(s)"
        if self.failure_count == 0:
            return f"{self.success_count}/{attempted} succeeded"
        return f"{self.success_count}/{attempted} succeeded: {self.last_error or 'unknown error'}"


@dataclass(frozen=True)
class Completed(ProgressEvent):
    """Terminal event — exactly one per job, always last."""

    success_count: int
    failure_count: int
    result: JobResult | None = field(default=None, compare=False)


# ---------------------------------------------------------------------------
# Accounting
# ---------------------------------------------------------------------------


class BatchTally:
    """Running ``(success, failure, last_error)`` triple for a batch loop.

    Workers record every outcome here instead of unwinding on the first
    error; the loop ends at the end of the list, on cancellation, or on a
    hard transport error.
    """

    def __init__(self) -> None:
        self.success = 0
        self.failure = 0
        self.skipped = 0
        self.last_error: str | None = None

    def __repr__(self) -> str:
        return (
            f"<BatchTally ok={self.success} failed={self.failure} "
            f"skipped={self.skipped}>"
        )

    def record_success(self) -> None:
        self.success += 1

    def record_failure(self, message: str) -> None:
        self.failure += 1
        self.last_error = message

    def record_skip(self) -> None:
        self.skipped += 1

    @property
    def attempted(self) -> int:
        return self.success + self.failure


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


class _ChannelState:
    """Queue plus completion bookkeeping shared by both ends."""

    def __init__(self) -> None:
        self.queue: queue.Queue[ProgressEvent] = queue.Queue()
        self.lock = threading.Lock()
        self.completed = False


class ProgressSender:
    """Worker end of the channel.

    Refuses to send anything after :class:`Completed` so that the terminal
    event is always last.
    """

    def __init__(self, state: _ChannelState) -> None:
        self._state = state

    def send(self, event: ProgressEvent) -> None:
        """Push *event*; raise ``RuntimeError`` once the job has completed."""
        with self._state.lock:
            if self._state.completed:
                raise RuntimeError(f"Job already completed; refusing {event!r}")
            if isinstance(event, Completed):
                self._state.completed = True
            self._state.queue.put(event)

    def error(self, name: str, message: str) -> None:
        self.send(Error(name, message))

    def complete(self, tally: BatchTally, cancelled: bool = False) -> JobResult:
        """Emit the single terminal :class:`Completed` built from *tally*.

        A cancelled job reports its completed files with zero failures,
        matching the ``Error("Cancelled")`` marker the worker sent first.
        """
        failures = 0 if cancelled else tally.failure
        result = JobResult(
            success_count=tally.success,
            failure_count=failures,
            last_error=tally.last_error,
            skipped_count=tally.skipped,
            cancelled=cancelled,
        )
        self.send(Completed(result.success_count, result.failure_count, result))
        logger.debug("Job completed: %s", result.summary())
        return result

    @property
    def completed(self) -> bool:
        with self._state.lock:
            return self._state.completed


class ProgressReceiver:
    """Caller end of the channel; never blocks."""

    def __init__(self, state: _ChannelState) -> None:
        self._state = state
        self._result: JobResult | None = None

    def drain(self) -> list[ProgressEvent]:
        """Return every pending event (possibly none) in emission order."""
        events: list[ProgressEvent] = []
        while True:
            try:
                event = self._state.queue.get_nowait()
            except queue.Empty:
                break
            if isinstance(event, Completed):
                self._result = event.result or JobResult(
                    event.success_count, event.failure_count
                )
            events.append(event)
        return events

    @property
    def finished(self) -> bool:
        """True once :class:`Completed` has been drained."""
        return self._result is not None

    @property
    def result(self) -> JobResult | None:
        """The job's :class:`JobResult`, available after ``Completed`` is drained."""
        return self._result


def open_channel() -> tuple[ProgressSender, ProgressReceiver]:
    """Create a fresh single-producer/single-consumer channel."""
    state = _ChannelState()
    return ProgressSender(state), ProgressReceiver(state)
