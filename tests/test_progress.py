"""Tests for fileworks/progress.py — events, JobResult, BatchTally and the channel."""

from __future__ import annotations

import threading

import pytest

from fileworks.progress import (
    CANCELLED_MESSAGE,
    BatchTally,
    Completed,
    Error,
    FileStarted,
    JobResult,
    Preparing,
    open_channel,
)


class TestJobResult:
    def test_summary_all_succeeded(self) -> None:
        assert JobResult(3, 0).summary() == "3/3 succeeded"

    def test_summary_with_failure(self) -> None:
        result = JobResult(2, 1, last_error="disk full")
        assert result.summary() == "2/3 succeeded: disk full"

    def test_all_skipped(self) -> None:
        assert JobResult(0, 0, skipped_count=2).all_skipped
        assert not JobResult(1, 0, skipped_count=2).all_skipped
        assert not JobResult(0, 0).all_skipped

    def test_cancelled_summary(self) -> None:
        assert JobResult(1, 0, cancelled=True).summary() == "Cancelled after 1 file(s)"


class TestBatchTally:
    def test_records_outcomes(self) -> None:
        tally = BatchTally()
        tally.record_success()
        tally.record_failure("boom")
        tally.record_failure("second")
        tally.record_skip()
        assert (tally.success, tally.failure, tally.skipped) == (1, 2, 1)
        assert tally.last_error == "second"
        assert tally.attempted == 3


class TestChannel:
    def test_drain_is_non_blocking(self) -> None:
        _, receiver = open_channel()
        assert receiver.drain() == []
        assert not receiver.finished

    def test_events_in_order(self) -> None:
        sender, receiver = open_channel()
        sender.send(Preparing("x"))
        sender.send(FileStarted("a"))
        assert receiver.drain() == [Preparing("x"), FileStarted("a")]
        assert receiver.drain() == []

    def test_complete_builds_result(self) -> None:
        sender, receiver = open_channel()
        tally = BatchTally()
        tally.record_success()
        tally.record_failure("nope")
        result = sender.complete(tally)

        events = receiver.drain()
        assert events == [Completed(1, 1)]
        assert events[0].result == result
        assert receiver.finished
        assert receiver.result.last_error == "nope"

    def test_nothing_after_completed(self) -> None:
        sender, _ = open_channel()
        sender.complete(BatchTally())
        assert sender.completed
        with pytest.raises(RuntimeError):
            sender.send(FileStarted("late"))
        with pytest.raises(RuntimeError):
            sender.complete(BatchTally())

    def test_cancelled_completion_reports_zero_failures(self) -> None:
        sender, receiver = open_channel()
        tally = BatchTally()
        tally.record_success()
        tally.record_failure("ignored")
        sender.error("b", CANCELLED_MESSAGE)
        result = sender.complete(tally, cancelled=True)

        assert result.cancelled
        events = receiver.drain()
        assert events[0].is_cancellation
        assert events[-1] == Completed(1, 0)

    def test_error_marker(self) -> None:
        assert Error("x", "Cancelled").is_cancellation
        assert not Error("x", "Permission denied").is_cancellation

    def test_cross_thread_delivery(self) -> None:
        sender, receiver = open_channel()

        def worker() -> None:
            for i in range(100):
                sender.send(FileStarted(str(i)))
            sender.complete(BatchTally())

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join(timeout=5)

        events = receiver.drain()
        assert len(events) == 101
        assert [e.name for e in events[:-1]] == [str(i) for i in range(100)]
        assert isinstance(events[-1], Completed)
