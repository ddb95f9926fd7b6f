"""Tests for progress reporting and cancellation."""

import threading

import pytest

from atomdesk.git.exceptions import ErrorKind, OperationCancelledError
from atomdesk.git.models import ProgressEvent, ProgressStage
from atomdesk.git.progress import (
    CancellationToken,
    OperationContext,
    ProgressChannel,
    ProgressReporter,
    SidebandProgressParser,
    TransferProgress,
)


class RecordingContext(OperationContext):
    """Context that records events synchronously."""

    @classmethod
    def recording(cls) -> "RecordingContext":
        context = cls(operation_id="op-1")
        context.events = []
        return context

    def emit(self, event: ProgressEvent) -> None:
        self.events.append(event)


class TestProgressReporter:
    """Tests for ProgressReporter."""

    def test_percent_never_decreases(self):
        """A lower percentage is raised to the previous value."""
        context = RecordingContext.recording()
        reporter = ProgressReporter(context)

        reporter.report(ProgressStage.CONNECTING, 10)
        reporter.report(ProgressStage.DOWNLOADING, 40)
        reporter.report(ProgressStage.DOWNLOADING, 25)
        reporter.report(ProgressStage.UNPACKING, 150)

        assert [e.percent for e in context.events] == [10, 40, 40, 100]
        assert all(e.operation_id == "op-1" for e in context.events)

    def test_completed_is_final(self):
        """Completed forces 100 and silences later reports."""
        context = RecordingContext.recording()
        reporter = ProgressReporter(context)

        reporter.report(ProgressStage.CHECKING_OUT, 80)
        event = reporter.complete("done")
        assert event.percent == 100
        assert reporter.finished

        assert reporter.report(ProgressStage.DOWNLOADING, 50) is None
        assert reporter.fail("late") is None
        assert context.events[-1].stage == ProgressStage.COMPLETED

    def test_error_keeps_percent(self):
        """Test that an Error event carries the last percentage."""
        context = RecordingContext.recording()
        reporter = ProgressReporter(context)
        reporter.report(ProgressStage.DOWNLOADING, 55)
        event = reporter.fail("network down")

        assert event.stage == ProgressStage.ERROR
        assert event.percent == 55
        assert ProgressStage.ERROR.is_terminal
        assert not ProgressStage.DOWNLOADING.is_terminal

    def test_wire_format(self):
        """Test the front-end representation of an event."""
        event = ProgressEvent(operation_id="x", stage=ProgressStage.CHECKING_OUT, percent=80, message="m")
        assert event.to_wire() == {"id": "x", "stage": "CheckingOut", "percent": 80, "message": "m"}


class TestTransferProgress:
    """Tests for the blended transfer percentage."""

    def test_unknown_total(self):
        """Test zero before the total is known."""
        assert TransferProgress().percent() == 0

    def test_blend(self):
        """10 for connecting, 70 for receiving, 20 for indexing."""
        assert TransferProgress(total_objects=100, received_objects=50).percent() == 45
        assert TransferProgress(total_objects=100, received_objects=100).percent() == 80
        assert TransferProgress(total_objects=100, received_objects=100, indexed_objects=100).percent() == 100


class TestSidebandProgressParser:
    """Tests for SidebandProgressParser."""

    def test_parses_clone_output(self):
        """Test counting, receiving and resolving lines split by carriage returns."""
        updates = []
        parser = SidebandProgressParser(lambda transfer, line: updates.append(transfer.percent()))

        parser.write(b"remote: Counting objects: 100% (200/200), done.\n")
        parser.write(b"Receiving objects:  50% (100/200), 1.50 KiB | 1.00 MiB/s\r")
        parser.write(b"Receiving objects: 100% (200/200), 3.00 KiB | 1.00 MiB/s, done.\n")
        parser.write(b"Resolving deltas:  50% (20/40)\rResolving deltas: 100% (40/40), done.\n")

        transfer = parser.transfer
        assert transfer.total_objects == 200
        assert transfer.received_objects == 200
        assert transfer.received_bytes == 3 * 1024
        assert transfer.indexed_objects == 200
        assert updates == sorted(updates)
        assert updates[-1] == 100

    def test_partial_lines_buffered(self):
        """A line split across writes is parsed once complete."""
        parser = SidebandProgressParser()
        parser.write("Receiving objects:  10% (1/")
        assert parser.transfer.received_objects == 0
        parser.write("10)\n")
        assert parser.transfer.received_objects == 1

    def test_flush_and_total_line(self):
        """Test the trailing line and the pack summary line."""
        parser = SidebandProgressParser()
        parser.write("Total 42 (delta 3), reused 0")
        parser.flush()
        assert parser.transfer.total_objects == 42


class TestCancellation:
    """Tests for cancellation tokens and operation contexts."""

    def test_token(self):
        """Test cancel and clear."""
        token = CancellationToken()
        assert not token.is_cancelled
        token.cancel()
        assert token.is_cancelled
        token.clear()
        assert not token.is_cancelled

    def test_check_cancelled(self):
        """Test that a cancelled context raises between stages."""
        context = OperationContext.create("op-2")
        context.check_cancelled("download")
        context.cancel()

        with pytest.raises(OperationCancelledError) as exc_info:
            context.check_cancelled("download")
        assert exc_info.value.kind == ErrorKind.CANCELLED
        assert "op-2" in exc_info.value.message

    def test_generated_ids_unique(self):
        """Test that each context gets its own id and token."""
        a, b = OperationContext.create(), OperationContext.create()
        assert a.operation_id != b.operation_id
        a.cancel()
        assert not b.is_cancelled


class TestProgressChannel:
    """Tests for ProgressChannel."""

    def test_delivers_in_order(self):
        """Events reach the sink on the consumer thread, in order."""
        received = []
        threads = set()

        def sink(event):
            received.append(event.percent)
            threads.add(threading.current_thread().name)

        channel = ProgressChannel(sink)
        for percent in (0, 10, 20):
            channel.send(ProgressEvent(operation_id="x", stage=ProgressStage.DOWNLOADING, percent=percent))
        channel.close()

        assert received == [0, 10, 20]
        assert threading.current_thread().name not in threads

    def test_sink_errors_do_not_stop_delivery(self):
        """Test that a failing sink is logged and delivery continues."""
        received = []

        def sink(event):
            if event.percent == 10:
                raise RuntimeError("UI gone")
            received.append(event.percent)

        channel = ProgressChannel(sink)
        for percent in (0, 10, 20):
            channel.send(ProgressEvent(operation_id="x", stage=ProgressStage.DOWNLOADING, percent=percent))
        channel.close()

        assert received == [0, 20]

    def test_context_with_sink(self):
        """Test that a context created with a sink delivers events."""
        received = []
        context = OperationContext.create(sink=received.append)
        ProgressReporter(context).complete()
        context.close()

        assert [e.stage for e in received] == [ProgressStage.COMPLETED]
