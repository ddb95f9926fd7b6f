"""
Progress reporting and cooperative cancellation.

A running operation owns an OperationContext: its id, a cancellation token
the caller can flip, and a channel that carries ProgressEvent records from
the worker thread to a consumer thread, which hands them to the event sink.

Example:
    ```python
    events = []
    context = OperationContext.create(sink=events.append)
    reporter = ProgressReporter(context)
    reporter.report(ProgressStage.CONNECTING, 10, "Connecting to remote")
    reporter.complete("Done")
    context.close()
    ```
"""

import logging
import queue
import re
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from atomdesk.git.exceptions import OperationCancelledError
from atomdesk.git.models import NetworkCounters, ProgressEvent, ProgressStage

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressEvent], Any]

_CLOSE = object()


class CancellationToken:
    """Advisory cancellation flag, consulted between stages."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def clear(self) -> None:
        self._event.clear()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class ProgressChannel:
    """
    Queue between the worker thread and a consumer thread.

    Delivery is fire-and-forget: an exception raised by the sink is logged
    and the event is dropped.
    """

    def __init__(self, sink: ProgressSink):
        self._sink = sink
        self._queue: queue.Queue = queue.Queue()
        self._consumer = threading.Thread(target=self._consume, name="progress-relay", daemon=True)
        self._consumer.start()
        self._closed = False

    def send(self, event: ProgressEvent) -> None:
        if not self._closed:
            self._queue.put(event)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Flush pending events and stop the consumer."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(_CLOSE)
        self._consumer.join(timeout)

    def _consume(self) -> None:
        while True:
            item = self._queue.get()
            if item is _CLOSE:
                return
            try:
                self._sink(item)
            except Exception:
                logger.warning("Progress sink failed for %s", item.operation_id, exc_info=True)


@dataclass
class OperationContext:
    """Per-operation state passed explicitly through the call chain."""

    operation_id: str
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    channel: Optional[ProgressChannel] = None

    @classmethod
    def create(
        cls,
        operation_id: Optional[str] = None,
        *,
        sink: Optional[ProgressSink] = None,
    ) -> "OperationContext":
        return cls(
            operation_id=operation_id or str(uuid.uuid4()),
            channel=ProgressChannel(sink) if sink is not None else None,
        )

    def emit(self, event: ProgressEvent) -> None:
        if self.channel is not None:
            self.channel.send(event)

    def cancel(self) -> None:
        self.cancel_token.cancel()

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_token.is_cancelled

    def check_cancelled(self, before: str) -> None:
        """Raise OperationCancelledError if the caller cancelled."""
        if self.cancel_token.is_cancelled:
            raise OperationCancelledError(f"Operation {self.operation_id} cancelled before {before}")

    def close(self) -> None:
        if self.channel is not None:
            self.channel.close()


class ProgressReporter:
    """
    Emits ProgressEvent records for one operation.

    Percentages are clamped to [0, 100] and never decrease. Once a
    Completed or Error event has been emitted, further reports are ignored.
    """

    def __init__(self, context: OperationContext):
        self._context = context
        self._percent = 0
        self._finished = False
        self.last_event: Optional[ProgressEvent] = None

    @property
    def percent(self) -> int:
        return self._percent

    @property
    def finished(self) -> bool:
        return self._finished

    def report(
        self,
        stage: ProgressStage,
        percent: Union[int, float],
        message: str = "",
        network: Optional[NetworkCounters] = None,
    ) -> Optional[ProgressEvent]:
        if self._finished:
            return None
        if stage == ProgressStage.COMPLETED:
            percent = 100
        self._percent = max(self._percent, min(100, max(0, int(percent))))
        self._finished = stage.is_terminal

        event = ProgressEvent(
            operation_id=self._context.operation_id,
            stage=stage,
            percent=self._percent,
            message=message,
            network=network,
        )
        self.last_event = event
        self._context.emit(event)
        return event

    def complete(self, message: str = "Completed") -> Optional[ProgressEvent]:
        return self.report(ProgressStage.COMPLETED, 100, message)

    def fail(self, message: str) -> Optional[ProgressEvent]:
        return self.report(ProgressStage.ERROR, self._percent, message)


# =============================================================================
# Transfer progress
# =============================================================================


@dataclass
class TransferProgress:
    """Network counters of one transfer."""

    total_objects: int = 0
    received_objects: int = 0
    indexed_objects: int = 0
    received_bytes: int = 0

    def percent(self) -> int:
        """
        Blended percentage: 10 for the connection, 70 scaled by received
        objects and 20 scaled by indexed objects. Zero until the total is known.
        """
        if self.total_objects <= 0:
            return 0
        received = min(self.received_objects, self.total_objects)
        indexed = min(self.indexed_objects, self.total_objects)
        value = 10 + 70 * received / self.total_objects + 20 * indexed / self.total_objects
        return min(100, int(value))

    def counters(self) -> NetworkCounters:
        return NetworkCounters(
            received_objects=self.received_objects,
            indexed_objects=self.indexed_objects,
            total_objects=self.total_objects,
            received_bytes=self.received_bytes,
        )


_COUNTED_LINE = re.compile(
    r"(?P<label>[A-Za-z][A-Za-z ]*?):\s+\d+%\s+\((?P<done>\d+)/(?P<total>\d+)\)"
    r"(?:,\s+(?P<size>[\d.]+)\s+(?P<unit>[KMG]i?B|bytes))?"
)
_TOTAL_LINE = re.compile(r"^Total (?P<total>\d+)")
_UNITS = {"bytes": 1, "KiB": 1024, "MiB": 1024**2, "GiB": 1024**3, "KB": 1000, "MB": 1000**2, "GB": 1000**3}


class SidebandProgressParser:
    """
    File-like sink for git's textual progress stream.

    Accepts the bytes written by the embedded engine (or the stderr of the
    external tool), splits it on carriage returns and newlines, and updates a
    TransferProgress. ``on_update`` is called after each parsed line.
    """

    def __init__(self, on_update: Optional[Callable[[TransferProgress, str], None]] = None):
        self.transfer = TransferProgress()
        self._on_update = on_update
        self._buffer = ""

    def write(self, data: Union[bytes, str]) -> int:
        if isinstance(data, bytes):
            text = data.decode("utf-8", errors="replace")
        else:
            text = data
        self._buffer += text
        *lines, self._buffer = re.split(r"[\r\n]", self._buffer)
        for line in lines:
            self.feed_line(line)
        return len(data)

    def flush(self) -> None:
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self.feed_line(line)

    def feed_line(self, line: str) -> None:
        line = line.strip()
        if line.startswith("remote:"):
            line = line[len("remote:"):].strip()
        if not line:
            return

        transfer = self.transfer
        match = _COUNTED_LINE.search(line)
        if match:
            label = match.group("label").strip().lower()
            done, total = int(match.group("done")), int(match.group("total"))
            if label in ("counting objects", "enumerating objects"):
                transfer.total_objects = max(transfer.total_objects, total)
            elif label == "receiving objects":
                transfer.total_objects = max(transfer.total_objects, total)
                transfer.received_objects = done
                if match.group("size"):
                    transfer.received_bytes = int(float(match.group("size")) * _UNITS[match.group("unit")])
            elif label == "resolving deltas" and total:
                transfer.indexed_objects = round(transfer.total_objects * done / total)
        else:
            match = _TOTAL_LINE.match(line)
            if match:
                transfer.total_objects = max(transfer.total_objects, int(match.group("total")))
            else:
                logger.debug("Unparsed progress line: %s", line)
                return

        if self._on_update is not None:
            self._on_update(transfer, line)
