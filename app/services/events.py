from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Union


class StreamTag(str, Enum):
    internalout = "internalout"
    internalerr = "internalerr"
    stdout = "stdout"
    stderr = "stderr"


@dataclass(frozen=True)
class LogChunk:
    stream: StreamTag
    text: str


@dataclass(frozen=True)
class IpAssigned:
    address: str


RunEvent = Union[LogChunk, IpAssigned]

_CLOSED = object()


class EventChannel:
    """Ordered stream of run events, produced by one pipeline and consumed by one reader.

    The producer calls :meth:`log` / :meth:`ip_address` and finally :meth:`close`.
    The consumer iterates the channel; iteration ends once the channel is
    closed and drained. A consumer that is no longer interested calls
    :meth:`cancel`, after which further events are dropped. Cancelling never
    reaches into the container: the run itself carries on.
    """

    def __init__(self) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._cancelled = threading.Event()
        self._closed = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def emit(self, event: RunEvent) -> None:
        if self._cancelled.is_set() or self._closed.is_set():
            return
        self._queue.put(event)

    def log(self, stream: StreamTag, text: str) -> None:
        self.emit(LogChunk(StreamTag(stream), text))

    def ip_address(self, address: str) -> None:
        self.emit(IpAssigned(address))

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._queue.put(_CLOSED)

    def cancel(self) -> None:
        self._cancelled.set()
        self.close()

    def get(self, timeout: Optional[float] = None) -> Optional[RunEvent]:
        """Return the next event, or None once the channel is exhausted."""
        if self._cancelled.is_set():
            return None
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            # Leave the marker for any other reader.
            self._queue.put(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    def __iter__(self) -> Iterator[RunEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def drain(self) -> List[RunEvent]:
        """Collect whatever is buffered without blocking."""
        events: List[RunEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return events
            events.append(item)  # type: ignore[arg-type]
