"""
In-memory driver and cursor fakes.

FakeDriver serves a mutable document list for every aggregation, records
calls and can be told to fail, block or push change events. Blocking
honours timeout(): a sleep past the deadline stops at the deadline and
raises TimeoutError, like a pymongo operation under pymongo.timeout().
"""
from __future__ import annotations

import queue
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

_CLOSED = object()


class FakeCursor:
    def __init__(
        self,
        docs: Sequence[Mapping[str, Any]],
        delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._docs = list(docs)
        self._delay = delay
        self._sleep = sleep
        self.closed = False

    def __iter__(self) -> Iterator[Mapping[str, Any]]:
        for doc in self._docs:
            if self._delay:
                self._sleep(self._delay)
            yield doc

    def close(self) -> None:
        self.closed = True


class FakeChangeStream:
    """Blocks on iteration until an event is pushed or the stream is closed."""

    def __init__(self) -> None:
        self._events: "queue.Queue[Any]" = queue.Queue()
        self.closed = False

    def push(self, doc: Mapping[str, Any]) -> None:
        self._events.put(doc)

    def __iter__(self) -> Iterator[Mapping[str, Any]]:
        while True:
            doc = self._events.get()
            if doc is _CLOSED:
                return
            yield doc

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._events.put(_CLOSED)


class FakeDriver:
    """
    Driver fake.

    Attributes:
        docs: documents returned by every aggregate() call
        aggregate_error: raised by aggregate() when set
        watch_error: raised by watch() when set
        connect_error: raised by connect() when set
        delay: seconds before aggregate() returns
        doc_delay: seconds per yielded document
    """

    def __init__(
        self,
        docs: Optional[List[Dict[str, Any]]] = None,
        uri: str = "mongodb://fake:27017",
        name: str = "",
        **options: Any,
    ) -> None:
        self.docs: List[Dict[str, Any]] = list(docs or [])
        self.uri = uri
        self.name = name
        self.options = options
        self.aggregate_error: Optional[BaseException] = None
        self.watch_error: Optional[BaseException] = None
        self.connect_error: Optional[BaseException] = None
        self.delay = 0.0
        self.doc_delay = 0.0

        self.connected = False
        self.closed = False
        self.calls: List[Dict[str, Any]] = []
        self.cursors: List[FakeCursor] = []
        self.streams: List[FakeChangeStream] = []
        self.watching = threading.Event()
        self.timeouts: List[Optional[float]] = []

        self._local = threading.local()
        self._lock = threading.Lock()
        self._active = 0
        self.max_active = 0

    @property
    def aggregate_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def ping(self) -> None:
        pass

    @contextmanager
    def timeout(self, seconds: Optional[float]) -> Iterator[None]:
        with self._lock:
            self.timeouts.append(seconds)
        previous = getattr(self._local, "deadline", None)
        if seconds is not None and seconds > 0:
            self._local.deadline = time.monotonic() + seconds
        try:
            yield
        finally:
            self._local.deadline = previous

    def _sleep(self, seconds: float) -> None:
        deadline = getattr(self._local, "deadline", None)
        if deadline is not None and time.monotonic() + seconds > deadline:
            time.sleep(max(0.0, deadline - time.monotonic()))
            raise TimeoutError("operation exceeded time limit")
        time.sleep(seconds)

    def aggregate(
        self,
        database: str,
        collection: str,
        pipeline: Sequence[Mapping[str, Any]],
    ) -> FakeCursor:
        with self._lock:
            self.calls.append({
                "database": database,
                "collection": collection,
                "pipeline": list(pipeline),
            })
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if self.delay:
                self._sleep(self.delay)
            if self.aggregate_error is not None:
                raise self.aggregate_error
            cursor = FakeCursor([dict(d) for d in self.docs], self.doc_delay, self._sleep)
        finally:
            with self._lock:
                self._active -= 1
        self.cursors.append(cursor)
        return cursor

    def watch(
        self,
        database: str,
        collection: str,
        pipeline: Sequence[Mapping[str, Any]] = (),
    ) -> FakeChangeStream:
        if self.watch_error is not None:
            raise self.watch_error
        stream = FakeChangeStream()
        with self._lock:
            self.streams.append(stream)
        self.watching.set()
        return stream

    def push_change(self, database: str = "db", collection: str = "coll",
                    operation: str = "insert") -> None:
        """Deliver one change event to every open stream."""
        for stream in list(self.streams):
            stream.push({"operationType": operation, "ns": {"db": database, "coll": collection}})

    def close(self) -> None:
        self.closed = True
        for stream in list(self.streams):
            stream.close()
