from __future__ import annotations

import json
from collections import deque
from concurrent.futures import Executor, Future
from typing import Any

from websockets.exceptions import ConnectionClosed

from origin_alpaca.origin.errors import DispatchError


class FakeConnection:
    """Stands in for a ``websockets.sync`` client connection."""

    def __init__(self, frames: tuple[Any, ...] = ()) -> None:
        self.sent: list[str] = []
        self.incoming: deque[Any] = deque(frames)
        self.close_code: int | None = None
        self.closed = False
        self.recv_timeouts: list[float | None] = []

    def push(self, frame: Any) -> None:
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self.incoming.append(frame)

    def drop(self) -> None:
        self.close_code = 1006

    def send(self, text: str) -> None:
        if self.close_code is not None:
            raise ConnectionClosed(None, None)
        self.sent.append(text)

    def recv(self, timeout: float | None = None) -> Any:
        self.recv_timeouts.append(timeout)
        if self.incoming:
            item = self.incoming.popleft()
            if isinstance(item, BaseException):
                raise item
            return item
        if self.close_code is not None:
            raise ConnectionClosed(None, None)
        raise TimeoutError

    def close(self) -> None:
        self.closed = True
        self.close_code = 1000

    def sent_payloads(self) -> list[dict[str, Any]]:
        return [json.loads(text) for text in self.sent]


class FakeConnector:
    """Connector returning queued connections (or raising queued errors)."""

    def __init__(self, *results: Any) -> None:
        self.results: deque[Any] = deque(results)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.connections: list[FakeConnection] = []

    def __call__(self, uri: str, **kwargs: Any) -> FakeConnection:
        self.calls.append((uri, kwargs))
        result = self.results.popleft() if self.results else FakeConnection()
        if isinstance(result, BaseException):
            raise result
        self.connections.append(result)
        return result

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):  # type: ignore[override]
        future: Future[Any] = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:
            future.set_exception(exc)
        return future


class ManualExecutor(Executor):
    """Queues submitted work until ``run_all`` is called."""

    def __init__(self) -> None:
        self.jobs: list[tuple[Future[Any], Any, tuple[Any, ...], dict[str, Any]]] = []

    def submit(self, fn, /, *args, **kwargs):  # type: ignore[override]
        future: Future[Any] = Future()
        self.jobs.append((future, fn, args, kwargs))
        return future

    def run_all(self) -> None:
        jobs, self.jobs = self.jobs, []
        for future, fn, args, kwargs in jobs:
            # cancelled futures still run: a worker thread cannot be interrupted
            try:
                result = fn(*args, **kwargs)
            except BaseException as exc:
                if not future.cancelled():
                    future.set_exception(exc)
                continue
            if not future.cancelled():
                future.set_result(result)


class FakeFetcher:
    def __init__(self, payload: bytes = b"\x00" * 1024, error: BaseException | None = None) -> None:
        self.host = "unset"
        self.payload = payload
        self.error = error
        self.calls: list[str] = []

    def fetch(self, file_location: str) -> bytes:
        self.calls.append(file_location)
        if self.error is not None:
            raise self.error
        return self.payload


class RecordingDispatcher:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def dispatch(self, command: str, destination: str, params=None) -> int:
        if self.fail:
            raise DispatchError(command, destination)
        self.calls.append((command, destination, dict(params or {})))
        return 2000 + len(self.calls) - 1


def mount_frame(**fields: Any) -> str:
    return json.dumps({"Source": "Mount", "Type": "Notification", "Command": "GetStatus", **fields})


def image_frame(file_location: str, **fields: Any) -> str:
    return json.dumps(
        {
            "Source": "ImageServer",
            "Command": "NewImageReady",
            "Type": "Notification",
            "FileLocation": file_location,
            **fields,
        }
    )
