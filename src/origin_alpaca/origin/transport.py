from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from typing import Any, Deque, Optional

import structlog
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.sync.client import connect as ws_connect

from .errors import OriginConnectionError, OriginError

logger = structlog.get_logger(__name__)

CONTROL_ENDPOINT_PATH = "/SmartScope-1.0/mountControlEndpoint"

Connector = Callable[..., Any]


class TransportClosedError(OriginError):
    """Raised by ``send_frame`` when the channel is not usable."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Origin control channel unavailable: {reason}")
        self.reason = reason


class OriginTransport:
    """Persistent websocket channel to the Origin mount control endpoint.

    All receive calls are bounded by ``receive_timeout`` (zero means "only what
    is already buffered"), so the transport never stalls the poll loop.
    """

    def __init__(
        self,
        *,
        open_timeout: float = 10.0,
        receive_timeout: float = 0.0,
        path: str = CONTROL_ENDPOINT_PATH,
        connector: Connector | None = None,
    ) -> None:
        self.open_timeout = open_timeout
        self.receive_timeout = max(receive_timeout, 0.0)
        self.path = path
        self.uri: str | None = None
        self._connector = connector or ws_connect
        self._conn: Optional[Any] = None
        self._buffer: Deque[str] = deque()
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        conn = self._conn
        if conn is None:
            return False
        return getattr(conn, "close_code", None) is None

    def build_uri(self, host: str, port: int) -> str:
        return f"ws://{host}:{port}{self.path}"

    def open(self, host: str, port: int) -> None:
        uri = self.build_uri(host, port)
        if self.connected and self.uri == uri:
            return
        self.adopt(uri, self.dial(host, port))

    def dial(self, host: str, port: int) -> Any:
        """Open a fresh connection without disturbing the current one.

        May block for up to ``open_timeout``; callers that must stay responsive
        run it on a worker and hand the result to ``adopt``.
        """
        uri = self.build_uri(host, port)
        logger.info("origin.ws.connecting", uri=uri, timeout=self.open_timeout)
        try:
            conn = self._connector(
                uri,
                open_timeout=self.open_timeout,
                max_size=None,
            )
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as exc:
            logger.warning(
                "origin.ws.connect_failed",
                uri=uri,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise OriginConnectionError(host, port, str(exc) or type(exc).__name__) from exc
        logger.info("origin.ws.connected", uri=uri)
        return conn

    def adopt(self, uri: str, conn: Any) -> None:
        """Make ``conn`` the active channel, closing whatever it replaces."""
        with self._lock:
            self._close_locked()
            self.uri = uri
            self._conn = conn

    def discard(self, conn: Any) -> None:
        """Close a dialled connection that will never be adopted."""
        try:
            conn.close()
        except (OSError, ConnectionClosed) as exc:
            logger.debug("origin.ws.close_failed", error=str(exc))

    def close(self) -> None:
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        conn = self._conn
        self._conn = None
        self._buffer.clear()
        if conn is None:
            return
        self.discard(conn)
        logger.info("origin.ws.closed", uri=self.uri)

    def has_pending_frame(self) -> bool:
        if self._buffer:
            return True
        frame = self._recv(self.receive_timeout)
        if frame is None:
            return False
        self._buffer.append(frame)
        return True

    def receive_frame(self) -> str | None:
        if self._buffer:
            return self._buffer.popleft()
        return self._recv(self.receive_timeout)

    def send_frame(self, text: str) -> None:
        conn = self._conn
        if conn is None or not self.connected:
            raise TransportClosedError("not_connected")
        try:
            conn.send(text)
        except ConnectionClosed as exc:
            self._mark_lost(exc)
            raise TransportClosedError("connection_closed") from exc
        except OSError as exc:
            self._mark_lost(exc)
            raise TransportClosedError(str(exc) or type(exc).__name__) from exc

    def _recv(self, timeout: float) -> str | None:
        conn = self._conn
        if conn is None:
            return None
        try:
            payload = conn.recv(timeout=timeout)
        except TimeoutError:
            return None
        except (ConnectionClosed, OSError) as exc:
            self._mark_lost(exc)
            return None
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")
        return payload

    def _mark_lost(self, exc: BaseException) -> None:
        logger.warning(
            "origin.ws.connection_lost",
            uri=self.uri,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        self._conn = None


__all__ = ["CONTROL_ENDPOINT_PATH", "OriginTransport", "TransportClosedError"]
