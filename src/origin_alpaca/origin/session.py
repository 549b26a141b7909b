from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from enum import Enum
from typing import Any, Mapping, Optional, Union

import structlog

from ..config.settings import Settings
from .dispatcher import CommandDispatcher
from .errors import DispatchError, OriginConnectionError
from .exposure import ExposureListener, ExposureSynchronizer
from .image_fetch import ImageFetcher
from .messages import (
    CMD_ABORT_AXIS_MOVEMENT,
    CMD_GET_STATUS,
    CMD_GOTO_RA_DEC,
    CMD_PARK,
    CMD_START_TRACKING,
    CMD_STOP_TRACKING,
    CMD_SYNC_TO_RA_DEC,
    CMD_UNPARK,
    DESTINATION_MOUNT,
    degrees_to_radians,
    hours_to_radians,
)
from .status import StatusIngest, StatusListener, StatusSnapshot
from .transport import OriginTransport

logger = structlog.get_logger(__name__)

# (attempt, host, port, connection or the error that prevented it)
_DialResult = tuple[int, str, int, Union[Any, BaseException]]


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _validate_coordinates(ra_hours: float, dec_degrees: float) -> None:
    if not 0.0 <= ra_hours < 24.0:
        raise ValueError("Right ascension must be within [0, 24) hours")
    if not -90.0 <= dec_degrees <= 90.0:
        raise ValueError("Declination must be within [-90, 90] degrees")


class OriginSession:
    """Owns the Origin control channel and everything hanging off it.

    The session is driven from outside: ``poll()`` must be called periodically
    (see ``SessionPoller``) to drain inbound frames, advance the exposure state
    machine and reconnect after a lost connection. Every public method is safe
    to call from any thread.

    Opening the websocket can take up to the connect timeout, so it never
    happens under the session lock. Explicit connects dial on the caller's
    thread; automatic reconnects dial on ``reconnect_executor`` and the result
    is picked up by a later ``poll()``. Every connect, reconnect and disconnect
    bumps an attempt counter so a dial that finishes after being superseded
    is closed instead of adopted.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: OriginTransport | None = None,
        fetcher: ImageFetcher | None = None,
        clock: Callable[[], float] = time.monotonic,
        executor: Executor | None = None,
        reconnect_executor: Executor | None = None,
    ) -> None:
        self.settings = settings
        self.host = settings.origin_host
        self.port = settings.origin_port
        self._clock = clock
        self._transport = transport or OriginTransport(
            open_timeout=settings.origin_connect_timeout_seconds,
            receive_timeout=settings.origin_receive_timeout_seconds,
        )
        self._dispatcher = CommandDispatcher(self._transport)
        self._ingest = StatusIngest(image_suffix=settings.image_suffix)
        self._fetcher = fetcher or ImageFetcher(
            settings.origin_host,
            port=settings.origin_image_port,
            timeout=settings.image_fetch_timeout_seconds,
        )
        self._exposure = ExposureSynchronizer(
            self._dispatcher,
            self._fetcher,
            iso=settings.default_iso,
            image_wait_timeout=settings.image_wait_timeout_seconds,
            clock=clock,
            executor=executor,
        )
        self._lock = threading.RLock()
        self._connect_lock = threading.Lock()
        self._state = SessionState.DISCONNECTED
        self._refs: dict[str, int] = {"telescope": 0, "camera": 0}
        self.target: tuple[float, float] | None = None

        self._owns_reconnect_executor = reconnect_executor is None
        self._reconnect_executor = reconnect_executor or ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="origin-reconnect",
        )
        self._reconnect_wanted = False
        self._last_reconnect_attempt: float | None = None
        self._reconnect_future: Future[None] | None = None
        self._dial_results: list[_DialResult] = []
        self._dial_results_lock = threading.Lock()
        self._attempt = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is SessionState.CONNECTED and self._transport.connected

    @property
    def status(self) -> StatusSnapshot:
        return self._ingest.snapshot

    @property
    def exposure(self) -> ExposureSynchronizer:
        return self._exposure

    def add_status_listener(self, listener: StatusListener) -> None:
        self._ingest.add_listener(listener)

    def add_exposure_listener(self, listener: ExposureListener) -> None:
        self._exposure.add_listener(listener)

    # --- Connection ----------------------------------------------------------------

    def connect(self, host: str | None = None, port: int | None = None) -> None:
        """Open the control channel, blocking the caller (not the session) while dialling."""

        with self._connect_lock:
            with self._lock:
                if host:
                    self.host = host
                if port:
                    self.port = port
                if self.connected:
                    return
                if self._state is SessionState.CONNECTED:
                    self._handle_connection_lost()
                self._attempt += 1
                self._cancel_reconnect_locked()
                attempt = self._attempt
                target_host, target_port = self.host, self.port
                self._state = SessionState.CONNECTING
            try:
                conn = self._transport.dial(target_host, target_port)
            except OriginConnectionError:
                with self._lock:
                    if attempt == self._attempt:
                        self._state = SessionState.DISCONNECTED
                raise
            with self._lock:
                if attempt != self._attempt:
                    self._transport.discard(conn)
                    raise OriginConnectionError(target_host, target_port, "superseded by disconnect")
                self._attach_locked(target_host, target_port, conn)

    def _attach_locked(self, host: str, port: int, conn: Any) -> None:
        self._transport.adopt(self._transport.build_uri(host, port), conn)
        self._fetcher.host = host
        self._state = SessionState.CONNECTED
        self._reconnect_wanted = True
        logger.info("origin.session.connected", host=host, port=port)
        try:
            self._dispatcher.dispatch(CMD_GET_STATUS, DESTINATION_MOUNT)
        except DispatchError as exc:
            logger.warning("origin.session.status_request_failed", reason=exc.reason)

    def disconnect(self) -> None:
        with self._lock:
            self._reconnect_wanted = False
            self._attempt += 1
            self._cancel_reconnect_locked()
            if self._state is SessionState.DISCONNECTED and not self._transport.connected:
                return
            self._teardown("disconnected")
            logger.info("origin.session.disconnected", host=self.host, port=self.port)

    def _teardown(self, reason: str) -> None:
        self._transport.close()
        self._state = SessionState.DISCONNECTED
        self._ingest.reset()
        self._exposure.reset(reason)

    def _handle_connection_lost(self) -> None:
        logger.warning("origin.session.connection_lost", host=self.host, port=self.port)
        self._teardown("connection_lost")

    def _cancel_reconnect_locked(self) -> None:
        future = self._reconnect_future
        self._reconnect_future = None
        if future is not None:
            future.cancel()

    def _maybe_reconnect(self) -> None:
        if not self.settings.auto_reconnect or not self._reconnect_wanted:
            return
        if self._reconnect_future is not None:
            return
        now = self._clock()
        last = self._last_reconnect_attempt
        if last is not None and now - last < self.settings.reconnect_interval_seconds:
            return
        self._last_reconnect_attempt = now
        self._attempt += 1
        logger.info("origin.session.reconnecting", host=self.host, port=self.port, attempt=self._attempt)
        self._reconnect_future = self._reconnect_executor.submit(
            self._run_dial,
            self._attempt,
            self.host,
            self.port,
        )

    def _run_dial(self, attempt: int, host: str, port: int) -> None:
        result: Any
        try:
            result = self._transport.dial(host, port)
        except OriginConnectionError as exc:
            result = exc
        except Exception as exc:
            logger.error(
                "origin.session.reconnect_error",
                host=host,
                port=port,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            result = exc
        with self._dial_results_lock:
            self._dial_results.append((attempt, host, port, result))

    def _apply_dial_results(self) -> None:
        with self._dial_results_lock:
            results, self._dial_results = self._dial_results, []
        for attempt, host, port, result in results:
            current = attempt == self._attempt
            if current:
                self._reconnect_future = None
            if isinstance(result, BaseException):
                if current:
                    logger.warning(
                        "origin.session.reconnect_failed",
                        host=host,
                        port=port,
                        error=getattr(result, "reason", str(result)),
                    )
                continue
            if current and self._reconnect_wanted and self._state is SessionState.DISCONNECTED:
                self._attach_locked(host, port, result)
            else:
                logger.info("origin.session.reconnect_discarded", host=host, port=port, attempt=attempt)
                self._transport.discard(result)

    def acquire(self, device: str) -> None:
        with self._lock:
            self._refs[device] = self._refs.get(device, 0) + 1
        try:
            self.connect()
        except Exception:
            with self._lock:
                self._refs[device] = max(0, self._refs[device] - 1)
            raise

    def is_acquired(self, device: str) -> bool:
        return self._refs.get(device, 0) > 0

    def release(self, device: str) -> None:
        with self._lock:
            self._refs[device] = max(0, self._refs.get(device, 0) - 1)
            if all(count == 0 for count in self._refs.values()):
                self.disconnect()

    def shutdown(self) -> None:
        with self._lock:
            for key in self._refs:
                self._refs[key] = 0
            self.disconnect()
            self._apply_dial_results()
        if self._owns_reconnect_executor:
            self._reconnect_executor.shutdown(wait=False, cancel_futures=True)
        self._exposure.shutdown()

    # --- Polling -------------------------------------------------------------------

    def poll(self) -> int:
        """Run one scheduler tick and return the number of frames processed."""

        processed = 0
        with self._lock:
            if self._state is SessionState.CONNECTED and not self._transport.connected:
                self._handle_connection_lost()
            if self._state is SessionState.DISCONNECTED:
                self._maybe_reconnect()
            self._apply_dial_results()
            if self._state is SessionState.CONNECTED:
                limit = self.settings.max_frames_per_poll
                while processed < limit and self._transport.has_pending_frame():
                    frame = self._transport.receive_frame()
                    if frame is None:
                        break
                    processed += 1
                    notification = self._ingest.process_frame(frame)
                    if notification is not None:
                        self._exposure.handle_notification(notification)
                if not self._transport.connected:
                    self._handle_connection_lost()
            self._exposure.evaluate()
        return processed

    # --- Telescope -----------------------------------------------------------------

    def _send(self, command: str, params: Optional[Mapping[str, Any]] = None) -> int:
        with self._lock:
            return self._dispatcher.dispatch(command, DESTINATION_MOUNT, params)

    def goto(self, ra_hours: float, dec_degrees: float) -> int:
        _validate_coordinates(ra_hours, dec_degrees)
        sequence_id = self._send(
            CMD_GOTO_RA_DEC,
            {"Ra": hours_to_radians(ra_hours), "Dec": degrees_to_radians(dec_degrees)},
        )
        self.target = (ra_hours, dec_degrees)
        logger.info(
            "origin.telescope.goto",
            ra_hours=ra_hours,
            dec_degrees=dec_degrees,
            sequence_id=sequence_id,
        )
        return sequence_id

    def sync(self, ra_hours: float, dec_degrees: float) -> int:
        _validate_coordinates(ra_hours, dec_degrees)
        sequence_id = self._send(
            CMD_SYNC_TO_RA_DEC,
            {"Ra": hours_to_radians(ra_hours), "Dec": degrees_to_radians(dec_degrees)},
        )
        self.target = (ra_hours, dec_degrees)
        logger.info(
            "origin.telescope.sync",
            ra_hours=ra_hours,
            dec_degrees=dec_degrees,
            sequence_id=sequence_id,
        )
        return sequence_id

    def abort_motion(self) -> int:
        return self._send(CMD_ABORT_AXIS_MOVEMENT)

    def park(self) -> int:
        return self._send(CMD_PARK)

    def unpark(self) -> int:
        return self._send(CMD_UNPARK)

    def set_tracking(self, enabled: bool) -> int:
        return self._send(CMD_START_TRACKING if enabled else CMD_STOP_TRACKING)

    # --- Camera --------------------------------------------------------------------

    def start_exposure(self, duration: float, iso: int | None = None) -> int:
        with self._lock:
            return self._exposure.start(duration, iso=iso)

    def abort_exposure(self) -> bool:
        with self._lock:
            return self._exposure.abort()


__all__ = ["OriginSession", "SessionState"]
