"""Exposure lifecycle against an asynchronously notifying Origin camera.

An Origin capture finishes when two unrelated signals have both happened: the
locally requested duration has elapsed, and the image server has announced the
resulting file. The synchronizer tracks both, retrieves the announced file on a
worker thread, and hands exactly one ``ExposureOutcome`` per exposure to its
listeners. Every start/abort bumps a generation counter so results belonging to
an earlier exposure are recognised and dropped.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, Union

import structlog

from .dispatcher import CommandDispatcher
from .errors import BusyError, DispatchError, FetchError, FetchErrorKind
from .messages import CMD_RUN_SAMPLE_CAPTURE, DESTINATION_TASK_CONTROLLER
from .status import ImageNotification

logger = structlog.get_logger(__name__)

DEFAULT_ISO = 200


class ExposureState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    COUNTING = "counting"
    AWAITING_IMAGE = "awaiting_image"
    DOWNLOADING = "downloading"
    COMPLETE = "complete"
    FAILED = "failed"


class ImageSource(Protocol):
    def fetch(self, file_location: str) -> bytes: ...


@dataclass(frozen=True)
class ExposureOutcome:
    generation: int
    state: ExposureState
    duration: float
    start_time: float | None
    end_time: float
    payload: bytes = field(default=b"", repr=False)
    file_location: str | None = None
    ra: float | None = None
    dec: float | None = None
    exposure: float | None = None
    reason: str | None = None
    error_kind: FetchErrorKind | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is ExposureState.COMPLETE


ExposureListener = Callable[[ExposureOutcome], None]
_FetchResult = Union[bytes, BaseException]


class ExposureSynchronizer:
    def __init__(
        self,
        dispatcher: CommandDispatcher,
        fetcher: ImageSource,
        *,
        iso: int = DEFAULT_ISO,
        image_wait_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        executor: Executor | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._fetcher = fetcher
        self.iso = iso
        self.image_wait_timeout = image_wait_timeout
        self._clock = clock
        self._wall_clock = wall_clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="origin-image-fetch",
        )
        self._lock = threading.RLock()
        self._listeners: list[ExposureListener] = []

        self._state = ExposureState.IDLE
        self._generation = 0
        self._duration = 0.0
        self._started_at: float | None = None
        self._started_wall: float | None = None
        self._notification: ImageNotification | None = None
        self._result_slot: tuple[int, _FetchResult] | None = None
        self._fetch_future: Future[None] | None = None
        self._last_outcome: ExposureOutcome | None = None

    # --- Introspection -------------------------------------------------------------

    @property
    def state(self) -> ExposureState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def last_outcome(self) -> ExposureOutcome | None:
        return self._last_outcome

    def remaining(self) -> float:
        with self._lock:
            if self._state is not ExposureState.COUNTING or self._started_at is None:
                return 0.0
            return max(self._duration - (self._clock() - self._started_at), 0.0)

    def percent_complete(self) -> int:
        with self._lock:
            if self._state is ExposureState.IDLE:
                outcome = self._last_outcome
                return 100 if outcome is not None and outcome.succeeded else 0
            if self._started_at is None or self._duration <= 0:
                return 0
            elapsed = self._clock() - self._started_at
            return int(min(max(elapsed / self._duration, 0.0), 1.0) * 100)

    def add_listener(self, listener: ExposureListener) -> None:
        self._listeners.append(listener)

    # --- Transitions ---------------------------------------------------------------

    def start(self, duration: float, *, iso: int | None = None) -> int:
        """Dispatch a capture and begin counting down; returns the exposure generation."""

        if duration <= 0:
            raise ValueError("Exposure duration must be greater than zero")
        iso_value = int(iso if iso is not None else self.iso)
        with self._lock:
            if self._state is not ExposureState.IDLE:
                raise BusyError(f"Exposure already in progress ({self._state.value})")
            self._state = ExposureState.REQUESTED
            try:
                self._dispatcher.dispatch(
                    CMD_RUN_SAMPLE_CAPTURE,
                    DESTINATION_TASK_CONTROLLER,
                    {"ExposureTime": float(duration), "ISO": iso_value},
                )
            except DispatchError:
                self._state = ExposureState.IDLE
                raise
            self._generation += 1
            self._duration = float(duration)
            self._started_at = self._clock()
            self._started_wall = self._wall_clock()
            self._notification = None
            self._result_slot = None
            self._state = ExposureState.COUNTING
            generation = self._generation
        logger.info(
            "origin.camera.exposure_started",
            generation=generation,
            duration=duration,
            iso=iso_value,
        )
        return generation

    def handle_notification(self, notification: ImageNotification) -> bool:
        with self._lock:
            if self._state not in (ExposureState.COUNTING, ExposureState.AWAITING_IMAGE):
                logger.info(
                    "origin.camera.notification_discarded",
                    file_location=notification.file_location,
                    state=self._state.value,
                    generation=self._generation,
                )
                return False
            self._state = ExposureState.DOWNLOADING
            self._notification = notification
            generation = self._generation
            logger.info(
                "origin.camera.image_download_scheduled",
                file_location=notification.file_location,
                generation=generation,
            )
            self._fetch_future = self._executor.submit(self._run_fetch, generation, notification)
        return True

    def _run_fetch(self, generation: int, notification: ImageNotification) -> None:
        result: _FetchResult
        try:
            result = self._fetcher.fetch(notification.file_location)
        except FetchError as exc:
            logger.warning(
                "origin.camera.image_download_failed",
                generation=generation,
                kind=exc.kind.value,
                error=str(exc),
            )
            result = exc
        except Exception as exc:
            logger.error(
                "origin.camera.image_download_error",
                generation=generation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            result = exc
        with self._lock:
            if generation != self._generation or self._state is not ExposureState.DOWNLOADING:
                logger.info(
                    "origin.camera.image_download_stale",
                    generation=generation,
                    current_generation=self._generation,
                    state=self._state.value,
                )
                return
            self._result_slot = (generation, result)

    def evaluate(self) -> ExposureState:
        """Advance timing transitions and consume a finished download."""

        outcome: ExposureOutcome | None = None
        with self._lock:
            if self._started_at is not None and self._state in (
                ExposureState.COUNTING,
                ExposureState.AWAITING_IMAGE,
                ExposureState.DOWNLOADING,
            ):
                elapsed = self._clock() - self._started_at
                countdown_done = elapsed >= self._duration
                if self._state is ExposureState.COUNTING and countdown_done:
                    self._state = ExposureState.AWAITING_IMAGE
                    logger.info(
                        "origin.camera.awaiting_image",
                        generation=self._generation,
                        elapsed=elapsed,
                    )
                if self._state is ExposureState.AWAITING_IMAGE:
                    deadline = self._duration + self.image_wait_timeout
                    if self.image_wait_timeout > 0 and elapsed >= deadline:
                        outcome = self._finish_locked(
                            ExposureState.FAILED,
                            reason="notification_timeout",
                        )
                elif self._state is ExposureState.DOWNLOADING and self._result_slot is not None:
                    outcome = self._consume_result_locked(countdown_done)
            state = self._state
        if outcome is not None:
            self._deliver(outcome)
        return state

    def _consume_result_locked(self, countdown_done: bool) -> Optional[ExposureOutcome]:
        assert self._result_slot is not None
        generation, result = self._result_slot
        if generation != self._generation:
            self._result_slot = None
            return None
        if isinstance(result, FetchError):
            self._result_slot = None
            return self._finish_locked(
                ExposureState.FAILED,
                reason=f"fetch_{result.kind.value}",
                error_kind=result.kind,
            )
        if isinstance(result, BaseException):
            self._result_slot = None
            return self._finish_locked(ExposureState.FAILED, reason="fetch_error")
        if not result:
            self._result_slot = None
            return self._finish_locked(
                ExposureState.FAILED,
                reason=f"fetch_{FetchErrorKind.EMPTY_BODY.value}",
                error_kind=FetchErrorKind.EMPTY_BODY,
            )
        if not countdown_done:
            # image arrived early; completion waits for the local countdown
            return None
        self._result_slot = None
        return self._finish_locked(ExposureState.COMPLETE, payload=bytes(result))

    def _finish_locked(
        self,
        state: ExposureState,
        *,
        payload: bytes = b"",
        reason: str | None = None,
        error_kind: FetchErrorKind | None = None,
    ) -> ExposureOutcome:
        self._state = state
        notification = self._notification
        outcome = ExposureOutcome(
            generation=self._generation,
            state=state,
            duration=self._duration,
            start_time=self._started_wall,
            end_time=self._wall_clock(),
            payload=payload,
            file_location=notification.file_location if notification else None,
            ra=notification.ra if notification else None,
            dec=notification.dec if notification else None,
            exposure=(
                notification.exposure
                if notification is not None and notification.exposure is not None
                else self._duration
            ),
            reason=reason,
            error_kind=error_kind,
        )
        self._last_outcome = outcome
        if state is ExposureState.COMPLETE:
            logger.info(
                "origin.camera.exposure_complete",
                generation=outcome.generation,
                file_location=outcome.file_location,
                size=len(payload),
            )
        else:
            logger.warning(
                "origin.camera.exposure_failed",
                generation=outcome.generation,
                reason=reason,
                file_location=outcome.file_location,
            )
        self._clear_locked()
        return outcome

    def _clear_locked(self) -> None:
        self._state = ExposureState.IDLE
        self._started_at = None
        self._notification = None
        self._result_slot = None
        self._fetch_future = None

    def abort(self) -> bool:
        """Return to idle; anything still in flight for this exposure is dropped."""

        with self._lock:
            previous = self._state
            self._generation += 1
            future = self._fetch_future
            self._clear_locked()
        if future is not None:
            future.cancel()
        if previous is not ExposureState.IDLE:
            logger.info(
                "origin.camera.exposure_aborted",
                previous_state=previous.value,
                generation=self._generation,
            )
        return previous is not ExposureState.IDLE

    def reset(self, reason: str) -> None:
        """Abandon the active exposure (if any) and report it as failed."""

        outcome: ExposureOutcome | None = None
        with self._lock:
            future = self._fetch_future
            if self._state is not ExposureState.IDLE:
                outcome = self._finish_locked(ExposureState.FAILED, reason=reason)
            self._generation += 1
            self._clear_locked()
        if future is not None:
            future.cancel()
        if outcome is not None:
            self._deliver(outcome)

    def _deliver(self, outcome: ExposureOutcome) -> None:
        for listener in list(self._listeners):
            try:
                listener(outcome)
            except Exception as exc:
                logger.error(
                    "origin.camera.listener_failed",
                    generation=outcome.generation,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    def shutdown(self) -> None:
        self.abort()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)


__all__ = [
    "DEFAULT_ISO",
    "ExposureListener",
    "ExposureOutcome",
    "ExposureState",
    "ExposureSynchronizer",
    "ImageSource",
]
