from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Optional

import structlog

from .errors import ProtocolError
from .messages import (
    CMD_NEW_IMAGE_READY,
    FIELD_FILE_LOCATION,
    SOURCE_IMAGE_SERVER,
    SOURCE_MOUNT,
    InboundMessage,
    MessageType,
    decode_frame,
    radians_to_degrees,
    radians_to_hours,
)

logger = structlog.get_logger(__name__)

IMAGE_SUFFIX = ".tiff"
DEFAULT_TEMPERATURE_C = 20.0

StatusListener = Callable[[], None]

_TEMPERATURE_KEYS = ("Temperature", "AmbientTemperature")


@dataclass(frozen=True)
class StatusSnapshot:
    """Last known Origin mount state; replaced as a whole on every frame."""

    ra: float = 0.0
    dec: float = 0.0
    is_tracking: bool = False
    is_slewing: bool = False
    is_parked: bool = False
    is_aligned: bool = False
    current_operation: str = "Idle"
    temperature: float = DEFAULT_TEMPERATURE_C
    updated_at: float | None = None

    @property
    def ra_hours(self) -> float:
        return radians_to_hours(self.ra) % 24.0

    @property
    def dec_degrees(self) -> float:
        return radians_to_degrees(self.dec)


@dataclass(frozen=True)
class ImageNotification:
    file_location: str
    ra: float | None = None
    dec: float | None = None
    exposure: float | None = None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes"}:
            return True
        if lowered in {"false", "0", "no"}:
            return False
    return None


def _operation_label(snapshot: StatusSnapshot) -> str:
    if snapshot.is_slewing:
        return "Slewing"
    if snapshot.is_tracking:
        return "Tracking"
    if snapshot.is_parked:
        return "Parked"
    return "Idle"


class StatusIngest:
    """Decodes inbound frames into snapshot updates and image notifications."""

    def __init__(self, *, image_suffix: str = IMAGE_SUFFIX) -> None:
        self.image_suffix = image_suffix.lower()
        self._snapshot = StatusSnapshot()
        self._lock = threading.Lock()
        self._listeners: list[StatusListener] = []

    @property
    def snapshot(self) -> StatusSnapshot:
        return self._snapshot

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def reset(self) -> None:
        with self._lock:
            self._snapshot = StatusSnapshot()

    def process_frame(self, raw: str | bytes) -> Optional[ImageNotification]:
        try:
            message = decode_frame(raw)
        except ProtocolError as exc:
            logger.warning("origin.status.frame_dropped", error=str(exc))
            return None

        if message.source == SOURCE_MOUNT:
            self._apply_mount_status(message)
            return None
        if self._is_image_ready(message):
            return self._parse_image_notification(message)
        logger.debug(
            "origin.status.frame_ignored",
            source=message.source,
            command=message.command,
            type=message.message_type.value,
        )
        return None

    def _apply_mount_status(self, message: InboundMessage) -> None:
        changes: dict[str, Any] = {}
        ra = _as_float(message.get("Ra"))
        if ra is not None:
            changes["ra"] = ra
        dec = _as_float(message.get("Dec"))
        if dec is not None:
            changes["dec"] = dec
        tracking = _as_bool(message.get("IsTracking"))
        if tracking is not None:
            changes["is_tracking"] = tracking
        goto_over = _as_bool(message.get("IsGotoOver"))
        if goto_over is not None:
            changes["is_slewing"] = not goto_over
        parked = _as_bool(message.get("IsParked"))
        if parked is not None:
            changes["is_parked"] = parked
        aligned = _as_bool(message.get("IsAligned"))
        if aligned is not None:
            changes["is_aligned"] = aligned
        for key in _TEMPERATURE_KEYS:
            temperature = _as_float(message.get(key))
            if temperature is not None:
                changes["temperature"] = temperature
                break

        if not changes:
            return

        with self._lock:
            updated = replace(self._snapshot, updated_at=time.time(), **changes)
            updated = replace(updated, current_operation=_operation_label(updated))
            self._snapshot = updated

        if "is_tracking" in changes or "is_slewing" in changes:
            self._notify_listeners()

    def _notify_listeners(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as exc:
                logger.warning(
                    "origin.status.listener_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    @staticmethod
    def _is_image_ready(message: InboundMessage) -> bool:
        return (
            message.source == SOURCE_IMAGE_SERVER
            and message.command == CMD_NEW_IMAGE_READY
            and message.message_type is MessageType.NOTIFICATION
        )

    def _parse_image_notification(self, message: InboundMessage) -> Optional[ImageNotification]:
        location = message.get(FIELD_FILE_LOCATION)
        if not isinstance(location, str) or not location.strip():
            logger.warning("origin.image.notification_missing_file")
            return None
        location = location.strip()
        if not location.lower().endswith(self.image_suffix):
            logger.info(
                "origin.image.notification_skipped",
                file_location=location,
                expected_suffix=self.image_suffix,
            )
            return None
        notification = ImageNotification(
            file_location=location,
            ra=_as_float(message.get("Ra")),
            dec=_as_float(message.get("Dec")),
            exposure=_as_float(message.get("ExposureTime")),
        )
        logger.info("origin.image.notification", file_location=location)
        return notification


__all__ = [
    "DEFAULT_TEMPERATURE_C",
    "IMAGE_SUFFIX",
    "ImageNotification",
    "StatusListener",
    "StatusIngest",
    "StatusSnapshot",
]
