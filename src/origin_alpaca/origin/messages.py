"""JSON message layout of the Origin mount control endpoint.

Every frame on the control websocket is a flat JSON object. Outbound commands
carry ``Source``, ``Destination``, ``Command``, ``Type`` and ``SequenceID`` plus
verb specific parameters; inbound frames carry at least ``Source`` and usually
``Command`` and ``Type``. Angles travel in radians.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import ProtocolError

CLIENT_SOURCE = "OriginAlpaca"

SOURCE_MOUNT = "Mount"
SOURCE_IMAGE_SERVER = "ImageServer"

DESTINATION_MOUNT = "Mount"
DESTINATION_TASK_CONTROLLER = "TaskController"

CMD_GET_STATUS = "GetStatus"
CMD_GOTO_RA_DEC = "GotoRaDec"
CMD_SYNC_TO_RA_DEC = "SyncToRaDec"
CMD_ABORT_AXIS_MOVEMENT = "AbortAxisMovement"
CMD_PARK = "Park"
CMD_UNPARK = "Unpark"
CMD_START_TRACKING = "StartTracking"
CMD_STOP_TRACKING = "StopTracking"
CMD_RUN_SAMPLE_CAPTURE = "RunSampleCapture"
CMD_NEW_IMAGE_READY = "NewImageReady"

FIELD_SOURCE = "Source"
FIELD_DESTINATION = "Destination"
FIELD_COMMAND = "Command"
FIELD_TYPE = "Type"
FIELD_SEQUENCE_ID = "SequenceID"
FIELD_FILE_LOCATION = "FileLocation"


class MessageType(str, Enum):
    COMMAND = "Command"
    NOTIFICATION = "Notification"
    STATUS = "Status"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> "MessageType":
        if isinstance(value, str):
            for member in cls:
                if member is not cls.UNKNOWN and member.value == value:
                    return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class Command:
    command: str
    destination: str
    sequence_id: int
    params: Mapping[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            FIELD_COMMAND: self.command,
            FIELD_DESTINATION: self.destination,
            FIELD_SEQUENCE_ID: self.sequence_id,
            FIELD_SOURCE: CLIENT_SOURCE,
            FIELD_TYPE: MessageType.COMMAND.value,
        }
        for key, value in self.params.items():
            payload[key] = value
        return payload


@dataclass(frozen=True)
class InboundMessage:
    source: str
    command: Optional[str]
    message_type: MessageType
    fields: Mapping[str, Any]

    def has(self, name: str) -> bool:
        return name in self.fields

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)


def encode_command(command: Command) -> str:
    return json.dumps(command.to_payload(), separators=(",", ":"))


def decode_frame(raw: str | bytes) -> InboundMessage:
    """Decode one inbound text frame, raising ``ProtocolError`` when malformed."""

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"Frame is not valid UTF-8: {exc}") from exc
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Frame is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError(f"Frame is a JSON {type(data).__name__}, expected object")

    source = data.get(FIELD_SOURCE)
    command = data.get(FIELD_COMMAND)
    return InboundMessage(
        source=source if isinstance(source, str) else "",
        command=command if isinstance(command, str) else None,
        message_type=MessageType.parse(data.get(FIELD_TYPE)),
        fields=data,
    )


def hours_to_radians(hours: float) -> float:
    return hours * math.pi / 12.0


def degrees_to_radians(degrees: float) -> float:
    return degrees * math.pi / 180.0


def radians_to_hours(radians: float) -> float:
    return radians * 12.0 / math.pi


def radians_to_degrees(radians: float) -> float:
    return radians * 180.0 / math.pi


__all__ = [
    "CLIENT_SOURCE",
    "Command",
    "InboundMessage",
    "MessageType",
    "decode_frame",
    "encode_command",
    "degrees_to_radians",
    "hours_to_radians",
    "radians_to_degrees",
    "radians_to_hours",
]
