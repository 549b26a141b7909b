import json
import math

import pytest

from origin_alpaca.origin.errors import ProtocolError
from origin_alpaca.origin.messages import (
    Command,
    MessageType,
    decode_frame,
    degrees_to_radians,
    encode_command,
    hours_to_radians,
    radians_to_degrees,
    radians_to_hours,
)


def test_encode_command_produces_flat_compact_json():
    frame = encode_command(
        Command(
            command="GotoRaDec",
            destination="Mount",
            sequence_id=2001,
            params={"Ra": 1.5, "Dec": -0.25},
        )
    )

    assert " " not in frame
    assert json.loads(frame) == {
        "Command": "GotoRaDec",
        "Destination": "Mount",
        "SequenceID": 2001,
        "Source": "OriginAlpaca",
        "Type": "Command",
        "Ra": 1.5,
        "Dec": -0.25,
    }


def test_goto_coordinates_survive_encode_and_decode():
    ra = hours_to_radians(5.5)
    dec = degrees_to_radians(-12.75)
    frame = encode_command(
        Command(
            command="GotoRaDec",
            destination="Mount",
            sequence_id=2002,
            params={"Ra": ra, "Dec": dec},
        )
    )

    message = decode_frame(frame)

    assert message.command == "GotoRaDec"
    assert message.message_type is MessageType.COMMAND
    assert message.get("SequenceID") == 2002
    assert message.get("Ra") == pytest.approx(ra)
    assert message.get("Dec") == pytest.approx(dec)
    assert radians_to_hours(message.get("Ra")) == pytest.approx(5.5)
    assert radians_to_degrees(message.get("Dec")) == pytest.approx(-12.75)


def test_decode_frame_reads_envelope_fields():
    message = decode_frame(
        '{"Source": "ImageServer", "Command": "NewImageReady", "Type": "Notification", "FileLocation": "a.tiff"}'
    )

    assert message.source == "ImageServer"
    assert message.command == "NewImageReady"
    assert message.message_type is MessageType.NOTIFICATION
    assert message.get("FileLocation") == "a.tiff"
    assert message.has("FileLocation")
    assert not message.has("Ra")


def test_decode_frame_tolerates_missing_or_unknown_type():
    message = decode_frame(b'{"Source": "Mount", "Type": "Telemetry"}')

    assert message.command is None
    assert message.message_type is MessageType.UNKNOWN


@pytest.mark.parametrize("raw", ["not json", "[1, 2, 3]", b"\xff\xfe", '"text"'])
def test_decode_frame_rejects_malformed_frames(raw):
    with pytest.raises(ProtocolError):
        decode_frame(raw)


def test_angle_conversions_match_native_units():
    assert hours_to_radians(12.0) == pytest.approx(math.pi)
    assert degrees_to_radians(-90.0) == pytest.approx(-math.pi / 2)
    assert radians_to_hours(hours_to_radians(5.5)) == pytest.approx(5.5)
    assert radians_to_degrees(degrees_to_radians(42.25)) == pytest.approx(42.25)
