import math

import pytest

from origin_alpaca.origin.status import StatusIngest, StatusSnapshot

from origin_fakes import image_frame, mount_frame


def test_mount_frame_updates_only_present_fields():
    ingest = StatusIngest()
    ingest.process_frame(mount_frame(Ra=math.pi, Dec=0.5, IsTracking=True))
    before = ingest.snapshot

    ingest.process_frame(mount_frame(Dec=-0.25))
    after = ingest.snapshot

    assert after is not before
    assert after.ra == pytest.approx(math.pi)
    assert after.dec == pytest.approx(-0.25)
    assert after.is_tracking is True
    assert after.ra_hours == pytest.approx(12.0)
    assert after.updated_at is not None


def test_goto_over_flag_is_inverted_into_slewing():
    ingest = StatusIngest()

    ingest.process_frame(mount_frame(IsGotoOver=False, IsTracking=True))
    assert ingest.snapshot.is_slewing is True
    assert ingest.snapshot.current_operation == "Slewing"

    ingest.process_frame(mount_frame(IsGotoOver=True))
    assert ingest.snapshot.is_slewing is False
    assert ingest.snapshot.current_operation == "Tracking"


def test_parked_aligned_and_temperature_fields():
    ingest = StatusIngest()

    ingest.process_frame(mount_frame(IsParked=True, IsAligned=True, Temperature=7.5))

    snapshot = ingest.snapshot
    assert snapshot.is_parked is True
    assert snapshot.is_aligned is True
    assert snapshot.temperature == pytest.approx(7.5)
    assert snapshot.current_operation == "Parked"


def test_listeners_fire_only_for_tracking_or_slewing_changes():
    ingest = StatusIngest()
    calls = []
    ingest.add_listener(lambda: calls.append("status"))

    ingest.process_frame(mount_frame(Ra=1.0))
    assert calls == []

    ingest.process_frame(mount_frame(IsTracking=False))
    ingest.process_frame(mount_frame(IsGotoOver=True))
    assert calls == ["status", "status"]


def test_failing_listener_does_not_break_ingest():
    ingest = StatusIngest()
    calls = []

    def _broken():
        raise RuntimeError("listener bug")

    ingest.add_listener(_broken)
    ingest.add_listener(lambda: calls.append("ok"))

    ingest.process_frame(mount_frame(IsTracking=True))

    assert calls == ["ok"]
    assert ingest.snapshot.is_tracking is True


def test_malformed_and_unrelated_frames_are_dropped():
    ingest = StatusIngest()
    initial = ingest.snapshot

    assert ingest.process_frame("{not json") is None
    assert ingest.process_frame("[1, 2]") is None
    assert ingest.process_frame('{"Source": "Focuser", "Position": 10}') is None

    assert ingest.snapshot is initial


def test_image_notification_carries_metadata():
    ingest = StatusIngest()

    notification = ingest.process_frame(
        image_frame("Images/Temp/img001.tiff", Ra=1.0, Dec=0.5, ExposureTime=5.0)
    )

    assert notification is not None
    assert notification.file_location == "Images/Temp/img001.tiff"
    assert notification.ra == pytest.approx(1.0)
    assert notification.dec == pytest.approx(0.5)
    assert notification.exposure == pytest.approx(5.0)


def test_image_notification_suffix_filter_is_case_insensitive():
    ingest = StatusIngest()

    assert ingest.process_frame(image_frame("Images/img002.TIFF")) is not None
    assert ingest.process_frame(image_frame("Images/preview.jpg")) is None
    assert ingest.process_frame(image_frame("")) is None


def test_reset_restores_defaults():
    ingest = StatusIngest()
    ingest.process_frame(mount_frame(Ra=2.0, IsTracking=True))

    ingest.reset()

    assert ingest.snapshot == StatusSnapshot()
    assert ingest.snapshot.temperature == pytest.approx(20.0)
