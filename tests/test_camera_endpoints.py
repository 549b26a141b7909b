from fastapi.testclient import TestClient

from origin_alpaca.config.settings import Settings
from origin_alpaca.origin.errors import FetchError, FetchErrorKind
from origin_alpaca.origin.session import OriginSession
from origin_alpaca.origin.transport import OriginTransport
from origin_alpaca.server import build_app

from origin_fakes import FakeClock, FakeConnector, FakeFetcher, ManualExecutor, image_frame, mount_frame


def _build(fetcher=None):
    settings = Settings(origin_host="10.0.0.7", discovery_enabled=False, default_iso=200)
    connector = FakeConnector()
    clock = FakeClock()
    executor = ManualExecutor()
    session = OriginSession(
        settings,
        transport=OriginTransport(connector=connector),
        fetcher=fetcher or FakeFetcher(payload=b"II*\x00" + b"\x00" * 1020),
        clock=clock,
        executor=executor,
    )
    client = TestClient(build_app(settings, session, start_poller=False))
    return client, session, connector, clock, executor


def _value(response):
    payload = response.json()
    return payload.get("Value")


def _connect_camera(client):
    resp = client.put("/api/v1/camera/0/connected", json={"Connected": True})
    assert resp.status_code == 200


def test_camera_exposure_lifecycle():
    client, session, connector, clock, executor = _build()
    _connect_camera(client)

    resp = client.put("/api/v1/camera/0/gain", json={"Gain": 400})
    assert resp.status_code == 200

    resp = client.put("/api/v1/camera/0/startexposure", params={"Duration": 5.0, "Light": True})
    assert resp.status_code == 200
    capture = connector.last.sent_payloads()[-1]
    assert capture["Command"] == "RunSampleCapture"
    assert capture["ExposureTime"] == 5.0
    assert capture["ISO"] == 400

    assert _value(client.get("/api/v1/camera/0/camerastate")) == 2
    assert _value(client.get("/api/v1/camera/0/imageready")) is False

    clock.advance(5.1)
    session.poll()
    assert _value(client.get("/api/v1/camera/0/camerastate")) == 3

    connector.last.push(image_frame("Images/Temp/img001.tiff", ExposureTime=5.0))
    session.poll()
    assert _value(client.get("/api/v1/camera/0/camerastate")) == 4

    executor.run_all()
    session.poll()

    assert _value(client.get("/api/v1/camera/0/camerastate")) == 0
    assert _value(client.get("/api/v1/camera/0/imageready")) is True
    assert _value(client.get("/api/v1/camera/0/percentcompleted")) == 100
    assert _value(client.get("/api/v1/camera/0/lastexposureduration")) == 5.0
    assert _value(client.get("/api/v1/camera/0/lastexposurestarttime"))
    assert _value(client.get("/api/v1/camera/0/imagetimestamp"))

    resp = client.get("/api/v1/camera/0/imagefile")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/tiff"
    assert len(resp.content) == 1024
    assert "img001.tiff" in resp.headers["content-disposition"]


def test_start_exposure_while_busy_conflicts():
    client, _, _, _, _ = _build()
    _connect_camera(client)
    assert client.put("/api/v1/camera/0/startexposure", json={"Duration": 2.0, "Light": True}).status_code == 200

    resp = client.put("/api/v1/camera/0/startexposure", json={"Duration": 2.0, "Light": True})

    assert resp.status_code == 409


def test_start_exposure_validates_input():
    client, _, _, _, _ = _build()

    resp = client.put("/api/v1/camera/0/startexposure", params={"Duration": 1.0})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Camera not connected"

    _connect_camera(client)
    resp = client.put("/api/v1/camera/0/startexposure", params={"Duration": 0})
    assert resp.status_code == 400


def test_failed_download_reports_error_state():
    error = FetchError(FetchErrorKind.CONNECT_FAILED, "http://10.0.0.7/x.tiff", "refused")
    client, session, connector, clock, executor = _build(fetcher=FakeFetcher(error=error))
    _connect_camera(client)
    client.put("/api/v1/camera/0/startexposure", params={"Duration": 1.0, "Light": True})
    clock.advance(1.0)
    connector.last.push(image_frame("x.tiff"))
    session.poll()
    executor.run_all()
    session.poll()

    assert _value(client.get("/api/v1/camera/0/camerastate")) == 5
    assert _value(client.get("/api/v1/camera/0/imageready")) is False
    assert client.get("/api/v1/camera/0/imagefile").status_code == 400


def test_abort_exposure_returns_to_idle():
    client, session, connector, clock, executor = _build()
    _connect_camera(client)
    client.put("/api/v1/camera/0/startexposure", params={"Duration": 10.0, "Light": True})

    assert client.put("/api/v1/camera/0/abortexposure").status_code == 200
    assert _value(client.get("/api/v1/camera/0/camerastate")) == 0

    connector.last.push(image_frame("late.tiff"))
    session.poll()
    assert executor.jobs == []
    assert _value(client.get("/api/v1/camera/0/imageready")) is False


def test_camera_geometry_and_temperature():
    client, session, connector, _, _ = _build()
    _connect_camera(client)
    connector.last.push(mount_frame(Temperature=12.5))
    session.poll()

    assert _value(client.get("/api/v1/camera/0/cameraxsize")) == 4144
    assert _value(client.get("/api/v1/camera/0/cameraysize")) == 2822
    assert _value(client.get("/api/v1/camera/0/pixelsizex")) == 3.76
    assert _value(client.get("/api/v1/camera/0/maxadu")) == 65535
    assert _value(client.get("/api/v1/camera/0/ccdtemperature")) == 12.5
    assert _value(client.get("/api/v1/camera/0/gain")) == 200


def test_gain_out_of_range_rejected():
    client, _, _, _, _ = _build()

    resp = client.put("/api/v1/camera/0/gain", json={"Gain": 10})

    assert resp.status_code == 400


def test_image_array_not_implemented():
    client, _, _, _, _ = _build()

    body = client.get("/api/v1/camera/0/imagearray").json()

    assert body["ErrorNumber"] == 0x400
    assert "imagefile" in body["ErrorMessage"]
