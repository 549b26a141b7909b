import logging

from fastapi.testclient import TestClient

from origin_alpaca.config.settings import Settings
from origin_alpaca.origin.session import OriginSession
from origin_alpaca.origin.transport import OriginTransport
from origin_alpaca.server import build_app

from origin_fakes import FakeConnector, FakeFetcher


def _build_client():
    settings = Settings(discovery_enabled=False, poll_interval_seconds=0.05)
    session = OriginSession(
        settings,
        transport=OriginTransport(connector=FakeConnector()),
        fetcher=FakeFetcher(),
    )
    return TestClient(build_app(settings, session))


def test_access_log_skips_successful_requests(caplog):
    with _build_client() as client, caplog.at_level(logging.INFO):
        caplog.clear()
        response = client.get("/management/health")
        assert response.status_code == 200
        assert not any(record.name == "http.access" for record in caplog.records)


def test_access_log_records_non_200(caplog):
    with _build_client() as client, caplog.at_level(logging.INFO):
        caplog.clear()
        response = client.get("/api/v1/telescope/0/doesnotexist")
        assert response.status_code == 404
        access_logs = [record for record in caplog.records if record.name == "http.access"]
        assert access_logs
        assert access_logs[0].levelno >= logging.WARNING
        assert "http.request" in access_logs[0].getMessage()


def test_lifespan_runs_poller():
    with _build_client() as client:
        poller = client.app.state.poller
        assert poller.running is True
    assert poller.running is False
