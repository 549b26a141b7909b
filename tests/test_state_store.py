from origin_alpaca.origin.state import ConnectionRecord, StateStore, default_state_store


def test_state_store_missing_file_returns_defaults(tmp_path):
    store = StateStore(path=tmp_path / "origin_state.json")

    record = store.load()

    assert record == ConnectionRecord()


def test_state_store_round_trips_connection(tmp_path):
    store = default_state_store(tmp_path / "var")

    store.record_connection("10.0.0.7", 80, timestamp=1_700_000_000.0)
    reloaded = StateStore(path=store.path).load()

    assert reloaded.last_host == "10.0.0.7"
    assert reloaded.last_port == 80
    assert reloaded.last_error is None
    assert reloaded.last_connected_at == 1_700_000_000.0


def test_state_store_sanitizes_invalid_entries(tmp_path):
    path = tmp_path / "origin_state.json"
    path.write_text(
        '{"last_host": "   ", "last_port": "eighty", "last_error": 5, "legacy": true}',
        encoding="utf-8",
    )

    record = StateStore(path=path).load()

    assert record == ConnectionRecord()


def test_state_store_ignores_corrupt_json(tmp_path):
    path = tmp_path / "origin_state.json"
    path.write_text("{broken", encoding="utf-8")

    assert StateStore(path=path).load() == ConnectionRecord()


def test_record_error_keeps_last_address(tmp_path):
    store = default_state_store(tmp_path)
    store.record_connection("origin.local", 8080, timestamp=1.0)

    store.record_error("connection refused")
    reloaded = StateStore(path=store.path).load()

    assert reloaded.last_host == "origin.local"
    assert reloaded.last_error == "connection refused"
