import asyncio
import json

import asyncpg
import pytest

from wxstation import main as entry
from wxstation.errors import IngestFailure
from wxstation.schemas import Observation


def test_load_payload_reads_json_file(tmp_path):
    path = tmp_path / "payload.json"
    path.write_text(json.dumps([{"macAddress": "00:00", "lastData": {"dateutc": 1704067320000}}]))
    payload = entry.load_payload(str(path))
    assert payload[0]["lastData"]["dateutc"] == 1704067320000


def test_load_payload_wraps_read_errors(tmp_path):
    with pytest.raises(IngestFailure):
        entry.load_payload(str(tmp_path / "missing.json"))
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(IngestFailure):
        entry.load_payload(str(bad))


def test_main_returns_zero_on_success(tmp_path, monkeypatch):
    path = tmp_path / "payload.json"
    path.write_text(json.dumps({"dateutc": 1704067320000, "tempf": 41.2}))
    seen = {}

    async def fake_run(payload, settings):
        seen["payload"] = payload
        return Observation(time=payload["dateutc"] / 1000)

    monkeypatch.setattr(entry, "run_ingestion", fake_run)
    assert entry.main([str(path)]) == 0
    assert seen["payload"]["tempf"] == 41.2


def test_main_returns_one_on_ingest_failure(tmp_path, monkeypatch):
    path = tmp_path / "payload.json"
    path.write_text("{}")

    async def failing_run(payload, settings):
        raise IngestFailure("Reading has no timestamp")

    monkeypatch.setattr(entry, "run_ingestion", failing_run)
    assert entry.main([str(path)]) == 1
    assert entry.main([str(tmp_path / "missing.json")]) == 1


@pytest.mark.parametrize(
    "error",
    [asyncio.TimeoutError(), asyncpg.InterfaceError("connection was closed"), ConnectionRefusedError()],
)
def test_unreachable_database_exits_with_failure(tmp_path, monkeypatch, error):
    path = tmp_path / "payload.json"
    path.write_text(json.dumps({"dateutc": 1704067320000, "tempf": 41.2}))

    async def unreachable(settings=None):
        raise error

    monkeypatch.setattr(entry, "get_pool", unreachable)
    assert entry.main([str(path)]) == 1
