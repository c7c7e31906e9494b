import asyncio
from datetime import datetime
from unittest.mock import MagicMock

import pytest
import requests

import network_time
from network_time import (
    NetworkTimeError,
    get_network_time,
    get_time_sources,
    parse_timezonedb_response,
    parse_worldtimeapi_response,
)


def fake_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    return response


def test_parse_timezonedb_response():
    payload = {"status": "OK", "formatted": "2024-05-06 07:08:09"}
    assert parse_timezonedb_response(payload) == datetime(2024, 5, 6, 7, 8, 9)

    with pytest.raises(NetworkTimeError):
        parse_timezonedb_response({"status": "FAILED", "message": "Invalid API key"})
    with pytest.raises(NetworkTimeError):
        parse_timezonedb_response({"status": "OK"})


def test_parse_worldtimeapi_response_drops_offset():
    payload = {"datetime": "2024-05-06T07:08:09.123456+02:00"}
    assert parse_worldtimeapi_response(payload) == datetime(2024, 5, 6, 7, 8, 9, 123456)


def test_timezonedb_only_used_with_key(monkeypatch):
    monkeypatch.delenv("TIME_API_KEY", raising=False)
    assert len(get_time_sources()) == 1

    monkeypatch.setenv("TIME_API_KEY", "abc123")
    sources = get_time_sources()
    assert len(sources) == 2
    assert "key=abc123" in sources[0][0]
    assert "Europe/Budapest" in sources[0][0]


def test_first_answering_source_wins(monkeypatch):
    calls = []

    def fake_get(url, **kwargs):
        calls.append(url)
        if "timezonedb" in url:
            raise requests.ConnectionError("offline")
        return fake_response(payload={"datetime": "2024-05-06T07:08:09+02:00"})

    monkeypatch.setenv("TIME_API_KEY", "abc123")
    monkeypatch.setattr(network_time.requests, "get", fake_get)

    assert get_network_time() == datetime(2024, 5, 6, 7, 8, 9)
    assert len(calls) == 2


def test_falls_back_to_system_time(monkeypatch):
    monkeypatch.delenv("TIME_API_KEY", raising=False)
    monkeypatch.setattr(network_time.requests, "get", lambda url, **kwargs: fake_response(status_code=503))
    monkeypatch.setattr(network_time, "system_time", lambda: datetime(2000, 1, 1))

    assert get_network_time() == datetime(2000, 1, 1)


def test_bad_payload_falls_back(monkeypatch):
    response = fake_response()
    response.json.side_effect = ValueError("not json")
    monkeypatch.setattr(network_time.requests, "get", lambda url, **kwargs: response)
    monkeypatch.setattr(network_time, "system_time", lambda: datetime(2000, 1, 1))

    assert get_network_time(sources=[("https://time.example/api", parse_worldtimeapi_response)]) == datetime(2000, 1, 1)


def test_async_wrapper(monkeypatch):
    monkeypatch.setattr(network_time, "get_network_time", lambda timeout: datetime(2024, 1, 1, 12))
    assert asyncio.run(network_time.get_network_time_async()) == datetime(2024, 1, 1, 12)
