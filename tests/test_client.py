from __future__ import annotations

import json
import math
import threading
import time
from typing import Any, Callable, List, Optional

import pytest
import requests

from promtsdb_adapter.client import OpenTSDBClient, parse_query_response
from promtsdb_adapter.config import OpenTSDBConfig
from promtsdb_adapter.errors import (
    BackendStatusError,
    DeadlineExceededError,
    DeserializationError,
    TranslationError,
    TransportError,
)
from promtsdb_adapter.matcher import MatchType, new_label_matcher
from promtsdb_adapter.model import Query, Sample, WriteSample


class _DummyResponse:
    def __init__(self, *, status_code: int = 200, payload: Any = None, text: Optional[str] = None) -> None:
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(payload)

    def json(self):  # mimic requests.Response
        return json.loads(self.text)


class _FakeSession:
    def __init__(self, handler: Callable[[str, Any], _DummyResponse]) -> None:
        self.handler = handler
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    def post(self, url: str, json: Any = None, timeout: Any = None) -> _DummyResponse:
        with self._lock:
            self.calls.append({"url": url, "json": json, "timeout": timeout})
        return self.handler(url, json)

    def close(self) -> None:
        pass


def _client(handler, **cfg) -> tuple[OpenTSDBClient, _FakeSession]:
    session = _FakeSession(handler)
    config = OpenTSDBConfig(url="http://tsdb:4242/", **cfg)
    return OpenTSDBClient(config, session=session), session


def _query(metric: str, *extra) -> Query:
    matchers = (new_label_matcher(MatchType.EQUAL, "__name__", metric), *extra)
    return Query(start_timestamp_ms=1_000_500, end_timestamp_ms=2_000_900, matchers=matchers)


# --- write path ---


def test_write_drops_nan_and_sends_finite_sample() -> None:
    client, session = _client(lambda url, body: _DummyResponse(status_code=204, text=""))
    samples = [
        WriteSample(labels={"__name__": "temp", "room": "a"}, timestamp_ms=1_000, value=math.nan),
        WriteSample(labels={"__name__": "temp", "room": "a"}, timestamp_ms=2_000, value=3.14),
    ]

    sent = client.write(samples)

    assert sent == 1
    assert len(session.calls) == 1
    call = session.calls[0]
    assert call["url"] == "http://tsdb:4242/api/put?summary"
    assert call["json"] == [{"metric": "temp", "timestamp": 2, "value": 3.14, "tags": {"room": "a"}}]


def test_write_drops_infinities_and_skips_empty_batch() -> None:
    client, session = _client(lambda url, body: _DummyResponse(status_code=204, text=""))
    samples = [
        WriteSample(labels={"__name__": "x"}, timestamp_ms=1_000, value=math.inf),
        WriteSample(labels={"__name__": "x"}, timestamp_ms=1_000, value=-math.inf),
    ]

    assert client.write(samples) == 0
    assert client.write([]) == 0
    assert session.calls == []


def test_write_maps_labels_timestamps_and_empty_values() -> None:
    client, session = _client(lambda url, body: _DummyResponse(status_code=200, payload={"success": 1}))

    client.write([WriteSample(labels={"__name__": "up", "job": "api", "zone": ""}, timestamp_ms=1_999, value=1)])

    (put,) = session.calls[0]["json"]
    assert put == {"metric": "up", "timestamp": 1, "value": 1.0, "tags": {"job": "api", "zone": "_empty_"}}


def test_write_failure_carries_status_and_body() -> None:
    body = '{"error": {"code": 400, "message": "Unknown metric"}}'
    client, _ = _client(lambda url, b: _DummyResponse(status_code=400, text=body))

    with pytest.raises(BackendStatusError) as excinfo:
        client.write([WriteSample(labels={"__name__": "up"}, timestamp_ms=1_000, value=1.0)])

    assert excinfo.value.status_code == 400
    assert excinfo.value.body == body


def test_write_transport_error() -> None:
    def refuse(url, body):
        raise requests.ConnectionError("connection refused")

    client, _ = _client(refuse)

    with pytest.raises(TransportError, match="connection refused"):
        client.write([WriteSample(labels={"__name__": "up"}, timestamp_ms=1_000, value=1.0)])


# --- read path ---


def test_read_sends_one_request_per_query_and_merges() -> None:
    def handler(url: str, body: Any) -> _DummyResponse:
        metric = body["queries"][0]["metric"]
        if metric == "cpu":
            return _DummyResponse(payload=[{"metric": "cpu", "tags": {"host": "a"}, "dps": {"1001": 0.5, "1000": 0.4}}])
        return _DummyResponse(payload=[{"metric": "mem", "tags": {"host": "a"}, "dps": {"1000": 42}}])

    client, session = _client(handler)
    series = client.read([_query("cpu", new_label_matcher(MatchType.NOT_EQUAL, "env", "dev")), _query("mem")])

    assert len(session.calls) == 2
    assert all(c["url"] == "http://tsdb:4242/api/query" for c in session.calls)
    cpu_body = next(c["json"] for c in session.calls if c["json"]["queries"][0]["metric"] == "cpu")
    assert cpu_body == {
        "start": 1000,
        "end": 2000,
        "queries": [
            {
                "metric": "cpu",
                "aggregator": "none",
                "filters": [{"type": "not_literal_or", "tagk": "env", "filter": "dev", "groupBy": True}],
            }
        ],
    }

    # the host tag set is shared, so both metrics land on one key and "cpu" or
    # "mem" is kept depending on arrival order; only check the merged samples
    (merged,) = series
    assert [s.timestamp_ms for s in merged.samples] == [1_000_000, 1_001_000]


def test_read_keeps_distinct_series_apart() -> None:
    def handler(url: str, body: Any) -> _DummyResponse:
        return _DummyResponse(
            payload=[
                {"metric": "cpu", "tags": {"region": "us"}, "dps": {"100": 1.0}},
                {"metric": "cpu", "tags": {"region": "eu"}, "dps": {"100": 2.0}},
                {"metric": "cpu", "tags": {"region": "us"}, "dps": {"200": 2.0}, "aggregateTags": []},
            ]
        )

    client, _ = _client(handler)
    series = {s.label_map()["region"]: s for s in client.read([_query("cpu")])}

    assert series["us"].samples == [Sample(100_000, 1.0), Sample(200_000, 2.0)]
    assert series["eu"].samples == [Sample(100_000, 2.0)]
    assert series["us"].label_map() == {"__name__": "cpu", "region": "us"}


def test_read_fails_entirely_when_one_query_gets_500() -> None:
    def handler(url: str, body: Any) -> _DummyResponse:
        if body["queries"][0]["metric"] == "bad":
            return _DummyResponse(status_code=500, text="internal error")
        return _DummyResponse(payload=[{"metric": "good", "tags": {}, "dps": {"1": 1}}])

    client, _ = _client(handler)

    with pytest.raises(BackendStatusError) as excinfo:
        client.read([_query("good"), _query("bad"), _query("good")])

    assert excinfo.value.status_code == 500
    assert "internal error" in str(excinfo.value)


def test_read_rejects_non_200_success_codes() -> None:
    client, _ = _client(lambda url, body: _DummyResponse(status_code=204, text=""))

    with pytest.raises(BackendStatusError):
        client.read([_query("up")])


def test_read_invalid_json() -> None:
    client, _ = _client(lambda url, body: _DummyResponse(status_code=200, text="<html>oops"))

    with pytest.raises(DeserializationError, match="invalid JSON"):
        client.read([_query("up")])


def test_read_unexpected_shape() -> None:
    client, _ = _client(lambda url, body: _DummyResponse(payload={"error": "nope"}))

    with pytest.raises(DeserializationError, match="JSON array"):
        client.read([_query("up")])


def test_parse_query_response_rejects_bad_dps() -> None:
    with pytest.raises(DeserializationError):
        parse_query_response([{"metric": "up", "dps": {"not-a-ts": 1}}])


def test_read_translation_error_sends_nothing() -> None:
    client, session = _client(lambda url, body: _DummyResponse(payload=[]))
    regex = new_label_matcher(MatchType.REGEX_MATCH, "job", "api.*")

    with pytest.raises(TranslationError):
        client.read([_query("up"), _query("up", regex)])

    assert session.calls == []


def test_read_transport_timeout() -> None:
    def slow(url, body):
        raise requests.Timeout("read timed out")

    client, _ = _client(slow)

    with pytest.raises(TransportError, match="timed out"):
        client.read([_query("up")])


def test_read_deadline_exceeded_with_pending_calls() -> None:
    release = threading.Event()

    def handler(url: str, body: Any) -> _DummyResponse:
        if body["queries"][0]["metric"] != "fast":
            release.wait(5.0)
        return _DummyResponse(payload=[{"metric": "fast", "tags": {}, "dps": {"1": 1}}])

    client, _ = _client(handler, timeout_s=0.2)
    started = time.monotonic()
    try:
        with pytest.raises(DeadlineExceededError):
            client.read([_query("fast"), _query("slow1"), _query("slow2")])
        assert time.monotonic() - started < 2.0
    finally:
        release.set()


def test_read_passes_remaining_deadline_as_timeout() -> None:
    client, session = _client(lambda url, body: _DummyResponse(payload=[]), timeout_s=3.0, connect_timeout_s=1.0)

    assert client.read([_query("up")]) == []

    connect, read = session.calls[0]["timeout"]
    assert connect == 1.0
    assert 0 < read <= 3.0


def test_name() -> None:
    client, _ = _client(lambda url, body: _DummyResponse(payload=[]))

    assert client.name() == "opentsdb"
