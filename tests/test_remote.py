"""
Tests for the HTTP log service backends (attestlog/remote.py).
"""

import base64
import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from attestlog.builder import RecordBuilder
from attestlog.fetcher import Fetcher
from attestlog.models import (
    BreakKind,
    LogHandle,
    LogServiceError,
    LogServiceTimeout,
    RateLimitError,
    ServiceUnavailableError,
)
from attestlog.remote import (
    AsyncHttpLogService,
    HttpLogService,
    format_consensus_timestamp,
    parse_consensus_timestamp,
)
from attestlog.verifier import verify_chain

BASE_URL = "http://mirror.test"
MESSAGES_URL = f"{BASE_URL}/api/v1/topics/0.0.1234/messages"


@pytest.fixture
def http_service():
    svc = HttpLogService(base_url=BASE_URL, api_key="key_test123")
    yield svc
    svc.close()


@pytest.fixture
def topic() -> LogHandle:
    return LogHandle(log_id="0.0.1234", submit_key="submit-secret")


def _entry(seq: int, data: bytes, ts: str = None) -> dict:
    return {
        "sequence_number": seq,
        "consensus_timestamp": ts or f"1704110400.{seq:09d}",
        "message": base64.b64encode(data).decode("ascii"),
    }


class TestConsensusTimestamps:
    """Tests for "seconds.nanoseconds" conversion."""

    def test_parse(self):
        assert parse_consensus_timestamp("1704110400.000000123") == 1704110400000000123
        assert parse_consensus_timestamp("12.5") == 12_500_000_000
        assert parse_consensus_timestamp("7") == 7_000_000_000
        assert parse_consensus_timestamp(42) == 42

    def test_format(self):
        assert format_consensus_timestamp(1704110400000000123) == "1704110400.000000123"

    @pytest.mark.parametrize("value", ["abc", "1.x", "-1.0", ""])
    def test_parse_invalid(self, value):
        with pytest.raises(ValueError):
            parse_consensus_timestamp(value)


class TestHttpLogService:
    """Tests for the synchronous HTTP backend."""

    def test_create_log(self, httpx_mock: HTTPXMock, http_service: HttpLogService):
        httpx_mock.add_response(
            method="POST",
            url=f"{BASE_URL}/api/v1/topics",
            json={"topic_id": "0.0.1234"},
        )

        handle = http_service.create_log(memo="audit", submit_key="submit-secret")

        assert handle.log_id == "0.0.1234"
        assert handle.submit_key == "submit-secret"
        request = httpx_mock.get_request()
        assert request.headers["X-Api-Key"] == "key_test123"
        assert json.loads(request.content) == {"memo": "audit", "submit_key": "submit-secret"}

    def test_create_log_without_id(self, httpx_mock: HTTPXMock, http_service: HttpLogService):
        httpx_mock.add_response(method="POST", json={})
        with pytest.raises(LogServiceError) as exc_info:
            http_service.create_log()
        assert exc_info.value.code == "BAD_RESPONSE"

    def test_submit(self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle):
        httpx_mock.add_response(
            method="POST",
            url=MESSAGES_URL,
            json={"sequence_number": 3, "consensus_timestamp": "1704110400.000000123"},
        )

        ack = http_service.submit(topic, b'{"a":1}')

        assert ack.sequence_number == 3
        assert ack.consensus_timestamp == 1704110400000000123
        request = httpx_mock.get_request()
        assert request.headers["X-Submit-Key"] == "submit-secret"
        assert json.loads(request.content) == {"message": base64.b64encode(b'{"a":1}').decode()}

    def test_submit_oversized_makes_no_request(self, http_service: HttpLogService, topic: LogHandle):
        with pytest.raises(LogServiceError) as exc_info:
            http_service.submit(topic, b"x" * 1025)
        assert exc_info.value.status == 413

    def test_fetch_page(self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle):
        httpx_mock.add_response(
            method="GET",
            json={
                "messages": [_entry(1, b"one"), _entry(2, b"two")],
                "links": {"next": "/api/v1/topics/0.0.1234/messages?sequencenumber=gt:2"},
            },
        )

        page = http_service.fetch_page(topic, limit=2)

        assert [m.data for m in page.messages] == [b"one", b"two"]
        assert page.messages[1].consensus_timestamp == 1704110400000000002
        assert page.next_cursor == "/api/v1/topics/0.0.1234/messages?sequencenumber=gt:2"
        request = httpx_mock.get_request()
        assert request.url.params["limit"] == "2"
        assert request.url.params["order"] == "asc"
        assert "X-Submit-Key" not in request.headers

    def test_fetch_follows_relative_cursor(
        self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle
    ):
        httpx_mock.add_response(method="GET", json={"messages": [], "links": {"next": None}})

        page = http_service.fetch_page(
            topic, cursor="/api/v1/topics/0.0.1234/messages?sequencenumber=gt:2"
        )

        assert page.next_cursor is None
        url = httpx_mock.get_request().url
        assert url.host == "mirror.test"
        assert url.params["sequencenumber"] == "gt:2"

    def test_fetch_time_range(self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle):
        httpx_mock.add_response(method="GET", json={"messages": []})

        http_service.fetch_page(topic, start=1_000_000_001, end=2_000_000_000)

        params = httpx_mock.get_request().url.params
        assert params.get_list("timestamp") == ["gte:1.000000001", "lte:2.000000000"]

    def test_undecodable_message_kept_as_text(
        self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle
    ):
        httpx_mock.add_response(
            method="GET",
            json={"messages": [{"sequence_number": 1, "consensus_timestamp": "1.0", "message": "%%%"}]},
        )
        page = http_service.fetch_page(topic)
        assert page.messages[0].data == b"%%%"

    def test_malformed_page_entry_skipped(
        self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle
    ):
        httpx_mock.add_response(
            method="GET",
            json={
                "messages": [
                    {"message": ""},
                    _entry(2, b"{}", ts="garbage"),
                    "not an entry",
                    _entry(3, b"{}"),
                ]
            },
        )

        page = http_service.fetch_page(topic)

        assert [m.sequence_number for m in page.messages] == [3]
        assert [m.sequence_number for m in page.malformed] == [None, 2, None]
        assert "garbage" in page.malformed[1].reason


class TestHttpErrorMapping:
    """HTTP failures map onto the log service error taxonomy."""

    def test_rate_limit(self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle):
        httpx_mock.add_response(method="POST", status_code=429, headers={"Retry-After": "2"})

        with pytest.raises(RateLimitError) as exc_info:
            http_service.submit(topic, b"x")

        assert exc_info.value.retry_after_ms == 2000
        assert exc_info.value.transient
        assert len(httpx_mock.get_requests()) == 1

    def test_server_error_is_transient(
        self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle
    ):
        httpx_mock.add_response(method="POST", status_code=503, json={"error": "maintenance"})

        with pytest.raises(ServiceUnavailableError) as exc_info:
            http_service.submit(topic, b"x")

        assert exc_info.value.status == 503
        assert str(exc_info.value) == "maintenance"

    def test_client_error_message_from_status(
        self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle
    ):
        httpx_mock.add_response(
            method="GET",
            status_code=400,
            json={"_status": {"messages": [{"message": "Invalid parameter: limit"}]}},
        )

        with pytest.raises(LogServiceError) as exc_info:
            http_service.fetch_page(topic)

        assert str(exc_info.value) == "Invalid parameter: limit"
        assert exc_info.value.status == 400
        assert not exc_info.value.transient

    def test_error_status_block_not_an_object(
        self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle
    ):
        httpx_mock.add_response(method="GET", status_code=400, json={"_status": "bad request"})

        with pytest.raises(LogServiceError) as exc_info:
            http_service.fetch_page(topic)

        assert str(exc_info.value) == "Request failed with status 400"
        assert exc_info.value.status == 400

    def test_non_json_success(self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle):
        httpx_mock.add_response(method="GET", text="<html>ok</html>")
        with pytest.raises(LogServiceError) as exc_info:
            http_service.fetch_page(topic)
        assert exc_info.value.code == "BAD_RESPONSE"

    def test_read_timeout(self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle):
        httpx_mock.add_exception(httpx.ReadTimeout("Unable to read within timeout"))
        with pytest.raises(LogServiceTimeout):
            http_service.submit(topic, b"x")

    def test_connect_error(self, httpx_mock: HTTPXMock, http_service: HttpLogService, topic: LogHandle):
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))
        with pytest.raises(ServiceUnavailableError) as exc_info:
            http_service.fetch_page(topic)
        assert not isinstance(exc_info.value, LogServiceTimeout)


class TestHttpFetchAndVerify:
    """Fetcher and verifier on top of the HTTP backend."""

    def test_paginated_chain_verifies(
        self, httpx_mock: HTTPXMock, http_service: HttpLogService, builder: RecordBuilder
    ):
        first = builder.build("DECISION", "agent-1", {"action": "login"})
        second = builder.build(
            "DECISION", "agent-1", {"action": "transfer", "amount": 10}, first.record_hash
        )
        httpx_mock.add_response(
            method="GET",
            json={
                "messages": [_entry(1, first.record.canonical_bytes())],
                "links": {"next": "/api/v1/topics/0.0.1234/messages?sequencenumber=gt:1"},
            },
        )
        httpx_mock.add_response(
            method="GET",
            json={"messages": [_entry(2, second.record.canonical_bytes())], "links": {"next": None}},
        )

        records = list(Fetcher(http_service).fetch(LogHandle(log_id="0.0.1234")))
        result = verify_chain(records, "agent-1")

        assert [r.sequence_number for r in records] == [1, 2]
        assert result.valid
        assert result.record_count == 2

    def test_bad_entry_reported_not_fatal(
        self, httpx_mock: HTTPXMock, http_service: HttpLogService, builder: RecordBuilder
    ):
        first = builder.build("DECISION", "agent-1", {"action": "login"})
        second = builder.build("DECISION", "agent-1", {"action": "logout"}, first.record_hash)
        httpx_mock.add_response(
            method="GET",
            json={
                "messages": [
                    _entry(1, first.record.canonical_bytes()),
                    _entry(2, second.record.canonical_bytes(), ts="garbage"),
                ]
            },
        )

        stream = Fetcher(http_service).fetch(LogHandle(log_id="0.0.1234"))
        records = list(stream)
        result = verify_chain(records, "agent-1", malformed=stream.malformed)

        assert [r.sequence_number for r in records] == [1]
        assert [e.sequence_number for e in stream.malformed] == [2]
        assert not result.valid
        assert result.breaks[0].kind == BreakKind.MALFORMED_RECORD
        assert result.breaks[0].at_sequence == 2


class TestAsyncHttpLogService:
    """Tests for the asynchronous HTTP backend."""

    @pytest.mark.asyncio
    async def test_async_submit_and_fetch(self, httpx_mock: HTTPXMock, topic: LogHandle):
        httpx_mock.add_response(
            method="POST",
            url=MESSAGES_URL,
            json={"sequence_number": 1, "consensus_timestamp": "1704110400.000000001"},
        )
        httpx_mock.add_response(method="GET", json={"messages": [_entry(1, b"hello")]})

        async with AsyncHttpLogService(base_url=BASE_URL) as svc:
            ack = await svc.submit(topic, b"hello")
            page = await svc.fetch_page(topic)

        assert ack.sequence_number == 1
        assert page.messages[0].data == b"hello"
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_async_create_log(self, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="POST", json={"topic_id": "0.0.99"})
        async with AsyncHttpLogService(base_url=BASE_URL) as svc:
            handle = await svc.create_log(memo="m")
        assert handle.log_id == "0.0.99"

    @pytest.mark.asyncio
    async def test_async_rate_limit(self, httpx_mock: HTTPXMock, topic: LogHandle):
        httpx_mock.add_response(method="POST", status_code=429)

        async with AsyncHttpLogService(base_url=BASE_URL) as svc:
            with pytest.raises(RateLimitError) as exc_info:
                await svc.submit(topic, b"x")

        assert exc_info.value.retry_after_ms is None

    @pytest.mark.asyncio
    async def test_async_timeout(self, httpx_mock: HTTPXMock, topic: LogHandle):
        httpx_mock.add_exception(httpx.ReadTimeout("Unable to read within timeout"))
        async with AsyncHttpLogService(base_url=BASE_URL) as svc:
            with pytest.raises(LogServiceTimeout):
                await svc.fetch_page(topic)
