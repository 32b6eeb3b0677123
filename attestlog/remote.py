"""
HTTP log service backends (sync and async).

Talks to a mirror-node style REST API:

    POST /api/v1/topics                      create a log     -> {"topic_id": ...}
    POST /api/v1/topics/{id}/messages        append a message -> {"sequence_number", "consensus_timestamp"}
    GET  /api/v1/topics/{id}/messages        page messages    -> {"messages": [...], "links": {"next": ...}}

Message bodies are base64 on the wire. Consensus timestamps are
"seconds.nanoseconds" strings on the wire and integer nanoseconds in Python.

Each call makes exactly one request; retries belong to the Submitter and
Fetcher. HTTP failures are mapped onto the log service error taxonomy:
429 -> RateLimitError, 5xx and connection failures -> ServiceUnavailableError,
read timeouts -> LogServiceTimeout, other 4xx -> LogServiceError.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Optional, Union

import httpx

from attestlog.models import (
    LogHandle,
    LogPage,
    LogServiceError,
    LogServiceTimeout,
    MalformedEntry,
    RateLimitError,
    RawMessage,
    ServiceUnavailableError,
    SubmitAck,
)
from attestlog.wire import DEFAULT_MAX_MESSAGE_BYTES

logger = logging.getLogger("attestlog")

DEFAULT_BASE_URL = "http://localhost:5551"
DEFAULT_TIMEOUT = 30.0
MAX_PAGE_LIMIT = 100


def parse_consensus_timestamp(value: Union[str, int, float]) -> int:
    """Convert a "seconds.nanoseconds" timestamp into integer nanoseconds."""
    if isinstance(value, int):
        return value
    text = str(value)
    seconds, _, fraction = text.partition(".")
    if not seconds.isdigit() or (fraction and not fraction.isdigit()):
        raise ValueError(f"Invalid consensus timestamp: {value!r}")
    return int(seconds) * 1_000_000_000 + int(fraction.ljust(9, "0")[:9] or "0")


def format_consensus_timestamp(nanos: int) -> str:
    """Convert integer nanoseconds into "seconds.nanoseconds"."""
    return f"{nanos // 1_000_000_000}.{nanos % 1_000_000_000:09d}"


def _error_message(response: httpx.Response) -> tuple[str, Optional[dict[str, Any]]]:
    try:
        body = response.json()
    except ValueError:
        return f"Request failed with status {response.status_code}", None
    if not isinstance(body, dict):
        return f"Request failed with status {response.status_code}", None
    status = body.get("_status")
    messages = (status.get("messages") if isinstance(status, dict) else None) or []
    if not isinstance(messages, list):
        messages = []
    if messages and isinstance(messages[0], dict) and messages[0].get("message"):
        return messages[0]["message"], body
    return body.get("error", f"Request failed with status {response.status_code}"), body


def _check_response(response: httpx.Response) -> dict[str, Any]:
    """Return the JSON body of a successful response or raise the mapped error."""
    if response.is_success:
        try:
            result = response.json()
        except ValueError as e:
            raise LogServiceError(
                "Response body is not JSON", response.status_code, "BAD_RESPONSE"
            ) from e
        if not isinstance(result, dict):
            raise LogServiceError(
                "Response body is not a JSON object", response.status_code, "BAD_RESPONSE"
            )
        return result

    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        retry_after_ms = int(retry_after) * 1000 if retry_after and retry_after.isdigit() else None
        raise RateLimitError("Rate limited", retry_after_ms)

    message, body = _error_message(response)
    if response.status_code >= 500:
        raise ServiceUnavailableError(message, response.status_code, None, body)

    code = body.get("code") if body else None
    raise LogServiceError(message, response.status_code, code, body)


def _map_transport_error(e: httpx.HTTPError) -> LogServiceError:
    # A connect failure means the request never left; a read timeout means it might have landed
    if isinstance(e, (httpx.ConnectError, httpx.ConnectTimeout)):
        return ServiceUnavailableError(f"Connection failed: {e}")
    if isinstance(e, httpx.TimeoutException):
        return LogServiceTimeout(f"Request timed out: {e}")
    return ServiceUnavailableError(f"Transport error: {e}")


def _sequence_hint(item: Any) -> Optional[int]:
    try:
        return int(item["sequence_number"])
    except (KeyError, TypeError, ValueError):
        return None


def _parse_page(body: dict[str, Any]) -> LogPage:
    messages: list[RawMessage] = []
    malformed: list[MalformedEntry] = []
    for item in body.get("messages") or []:
        try:
            sequence_number = int(item["sequence_number"])
            consensus_timestamp = parse_consensus_timestamp(item["consensus_timestamp"])
            if sequence_number < 1 or consensus_timestamp < 0:
                raise ValueError("sequence number or timestamp out of range")
        except (KeyError, TypeError, ValueError) as e:
            # One bad entry must not hide the rest of the page
            logger.warning(f"[attestlog] Dropping unreadable page entry: {e!r}")
            malformed.append(
                MalformedEntry(sequence_number=_sequence_hint(item), reason=f"entry: {e!r}")
            )
            continue
        encoded = item.get("message") or ""
        if not isinstance(encoded, str):
            encoded = ""
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            # Keep the undecodable text; the fetcher reports it as malformed
            data = encoded.encode("utf-8", errors="replace")
        messages.append(
            RawMessage(
                sequence_number=sequence_number,
                consensus_timestamp=consensus_timestamp,
                data=data,
            )
        )
    links = body.get("links")
    next_cursor = links.get("next") if isinstance(links, dict) else None
    return LogPage(messages=messages, malformed=malformed, next_cursor=next_cursor or None)


def _fetch_params(
    limit: int, start: Optional[int], end: Optional[int]
) -> list[tuple[str, Union[str, int]]]:
    params: list[tuple[str, Union[str, int]]] = [
        ("limit", max(1, min(limit, MAX_PAGE_LIMIT))),
        ("order", "asc"),
    ]
    if start is not None:
        params.append(("timestamp", f"gte:{format_consensus_timestamp(start)}"))
    if end is not None:
        params.append(("timestamp", f"lte:{format_consensus_timestamp(end)}"))
    return params


class _HttpLogServiceBase:
    """Request building shared by the sync and async HTTP backends."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        debug: bool = False,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_message_bytes = max_message_bytes
        self.debug = debug

    def _headers(self, handle: Optional[LogHandle] = None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        if handle is not None and handle.submit_key:
            headers["X-Submit-Key"] = handle.submit_key
        return headers

    def _messages_url(self, handle: LogHandle) -> str:
        return f"{self.base_url}/api/v1/topics/{handle.log_id}/messages"

    def _cursor_url(self, cursor: str) -> str:
        # links.next is usually a path relative to the mirror node root
        if cursor.startswith("http://") or cursor.startswith("https://"):
            return cursor
        return f"{self.base_url}{cursor}"

    def _create_body(
        self, memo: str, admin_key: Optional[str], submit_key: Optional[str]
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"memo": memo}
        if admin_key:
            body["admin_key"] = admin_key
        if submit_key:
            body["submit_key"] = submit_key
        return body

    def _submit_body(self, data: bytes) -> dict[str, Any]:
        return {"message": base64.b64encode(data).decode("ascii")}

    def _check_size(self, data: bytes) -> None:
        if len(data) > self.max_message_bytes:
            raise LogServiceError(
                f"Message of {len(data)} bytes exceeds {self.max_message_bytes}",
                413,
                "MESSAGE_SIZE_TOO_LARGE",
            )

    def _handle_from(
        self,
        body: dict[str, Any],
        memo: str,
        admin_key: Optional[str],
        submit_key: Optional[str],
    ) -> LogHandle:
        log_id = body.get("topic_id") or body.get("log_id")
        if not log_id:
            raise LogServiceError("Create response has no topic_id", None, "BAD_RESPONSE")
        return LogHandle(log_id=log_id, memo=memo, admin_key=admin_key, submit_key=submit_key)

    def _ack_from(self, body: dict[str, Any]) -> SubmitAck:
        try:
            return SubmitAck(
                sequence_number=int(body["sequence_number"]),
                consensus_timestamp=parse_consensus_timestamp(body["consensus_timestamp"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LogServiceError(
                f"Malformed submit acknowledgement: {e}", None, "BAD_RESPONSE"
            ) from e

    def _timeout(self, timeout: Optional[float]) -> Any:
        return timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT

    def _debug(self, message: str) -> None:
        """Log a debug message."""
        if self.debug:
            logger.debug(f"[attestlog] {message}")


class HttpLogService(_HttpLogServiceBase):
    """
    Synchronous HTTP log service.

    Args:
        base_url: Root URL of the REST API
        api_key: Optional API key sent as X-Api-Key
        timeout: Default request timeout in seconds
        max_message_bytes: Single-message size limit of the service
        debug: Enable debug logging
        client: Optional preconfigured httpx.Client
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        debug: bool = False,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(base_url, api_key, timeout, max_message_bytes, debug)
        self._client = client or httpx.Client(timeout=timeout)

    def __enter__(self) -> "HttpLogService":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def create_log(
        self,
        memo: str = "",
        admin_key: Optional[str] = None,
        submit_key: Optional[str] = None,
    ) -> LogHandle:
        body = self._request(
            "POST",
            f"{self.base_url}/api/v1/topics",
            json=self._create_body(memo, admin_key, submit_key),
            headers=self._headers(),
        )
        return self._handle_from(body, memo, admin_key, submit_key)

    def submit(
        self, handle: LogHandle, data: bytes, timeout: Optional[float] = None
    ) -> SubmitAck:
        self._check_size(data)
        self._debug(f"Submitting {len(data)} bytes to {handle.log_id}")
        body = self._request(
            "POST",
            self._messages_url(handle),
            json=self._submit_body(data),
            headers=self._headers(handle),
            timeout=timeout,
        )
        return self._ack_from(body)

    def fetch_page(
        self,
        handle: LogHandle,
        cursor: Optional[str] = None,
        limit: int = MAX_PAGE_LIMIT,
        subject_id: Optional[str] = None,
        start: Optional[int] = None,
        end: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> LogPage:
        if cursor:
            body = self._request(
                "GET", self._cursor_url(cursor), headers=self._headers(), timeout=timeout
            )
        else:
            body = self._request(
                "GET",
                self._messages_url(handle),
                params=_fetch_params(limit, start, end),
                headers=self._headers(),
                timeout=timeout,
            )
        return _parse_page(body)

    def _request(
        self,
        method: str,
        url: str,
        json: Optional[dict[str, Any]] = None,
        params: Optional[list[tuple[str, Union[str, int]]]] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Make one request and map failures onto log service errors."""
        try:
            response = self._client.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=self._timeout(timeout),
            )
        except httpx.HTTPError as e:
            raise _map_transport_error(e) from e
        return _check_response(response)


class AsyncHttpLogService(_HttpLogServiceBase):
    """
    Asynchronous HTTP log service.

    Same arguments as HttpLogService, with an optional httpx.AsyncClient.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        debug: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(base_url, api_key, timeout, max_message_bytes, debug)
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "AsyncHttpLogService":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def create_log(
        self,
        memo: str = "",
        admin_key: Optional[str] = None,
        submit_key: Optional[str] = None,
    ) -> LogHandle:
        body = await self._request(
            "POST",
            f"{self.base_url}/api/v1/topics",
            json=self._create_body(memo, admin_key, submit_key),
            headers=self._headers(),
        )
        return self._handle_from(body, memo, admin_key, submit_key)

    async def submit(
        self, handle: LogHandle, data: bytes, timeout: Optional[float] = None
    ) -> SubmitAck:
        self._check_size(data)
        self._debug(f"Submitting {len(data)} bytes to {handle.log_id}")
        body = await self._request(
            "POST",
            self._messages_url(handle),
            json=self._submit_body(data),
            headers=self._headers(handle),
            timeout=timeout,
        )
        return self._ack_from(body)

    async def fetch_page(
        self,
        handle: LogHandle,
        cursor: Optional[str] = None,
        limit: int = MAX_PAGE_LIMIT,
        subject_id: Optional[str] = None,
        start: Optional[int] = None,
        end: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> LogPage:
        if cursor:
            body = await self._request(
                "GET", self._cursor_url(cursor), headers=self._headers(), timeout=timeout
            )
        else:
            body = await self._request(
                "GET",
                self._messages_url(handle),
                params=_fetch_params(limit, start, end),
                headers=self._headers(),
                timeout=timeout,
            )
        return _parse_page(body)

    async def _request(
        self,
        method: str,
        url: str,
        json: Optional[dict[str, Any]] = None,
        params: Optional[list[tuple[str, Union[str, int]]]] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        """Make one request and map failures onto log service errors."""
        try:
            response = await self._client.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=self._timeout(timeout),
            )
        except httpx.HTTPError as e:
            raise _map_transport_error(e) from e
        return _check_response(response)
