"""
Append-only log service interface and local backends.

Any ordered, append-only message store can carry an attestation chain as long
as it implements the LogService protocol: create a log, append opaque bytes
(getting back a sequence number and consensus timestamp), and page through
messages in ascending order.

Local backends:
- Memory: in-process, for tests and embedded use
- SQLite: one table with a per-log sequence column
- JSONL: one append-only JSON Lines file per log

Backend is selected via attestlog.yaml configuration:
    backend:
      type: "sqlite"  # or "memory", "jsonl", "http"
      path: "~/.attestlog/attestlog.db"
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import sqlite3
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from attestlog.models import (
    LogHandle,
    LogPage,
    LogServiceError,
    RateLimitError,
    RawMessage,
    SubmitAck,
)
from attestlog.wire import DEFAULT_MAX_MESSAGE_BYTES

DEFAULT_DB_PATH = Path.home() / ".attestlog" / "attestlog.db"
DEFAULT_STORAGE_DIR = Path.home() / ".attestlog"
MAX_PAGE_LIMIT = 100


# ==============================================================================
# Log Service Protocols
# ==============================================================================


@runtime_checkable
class LogService(Protocol):
    """Protocol every append-only log backend implements."""

    max_message_bytes: int

    def create_log(
        self,
        memo: str = "",
        admin_key: Optional[str] = None,
        submit_key: Optional[str] = None,
    ) -> LogHandle: ...

    def submit(
        self, handle: LogHandle, data: bytes, timeout: Optional[float] = None
    ) -> SubmitAck: ...

    def fetch_page(
        self,
        handle: LogHandle,
        cursor: Optional[str] = None,
        limit: int = MAX_PAGE_LIMIT,
        subject_id: Optional[str] = None,
        start: Optional[int] = None,
        end: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> LogPage: ...

    def close(self) -> None: ...


@runtime_checkable
class AsyncLogService(Protocol):
    """Async twin of LogService."""

    max_message_bytes: int

    async def create_log(
        self,
        memo: str = "",
        admin_key: Optional[str] = None,
        submit_key: Optional[str] = None,
    ) -> LogHandle: ...

    async def submit(
        self, handle: LogHandle, data: bytes, timeout: Optional[float] = None
    ) -> SubmitAck: ...

    async def fetch_page(
        self,
        handle: LogHandle,
        cursor: Optional[str] = None,
        limit: int = MAX_PAGE_LIMIT,
        subject_id: Optional[str] = None,
        start: Optional[int] = None,
        end: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> LogPage: ...

    async def close(self) -> None: ...


# ==============================================================================
# Factory
# ==============================================================================


def create_backend(
    backend: str = "memory",
    path: Optional[Path] = None,
    **kwargs: Any,
) -> LogService:
    """Create a log service backend.

    Args:
        backend: Backend type - "memory", "sqlite", "jsonl" or "http"
        path: For sqlite: .db file path. For jsonl: directory of .jsonl files.
              Defaults to ~/.attestlog/attestlog.db (sqlite) or ~/.attestlog (jsonl).
        **kwargs: Passed to the backend constructor (e.g. base_url for http)

    Returns:
        A LogService instance
    """
    if backend == "sqlite":
        return SqliteLogService(db_path=path or DEFAULT_DB_PATH, **kwargs)
    if backend == "jsonl":
        return JsonlLogService(base_dir=path or DEFAULT_STORAGE_DIR, **kwargs)
    if backend == "http":
        from attestlog.remote import HttpLogService

        return HttpLogService(**kwargs)
    if backend == "memory":
        return MemoryLogService(**kwargs)
    raise ValueError(f"Unknown backend: {backend!r}")


def new_log_id() -> str:
    return f"log-{uuid.uuid4().hex}"


# ==============================================================================
# Shared local-backend behaviour
# ==============================================================================


class _LocalLogService:
    """Service-side rules shared by the local backends.

    Enforces the message size limit, submit-key capability and optional
    throughput cap, assigns strictly increasing consensus timestamps, and
    implements cursor pagination over the backend's ordered storage.
    """

    def __init__(
        self,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        max_submissions_per_second: Optional[int] = None,
    ) -> None:
        self.max_message_bytes = max_message_bytes
        self.max_submissions_per_second = max_submissions_per_second
        self._lock = threading.RLock()
        self._recent: dict[str, deque[float]] = {}

    # -- storage hooks ---------------------------------------------------------

    def _store_log(self, meta: dict[str, Any]) -> None:
        raise NotImplementedError

    def _load_log(self, log_id: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    def _append(self, log_id: str, data: bytes, timestamp: int) -> int:
        raise NotImplementedError

    def _last_timestamp(self, log_id: str) -> int:
        raise NotImplementedError

    def _read(
        self,
        log_id: str,
        after_sequence: int,
        limit: int,
        start: Optional[int],
        end: Optional[int],
    ) -> list[RawMessage]:
        raise NotImplementedError

    # -- LogService ------------------------------------------------------------

    def create_log(
        self,
        memo: str = "",
        admin_key: Optional[str] = None,
        submit_key: Optional[str] = None,
    ) -> LogHandle:
        """Create a new, empty log and return a handle carrying its keys."""
        log_id = new_log_id()
        with self._lock:
            self._store_log(
                {
                    "log_id": log_id,
                    "memo": memo,
                    "admin_key": admin_key,
                    "submit_key": submit_key,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                }
            )
        return LogHandle(log_id=log_id, memo=memo, admin_key=admin_key, submit_key=submit_key)

    def submit(
        self, handle: LogHandle, data: bytes, timeout: Optional[float] = None
    ) -> SubmitAck:
        """Append one message."""
        if len(data) > self.max_message_bytes:
            raise LogServiceError(
                f"Message of {len(data)} bytes exceeds {self.max_message_bytes}",
                413,
                "MESSAGE_SIZE_TOO_LARGE",
            )
        with self._lock:
            meta = self._require_log(handle.log_id)
            if meta.get("submit_key") and meta["submit_key"] != handle.submit_key:
                raise LogServiceError(
                    f"Handle lacks the submit key for {handle.log_id}", 403, "UNAUTHORIZED"
                )
            self._throttle(handle.log_id)
            timestamp = max(time.time_ns(), self._last_timestamp(handle.log_id) + 1)
            sequence_number = self._append(handle.log_id, data, timestamp)
        return SubmitAck(sequence_number=sequence_number, consensus_timestamp=timestamp)

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
        """Read one page in ascending order.

        The cursor is the last sequence number of the previous page. The
        subject hint is ignored: payloads are opaque to the service.
        """
        limit = max(1, min(limit, MAX_PAGE_LIMIT))
        after = 0
        if cursor:
            try:
                after = int(cursor)
            except ValueError:
                raise LogServiceError(
                    f"Invalid cursor: {cursor!r}", 400, "INVALID_CURSOR"
                ) from None

        with self._lock:
            self._require_log(handle.log_id)
            rows = self._read(handle.log_id, after, limit + 1, start, end)

        has_more = len(rows) > limit
        rows = rows[:limit]
        next_cursor = str(rows[-1].sequence_number) if has_more else None
        return LogPage(messages=rows, next_cursor=next_cursor)

    def close(self) -> None:
        pass

    # -- helpers ---------------------------------------------------------------

    def _require_log(self, log_id: str) -> dict[str, Any]:
        meta = self._load_log(log_id)
        if meta is None:
            raise LogServiceError(f"Log not found: {log_id}", 404, "LOG_NOT_FOUND")
        return meta

    def _throttle(self, log_id: str) -> None:
        if not self.max_submissions_per_second:
            return
        now = time.monotonic()
        window = self._recent.setdefault(log_id, deque())
        while window and now - window[0] >= 1.0:
            window.popleft()
        if len(window) >= self.max_submissions_per_second:
            retry_after_ms = int((1.0 - (now - window[0])) * 1000) + 1
            raise RateLimitError(
                f"More than {self.max_submissions_per_second} submissions/s to {log_id}",
                retry_after_ms,
            )
        window.append(now)

    def __enter__(self) -> "_LocalLogService":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


# ==============================================================================
# Memory Backend
# ==============================================================================


class MemoryLogService(_LocalLogService):
    """
    In-process log service.

    Stored messages are reachable through messages() and tamper(), so a test
    harness can play the part of an attacker who controls storage.
    """

    def __init__(
        self,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        max_submissions_per_second: Optional[int] = None,
    ) -> None:
        super().__init__(max_message_bytes, max_submissions_per_second)
        self._logs: dict[str, dict[str, Any]] = {}
        self._messages: dict[str, list[RawMessage]] = {}

    def _store_log(self, meta: dict[str, Any]) -> None:
        self._logs[meta["log_id"]] = meta
        self._messages[meta["log_id"]] = []

    def _load_log(self, log_id: str) -> Optional[dict[str, Any]]:
        return self._logs.get(log_id)

    def _append(self, log_id: str, data: bytes, timestamp: int) -> int:
        messages = self._messages[log_id]
        sequence_number = len(messages) + 1
        messages.append(
            RawMessage(
                sequence_number=sequence_number,
                consensus_timestamp=timestamp,
                data=bytes(data),
            )
        )
        return sequence_number

    def _last_timestamp(self, log_id: str) -> int:
        messages = self._messages[log_id]
        return messages[-1].consensus_timestamp if messages else 0

    def _read(
        self,
        log_id: str,
        after_sequence: int,
        limit: int,
        start: Optional[int],
        end: Optional[int],
    ) -> list[RawMessage]:
        rows: list[RawMessage] = []
        for message in self._messages[log_id]:
            if message.sequence_number <= after_sequence:
                continue
            if start is not None and message.consensus_timestamp < start:
                continue
            if end is not None and message.consensus_timestamp > end:
                continue
            rows.append(message)
            if len(rows) >= limit:
                break
        return rows

    def messages(self, log_id: str) -> list[RawMessage]:
        """All stored messages of a log, in order."""
        with self._lock:
            self._require_log(log_id)
            return list(self._messages[log_id])

    def tamper(self, log_id: str, sequence_number: int, data: bytes) -> None:
        """Overwrite the stored bytes of one message in place."""
        with self._lock:
            self._require_log(log_id)
            messages = self._messages[log_id]
            index = sequence_number - 1
            if not 0 <= index < len(messages):
                raise KeyError(sequence_number)
            old = messages[index]
            messages[index] = RawMessage(
                sequence_number=old.sequence_number,
                consensus_timestamp=old.consensus_timestamp,
                data=data,
            )


# ==============================================================================
# SQLite Backend
# ==============================================================================

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS logs (
    log_id TEXT PRIMARY KEY,
    memo TEXT NOT NULL,
    admin_key TEXT,
    submit_key TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    log_id TEXT NOT NULL,
    sequence_number INTEGER NOT NULL,
    consensus_timestamp INTEGER NOT NULL,
    data BLOB NOT NULL,
    PRIMARY KEY (log_id, sequence_number)
);

CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(log_id, consensus_timestamp);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);
"""


class SqliteLogService(_LocalLogService):
    """
    SQLite-backed log service.

    Default location: ~/.attestlog/attestlog.db
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        max_submissions_per_second: Optional[int] = None,
    ) -> None:
        super().__init__(max_message_bytes, max_submissions_per_second)
        self.db_path = Path(db_path or DEFAULT_DB_PATH).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._init_schema()
        return self._conn

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        conn = self._conn
        if conn is None:
            return

        cursor = conn.cursor()
        cursor.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if cursor.fetchone() is None:
            cursor.executescript(SCHEMA)
            cursor.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            conn.commit()

    def _store_log(self, meta: dict[str, Any]) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO logs (log_id, memo, admin_key, submit_key, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                meta["log_id"],
                meta["memo"],
                meta["admin_key"],
                meta["submit_key"],
                meta["created_at"],
            ),
        )
        conn.commit()

    def _load_log(self, log_id: str) -> Optional[dict[str, Any]]:
        cursor = self._get_connection().execute(
            "SELECT * FROM logs WHERE log_id = ?", (log_id,)
        )
        row = cursor.fetchone()
        return dict(row) if row is not None else None

    def _append(self, log_id: str, data: bytes, timestamp: int) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(MAX(sequence_number), 0) FROM messages WHERE log_id = ?",
            (log_id,),
        ).fetchone()
        sequence_number = row[0] + 1
        conn.execute(
            """
            INSERT INTO messages (log_id, sequence_number, consensus_timestamp, data)
            VALUES (?, ?, ?, ?)
            """,
            (log_id, sequence_number, timestamp, sqlite3.Binary(data)),
        )
        conn.commit()
        return sequence_number

    def _last_timestamp(self, log_id: str) -> int:
        row = self._get_connection().execute(
            "SELECT COALESCE(MAX(consensus_timestamp), 0) FROM messages WHERE log_id = ?",
            (log_id,),
        ).fetchone()
        return row[0]

    def _read(
        self,
        log_id: str,
        after_sequence: int,
        limit: int,
        start: Optional[int],
        end: Optional[int],
    ) -> list[RawMessage]:
        query = "SELECT * FROM messages WHERE log_id = ? AND sequence_number > ?"
        params: list[Any] = [log_id, after_sequence]
        if start is not None:
            query += " AND consensus_timestamp >= ?"
            params.append(start)
        if end is not None:
            query += " AND consensus_timestamp <= ?"
            params.append(end)
        query += " ORDER BY sequence_number ASC LIMIT ?"
        params.append(limit)

        cursor = self._get_connection().execute(query, params)
        return [
            RawMessage(
                sequence_number=row["sequence_number"],
                consensus_timestamp=row["consensus_timestamp"],
                data=bytes(row["data"]),
            )
            for row in cursor.fetchall()
        ]

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None


# ==============================================================================
# JSONL Backend
# ==============================================================================


class JsonlLogService(_LocalLogService):
    """
    JSON Lines log service.

    Layout:
        <base_dir>/logs.jsonl          one line per created log
        <base_dir>/<log_id>.jsonl      one line per message, append-only

    Message bytes are stored base64-encoded so every line stays valid JSON.
    """

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        max_submissions_per_second: Optional[int] = None,
    ) -> None:
        super().__init__(max_message_bytes, max_submissions_per_second)
        self.base_dir = Path(base_dir or DEFAULT_STORAGE_DIR).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._logs_path = self.base_dir / "logs.jsonl"

    def _append_line(self, path: Path, data: dict[str, Any]) -> None:
        """Append a single JSON line to a JSONL file."""
        line = json.dumps(data, separators=(",", ":"))
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _read_lines(self, path: Path) -> list[dict[str, Any]]:
        """Read all JSON lines from a JSONL file."""
        if not path.exists():
            return []
        records: list[dict[str, Any]] = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError as e:
                    raise LogServiceError(
                        f"Corrupt line {lineno} in {path.name}: {e}", 500, "STORAGE_CORRUPT"
                    ) from e
        return records

    def _messages_path(self, log_id: str) -> Path:
        return self.base_dir / f"{log_id}.jsonl"

    def _store_log(self, meta: dict[str, Any]) -> None:
        self._append_line(self._logs_path, meta)
        self._messages_path(meta["log_id"]).touch()

    def _load_log(self, log_id: str) -> Optional[dict[str, Any]]:
        for meta in self._read_lines(self._logs_path):
            if meta.get("log_id") == log_id:
                return meta
        return None

    def _load_messages(self, log_id: str) -> list[RawMessage]:
        messages: list[RawMessage] = []
        for line in self._read_lines(self._messages_path(log_id)):
            try:
                messages.append(
                    RawMessage(
                        sequence_number=line["sequence_number"],
                        consensus_timestamp=line["consensus_timestamp"],
                        data=base64.b64decode(line["data"], validate=True),
                    )
                )
            except (KeyError, binascii.Error) as e:
                raise LogServiceError(
                    f"Corrupt message entry in {log_id}.jsonl: {e}", 500, "STORAGE_CORRUPT"
                ) from e
        return messages

    def _append(self, log_id: str, data: bytes, timestamp: int) -> int:
        messages = self._load_messages(log_id)
        sequence_number = messages[-1].sequence_number + 1 if messages else 1
        self._append_line(
            self._messages_path(log_id),
            {
                "sequence_number": sequence_number,
                "consensus_timestamp": timestamp,
                "data": base64.b64encode(data).decode("ascii"),
            },
        )
        return sequence_number

    def _last_timestamp(self, log_id: str) -> int:
        messages = self._load_messages(log_id)
        return messages[-1].consensus_timestamp if messages else 0

    def _read(
        self,
        log_id: str,
        after_sequence: int,
        limit: int,
        start: Optional[int],
        end: Optional[int],
    ) -> list[RawMessage]:
        rows = [
            m
            for m in self._load_messages(log_id)
            if m.sequence_number > after_sequence
            and (start is None or m.consensus_timestamp >= start)
            and (end is None or m.consensus_timestamp <= end)
        ]
        return rows[:limit]


# ==============================================================================
# Async adapter
# ==============================================================================


class AsyncLogServiceAdapter:
    """Expose a synchronous LogService as an AsyncLogService.

    Each call runs in a worker thread, so blocking storage I/O never stalls
    the event loop.
    """

    def __init__(self, service: LogService) -> None:
        self._service = service

    @property
    def max_message_bytes(self) -> int:
        return self._service.max_message_bytes

    async def create_log(
        self,
        memo: str = "",
        admin_key: Optional[str] = None,
        submit_key: Optional[str] = None,
    ) -> LogHandle:
        return await asyncio.to_thread(self._service.create_log, memo, admin_key, submit_key)

    async def submit(
        self, handle: LogHandle, data: bytes, timeout: Optional[float] = None
    ) -> SubmitAck:
        return await asyncio.to_thread(self._service.submit, handle, data, timeout)

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
        return await asyncio.to_thread(
            self._service.fetch_page, handle, cursor, limit, subject_id, start, end, timeout
        )

    async def close(self) -> None:
        await asyncio.to_thread(self._service.close)
