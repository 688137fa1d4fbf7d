"""Durable storage for tool outputs too large to inline.

Layout under the store root::

    payloads/<id>.json   full record (metadata, tool parameters, payload)
    index.db             SQLite index, table ``tool_outputs``

A write lands the payload first (temp file, fsync, atomic rename) and only
then inserts the index row, so anything visible through the index is
complete. Records are immutable; a new write always gets a new id.

    store = OutputStore("~/.llm_controller/tool_outputs")
    meta = store.write(tool_name="search.query", payload=rows, conversation_id="c1")
    record = store.read(meta.id)
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import tempfile
import threading
import time
import uuid
from collections import OrderedDict
from contextlib import suppress
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from llm_controller.errors import OutputNotFoundError, StoreError, StoreWriteError

logger = logging.getLogger(__name__)

INDEX_PREVIEW_CHARS = 500

SORT_COLUMNS: dict[str, str] = {
    "created_at": "created_at",
    "size": "size_bytes",
    "tool_name": "tool_name",
}

_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS tool_outputs (
    id TEXT PRIMARY KEY,
    tool_name TEXT NOT NULL,
    conversation_id TEXT,
    message_id TEXT,
    created_at INTEGER NOT NULL,
    success INTEGER NOT NULL,
    size_bytes INTEGER NOT NULL,
    root_type TEXT NOT NULL,
    item_count INTEGER,
    preview TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_outputs_conversation ON tool_outputs(conversation_id);
CREATE INDEX IF NOT EXISTS idx_outputs_tool_name ON tool_outputs(tool_name);
CREATE INDEX IF NOT EXISTS idx_outputs_created_at ON tool_outputs(created_at);
"""


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _now_ms() -> int:
    return int(time.time() * 1000)


def encode_payload(payload: Any) -> str:
    """Compact JSON text used for sizing and previews."""
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def encoded_size(payload: Any) -> int:
    """UTF-8 byte length of the compact JSON encoding."""
    return len(encode_payload(payload).encode("utf-8"))


def json_type_name(value: Any) -> str:
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    if isinstance(value, str):
        return "string"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if value is None:
        return "null"
    return "string"


def truncate_chars(text: str, max_chars: int) -> tuple[str, bool]:
    if len(text) <= max_chars:
        return text, False
    return text[:max(max_chars, 0)], True


def summarize_payload(payload: Any, max_chars: int) -> tuple[str, bool]:
    """Return ``(preview, truncated)`` for a payload's compact JSON text."""
    return truncate_chars(encode_payload(payload), max_chars)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutputMetadata:
    """Index row for one stored output. Listing never needs more than this."""

    id: str
    tool_name: str
    conversation_id: str | None
    message_id: str | None
    created_at: int
    success: bool
    size_bytes: int
    root_type: str
    item_count: int | None
    preview: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StoredOutput:
    """A persisted tool output. ``created_at`` is unix milliseconds."""

    id: str
    tool_name: str
    conversation_id: str | None
    message_id: str | None
    created_at: int
    success: bool
    size_bytes: int
    parameters: dict[str, Any] = field(default_factory=dict)
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool_name": self.tool_name,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "created_at": self.created_at,
            "success": self.success,
            "size_bytes": self.size_bytes,
            "parameters": self.parameters,
            "output": self.payload,
        }


class _PayloadCache:
    """Thread-safe LRU of parsed records."""

    def __init__(self, maxsize: int = 32) -> None:
        self._cache: OrderedDict[str, StoredOutput] = OrderedDict()
        self._maxsize = maxsize
        self._lock = threading.Lock()

    def get(self, key: str) -> StoredOutput | None:
        with self._lock:
            if key not in self._cache:
                return None
            self._cache.move_to_end(key)
            return self._cache[key]

    def set(self, key: str, value: StoredOutput) -> None:
        if self._maxsize <= 0:
            return
        with self._lock:
            self._cache[key] = value
            self._cache.move_to_end(key)
            if len(self._cache) > self._maxsize:
                self._cache.popitem(last=False)

    def discard(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)


def _row_to_metadata(row: sqlite3.Row) -> OutputMetadata:
    return OutputMetadata(
        id=row["id"],
        tool_name=row["tool_name"],
        conversation_id=row["conversation_id"],
        message_id=row["message_id"],
        created_at=int(row["created_at"]),
        success=bool(row["success"]),
        size_bytes=int(row["size_bytes"]),
        root_type=row["root_type"],
        item_count=row["item_count"],
        preview=row["preview"],
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class OutputStore:
    """Payload directory plus SQLite index. Safe to share across threads."""

    def __init__(self, root: str | Path, *, cache_size: int = 32) -> None:
        self.root = Path(root).expanduser()
        self.payload_dir = self.root / "payloads"
        self.db_path = self.root / "index.db"
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._cache = _PayloadCache(cache_size)

    def __enter__(self) -> "OutputStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _get_db(self) -> sqlite3.Connection:
        """Lazy connection. Creates the table on first use."""
        with self._lock:
            if self._conn is not None:
                return self._conn
            self.root.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.executescript(_TABLES_SQL)
            self._conn = conn
            return conn

    def _payload_path(self, output_id: str) -> Path:
        return self.payload_dir / f"{output_id}.json"

    # -- writes -------------------------------------------------------------

    def write(
        self,
        *,
        tool_name: str,
        payload: Any,
        conversation_id: str | None = None,
        message_id: str | None = None,
        success: bool = True,
        parameters: dict[str, Any] | None = None,
        size_bytes: int | None = None,
    ) -> OutputMetadata:
        """Persist one output and return its index metadata.

        Raises:
            StoreWriteError: the payload or the index row could not be
                written. Nothing is left visible in that case.
        """
        output_id = uuid.uuid4().hex
        created_at = _now_ms()
        try:
            size = size_bytes if size_bytes is not None else encoded_size(payload)
            preview, _ = summarize_payload(payload, INDEX_PREVIEW_CHARS)
        except (TypeError, ValueError) as exc:
            raise StoreWriteError(f"Output of {tool_name} is not JSON-encodable: {exc}") from exc
        item_count = len(payload) if isinstance(payload, (list, dict)) else None
        record = StoredOutput(
            id=output_id,
            tool_name=tool_name,
            conversation_id=conversation_id,
            message_id=message_id,
            created_at=created_at,
            success=success,
            size_bytes=size,
            parameters=dict(parameters or {}),
            payload=payload,
        )
        meta = OutputMetadata(
            id=output_id,
            tool_name=tool_name,
            conversation_id=conversation_id,
            message_id=message_id,
            created_at=created_at,
            success=success,
            size_bytes=size,
            root_type=json_type_name(payload),
            item_count=item_count,
            preview=preview,
        )

        final_path = self._payload_path(output_id)
        try:
            text = json.dumps(record.to_dict(), ensure_ascii=False, default=str)
            self.payload_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{output_id}.", suffix=".tmp", dir=self.payload_dir)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(text)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, final_path)
            except BaseException:
                with suppress(OSError):
                    os.unlink(tmp_name)
                raise
        except (OSError, TypeError, ValueError) as exc:
            raise StoreWriteError(f"Failed to persist output of {tool_name}: {exc}") from exc

        try:
            with self._lock:
                db = self._get_db()
                db.execute(
                    """INSERT INTO tool_outputs
                       (id, tool_name, conversation_id, message_id, created_at,
                        success, size_bytes, root_type, item_count, preview)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        meta.id, meta.tool_name, meta.conversation_id, meta.message_id,
                        meta.created_at, int(meta.success), meta.size_bytes,
                        meta.root_type, meta.item_count, meta.preview,
                    ),
                )
                db.commit()
        except (OSError, sqlite3.Error) as exc:
            with suppress(OSError):
                final_path.unlink()
            raise StoreWriteError(f"Failed to index output of {tool_name}: {exc}") from exc

        logger.debug("Stored output %s from %s (%d bytes)", output_id, tool_name, size)
        return meta

    def evict(self, output_id: str) -> bool:
        """Remove one output. Returns False when the id was not stored."""
        if not _ID_RE.match(output_id or ""):
            return False
        with self._lock:
            db = self._get_db()
            cursor = db.execute("DELETE FROM tool_outputs WHERE id = ?", (output_id,))
            db.commit()
            existed = cursor.rowcount > 0
        self._cache.discard(output_id)
        with suppress(FileNotFoundError):
            self._payload_path(output_id).unlink()
        return existed

    # -- reads --------------------------------------------------------------

    def get_metadata(self, output_id: str) -> OutputMetadata:
        if not isinstance(output_id, str) or not _ID_RE.match(output_id.strip()):
            raise OutputNotFoundError(str(output_id))
        output_id = output_id.strip()
        with self._lock:
            row = self._get_db().execute(
                "SELECT * FROM tool_outputs WHERE id = ?", (output_id,),
            ).fetchone()
        if row is None:
            raise OutputNotFoundError(output_id)
        return _row_to_metadata(row)

    def read(self, output_id: str) -> StoredOutput:
        """Load a full record.

        Raises:
            OutputNotFoundError: unknown id, or the payload was evicted.
            StoreError: the payload file exists but cannot be decoded.
        """
        meta = self.get_metadata(output_id)
        cached = self._cache.get(meta.id)
        if cached is not None:
            return cached

        path = self._payload_path(meta.id)
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError as exc:
            raise OutputNotFoundError(meta.id) from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"Stored output {meta.id!r} is unreadable: {exc}") from exc

        record = StoredOutput(
            id=meta.id,
            tool_name=meta.tool_name,
            conversation_id=meta.conversation_id,
            message_id=meta.message_id,
            created_at=meta.created_at,
            success=meta.success,
            size_bytes=meta.size_bytes,
            parameters=data.get("parameters") or {},
            payload=data.get("output"),
        )
        self._cache.set(meta.id, record)
        return record

    def query(
        self,
        *,
        conversation_id: str | None = None,
        tool_name: str | None = None,
        success: bool | None = None,
        after: int | None = None,
        before: int | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[OutputMetadata], int]:
        """Filter, sort and page the index. Returns ``(page, total_matching)``.

        ``after`` and ``before`` are exclusive unix-millisecond bounds.
        """
        column = SORT_COLUMNS.get(sort_by)
        if column is None:
            raise ValueError(f"Unknown sort_by {sort_by!r}; expected one of {', '.join(SORT_COLUMNS)}")
        if sort_order not in ("asc", "desc"):
            raise ValueError(f"Unknown sort_order {sort_order!r}; expected 'asc' or 'desc'")

        clauses: list[str] = []
        params: list[Any] = []
        if conversation_id is not None:
            clauses.append("conversation_id = ?")
            params.append(conversation_id)
        if tool_name is not None:
            clauses.append("tool_name = ?")
            params.append(tool_name)
        if success is not None:
            clauses.append("success = ?")
            params.append(int(success))
        if after is not None:
            clauses.append("created_at > ?")
            params.append(after)
        if before is not None:
            clauses.append("created_at < ?")
            params.append(before)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        direction = sort_order.upper()

        with self._lock:
            db = self._get_db()
            total = db.execute(f"SELECT COUNT(*) FROM tool_outputs {where}", params).fetchone()[0]
            rows = db.execute(
                f"SELECT * FROM tool_outputs {where} "
                f"ORDER BY {column} {direction}, rowid {direction} LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        return [_row_to_metadata(row) for row in rows], int(total)


__all__ = [
    "OutputMetadata",
    "OutputStore",
    "StoredOutput",
    "encode_payload",
    "encoded_size",
    "json_type_name",
    "summarize_payload",
]
