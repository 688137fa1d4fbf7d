"""JSONL trace of controller turns and tool calls.

Appends one record per model turn to ``{TRACE_DIR}/turns.jsonl`` and one per
tool call to ``{TRACE_DIR}/tools.jsonl``. Off unless enabled.

Configured via env vars:

    LLM_CONTROLLER_TRACE_ENABLED   "0" (default) or "1" to enable
    LLM_CONTROLLER_TRACE_DIR       output dir (default: ~/.llm_controller/traces)

Or override at runtime via configure().
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_enabled: bool = os.environ.get("LLM_CONTROLLER_TRACE_ENABLED", "0") == "1"
_trace_dir: Path = Path(
    os.environ.get("LLM_CONTROLLER_TRACE_DIR", str(Path.home() / ".llm_controller" / "traces"))
).expanduser()


def configure(
    *,
    enabled: bool | None = None,
    trace_dir: str | Path | None = None,
) -> None:
    """Override trace config at runtime."""
    global _enabled, _trace_dir
    if enabled is not None:
        _enabled = enabled
    if trace_dir is not None:
        _trace_dir = Path(trace_dir).expanduser()


def is_enabled() -> bool:
    return _enabled


def trace_dir() -> Path:
    return _trace_dir


def _copy_messages(
    messages: list[dict[str, Any]] | None,
) -> list[dict[str, Any]] | None:
    if messages is None:
        return None
    return [dict(m) for m in messages]


def _append(filename: str, record: dict[str, Any]) -> None:
    _trace_dir.mkdir(parents=True, exist_ok=True)
    with open(_trace_dir / filename, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, default=str) + "\n")


def log_turn(
    *,
    conversation_id: str,
    iteration: int,
    messages: list[dict[str, Any]] | None = None,
    raw_reply: Any = None,
    action: dict[str, Any] | None = None,
    error: Exception | None = None,
    latency_s: float | None = None,
) -> None:
    """Append one model-turn record. Never raises."""
    if not _enabled:
        return
    try:
        _append("turns.jsonl", {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "conversation_id": conversation_id,
            "iteration": iteration,
            "messages": _copy_messages(messages),
            "raw_reply": raw_reply,
            "action": action,
            "latency_s": round(latency_s, 3) if latency_s is not None else None,
            "error": str(error) if error else None,
            "error_type": type(error).__name__ if error else None,
        })
    except Exception:
        logger.debug("trace_log.log_turn failed", exc_info=True)


def log_tool(
    *,
    conversation_id: str,
    iteration: int,
    tool_name: str,
    args: dict[str, Any] | None = None,
    success: bool,
    delivery: str | None = None,
    output_id: str | None = None,
    size_bytes: int | None = None,
    error: str | None = None,
    latency_s: float | None = None,
) -> None:
    """Append one tool-call record. Never raises."""
    if not _enabled:
        return
    try:
        _append("tools.jsonl", {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "conversation_id": conversation_id,
            "iteration": iteration,
            "tool_name": tool_name,
            "args": args,
            "success": success,
            "delivery": delivery,
            "output_id": output_id,
            "size_bytes": size_bytes,
            "error": error,
            "latency_s": round(latency_s, 3) if latency_s is not None else None,
        })
    except Exception:
        logger.debug("trace_log.log_tool failed", exc_info=True)
