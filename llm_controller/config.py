"""Typed runtime configuration for llm_controller."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

MODEL_ENV = "LLM_CONTROLLER_MODEL"
INLINE_THRESHOLD_ENV = "LLM_CONTROLLER_INLINE_THRESHOLD_BYTES"
INLINE_HARD_MAX_ENV = "LLM_CONTROLLER_INLINE_HARD_MAX_BYTES"
MAX_ITERATIONS_ENV = "LLM_CONTROLLER_MAX_ITERATIONS"
STORE_ROOT_ENV = "LLM_CONTROLLER_STORE_ROOT"
MAX_TOOL_CALLS_ENV = "LLM_CONTROLLER_MAX_TOOL_CALLS_PER_STEP"
TOOL_TIMEOUT_ENV = "LLM_CONTROLLER_TOOL_TIMEOUT"

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_INLINE_THRESHOLD_BYTES = 16 * 1024
DEFAULT_INLINE_HARD_MAX_BYTES = 64 * 1024
DEFAULT_MAX_ITERATIONS = 25
DEFAULT_MAX_TOOL_CALLS_PER_STEP = 8
DEFAULT_TOOL_TIMEOUT = 120
DEFAULT_PREVIEW_MAX_CHARS = 1_200
DEFAULT_HISTORY_MAX_CHARS = 48_000
DEFAULT_HISTORY_PREFIX_MESSAGES = 8
DEFAULT_HISTORY_TAIL_MESSAGES = 20
DEFAULT_STORE_ROOT = Path.home() / ".llm_controller" / "tool_outputs"


def _int_from_env(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r; expected an integer. Defaulting to %d.", name, raw, default)
        return default
    if value < minimum:
        logger.warning("Invalid %s=%r; must be >= %d. Defaulting to %d.", name, raw, minimum, default)
        return default
    return value


@dataclass(frozen=True)
class ControllerConfig:
    """Runtime policy resolved once and passed explicitly to the loop."""

    model: str = DEFAULT_MODEL
    inline_threshold_bytes: int = DEFAULT_INLINE_THRESHOLD_BYTES
    inline_hard_max_bytes: int = DEFAULT_INLINE_HARD_MAX_BYTES
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_tool_calls_per_step: int = DEFAULT_MAX_TOOL_CALLS_PER_STEP
    # seconds per tool call; 0 disables the limit
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    preview_max_chars: int = DEFAULT_PREVIEW_MAX_CHARS
    history_max_chars: int = DEFAULT_HISTORY_MAX_CHARS
    history_prefix_messages: int = DEFAULT_HISTORY_PREFIX_MESSAGES
    history_tail_messages: int = DEFAULT_HISTORY_TAIL_MESSAGES
    store_root: Path = DEFAULT_STORE_ROOT
    timeout: int = 60

    @classmethod
    def from_env(cls) -> "ControllerConfig":
        """Build typed config from environment variables."""
        inline_threshold = _int_from_env(INLINE_THRESHOLD_ENV, DEFAULT_INLINE_THRESHOLD_BYTES)
        inline_hard_max = _int_from_env(INLINE_HARD_MAX_ENV, DEFAULT_INLINE_HARD_MAX_BYTES)
        if inline_hard_max < inline_threshold:
            logger.warning(
                "%s=%d is below %s=%d; raising hard max to the threshold.",
                INLINE_HARD_MAX_ENV,
                inline_hard_max,
                INLINE_THRESHOLD_ENV,
                inline_threshold,
            )
            inline_hard_max = inline_threshold

        store_raw = os.environ.get(STORE_ROOT_ENV, "").strip()
        return cls(
            model=os.environ.get(MODEL_ENV, "").strip() or DEFAULT_MODEL,
            inline_threshold_bytes=inline_threshold,
            inline_hard_max_bytes=inline_hard_max,
            max_iterations=_int_from_env(MAX_ITERATIONS_ENV, DEFAULT_MAX_ITERATIONS),
            max_tool_calls_per_step=_int_from_env(MAX_TOOL_CALLS_ENV, DEFAULT_MAX_TOOL_CALLS_PER_STEP),
            tool_timeout=_int_from_env(TOOL_TIMEOUT_ENV, DEFAULT_TOOL_TIMEOUT, minimum=0),
            store_root=Path(store_raw).expanduser() if store_raw else DEFAULT_STORE_ROOT,
        )
