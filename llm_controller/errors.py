"""Structured error types for llm_controller.

Two families live here:

- Controller errors: raised by the parser, the tool layer, the output store
  and the traversal operations. Each maps to one failure treatment in the
  controller loop (terminal, fed back to the model, or returned to the
  caller of a single traversal operation).
- Model-call errors: litellm exceptions classified into ``LLMError``
  subtypes so a failed model turn can be reported with a specific reason:

    from llm_controller.errors import ActionValidationError, TraversalError

    try:
        action = parse_controller_reply(raw)
    except ActionValidationError as exc:
        print(exc.step_type, exc.missing_field)
"""

from __future__ import annotations

from typing import Any


class ControllerError(Exception):
    """Base for all controller-runtime errors."""


class ControllerStateError(ControllerError):
    """An operation was requested from a state that does not allow it."""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class ActionParseError(ControllerError):
    """Model output could not be decoded into a ControllerAction."""

    def __init__(self, message: str, raw: Any = None) -> None:
        super().__init__(message)
        self.raw = raw


class ActionValidationError(ControllerError):
    """A decoded action failed the step-type / payload-presence invariant."""

    def __init__(
        self,
        message: str,
        *,
        step_type: str | None = None,
        missing_field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.step_type = step_type
        self.missing_field = missing_field


# ---------------------------------------------------------------------------
# Tools and storage
# ---------------------------------------------------------------------------


class ToolExecutionError(ControllerError):
    """A tool could not be found, rejected its arguments, or failed."""

    def __init__(self, message: str, *, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class StoreError(ControllerError):
    """Base for output-store failures."""


class OutputNotFoundError(StoreError):
    """No stored output exists for the id (unknown or evicted)."""

    def __init__(self, output_id: str) -> None:
        super().__init__(f"Stored output not found: {output_id!r}")
        self.output_id = output_id


class StoreWriteError(StoreError):
    """Persisting a tool output failed; nothing was recorded."""


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------


class TraversalError(ControllerError):
    """A traversal operation could not be answered.

    ``code`` is one of ``not_found``, ``bad_path``, ``type_mismatch`` or
    ``bad_request``.
    """

    def __init__(self, message: str, *, code: str = "bad_request") -> None:
        super().__init__(message)
        self.code = code


class PathSyntaxError(TraversalError):
    """A path expression does not compile."""

    def __init__(self, path: str, position: int, detail: str) -> None:
        super().__init__(
            f"Invalid path {path!r} at position {position}: {detail}",
            code="bad_path",
        )
        self.path = path
        self.position = position


class PathTypeError(TraversalError):
    """A path resolved to a value of the wrong kind for the operation."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="type_mismatch")


# ---------------------------------------------------------------------------
# Model calls
# ---------------------------------------------------------------------------


class LLMError(Exception):
    """Base for all model-call errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class LLMRateLimitError(LLMError):
    """Transient rate limit (429), retried with backoff."""


class LLMQuotaExhaustedError(LLMError):
    """Permanent quota/billing exhaustion, not retried."""


class LLMAuthError(LLMError):
    """Authentication failed (401/403): API key invalid or forbidden."""


class LLMContentFilterError(LLMError):
    """Content policy violation: the request was blocked."""


class LLMTransientError(LLMError):
    """Server error (500/502/503), timeout, or connection failure, retried."""


class LLMModelNotFoundError(LLMError):
    """Model doesn't exist (404)."""


# Patterns that indicate permanent quota exhaustion (not transient rate limit).
_QUOTA_PATTERNS = [
    "quota",
    "billing",
    "insufficient",
    "exceeded your current",
    "plan and billing",
]

_TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "unavailable",
    "overloaded",
    "500",
    "502",
    "503",
    "529",
    "server error",
)


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def classify_error(error: Exception) -> type[LLMError]:
    """Classify any exception into an LLMError subtype.

    Uses litellm exception types first, then falls back to string matching.
    """
    import litellm as _lt

    auth_types = _litellm_error_types(_lt, ("AuthenticationError", "PermissionDeniedError"))
    if auth_types and isinstance(error, auth_types):
        return LLMAuthError

    not_found_types = _litellm_error_types(_lt, ("NotFoundError",))
    if not_found_types and isinstance(error, not_found_types):
        return LLMModelNotFoundError

    content_types = _litellm_error_types(_lt, ("ContentPolicyViolationError",))
    if content_types and isinstance(error, content_types):
        return LLMContentFilterError

    budget_types = _litellm_error_types(_lt, ("BudgetExceededError",))
    if budget_types and isinstance(error, budget_types):
        return LLMQuotaExhaustedError

    rate_types = _litellm_error_types(_lt, ("RateLimitError",))
    if rate_types and isinstance(error, rate_types):
        error_str = str(error).lower()
        if any(p in error_str for p in _QUOTA_PATTERNS):
            return LLMQuotaExhaustedError
        return LLMRateLimitError

    transient_types = _litellm_error_types(
        _lt,
        (
            "InternalServerError",
            "ServiceUnavailableError",
            "APIConnectionError",
            "BadGatewayError",
            "Timeout",
        ),
    )
    if transient_types and isinstance(error, transient_types):
        return LLMTransientError

    error_str = str(error).lower()

    if any(p in error_str for p in _QUOTA_PATTERNS):
        return LLMQuotaExhaustedError
    if "401" in error_str or "authentication" in error_str or "unauthorized" in error_str:
        return LLMAuthError
    if "403" in error_str or "forbidden" in error_str:
        return LLMAuthError
    if "404" in error_str or "does not exist" in error_str:
        return LLMModelNotFoundError
    if "content" in error_str and ("policy" in error_str or "filter" in error_str):
        return LLMContentFilterError
    if "rate" in error_str and "limit" in error_str:
        return LLMRateLimitError
    if any(p in error_str for p in _TRANSIENT_PATTERNS):
        return LLMTransientError

    return LLMError


def wrap_error(error: Exception) -> LLMError:
    """Wrap an exception in the appropriate LLMError subclass.

    If the error is already an LLMError, returns it unchanged.
    """
    if isinstance(error, LLMError):
        return error
    cls = classify_error(error)
    return cls(str(error), original=error)
