"""Tests for llm_controller.errors: controller error types, model-call classification."""

from __future__ import annotations

from unittest.mock import MagicMock

import litellm
import pytest

from llm_controller.errors import (
    ActionParseError,
    ActionValidationError,
    ControllerError,
    LLMAuthError,
    LLMContentFilterError,
    LLMError,
    LLMModelNotFoundError,
    LLMQuotaExhaustedError,
    LLMRateLimitError,
    LLMTransientError,
    OutputNotFoundError,
    PathSyntaxError,
    PathTypeError,
    StoreError,
    StoreWriteError,
    ToolExecutionError,
    TraversalError,
    classify_error,
    wrap_error,
)


# ---------------------------------------------------------------------------
# Controller errors
# ---------------------------------------------------------------------------


class TestControllerErrors:
    def test_hierarchy(self):
        for cls in (
            ActionParseError,
            ActionValidationError,
            ToolExecutionError,
            StoreError,
            OutputNotFoundError,
            StoreWriteError,
            TraversalError,
            PathSyntaxError,
            PathTypeError,
        ):
            assert issubclass(cls, ControllerError)
        assert issubclass(OutputNotFoundError, StoreError)
        assert issubclass(StoreWriteError, StoreError)
        assert issubclass(PathSyntaxError, TraversalError)
        assert issubclass(PathTypeError, TraversalError)

    def test_validation_error_carries_fields(self):
        err = ActionValidationError("missing tool", step_type="tool", missing_field="tool")
        assert err.step_type == "tool"
        assert err.missing_field == "tool"
        assert str(err) == "missing tool"

    def test_parse_error_keeps_raw(self):
        err = ActionParseError("bad", raw="{nope")
        assert err.raw == "{nope"

    def test_output_not_found_message(self):
        err = OutputNotFoundError("abc123")
        assert err.output_id == "abc123"
        assert "abc123" in str(err)

    def test_traversal_codes(self):
        assert TraversalError("x").code == "bad_request"
        assert TraversalError("x", code="not_found").code == "not_found"
        assert PathTypeError("wrong kind").code == "type_mismatch"
        syntax = PathSyntaxError("$.[", 2, "expected a member name or '*'")
        assert syntax.code == "bad_path"
        assert syntax.position == 2
        assert "position 2" in str(syntax)

    def test_tool_error_carries_name(self):
        err = ToolExecutionError("Unknown tool: nope", tool_name="nope")
        assert err.tool_name == "nope"


# ---------------------------------------------------------------------------
# classify_error: litellm exception types
# ---------------------------------------------------------------------------


class TestClassifyLitellmTypes:
    def test_auth_error(self):
        err = litellm.AuthenticationError(
            message="Invalid API key", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is LLMAuthError

    def test_permission_denied(self):
        err = litellm.PermissionDeniedError(
            message="Forbidden", model="gpt-4o", llm_provider="openai", response=MagicMock()
        )
        assert classify_error(err) is LLMAuthError

    def test_not_found(self):
        err = litellm.NotFoundError(
            message="Model not found", model="gpt-99", llm_provider="openai"
        )
        assert classify_error(err) is LLMModelNotFoundError

    def test_content_policy(self):
        err = litellm.ContentPolicyViolationError(
            message="Content blocked", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is LLMContentFilterError

    def test_rate_limit_transient(self):
        err = litellm.RateLimitError(
            message="Rate limit exceeded, please retry after 1s",
            model="gpt-4o",
            llm_provider="openai",
        )
        assert classify_error(err) is LLMRateLimitError

    def test_rate_limit_quota(self):
        err = litellm.RateLimitError(
            message="You exceeded your current quota, check billing",
            model="gpt-4o",
            llm_provider="openai",
        )
        assert classify_error(err) is LLMQuotaExhaustedError

    def test_internal_server_error(self):
        err = litellm.InternalServerError(
            message="Internal server error", model="gpt-4o", llm_provider="openai"
        )
        assert classify_error(err) is LLMTransientError


# ---------------------------------------------------------------------------
# classify_error: string fallback
# ---------------------------------------------------------------------------


class TestClassifyStringFallback:
    @pytest.mark.parametrize(
        "message, expected",
        [
            ("exceeded your current quota", LLMQuotaExhaustedError),
            ("Error 401: unauthorized", LLMAuthError),
            ("403 forbidden", LLMAuthError),
            ("Error 404: model does not exist", LLMModelNotFoundError),
            ("content policy violation", LLMContentFilterError),
            ("rate limit exceeded", LLMRateLimitError),
            ("Request timed out after 60s", LLMTransientError),
            ("503 service unavailable", LLMTransientError),
            ("Anthropic is overloaded", LLMTransientError),
            ("something completely unexpected", LLMError),
        ],
    )
    def test_classification(self, message, expected):
        assert classify_error(Exception(message)) is expected


class TestWrapError:
    def test_wraps_and_keeps_original(self):
        original = litellm.AuthenticationError(
            message="Invalid API key", model="gpt-4o", llm_provider="openai"
        )
        wrapped = wrap_error(original)
        assert isinstance(wrapped, LLMAuthError)
        assert wrapped.original is original
        assert "Invalid API key" in str(wrapped)

    def test_llm_error_passes_through(self):
        original = LLMRateLimitError("already wrapped")
        assert wrap_error(original) is original
