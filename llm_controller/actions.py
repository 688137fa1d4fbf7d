"""Controller action model and the strict reply parser.

A model turn is decoded into exactly one ``ControllerAction``:

- ``NextStep``: run a tool or a batch of tools, respond, or ask the user
- ``Complete``: terminal success
- ``GuardrailStop``: terminal policy abort
- ``AskUser``: suspend until the user answers

Parsing never invents content. A reply that does not decode, or a
``next_step`` whose payload does not match its type, raises and the run
fails. The only recovery is the ``"respond"`` case-fallback, which turns an
explicit final answer into ``Complete``.

Usage:
    from llm_controller.actions import parse_controller_reply

    action = parse_controller_reply(result.content)
"""

from __future__ import annotations

import json as _json
import logging
from typing import Annotated, Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from llm_controller.client import strip_fences
from llm_controller.errors import ActionParseError, ActionValidationError
from llm_controller.schema_adapter import OUTPUT_MODES, STEP_TYPES

logger = logging.getLogger(__name__)

JSON_START_MARKER = "=====JSON_START====="
JSON_END_MARKER = "=====JSON_END====="

# Actions models use for a final answer even though the schema has no such tag.
RESPOND_ACTION_ALIASES = frozenset({"respond", "response", "answer", "final_answer"})

_MESSAGE_LIKE_FIELDS = ("message", "answer", "final_answer", "text")

# alias -> canonical key; applied only when the canonical key is absent
_FIELD_ALIASES: tuple[tuple[str, str], ...] = (
    ("tool_name", "tool"),
    ("name", "tool"),
    ("tool_args", "args"),
    ("arguments", "args"),
    ("tool_input", "args"),
    ("response", "message"),
    ("content", "message"),
    ("step_type", "type"),
    ("tool_calls", "tools"),
    ("calls", "tools"),
)

_ENTRY_ALIASES: tuple[tuple[str, str], ...] = (
    ("tool_name", "tool"),
    ("name", "tool"),
    ("tool_args", "args"),
    ("arguments", "args"),
    ("tool_input", "args"),
)

# step type -> field that must be non-empty
STEP_COMPANION_FIELDS: dict[str, str] = {
    "tool": "tool",
    "tool_batch": "tools",
    "respond": "message",
    "ask_user": "question",
}


# ---------------------------------------------------------------------------
# Tool args
# ---------------------------------------------------------------------------


def normalize_tool_args(value: Any) -> dict[str, Any]:
    """Coerce model-supplied tool arguments into a dict.

    ``None`` or blank text gives ``{}``; JSON object text is decoded; any
    other JSON value is wrapped as ``{"value": v}``; non-JSON text is wrapped
    as ``{"input": text}``.
    """
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return {}
        try:
            decoded = _json.loads(text)
        except _json.JSONDecodeError:
            return {"input": text}
        if isinstance(decoded, dict):
            return decoded
        if decoded is None:
            return {}
        return {"value": decoded}
    return {"value": value}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    thinking: dict[str, Any] | str | None = None


class ToolCall(BaseModel):
    """One entry of a ``tool_batch`` step."""

    model_config = ConfigDict(extra="ignore")

    tool: str = ""
    args: dict[str, Any] = Field(default_factory=dict)
    output_mode: str | None = None

    @field_validator("tool", mode="before")
    @classmethod
    def _coerce_tool(cls, value: Any) -> str:
        return "" if value is None else value

    @field_validator("args", mode="before")
    @classmethod
    def _coerce_args(cls, value: Any) -> dict[str, Any]:
        return normalize_tool_args(value)


class NextStep(_ActionBase):
    action: Literal["next_step"]
    type: str | None = None
    description: str | None = None
    tool: str | None = None
    tools: list[ToolCall] = Field(default_factory=list)
    args: dict[str, Any] = Field(default_factory=dict)
    output_mode: str | None = None
    message: str | None = None
    question: str | None = None
    context: str | None = None
    resume_to: Literal["reflecting", "controller"] = "reflecting"

    @field_validator("args", mode="before")
    @classmethod
    def _coerce_args(cls, value: Any) -> dict[str, Any]:
        return normalize_tool_args(value)

    @field_validator("tools", mode="before")
    @classmethod
    def _coerce_tools(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def step_type(self) -> str | None:
        return self.type


class Complete(_ActionBase):
    action: Literal["complete"]
    message: str


class GuardrailStop(_ActionBase):
    action: Literal["guardrail_stop"]
    reason: str
    message: str | None = None


class AskUser(_ActionBase):
    action: Literal["ask_user"]
    question: str
    context: str | None = None
    resume_to: Literal["reflecting", "controller"] = "reflecting"


ControllerAction = Annotated[
    NextStep | Complete | GuardrailStop | AskUser,
    Field(discriminator="action"),
]

_ACTION_ADAPTER: TypeAdapter[ControllerAction] = TypeAdapter(ControllerAction)


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


def extract_json(raw: str | Mapping[str, Any]) -> dict[str, Any]:
    """Pull the JSON object out of a model reply.

    Tried in order: the marked envelope, then the whole reply with any code
    fence stripped. JSON embedded in prose is not searched for.
    """
    if isinstance(raw, Mapping):
        return dict(raw)
    if raw is None:
        raw = ""
    if not isinstance(raw, str):
        raise ActionParseError(
            f"Model reply must be text or a JSON object, got {type(raw).__name__}",
            raw=raw,
        )
    text = raw.strip()
    if not text:
        raise ActionParseError("Empty model reply: expected a JSON controller action", raw=raw)

    if JSON_START_MARKER in text:
        segment = text.split(JSON_START_MARKER, 1)[1]
        segment = segment.split(JSON_END_MARKER, 1)[0]
        try:
            decoded = _json.loads(strip_fences(segment))
        except _json.JSONDecodeError as exc:
            raise ActionParseError(
                f"Invalid JSON between {JSON_START_MARKER} and {JSON_END_MARKER}: {exc}",
                raw=raw,
            ) from exc
        if not isinstance(decoded, dict):
            raise ActionParseError(
                f"Controller reply must be a JSON object, got {type(decoded).__name__}",
                raw=raw,
            )
        return decoded

    try:
        decoded = _json.loads(strip_fences(text))
    except _json.JSONDecodeError as exc:
        raise ActionParseError(f"Controller reply is not valid JSON: {exc}", raw=raw) from exc
    if not isinstance(decoded, dict):
        raise ActionParseError(
            f"Controller reply must be a JSON object, got {type(decoded).__name__}",
            raw=raw,
        )
    return decoded


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _normalize_entry(entry: Any) -> Any:
    if not isinstance(entry, Mapping):
        return entry
    out = dict(entry)
    for alias, canonical in _ENTRY_ALIASES:
        if alias in out and canonical not in out:
            out[canonical] = out.pop(alias)
    return out


def normalize_action_payload(data: Mapping[str, Any]) -> dict[str, Any]:
    """Hoist nested step objects and map field aliases onto canonical keys.

    Existing top-level keys always win over hoisted or aliased ones.
    """
    out = dict(data)

    for nested_key in ("step", "next_step"):
        nested = out.get(nested_key)
        if not isinstance(nested, Mapping):
            continue
        out.pop(nested_key)
        for key, value in nested.items():
            out.setdefault(key, value)
        if nested_key == "next_step":
            out.setdefault("action", "next_step")

    for alias, canonical in _FIELD_ALIASES:
        if alias in out and canonical not in out:
            out[canonical] = out.pop(alias)

    entries = out.get("tools")
    if isinstance(entries, list):
        out["tools"] = [_normalize_entry(entry) for entry in entries]

    action = out.get("action")
    if isinstance(action, str):
        out["action"] = action.strip().lower()
    step_type = out.get("type")
    if isinstance(step_type, str):
        out["type"] = step_type.strip().lower() or None
    return out


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _non_empty(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _describe_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for err in exc.errors():
        # The first loc element of a tagged union is the tag itself.
        loc = [str(p) for p in err.get("loc", ())]
        if len(loc) > 1:
            loc = loc[1:]
        field_name = ".".join(loc) or "action"
        parts.append(f"{field_name}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def _respond_fallback(data: Mapping[str, Any]) -> Complete | None:
    action = data.get("action")
    if not isinstance(action, str) or action not in RESPOND_ACTION_ALIASES:
        return None
    thinking = data.get("thinking")
    if not isinstance(thinking, (dict, str)):
        thinking = None
    for key in _MESSAGE_LIKE_FIELDS:
        if _non_empty(data.get(key)):
            return Complete(action="complete", message=data[key], thinking=thinking)
    return None


def _check_output_mode(value: str | None, step_type: str, where: str) -> str:
    if value is None:
        return "auto"
    mode = value.strip().lower()
    if mode not in OUTPUT_MODES:
        raise ActionValidationError(
            f"{where} has invalid output_mode={value!r}; expected one of {', '.join(OUTPUT_MODES)}",
            step_type=step_type,
        )
    return mode


def _validate_batch(entries: list[ToolCall]) -> list[ToolCall]:
    if not entries:
        raise ActionValidationError(
            "next_step type=tool_batch requires non-empty 'tools' field",
            step_type="tool_batch",
            missing_field="tools",
        )
    checked: list[ToolCall] = []
    for idx, entry in enumerate(entries):
        if not _non_empty(entry.tool):
            raise ActionValidationError(
                f"next_step type=tool_batch requires non-empty tool name at tools[{idx}]",
                step_type="tool_batch",
                missing_field=f"tools[{idx}].tool",
            )
        mode = _check_output_mode(entry.output_mode, "tool_batch", f"tools[{idx}]")
        checked.append(entry.model_copy(update={"tool": entry.tool.strip(), "output_mode": mode}))
    return checked


def validate_action(action: ControllerAction) -> ControllerAction:
    """Enforce the step-type / payload-presence invariant.

    Returns the action with a ``next_step``'s effective ``type`` and
    ``output_mode`` filled in. A non-empty ``tools`` list makes an untyped
    step a ``tool_batch``; each entry needs a tool name and gets its own
    ``output_mode``.
    """
    if isinstance(action, AskUser):
        if not _non_empty(action.question):
            raise ActionValidationError(
                "ask_user requires non-empty 'question' field",
                step_type="ask_user",
                missing_field="question",
            )
        return action
    if not isinstance(action, NextStep):
        return action

    step_type = action.type
    if step_type is not None and step_type not in STEP_TYPES:
        raise ActionValidationError(
            f"next_step has unknown type={step_type!r}; expected one of {', '.join(STEP_TYPES)}",
            step_type=step_type,
        )

    if step_type is None and action.tools:
        step_type = "tool_batch"
    if step_type is None:
        populated = [
            name
            for name, field_name in STEP_COMPANION_FIELDS.items()
            if name != "tool_batch" and _non_empty(getattr(action, field_name))
        ]
        if not populated:
            raise ActionValidationError(
                "Cannot determine step type: provide 'type' or 'tool'/'tools'/'message'/'question'",
            )
        if len(populated) > 1:
            fields = ", ".join(repr(STEP_COMPANION_FIELDS[name]) for name in populated)
            raise ActionValidationError(
                f"Ambiguous next_step: {fields} are all populated; set 'type' to choose one",
            )
        step_type = populated[0]

    if step_type == "tool_batch":
        tools = _validate_batch(action.tools)
    else:
        tools = action.tools
        companion = STEP_COMPANION_FIELDS[step_type]
        if not _non_empty(getattr(action, companion)):
            raise ActionValidationError(
                f"next_step type={step_type} requires non-empty '{companion}' field",
                step_type=step_type,
                missing_field=companion,
            )

    output_mode = _check_output_mode(action.output_mode, step_type, "next_step")
    return action.model_copy(update={"type": step_type, "output_mode": output_mode, "tools": tools})


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def parse_controller_action(data: Mapping[str, Any]) -> ControllerAction:
    """Decode a JSON object into a validated ``ControllerAction``."""
    normalized = normalize_action_payload(data)
    if "action" not in normalized:
        raise ActionParseError("Controller action is missing the 'action' field", raw=dict(data))

    try:
        action = _ACTION_ADAPTER.validate_python(normalized)
    except ValidationError as exc:
        fallback = _respond_fallback(normalized)
        if fallback is not None:
            logger.debug("Treating action=%r as complete", normalized.get("action"))
            return fallback
        raise ActionParseError(
            f"Invalid controller action (action={normalized.get('action')!r}): "
            f"{_describe_validation_error(exc)}",
            raw=dict(data),
        ) from exc

    return validate_action(action)


def parse_controller_reply(raw: str | Mapping[str, Any]) -> ControllerAction:
    """Extract, normalize, decode and validate one model reply."""
    return parse_controller_action(extract_json(raw))


__all__ = [
    "AskUser",
    "Complete",
    "ControllerAction",
    "GuardrailStop",
    "JSON_END_MARKER",
    "JSON_START_MARKER",
    "NextStep",
    "ToolCall",
    "extract_json",
    "normalize_action_payload",
    "normalize_tool_args",
    "parse_controller_action",
    "parse_controller_reply",
    "validate_action",
]
