"""Provider-specific structured-output schemas for the controller action.

The canonical action schema is flat: one required ``action`` discriminator
and a set of independently optional fields. It deliberately avoids the
constructs provider dialects mishandle (``oneOf`` and friends, numeric
bounds, nested definitions), so adapting it is a no-op for every supported
provider but ``anthropic``: ``thinking`` is an open object and that dialect
closes every object. ``adapt_schema`` exists for the schemas that are *not*
already compliant, e.g. pydantic-generated ones.

Usage:
    from llm_controller.schema_adapter import build_response_format, detect_provider

    provider = detect_provider("anthropic/claude-sonnet-4-5-20250929")
    response_format = build_response_format(provider)
    # pass as litellm response_format=
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Literal

logger = logging.getLogger(__name__)

Provider = Literal["openai", "anthropic", "gemini", "ollama", "generic"]

SUPPORTED_PROVIDERS: tuple[Provider, ...] = ("openai", "anthropic", "gemini", "ollama", "generic")

ACTION_NAMES: tuple[str, ...] = ("next_step", "complete", "guardrail_stop", "ask_user")
STEP_TYPES: tuple[str, ...] = ("tool", "tool_batch", "respond", "ask_user")
OUTPUT_MODES: tuple[str, ...] = ("auto", "inline", "persist")
RESUME_TARGETS: tuple[str, ...] = ("reflecting", "controller")

RESPONSE_FORMAT_NAME = "controller_action"

_CONDITIONAL_KEYWORDS = frozenset({"if", "then", "else"})
_NUMERIC_BOUNDS = frozenset({
    "minimum",
    "maximum",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "multipleOf",
})
_LENGTH_BOUNDS = frozenset({
    "minLength",
    "maxLength",
    "minItems",
    "maxItems",
    "uniqueItems",
    "minProperties",
    "maxProperties",
})

# Keywords each provider rejects outright. Anything listed here is removed
# wherever it appears in the schema tree.
_UNSUPPORTED_KEYWORDS: dict[str, frozenset[str]] = {
    "openai": frozenset({"$schema", "$id", "format", "pattern", "default", "examples"})
    | _NUMERIC_BOUNDS
    | _LENGTH_BOUNDS,
    "anthropic": frozenset({"$schema", "$id", "format", "pattern", "default", "examples"})
    | _NUMERIC_BOUNDS
    | _LENGTH_BOUNDS,
    "gemini": frozenset({
        "$schema",
        "$id",
        "default",
        "examples",
        "pattern",
        "exclusiveMinimum",
        "exclusiveMaximum",
        "multipleOf",
    }),
    "ollama": frozenset({"$schema"}),
    "generic": frozenset(),
}

# Whether the provider receives a strict json_schema response_format.
_STRICT_MODE: dict[str, bool] = {
    "openai": False,
    "anthropic": True,
    "gemini": False,
    "ollama": False,
    "generic": False,
}


# ---------------------------------------------------------------------------
# Canonical schema
# ---------------------------------------------------------------------------


def controller_action_schema() -> dict[str, Any]:
    """Return a fresh copy of the canonical flat controller-action schema."""
    string_list = {"type": "array", "items": {"type": "string"}}
    return {
        "type": "object",
        "required": ["action"],
        "properties": {
            "action": {"type": "string", "enum": list(ACTION_NAMES)},
            "thinking": {
                "type": "object",
                "properties": {
                    "task": {"type": "string"},
                    "facts": copy.deepcopy(string_list),
                    "decisions": copy.deepcopy(string_list),
                    "risks": copy.deepcopy(string_list),
                    "confidence": {"type": "number"},
                },
                "additionalProperties": True,
            },
            "type": {"type": "string", "enum": list(STEP_TYPES)},
            "description": {"type": "string"},
            "tool": {"type": "string"},
            "tools": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "tool": {"type": "string"},
                        "args": {"type": "string"},
                        "output_mode": {"type": "string", "enum": list(OUTPUT_MODES)},
                    },
                    "required": ["tool"],
                    "additionalProperties": False,
                },
            },
            # Tool args travel as JSON text: closed-object providers would
            # otherwise force an empty object here.
            "args": {"type": "string"},
            "output_mode": {"type": "string", "enum": list(OUTPUT_MODES)},
            "message": {"type": "string"},
            "reason": {"type": "string"},
            "question": {"type": "string"},
            "context": {"type": "string"},
            "resume_to": {"type": "string", "enum": list(RESUME_TARGETS)},
        },
        "additionalProperties": False,
    }


# ---------------------------------------------------------------------------
# Provider detection
# ---------------------------------------------------------------------------


def detect_provider(model: str) -> Provider:
    """Map a litellm model string to the schema dialect it speaks."""
    lower = model.lower().strip()
    prefix = lower.split("/", 1)[0] if "/" in lower else ""
    if prefix in ("anthropic", "bedrock") or "claude" in lower:
        return "anthropic"
    if prefix in ("gemini", "vertex_ai", "vertex_ai_beta") or "gemini" in lower:
        return "gemini"
    if prefix in ("ollama", "ollama_chat"):
        return "ollama"
    if prefix in ("openai", "azure") or lower.startswith(("gpt-", "o1", "o3", "o4")):
        return "openai"
    return "generic"


def _check_provider(provider: str) -> None:
    if provider not in SUPPORTED_PROVIDERS:
        raise ValueError(
            f"Unsupported provider {provider!r}; expected one of {', '.join(SUPPORTED_PROVIDERS)}"
        )


# ---------------------------------------------------------------------------
# Adaptation
# ---------------------------------------------------------------------------


def _resolve_local_ref(ref: str, defs: dict[str, Any]) -> dict[str, Any] | None:
    for prefix in ("#/$defs/", "#/definitions/"):
        if ref.startswith(prefix):
            target = defs.get(ref[len(prefix):])
            if isinstance(target, dict):
                return target
    return None


def _merge_all_of(node: dict[str, Any], parts: list[Any]) -> None:
    """Fold ``allOf`` subschemas into ``node`` (properties and required union)."""
    for part in parts:
        if not isinstance(part, dict):
            continue
        for key, value in part.items():
            if key == "properties" and isinstance(value, dict):
                node.setdefault("properties", {})
                for prop, prop_schema in value.items():
                    node["properties"].setdefault(prop, prop_schema)
            elif key == "required" and isinstance(value, list):
                required = node.setdefault("required", [])
                for name in value:
                    if name not in required:
                        required.append(name)
            else:
                node.setdefault(key, value)


def _adapt_node(
    node: Any,
    provider: str,
    defs: dict[str, Any],
    seen_refs: tuple[str, ...],
) -> Any:
    if isinstance(node, list):
        return [_adapt_node(item, provider, defs, seen_refs) for item in node]
    if not isinstance(node, dict):
        return node

    node = dict(node)

    if provider != "generic":
        ref = node.get("$ref")
        if isinstance(ref, str):
            target = _resolve_local_ref(ref, defs)
            if target is not None and ref not in seen_refs:
                node.pop("$ref")
                merged = copy.deepcopy(target)
                merged.update(node)
                return _adapt_node(merged, provider, defs, seen_refs + (ref,))
            if target is not None:
                logger.warning("Recursive schema reference %s dropped for provider %s", ref, provider)
                node.pop("$ref")
        node.pop("$defs", None)
        node.pop("definitions", None)

        all_of = node.pop("allOf", None)
        if isinstance(all_of, list):
            _merge_all_of(node, all_of)
        if "oneOf" in node:
            one_of = node.pop("oneOf")
            node.setdefault("anyOf", one_of)

    for keyword in _CONDITIONAL_KEYWORDS:
        node.pop(keyword, None)
    for keyword in _UNSUPPORTED_KEYWORDS[provider]:
        node.pop(keyword, None)

    is_object = node.get("type") == "object"
    if provider == "anthropic" and is_object:
        node["additionalProperties"] = False
    elif provider == "openai" and is_object and "additionalProperties" not in node:
        node["additionalProperties"] = False
    elif provider == "gemini" and isinstance(node.get("additionalProperties"), dict):
        node.pop("additionalProperties")

    for key in ("properties", "patternProperties"):
        if isinstance(node.get(key), dict):
            node[key] = {
                name: _adapt_node(sub, provider, defs, seen_refs)
                for name, sub in node[key].items()
            }
    for key in ("items", "anyOf", "prefixItems", "not"):
        if key in node:
            node[key] = _adapt_node(node[key], provider, defs, seen_refs)
    if isinstance(node.get("additionalProperties"), dict):
        node["additionalProperties"] = _adapt_node(
            node["additionalProperties"], provider, defs, seen_refs,
        )
    return node


def adapt_schema(schema: dict[str, Any], provider: Provider) -> dict[str, Any]:
    """Return a copy of ``schema`` with constructs ``provider`` rejects removed.

    Pure: the input is never mutated. Adapting an already-compliant schema
    returns a structurally identical schema.
    """
    _check_provider(provider)
    defs: dict[str, Any] = {}
    for key in ("$defs", "definitions"):
        if isinstance(schema.get(key), dict):
            defs.update(schema[key])
    return _adapt_node(copy.deepcopy(schema), provider, defs, ())


def schema_violations(schema: dict[str, Any], provider: Provider) -> list[str]:
    """List the constructs in ``schema`` that ``provider`` does not accept.

    Each entry is ``"<json pointer>: <problem>"``. An empty list means the
    schema can be sent to the provider as-is.
    """
    _check_provider(provider)
    problems: list[str] = []

    def _walk(node: Any, pointer: str) -> None:
        if isinstance(node, list):
            for i, item in enumerate(node):
                _walk(item, f"{pointer}/{i}")
            return
        if not isinstance(node, dict):
            return
        for keyword in sorted(_CONDITIONAL_KEYWORDS & node.keys()):
            problems.append(f"{pointer or '/'}: conditional keyword {keyword!r}")
        for keyword in sorted(_UNSUPPORTED_KEYWORDS[provider] & node.keys()):
            problems.append(f"{pointer or '/'}: unsupported keyword {keyword!r}")
        if provider != "generic":
            for keyword in ("oneOf", "allOf", "$ref", "$defs", "definitions"):
                if keyword in node:
                    problems.append(f"{pointer or '/'}: unsupported keyword {keyword!r}")
        if node.get("type") == "object":
            if provider == "anthropic" and node.get("additionalProperties") is not False:
                problems.append(f"{pointer or '/'}: object must set additionalProperties: false")
            elif provider == "openai" and "additionalProperties" not in node:
                problems.append(f"{pointer or '/'}: object must declare additionalProperties")
        if provider == "gemini" and isinstance(node.get("additionalProperties"), dict):
            problems.append(f"{pointer or '/'}: schema-valued additionalProperties")
        for key in ("properties", "patternProperties"):
            if isinstance(node.get(key), dict):
                for name, sub in node[key].items():
                    _walk(sub, f"{pointer}/{key}/{name}")
        for key in ("items", "anyOf", "prefixItems", "not"):
            if key in node:
                _walk(node[key], f"{pointer}/{key}")
        if isinstance(node.get("additionalProperties"), dict):
            _walk(node["additionalProperties"], f"{pointer}/additionalProperties")

    _walk(schema, "")
    return problems


def build_response_format(
    provider: Provider,
    schema: dict[str, Any] | None = None,
    *,
    name: str = RESPONSE_FORMAT_NAME,
) -> dict[str, Any]:
    """Wrap the (adapted) schema in a litellm ``response_format`` payload."""
    adapted = adapt_schema(schema if schema is not None else controller_action_schema(), provider)
    return {
        "type": "json_schema",
        "json_schema": {
            "name": name,
            "schema": adapted,
            "strict": _STRICT_MODE[provider],
        },
    }
