"""Tool registry: the only way the controller reaches a tool.

Tools are looked up by name, their arguments are checked against a JSON
schema, and their handlers may be sync or async:

    registry = ToolRegistry()

    async def search(query: str, limit: int = 10) -> list[dict]:
        '''Search the catalogue.'''
        ...

    registry.register_callable(search)
    result = await registry.execute("search", {"query": "lamps"})

``register_traversal_tools`` exposes the stored-output operations as
``tool_outputs.<op>`` tools.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Union, get_args, get_origin, get_type_hints

import jsonschema

from llm_controller.errors import ToolExecutionError, TraversalError
from llm_controller.traversal import (
    CountRequest,
    ExtractRequest,
    ListRequest,
    ReadRequest,
    SampleRequest,
    StatsRequest,
    TraversalSuite,
)

logger = logging.getLogger(__name__)

TOOL_OUTPUTS_PREFIX = "tool_outputs."

# Operations offered in the descriptor of a persisted output.
AVAILABLE_OPERATIONS: tuple[str, ...] = (
    "tool_outputs.list",
    "tool_outputs.stats",
    "tool_outputs.extract",
    "tool_outputs.count",
    "tool_outputs.sample",
)

# Traversal tools that operate on one stored output and accept its id.
_ID_HYDRATED_TOOLS = frozenset({
    "tool_outputs.read",
    "tool_outputs.stats",
    "tool_outputs.extract",
    "tool_outputs.count",
    "tool_outputs.sample",
})
_CONVERSATION_HYDRATED_TOOLS = frozenset({"tool_outputs.read"})

# Python type → JSON Schema type
_TYPE_MAP: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class ToolResult:
    """Outcome of one tool call.

    Attributes:
        success: Whether the tool did its job
        payload: The tool's output value (JSON-serializable)
        size_bytes: Size reported by the tool; measured from the payload when None
        error: Failure description when ``success`` is False
    """

    success: bool
    payload: Any = None
    size_bytes: int | None = None
    error: str | None = None

    @classmethod
    def ok(cls, payload: Any, size_bytes: int | None = None) -> "ToolResult":
        return cls(success=True, payload=payload, size_bytes=size_bytes)

    @classmethod
    def failure(cls, error: str, payload: Any = None) -> "ToolResult":
        return cls(success=False, payload=payload, error=error)


@dataclass
class ToolSpec:
    name: str
    handler: Callable[[dict[str, Any]], Any]
    description: str = ""
    args_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object"})

    def catalogue_entry(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "args_schema": self.args_schema,
        }


# ---------------------------------------------------------------------------
# Schema generation from type hints
# ---------------------------------------------------------------------------


def _type_to_json_schema(tp: Any) -> dict[str, Any]:
    """Convert a Python type annotation to a JSON Schema fragment.

    Supports: str, int, float, bool, list[X], dict, Optional[X], Any.
    Raises ValueError for unsupported types.
    """
    if tp is Any:
        return {}

    origin = get_origin(tp)
    args = get_args(tp)

    # Optional[X] / X | None → X
    if origin is Union or (origin is not None and type(None) in args):
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return _type_to_json_schema(non_none[0])

    if origin is list or tp is list:
        schema: dict[str, Any] = {"type": "array"}
        if args:
            schema["items"] = _type_to_json_schema(args[0])
        return schema

    if origin is dict or tp is dict:
        return {"type": "object"}

    if tp in _TYPE_MAP:
        return {"type": _TYPE_MAP[tp]}

    raise ValueError(
        f"Unsupported type annotation: {tp!r}. "
        f"Supported: str, int, float, bool, list[X], dict, Optional[X], Any."
    )


def callable_to_args_schema(fn: Callable[..., Any]) -> dict[str, Any]:
    """Derive an argument schema from a callable's signature and type hints.

    Every parameter must be annotated (raises ValueError otherwise).
    """
    sig = inspect.signature(fn)
    try:
        hints = get_type_hints(fn)
    except Exception:
        hints = {}

    properties: dict[str, Any] = {}
    required: list[str] = []
    for name, param in sig.parameters.items():
        if name in ("self", "cls"):
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        if name not in hints:
            raise ValueError(
                f"Parameter {name!r} of {fn.__name__!r} has no type annotation. "
                f"All parameters must be typed for schema generation."
            )
        prop = _type_to_json_schema(hints[name])
        if param.default is not inspect.Parameter.empty:
            prop["default"] = param.default
        else:
            required.append(name)
        properties[name] = prop

    schema: dict[str, Any] = {
        "type": "object",
        "properties": properties,
        "additionalProperties": False,
    }
    if required:
        schema["required"] = required
    return schema


def _first_doc_line(fn: Callable[..., Any]) -> str:
    if not fn.__doc__:
        return ""
    return fn.__doc__.strip().split("\n")[0].strip()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Name → tool mapping with argument validation and uniform results."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def catalogue(self) -> list[dict[str, Any]]:
        """Tool descriptions for the controller prompt, sorted by name."""
        return [self._tools[name].catalogue_entry() for name in self.names()]

    def register(
        self,
        name: str,
        handler: Callable[[dict[str, Any]], Any],
        *,
        description: str = "",
        args_schema: dict[str, Any] | None = None,
    ) -> ToolSpec:
        """Register a handler that receives the argument dict.

        Raises:
            ValueError: the name is empty or already taken, or the schema is
                not a valid JSON schema.
        """
        if not name or not name.strip():
            raise ValueError("Tool name must be non-empty")
        if name in self._tools:
            raise ValueError(f"Duplicate tool name {name!r}")
        schema = args_schema if args_schema is not None else {"type": "object"}
        validator_cls = jsonschema.validators.validator_for(schema)
        try:
            validator_cls.check_schema(schema)
        except jsonschema.SchemaError as exc:
            raise ValueError(f"Invalid args_schema for tool {name!r}: {exc.message}") from exc
        spec = ToolSpec(name=name, handler=handler, description=description, args_schema=schema)
        self._tools[name] = spec
        return spec

    def register_callable(
        self,
        fn: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> ToolSpec:
        """Register a typed function; its keyword arguments come from the tool args."""
        schema = callable_to_args_schema(fn)

        def _handler(args: dict[str, Any]) -> Any:
            return fn(**args)

        return self.register(
            name or fn.__name__,
            _handler,
            description=description if description is not None else _first_doc_line(fn),
            args_schema=schema,
        )

    def validate_args(self, name: str, args: Mapping[str, Any]) -> None:
        """Raise ``ToolExecutionError`` if ``args`` violate the tool's schema."""
        spec = self._require(name)
        validator_cls = jsonschema.validators.validator_for(spec.args_schema)
        errors = sorted(
            validator_cls(spec.args_schema).iter_errors(dict(args)),
            key=lambda e: list(e.absolute_path),
        )
        if errors:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err.absolute_path) or '<args>'}: {err.message}"
                for err in errors
            )
            raise ToolExecutionError(f"Invalid arguments for {name}: {details}", tool_name=name)

    def _require(self, name: str) -> ToolSpec:
        spec = self._tools.get(name)
        if spec is None:
            raise ToolExecutionError(f"Unknown tool: {name}", tool_name=name)
        return spec

    async def execute(self, name: str, args: Mapping[str, Any] | None = None) -> ToolResult:
        """Look up, validate and run one tool.

        Bare handler return values become a successful ``ToolResult``.

        Raises:
            ToolExecutionError: unknown tool, invalid arguments, or the
                handler raised.
        """
        spec = self._require(name)
        call_args = dict(args or {})
        self.validate_args(name, call_args)
        try:
            result = spec.handler(call_args)
            if inspect.isawaitable(result):
                result = await result
        except ToolExecutionError:
            raise
        except Exception as exc:
            raise ToolExecutionError(f"{name} failed: {type(exc).__name__}: {exc}", tool_name=name) from exc

        if isinstance(result, ToolResult):
            return result
        return ToolResult.ok(result)


# ---------------------------------------------------------------------------
# Stored-output tools
# ---------------------------------------------------------------------------


def hydrate_tool_output_args(
    tool_name: str,
    args: Mapping[str, Any],
    *,
    last_output_id: str | None,
    conversation_id: str | None,
) -> dict[str, Any]:
    """Fill in arguments the model routinely omits on ``tool_outputs.*`` calls.

    A missing ``id`` becomes the most recently persisted output; ``read``
    also gets the conversation id; ``extract`` gets ``paths=["$"]`` (or a
    single string path wrapped in a list).
    """
    out = dict(args)
    if not tool_name.startswith(TOOL_OUTPUTS_PREFIX):
        return out

    if tool_name == "tool_outputs.extract":
        paths = out.get("paths")
        if isinstance(paths, str):
            out["paths"] = [paths.strip() or "$"]
        elif not isinstance(paths, list) or not paths:
            out["paths"] = ["$"]

    if tool_name not in _ID_HYDRATED_TOOLS:
        return out
    current_id = out.get("id")
    if isinstance(current_id, str) and current_id.strip():
        return out
    if last_output_id is None:
        return out
    out["id"] = last_output_id
    if tool_name in _CONVERSATION_HYDRATED_TOOLS and conversation_id:
        current_conversation = out.get("conversation_id")
        if not isinstance(current_conversation, str) or not current_conversation.strip():
            out["conversation_id"] = conversation_id
    return out


def _traversal_handler(operation: Callable[[Any], Any]) -> Callable[[dict[str, Any]], ToolResult]:
    def _handler(args: dict[str, Any]) -> ToolResult:
        try:
            response = operation(args)
        except TraversalError as exc:
            return ToolResult.failure(str(exc), payload={"error": str(exc), "code": exc.code})
        return ToolResult.ok(response.model_dump(mode="json", by_alias=True))

    return _handler


def register_traversal_tools(registry: ToolRegistry, suite: TraversalSuite) -> None:
    """Register ``tool_outputs.{read,list,stats,extract,count,sample}``."""
    entries: list[tuple[str, Callable[[Any], Any], type, str]] = [
        ("read", suite.read, ReadRequest, "Read a stored tool output by id."),
        (
            "list",
            suite.list_outputs,
            ListRequest,
            "List stored tool outputs with filtering, sorting, and previews.",
        ),
        (
            "stats",
            suite.stats,
            StatsRequest,
            "Size, structure, type counts and optional inferred schema of a stored output.",
        ),
        (
            "extract",
            suite.extract,
            ExtractRequest,
            "Extract values from a stored output with path expressions.",
        ),
        (
            "count",
            suite.count,
            CountRequest,
            "Count array items, object keys, or path matches in a stored output.",
        ),
        (
            "sample",
            suite.sample,
            SampleRequest,
            "Sample items from an array in a stored output (first, last, random, systematic, stratified).",
        ),
    ]
    for op, method, request_model, description in entries:
        registry.register(
            f"{TOOL_OUTPUTS_PREFIX}{op}",
            _traversal_handler(method),
            description=description,
            args_schema=request_model.model_json_schema(),
        )


__all__ = [
    "AVAILABLE_OPERATIONS",
    "TOOL_OUTPUTS_PREFIX",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "callable_to_args_schema",
    "hydrate_tool_output_args",
    "register_traversal_tools",
]
