"""Structured-output controller loop for tool-using LLM agents.

Each turn the model returns exactly one validated action under a
provider-adapted JSON schema. Large tool results are persisted and inspected
through ``tool_outputs.*`` traversal tools instead of flooding the context.

Usage:
    from llm_controller import (
        ControllerLoop, OutputStore, ToolRegistry, TraversalSuite,
        litellm_model_caller, register_traversal_tools,
    )

    store = OutputStore("~/.llm_controller/tool_outputs")
    registry = ToolRegistry()
    registry.register_callable(search_orders)
    register_traversal_tools(registry, TraversalSuite(store))

    loop = ControllerLoop(litellm_model_caller("gpt-4o"), registry, store)
    outcome = await loop.run("How many orders shipped late last week?")
"""

import logging as _logging
import os as _os
from pathlib import Path as _Path

_DEFAULT_KEYS_FILE = _Path.home() / ".secrets" / "api_keys.env"
_log = _logging.getLogger(__name__)


def _load_api_keys() -> int:
    """Load API keys from an env file into os.environ on import.

    Reads from LLM_CONTROLLER_KEYS_FILE, or ~/.secrets/api_keys.env.
    Skips comments, empty lines, and keys already set in the environment.
    Returns the number of keys loaded.
    """
    keys_file = _Path(_os.environ.get("LLM_CONTROLLER_KEYS_FILE", str(_DEFAULT_KEYS_FILE)))
    if not keys_file.is_file():
        return 0
    loaded = 0
    for line in keys_file.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[7:]
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip().strip("\"'")
        if key and key not in _os.environ:
            _os.environ[key] = value
            loaded += 1
    if loaded:
        _log.debug("llm_controller: loaded %d API keys from %s", loaded, keys_file)
    return loaded


_load_api_keys()

from llm_controller.actions import (
    AskUser,
    Complete,
    ControllerAction,
    GuardrailStop,
    NextStep,
    ToolCall,
    parse_controller_reply,
)
from llm_controller.client import LLMCallResult, ModelCaller, RetryPolicy, acall_llm, litellm_model_caller
from llm_controller.config import ControllerConfig
from llm_controller.controller import (
    ControllerLoop,
    ControllerOutcome,
    ControllerState,
    FailureCause,
    StepRecord,
)
from llm_controller.errors import (
    ActionParseError,
    ActionValidationError,
    ControllerError,
    ControllerStateError,
    LLMError,
    OutputNotFoundError,
    PathSyntaxError,
    PathTypeError,
    StoreError,
    StoreWriteError,
    ToolExecutionError,
    TraversalError,
)
from llm_controller.output_store import OutputMetadata, OutputStore, StoredOutput
from llm_controller.schema_adapter import adapt_schema, build_response_format, detect_provider
from llm_controller.tools import ToolRegistry, ToolResult, register_traversal_tools
from llm_controller.traversal import TraversalSuite

__all__ = [
    "ActionParseError",
    "ActionValidationError",
    "AskUser",
    "Complete",
    "ControllerAction",
    "ControllerConfig",
    "ControllerError",
    "ControllerLoop",
    "ControllerOutcome",
    "ControllerState",
    "ControllerStateError",
    "FailureCause",
    "GuardrailStop",
    "LLMCallResult",
    "LLMError",
    "ModelCaller",
    "NextStep",
    "ToolCall",
    "OutputMetadata",
    "OutputNotFoundError",
    "OutputStore",
    "PathSyntaxError",
    "PathTypeError",
    "RetryPolicy",
    "StepRecord",
    "StoreError",
    "StoreWriteError",
    "StoredOutput",
    "ToolExecutionError",
    "ToolRegistry",
    "ToolResult",
    "TraversalError",
    "TraversalSuite",
    "acall_llm",
    "adapt_schema",
    "build_response_format",
    "detect_provider",
    "litellm_model_caller",
    "parse_controller_reply",
    "register_traversal_tools",
]
