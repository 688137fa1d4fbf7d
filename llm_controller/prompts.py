"""Prompt loading and rendering from YAML/Jinja2 templates.

A prompt file is a YAML mapping with a ``messages`` list; each message
``content`` is a Jinja2 template. The controller's own prompt ships in
``llm_controller/templates/controller.yaml``::

    name: controller
    version: "1.0"
    messages:
      - role: system
        content: |
          {% for tool in tools %}- {{ tool.name }}
          {% endfor %}

Usage::

    from llm_controller.prompts import render_controller_prompt

    messages = render_controller_prompt(tools=registry.catalogue(), iteration=1, max_iterations=25)

Parsed and compiled templates are cached per file and modification time,
so the per-turn controller render does no YAML parsing.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from jinja2 import BaseLoader, Environment, StrictUndefined, Template, TemplateNotFound

from llm_controller.actions import JSON_END_MARKER, JSON_START_MARKER
from llm_controller.config import DEFAULT_INLINE_THRESHOLD_BYTES, DEFAULT_MAX_TOOL_CALLS_PER_STEP
from llm_controller.tools import TOOL_OUTPUTS_PREFIX

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
CONTROLLER_TEMPLATE = TEMPLATES_DIR / "controller.yaml"


class _NoIncludeLoader(BaseLoader):
    """Templates are inline strings; include/extends are not supported."""

    def get_source(self, environment: Environment, template: str) -> tuple[str, str | None, None]:
        raise TemplateNotFound(template)


# StrictUndefined: a missing variable raises at render time.
_env = Environment(loader=_NoIncludeLoader(), undefined=StrictUndefined, trim_blocks=True, lstrip_blocks=True)


def _resolve(template_path: str | Path) -> Path:
    path = Path(template_path)
    if not path.is_absolute():
        path = Path.cwd() / path
    if not path.exists():
        raise FileNotFoundError(f"Prompt template not found: {path}")
    return path


@lru_cache(maxsize=32)
def _compile(path: Path, mtime_ns: int) -> tuple[tuple[str, Template], ...]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Prompt YAML must be a mapping, got {type(raw).__name__}: {path}")

    messages_raw = raw.get("messages")
    if not messages_raw:
        raise ValueError(f"Prompt YAML missing 'messages' key: {path}")
    if not isinstance(messages_raw, list):
        raise ValueError(f"'messages' must be a list, got {type(messages_raw).__name__}: {path}")

    compiled: list[tuple[str, Template]] = []
    for i, msg in enumerate(messages_raw):
        if not isinstance(msg, dict) or "role" not in msg or "content" not in msg:
            raise ValueError(f"Message {i} must have 'role' and 'content' keys: {path}")
        compiled.append((str(msg["role"]), _env.from_string(str(msg["content"]))))
    logger.debug("Compiled prompt %s (%d messages)", path.name, len(compiled))
    return tuple(compiled)


def render_prompt(template_path: str | Path, **context: Any) -> list[dict[str, str]]:
    """Render a YAML prompt file into chat messages.

    Args:
        template_path: Path to the YAML file (absolute, or relative to cwd).
        **context: Variables for the Jinja2 templates.

    Returns:
        ``[{"role": ..., "content": ...}, ...]`` in file order.

    Raises:
        FileNotFoundError: the file does not exist.
        yaml.YAMLError: the YAML is malformed.
        ValueError: no ``messages`` list, or a message lacks role/content.
        jinja2.UndefinedError: a template variable is missing from context.
    """
    path = _resolve(template_path)
    compiled = _compile(path, path.stat().st_mtime_ns)
    return [{"role": role, "content": template.render(**context).strip()} for role, template in compiled]


def render_controller_prompt(
    *,
    tools: list[dict[str, Any]],
    iteration: int,
    max_iterations: int,
    inline_threshold_bytes: int = DEFAULT_INLINE_THRESHOLD_BYTES,
    max_tool_calls_per_step: int = DEFAULT_MAX_TOOL_CALLS_PER_STEP,
    reflection: bool = False,
    template_path: str | Path | None = None,
) -> list[dict[str, str]]:
    """Render the controller's system messages for one turn."""
    return render_prompt(
        template_path or CONTROLLER_TEMPLATE,
        tools=tools,
        iteration=iteration,
        max_iterations=max_iterations,
        inline_threshold_bytes=inline_threshold_bytes,
        max_tool_calls_per_step=max_tool_calls_per_step,
        reflection=reflection,
        json_start=JSON_START_MARKER,
        json_end=JSON_END_MARKER,
        tool_outputs_prefix=TOOL_OUTPUTS_PREFIX,
    )
