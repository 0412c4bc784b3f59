"""
Variable Resolver

Resolves `{{...}}` bindings inside node configurations against the layered
namespace of a run:

  {{env.NAME}}                  -> secret store, then environment variables
  {{secrets.NAME}}              -> secret store only
  {{loop_iteration}}            -> ambient loop scope (also loop.isFirst,
  {{item}} / {{itemIndex}}         loop.isLast, loop.total, loop variables)
  {{loopId._loop.current}}      -> `_loop` frame of a specific loop node
  {{nodeId.data.items[0].x}}    -> upstream node output
  {{NAME}}                      -> declared flow variable

A string that is exactly one binding resolves to the typed value; a string
that merely contains bindings is interpolated. Unresolvable references are
absent (None) and never raise.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext

logger = logging.getLogger(__name__)

# Matches one binding; the reference may not itself contain braces
BINDING_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
# A path segment with optional trailing indices: items[0][1]
SEGMENT_PATTERN = re.compile(r"^([^\[\]]*)((?:\[\s*-?\d+\s*\])*)$")
INDEX_PATTERN = re.compile(r"\[\s*(-?\d+)\s*\]")

LOOP_FRAME_MARKER = "_loop"


def contains_bindings(value: Any) -> bool:
    """Check if a value (or anything nested in it) contains a binding."""
    if isinstance(value, str):
        return bool(BINDING_PATTERN.search(value))
    if isinstance(value, dict):
        return any(contains_bindings(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_bindings(item) for item in value)
    return False


def resolve_value(value: Any, context: ExecutionContext) -> Any:
    """
    Recursively resolve bindings in a value.

    Args:
        value: The value to resolve (string, dict, list, or primitive)
        context: The execution context to resolve against

    Returns:
        The resolved value; values without bindings are returned unchanged
    """
    if isinstance(value, str):
        return _resolve_string(value, context)
    elif isinstance(value, dict):
        return {k: resolve_value(v, context) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_value(item, context) for item in value]
    else:
        return value


def _resolve_string(template: str, context: ExecutionContext) -> Any:
    """
    Resolve a string that may contain bindings.

    If the entire string is a single binding, return the raw resolved value
    (preserving type). Otherwise, do string interpolation.
    """
    if "{{" not in template:
        return template

    match = BINDING_PATTERN.fullmatch(template.strip())
    if match:
        return resolve_reference(match.group(1), context)

    def replace_match(m: re.Match) -> str:
        return stringify(resolve_reference(m.group(1), context))

    return BINDING_PATTERN.sub(replace_match, template)


def stringify(value: Any) -> str:
    """Render a resolved value for interpolation into a larger string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def resolve_reference(ref: str, context: ExecutionContext) -> Any:
    """Resolve the inside of one binding (without braces) against the context."""
    ref = ref.strip()
    if not ref:
        return None

    head, _, rest = ref.partition(".")

    if head == "env" and rest:
        value = context.secrets.get(rest)
        if value is None:
            value = context.env.get(rest)
        return _report(ref, value)

    if head == "secrets" and rest:
        return _report(ref, context.secrets.get(rest))

    # Loop helpers are stored under dotted keys like "loop.isFirst"
    if ref in context.loop_scope:
        return context.loop_scope[ref]

    head_name = _segment_name(head)

    # nodeId._loop.<field>
    if rest:
        frame_field, _, frame_rest = rest.partition(".")
        if frame_field == LOOP_FRAME_MARKER and head in context.loop_frames:
            frame = context.loop_frames[head]
            return _report(ref, get_nested_value(frame, frame_rest) if frame_rest else frame)

    if head_name in context.loop_scope:
        return _report(ref, _walk(context.loop_scope, ref))

    if head_name in context.results:
        return _report(ref, _walk(context.results, ref))

    flow_value = context.flow_variables.get(head_name)
    if flow_value is not None:
        return _report(ref, _walk({head_name: flow_value}, ref))

    return _report(ref, None)


def _report(ref: str, value: Any) -> Any:
    if value is None:
        logger.debug(f"[Resolver] Binding '{{{{{ref}}}}}' is unresolved")
    return value


def _segment_name(segment: str) -> str:
    bracket = segment.find("[")
    return segment[:bracket] if bracket != -1 else segment


def _walk(root: dict[str, Any], path: str) -> Any:
    return get_nested_value(root, path)


def get_nested_value(obj: Any, path: str) -> Any:
    """
    Get a nested value using dot notation plus `[index]` array access.

    Numeric segments index into lists (`items.0`), bracket indices may be
    chained (`matrix[0][1]`). Anything missing yields None.
    """
    current = obj
    for part in [p for p in path.split(".") if p.strip()]:
        m = SEGMENT_PATTERN.match(part.strip())
        if not m:
            return None
        name, indices = m.group(1), m.group(2)

        if name:
            current = _get_field(current, name)
        for index in INDEX_PATTERN.findall(indices):
            current = _get_index(current, int(index))

        if current is None:
            return None
    return current


def _get_field(current: Any, name: str) -> Any:
    if isinstance(current, dict):
        return current.get(name)
    if isinstance(current, list):
        try:
            return _get_index(current, int(name))
        except ValueError:
            return None
    return None


def _get_index(current: Any, index: int) -> Any:
    if isinstance(current, list) and -len(current) <= index < len(current):
        return current[index]
    return None
