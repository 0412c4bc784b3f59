"""CEL helpers for free-form condition expressions."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import celpy
from celpy.adapter import json_to_cel

from flow_executor.core.errors import ConditionEvaluationError
from flow_executor.core.variable_resolver import BINDING_PATTERN, resolve_reference

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext

logger = logging.getLogger(__name__)

_CEL_ENV = celpy.Environment()
_CEL_PROGRAM_CACHE: dict[str, Any] = {}
CEL_PROGRAM_CACHE_SIZE = 256

BINDING_VARIABLE_PREFIX = "_b"


def bind_references(expression: str) -> tuple[str, dict[str, str]]:
    """
    Rewrite every `{{ref}}` in an expression to a CEL variable.

    Returns the rewritten source and a variable name -> reference map. The
    same reference always maps to the same variable, so the source only
    depends on the expression text.
    """
    names: dict[str, str] = {}

    def replace(match) -> str:
        ref = match.group(1).strip()
        if ref not in names:
            names[ref] = f"{BINDING_VARIABLE_PREFIX}{len(names)}"
        return names[ref]

    source = BINDING_PATTERN.sub(replace, expression)
    return source, {name: ref for ref, name in names.items()}


def _json_value(value: Any) -> Any:
    """Coerce a resolved value to plain JSON data for the CEL adapter."""
    try:
        return json.loads(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return str(value)


def _program(expression: str):
    program = _CEL_PROGRAM_CACHE.get(expression)
    if program is None:
        program = _CEL_ENV.program(_CEL_ENV.compile(expression))
        if len(_CEL_PROGRAM_CACHE) >= CEL_PROGRAM_CACHE_SIZE:
            # oldest entry first
            _CEL_PROGRAM_CACHE.pop(next(iter(_CEL_PROGRAM_CACHE)))
        _CEL_PROGRAM_CACHE[expression] = program
    return program


def eval_cel_boolean(expression: str, activation: dict[str, Any] | None = None) -> bool:
    """Evaluate a CEL expression as a boolean."""
    program = _program(expression)
    cel_activation = {
        name: json_to_cel(value) for name, value in (activation or {}).items()
    }
    result = program.evaluate(cel_activation)
    if isinstance(result, Exception):
        raise result
    return bool(result)


def evaluate_expression(expression: str, context: ExecutionContext) -> bool:
    """
    Evaluate a free-form condition against the run context.

    Each `{{ref}}` is resolved and passed in as a CEL variable; the expression
    may also refer to `nodes` (all node results visible to the branch) and
    `loop` (the ambient loop scope).

    Raises:
        ConditionEvaluationError: If the expression is empty, does not
            compile, or fails at runtime
    """
    if not expression or not expression.strip():
        raise ConditionEvaluationError("Condition expression is required")

    source, references = bind_references(expression.strip())
    if source.startswith("return "):
        source = source[len("return "):].rstrip(";").strip()

    activation: dict[str, Any] = {
        "nodes": _json_value(context.results),
        "loop": _json_value(context.loop_scope),
    }
    for name, ref in references.items():
        activation[name] = _json_value(resolve_reference(ref, context))

    try:
        return eval_cel_boolean(source, activation)
    except Exception as e:
        logger.warning(f"[Condition] Expression '{expression}' failed: {e}")
        raise ConditionEvaluationError(f"Condition evaluation failed: {e}") from e


__all__ = ["bind_references", "eval_cel_boolean", "evaluate_expression"]
