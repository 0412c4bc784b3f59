"""
Condition Evaluator

Evaluates the branch condition of a condition node.

Supports:
- Case-list mode: ordered structured cases, the first matching case wins and
  no later case is evaluated; no match falls through to the implicit else
- Expression mode: a single free-form CEL expression yielding TRUE/FALSE
- Return types: boolean (routes to `true`/`false` edges), string and
  integer (route to the matched case id, its return value, or `else`)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from flow_executor.core.cel_expression import evaluate_expression
from flow_executor.core.errors import ActionError
from flow_executor.core.types import BRANCH_ELSE, BRANCH_FALSE, BRANCH_TRUE, ConditionCase
from flow_executor.core.variable_resolver import resolve_value, stringify

if TYPE_CHECKING:
    from flow_executor.core.context import ExecutionContext

logger = logging.getLogger(__name__)


class ConditionOperator:
    """Comparison operators understood by structured condition cases."""
    EQUALS = 'equals'
    NOT_EQUALS = 'notEquals'
    GREATER_THAN = 'greaterThan'
    LESS_THAN = 'lessThan'
    GREATER_OR_EQUAL = 'greaterOrEqual'
    LESS_OR_EQUAL = 'lessOrEqual'
    CONTAINS = 'contains'
    NOT_CONTAINS = 'notContains'
    STARTS_WITH = 'startsWith'
    ENDS_WITH = 'endsWith'
    IS_EMPTY = 'isEmpty'
    IS_NOT_EMPTY = 'isNotEmpty'
    IS_TRUE = 'isTrue'
    IS_FALSE = 'isFalse'


# Spellings used by older editor versions
OPERATOR_ALIASES = {
    'greaterThanOrEqual': ConditionOperator.GREATER_OR_EQUAL,
    'lessThanOrEqual': ConditionOperator.LESS_OR_EQUAL,
}

RETURN_TYPES = ('boolean', 'string', 'integer')


@dataclass
class ConditionOutcome:
    """Result of evaluating a condition node."""
    matched_case_id: str | None
    return_value: Any
    return_type: str = 'boolean'
    matched_index: int = -1
    matched_label: str = 'Else'
    condition_text: str = 'Default (Else)'

    @property
    def result(self) -> bool:
        if self.return_type == 'boolean':
            return self.return_value is True
        return self.matched_case_id is not None

    def branch_tags(self) -> list[str]:
        """Edge tags to try, in order, when selecting the single successor."""
        if self.return_type == 'boolean':
            return [BRANCH_TRUE] if self.result else [BRANCH_FALSE, BRANCH_ELSE]
        if self.matched_case_id is None:
            return [BRANCH_ELSE]
        return [self.matched_case_id, stringify(self.return_value)]

    def to_output(self) -> dict[str, Any]:
        return {
            'success': True,
            'result': self.result,
            'returnValue': self.return_value,
            'matchedCase': self.matched_case_id if self.matched_case_id is not None else BRANCH_ELSE,
            'matchedIndex': self.matched_index,
            'matchedLabel': self.matched_label,
            'conditionText': self.condition_text,
            'evaluatedAt': datetime.now(timezone.utc).isoformat(),
        }


def no_match_sentinel(return_type: str) -> Any:
    """Return value emitted when no case matched."""
    if return_type == 'boolean':
        return False
    if return_type == 'string':
        return BRANCH_ELSE
    return None


def coerce_return_value(raw: Any, return_type: str) -> Any:
    """Convert a case's authored return value to the node's return type."""
    if return_type == 'boolean':
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ('true', '1')
    if return_type == 'integer':
        number = _to_number(raw)
        return int(number) if number is not None else 0
    return stringify(raw)


def evaluate_cases(
    cases: list[ConditionCase],
    return_type: str,
    context: ExecutionContext,
) -> ConditionOutcome:
    """
    Evaluate ordered cases; the first case whose predicate holds wins.

    A case that fails to evaluate is logged and treated as a non-match.
    """
    if return_type not in RETURN_TYPES:
        logger.warning(f"[Condition] Unknown return type '{return_type}', using boolean")
        return_type = 'boolean'

    for index, case in enumerate(cases):
        try:
            matched = _evaluate_case(case, context)
        except ActionError as e:
            logger.warning(f"[Condition] Case {case.label or case.id} evaluation failed: {e}")
            continue

        if matched:
            return ConditionOutcome(
                matched_case_id=case.id,
                return_value=coerce_return_value(case.returnValue, return_type),
                return_type=return_type,
                matched_index=index,
                matched_label=case.label or f'Case {index + 1}',
                condition_text=case.label or f'{case.leftOperand} {case.operator} {case.rightOperand}',
            )

    return ConditionOutcome(
        matched_case_id=None,
        return_value=no_match_sentinel(return_type),
        return_type=return_type,
    )


def evaluate_custom_expression(expression: str, context: ExecutionContext, description: str | None = None) -> ConditionOutcome:
    """Evaluate expression mode; raises ConditionEvaluationError on failure."""
    result = evaluate_expression(expression, context)
    return ConditionOutcome(
        matched_case_id=BRANCH_TRUE if result else BRANCH_FALSE,
        return_value=result,
        return_type='boolean',
        matched_index=0 if result else -1,
        matched_label='TRUE' if result else 'FALSE',
        condition_text=description or expression,
    )


def _evaluate_case(case: ConditionCase, context: ExecutionContext) -> bool:
    if case.useCustomExpression and case.condition:
        return evaluate_expression(case.condition, context)

    left = resolve_value(case.leftOperand, context)
    if case.rightOperandType == 'variable':
        right = resolve_value(case.rightOperand, context)
    else:
        right = case.rightOperand
    return compare(left, case.operator or ConditionOperator.EQUALS, right)


def compare(left: Any, operator: str, right: Any) -> bool:
    """Apply a single comparison operator to two resolved operands."""
    operator = OPERATOR_ALIASES.get(operator, operator)

    try:
        if operator == ConditionOperator.EQUALS:
            return _equals(left, right)
        elif operator == ConditionOperator.NOT_EQUALS:
            return not _equals(left, right)
        elif operator == ConditionOperator.GREATER_THAN:
            return _numeric(left, right, lambda a, b: a > b)
        elif operator == ConditionOperator.LESS_THAN:
            return _numeric(left, right, lambda a, b: a < b)
        elif operator == ConditionOperator.GREATER_OR_EQUAL:
            return _numeric(left, right, lambda a, b: a >= b)
        elif operator == ConditionOperator.LESS_OR_EQUAL:
            return _numeric(left, right, lambda a, b: a <= b)
        elif operator == ConditionOperator.CONTAINS:
            return _text(right) in _text(left)
        elif operator == ConditionOperator.NOT_CONTAINS:
            return _text(right) not in _text(left)
        elif operator == ConditionOperator.STARTS_WITH:
            return _text(left).startswith(_text(right))
        elif operator == ConditionOperator.ENDS_WITH:
            return _text(left).endswith(_text(right))
        elif operator == ConditionOperator.IS_EMPTY:
            return is_empty(left)
        elif operator == ConditionOperator.IS_NOT_EMPTY:
            return not is_empty(left)
        elif operator == ConditionOperator.IS_TRUE:
            return _to_bool(left) is True
        elif operator == ConditionOperator.IS_FALSE:
            return _to_bool(left) is False
        else:
            logger.warning(f"[Condition] Unknown operator: {operator}")
            return False
    except (ValueError, TypeError) as e:
        logger.warning(f"[Condition] Error evaluating condition: {e}")
        return False


def is_empty(value: Any) -> bool:
    """Absent, blank strings and empty collections are empty."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _equals(left: Any, right: Any) -> bool:
    left_num, right_num = _to_number(left), _to_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return stringify(left).strip() == stringify(right).strip()


def _numeric(left: Any, right: Any, op) -> bool:
    left_num, right_num = _to_number(left), _to_number(right)
    if left_num is None or right_num is None:
        return False
    return op(left_num, right_num)


def _text(value: Any) -> str:
    return stringify(value).strip().lower()


def _to_number(value: Any) -> float | None:
    """Numeric parse; booleans, blanks and non-numeric text are not numbers."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            number = float(s)
        except ValueError:
            return None
        if number != number:  # NaN
            return None
        return number
    return None


def _to_bool(value: Any) -> bool | None:
    """Convert a value to boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value.strip().lower() in ('true', '1'):
            return True
        if value.strip().lower() in ('false', '0'):
            return False
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
    return None
