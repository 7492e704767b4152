"""
Condition evaluation against a derived Context.

Groups are ORed, conditions within a group are ANDed, and an empty condition
list is vacuously true.  Evaluation never raises: unknown fields resolve to
None and comparisons that do not make sense return False.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from lifecycle_engine.models import (
    OP_CONTAINS,
    OP_EQUALS,
    OP_EXISTS,
    OP_GT,
    OP_GTE,
    OP_IN,
    OP_LT,
    OP_LTE,
    OP_NOT_EQUALS,
    OP_NOT_EXISTS,
    OP_NOT_IN,
    Condition,
    Context,
    Rule,
)

logger = logging.getLogger(__name__)

Value = Union[int, float, bool, str, None]

# ASCII decimal or exponent notation; anything else stays text
_NUMBER = re.compile(r"-?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?", re.ASCII)

# Long operator names still found in older transition records
OPERATOR_ALIASES = {
    "GREATER_THAN": OP_GT,
    "GREATER_OR_EQUAL": OP_GTE,
    "LESS_THAN": OP_LT,
    "LESS_OR_EQUAL": OP_LTE,
}


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------
def coerce_value(text: Any) -> Value:
    """
    Coerce a stored comparand: "true"/"false" -> bool, numeric -> number,
    anything else stays text.
    """
    if text is None:
        return None
    if isinstance(text, (bool, int, float)):
        return text
    s = str(text)
    if s == "true":
        return True
    if s == "false":
        return False
    number = _parse_number(s)
    return number if number is not None else s


def _parse_number(s: str) -> Union[int, float, None]:
    s = s.strip()
    if not _NUMBER.fullmatch(s):
        return None
    try:
        return int(s)
    except ValueError:
        pass
    try:
        number = float(s)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _as_number(value: Any) -> Optional[float]:
    """Numeric view of a live value; bools, None and collections are not numbers."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else value
    if isinstance(value, str):
        return _parse_number(value)
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(_as_text(v) for v in value)
    return "" if value is None else str(value)


def loose_equals(current: Any, target: Value) -> bool:
    """Coercive equality: numeric strings equal numbers, bools compare as 0/1."""
    if current is None or target is None:
        return current is None and target is None
    if isinstance(current, (list, tuple)):
        current = _as_text(current)
    if type(current) is type(target):
        return current == target
    if isinstance(current, str) and isinstance(target, str):
        return current == target
    left = 1 if current is True else 0 if current is False else _as_number(current)
    right = 1 if target is True else 0 if target is False else _as_number(target)
    if left is None or right is None:
        return False
    return left == right


# ---------------------------------------------------------------------------
# Symbol table
# ---------------------------------------------------------------------------
FIELD_RESOLVERS: Dict[str, Callable[[Context], Any]] = {
    "credits_balance": lambda c: c.credits,
    "total_generations": lambda c: c.total_generations,
    "total_payments": lambda c: c.total_payments,
    "is_paid_user": lambda c: c.is_paid_user,
    "user_tags": lambda c: list(c.tags),
    "preferred_model": lambda c: c.preferred_model,
    "last_payment_failed": lambda c: c.last_payment_failed,
    "days_since_created": lambda c: c.days_since_created,
    "hours_since_last_pay": lambda c: c.hours_since_last_pay,
    "hours_since_last_gen": lambda c: c.hours_since_last_gen,
    "hours_since_last_activity": lambda c: c.hours_since_last_activity,
    "is_low_balance": lambda c: c.is_low_balance,
    "is_freeloader": lambda c: (
        c.total_generations > 0 and c.total_payments == 0 and c.is_low_balance
    ),
    "is_dead": lambda c: c.total_generations == 0,
}

KNOWN_FIELDS = tuple(FIELD_RESOLVERS)


def resolve_field(field: str, ctx: Context) -> Any:
    resolver = FIELD_RESOLVERS.get(field)
    return resolver(ctx) if resolver is not None else None


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------
def compare_values(current: Any, operator: str, target: Any) -> bool:
    operator = OPERATOR_ALIASES.get(operator, operator)
    target_val = coerce_value(target)

    if operator == OP_EQUALS:
        return loose_equals(current, target_val)
    if operator == OP_NOT_EQUALS:
        return not loose_equals(current, target_val)

    if operator in (OP_GT, OP_GTE, OP_LT, OP_LTE):
        left = _as_number(current)
        right = None if isinstance(target_val, bool) else _as_number(target_val)
        if left is None or right is None:
            return False
        if operator == OP_GT:
            return left > right
        if operator == OP_GTE:
            return left >= right
        if operator == OP_LT:
            return left < right
        return left <= right

    if operator == OP_CONTAINS:
        if isinstance(current, (list, tuple)):
            return any(loose_equals(item, target_val) and type(item) is type(target_val)
                       for item in current)
        if isinstance(current, str):
            return _as_text(target_val) in current
        return False

    if operator in (OP_IN, OP_NOT_IN):
        members = [m.strip() for m in _as_text(target).split(",")]
        if isinstance(current, (list, tuple)):
            found = any(_as_text(item) in members for item in current)
        else:
            found = current is not None and _as_text(current) in members
        return found if operator == OP_IN else not found

    if operator == OP_EXISTS:
        return current is not None
    if operator == OP_NOT_EXISTS:
        return current is None

    logger.debug("Unknown operator %r evaluates to False", operator)
    return False


def check_condition(condition: Condition, ctx: Context) -> bool:
    current = resolve_field(condition.field, ctx)
    return compare_values(current, condition.operator, condition.value)


# ---------------------------------------------------------------------------
# Grouped evaluation
# ---------------------------------------------------------------------------
def group_conditions(conditions: Sequence[Condition]) -> Dict[int, List[Condition]]:
    groups: Dict[int, List[Condition]] = {}
    for c in conditions:
        groups.setdefault(c.group_id, []).append(c)
    return groups


def evaluate_conditions(conditions: Sequence[Condition], ctx: Context) -> bool:
    """OR across groups, AND within a group; empty list is True."""
    if not conditions:
        return True
    for group_id, members in group_conditions(conditions).items():
        if all(check_condition(c, ctx) for c in members):
            logger.debug("Group %d passed for user %s", group_id, ctx.user_id)
            return True
    return False


@dataclass(frozen=True, slots=True)
class ConditionTrace:
    condition: Condition
    actual:    Any
    passed:    bool


def trace_conditions(conditions: Sequence[Condition], ctx: Context) -> List[ConditionTrace]:
    """Evaluate every condition (no short-circuit) for display purposes."""
    traces = []
    for c in conditions:
        actual = resolve_field(c.field, ctx)
        traces.append(ConditionTrace(c, actual, compare_values(actual, c.operator, c.value)))
    return traces


def simulate_rules(rules: Sequence[Rule], ctx: Context) -> List[Rule]:
    """Return the rules whose conditions pass, in input order."""
    return [rule for rule in rules if evaluate_conditions(rule.conditions, ctx)]
