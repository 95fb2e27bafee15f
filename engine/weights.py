"""
Weight Evaluator — scores a rule's activation conditions against state.

Each weight is ``{field, operation, value, weight}``. The field is read from
state by dotted path (``Customer.accounts.length`` works on arrays), the
value is rendered first when it is a template, and the weight counts toward
the rule's score when the operation is satisfied.

A rule is activated when the sum of satisfied weights >= activation.
Comparisons are strict: "5" does not equal 5.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from engine.errors import RuleConfigurationError
from engine.templating import TemplateRenderer, is_template
from models.schemas import Rule, Weight
from state.document import StateDocument
from state.values import is_number, to_number

logger = structlog.get_logger()

DEFAULT_MOBILE_PREFIX = "+614"


def _contains(raw: Any, value: Optional[str]) -> bool:
    if isinstance(raw, list):
        return value in raw
    if isinstance(raw, str) and value is not None:
        return value in raw
    return False


def _starts_with(raw: Any, value: Optional[str]) -> bool:
    return isinstance(raw, str) and value is not None and raw.startswith(value)


def _ends_with(raw: Any, value: Optional[str]) -> bool:
    return isinstance(raw, str) and value is not None and raw.endswith(value)


def _is_empty(raw: Any, value: Optional[str]) -> bool:
    return raw is None or raw == "" or (isinstance(raw, list) and len(raw) == 0)


def _compare(raw: Any, value: Optional[str], numeric: Callable, lexical: Callable) -> bool:
    if raw is None:
        return False
    if is_number(raw) and is_number(value):
        return numeric(to_number(raw), to_number(value))
    if isinstance(raw, str) and value is not None:
        return lexical(raw, value)
    return False


OPERATIONS: dict[str, Callable[[Any, Optional[str]], bool]] = {
    "contains": _contains,
    "notcontains": lambda raw, value: not _contains(raw, value),
    "startswith": _starts_with,
    "notstartswith": lambda raw, value: not _starts_with(raw, value),
    "endswith": _ends_with,
    "notendswith": lambda raw, value: not _ends_with(raw, value),
    "equals": lambda raw, value: raw == value and type(raw) is type(value),
    "notequals": lambda raw, value: not (raw == value and type(raw) is type(value)),
    "isempty": _is_empty,
    "isnotempty": lambda raw, value: not _is_empty(raw, value),
    "isnull": lambda raw, value: raw is None,
    "isnotnull": lambda raw, value: raw is not None,
    "lessthan": lambda raw, value: _compare(raw, value, lambda a, b: a < b, lambda a, b: a < b),
    "greaterthan": lambda raw, value: _compare(raw, value, lambda a, b: a > b, lambda a, b: a > b),
}

MOBILE_OPERATIONS = ("ismobile", "isnotmobile")


@dataclass
class ActivationResult:
    activated: bool
    score: float = 0.0
    satisfied: list[Weight] = field(default_factory=list)


def resolve_weight_value(weight: Weight, state: StateDocument, renderer: TemplateRenderer) -> Optional[str]:
    """Trimmed weight value, rendered against state when it is a template."""
    value = weight.value.strip() if weight.value is not None else None
    if not is_template(value):
        return value
    try:
        return renderer.render(value, state)
    except RuleConfigurationError as e:
        # An unrenderable value is compared as authored
        logger.error("weight_value_render_failed", field=weight.field, value=value, error=str(e))
        return value


def evaluate_weight(
    weight: Weight,
    state: StateDocument,
    renderer: TemplateRenderer,
    mobile_prefix: str = DEFAULT_MOBILE_PREFIX,
) -> bool:
    """True when the weight's operation is satisfied by the current state."""
    raw = state.get_path(weight.field.strip())
    value = resolve_weight_value(weight, state, renderer)
    operation = weight.operation

    if operation in MOBILE_OPERATIONS:
        is_mobile = raw is not None and str(raw).startswith(mobile_prefix)
        if operation == "ismobile":
            return is_mobile
        return raw is None or not is_mobile

    fn = OPERATIONS.get(operation)
    if fn is None:
        logger.error("unknown_weight_operation", operation=operation, field=weight.field)
        raise RuleConfigurationError(f"Unhandled weight operation: {operation}")
    return fn(raw, value)


def test_rule(
    rule: Rule,
    state: StateDocument,
    renderer: TemplateRenderer,
    mobile_prefix: str = DEFAULT_MOBILE_PREFIX,
) -> ActivationResult:
    """Score every weight of ``rule`` and decide whether it activates."""
    if rule.always_on:
        return ActivationResult(activated=True)

    score = 0.0
    satisfied: list[Weight] = []
    for weight in rule.weights:
        if evaluate_weight(weight, state, renderer, mobile_prefix):
            score += weight.weight
            satisfied.append(weight)

    return ActivationResult(activated=score >= rule.activation, score=score, satisfied=satisfied)


# pytest would otherwise try to collect test_rule from modules importing it
test_rule.__test__ = False
