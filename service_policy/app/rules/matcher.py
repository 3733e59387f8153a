"""
Attribute matcher.

A policy applies to a context when every predicate of every attribute
category matches; an empty category is a wildcard. Matching is a pure
function of ``(policy, context)``.

Comparison rules:
- numbers (and numeric strings) compare numerically;
- booleans compare as ``true`` / ``false``;
- everything else compares as strings.

A missing attribute or an unresolved reference satisfies only the negated
operators (``not_equals``, ``not_in``). ``exists`` looks at presence.
"""

import fnmatch
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence, Tuple

from .models import (
    AttributeCategory, EvaluationContext, Policy, Predicate, PredicateOperator,
    lookup_attribute
)


MAX_MATCH_VALUE_LENGTH = 1024

_NEGATED_OPERATORS = frozenset({PredicateOperator.NOT_EQUALS, PredicateOperator.NOT_IN})


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching a predicate, a category or a whole policy."""
    matched: bool
    reason: str


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _equal(actual: Any, expected: Any) -> bool:
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return left == right
    return _as_text(actual) == _as_text(expected)


def _compare(actual: Any, expected: Any) -> int:
    left, right = _as_number(actual), _as_number(expected)
    if left is None or right is None:
        left, right = _as_text(actual), _as_text(expected)
    return (left > right) - (left < right)


def _contains(collection: Sequence[Any], actual: Any) -> bool:
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(_contains(collection, item) for item in actual)
    return any(_equal(actual, candidate) for candidate in collection)


def _expected_value(predicate: Predicate, context: EvaluationContext) -> Tuple[bool, Any]:
    reference = predicate.reference
    if reference is None:
        return True, predicate.value
    return context.resolve(reference)


def match_predicate(
    predicate: Predicate,
    group: Mapping[str, Any],
    context: EvaluationContext
) -> MatchResult:
    """Match one predicate against its attribute group."""
    name = predicate.attribute
    operator = predicate.operator
    found, actual = lookup_attribute(group, name)
    present = found and actual is not None

    if operator == PredicateOperator.EXISTS:
        matched = present == predicate.value
        state = "present" if present else "absent"
        return MatchResult(matched, f"{name} is {state}")

    negated = operator in _NEGATED_OPERATORS
    if not present:
        return MatchResult(negated, f"{name} is absent")

    resolved, expected = _expected_value(predicate, context)
    if not resolved or expected is None:
        return MatchResult(negated, f"{name}: reference {predicate.value} is unresolved")

    if operator == PredicateOperator.EQUALS:
        matched = _equal(actual, expected)
        return MatchResult(matched, f"{name} ({actual}) {'==' if matched else '!='} {expected}")

    if operator == PredicateOperator.NOT_EQUALS:
        matched = not _equal(actual, expected)
        return MatchResult(matched, f"{name} ({actual}) {'!=' if matched else '=='} {expected}")

    if operator in (PredicateOperator.IN, PredicateOperator.NOT_IN):
        if not isinstance(expected, (list, tuple, set, frozenset)):
            return MatchResult(False, f"{name}: expected a list, got {expected!r}")
        inside = _contains(expected, actual)
        matched = inside if operator == PredicateOperator.IN else not inside
        return MatchResult(matched, f"{name} ({actual}) {'in' if inside else 'not in'} {list(expected)}")

    if operator == PredicateOperator.GREATER_THAN:
        matched = _compare(actual, expected) > 0
        return MatchResult(matched, f"{name} ({actual}) {'>' if matched else '<='} {expected}")

    if operator == PredicateOperator.LESS_THAN:
        matched = _compare(actual, expected) < 0
        return MatchResult(matched, f"{name} ({actual}) {'<' if matched else '>='} {expected}")

    if operator == PredicateOperator.MATCHES_PATTERN:
        text = _as_text(actual)
        if len(text) > MAX_MATCH_VALUE_LENGTH:
            return MatchResult(False, f"{name} is longer than {MAX_MATCH_VALUE_LENGTH} characters")
        matched = fnmatch.fnmatchcase(text, expected)
        return MatchResult(matched, f"{name} ({text}) {'matches' if matched else 'does not match'} {expected}")

    return MatchResult(False, f"Unknown operator: {operator}")


def match_category(
    predicates: Sequence[Predicate],
    group: Mapping[str, Any],
    context: EvaluationContext
) -> MatchResult:
    """Match all predicates of one category (AND). Empty means wildcard."""
    if not predicates:
        return MatchResult(True, "No conditions to check")

    for predicate in predicates:
        result = match_predicate(predicate, group, context)
        if not result.matched:
            return result

    return MatchResult(True, "All attribute conditions matched")


def match_policy(policy: Policy, context: EvaluationContext) -> MatchResult:
    """Decide whether ``policy`` applies to ``context``."""
    failed = []
    for category in AttributeCategory:
        result = match_category(policy.predicates(category), context.group(category), context)
        if not result.matched:
            failed.append(f"{category.value.title()}: {result.reason}")

    if failed:
        return MatchResult(False, f"Policy conditions not met: {', '.join(failed)}")
    return MatchResult(True, "All policy conditions matched")
