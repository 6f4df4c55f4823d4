"""Condition evaluation for ``condition`` nodes.

A ``ConditionGroup`` joins comparisons with AND or OR.  Each comparison
reads one variable (empty string when absent) and compares it against the
configured value, which is interpolated first.  Strings are compared
exactly as stored; no whitespace is trimmed.

Failure modes never raise:

- ``greater_than`` / ``less_than`` with a non-numeric operand are false.
  A number is an optionally signed decimal with an optional exponent,
  surrounded by optional whitespace.  Underscores, ``inf``, ``nan`` and
  values that overflow to infinity are not numbers.
- ``matches_regex`` / ``not_matches_regex`` with an invalid pattern are
  false (and logged).

An empty AND group is true (vacuous truth); an empty OR group is false.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable, Mapping
from typing import Any

from chatflow.engine.interpolation import Scope, render
from chatflow.engine.variables import VariableStore, normalize_name
from chatflow.graph.schema import (
    ComparisonOperator,
    ConditionComparison,
    ConditionGroup,
    LogicalOperator,
)

log = logging.getLogger(__name__)

__all__ = [
    "compile_pattern",
    "evaluate_comparison",
    "evaluate_group",
    "first_matching_group",
]

_REGEX_LITERAL = re.compile(r"^/(.*)/([a-z]*)$", re.DOTALL)
_NUMBER = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?", re.ASCII)
_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


def compile_pattern(source: str) -> re.Pattern[str] | None:
    """Compile *source*, accepting ``/pattern/flags`` literals.

    Returns ``None`` when the pattern is invalid.
    """
    pattern = source
    flags = 0
    literal = _REGEX_LITERAL.match(source)
    if literal:
        pattern = literal.group(1)
        for flag in literal.group(2):
            flags |= _FLAG_MAP.get(flag, 0)
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        log.warning("malformed pattern %r in condition: %s", source, exc)
        return None


def _as_number(text: str) -> float | None:
    candidate = text.strip()
    if not _NUMBER.fullmatch(candidate):
        return None
    number = float(candidate)
    if not math.isfinite(number):
        return None
    return number


def _lookup(store: Scope, name: str) -> str:
    if isinstance(store, VariableStore):
        return store.get(name) or ""
    value = store.get(normalize_name(name))
    return "" if value is None else str(value)


def evaluate_comparison(comparison: ConditionComparison, store: Scope) -> bool:
    """Evaluate one comparison against *store*."""
    left = _lookup(store, comparison.variable_name)
    right = render(comparison.value, store)
    op = comparison.operator

    if op is ComparisonOperator.EQUALS:
        return left == right
    if op is ComparisonOperator.NOT_EQUALS:
        return left != right
    if op is ComparisonOperator.CONTAINS:
        return right in left
    if op is ComparisonOperator.NOT_CONTAINS:
        return right not in left
    if op is ComparisonOperator.STARTS_WITH:
        return left.startswith(right)
    if op is ComparisonOperator.ENDS_WITH:
        return left.endswith(right)
    if op in (ComparisonOperator.GREATER_THAN, ComparisonOperator.LESS_THAN):
        a, b = _as_number(left), _as_number(right)
        if a is None or b is None:
            return False
        return a > b if op is ComparisonOperator.GREATER_THAN else a < b
    if op is ComparisonOperator.IS_SET:
        return left != ""
    if op is ComparisonOperator.IS_EMPTY:
        return left == ""
    if op in (ComparisonOperator.MATCHES_REGEX, ComparisonOperator.NOT_MATCHES_REGEX):
        pattern = compile_pattern(right)
        if pattern is None:
            return False
        found = pattern.search(left) is not None
        return found if op is ComparisonOperator.MATCHES_REGEX else not found
    raise ValueError(f"unsupported comparison operator {op!r}")


def evaluate_group(group: ConditionGroup, store: Scope) -> bool:
    """Evaluate every comparison of *group* and join with its operator."""
    results = (evaluate_comparison(c, store) for c in group.comparisons)
    if group.logical_operator is LogicalOperator.AND:
        return all(results)
    return any(results)


def first_matching_group(
    groups: Iterable[ConditionGroup], store: VariableStore | Mapping[str, Any]
) -> ConditionGroup | None:
    """Return the first group, in declared order, that evaluates true."""
    for group in groups:
        if evaluate_group(group, store):
            return group
    return None
