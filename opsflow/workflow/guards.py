""" Evaluation of structured condition clauses (Condition nodes, connection guards, triggers). """
import logging
import operator
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from ..errors import UnresolvedVariableError
from .expressions import MISSING, TemplateCache, has_placeholders
from .helpers import to_datetime, to_number
from .models import ConditionClause

logger = logging.getLogger(__name__)


def _is_empty(value: Any, _: Any = None) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple, dict, set)) and not value)


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, (list, tuple, set)):
        return item in container
    return False


def _not_contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return isinstance(item, str) and item not in container
    if isinstance(container, (list, tuple, set)):
        return item not in container
    return False


def _text_op(method: str) -> Callable[[Any, Any], bool]:
    def _op(left: Any, right: Any) -> bool:
        return isinstance(left, str) and isinstance(right, str) and getattr(left, method)(right)
    return _op


# ordering operators coerce their operands first; the rest compare values as given
COMPARISONS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": operator.eq,
    "not_equals": operator.ne,
    "greater_than": operator.gt,
    "greater_than_or_equal": operator.ge,
    "less_than": operator.lt,
    "less_than_or_equal": operator.le,
}

OPERATORS: Dict[str, Callable[[Any, Any], bool]] = dict(
    COMPARISONS,
    contains=_contains,
    not_contains=_not_contains,
    starts_with=_text_op("startswith"),
    ends_with=_text_op("endswith"),
    is_empty=_is_empty,
    is_not_empty=lambda value, _=None: not _is_empty(value),
)

# operators that ignore the clause value
UNARY_OPERATORS = ("is_empty", "is_not_empty")

LOGICAL_OPERATORS = ("AND", "OR")


def _coerce_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    """ Bring two operands to a comparable type (dates, then numbers). """
    if isinstance(left, (datetime, date)) or isinstance(right, (datetime, date)):
        try:
            return to_datetime(left), to_datetime(right)
        except (ValueError, TypeError):
            return left, right
    if isinstance(left, (int, float)) != isinstance(right, (int, float)):
        try:
            return to_number(left), to_number(right)
        except (ValueError, TypeError):
            return left, right
    return left, right


def compare(op_name: str, left: Any, right: Any) -> bool:
    if op_name not in OPERATORS:
        raise ValueError(f"Unsupported operator: {op_name}")
    if op_name in COMPARISONS:
        left, right = _coerce_pair(left, right)
    try:
        return bool(OPERATORS[op_name](left, right))
    except TypeError:
        # ordering between incomparable values (e.g. None > 3)
        logger.debug("Cannot compare %r %s %r", left, op_name, right)
        return False


_DEFAULT_CACHE = TemplateCache()


def _resolve_operand(value: Any, env: Mapping[str, Any], strict: bool,
                     node_id: Optional[str], cache: TemplateCache) -> Any:
    if not has_placeholders(value):
        return value
    template = cache.template(value)
    return template.evaluate_strict(env, node_id) if strict else template.evaluate(env)


def evaluate_clause(clause: ConditionClause, env: Mapping[str, Any], *, strict: bool = True,
                    node_id: Optional[str] = None, cache: Optional[TemplateCache] = None) -> bool:
    """
    Evaluate one field/operator/value clause. In strict mode an unresolvable
    field or value raises UnresolvedVariableError; otherwise it is a non-match.
    """
    cache = cache if cache is not None else _DEFAULT_CACHE
    field_expr = cache.expression(clause.field)
    left = field_expr.evaluate(env)
    if clause.operator in UNARY_OPERATORS:
        return compare(clause.operator, None if left is MISSING else left, None)
    if left is MISSING:
        if strict:
            raise UnresolvedVariableError(clause.field, node_id)
        return False
    right = _resolve_operand(clause.value, env, strict, node_id, cache)
    return compare(clause.operator, left, right)


def evaluate_clauses(clauses: Iterable[ConditionClause], env: Mapping[str, Any],
                     logical_operator: str = "AND", **kwargs) -> bool:
    """ Evaluate every clause, then combine with AND / OR. """
    results = [evaluate_clause(clause, env, **kwargs) for clause in clauses]
    if logical_operator.upper() == "OR":
        return any(results)
    return all(results)


def parse_clauses(conditions: Optional[Mapping[str, Any]]) -> Tuple[Tuple[ConditionClause, ...], str]:
    """
    Read clauses out of a free-form conditions mapping. Accepted shapes:
      {field, operator, value}
      {conditions: [{field, operator, value}, ...], logicalOperator: AND|OR}
    Keys that are neither (cronExpression, timezone, ...) are ignored.
    """
    if not conditions:
        return (), "AND"
    if "conditions" in conditions:
        raw = conditions.get("conditions") or []
        clauses = tuple(clause_from_dict(c) for c in raw)
        return clauses, str(conditions.get("logicalOperator", "AND")).upper()
    if "field" in conditions:
        return (clause_from_dict(conditions),), "AND"
    return (), "AND"


def clause_from_dict(raw: Mapping[str, Any]) -> ConditionClause:
    return ConditionClause(
        field=str(raw.get("field", "")),
        operator=str(raw.get("operator", "equals")),
        value=raw.get("value"),
    )


def evaluate_guard(conditions: Optional[Mapping[str, Any]], env: Mapping[str, Any], **kwargs) -> bool:
    """ Connection guard: an empty guard always passes. """
    clauses, logical_operator = parse_clauses(conditions)
    if not clauses:
        return True
    return evaluate_clauses(clauses, env, logical_operator, **kwargs)
