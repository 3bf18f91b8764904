from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
import ipaddress
import re
from typing import Any, Callable


@dataclass(frozen=True)
class PredicateInvalidError(ValueError):
    # Raised for malformed predicates so callers can fail the decision closed.
    message: str


@dataclass(frozen=True)
class PredicateTooComplexError(ValueError):
    message: str


_LOGICAL_OPERATORS = {"all", "any", "not"}


def validate_condition(condition: Any, *, max_depth: int) -> None:
    # Reject unknown operators and overly deep trees before storing a predicate.
    if condition is None or isinstance(condition, bool) or condition == {}:
        return
    depth = _depth(condition)
    if depth > max_depth:
        raise PredicateTooComplexError(f"Predicate depth {depth} exceeds max {max_depth}")
    _validate(condition)


def evaluate_condition(condition: Any, context: dict[str, Any]) -> bool:
    # Evaluate the predicate DSL against {object, environment, subject}.
    if condition is None or condition == {}:
        return True
    if isinstance(condition, bool):
        return condition
    operator, payload = _split(condition)
    if operator == "all":
        return all(evaluate_condition(item, context) for item in _as_list(payload, operator))
    if operator == "any":
        return any(evaluate_condition(item, context) for item in _as_list(payload, operator))
    if operator == "not":
        return not evaluate_condition(payload, context)
    left, right = _operands(payload, context)
    return _COMPARATORS[operator](left, right)


def _split(condition: Any) -> tuple[str, Any]:
    if not isinstance(condition, dict):
        raise PredicateInvalidError("Condition must be an object")
    if len(condition) != 1:
        raise PredicateInvalidError("Condition must include a single operator")
    operator, payload = next(iter(condition.items()))
    if operator not in _LOGICAL_OPERATORS and operator not in _COMPARATORS:
        raise PredicateInvalidError(f"Unsupported operator: {operator}")
    return operator, payload


def _validate(condition: Any) -> None:
    if condition is None or isinstance(condition, bool):
        return
    operator, payload = _split(condition)
    if operator in {"all", "any"}:
        for item in _as_list(payload, operator):
            _validate(item)
    elif operator == "not":
        _validate(payload)
    elif operator == "regex":
        _, pattern = payload if isinstance(payload, list) and len(payload) == 2 else (None, None)
        if isinstance(pattern, str):
            try:
                re.compile(pattern)
            except re.error as exc:
                raise PredicateInvalidError(f"Invalid regex: {exc}") from exc


def _depth(condition: Any, depth: int = 1) -> int:
    if not isinstance(condition, dict) or len(condition) != 1:
        return depth
    operator, payload = next(iter(condition.items()))
    if operator in {"all", "any"}:
        items = payload if isinstance(payload, list) else []
        return max((_depth(item, depth + 1) for item in items), default=depth + 1)
    if operator == "not":
        return _depth(payload, depth + 1)
    return depth + 1


def _as_list(payload: Any, operator: str) -> list[Any]:
    if not isinstance(payload, list):
        raise PredicateInvalidError(f"{operator} expects a list")
    return payload


def _operands(payload: Any, context: dict[str, Any]) -> tuple[Any, Any]:
    # Accept [left, right] or {"field": path, "value": literal}.
    if isinstance(payload, list) and len(payload) == 2:
        return _resolve(payload[0], context), _resolve(payload[1], context)
    if isinstance(payload, dict) and "field" in payload:
        return _lookup(context, str(payload.get("field"))), _resolve(payload.get("value"), context)
    raise PredicateInvalidError("Comparator payload must be [left, right] or {field, value}")


def _resolve(value: Any, context: dict[str, Any]) -> Any:
    if isinstance(value, dict) and "var" in value:
        return _lookup(context, str(value.get("var")))
    return value


def _lookup(context: dict[str, Any], path: str) -> Any:
    node: Any = context
    for part in path.split(".") if path else []:
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node if path else None


def _membership(left: Any, right: Any) -> bool:
    if right is None:
        return False
    if isinstance(right, (list, tuple, set, frozenset)):
        return left in right
    return left == right


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        left, right = _coerce_temporal(left), _coerce_temporal(right)
        try:
            return op(left, right)
        except TypeError:
            return False

    return compare


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return right is not None and str(right) in left
    if isinstance(left, (list, tuple, set, frozenset)):
        return right in left
    return False


def _starts_with(left: Any, right: Any) -> bool:
    return isinstance(left, str) and right is not None and left.startswith(str(right))


def _ends_with(left: Any, right: Any) -> bool:
    return isinstance(left, str) and right is not None and left.endswith(str(right))


def _regex(left: Any, right: Any) -> bool:
    if not isinstance(left, str) or not isinstance(right, str):
        return False
    try:
        return re.search(right, left) is not None
    except re.error as exc:
        raise PredicateInvalidError(f"Invalid regex: {exc}") from exc


def _ip_in_cidr(left: Any, right: Any) -> bool:
    # right may be one CIDR or a list of them.
    if not isinstance(left, str) or right is None:
        return False
    networks = right if isinstance(right, (list, tuple)) else [right]
    try:
        address = ipaddress.ip_address(left)
    except ValueError:
        return False
    for raw in networks:
        try:
            if address in ipaddress.ip_network(str(raw), strict=False):
                return True
        except ValueError as exc:
            raise PredicateInvalidError(f"Invalid network: {raw}") from exc
    return False


def _time_between(left: Any, right: Any) -> bool:
    if not isinstance(right, dict):
        raise PredicateInvalidError("time_between expects an object with start/end")
    start, end, value = _parse_time(right.get("start")), _parse_time(right.get("end")), _parse_time(left)
    if value is None or start is None or end is None:
        return False
    if start <= end:
        return start <= value <= end
    # Overnight window (e.g. 22:00-06:00).
    return value >= start or value <= end


def _date_between(left: Any, right: Any) -> bool:
    if not isinstance(right, dict):
        raise PredicateInvalidError("date_between expects an object with start/end")
    start, end = _parse_datetime(right.get("start")), _parse_datetime(right.get("end"))
    value = _parse_datetime(left)
    if value is None or start is None or end is None:
        return False
    return start <= value <= end


def _coerce_temporal(value: Any) -> Any:
    if isinstance(value, str) and len(value) >= 10 and value[4:5] == "-":
        parsed = _parse_datetime(value)
        return parsed if parsed is not None else value
    return value


def _parse_time(value: Any) -> time | None:
    if isinstance(value, time):
        return value
    if isinstance(value, datetime):
        return value.time()
    if isinstance(value, str):
        for fmt in ("%H:%M:%S", "%H:%M"):
            try:
                return datetime.strptime(value, fmt).time()
            except ValueError:
                continue
        parsed = _parse_datetime(value)
        return parsed.time() if parsed is not None else None
    return None


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda left, right: left == right,
    "ne": lambda left, right: left != right,
    "in": _membership,
    "not_in": lambda left, right: not _membership(left, right),
    "gt": _ordered(lambda left, right: left > right),
    "gte": _ordered(lambda left, right: left >= right),
    "lt": _ordered(lambda left, right: left < right),
    "lte": _ordered(lambda left, right: left <= right),
    "contains": _contains,
    "not_contains": lambda left, right: not _contains(left, right),
    "starts_with": _starts_with,
    "ends_with": _ends_with,
    "regex": _regex,
    "ip_in_cidr": _ip_in_cidr,
    "time_between": _time_between,
    "date_between": _date_between,
}
