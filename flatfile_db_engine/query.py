from __future__ import annotations
from typing import Any, Callable, Dict, Mapping

Predicate = Callable[[Any], bool]

_MISSING = object()


def _contains(val: Any, arg: Any) -> bool:
    if isinstance(val, str):
        return str(arg) in val
    return arg in val


def _startswith(val: Any, arg: Any) -> bool:
    return isinstance(val, str) and val.startswith(str(arg))


def _endswith(val: Any, arg: Any) -> bool:
    return isinstance(val, str) and val.endswith(str(arg))


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$eq": lambda val, arg: val == arg,
    "$ne": lambda val, arg: val != arg,
    "$gt": lambda val, arg: val > arg,
    "$lt": lambda val, arg: val < arg,
    "$gte": lambda val, arg: val >= arg,
    "$lte": lambda val, arg: val <= arg,
    "$contains": _contains,
    "$ncontains": lambda val, arg: not _contains(val, arg),
    "$startswith": _startswith,
    "$endswith": _endswith,
}


def field_value(entry: Any, field: str) -> Any:
    """
    Read a field from a decoded entry. Mappings are indexed, anything else
    (a parse function may return an object) is read by attribute.
    """
    if isinstance(entry, Mapping):
        return entry.get(field, _MISSING)
    return getattr(entry, field, _MISSING)


def compare(val: Any, op: str, arg: Any) -> bool:
    try:
        fn = OPERATORS[op]
    except KeyError:
        raise ValueError(f"unsupported operator: {op}") from None
    if val is _MISSING:
        return False
    try:
        return bool(fn(val, arg))
    except TypeError:
        # e.g. "$gt" between str and int, "$contains" on an int
        return False


def is_op_dict(v: Any) -> bool:
    return isinstance(v, dict) and bool(v) and all(isinstance(k, str) and k.startswith("$") for k in v)


def matches(entry: Any, query: Mapping[str, Any]) -> bool:
    """
    Evaluate a query against one entry. Supports:
      - {"field": value}                    equality
      - {"field": {"$gt": 1, "$lt": 9}}     every operator must hold
    An empty query matches everything.
    """
    for field, cond in query.items():
        if field.startswith("$"):
            raise ValueError(f"unsupported top-level operator: {field}")
        val = field_value(entry, field)
        if is_op_dict(cond):
            for op, arg in cond.items():
                if not compare(val, op, arg):
                    return False
        elif not compare(val, "$eq", cond):
            return False
    return True


def compile_query(query: Mapping[str, Any]) -> Predicate:
    for field, cond in query.items():
        if field.startswith("$"):
            raise ValueError(f"unsupported top-level operator: {field}")
        if is_op_dict(cond):
            for op in cond:
                if op not in OPERATORS:
                    raise ValueError(f"unsupported operator: {op}")
    q = dict(query)
    return lambda entry: matches(entry, q)


def where(field: str, value: Any, op: str = "$eq") -> Predicate:
    if op not in OPERATORS:
        raise ValueError(f"unsupported operator: {op}")
    return compile_query({field: {op: value}})
