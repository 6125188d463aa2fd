from __future__ import annotations
import json
import re
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Set

from .errors import ValidationError

MAX_STRING_LENGTH = 10_485_760
DEFAULT_STRING_LENGTH = 255

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}:\d{2}$")
_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")
_URL_RE = re.compile(r"^https?://.+")
_EMAIL_RE = re.compile(r"^.+@.+\..+$")
_PHONE_RE = re.compile(r"^\+?\d+$")
_SIZED_RE = re.compile(r"^string_(\d+)$")
_INT_RE = re.compile(r"^[+-]?\d+$")
_BOOLS = {"true": True, "false": False}

FIELD_TYPES = {
    "string", "string_max", "string_nolim", "integer", "float", "boolean",
    "date", "time", "datetime", "url", "email", "phone", "json",
}


def _is_float(v: str) -> bool:
    try:
        float(v)
    except ValueError:
        return False
    return True


def _parse_datetime(v: str) -> datetime:
    return datetime.strptime(v, "%Y-%m-%d %H:%M:%S")


def _parses(pattern: re.Pattern, fn: Callable[[str], Any]) -> Callable[[str], bool]:
    # shape first, then the calendar: "2024-13-45" has the right shape
    def check(v: str) -> bool:
        if not pattern.match(v):
            return False
        try:
            fn(v)
        except ValueError:
            return False
        return True
    return check


def _is_json(v: str) -> bool:
    try:
        json.loads(v)
    except ValueError:
        return False
    return True


def _max_len(n: int) -> Callable[[str], bool]:
    return lambda v: len(v) <= n


_CHECKS: Dict[str, Callable[[str], bool]] = {
    "string": _max_len(DEFAULT_STRING_LENGTH),
    "string_max": _max_len(MAX_STRING_LENGTH),
    "string_nolim": lambda v: True,
    "integer": lambda v: bool(_INT_RE.match(v)),
    "float": _is_float,
    "boolean": lambda v: v in _BOOLS,
    "date": _parses(_DATE_RE, date.fromisoformat),
    "time": _parses(_TIME_RE, time.fromisoformat),
    "datetime": _parses(_DATETIME_RE, _parse_datetime),
    "url": lambda v: len(v) <= 501 and bool(_URL_RE.match(v)),
    "email": lambda v: len(v) <= 320 and bool(_EMAIL_RE.match(v)),
    "phone": lambda v: len(v) <= 20 and bool(_PHONE_RE.match(v)),
    "json": _is_json,
}

_PARSERS: Dict[str, Callable[[str], Any]] = {
    "integer": int,
    "float": float,
    "boolean": lambda v: _BOOLS[v],
    "date": date.fromisoformat,
    "time": time.fromisoformat,
    "datetime": _parse_datetime,
    "json": json.loads,
}


@dataclass(frozen=True)
class Field:
    """
    Typed field spec. Values are stored as strings either way; the type only
    drives validation and Schema.parse().
    """
    name: str
    type: str = "string"
    nullable: bool = False
    default: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type not in FIELD_TYPES and not _SIZED_RE.match(self.type):
            raise ValueError(f"unknown field type {self.type!r} for field {self.name!r}")
        sized = _SIZED_RE.match(self.type)
        if sized and not 1 <= int(sized.group(1)) <= MAX_STRING_LENGTH:
            raise ValueError(f"string size out of range in {self.type!r}")

    @property
    def optional(self) -> bool:
        return self.nullable or self.default is not None

    def check(self, value: str) -> bool:
        sized = _SIZED_RE.match(self.type)
        if sized:
            return len(value) <= int(sized.group(1))
        return _CHECKS[self.type](value)

    def parse(self, value: str) -> Any:
        if value == "" and self.nullable:
            return None
        fn = _PARSERS.get(self.type)
        return fn(value) if fn else value

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Field":
        return cls(
            name=d["name"],
            type=d.get("type", "string"),
            nullable=bool(d.get("nullable", d.get("isNullable", False))),
            default=d.get("default", d.get("defaultValue")),
        )


class Schema:
    def __init__(self, fields: Iterable[Field]) -> None:
        self._fields: Dict[str, Field] = {}
        for f in fields:
            if f.name in self._fields:
                raise ValueError(f"duplicate field {f.name!r}")
            self._fields[f.name] = f

    @classmethod
    def from_list(cls, items: Iterable[Mapping[str, Any]]) -> "Schema":
        return cls(Field.from_dict(d) for d in items)

    @property
    def names(self) -> List[str]:
        return list(self._fields)

    @property
    def optional_fields(self) -> Set[str]:
        return {name for name, f in self._fields.items() if f.optional}

    def field(self, name: str) -> Field:
        return self._fields[name]

    def apply_defaults(self, entry: MutableMapping[str, Any]) -> None:
        for name, f in self._fields.items():
            if f.default is not None and entry.get(name) in (None, ""):
                entry[name] = f.default

    def validate(self, entry: Mapping[str, Any]) -> None:
        errors: List[str] = []
        for name, value in entry.items():
            f = self._fields.get(name)
            if f is None:
                continue
            if value is None or value == "":
                if not f.optional:
                    errors.append(f"{name}: value required")
                continue
            if not f.check(str(value)):
                errors.append(f"{name}: {value!r} is not a valid {f.type}")
        if errors:
            raise ValidationError("; ".join(errors))

    def parse(self, entry: Mapping[str, str]) -> Dict[str, Any]:
        """Post-decode transform: convert stored strings to Python values."""
        out: Dict[str, Any] = {}
        for name, value in entry.items():
            f = self._fields.get(name)
            out[name] = f.parse(value) if f else value
        return out
