"""
Entry file format.

An entry file holds one line per schema field, in schema order:

    {<@SEP>}Alice{<@SEP>}
    {<@SEP>}30{<@SEP>}

There is no trailing newline. Values are positional: the n-th span belongs to
the n-th field name of the table, so decoding trusts that the schema has not
been reordered since the entry was written.

Values are not escaped in the default format. A value that contains the
sentinel cannot be stored and is rejected at encode time. The "escaped"
format backslash-escapes values first so that any string round-trips.
"""
from __future__ import annotations
import re
from typing import Collection, Dict, List, Mapping, Pattern, Sequence

from .errors import CorruptEntryError, MissingFieldError, SentinelInValueError, TooManyFieldsError

SENTINEL = "{<@SEP>}"

_SPAN: Pattern[str] = re.compile(rf"{re.escape(SENTINEL)}(.*?){re.escape(SENTINEL)}", re.DOTALL)

_ESCAPES = {"\\": "\\\\", "{": "\\o"}
_ESCAPE_RE: Pattern[str] = re.compile(r"[\\{]")
_UNESCAPE_RE: Pattern[str] = re.compile(r"\\(.)", re.DOTALL)
_UNESCAPES = {"\\": "\\", "o": "{"}


def escape(value: str) -> str:
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(0)], value)


def unescape(value: str) -> str:
    def repl(m: re.Match) -> str:
        ch = m.group(1)
        if ch not in _UNESCAPES:
            raise CorruptEntryError(f"invalid escape sequence '\\{ch}'")
        return _UNESCAPES[ch]
    return _UNESCAPE_RE.sub(repl, value)


def to_text(value: object) -> str:
    """Stored form of a Python value. Booleans use the lowercase spelling."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def check_fields(fieldnames: Sequence[str], entry: Mapping[str, object]) -> None:
    """
    Reject entries with more keys than the schema, or keys the schema does not define.
    """
    if len(entry) > len(fieldnames):
        raise TooManyFieldsError(
            f"too many fields in data: got {len(entry)}, schema has {len(fieldnames)}"
        )
    allowed = set(fieldnames)
    extra = [k for k in entry if k not in allowed]
    if extra:
        raise TooManyFieldsError(f"fields not in schema: {', '.join(sorted(map(str, extra)))}")


def encode(
    fieldnames: Sequence[str],
    entry: Mapping[str, object],
    optional: Collection[str] = (),
    *,
    escaped: bool = False,
) -> str:
    check_fields(fieldnames, entry)
    lines: List[str] = []
    for name in fieldnames:
        value = entry.get(name)
        if value is None or value == "":
            if name not in optional:
                raise MissingFieldError(name)
            value = ""
        text = to_text(value)
        if escaped:
            text = escape(text)
        elif SENTINEL in text:
            raise SentinelInValueError(name)
        lines.append(f"{SENTINEL}{text}{SENTINEL}")
    return "\n".join(lines)


def extract_spans(raw: str) -> List[str]:
    return _SPAN.findall(raw)


def decode(fieldnames: Sequence[str], raw: str, *, escaped: bool = False) -> Dict[str, str]:
    spans = extract_spans(raw)
    if not spans:
        raise CorruptEntryError("no field values found in entry")
    if len(spans) != len(fieldnames):
        raise CorruptEntryError(
            f"entry has {len(spans)} field values, schema has {len(fieldnames)}"
        )
    if escaped:
        spans = [unescape(s) for s in spans]
    return dict(zip(fieldnames, spans))
