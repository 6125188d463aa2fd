from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .errors import DatabaseError

DEFAULT_OPTIONS: Dict[str, Any] = {
    # "sentinel": raw values between separators; "escaped": backslash-escaped values
    "encoding": "sentinel",
    # patch through temp file + os.replace instead of truncate-and-write
    "atomic_writes": False,
    # bulk ops: "abort" on the first failing row, or "skip" it and log
    "on_error": "abort",
    # "none" or "file" (advisory .lock in each table directory)
    "lock": "none",
    "lock_timeout": 0.0,
    # remove a .lock left by a dead process on this host
    "break_stale_locks": True,
}

_CHOICES = {
    "encoding": ("sentinel", "escaped"),
    "on_error": ("abort", "skip"),
    "lock": ("none", "file"),
}


@dataclass(frozen=True)
class Options:
    encoding: str
    atomic_writes: bool
    on_error: str
    lock: str
    lock_timeout: float
    break_stale_locks: bool

    @property
    def escaped(self) -> bool:
        return self.encoding == "escaped"


def resolve_options(options: Optional[Mapping[str, Any]] = None) -> Options:
    merged = dict(DEFAULT_OPTIONS)
    for k, v in (options or {}).items():
        if k not in DEFAULT_OPTIONS:
            raise DatabaseError(f"unknown option: {k}")
        merged[k] = v
    for k, allowed in _CHOICES.items():
        if merged[k] not in allowed:
            raise DatabaseError(f"option {k} must be one of {', '.join(allowed)}; got {merged[k]!r}")
    try:
        timeout = float(merged["lock_timeout"])
    except (TypeError, ValueError):
        raise DatabaseError(f"option lock_timeout must be a number; got {merged['lock_timeout']!r}") from None
    if timeout < 0:
        raise DatabaseError("option lock_timeout must be >= 0")
    return Options(
        encoding=merged["encoding"],
        atomic_writes=bool(merged["atomic_writes"]),
        on_error=merged["on_error"],
        lock=merged["lock"],
        lock_timeout=timeout,
        break_stale_locks=bool(merged["break_stale_locks"]),
    )
