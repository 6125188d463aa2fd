from __future__ import annotations
from typing import Any, Callable, Dict, Optional

ProgressCallback = Callable[[Dict[str, Any]], None]


class Progress:
    """
    Thin wrapper around an optional user callback.
    Events are dicts: {"phase": "delete.start", "pct": 0, "msg": "..."}.
    """
    def __init__(self, callback: Optional[ProgressCallback] = None) -> None:
        self._cb = callback

    @property
    def enabled(self) -> bool:
        return self._cb is not None

    def emit(self, phase: str, pct: int = 0, msg: str = "") -> None:
        if self._cb is None:
            return
        self._cb({"phase": phase, "pct": max(0, min(100, int(pct))), "msg": msg})

    def step(self, phase: str, done: int, total: int, msg: str = "") -> None:
        if self._cb is None:
            return
        pct = 100 if total <= 0 else (done * 100) // total
        self.emit(phase, pct, msg)
