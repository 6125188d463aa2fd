"""
Per-table advisory locks.

The engine does not coordinate writers on its own. A table only takes a lock
when the database is opened with ``lock="file"``; every process that writes
to the same table must use that option for the lock to mean anything.

``LockFile`` creates ``<table dir>/.lock`` exclusively and writes the owner's
pid and host into it. Acquisition never blocks longer than ``timeout``.

A lock left behind by a crashed writer is broken automatically only when it
is provably stale: written on this host by a pid that is no longer running.
Anything else has to be cleared with ``break_lock()``.
"""
from __future__ import annotations
import json
import os
import platform
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, ContextManager, Dict, Iterator, Mapping, Optional, Protocol, Union

import structlog

from .errors import TableFolderMissingError, TableLockedError

log = structlog.get_logger(__name__)

LOCK_NAME = ".lock"


class TableLock(Protocol):
    def hold(self) -> ContextManager[None]: ...

    def break_lock(self) -> Optional[Dict[str, Any]]: ...


class NullLock:
    """No-op lock for single-writer use."""

    @contextmanager
    def hold(self) -> Iterator[None]:
        yield

    def break_lock(self) -> Optional[Dict[str, Any]]:
        return None


def is_pid_running(pid: int) -> Optional[bool]:
    """
    True if running, False if not running, None if it cannot be determined.
    """
    if pid <= 0 or os.name == "nt":
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    except OSError:
        return None
    return True


def is_provably_stale(owner: Mapping[str, Any]) -> bool:
    host = owner.get("hostname")
    pid = owner.get("pid")
    if not isinstance(host, str) or not isinstance(pid, int) or isinstance(pid, bool):
        return False
    if host.lower() != platform.node().lower():
        return False
    if pid == os.getpid():
        return False
    return is_pid_running(pid) is False


class LockFile:
    def __init__(
        self,
        directory: Union[str, Path],
        *,
        timeout: float = 0.0,
        poll: float = 0.05,
        break_stale: bool = True,
    ) -> None:
        self.path = Path(directory) / LOCK_NAME
        self.timeout = timeout
        self.poll = poll
        self.break_stale = break_stale
        self._depth = 0
        self._rlock = threading.RLock()

    @contextmanager
    def hold(self) -> Iterator[None]:
        # Re-entrant for the owning thread so bulk ops can wrap per-row ops.
        if self.timeout > 0:
            acquired = self._rlock.acquire(timeout=self.timeout)
        else:
            acquired = self._rlock.acquire(blocking=False)
        if not acquired:
            raise TableLockedError(f"table is locked by another thread: {self.path}")
        try:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            self._acquire()
            self._depth = 1
            try:
                yield
            finally:
                self._depth = 0
                self._release()
        finally:
            self._rlock.release()

    def _acquire(self) -> None:
        deadline = time.monotonic() + self.timeout
        payload = json.dumps({"pid": os.getpid(), "hostname": platform.node()}, sort_keys=True)
        while True:
            try:
                with self.path.open("x", encoding="utf-8") as f:
                    f.write(payload)
                return
            except FileNotFoundError:
                raise TableFolderMissingError(self.path.parent) from None
            except FileExistsError:
                owner = self.owner()
                if self.break_stale and owner is not None and is_provably_stale(owner):
                    log.warning("lock.stale_broken", path=str(self.path), owner=owner)
                    self.path.unlink(missing_ok=True)
                    continue
                if time.monotonic() >= deadline:
                    raise TableLockedError(f"table is locked: {self.path} (owner: {owner or 'unknown'})")
                time.sleep(self.poll)

    def _release(self) -> None:
        owner = self.owner()
        if owner is not None and owner.get("pid") != os.getpid():
            log.warning("lock.foreign_owner", path=str(self.path), owner=owner)
            return
        self.path.unlink(missing_ok=True)

    def break_lock(self) -> Optional[Dict[str, Any]]:
        """
        Remove the lock file whoever holds it. Returns the previous owner, if readable.
        """
        owner = self.owner()
        try:
            self.path.unlink()
        except FileNotFoundError:
            return None
        log.warning("lock.broken", path=str(self.path), owner=owner)
        return owner

    def owner(self) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None
