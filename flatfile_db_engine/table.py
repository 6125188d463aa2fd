from __future__ import annotations
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar, cast

import structlog

from . import codec
from .config import Options, resolve_options
from .errors import CorruptEntryError, DuplicateIdError, EntryNotFoundError, FlatFileDBError
from .locks import LockFile, NullLock, TableLock
from .manifest import TableDescriptor
from .progress import Progress
from .query import compile_query, where
from .schema import Schema
from .storage import FileStorage

log = structlog.get_logger(__name__)

T = TypeVar("T")
RawEntry = Dict[str, str]
ParseFunction = Callable[[RawEntry], Any]
Validator = Callable[[Mapping[str, str]], None]


def _identity(entry: RawEntry) -> Any:
    return entry


class Table(Generic[T]):
    """
    One table: a directory of entry files plus the field names that give
    them meaning.

    Every value handed back to a caller, and every value a query predicate
    sees, has been passed through the table's parse function (identity by
    default, so plain ``dict[str, str]``). Writes always work on the raw
    string fields.

    Nothing here is safe for concurrent writers unless the database was
    opened with ``lock="file"`` and every writer does the same.
    """

    def __init__(
        self,
        descriptor: TableDescriptor,
        directory: Path,
        *,
        options: Optional[Options] = None,
        progress: Optional[Progress] = None,
        lock: Optional[TableLock] = None,
    ) -> None:
        self.descriptor = descriptor
        self._opts = options or resolve_options()
        self._fs = FileStorage(directory, atomic_writes=self._opts.atomic_writes)
        self._progress = progress or Progress()
        if lock is None:
            if self._opts.lock == "file":
                lock = LockFile(directory, timeout=self._opts.lock_timeout, break_stale=self._opts.break_stale_locks)
            else:
                lock = NullLock()
        self._lock = lock
        self._parse: ParseFunction = _identity
        self._schema: Optional[Schema] = None
        self._validator: Optional[Validator] = None

    def __repr__(self) -> str:
        return f"Table({self.name!r}, fields={list(self.fieldnames)!r})"

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def fieldnames(self) -> Tuple[str, ...]:
        return self.descriptor.fieldnames

    @property
    def directory(self) -> Path:
        return self._fs.directory

    @property
    def parse_function(self) -> ParseFunction:
        return self._parse

    def set_parse_function(self, fn: Optional[Callable[[RawEntry], T]]) -> None:
        """
        Replace the post-decode transform. Stored data is not touched; only
        later reads (and query comparisons) see the new representation.
        ``None`` restores the identity transform (plain string dicts).
        """
        self._parse = fn or _identity

    def break_lock(self) -> Optional[Dict[str, Any]]:
        """Clear this table's lock file, e.g. after a writer on another host crashed."""
        return self._lock.break_lock()

    def set_validator(self, fn: Optional[Validator]) -> None:
        self._validator = fn

    def set_schema(self, schema: Optional[Schema]) -> None:
        """
        Attach a typed schema: its defaults fill empty fields on write, its
        nullable fields may be stored empty and it validates every write.
        """
        if schema is not None:
            unknown = [n for n in schema.names if n not in self.fieldnames]
            if unknown:
                raise ValueError(f"schema fields not in table {self.name!r}: {', '.join(unknown)}")
        self._schema = schema
        self._validator = schema.validate if schema is not None else None

    # ----- entry store -----

    def _read_raw(self, entry_id: int) -> Optional[RawEntry]:
        data = self._fs.read(entry_id)
        if data is None:
            return None
        try:
            return codec.decode(self.fieldnames, data, escaped=self._opts.escaped)
        except CorruptEntryError as exc:
            raise CorruptEntryError(f"{exc} (table {self.name!r}, entry {entry_id})") from exc

    def _encode(self, entry: Mapping[str, Any]) -> Tuple[RawEntry, str]:
        raw: RawEntry = {k: codec.to_text(v) for k, v in entry.items()}
        optional: frozenset = frozenset()
        if self._schema is not None:
            self._schema.apply_defaults(raw)
            optional = frozenset(self._schema.optional_fields)
        codec.check_fields(self.fieldnames, raw)
        if self._validator is not None:
            self._validator(raw)
        data = codec.encode(self.fieldnames, raw, optional, escaped=self._opts.escaped)
        for name in self.fieldnames:
            raw.setdefault(name, "")
        return raw, data

    def get(self, entry_id: int) -> Optional[T]:
        raw = self._read_raw(entry_id)
        if raw is None:
            return None
        return cast(T, self._parse(raw))

    def post_id(self, entry: Mapping[str, Any]) -> int:
        """Create an entry and return its new id."""
        entry_id, _ = self._post(entry)
        return entry_id

    def post(self, entry: Mapping[str, Any]) -> T:
        _, raw = self._post(entry)
        return cast(T, self._parse(raw))

    def _post(self, entry: Mapping[str, Any]) -> Tuple[int, RawEntry]:
        # Encode first: a rejected entry must not leave a file behind.
        raw, data = self._encode(entry)
        with self._lock.hold():
            entry_id = self._fs.next_id()
            try:
                self._fs.create(entry_id, data)
            except FileExistsError:
                raise DuplicateIdError(self.name, entry_id) from None
        log.debug("entry.post", table=self.name, id=entry_id)
        return entry_id, raw

    def patch(self, entry_id: int, fields: Mapping[str, Any]) -> T:
        with self._lock.hold():
            current = self._read_raw(entry_id)
            if current is None:
                raise EntryNotFoundError(self.name, entry_id)
            merged: Dict[str, Any] = {**current, **fields}
            raw, data = self._encode(merged)
            try:
                self._fs.overwrite(entry_id, data)
            except FileNotFoundError:
                # deleted between our read and our write
                raise EntryNotFoundError(self.name, entry_id) from None
        log.debug("entry.patch", table=self.name, id=entry_id, fields=sorted(fields))
        return cast(T, self._parse(raw))

    def delete(self, entry_id: int) -> T:
        with self._lock.hold():
            raw = self._read_raw(entry_id)
            if raw is None:
                raise EntryNotFoundError(self.name, entry_id)
            try:
                self._fs.remove(entry_id)
            except FileNotFoundError:
                raise EntryNotFoundError(self.name, entry_id) from None
        log.debug("entry.delete", table=self.name, id=entry_id)
        return cast(T, self._parse(raw))

    def ids(self) -> List[int]:
        return self._fs.ids()

    def __len__(self) -> int:
        return len(self._fs.ids())

    def __contains__(self, entry_id: object) -> bool:
        return isinstance(entry_id, int) and self._fs.exists(entry_id)

    # ----- read queries -----

    def items(self) -> List[Tuple[int, T]]:
        """(id, entry) pairs for every entry, in id order."""
        out: List[Tuple[int, T]] = []
        for entry_id in self._fs.ids():
            raw = self._read_raw(entry_id)
            if raw is None:
                continue
            out.append((entry_id, cast(T, self._parse(raw))))
        return out

    def get_all(self) -> List[T]:
        return [entry for _, entry in self.items()]

    def get_with_filter(self, predicate: Callable[[T], bool]) -> List[T]:
        return [entry for entry in self.get_all() if predicate(entry)]

    def find(self, query: Mapping[str, Any]) -> List[T]:
        """
        Compound query, e.g. ``{"age": {"$gte": 18}, "city": "Wien"}``.
        See query.OPERATORS for the supported operators.
        """
        return self.get_with_filter(compile_query(query))

    def get_where(self, field: str, value: Any, op: str = "$eq") -> List[T]:
        return self.get_with_filter(where(field, value, op))

    def get_where_not(self, field: str, value: Any) -> List[T]:
        return self.get_where(field, value, "$ne")

    def get_where_gt(self, field: str, value: Any) -> List[T]:
        return self.get_where(field, value, "$gt")

    def get_where_lt(self, field: str, value: Any) -> List[T]:
        return self.get_where(field, value, "$lt")

    def get_where_gte(self, field: str, value: Any) -> List[T]:
        return self.get_where(field, value, "$gte")

    def get_where_lte(self, field: str, value: Any) -> List[T]:
        return self.get_where(field, value, "$lte")

    def get_where_contains(self, field: str, value: Any) -> List[T]:
        return self.get_where(field, value, "$contains")

    def get_where_not_contains(self, field: str, value: Any) -> List[T]:
        return self.get_where(field, value, "$ncontains")

    def get_where_starts_with(self, field: str, value: Any) -> List[T]:
        return self.get_where(field, value, "$startswith")

    def get_where_ends_with(self, field: str, value: Any) -> List[T]:
        return self.get_where(field, value, "$endswith")

    # ----- bulk writes -----

    def _with_id(self, entry: Any, entry_id: int) -> Any:
        # Filters passed to *_with_filter can see which row they are looking at.
        # A real "id" field in the table wins over the synthetic one.
        if isinstance(entry, Mapping) and "id" not in self.fieldnames:
            return {**entry, "id": entry_id}
        return entry

    def _bulk(
        self,
        kind: str,
        predicate: Optional[Callable[[Any], bool]],
        action: Callable[[int], Any],
        *,
        with_id: bool = False,
    ) -> int:
        """
        Re-scan the table, then apply ``action`` to every matching id in turn.

        A row failing to read, match or write either aborts the whole call
        (on_error="abort", the default; rows already done stay done) or is
        logged and skipped (on_error="skip").
        """
        self._progress.emit(f"{kind}.start", 0, self.name)
        n = 0
        with self._lock.hold():
            ids = self._fs.ids()
            for i, entry_id in enumerate(ids, 1):
                try:
                    if predicate is not None:
                        raw = self._read_raw(entry_id)
                        if raw is None:
                            continue
                        entry = self._parse(raw)
                        if with_id:
                            entry = self._with_id(entry, entry_id)
                        if not predicate(entry):
                            continue
                    action(entry_id)
                    n += 1
                except FlatFileDBError as exc:
                    if self._opts.on_error == "abort":
                        raise
                    log.warning(f"{kind}.row_skipped", table=self.name, id=entry_id, error=str(exc))
                self._progress.step(f"{kind}.rows", i, len(ids))
        self._progress.emit(f"{kind}.done", 100, f"{self.name}: {n} entries")
        log.debug(f"{kind}.bulk", table=self.name, matched=n)
        return n

    def patch_all(self, fields: Mapping[str, Any]) -> int:
        return self._bulk("patch", None, lambda i: self.patch(i, fields))

    def patch_with_filter(self, predicate: Callable[[Any], bool], fields: Mapping[str, Any]) -> int:
        return self._bulk("patch", predicate, lambda i: self.patch(i, fields), with_id=True)

    def update(self, query: Mapping[str, Any], fields: Mapping[str, Any]) -> int:
        return self._bulk("patch", compile_query(query), lambda i: self.patch(i, fields))

    def patch_where(self, field: str, value: Any, fields: Mapping[str, Any], op: str = "$eq") -> int:
        return self._bulk("patch", where(field, value, op), lambda i: self.patch(i, fields))

    def patch_where_not(self, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.patch_where(field, value, fields, "$ne")

    def patch_where_gt(self, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.patch_where(field, value, fields, "$gt")

    def patch_where_lt(self, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.patch_where(field, value, fields, "$lt")

    def patch_where_gte(self, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.patch_where(field, value, fields, "$gte")

    def patch_where_lte(self, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.patch_where(field, value, fields, "$lte")

    def patch_where_contains(self, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.patch_where(field, value, fields, "$contains")

    def patch_where_not_contains(self, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.patch_where(field, value, fields, "$ncontains")

    def patch_where_starts_with(self, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.patch_where(field, value, fields, "$startswith")

    def patch_where_ends_with(self, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.patch_where(field, value, fields, "$endswith")

    def delete_all(self) -> int:
        return self._bulk("delete", None, self.delete)

    def delete_with_filter(self, predicate: Callable[[Any], bool]) -> int:
        return self._bulk("delete", predicate, self.delete, with_id=True)

    def remove(self, query: Mapping[str, Any]) -> int:
        return self._bulk("delete", compile_query(query), self.delete)

    def delete_where(self, field: str, value: Any, op: str = "$eq") -> int:
        return self._bulk("delete", where(field, value, op), self.delete)

    def delete_where_not(self, field: str, value: Any) -> int:
        return self.delete_where(field, value, "$ne")

    def delete_where_gt(self, field: str, value: Any) -> int:
        return self.delete_where(field, value, "$gt")

    def delete_where_lt(self, field: str, value: Any) -> int:
        return self.delete_where(field, value, "$lt")

    def delete_where_gte(self, field: str, value: Any) -> int:
        return self.delete_where(field, value, "$gte")

    def delete_where_lte(self, field: str, value: Any) -> int:
        return self.delete_where(field, value, "$lte")

    def delete_where_contains(self, field: str, value: Any) -> int:
        return self.delete_where(field, value, "$contains")

    def delete_where_not_contains(self, field: str, value: Any) -> int:
        return self.delete_where(field, value, "$ncontains")

    def delete_where_starts_with(self, field: str, value: Any) -> int:
        return self.delete_where(field, value, "$startswith")

    def delete_where_ends_with(self, field: str, value: Any) -> int:
        return self.delete_where(field, value, "$endswith")
