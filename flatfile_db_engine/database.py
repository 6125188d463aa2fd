from __future__ import annotations
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Union

import structlog

from .config import Options, resolve_options
from .errors import DatabaseError, DatabaseNotConnectedError, ManifestError, TableNotFoundError
from .manifest import MANIFEST_NAME, TableDescriptor, append_table, read_manifest, remove_table
from .progress import Progress, ProgressCallback
from .table import ParseFunction, Table

log = structlog.get_logger(__name__)


class Database:
    """
    Handle on one database directory: the manifest plus one directory per table.

        db = Database.open("./database")
        users = db.table("users")
        users.post({"name": "Alice", "age": "30"})

    Handles are independent; two handles on the same directory do not share
    tables, parse functions or locks.
    """

    def __init__(
        self,
        root: Union[str, Path],
        *,
        manifest: str = MANIFEST_NAME,
        options: Optional[Dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.root = Path(root)
        self.manifest_path = self.root / manifest
        self._opts: Options = resolve_options(options)
        self._progress = Progress(on_progress)
        self._tables: Dict[str, Table] = {}
        self._connected = False

    @classmethod
    def open(cls, root: Union[str, Path], **kwargs: Any) -> "Database":
        db = cls(root, **kwargs)
        db.connect()
        return db

    def __enter__(self) -> "Database":
        if not self._connected:
            self.connect()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "connected" if self._connected else "closed"
        return f"Database({str(self.root)!r}, {state}, tables={sorted(self._tables)!r})"

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def options(self) -> Options:
        return self._opts

    def connect(self) -> None:
        """
        Create the database directory if needed and load every table listed in the manifest.
        """
        if self._connected:
            raise DatabaseError("database already connected")
        self._progress.emit("connect.start", 0, str(self.root))
        self.root.mkdir(parents=True, exist_ok=True)

        self._progress.emit("connect.load_manifest", 10, str(self.manifest_path))
        descriptors = read_manifest(self.manifest_path)
        tables: Dict[str, Table] = {}
        for i, desc in enumerate(descriptors, 1):
            tables[desc.name] = self._make_table(desc)
            self._progress.step("connect.load_manifest", i, len(descriptors))
        self._tables = tables
        self._connected = True
        log.info("database.connected", root=str(self.root), tables=len(tables))
        self._progress.emit("connect.done", 100, f"{len(tables)} tables")

    def close(self) -> None:
        self._tables = {}
        self._connected = False

    def _make_table(self, desc: TableDescriptor) -> Table:
        directory = desc.resolve_folder(self.root)
        if not directory.is_dir():
            log.warning("table.folder_missing", table=desc.name, folder=str(directory))
        return Table(desc, directory, options=self._opts, progress=self._progress)

    def _require(self) -> None:
        if not self._connected:
            raise DatabaseNotConnectedError()

    # ----- registry -----

    @property
    def tables(self) -> List[str]:
        self._require()
        return list(self._tables)

    def table(self, name: str) -> Table:
        self._require()
        try:
            return self._tables[name]
        except KeyError:
            raise TableNotFoundError(name) from None

    __getitem__ = table

    def __contains__(self, name: object) -> bool:
        self._require()
        return name in self._tables

    def __iter__(self) -> Iterator[Table]:
        self._require()
        return iter(list(self._tables.values()))

    def set_table_parse_function(self, name: str, fn: Optional[ParseFunction]) -> None:
        self.table(name).set_parse_function(fn)

    def create_table(self, name: str, fieldnames: Iterable[str], folder: Optional[str] = None) -> Table:
        """
        Register a new table: add its manifest line and create its directory.
        """
        self._require()
        if name in self._tables:
            raise ManifestError(f"table {name!r} already exists")
        desc = TableDescriptor(name=name, folder=folder or name, fieldnames=tuple(fieldnames))
        directory = desc.resolve_folder(self.root)
        directory.mkdir(parents=True, exist_ok=True)
        append_table(self.manifest_path, desc)
        table = self._make_table(desc)
        self._tables[name] = table
        log.info("table.created", table=name, folder=str(directory), fields=list(desc.fieldnames))
        return table

    def drop_table(self, name: str) -> None:
        """
        Remove a table's manifest line and delete its directory with every entry in it.
        """
        table = self.table(name)
        remove_table(self.manifest_path, name)
        del self._tables[name]
        if table.directory.exists():
            shutil.rmtree(table.directory)
        log.info("table.dropped", table=name)

    # ----- dispatch by table name -----

    def get(self, table: str, entry_id: int) -> Any:
        return self.table(table).get(entry_id)

    def post(self, table: str, entry: Mapping[str, Any]) -> Any:
        return self.table(table).post(entry)

    def patch(self, table: str, entry_id: int, fields: Mapping[str, Any]) -> Any:
        return self.table(table).patch(entry_id, fields)

    def delete(self, table: str, entry_id: int) -> Any:
        return self.table(table).delete(entry_id)

    def get_all(self, table: str) -> List[Any]:
        return self.table(table).get_all()

    def get_with_filter(self, table: str, predicate: Callable[[Any], bool]) -> List[Any]:
        return self.table(table).get_with_filter(predicate)

    def find(self, table: str, query: Mapping[str, Any]) -> List[Any]:
        return self.table(table).find(query)

    def get_where(self, table: str, field: str, value: Any, op: str = "$eq") -> List[Any]:
        return self.table(table).get_where(field, value, op)

    def patch_all(self, table: str, fields: Mapping[str, Any]) -> int:
        return self.table(table).patch_all(fields)

    def patch_with_filter(self, table: str, predicate: Callable[[Any], bool], fields: Mapping[str, Any]) -> int:
        return self.table(table).patch_with_filter(predicate, fields)

    def patch_where(self, table: str, field: str, value: Any, fields: Mapping[str, Any], op: str = "$eq") -> int:
        return self.table(table).patch_where(field, value, fields, op)

    def update(self, table: str, query: Mapping[str, Any], fields: Mapping[str, Any]) -> int:
        return self.table(table).update(query, fields)

    def delete_all(self, table: str) -> int:
        return self.table(table).delete_all()

    def delete_with_filter(self, table: str, predicate: Callable[[Any], bool]) -> int:
        return self.table(table).delete_with_filter(predicate)

    def delete_where(self, table: str, field: str, value: Any, op: str = "$eq") -> int:
        return self.table(table).delete_where(field, value, op)

    def remove(self, table: str, query: Mapping[str, Any]) -> int:
        return self.table(table).remove(query)

    # ----- named comparator dispatchers -----

    def get_where_not(self, table: str, field: str, value: Any) -> List[Any]:
        return self.table(table).get_where_not(field, value)

    def get_where_gt(self, table: str, field: str, value: Any) -> List[Any]:
        return self.table(table).get_where_gt(field, value)

    def get_where_lt(self, table: str, field: str, value: Any) -> List[Any]:
        return self.table(table).get_where_lt(field, value)

    def get_where_gte(self, table: str, field: str, value: Any) -> List[Any]:
        return self.table(table).get_where_gte(field, value)

    def get_where_lte(self, table: str, field: str, value: Any) -> List[Any]:
        return self.table(table).get_where_lte(field, value)

    def get_where_contains(self, table: str, field: str, value: Any) -> List[Any]:
        return self.table(table).get_where_contains(field, value)

    def get_where_not_contains(self, table: str, field: str, value: Any) -> List[Any]:
        return self.table(table).get_where_not_contains(field, value)

    def get_where_starts_with(self, table: str, field: str, value: Any) -> List[Any]:
        return self.table(table).get_where_starts_with(field, value)

    def get_where_ends_with(self, table: str, field: str, value: Any) -> List[Any]:
        return self.table(table).get_where_ends_with(field, value)

    def patch_where_not(self, table: str, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.table(table).patch_where_not(field, value, fields)

    def patch_where_gt(self, table: str, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.table(table).patch_where_gt(field, value, fields)

    def patch_where_lt(self, table: str, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.table(table).patch_where_lt(field, value, fields)

    def patch_where_gte(self, table: str, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.table(table).patch_where_gte(field, value, fields)

    def patch_where_lte(self, table: str, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.table(table).patch_where_lte(field, value, fields)

    def patch_where_contains(self, table: str, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.table(table).patch_where_contains(field, value, fields)

    def patch_where_not_contains(self, table: str, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.table(table).patch_where_not_contains(field, value, fields)

    def patch_where_starts_with(self, table: str, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.table(table).patch_where_starts_with(field, value, fields)

    def patch_where_ends_with(self, table: str, field: str, value: Any, fields: Mapping[str, Any]) -> int:
        return self.table(table).patch_where_ends_with(field, value, fields)

    def delete_where_not(self, table: str, field: str, value: Any) -> int:
        return self.table(table).delete_where_not(field, value)

    def delete_where_gt(self, table: str, field: str, value: Any) -> int:
        return self.table(table).delete_where_gt(field, value)

    def delete_where_lt(self, table: str, field: str, value: Any) -> int:
        return self.table(table).delete_where_lt(field, value)

    def delete_where_gte(self, table: str, field: str, value: Any) -> int:
        return self.table(table).delete_where_gte(field, value)

    def delete_where_lte(self, table: str, field: str, value: Any) -> int:
        return self.table(table).delete_where_lte(field, value)

    def delete_where_contains(self, table: str, field: str, value: Any) -> int:
        return self.table(table).delete_where_contains(field, value)

    def delete_where_not_contains(self, table: str, field: str, value: Any) -> int:
        return self.table(table).delete_where_not_contains(field, value)

    def delete_where_starts_with(self, table: str, field: str, value: Any) -> int:
        return self.table(table).delete_where_starts_with(field, value)

    def delete_where_ends_with(self, table: str, field: str, value: Any) -> int:
        return self.table(table).delete_where_ends_with(field, value)
