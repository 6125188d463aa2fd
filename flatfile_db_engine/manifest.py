"""
The manifest ("table.info") lists every table of a database, one JSON object
per line:

    {"name":"users","folder":"users","fieldnames":["name","age"]}

Lines may end with "\\n" or "\\r\\n"; blank lines are ignored.
"""
from __future__ import annotations
import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple, Union

from .errors import ManifestError

MANIFEST_NAME = "table.info"

_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")


def check_name(name: str, what: str = "table name") -> str:
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ManifestError(f"{what} must be alphanumeric (underscores allowed): {name!r}")
    return name


@dataclass(frozen=True)
class TableDescriptor:
    name: str
    folder: str
    fieldnames: Tuple[str, ...]

    def __post_init__(self) -> None:
        check_name(self.name)
        if not self.fieldnames:
            raise ManifestError(f"table {self.name!r} has no fields")
        seen = set()
        for f in self.fieldnames:
            check_name(f, "field name")
            if f in seen:
                raise ManifestError(f"table {self.name!r} lists field {f!r} twice")
            seen.add(f)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TableDescriptor":
        try:
            name, fieldnames = d["name"], d["fieldnames"]
        except KeyError as exc:
            raise ManifestError(f"table record is missing key {exc.args[0]!r}") from None
        if not isinstance(fieldnames, list):
            raise ManifestError(f"fieldnames of table {name!r} must be a list")
        folder = d.get("folder") or name
        return cls(name=name, folder=str(folder), fieldnames=tuple(fieldnames))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "folder": self.folder, "fieldnames": list(self.fieldnames)}

    def to_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    def resolve_folder(self, root: Union[str, Path]) -> Path:
        """
        Absolute folders are used as-is; relative ones resolve against the
        database root. The table tool writes folders relative to its working
        directory ("./database/users"); those tables live at <root>/<name>.
        """
        p = Path(self.folder)
        if p.is_absolute():
            return p
        root = Path(root)
        candidate = root / p
        if candidate.is_dir():
            return candidate
        by_name = root / self.name
        if p.name == self.name and len(p.parts) > 1 and p.parent.resolve() == root.resolve():
            return by_name
        if by_name.is_dir():
            return by_name
        return candidate


def parse_manifest(text: str) -> List[TableDescriptor]:
    tables: List[TableDescriptor] = []
    names = set()
    for lineno, line in enumerate(text.splitlines(), 1):
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ManifestError(f"manifest line {lineno} is not valid JSON: {exc.msg}") from exc
        if not isinstance(obj, dict):
            raise ManifestError(f"manifest line {lineno} is not a table record")
        desc = TableDescriptor.from_dict(obj)
        if desc.name in names:
            raise ManifestError(f"duplicate table name in manifest: {desc.name!r}")
        names.add(desc.name)
        tables.append(desc)
    return tables


def read_manifest(path: Union[str, Path]) -> List[TableDescriptor]:
    """Missing manifest means no tables."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return parse_manifest(f.read())
    except FileNotFoundError:
        return []


def write_manifest(path: Union[str, Path], tables: Iterable[TableDescriptor]) -> None:
    path = Path(path)
    tables = list(tables)
    names = [t.name for t in tables]
    if len(set(names)) != len(names):
        raise ManifestError("duplicate table names")
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8", newline="\n") as f:
        for t in tables:
            f.write(t.to_line() + "\n")
    os.replace(tmp, path)


def append_table(path: Union[str, Path], table: TableDescriptor) -> None:
    existing = read_manifest(path)
    if any(t.name == table.name for t in existing):
        raise ManifestError(f"table {table.name!r} already exists")
    write_manifest(path, existing + [table])


def remove_table(path: Union[str, Path], name: str) -> TableDescriptor:
    existing = read_manifest(path)
    kept = [t for t in existing if t.name != name]
    if len(kept) == len(existing):
        raise ManifestError(f"table {name!r} is not in the manifest")
    write_manifest(path, kept)
    return next(t for t in existing if t.name == name)
