from __future__ import annotations
import os
from pathlib import Path
from typing import Iterator, List, Optional, Union

import structlog

from .errors import TableFolderMissingError

log = structlog.get_logger(__name__)

TMP_SUFFIX = ".tmp"


def iter_ids(directory: Union[str, Path]) -> Iterator[int]:
    """
    Yield the id of every entry file in a table directory, in listing order.
    Anything that is not a plain decimal filename (".schema", ".lock", temp files) is skipped.
    """
    try:
        it = os.scandir(directory)
    except FileNotFoundError:
        raise TableFolderMissingError(directory) from None
    with it:
        for de in it:
            if de.name.isascii() and de.name.isdigit() and de.is_file():
                yield int(de.name)


def all_ids(directory: Union[str, Path]) -> List[int]:
    return sorted(iter_ids(directory))


def next_id(directory: Union[str, Path]) -> int:
    """
    max(existing ids) + 1, or 1 for an empty table.
    Nothing is reserved: two callers racing here get the same answer.
    """
    return max(iter_ids(directory), default=0) + 1


class FileStorage:
    """
    Whole-file I/O for the entries of one table directory.
    """
    def __init__(self, directory: Union[str, Path], *, atomic_writes: bool = False) -> None:
        self.directory = Path(directory)
        self.atomic_writes = atomic_writes

    def path_for(self, entry_id: int) -> Path:
        return self.directory / str(int(entry_id))

    def exists(self, entry_id: int) -> bool:
        return self.path_for(entry_id).is_file()

    def ids(self) -> List[int]:
        return all_ids(self.directory)

    def next_id(self) -> int:
        return next_id(self.directory)

    def read(self, entry_id: int) -> Optional[str]:
        try:
            with open(self.path_for(entry_id), "r", encoding="utf-8", newline="") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def create(self, entry_id: int, data: str) -> None:
        """
        Write a new entry file. Raises FileExistsError if the id is already taken.
        """
        path = self.path_for(entry_id)
        with open(path, "x", encoding="utf-8", newline="") as f:
            f.write(data)
        log.debug("entry.created", path=str(path), size=len(data))

    def overwrite(self, entry_id: int, data: str) -> None:
        """
        Rewrite an existing entry file. Raises FileNotFoundError if it is gone.
        """
        path = self.path_for(entry_id)
        if self.atomic_writes:
            tmp = path.with_name(path.name + TMP_SUFFIX)
            with open(tmp, "w", encoding="utf-8", newline="") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            if not path.is_file():
                tmp.unlink()
                raise FileNotFoundError(str(path))
            self.replace_file(tmp, path)
        else:
            with open(path, "r+", encoding="utf-8", newline="") as f:
                f.truncate(0)
                f.write(data)
        log.debug("entry.rewritten", path=str(path), size=len(data), atomic=self.atomic_writes)

    def remove(self, entry_id: int) -> None:
        """
        Delete an entry file. Raises FileNotFoundError if it is gone.
        """
        path = self.path_for(entry_id)
        os.remove(path)
        log.debug("entry.removed", path=str(path))

    @staticmethod
    def replace_file(tmp_path: Path, path: Path) -> None:
        os.replace(tmp_path, path)
        if hasattr(os, "O_DIRECTORY"):
            fd = os.open(path.parent, os.O_RDONLY | os.O_DIRECTORY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
