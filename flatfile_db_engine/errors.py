from __future__ import annotations


class FlatFileDBError(RuntimeError):
    """Base class for all errors raised by the engine."""


class DatabaseError(FlatFileDBError):
    pass


class DatabaseNotConnectedError(DatabaseError):
    def __init__(self) -> None:
        super().__init__("database not connected; call Database.connect() first")


class ManifestError(DatabaseError):
    pass


class TableNotFoundError(DatabaseError):
    def __init__(self, name: str) -> None:
        super().__init__(f"table {name!r} does not exist")
        self.name = name


class TableFolderMissingError(DatabaseError):
    def __init__(self, folder: object) -> None:
        super().__init__(f"table folder does not exist: {folder}")
        self.folder = str(folder)


class TableLockedError(DatabaseError):
    pass


class EntryNotFoundError(FlatFileDBError, KeyError):
    def __init__(self, table: str, entry_id: int) -> None:
        super().__init__(f"entry {entry_id} does not exist in table {table!r}")
        self.table = table
        self.entry_id = entry_id

    def __str__(self) -> str:
        # KeyError would repr() the message
        return str(self.args[0])


class DuplicateIdError(FlatFileDBError):
    def __init__(self, table: str, entry_id: int) -> None:
        super().__init__(f"entry {entry_id} in table {table!r} was created by another writer")
        self.table = table
        self.entry_id = entry_id


class ValidationError(FlatFileDBError):
    pass


class MissingFieldError(ValidationError):
    def __init__(self, field: str) -> None:
        super().__init__(f"field {field!r} is missing in data")
        self.field = field


class TooManyFieldsError(ValidationError):
    pass


class CodecError(FlatFileDBError):
    pass


class CorruptEntryError(CodecError):
    pass


class SentinelInValueError(CodecError, ValueError):
    def __init__(self, field: str) -> None:
        super().__init__(f"value of field {field!r} contains the field separator")
        self.field = field
