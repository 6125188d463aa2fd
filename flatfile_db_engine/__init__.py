from .codec import SENTINEL
from .database import Database
from .errors import (
    CodecError,
    CorruptEntryError,
    DatabaseError,
    DatabaseNotConnectedError,
    DuplicateIdError,
    EntryNotFoundError,
    FlatFileDBError,
    ManifestError,
    MissingFieldError,
    SentinelInValueError,
    TableFolderMissingError,
    TableLockedError,
    TableNotFoundError,
    TooManyFieldsError,
    ValidationError,
)
from .manifest import TableDescriptor
from .schema import Field, Schema
from .table import Table

__version__ = "0.1.0"

__all__ = [
    "SENTINEL",
    "CodecError",
    "CorruptEntryError",
    "Database",
    "DatabaseError",
    "DatabaseNotConnectedError",
    "DuplicateIdError",
    "EntryNotFoundError",
    "Field",
    "FlatFileDBError",
    "ManifestError",
    "MissingFieldError",
    "Schema",
    "SentinelInValueError",
    "Table",
    "TableDescriptor",
    "TableFolderMissingError",
    "TableLockedError",
    "TableNotFoundError",
    "TooManyFieldsError",
    "ValidationError",
]
