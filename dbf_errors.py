"""
Error types raised by the DBF reader.

Header/structure errors abort opening a file. Per-record decode problems
never raise; they decode to None.
"""

from typing import Optional


class DBFError(IOError):
    """Base class for all DBF reader errors."""


class DBFFileNotFoundError(DBFError, FileNotFoundError):
    """The requested path does not exist."""


class MalformedHeaderError(DBFError):
    """The 32-byte header or the header block is missing or too short."""


class SchemaMismatchError(DBFError):
    """The field table disagrees with the declared header/record lengths."""


class TruncatedRecordError(DBFError):
    """A record range runs past the end of the available data."""


class DBFNetworkError(DBFError):
    """Download failed: transport error or non-success HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
