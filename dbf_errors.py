"""
Exceptions raised while reading dBase tables and memo files.
"""

from typing import Optional


class DBFError(Exception):
    """Base class for all dBase reading errors."""


class DBFNotFoundError(DBFError, FileNotFoundError):
    """The table file does not exist."""

    def __init__(self, file_path: str, message: Optional[str] = None):
        self.file_path = file_path
        super().__init__(message or f"DBF file not found: {file_path}")


class UnsupportedVersionError(DBFError):
    """The version byte maps to no known dialect."""

    def __init__(self, version_byte: int, message: Optional[str] = None):
        self.version_byte = version_byte
        super().__init__(message or f"Unsupported DBF version: 0x{version_byte:02X}")


class MissingMemoFileError(DBFError):
    """The table has memo fields but its memo file could not be found."""

    def __init__(self, dbf_file_path: Optional[str], memo_file_path: Optional[str]):
        self.dbf_file_path = dbf_file_path
        self.memo_file_path = memo_file_path
        if memo_file_path:
            message = f"Memo file not found for '{dbf_file_path}': {memo_file_path}"
        else:
            message = f"Memo file not found for '{dbf_file_path or '<stream>'}'"
        super().__init__(message)


class FieldParseError(DBFError, ValueError):
    """A single field value could not be decoded."""

    def __init__(self, field_name: str, field_type: str, raw_data: bytes,
                 reason: Optional[str] = None):
        self.field_name = field_name
        self.field_type = field_type
        self.raw_data = bytes(raw_data)
        self.reason = reason
        message = f"Failed to parse field '{field_name}' of type {field_type}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class MalformedStructureError(DBFError):
    """The header or field table cannot be made sense of."""


class DBFStateError(DBFError):
    """An operation is not valid in the reader's current state."""
