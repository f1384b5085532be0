"""
Options controlling how a DBF table is read.
"""

import codecs
from dataclasses import dataclass, replace
from typing import Any, Optional

DEFAULT_BUFFER_SIZE = 16384

_DECODE_ERROR_HANDLERS = ('strict', 'replace', 'ignore')


@dataclass(frozen=True)
class DBFReaderOptions:
    """
    Reader configuration.

    Attributes:
        encoding: Codec used for text, overrides the table's language driver
        ignore_case: Field lookups by name ignore case
        lowercase_field_names: Report field names in lower case
        ignore_missing_memo_file: Memo fields read as None when the memo file is absent
        trim_strings: Strip leading padding from character values
        validate_fields: Raise FieldParseError on bad values instead of returning InvalidValue
        skip_deleted_records: Leave deleted records out of ``records``
        max_records: Stop enumeration after this many records
        buffer_size: Read buffer size for the table file
        field_parser: Replacement parser, an object with a ``parse`` method or a callable
        raw_mode: Return raw bytes for every field
        char_decode_errors: Codec error handler for text ('replace', 'strict' or 'ignore')
    """
    encoding: Optional[str] = None
    ignore_case: bool = True
    lowercase_field_names: bool = False
    ignore_missing_memo_file: bool = False
    trim_strings: bool = True
    validate_fields: bool = True
    skip_deleted_records: bool = True
    max_records: Optional[int] = None
    buffer_size: int = DEFAULT_BUFFER_SIZE
    field_parser: Any = None
    raw_mode: bool = False
    char_decode_errors: str = 'replace'

    def __post_init__(self):
        if self.max_records is not None and self.max_records < 0:
            raise ValueError(f"max_records must be >= 0, got {self.max_records}")
        if self.buffer_size <= 0:
            raise ValueError(f"buffer_size must be positive, got {self.buffer_size}")
        if self.char_decode_errors not in _DECODE_ERROR_HANDLERS:
            raise ValueError(f"Unknown decode error handler: {self.char_decode_errors!r}")
        if self.encoding:
            codecs.lookup(self.encoding)

    def with_overrides(self, **changes) -> 'DBFReaderOptions':
        """Return a copy with some options changed."""
        return replace(self, **changes)

    @classmethod
    def performance(cls, **changes) -> 'DBFReaderOptions':
        """Fastest settings: no validation, no trimming, large buffer."""
        options = cls(validate_fields=False, trim_strings=False, buffer_size=65536)
        return replace(options, **changes)

    @classmethod
    def memory(cls, **changes) -> 'DBFReaderOptions':
        """Smallest footprint for streaming very large tables."""
        options = cls(buffer_size=4096)
        return replace(options, **changes)

    @classmethod
    def compatibility(cls, **changes) -> 'DBFReaderOptions':
        """Most forgiving settings for damaged or unusual files."""
        options = cls(validate_fields=False, ignore_missing_memo_file=True,
                      char_decode_errors='replace')
        return replace(options, **changes)
