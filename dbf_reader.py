"""
Reading records from dBase tables.

DBFReader streams records straight from the file by default. Calling
load() reads the whole table into memory, which enables indexing with
reader[i]; unload() goes back to streaming.

Example:
    with DBFReader.open('people.dbf') as reader:
        for record in reader:
            print(record['NAME'], record.get_date('BIRTHDATE'))
"""

import datetime
import functools
import io
import itertools
import logging
import os
import struct
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, BinaryIO, Callable, Iterator, List, Optional, Union

import anyio
import anyio.from_thread
import anyio.to_thread

from codepage_module import resolve_encoding
from dbf_errors import DBFNotFoundError, DBFStateError, FieldParseError
from dbf_module import (
    DBFColumn, DBF_DELETED_FLAG, DBF_EOF_MARKER, FieldType, read_dbf_header
)
from dbf_options import DBFReaderOptions
from field_parser import (
    FieldParser, InvalidValue, PADDING, invalid_or_raise, parse_date_bytes,
    parse_logical_byte, parse_number_text
)
from memo_module import open_memo_file

logger = logging.getLogger(__name__)

Key = Union[int, str]


class FieldIndex:
    """Name to position lookup shared by every record of a table."""

    __slots__ = ('names', 'ignore_case', '_lookup')

    def __init__(self, names: List[str], ignore_case: bool = True):
        self.names = tuple(names)
        self.ignore_case = ignore_case
        self._lookup = {}
        for i, name in enumerate(self.names):
            # First occurrence wins for duplicate names
            self._lookup.setdefault(self._key(name), i)

    def _key(self, name: str) -> str:
        return name.upper() if self.ignore_case else name

    def get(self, name: str) -> int:
        """Position of a field, or -1 if there is no such field."""
        return self._lookup.get(self._key(name), -1)

    def resolve(self, key: Key) -> int:
        """
        Position for a field name or index.

        Raises:
            KeyError: Unknown field name
            IndexError: Index out of range
        """
        if isinstance(key, int):
            if not -len(self.names) <= key < len(self.names):
                raise IndexError(f"Field index {key} out of range")
            return key % len(self.names)
        index = self.get(key)
        if index < 0:
            raise KeyError(key)
        return index


# Value conversions used by the typed getters
def _to_string(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (InvalidValue, bytes)):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    return str(value)


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, (InvalidValue, bytes)):
        return None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, (InvalidValue, bytes, bool)):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        return None


def _to_date(value: Any) -> Optional[datetime.date]:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return parse_date_bytes(value.encode('ascii'))
        except (ValueError, UnicodeEncodeError):
            return None
    return None


def _to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str) and value:
        try:
            return parse_logical_byte(ord(value[0]))
        except ValueError:
            return None
    return None


class DBFRecord(Mapping):
    """
    A decoded record.

    Behaves as a read-only mapping of field name to value. Fields can
    also be looked up by position, ``record[0]``.
    """

    __slots__ = ('_index', '_values', 'is_deleted')

    def __init__(self, index: FieldIndex, values: List[Any], is_deleted: bool = False):
        self._index = index
        self._values = tuple(values)
        self.is_deleted = is_deleted

    def __getitem__(self, key: Key) -> Any:
        return self._values[self._index.resolve(key)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._index.names)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        state = ', deleted' if self.is_deleted else ''
        return f"DBFRecord({self.to_dict()!r}{state})"

    def get(self, key: Key, default: Any = None) -> Any:
        try:
            return self[key]
        except (KeyError, IndexError):
            return default

    @property
    def field_values(self) -> tuple:
        return self._values

    @property
    def field_names(self) -> tuple:
        return self._index.names

    def to_dict(self) -> dict:
        return dict(zip(self._index.names, self._values))

    def get_string(self, key: Key) -> Optional[str]:
        """Value as text; None for null, invalid and binary values."""
        return _to_string(self[key])

    def get_int(self, key: Key) -> Optional[int]:
        return _to_int(self[key])

    def get_decimal(self, key: Key) -> Optional[Decimal]:
        return _to_decimal(self[key])

    def get_date(self, key: Key) -> Optional[datetime.date]:
        return _to_date(self[key])

    def get_datetime(self, key: Key) -> Optional[datetime.datetime]:
        value = self[key]
        if isinstance(value, datetime.datetime):
            return value
        if isinstance(value, datetime.date):
            return datetime.datetime.combine(value, datetime.time())
        return None

    def get_bool(self, key: Key) -> Optional[bool]:
        return _to_bool(self[key])


class DBFRecordView:
    """
    Zero-copy access to the record currently in the reader's buffer.

    Views are handed out by DBFReader.iter_views(). The buffer is reused
    for the next record, so a view must not be kept past its iteration
    step; doing so raises DBFStateError. Use to_record() for a copy.
    """

    __slots__ = ('_reader', '_generation')

    def __init__(self, reader: 'DBFReader', generation: int):
        self._reader = reader
        self._generation = generation

    def _buffer(self) -> memoryview:
        if self._reader._view_generation != self._generation:
            raise DBFStateError("Record view used after the reader moved to another record")
        return self._reader._scratch_view

    def _field(self, key: Key) -> DBFColumn:
        return self._reader.header.fields[self._reader._field_index.resolve(key)]

    @property
    def is_deleted(self) -> bool:
        return self._buffer()[0] == DBF_DELETED_FLAG

    @property
    def field_count(self) -> int:
        return len(self._reader.header.fields)

    def get_field_bytes(self, key: Key) -> memoryview:
        """Raw bytes of a field, valid only during this iteration step."""
        field = self._field(key)
        return self._buffer()[field.offset:field.offset + field.actual_length]

    def get_value(self, key: Key) -> Any:
        """Decode one field with the reader's parser."""
        field = self._field(key)
        data = self._buffer()[field.offset:field.offset + field.actual_length]
        return self._reader._decode_field(field, data)

    def get_string(self, key: Key) -> Optional[str]:
        reader = self._reader
        data = bytes(self.get_field_bytes(key)).rstrip(PADDING)
        try:
            text = str(data, reader.encoding, reader.options.char_decode_errors)
        except UnicodeDecodeError:
            return None
        return text.lstrip(' \x00') if reader.options.trim_strings else text

    def get_int(self, key: Key) -> Optional[int]:
        field = self._field(key)
        data = self.get_field_bytes(key)
        if field.field_type in (FieldType.INTEGER, FieldType.AUTOINCREMENT):
            if len(data) != 4:
                return None
            return struct.unpack('<i', data)[0]
        try:
            value = parse_number_text(data)
        except (ValueError, UnicodeDecodeError):
            return None
        return None if value is None else int(value)

    def get_decimal(self, key: Key) -> Optional[Decimal]:
        try:
            value = parse_number_text(self.get_field_bytes(key), decimals=1)
        except (ValueError, UnicodeDecodeError):
            return None
        return value

    def get_date(self, key: Key) -> Optional[datetime.date]:
        try:
            return parse_date_bytes(self.get_field_bytes(key))
        except (ValueError, UnicodeDecodeError):
            return None

    def get_bool(self, key: Key) -> Optional[bool]:
        data = self.get_field_bytes(key)
        if len(data) == 0:
            return None
        try:
            return parse_logical_byte(data[0])
        except ValueError:
            return None

    def to_record(self) -> DBFRecord:
        """Decode the whole record into an owned DBFRecord."""
        return self._reader._decode_record(bytes(self._buffer()))


@dataclass
class DBFStatistics:
    """Summary of a table."""
    table_name: str
    dbf_version: str
    last_update: Optional[datetime.date]
    total_records: int
    active_records: int
    deleted_records: int
    field_count: int
    record_size: int
    header_size: int
    has_memo_file: bool
    memo_file_path: Optional[str]
    encoding: str
    is_loaded: bool

    def __str__(self) -> str:
        lines = [
            f"Table: {self.table_name}",
            f"Version: {self.dbf_version}",
            f"Last Updated: {self.last_update.isoformat() if self.last_update else 'Unknown'}",
            f"Records: {self.total_records:,} total, {self.active_records:,} active, "
            f"{self.deleted_records:,} deleted",
            f"Fields: {self.field_count}",
            f"Record Size: {self.record_size} bytes",
            f"Header Size: {self.header_size} bytes",
            f"Encoding: {self.encoding}",
            f"Memo File: {self.memo_file_path or ('Yes' if self.has_memo_file else 'None')}",
            f"Mode: {'Loaded' if self.is_loaded else 'Streaming'}",
        ]
        return '\n'.join(lines)


class DBFReader:
    """
    Reader for one dBase table.

    Args:
        file: Seekable binary file holding the table
        options: Reader options, defaults to DBFReaderOptions()
        file_path: Path the file was opened from, used to find the memo file
        table_name: Name reported in statistics, defaults to the file name
        memo_stream: Open memo file, overrides the lookup next to file_path
        owns_file: Close ``file`` when the reader is closed

    Raises:
        UnsupportedVersionError: If the version byte is unknown
        MalformedStructureError: If the field table cannot be read
        MissingMemoFileError: If memo fields exist but the memo file does not
    """

    def __init__(self, file: BinaryIO, options: Optional[DBFReaderOptions] = None,
                 file_path: Optional[str] = None, table_name: Optional[str] = None,
                 memo_stream: Optional[BinaryIO] = None, owns_file: bool = True):
        self.options = options or DBFReaderOptions()
        self.file_path = file_path
        self._file = file
        self._owns_file = owns_file
        self._closed = False
        self.memo_file = None

        try:
            self.header = read_dbf_header(file, lowercase_names=self.options.lowercase_field_names)
            self.encoding = resolve_encoding(self.header.language_driver, self.options.encoding)
            self.memo_file = open_memo_file(
                file_path, self.header,
                ignore_missing=self.options.ignore_missing_memo_file,
                validate=self.options.validate_fields,
                memo_stream=memo_stream,
            )
        except Exception:
            if owns_file:
                file.close()
            raise

        if table_name is None:
            table_name = os.path.splitext(os.path.basename(file_path))[0] if file_path else 'stream'
        self.table_name = table_name

        self._field_index = FieldIndex([f.name for f in self.header.fields], self.options.ignore_case)
        parser = self.options.field_parser
        self._custom_parser = parser is not None
        if parser is None:
            parser = FieldParser(self.header.version)
        self._parse: Callable = parser.parse if hasattr(parser, 'parse') else parser

        self._all_records: Optional[List[DBFRecord]] = None
        self._active_records: Optional[List[DBFRecord]] = None
        self._deleted_records: Optional[List[DBFRecord]] = None

        self._scratch = bytearray(self.header.record_size)
        self._scratch_view = memoryview(self._scratch)
        self._view_generation = 0

        logger.debug("Opened %s: %s, %d records, %d fields, encoding %s",
                     self.table_name, self.header.dbf_version.description,
                     self.header.record_count, self.header.field_count, self.encoding)

    # Construction
    @classmethod
    def open(cls, path: str, options: Optional[DBFReaderOptions] = None,
             table_name: Optional[str] = None) -> 'DBFReader':
        """
        Open a table by path.

        Raises:
            DBFNotFoundError: If the file does not exist
        """
        path = os.fspath(path)
        if not os.path.isfile(path):
            raise DBFNotFoundError(path)
        options = options or DBFReaderOptions()
        file = open(path, 'rb', buffering=options.buffer_size)
        return cls(file, options, file_path=path, table_name=table_name)

    @classmethod
    def from_stream(cls, stream: BinaryIO, options: Optional[DBFReaderOptions] = None,
                    memo_stream: Optional[BinaryIO] = None,
                    table_name: Optional[str] = None) -> 'DBFReader':
        """
        Read a table from an already open binary stream.

        Streams that cannot seek are read into memory first. The stream is
        not closed by the reader.
        """
        if not stream.seekable():
            stream = io.BytesIO(stream.read())
        if memo_stream is not None and not memo_stream.seekable():
            memo_stream = io.BytesIO(memo_stream.read())
        return cls(stream, options, table_name=table_name,
                   memo_stream=memo_stream, owns_file=False)

    @classmethod
    async def open_async(cls, path: str, options: Optional[DBFReaderOptions] = None,
                         table_name: Optional[str] = None) -> 'DBFReader':
        """Open a table in a worker thread."""
        return await anyio.to_thread.run_sync(functools.partial(cls.open, path, options, table_name))

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def __repr__(self) -> str:
        mode = 'loaded' if self.is_loaded else 'streaming'
        return (f"<DBFReader {self.table_name} ({self.header.dbf_version.description}, "
                f"{self.header.record_count} records, {mode})>")

    # Properties
    @property
    def fields(self) -> List[DBFColumn]:
        return list(self.header.fields)

    @property
    def field_names(self) -> List[str]:
        return list(self._field_index.names)

    @property
    def record_count(self) -> int:
        """Record count declared in the header."""
        return self.header.record_count

    @property
    def is_loaded(self) -> bool:
        return self._all_records is not None

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def memo_file_path(self) -> Optional[str]:
        return getattr(self.memo_file, 'path', None)

    # Field lookup
    def get_field_index(self, name: str) -> int:
        """Position of a field by name, or -1."""
        return self._field_index.get(name)

    def find_field(self, name: str) -> Optional[DBFColumn]:
        index = self._field_index.get(name)
        return self.header.fields[index] if index >= 0 else None

    def has_field(self, name: str) -> bool:
        return self._field_index.get(name) >= 0

    # Decoding
    def _check_open(self) -> None:
        if self._closed:
            raise DBFStateError("Reader is closed")

    def _iter_raw(self) -> Iterator[bytes]:
        """Yield the bytes of each physical record, deletion flag included."""
        self._check_open()
        header = self.header
        size = header.record_size
        position = header.header_size
        for _ in range(header.record_count):
            self._file.seek(position)
            data = self._file.read(size)
            if not data or data[0] == DBF_EOF_MARKER:
                break
            if len(data) < size:
                logger.debug("Table %s ends with a partial record", self.table_name)
                break
            position += size
            yield data

    def _decode_field(self, field: DBFColumn, data) -> Any:
        if not self._custom_parser:
            return self._parse(field, data, self.memo_file, self.encoding, self.options)
        try:
            return self._parse(field, data, self.memo_file, self.encoding, self.options)
        except FieldParseError:
            raise
        except (ValueError, struct.error) as e:
            return invalid_or_raise(field, data, e, self.options)

    def _decode_record(self, data: bytes) -> DBFRecord:
        view = memoryview(data)
        values = []
        for field in self.header.fields:
            end = field.offset + field.actual_length
            field_data = view[field.offset:end]
            if end > len(view):
                values.append(invalid_or_raise(
                    field, field_data, ValueError("Record is shorter than the field layout"),
                    self.options))
                continue
            values.append(self._decode_field(field, field_data))
        return DBFRecord(self._field_index, values, data[0] == DBF_DELETED_FLAG)

    def _iter_records(self) -> Iterator[DBFRecord]:
        for data in self._iter_raw():
            yield self._decode_record(data)

    def _limit(self, records) -> Iterator[DBFRecord]:
        if self.options.max_records is None:
            return iter(records)
        return itertools.islice(records, self.options.max_records)

    # Enumeration
    @property
    def records(self) -> Iterator[DBFRecord]:
        """Records in file order, without deleted ones unless configured otherwise."""
        self._check_open()
        if self.options.skip_deleted_records:
            if self.is_loaded:
                return self._limit(self._active_records)
            return self._limit(r for r in self._iter_records() if not r.is_deleted)
        return self.all_records

    @property
    def deleted_records(self) -> Iterator[DBFRecord]:
        self._check_open()
        if self.is_loaded:
            return self._limit(self._deleted_records)
        return self._limit(r for r in self._iter_records() if r.is_deleted)

    @property
    def all_records(self) -> Iterator[DBFRecord]:
        """Every physical record, deleted or not."""
        self._check_open()
        if self.is_loaded:
            return self._limit(self._all_records)
        return self._limit(self._iter_records())

    def __iter__(self) -> Iterator[DBFRecord]:
        return self.records

    def iter_views(self, skip_deleted: Optional[bool] = None) -> Iterator[DBFRecordView]:
        """
        Iterate over records without decoding them.

        Each view reads straight from a buffer that the next step
        overwrites.
        """
        self._check_open()
        if skip_deleted is None:
            skip_deleted = self.options.skip_deleted_records
        header = self.header
        size = header.record_size
        position = header.header_size
        limit = self.options.max_records
        produced = 0
        try:
            for _ in range(header.record_count):
                if limit is not None and produced >= limit:
                    break
                self._file.seek(position)
                count = self._file.readinto(self._scratch)
                if not count or self._scratch[0] == DBF_EOF_MARKER or count < size:
                    break
                position += size
                self._view_generation += 1
                if skip_deleted and self._scratch[0] == DBF_DELETED_FLAG:
                    continue
                produced += 1
                yield DBFRecordView(self, self._view_generation)
        finally:
            self._view_generation += 1

    @property
    def count(self) -> int:
        """Number of active records."""
        if self.is_loaded:
            return len(self._active_records)
        return sum(1 for data in self._iter_raw() if data[0] != DBF_DELETED_FLAG)

    @property
    def deleted_count(self) -> int:
        if self.is_loaded:
            return len(self._deleted_records)
        return sum(1 for data in self._iter_raw() if data[0] == DBF_DELETED_FLAG)

    def __len__(self) -> int:
        return self.count

    def __getitem__(self, index: int) -> DBFRecord:
        """
        Record by position among ``records``.

        Raises:
            DBFStateError: If the table has not been loaded
        """
        if not self.is_loaded:
            raise DBFStateError("Random access requires load() to be called first")
        if self.options.skip_deleted_records:
            records = self._active_records
        else:
            records = self._all_records
        if self.options.max_records is not None:
            records = records[:self.options.max_records]
        return records[index]

    # Loading
    def load(self, cancel_check: Optional[Callable[[], None]] = None) -> 'DBFReader':
        """
        Read every record into memory.

        Args:
            cancel_check: Called before each record; raising from it aborts
                the load and leaves the reader streaming

        Returns:
            The reader itself
        """
        if self.is_loaded:
            return self
        self._check_open()
        records = []
        for data in self._iter_raw():
            if cancel_check is not None:
                cancel_check()
            records.append(self._decode_record(data))

        self._active_records = [r for r in records if not r.is_deleted]
        self._deleted_records = [r for r in records if r.is_deleted]
        self._all_records = records
        logger.debug("Loaded %d records (%d deleted) from %s", len(records),
                     len(self._deleted_records), self.table_name)
        return self

    async def load_async(self) -> 'DBFReader':
        """Load the table in a worker thread, stopping early if cancelled."""
        return await anyio.to_thread.run_sync(self.load, anyio.from_thread.check_cancelled)

    def unload(self) -> None:
        """Drop loaded records and go back to streaming."""
        if self._all_records is not None:
            logger.debug("Unloaded %s", self.table_name)
        self._all_records = None
        self._active_records = None
        self._deleted_records = None

    # Statistics
    def get_statistics(self) -> DBFStatistics:
        if self.is_loaded:
            active = len(self._active_records)
            deleted = len(self._deleted_records)
        else:
            active = deleted = 0
            for data in self._iter_raw():
                if data[0] == DBF_DELETED_FLAG:
                    deleted += 1
                else:
                    active += 1

        header = self.header
        return DBFStatistics(
            table_name=self.table_name,
            dbf_version=header.dbf_version.description,
            last_update=header.last_update,
            total_records=active + deleted,
            active_records=active,
            deleted_records=deleted,
            field_count=header.field_count,
            record_size=header.record_size,
            header_size=header.header_size,
            has_memo_file=self.memo_file is not None,
            memo_file_path=self.memo_file_path,
            encoding=self.encoding,
            is_loaded=self.is_loaded,
        )

    # Teardown
    def close(self) -> None:
        """Close the table and its memo file. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.unload()
        if self.memo_file is not None:
            self.memo_file.close()
        if self._owns_file:
            try:
                self._file.close()
            except OSError as e:
                logger.warning("Error closing %s: %s", self.file_path, e)


def dbf_file_open(filename: str, options: Optional[DBFReaderOptions] = None,
                  **overrides) -> DBFReader:
    """
    Open an existing DBF file.

    Args:
        filename: The path to the DBF file (with or without extension)
        options: Reader options
        **overrides: Individual options changed on top of ``options``

    Returns:
        A DBFReader for the file
    """
    if not os.path.splitext(filename)[1]:
        for extension in ('.dbf', '.DBF'):
            if os.path.isfile(filename + extension):
                filename += extension
                break
        else:
            filename += '.dbf'

    if overrides:
        options = (options or DBFReaderOptions()).with_overrides(**overrides)
    return DBFReader.open(filename, options)


def dbf_file_close(dbf: Optional[DBFReader]) -> None:
    """Close a DBF file."""
    if dbf is not None:
        dbf.close()
