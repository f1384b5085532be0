"""
Conversion of raw field bytes into Python values.

FieldParser dispatches on the field's type code. Any failure inside a
type handler is turned into either a FieldParseError (when validation is
on) or an InvalidValue placeholder, so a bad value never stops a scan of
the table unless the caller asked for that.
"""

import datetime
import struct
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from dbf_errors import FieldParseError
from dbf_module import DBFColumn, FieldType
from dbf_options import DBFReaderOptions
from memo_module import TextMemo

Buffer = Union[bytes, bytearray, memoryview]

PADDING = b' \x00'
NUMERIC_PADDING = b' \x00*'
NULL_LOGICAL = b'? \x00'
TRUE_LOGICAL = b'TtYy'
FALSE_LOGICAL = b'FfNn'

# Julian day number of 0001-01-01 minus one, for date.fromordinal()
JULIAN_DAY_OFFSET = 1721425


@dataclass(frozen=True)
class InvalidValue:
    """Placeholder for a field that could not be decoded."""
    raw_data: bytes
    field: DBFColumn
    error_message: str

    def __str__(self) -> str:
        return f"<invalid {self.field.name}: {self.error_message}>"


# Shared helpers, also used by the zero-copy record view
def trim_padding(data: Buffer, padding: bytes = PADDING) -> bytes:
    return bytes(data).strip(padding)


def is_blank(data: Buffer) -> bool:
    return not bytes(data).strip(PADDING)


def parse_logical_byte(value: int) -> Optional[bool]:
    """
    Decode the first byte of a logical field.

    Raises:
        ValueError: If the byte is not a known logical marker
    """
    if value in TRUE_LOGICAL:
        return True
    if value in FALSE_LOGICAL:
        return False
    if value in NULL_LOGICAL:
        return None
    raise ValueError(f"Invalid logical value: {bytes([value])!r}")


def parse_date_bytes(data: Buffer) -> Optional[datetime.date]:
    """
    Decode an 8-byte YYYYMMDD date.

    Blank fields and all-zero dates are None.

    Raises:
        ValueError: If the text is not a valid date
    """
    raw = bytes(data)
    if not raw.strip(b' \x000'):
        return None
    text = raw.strip(PADDING).decode('ascii')
    if len(text) != 8 or not text.isdigit():
        raise ValueError(f"Invalid date: {text!r}")
    return datetime.date(int(text[0:4]), int(text[4:6]), int(text[6:8]))


def parse_number_text(data: Buffer, decimals: int = 0) -> Union[int, Decimal, None]:
    """
    Decode an ASCII number, returning int when there are no decimals.

    Raises:
        ValueError: If the text is not a number
    """
    text = trim_padding(data, NUMERIC_PADDING).decode('ascii').replace(',', '.')
    if not text or text == '-':
        return None
    if decimals == 0:
        try:
            return int(text)
        except ValueError:
            pass
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid number: {text!r}") from None
    if not value.is_finite():
        raise ValueError(f"Invalid number: {text!r}")
    return value


def parse_memo_index(data: Buffer) -> int:
    """
    Decode a memo block reference.

    Visual FoxPro stores a 4-byte little-endian integer, older dialects
    store the block number as right-aligned ASCII digits.
    """
    if len(data) == 4:
        return struct.unpack('<l', data)[0]
    text = trim_padding(data).decode('ascii')
    if not text:
        return 0
    return int(text)


def julian_to_datetime(days: int, milliseconds: int) -> datetime.datetime:
    day = datetime.datetime.fromordinal(days - JULIAN_DAY_OFFSET)
    return day + datetime.timedelta(milliseconds=milliseconds)


def invalid_or_raise(field: DBFColumn, data: Buffer, error: Exception,
                     options: DBFReaderOptions) -> InvalidValue:
    """
    Apply the validation policy to a failed field.

    Raises:
        FieldParseError: If options.validate_fields is set
    """
    if options.validate_fields:
        raise FieldParseError(field.name, field.raw_type, bytes(data), str(error)) from error
    return InvalidValue(bytes(data), field, str(error))


class FieldParser:
    """
    Default field parser.

    Args:
        version: Version byte of the table, used for dialect specific types
    """

    def __init__(self, version: int = 0):
        self.version = version
        self.is_visual_foxpro = version in (0x30, 0x31, 0x32)
        self._handlers = {
            FieldType.CHARACTER: self.parse_character,
            FieldType.VARCHAR: self.parse_character,
            FieldType.NUMERIC: self.parse_numeric,
            FieldType.FLOAT: self.parse_float,
            FieldType.INTEGER: self.parse_integer,
            FieldType.AUTOINCREMENT: self.parse_integer,
            FieldType.LOGICAL: self.parse_logical,
            FieldType.DATE: self.parse_date,
            FieldType.TIMESTAMP: self.parse_timestamp,
            FieldType.TIMESTAMP_ALT: self.parse_timestamp,
            FieldType.CURRENCY: self.parse_currency,
            FieldType.DOUBLE: self.parse_double,
            FieldType.BINARY: self.parse_binary,
            FieldType.MEMO: self.parse_memo,
            FieldType.GENERAL: self.parse_memo,
            FieldType.PICTURE: self.parse_memo,
            FieldType.FLAGS: self.parse_flags,
        }

    def parse(self, field: DBFColumn, data: Buffer, memo_file, encoding: str,
              options: DBFReaderOptions) -> Any:
        """
        Decode one field value.

        Args:
            field: Field descriptor
            data: The field's bytes from the record
            memo_file: Memo file of the table, or None
            encoding: Text encoding of the table
            options: Reader options

        Returns:
            The decoded value, None for null, or an InvalidValue

        Raises:
            FieldParseError: On bad data when options.validate_fields is set
        """
        if options.raw_mode:
            return bytes(data)
        handler = self._handlers[field.field_type]
        try:
            return handler(field, data, memo_file, encoding, options)
        except (ValueError, struct.error, OverflowError) as e:
            return invalid_or_raise(field, data, e, options)

    # Type handlers
    def parse_character(self, field, data, memo_file, encoding, options):
        text = str(bytes(data).rstrip(PADDING), encoding, options.char_decode_errors)
        if options.trim_strings:
            text = text.lstrip(' \x00')
        return text

    def parse_numeric(self, field, data, memo_file, encoding, options):
        return parse_number_text(data, field.actual_decimals)

    def parse_float(self, field, data, memo_file, encoding, options):
        text = trim_padding(data, NUMERIC_PADDING).decode('ascii').replace(',', '.')
        if not text or text == '-':
            return None
        return float(text)

    def parse_integer(self, field, data, memo_file, encoding, options):
        if len(data) != 4:
            raise ValueError(f"Integer field needs 4 bytes, got {len(data)}")
        return struct.unpack('<i', data)[0]

    def parse_logical(self, field, data, memo_file, encoding, options):
        if len(data) == 0:
            return None
        return parse_logical_byte(data[0])

    def parse_date(self, field, data, memo_file, encoding, options):
        if len(data) != 8:
            raise ValueError(f"Date field needs 8 bytes, got {len(data)}")
        return parse_date_bytes(data)

    def parse_timestamp(self, field, data, memo_file, encoding, options):
        if len(data) != 8:
            raise ValueError(f"Timestamp field needs 8 bytes, got {len(data)}")
        if is_blank(data):
            return None
        days, milliseconds = struct.unpack('<LL', data)
        if days == 0:
            return None
        return julian_to_datetime(days, milliseconds)

    def parse_currency(self, field, data, memo_file, encoding, options):
        if len(data) != 8:
            raise ValueError(f"Currency field needs 8 bytes, got {len(data)}")
        return Decimal(struct.unpack('<q', data)[0]).scaleb(-4)

    def parse_double(self, field, data, memo_file, encoding, options):
        if len(data) != 8:
            raise ValueError(f"Double field needs 8 bytes, got {len(data)}")
        return struct.unpack('<d', data)[0]

    def parse_binary(self, field, data, memo_file, encoding, options):
        if self.is_visual_foxpro and len(data) == 8:
            return struct.unpack('<d', data)[0]
        return self.parse_memo(field, data, memo_file, encoding, options)

    def parse_memo(self, field, data, memo_file, encoding, options):
        index = parse_memo_index(data)
        if index == 0 or memo_file is None:
            return None
        memo = memo_file.get_memo(index)
        if memo is None:
            return None
        if field.field_type is FieldType.MEMO and isinstance(memo, TextMemo):
            text = str(memo, encoding, options.char_decode_errors)
            return text.strip() if options.trim_strings else text
        return memo

    def parse_flags(self, field, data, memo_file, encoding, options):
        return bytes(data)
