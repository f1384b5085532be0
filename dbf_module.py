"""
Header and field descriptor decoding for dBase (.DBF) tables.

Handles the standard 32-byte header used by dBase III and later, FoxPro and
Visual FoxPro, as well as the 8-byte mini header and 16-byte field
descriptors of dBase II tables.
"""

import datetime
import logging
import struct
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import List, Optional, BinaryIO, Union

from codepage_module import CodePage, get_code_page
from dbf_errors import MalformedStructureError, UnsupportedVersionError

logger = logging.getLogger(__name__)


# Constants
DBF_HEADER_SIZE = 32
DBF_FIELD_DESCRIPTOR_SIZE = 32
DBF_MAX_FIELDS = 255
DBF_LEGACY_HEADER_SIZE = 8
DBF_LEGACY_FIELD_DESCRIPTOR_SIZE = 16
DBF_LEGACY_MAX_FIELDS = 128
DBF_LEGACY_MAX_RECORD_SIZE = 4000
DBF_LEGACY_DEFAULT_RECORD_SIZE = 127
DBF_FIELD_TERMINATOR = 0x0D
DBF_EOF_MARKER = 0x1A
DBF_DELETED_FLAG = 0x2A  # '*'
DBF_UNKNOWN_FIELD_LENGTH = 10
DBF_MIN_HEADER_SIZE = DBF_HEADER_SIZE + 1


class DBFVersion(IntEnum):
    """Known values of the version byte, one per dialect."""
    DBASE_II = 0x02
    DBASE_III_PLUS = 0x03
    DBASE_IV = 0x04
    DBASE_V = 0x05
    VISUAL_FOXPRO = 0x30
    VISUAL_FOXPRO_AUTOINCREMENT = 0x31
    VISUAL_FOXPRO_VARCHAR = 0x32
    DBASE_IV_SQL_TABLE = 0x43
    DBASE_IV_SQL_SYSTEM = 0x63
    DBASE_IV_WITH_MEMO_ALT = 0x7B
    DBASE_III_PLUS_MEMO = 0x83
    DBASE_IV_MEMO = 0x8B
    DBASE_IV_SQL_TABLE_MEMO = 0xCB
    HIPER_SIX_MEMO = 0xE5
    FOXPRO_2_MEMO = 0xF5
    FOXBASE = 0xFB

    @property
    def description(self) -> str:
        return _VERSION_DESCRIPTIONS[self]

    @property
    def is_legacy(self) -> bool:
        return self is DBFVersion.DBASE_II

    @property
    def is_visual_foxpro(self) -> bool:
        return self in (DBFVersion.VISUAL_FOXPRO,
                        DBFVersion.VISUAL_FOXPRO_AUTOINCREMENT,
                        DBFVersion.VISUAL_FOXPRO_VARCHAR)

    @property
    def supports_memo_fields(self) -> bool:
        return self in _MEMO_VERSIONS

    @classmethod
    def from_byte(cls, value: int) -> 'DBFVersion':
        """
        Map a version byte to its dialect.

        Raises:
            UnsupportedVersionError: If the byte is not a known dialect
        """
        try:
            return cls(value)
        except ValueError:
            raise UnsupportedVersionError(value) from None


_VERSION_DESCRIPTIONS = {
    DBFVersion.DBASE_II: "dBase II",
    DBFVersion.DBASE_III_PLUS: "dBase III Plus",
    DBFVersion.DBASE_IV: "dBase IV",
    DBFVersion.DBASE_V: "dBase V",
    DBFVersion.VISUAL_FOXPRO: "Visual FoxPro",
    DBFVersion.VISUAL_FOXPRO_AUTOINCREMENT: "Visual FoxPro with AutoIncrement",
    DBFVersion.VISUAL_FOXPRO_VARCHAR: "Visual FoxPro with Varchar/Varbinary",
    DBFVersion.DBASE_IV_SQL_TABLE: "dBase IV SQL table",
    DBFVersion.DBASE_IV_SQL_SYSTEM: "dBase IV SQL system file",
    DBFVersion.DBASE_IV_WITH_MEMO_ALT: "dBase IV with memo",
    DBFVersion.DBASE_III_PLUS_MEMO: "dBase III Plus with memo",
    DBFVersion.DBASE_IV_MEMO: "dBase IV with memo",
    DBFVersion.DBASE_IV_SQL_TABLE_MEMO: "dBase IV SQL table with memo",
    DBFVersion.HIPER_SIX_MEMO: "HiPer-Six with SMT memo",
    DBFVersion.FOXPRO_2_MEMO: "FoxPro 2.x with memo",
    DBFVersion.FOXBASE: "FoxBASE",
}

_MEMO_VERSIONS = frozenset((
    DBFVersion.DBASE_V,
    DBFVersion.VISUAL_FOXPRO,
    DBFVersion.VISUAL_FOXPRO_AUTOINCREMENT,
    DBFVersion.VISUAL_FOXPRO_VARCHAR,
    DBFVersion.DBASE_IV_WITH_MEMO_ALT,
    DBFVersion.DBASE_III_PLUS_MEMO,
    DBFVersion.DBASE_IV_MEMO,
    DBFVersion.DBASE_IV_SQL_TABLE_MEMO,
    DBFVersion.HIPER_SIX_MEMO,
    DBFVersion.FOXPRO_2_MEMO,
))


class FieldType(str, Enum):
    """On-disk field type codes."""
    CHARACTER = 'C'
    DATE = 'D'
    FLOAT = 'F'
    GENERAL = 'G'
    INTEGER = 'I'
    LOGICAL = 'L'
    MEMO = 'M'
    NUMERIC = 'N'
    DOUBLE = 'O'
    PICTURE = 'P'
    TIMESTAMP = 'T'
    CURRENCY = 'Y'
    BINARY = 'B'
    VARCHAR = 'V'
    AUTOINCREMENT = '+'
    TIMESTAMP_ALT = '@'
    FLAGS = '0'

    def __str__(self) -> str:
        return self.value

    @property
    def description(self) -> str:
        return self.name.replace('_', ' ').title()

    @property
    def supports_null(self) -> bool:
        return self not in _NOT_NULLABLE

    @property
    def uses_memo_file(self) -> bool:
        return self in _MEMO_BACKED

    @classmethod
    def from_code(cls, code: Union[int, str]) -> Optional['FieldType']:
        """Look up a type code, returning None for unknown codes."""
        if isinstance(code, int):
            if not 0 < code < 128:
                return None
            code = chr(code)
        try:
            return cls(code)
        except ValueError:
            pass
        try:
            return cls(code.upper())
        except ValueError:
            return None


_MEMO_BACKED = frozenset((FieldType.MEMO, FieldType.GENERAL,
                          FieldType.PICTURE, FieldType.BINARY))

_NOT_NULLABLE = frozenset((FieldType.INTEGER, FieldType.CURRENCY,
                           FieldType.DOUBLE, FieldType.AUTOINCREMENT))


# Data structures
@dataclass
class DBFColumn:
    """Represents a column/field in a DBF file."""
    name: str  # Field name (max 11 chars)
    field_type: FieldType
    length: int  # Length byte as stored on disk
    decimals: int  # Decimal count byte as stored on disk
    offset: int = 0  # offset within record; first field starts at 1
    address: int = 0  # Displacement stored in the descriptor (VFP)
    raw_type: str = ''  # Type code found on disk, differs for unknown types
    work_area_id: int = 0
    set_fields_flag: int = 0
    index_flag: int = 0

    def __post_init__(self):
        if not isinstance(self.field_type, FieldType):
            self.field_type = FieldType(self.field_type)
        if not self.raw_type:
            self.raw_type = str(self.field_type)

    @property
    def actual_length(self) -> int:
        """
        Number of bytes the field occupies in a record.

        Character fields longer than 255 bytes keep the high byte of their
        length in the decimal count.
        """
        if self.field_type is FieldType.CHARACTER:
            return self.length | (self.decimals << 8)
        return self.length

    @property
    def actual_decimals(self) -> int:
        if self.field_type is FieldType.CHARACTER:
            return 0
        return self.decimals

    @property
    def uses_memo_file(self) -> bool:
        return self.field_type.uses_memo_file

    @property
    def supports_null(self) -> bool:
        return self.field_type.supports_null

    @property
    def spec(self) -> str:
        """Field specification string such as 'C(30)' or 'N(10,2)'."""
        text = f"{self.field_type}({self.actual_length}"
        if self.actual_decimals > 0:
            text += f",{self.actual_decimals}"
        return text + ")"


@dataclass
class DBFHeader:
    """Represents the header of a DBF file."""
    version: int = 0  # Version byte, see DBFVersion
    year: int = 0  # Last update year (two digits)
    month: int = 0  # Last update month
    day: int = 0  # Last update day
    record_count: int = 0  # Declared number of records
    header_size: int = 0  # Header size in bytes, records start here
    record_size: int = 0  # Record size in bytes, including deletion flag
    incomplete_transaction: int = 0
    encryption_flag: int = 0
    table_flags: int = 0  # Production MDX flag
    language_driver: int = 0  # dBase IV language driver id
    fields: List[DBFColumn] = None  # Field descriptors
    field_count: int = 0  # Actual number of fields used

    def __post_init__(self):
        if self.fields is None:
            self.fields = []

    @property
    def dbf_version(self) -> DBFVersion:
        return DBFVersion.from_byte(self.version)

    @property
    def is_legacy(self) -> bool:
        return self.dbf_version.is_legacy

    @property
    def is_visual_foxpro(self) -> bool:
        return self.dbf_version.is_visual_foxpro

    @property
    def supports_memo_fields(self) -> bool:
        return self.dbf_version.supports_memo_fields

    @property
    def has_memo_field(self) -> bool:
        return any(field_needs_memo(field, self) for field in self.fields)

    @property
    def has_mdx(self) -> bool:
        return bool(self.table_flags & 0x01)

    @property
    def is_encrypted(self) -> bool:
        return self.encryption_flag != 0

    @property
    def code_page(self) -> CodePage:
        return get_code_page(self.language_driver)

    @property
    def encoding(self) -> str:
        return self.code_page.encoding

    @property
    def declared_field_count(self) -> int:
        """Number of descriptors implied by the declared header length."""
        if self.is_legacy:
            return 0
        return max(0, (self.header_size - DBF_HEADER_SIZE - 1) // DBF_FIELD_DESCRIPTOR_SIZE)

    @property
    def last_update(self) -> Optional[datetime.date]:
        """Last update date, or None when absent or invalid."""
        return decode_header_date(self.year, self.month, self.day)


def field_needs_memo(field: DBFColumn, header: DBFHeader) -> bool:
    """Check whether a field holds memo block references in this table."""
    if field.field_type is FieldType.BINARY and header.is_visual_foxpro and field.actual_length == 8:
        return False
    return field.uses_memo_file


def decode_header_date(year: int, month: int, day: int) -> Optional[datetime.date]:
    """
    Convert the two-digit header date to a date.

    Years below 80 belong to the 2000s, the rest to the 1900s.
    """
    if year == 0 and month == 0 and day == 0:
        return None
    full_year = 2000 + year if year < 80 else 1900 + year
    try:
        return datetime.date(full_year, month, day)
    except ValueError:
        return None


# Header decoding
def read_dbf_header(file: BinaryIO, encoding: Optional[str] = None,
                    lowercase_names: bool = False) -> DBFHeader:
    """
    Read a DBF header and its field descriptors from a file.

    The file is positioned at the start of the field table on return
    only when something goes wrong; callers should seek to
    ``header.header_size`` before reading records.

    Args:
        file: Seekable binary file positioned anywhere
        encoding: Encoding for field names, defaults to the table's code page
        lowercase_names: Convert field names to lower case

    Returns:
        The parsed header with ``fields`` populated and offsets assigned

    Raises:
        UnsupportedVersionError: If the version byte is unknown
        MalformedStructureError: If no field descriptors can be recovered
    """
    file.seek(0)
    buf = file.read(DBF_HEADER_SIZE)
    if not buf:
        raise MalformedStructureError("File is empty, no DBF header found")

    version = DBFVersion.from_byte(buf[0])
    if version.is_legacy:
        header = _decode_legacy_header(buf)
    else:
        header = _decode_standard_header(buf)

    names_encoding = encoding or header.encoding
    if version.is_legacy:
        fields = read_legacy_fields(file, names_encoding)
    else:
        fields = read_standard_fields(file, names_encoding)
        if not fields and header.declared_field_count > 0:
            logger.warning("Field table unreadable, retrying with relaxed validation")
            fields = read_fields_relaxed(file, header.declared_field_count, names_encoding)

    if not fields:
        raise MalformedStructureError("No valid field definitions found")

    if lowercase_names:
        for field in fields:
            field.name = field.name.lower()

    _warn_duplicate_names(fields)

    header.fields = fields
    header.field_count = len(fields)
    _fix_declared_sizes(header)
    assign_field_offsets(header)
    return header


def _decode_legacy_header(buf: bytes) -> DBFHeader:
    if len(buf) < DBF_LEGACY_HEADER_SIZE:
        raise MalformedStructureError(
            f"dBase II header needs {DBF_LEGACY_HEADER_SIZE} bytes, got {len(buf)}")

    header = DBFHeader(version=buf[0])
    header.record_count = buf[1]
    if header.record_count == 0:
        header.record_count = struct.unpack_from("<H", buf, 1)[0]

    record_size = struct.unpack_from("<H", buf, 6)[0]
    if record_size == 0 or record_size > DBF_LEGACY_MAX_RECORD_SIZE:
        record_size = DBF_LEGACY_DEFAULT_RECORD_SIZE
    header.record_size = record_size
    # Unknown until the field table has been read
    header.header_size = DBF_LEGACY_HEADER_SIZE
    return header


def _decode_standard_header(buf: bytes) -> DBFHeader:
    if len(buf) < DBF_HEADER_SIZE:
        raise MalformedStructureError(
            f"DBF header needs {DBF_HEADER_SIZE} bytes, got {len(buf)}")

    header = DBFHeader(version=buf[0])
    header.year = buf[1]
    header.month = buf[2]
    header.day = buf[3]
    header.record_count = struct.unpack_from("<L", buf, 4)[0]
    header.header_size = struct.unpack_from("<H", buf, 8)[0]
    header.record_size = struct.unpack_from("<H", buf, 10)[0]
    header.incomplete_transaction = buf[14]
    header.encryption_flag = buf[15]
    header.table_flags = buf[28]
    header.language_driver = buf[29]
    return header


def _fix_declared_sizes(header: DBFHeader) -> None:
    """Reconcile the declared lengths with the decoded field list."""
    computed_record_size = 1 + sum(field.actual_length for field in header.fields)

    if header.is_legacy:
        header.record_size = computed_record_size
        header.header_size = DBF_LEGACY_HEADER_SIZE + header.field_count * DBF_LEGACY_FIELD_DESCRIPTOR_SIZE
        return

    if header.header_size < DBF_MIN_HEADER_SIZE:
        header.header_size = DBF_HEADER_SIZE + header.field_count * DBF_FIELD_DESCRIPTOR_SIZE + 1
    if header.record_size == 0:
        header.record_size = computed_record_size
    elif header.record_size != computed_record_size:
        logger.warning("Declared record length %d does not match field lengths (%d)",
                       header.record_size, computed_record_size)


def _warn_duplicate_names(fields: List[DBFColumn]) -> None:
    seen = set()
    for field in fields:
        key = field.name.upper()
        if key in seen:
            logger.warning("Duplicate field name '%s'", field.name)
        seen.add(key)


def has_address_layout(header: DBFHeader) -> bool:
    """
    Check whether fields should be located through their address.

    Only Visual FoxPro tables carry addresses, and only when every address
    points inside the record.
    """
    if not header.is_visual_foxpro or not header.fields:
        return False
    addresses = set()
    for field in header.fields:
        if field.address < 1 or field.address + field.actual_length > header.record_size:
            return False
        addresses.add(field.address)
    return len(addresses) == len(header.fields)


def assign_field_offsets(header: DBFHeader) -> None:
    """Compute the position of every field inside a record buffer."""
    if has_address_layout(header):
        for field in header.fields:
            field.offset = field.address
        return

    offset = 1  # First byte is delete flag
    for field in header.fields:
        field.offset = offset
        offset += field.actual_length


# Field descriptor decoding
def _decode_name(raw: bytes, encoding: str) -> str:
    name = raw.split(b'\x00', 1)[0]
    return name.decode(encoding, errors='replace').strip()


def read_standard_fields(file: BinaryIO, encoding: str) -> List[DBFColumn]:
    """
    Read 32-byte field descriptors following the standard header.

    Reading stops at the 0x0D terminator. A descriptor that looks like
    record data (empty name, zero length, NUL or EOF lead byte, short read)
    also ends the table and the file is rewound to its start.
    """
    fields = []
    file.seek(DBF_HEADER_SIZE)
    for i in range(DBF_MAX_FIELDS):
        pos = file.tell()
        buf = file.read(DBF_FIELD_DESCRIPTOR_SIZE)
        if not buf or buf[0] == DBF_FIELD_TERMINATOR:
            break
        if len(buf) < DBF_FIELD_DESCRIPTOR_SIZE or buf[0] in (0x00, DBF_EOF_MARKER) or buf[11] == 0:
            file.seek(pos)
            break

        field = _decode_descriptor(buf, i, encoding)
        if not field.name or field.actual_length == 0:
            file.seek(pos)
            break
        fields.append(field)
    return fields


def _decode_descriptor(buf: bytes, index: int, encoding: str) -> DBFColumn:
    name = _decode_name(buf[0:11], encoding)
    length = buf[16]
    decimals = buf[17]
    field_type = FieldType.from_code(buf[11])
    raw_type = chr(buf[11])

    if field_type is None:
        # Keep the column so later fields stay aligned
        logger.warning("Unknown field type %r for field '%s', reading as character",
                       raw_type, name)
        field_type = FieldType.CHARACTER
        name = name or f"UNKNOWN_FIELD_{index}"
        length = length or DBF_UNKNOWN_FIELD_LENGTH
        decimals = 0

    return DBFColumn(
        name=name,
        field_type=field_type,
        length=length,
        decimals=decimals,
        address=struct.unpack_from("<L", buf, 12)[0],
        raw_type=raw_type,
        work_area_id=buf[20],
        set_fields_flag=buf[23],
        index_flag=buf[31],
    )


def read_fields_relaxed(file: BinaryIO, declared_count: int, encoding: str) -> List[DBFColumn]:
    """
    Second attempt at the field table for damaged headers.

    Names are not required to be clean text and the decimal count never
    contributes to the field length. The declared header length bounds
    how many descriptors are tried.
    """
    fields = []
    file.seek(DBF_HEADER_SIZE)
    for i in range(min(declared_count, DBF_MAX_FIELDS)):
        buf = file.read(DBF_FIELD_DESCRIPTOR_SIZE)
        if len(buf) < DBF_FIELD_DESCRIPTOR_SIZE or buf[0] in (DBF_FIELD_TERMINATOR, DBF_EOF_MARKER):
            break
        if not any(buf):
            break

        length = buf[16]
        field_type = FieldType.from_code(buf[11])
        if field_type is None:
            if buf[11] == 0:
                break
            logger.warning("Unknown field type %r in descriptor %d, reading as character",
                           chr(buf[11]), i)
            field_type = FieldType.CHARACTER
            length = length or DBF_UNKNOWN_FIELD_LENGTH
        if length == 0:
            break
        name = buf[0:11].replace(b'\x00', b'').decode(encoding, errors='replace').strip()
        decimals = buf[17] if field_type in (FieldType.NUMERIC, FieldType.FLOAT) else 0
        fields.append(DBFColumn(
            name=name or f"FIELD_{i + 1}",
            field_type=field_type,
            length=length,
            decimals=decimals,
            address=struct.unpack_from("<L", buf, 12)[0],
            raw_type=chr(buf[11]) if buf[11] else str(field_type),
        ))
    return fields


def _is_printable_name(raw: bytes) -> bool:
    return bool(raw) and all(32 <= b <= 126 for b in raw)


def read_legacy_fields(file: BinaryIO, encoding: str) -> List[DBFColumn]:
    """
    Read dBase II 16-byte field descriptors starting at byte 8.

    dBase II has no reliable terminator, so each descriptor is validated
    and the first one that fails marks the start of record data.
    """
    fields = []
    file.seek(DBF_LEGACY_HEADER_SIZE)
    for _ in range(DBF_LEGACY_MAX_FIELDS):
        pos = file.tell()
        buf = file.read(DBF_LEGACY_FIELD_DESCRIPTOR_SIZE)
        if len(buf) < DBF_LEGACY_FIELD_DESCRIPTOR_SIZE:
            file.seek(pos)
            break

        raw_name = buf[0:11].split(b'\x00', 1)[0]
        field_type = FieldType.from_code(buf[11])
        length = buf[12]
        if not _is_printable_name(raw_name.strip()) or field_type is None or length < 1:
            file.seek(pos)
            break

        fields.append(DBFColumn(
            name=raw_name.decode(encoding, errors='replace').strip(),
            field_type=field_type,
            length=length,
            decimals=buf[13],
        ))
    return fields
