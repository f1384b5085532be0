"""
Memo file support for dBase tables.

Memo fields store a block number; the text or binary payload lives in a
side file. Three layouts exist:

- dBase III .DBT: 512-byte blocks, payload ends at a 0x1A marker
- dBase IV .DBT: block size in the file header, each memo starts with an
  8-byte block header carrying its length
- Visual FoxPro .FPT: big-endian file and block headers, each memo starts
  with a type code and an exact byte length
"""

import logging
import os
import struct
from enum import Enum
from typing import BinaryIO, Optional

from dbf_errors import MissingMemoFileError
from dbf_module import DBFHeader, DBFVersion

logger = logging.getLogger(__name__)


DBF_MEMO_BLOCK_SIZE = 512
FPT_HEADER_SIZE = 512
FPT_DEFAULT_BLOCK_SIZE = 64
MEMO_EOF_MARKER = 0x1A
MEMO_FIELD_TERMINATOR = 0x1F
DBASE4_BLOCK_SIGNATURE = b'\xff\xff\x08\x00'
DBASE4_BLOCK_HEADER_SIZE = 8

# Block type codes found in FPT block headers and dBase IV+ DBT blocks
MEMO_TYPE_PICTURE = 0
MEMO_TYPE_TEXT = 1
MEMO_TYPE_OBJECT = 2


# Payload kinds
class MemoPayload(bytes):
    """Raw memo contents; subclasses tell what kind of data it is."""


class TextMemo(MemoPayload):
    pass


class BinaryMemo(MemoPayload):
    pass


class PictureMemo(BinaryMemo):
    pass


class ObjectMemo(BinaryMemo):
    pass


def _payload_for_type(memo_type: int, data: bytes) -> MemoPayload:
    if memo_type == MEMO_TYPE_TEXT:
        return TextMemo(data)
    if memo_type == MEMO_TYPE_PICTURE:
        return PictureMemo(data)
    if memo_type == MEMO_TYPE_OBJECT:
        return ObjectMemo(data)
    return BinaryMemo(data)


class MemoDialect(Enum):
    DBASE_III = 'dBase III'
    DBASE_IV = 'dBase IV'
    VISUAL_FOXPRO = 'Visual FoxPro'

    @property
    def extension(self) -> str:
        return '.fpt' if self is MemoDialect.VISUAL_FOXPRO else '.dbt'


def memo_dialect_for(version: DBFVersion) -> MemoDialect:
    """Pick the memo layout used alongside a table version."""
    if version in (DBFVersion.DBASE_II, DBFVersion.DBASE_III_PLUS,
                   DBFVersion.DBASE_III_PLUS_MEMO, DBFVersion.FOXBASE):
        return MemoDialect.DBASE_III
    if version.is_visual_foxpro or version is DBFVersion.FOXPRO_2_MEMO:
        return MemoDialect.VISUAL_FOXPRO
    return MemoDialect.DBASE_IV


# Memo file implementations
class _BlockFile:
    """Open memo file handle plus its block size."""

    def __init__(self, file: BinaryIO, path: Optional[str] = None,
                 block_size: int = DBF_MEMO_BLOCK_SIZE, owns_file: bool = True):
        self.file = file
        self.path = path
        self.block_size = block_size
        self._owns_file = owns_file
        self.file.seek(0, os.SEEK_END)
        self.file_size = self.file.tell()

    @property
    def closed(self) -> bool:
        return self.file is None

    def close(self) -> None:
        if self.file is None:
            return
        file, self.file = self.file, None
        if self._owns_file:
            try:
                file.close()
            except OSError as e:
                logger.warning("Error closing memo file %s: %s", self.path, e)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _seek_block(self, index: int) -> int:
        if self.file is None:
            raise ValueError("Memo file is closed")
        position = index * self.block_size
        if position >= self.file_size:
            raise ValueError(f"Memo block {index} is beyond the end of the memo file")
        self.file.seek(position)
        return position

    def _read_exact(self, length: int) -> bytes:
        data = self.file.read(length)
        if len(data) < length:
            raise ValueError(f"Memo declares {length} bytes but only {len(data)} are available")
        return data

    def _read_until_eof_marker(self) -> bytes:
        chunks = []
        while True:
            block = self.file.read(self.block_size)
            if not block:
                break
            end = block.find(bytes([MEMO_EOF_MARKER]))
            if end >= 0:
                chunks.append(block[:end])
                break
            chunks.append(block)
        return b''.join(chunks)


class DBase3MemoFile(_BlockFile):
    """dBase III .DBT: text runs through 512-byte blocks up to a 0x1A."""

    dialect = MemoDialect.DBASE_III

    def get_memo(self, index: int) -> Optional[MemoPayload]:
        if index <= 0:
            return None
        self._seek_block(index)
        return TextMemo(self._read_until_eof_marker())


class DBase4MemoFile(_BlockFile):
    """
    dBase IV .DBT with a block header in front of every memo.

    Two block headers are in use. Files written by dBase IV start each memo
    with FF FF 08 00 followed by a length that counts the 8 header bytes.
    Other writers put a type code (1 text, 2 binary) followed by the plain
    payload length.
    """

    dialect = MemoDialect.DBASE_IV

    def __init__(self, file: BinaryIO, path: Optional[str] = None,
                 owns_file: bool = True, validate: bool = True):
        file.seek(0)
        header = file.read(DBF_MEMO_BLOCK_SIZE)
        block_size = 0
        if len(header) >= 22:
            block_size = struct.unpack_from("<H", header, 20)[0]
        if block_size == 0 and len(header) >= 6:
            block_size = struct.unpack_from("<H", header, 4)[0]
        super().__init__(file, path, block_size or DBF_MEMO_BLOCK_SIZE, owns_file)
        self.validate = validate

    def get_memo(self, index: int) -> Optional[MemoPayload]:
        if index <= 0:
            return None
        position = self._seek_block(index)
        block_header = self.file.read(DBASE4_BLOCK_HEADER_SIZE)
        if len(block_header) < DBASE4_BLOCK_HEADER_SIZE:
            raise ValueError(f"Memo block {index} is truncated")

        memo_type, length = struct.unpack("<LL", block_header)
        if block_header[:4] == DBASE4_BLOCK_SIGNATURE:
            length -= DBASE4_BLOCK_HEADER_SIZE
            if length < 0:
                raise ValueError(f"Memo block {index} declares a negative length")
            data = self._read_exact(length)
            end = data.find(bytes([MEMO_FIELD_TERMINATOR]))
            if end >= 0:
                data = data[:end]
            return TextMemo(data)

        if memo_type in (MEMO_TYPE_TEXT, MEMO_TYPE_OBJECT):
            data = self._read_exact(length)
            if memo_type == MEMO_TYPE_TEXT:
                return TextMemo(data)
            return BinaryMemo(data)

        if self.validate:
            raise ValueError(f"Memo block {index} has an invalid block header")
        # Some writers use dBase III style blocks in a dBase IV table
        self.file.seek(position)
        return TextMemo(self._read_until_eof_marker())


class VFPMemoFile(_BlockFile):
    """Visual FoxPro .FPT; all header integers are big-endian."""

    dialect = MemoDialect.VISUAL_FOXPRO

    def __init__(self, file: BinaryIO, path: Optional[str] = None,
                 owns_file: bool = True):
        file.seek(0)
        header = file.read(FPT_HEADER_SIZE)
        block_size = 0
        if len(header) >= 8:
            self.next_free_block = struct.unpack_from(">L", header, 0)[0]
            block_size = struct.unpack_from(">H", header, 6)[0]
        else:
            self.next_free_block = 0
        super().__init__(file, path, block_size or FPT_DEFAULT_BLOCK_SIZE, owns_file)

    def get_memo(self, index: int) -> Optional[MemoPayload]:
        if index <= 0:
            return None
        self._seek_block(index)
        block_header = self.file.read(8)
        if len(block_header) < 8:
            raise ValueError(f"Memo block {index} is truncated")
        memo_type, length = struct.unpack(">LL", block_header)
        return _payload_for_type(memo_type, self._read_exact(length))


class NullMemoFile:
    """Stand-in used when a missing memo file is ignored."""

    path = None
    dialect = None

    @property
    def closed(self) -> bool:
        return False

    def get_memo(self, index: int) -> Optional[MemoPayload]:
        return None

    def close(self) -> None:
        pass


# Locating and opening
def find_memo_file(dbf_path: str, dialect: MemoDialect) -> Optional[str]:
    """
    Find the memo file next to a table.

    The table's extension is replaced by the dialect's memo extension. The
    lookup ignores case so that FOO.DBF finds foo.dbt on case-sensitive
    file systems.

    Returns:
        The memo file path, or None if there is none
    """
    base, _ = os.path.splitext(dbf_path)
    for extension in (dialect.extension, dialect.extension.upper()):
        candidate = base + extension
        if os.path.isfile(candidate):
            return candidate

    directory = os.path.dirname(base) or '.'
    wanted = (os.path.basename(base) + dialect.extension).lower()
    try:
        entries = os.listdir(directory)
    except OSError:
        return None
    for entry in entries:
        if entry.lower() == wanted:
            return os.path.join(os.path.dirname(base), entry)
    return None


def expected_memo_path(dbf_path: str, dialect: MemoDialect) -> str:
    return os.path.splitext(dbf_path)[0] + dialect.extension


def create_memo_file(dialect: MemoDialect, file: BinaryIO, path: Optional[str] = None,
                     owns_file: bool = True, validate: bool = True):
    """Wrap an open memo file in the reader for its dialect."""
    if dialect is MemoDialect.VISUAL_FOXPRO:
        return VFPMemoFile(file, path, owns_file)
    if dialect is MemoDialect.DBASE_IV:
        return DBase4MemoFile(file, path, owns_file, validate)
    return DBase3MemoFile(file, path, DBF_MEMO_BLOCK_SIZE, owns_file)


def open_memo_file(dbf_path: Optional[str], header: DBFHeader,
                   ignore_missing: bool = False, validate: bool = True,
                   memo_stream: Optional[BinaryIO] = None):
    """
    Open the memo file belonging to a table.

    Args:
        dbf_path: Path of the table, None when it was opened from a stream
        header: The table header
        ignore_missing: Return a NullMemoFile instead of raising when absent
        validate: Reject dBase IV memo blocks with unknown block headers
        memo_stream: Already open memo file to use instead of looking one up

    Returns:
        A memo file object, or None if the table has no memo fields

    Raises:
        MissingMemoFileError: If the memo file is needed but absent
    """
    if not header.has_memo_field:
        return None

    dialect = memo_dialect_for(header.dbf_version)
    if memo_stream is not None:
        return create_memo_file(dialect, memo_stream, None, owns_file=False, validate=validate)

    memo_path = find_memo_file(dbf_path, dialect) if dbf_path else None
    if memo_path is None:
        expected = expected_memo_path(dbf_path, dialect) if dbf_path else None
        if ignore_missing:
            logger.warning("Memo file %s not found, memo fields will read as None",
                           expected or '<stream>')
            return NullMemoFile()
        raise MissingMemoFileError(dbf_path, expected)

    logger.debug("Opening %s memo file %s", dialect.value, memo_path)
    file = open(memo_path, 'rb')
    try:
        return create_memo_file(dialect, file, memo_path, owns_file=True, validate=validate)
    except Exception:
        file.close()
        raise
