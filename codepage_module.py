"""
Language driver to text encoding lookup for dBase tables.

Byte 29 of a dBase IV (and later) header holds a language driver id. This
module maps that id onto a Python codec name plus a human readable
description of the code page.
"""

import codecs
from typing import Dict, NamedTuple, Optional


class CodePage(NamedTuple):
    """A resolved code page."""
    code: int  # Language driver byte
    encoding: str  # Python codec name
    description: str


DEFAULT_ENCODING = 'ascii'

# Language driver id -> (codec, description)
_CODE_PAGES: Dict[int, tuple] = {
    0x00: ('ascii', 'No code page (plain ASCII)'),
    0x01: ('cp437', 'DOS USA'),
    0x02: ('cp850', 'DOS Multilingual'),
    0x03: ('cp1252', 'Windows ANSI'),
    0x04: ('mac_roman', 'Standard Macintosh'),
    0x08: ('cp865', 'Danish OEM'),
    0x09: ('cp437', 'Dutch OEM'),
    0x0A: ('cp850', 'Dutch OEM (secondary)'),
    0x0B: ('cp437', 'Finnish OEM'),
    0x0D: ('cp437', 'French OEM'),
    0x0E: ('cp850', 'French OEM (secondary)'),
    0x0F: ('cp437', 'German OEM'),
    0x10: ('cp850', 'German OEM (secondary)'),
    0x11: ('cp437', 'Italian OEM'),
    0x12: ('cp850', 'Italian OEM (secondary)'),
    0x13: ('shift_jis', 'Japanese Shift-JIS'),
    0x14: ('cp850', 'Spanish OEM (secondary)'),
    0x15: ('cp437', 'Swedish OEM'),
    0x16: ('cp850', 'Swedish OEM (secondary)'),
    0x17: ('cp865', 'Norwegian OEM'),
    0x18: ('cp437', 'Spanish OEM'),
    0x19: ('cp437', 'English OEM (Britain)'),
    0x1A: ('cp850', 'English OEM (Britain, secondary)'),
    0x1B: ('cp437', 'English OEM (US)'),
    0x1C: ('cp863', 'French OEM (Canada)'),
    0x1D: ('cp850', 'French OEM (secondary)'),
    0x1F: ('cp852', 'Czech OEM'),
    0x22: ('cp852', 'Hungarian OEM'),
    0x23: ('cp852', 'Polish OEM'),
    0x24: ('cp860', 'Portuguese OEM'),
    0x25: ('cp850', 'Portuguese OEM (secondary)'),
    0x26: ('cp866', 'Russian OEM'),
    0x37: ('cp850', 'English OEM (US, secondary)'),
    0x40: ('cp852', 'Romanian OEM'),
    0x4D: ('gb2312', 'Chinese GBK (PRC)'),
    0x4E: ('euc_kr', 'Korean (ANSI/OEM)'),
    0x4F: ('big5', 'Chinese Big5 (Taiwan)'),
    0x50: ('cp874', 'Thai (ANSI/OEM)'),
    0x57: ('cp1252', 'ANSI'),
    0x58: ('cp1252', 'Western European ANSI'),
    0x59: ('cp1252', 'Spanish ANSI'),
    0x64: ('cp852', 'Eastern European MS-DOS'),
    0x65: ('cp866', 'Russian MS-DOS'),
    0x66: ('cp865', 'Nordic MS-DOS'),
    0x67: ('cp861', 'Icelandic MS-DOS'),
    0x6A: ('cp737', 'Greek MS-DOS (437G)'),
    0x6B: ('cp857', 'Turkish MS-DOS'),
    0x78: ('big5', 'Chinese (Hong Kong SAR, Taiwan) Windows'),
    0x79: ('euc_kr', 'Korean Windows'),
    0x7A: ('gb2312', 'Chinese (PRC, Singapore) Windows'),
    0x7B: ('shift_jis', 'Japanese Windows'),
    0x7C: ('cp874', 'Thai Windows'),
    0x7D: ('cp1255', 'Hebrew Windows'),
    0x7E: ('cp1256', 'Arabic Windows'),
    0x96: ('mac_cyrillic', 'Russian Macintosh'),
    0x97: ('mac_latin2', 'Macintosh EE'),
    0x98: ('mac_greek', 'Greek Macintosh'),
    0xC8: ('cp1250', 'Eastern European Windows'),
    0xC9: ('cp1251', 'Russian Windows'),
    0xCA: ('cp1254', 'Turkish Windows'),
    0xCB: ('cp1253', 'Greek Windows'),
}


def get_code_page(language_driver: int) -> CodePage:
    """
    Resolve a language driver id to a code page.

    Unknown ids fall back to plain ASCII so that tables written by
    tools which leave garbage in byte 29 can still be opened.

    Args:
        language_driver: The language driver byte from the header

    Returns:
        The matching CodePage
    """
    entry = _CODE_PAGES.get(language_driver)
    if entry is None:
        return CodePage(language_driver, DEFAULT_ENCODING,
                        f"Unknown (0x{language_driver:02X})")
    return CodePage(language_driver, entry[0], entry[1])


def get_encoding(language_driver: int) -> str:
    """Return the Python codec name for a language driver id."""
    return get_code_page(language_driver).encoding


def is_known_language_driver(language_driver: int) -> bool:
    return language_driver in _CODE_PAGES


def resolve_encoding(language_driver: int, override: Optional[str] = None) -> str:
    """
    Pick the encoding used to decode text in a table.

    Args:
        language_driver: The language driver byte from the header
        override: Encoding requested by the caller, if any

    Returns:
        A normalized codec name

    Raises:
        LookupError: If the override names no known codec
    """
    if override:
        return codecs.lookup(override).name
    return get_encoding(language_driver)
