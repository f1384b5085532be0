"""
Test file for DBF language driver handling.
This checks the code page lookup and that text fields are decoded with it.
"""

import io
import unittest

from codepage_module import (
    DEFAULT_ENCODING, get_code_page, get_encoding, is_known_language_driver, resolve_encoding
)
from dbf_options import DBFReaderOptions
from dbf_reader import DBFReader
from dbf_fixtures import build_table, char


class TestCodePageLookup(unittest.TestCase):
    """Test cases for mapping language driver ids to codecs."""

    def test_known_drivers(self):
        """Test a few common language drivers."""
        self.assertEqual(get_encoding(0x01), 'cp437')
        self.assertEqual(get_encoding(0x02), 'cp850')
        self.assertEqual(get_encoding(0x03), 'cp1252')
        self.assertEqual(get_encoding(0x57), 'cp1252')
        self.assertEqual(get_encoding(0xC9), 'cp1251')
        self.assertEqual(get_encoding(0x7B), 'shift_jis')

    def test_no_driver_is_ascii(self):
        """Test that dBase III tables (driver 0) decode as ASCII."""
        self.assertEqual(get_encoding(0x00), DEFAULT_ENCODING)

    def test_unknown_driver(self):
        """Test that unknown ids fall back to ASCII with a readable description."""
        page = get_code_page(0xEE)

        self.assertEqual(page.code, 0xEE)
        self.assertEqual(page.encoding, DEFAULT_ENCODING)
        self.assertEqual(page.description, 'Unknown (0xEE)')
        self.assertFalse(is_known_language_driver(0xEE))
        self.assertTrue(is_known_language_driver(0x57))

    def test_override(self):
        """Test that an explicit encoding wins and is normalized."""
        self.assertEqual(resolve_encoding(0x01, 'latin-1'), 'iso8859-1')
        self.assertEqual(resolve_encoding(0x01, None), 'cp437')

    def test_bad_override(self):
        with self.assertRaises(LookupError):
            resolve_encoding(0x01, 'no-such-codec')


class TestLanguageDriverDecoding(unittest.TestCase):
    """Test cases for text decoding driven by the header."""

    FIELDS = [('CITY', 'C', 12, 0)]

    def read_city(self, language_driver, raw, options=None):
        data = build_table(self.FIELDS, [[raw.ljust(12, b' ')]], version=0x04,
                           language_driver=language_driver)
        with DBFReader.from_stream(io.BytesIO(data), options) as reader:
            return reader.encoding, next(reader.records)['CITY']

    def test_dos_code_page(self):
        encoding, city = self.read_city(0x02, 'Zürich'.encode('cp850'))
        self.assertEqual(encoding, 'cp850')
        self.assertEqual(city, 'Zürich')

    def test_windows_code_page(self):
        encoding, city = self.read_city(0xC9, 'Москва'.encode('cp1251'))
        self.assertEqual(encoding, 'cp1251')
        self.assertEqual(city, 'Москва')

    def test_encoding_option_overrides_header(self):
        options = DBFReaderOptions(encoding='cp1252')
        encoding, city = self.read_city(0x02, 'Málaga'.encode('cp1252'), options)
        self.assertEqual(encoding, 'cp1252')
        self.assertEqual(city, 'Málaga')

    def test_header_reports_code_page(self):
        data = build_table(self.FIELDS, [[char('Oslo', 12)]], version=0x04, language_driver=0x66)
        with DBFReader.from_stream(io.BytesIO(data)) as reader:
            self.assertEqual(reader.header.code_page.description, 'Nordic MS-DOS')
            self.assertEqual(reader.header.encoding, 'cp865')


if __name__ == '__main__':
    unittest.main()
