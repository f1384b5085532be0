"""
Tests for the dBase III, dBase IV and Visual FoxPro memo file formats.
"""

import io
import os
import shutil
import struct
import tempfile
import unittest

from dbf_errors import FieldParseError, MissingMemoFileError
from dbf_module import DBFVersion
from dbf_options import DBFReaderOptions
from dbf_reader import DBFReader
from field_parser import InvalidValue
from memo_module import (
    BinaryMemo, DBase3MemoFile, DBase4MemoFile, MemoDialect, NullMemoFile, ObjectMemo,
    PictureMemo, TextMemo, VFPMemoFile, find_memo_file, memo_dialect_for
)
from dbf_fixtures import (
    build_dbt3, build_dbt4, build_fpt, build_table, char, memo_ref, write_file
)


class TestDBase3Memo(unittest.TestCase):
    """Test cases for dBase III .DBT files."""

    def test_single_block(self):
        data, blocks = build_dbt3([b'First memo', b'Second memo'])
        memo = DBase3MemoFile(io.BytesIO(data))

        self.assertEqual(memo.get_memo(blocks[0]), b'First memo')
        self.assertEqual(memo.get_memo(blocks[1]), b'Second memo')
        self.assertIsInstance(memo.get_memo(blocks[0]), TextMemo)

    def test_spans_multiple_blocks(self):
        long_text = b'x' * 1500
        data, blocks = build_dbt3([long_text, b'after'])
        memo = DBase3MemoFile(io.BytesIO(data))

        self.assertEqual(blocks, [1, 4])
        self.assertEqual(memo.get_memo(1), long_text)
        self.assertEqual(memo.get_memo(4), b'after')

    def test_embedded_nulls_preserved(self):
        data, blocks = build_dbt3([b'ABC\x00\x00DEF'])
        memo = DBase3MemoFile(io.BytesIO(data))
        self.assertEqual(memo.get_memo(blocks[0]), b'ABC\x00\x00DEF')

    def test_block_zero_is_null(self):
        data, _ = build_dbt3([b'x'])
        self.assertIsNone(DBase3MemoFile(io.BytesIO(data)).get_memo(0))

    def test_block_past_end(self):
        data, _ = build_dbt3([b'x'])
        with self.assertRaises(ValueError):
            DBase3MemoFile(io.BytesIO(data)).get_memo(50)


class TestDBase4Memo(unittest.TestCase):
    """Test cases for dBase IV .DBT files."""

    def test_signature_blocks(self):
        """Test blocks whose length includes the 8-byte block header."""
        data, blocks = build_dbt4([b'Hello dBase IV', b'y' * 700])
        memo = DBase4MemoFile(io.BytesIO(data))

        self.assertEqual(memo.block_size, 512)
        self.assertEqual(memo.get_memo(blocks[0]), b'Hello dBase IV')
        self.assertEqual(memo.get_memo(blocks[1]), b'y' * 700)

    def test_block_size_from_header(self):
        data, blocks = build_dbt4([b'small blocks', b'z' * 200], block_size=64)
        memo = DBase4MemoFile(io.BytesIO(data))

        self.assertEqual(memo.block_size, 64)
        self.assertEqual(memo.get_memo(blocks[1]), b'z' * 200)

    def test_field_terminator_cuts_text(self):
        data, blocks = build_dbt4([b'text\x1Fjunk'])
        memo = DBase4MemoFile(io.BytesIO(data))
        self.assertEqual(memo.get_memo(blocks[0]), b'text')

    def test_type_code_blocks(self):
        """Test blocks holding a type code and the plain payload length."""
        text_data, text_blocks = build_dbt4([b'typed text'], signature=False, memo_type=1)
        binary_data, binary_blocks = build_dbt4([b'\x00\x01\x02'], signature=False, memo_type=2)

        text = DBase4MemoFile(io.BytesIO(text_data)).get_memo(text_blocks[0])
        binary = DBase4MemoFile(io.BytesIO(binary_data)).get_memo(binary_blocks[0])

        self.assertIsInstance(text, TextMemo)
        self.assertEqual(text, b'typed text')
        self.assertIsInstance(binary, BinaryMemo)
        self.assertEqual(binary, b'\x00\x01\x02')

    def test_length_beyond_file(self):
        data, blocks = build_dbt4([b'abc'])
        data = bytearray(data)
        start = blocks[0] * 512
        data[start + 4:start + 8] = struct.pack('<L', 100000)
        with self.assertRaises(ValueError):
            DBase4MemoFile(io.BytesIO(bytes(data))).get_memo(blocks[0])

    def test_bad_block_header(self):
        data, blocks = build_dbt3([b'plain text'])
        strict = DBase4MemoFile(io.BytesIO(data))
        with self.assertRaises(ValueError):
            strict.get_memo(blocks[0])

        relaxed = DBase4MemoFile(io.BytesIO(data), validate=False)
        self.assertEqual(relaxed.get_memo(blocks[0]), b'plain text')


class TestVFPMemo(unittest.TestCase):
    """Test cases for Visual FoxPro .FPT files."""

    def test_payload_kinds(self):
        data, blocks = build_fpt([(1, b'some text'), (0, b'\x89PNG'), (2, b'OLE'), (7, b'?')])
        memo = VFPMemoFile(io.BytesIO(data))

        self.assertEqual(memo.block_size, 64)
        values = [memo.get_memo(block) for block in blocks]
        self.assertIsInstance(values[0], TextMemo)
        self.assertIsInstance(values[1], PictureMemo)
        self.assertIsInstance(values[2], ObjectMemo)
        self.assertIsInstance(values[3], BinaryMemo)
        self.assertEqual(values[0], b'some text')

    def test_exact_length_across_blocks(self):
        """Test that exactly `length` bytes are read regardless of blocks."""
        payload = bytes(range(256)) * 3
        data, blocks = build_fpt([(1, payload), (1, b'next')], block_size=32)
        memo = VFPMemoFile(io.BytesIO(data))

        self.assertEqual(memo.block_size, 32)
        self.assertEqual(memo.get_memo(blocks[0]), payload)
        self.assertEqual(memo.get_memo(blocks[1]), b'next')

    def test_big_endian_header(self):
        data, _ = build_fpt([(1, b'x')], block_size=512)
        memo = VFPMemoFile(io.BytesIO(data))
        self.assertEqual(memo.block_size, 512)
        self.assertEqual(memo.next_free_block, 2)

    def test_default_block_size(self):
        data, blocks = build_fpt([(1, b'x')])
        data = bytearray(data)
        data[6:8] = b'\x00\x00'
        self.assertEqual(VFPMemoFile(io.BytesIO(bytes(data))).block_size, 64)

    def test_truncated_payload(self):
        data, blocks = build_fpt([(1, b'abcdef')])
        with self.assertRaises(ValueError):
            VFPMemoFile(io.BytesIO(data[:-60])).get_memo(blocks[0])


class TestMemoDialects(unittest.TestCase):

    def test_dialect_by_version(self):
        self.assertIs(memo_dialect_for(DBFVersion.DBASE_III_PLUS_MEMO), MemoDialect.DBASE_III)
        self.assertIs(memo_dialect_for(DBFVersion.DBASE_III_PLUS), MemoDialect.DBASE_III)
        self.assertIs(memo_dialect_for(DBFVersion.DBASE_IV_MEMO), MemoDialect.DBASE_IV)
        self.assertIs(memo_dialect_for(DBFVersion.DBASE_V), MemoDialect.DBASE_IV)
        self.assertIs(memo_dialect_for(DBFVersion.VISUAL_FOXPRO), MemoDialect.VISUAL_FOXPRO)
        self.assertIs(memo_dialect_for(DBFVersion.FOXPRO_2_MEMO), MemoDialect.VISUAL_FOXPRO)

    def test_null_memo_file(self):
        memo = NullMemoFile()
        self.assertIsNone(memo.get_memo(5))
        memo.close()
        memo.close()


class TestMemoTables(unittest.TestCase):
    """Test cases for tables with memo fields read through DBFReader."""

    FIELDS = [('TITLE', 'C', 10, 0), ('NOTES', 'M', 10, 0)]

    def setUp(self):
        self.directory = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.directory)

    def write_dbase3(self, name='NOTES.DBF', memo_name='NOTES.DBT'):
        memo_data, blocks = build_dbt3([b'Remember the milk', b'Call Bob'])
        records = [[char('one', 10), memo_ref(blocks[0])],
                   [char('two', 10), memo_ref(blocks[1])],
                   [char('three', 10), memo_ref(0)]]
        path = write_file(self.directory, name, build_table(self.FIELDS, records, version=0x83))
        if memo_name:
            write_file(self.directory, memo_name, memo_data)
        return path

    def test_dbase3_memo_table(self):
        with DBFReader.open(self.write_dbase3()) as reader:
            notes = [record['NOTES'] for record in reader.records]
            self.assertTrue(reader.memo_file_path.endswith('NOTES.DBT'))

        self.assertEqual(notes, ['Remember the milk', 'Call Bob', None])

    def test_memo_lookup_ignores_case(self):
        path = self.write_dbase3(name='Mixed.DBF', memo_name='mixed.dbt')
        memo_path = find_memo_file(path, MemoDialect.DBASE_III)
        self.assertEqual(os.path.basename(memo_path).lower(), 'mixed.dbt')

        with DBFReader.open(path) as reader:
            self.assertEqual(next(reader.records)['NOTES'], 'Remember the milk')

    def test_missing_memo_raises(self):
        path = self.write_dbase3(memo_name=None)
        with self.assertRaises(MissingMemoFileError) as ctx:
            DBFReader.open(path)
        self.assertEqual(ctx.exception.dbf_file_path, path)
        self.assertTrue(ctx.exception.memo_file_path.endswith('NOTES.dbt'))

    def test_missing_memo_ignored(self):
        path = self.write_dbase3(memo_name=None)
        options = DBFReaderOptions(ignore_missing_memo_file=True)

        with self.assertLogs('memo_module', level='WARNING'):
            reader = DBFReader.open(path, options)
        with reader:
            records = list(reader.records)

        self.assertEqual(len(records), 3)
        self.assertEqual([r['NOTES'] for r in records], [None, None, None])
        self.assertEqual([r['TITLE'] for r in records], ['one', 'two', 'three'])

    def test_vfp_memo_table(self):
        memo_data, blocks = build_fpt([(1, b'VFP note'), (0, b'\x89PNG\r\n')])
        fields = [('ID', 'I', 4, 0), ('NOTES', 'M', 4, 0), ('PIC', 'P', 4, 0)]
        records = [[struct.pack('<i', 1), struct.pack('<i', blocks[0]), struct.pack('<i', blocks[1])]]
        path = write_file(self.directory, 'pics.dbf',
                          build_table(fields, records, version=0x30, with_addresses=True,
                                      extra_header=b'\x00' * 263))
        write_file(self.directory, 'pics.fpt', memo_data)

        with DBFReader.open(path) as reader:
            record = next(iter(reader))

        self.assertEqual(record['ID'], 1)
        self.assertEqual(record['NOTES'], 'VFP note')
        self.assertIsInstance(record['PIC'], PictureMemo)

    def test_dbase4_memo_table(self):
        memo_data, blocks = build_dbt4([b'dBase IV text'])
        records = [[char('a', 10), memo_ref(blocks[0])]]
        path = write_file(self.directory, 'four.dbf', build_table(self.FIELDS, records, version=0x8B))
        write_file(self.directory, 'four.dbt', memo_data)

        with DBFReader.open(path) as reader:
            self.assertEqual(next(iter(reader))['NOTES'], 'dBase IV text')

    def test_bad_memo_reference(self):
        memo_data, _ = build_dbt3([b'x'])
        records = [[char('a', 10), memo_ref(99)]]
        path = write_file(self.directory, 'bad.dbf', build_table(self.FIELDS, records, version=0x83))
        write_file(self.directory, 'bad.dbt', memo_data)

        with DBFReader.open(path) as reader:
            with self.assertRaises(FieldParseError):
                list(reader.records)

        with DBFReader.open(path, DBFReaderOptions(validate_fields=False)) as reader:
            record = next(iter(reader))
        self.assertIsInstance(record['NOTES'], InvalidValue)

    def test_memo_from_stream(self):
        memo_data, blocks = build_dbt3([b'streamed'])
        table = build_table(self.FIELDS, [[char('a', 10), memo_ref(blocks[0])]], version=0x83)

        with DBFReader.from_stream(io.BytesIO(table), memo_stream=io.BytesIO(memo_data)) as reader:
            self.assertEqual(next(iter(reader))['NOTES'], 'streamed')

    def test_stream_without_memo(self):
        table = build_table(self.FIELDS, [[char('a', 10), memo_ref(1)]], version=0x83)
        with self.assertRaises(MissingMemoFileError):
            DBFReader.from_stream(io.BytesIO(table))


if __name__ == '__main__':
    unittest.main()
