"""
Tests for opening and loading tables from async code.
"""

import os
import shutil
import tempfile
import time
import unittest

import anyio

from dbf_errors import DBFNotFoundError, DBFStateError
from dbf_options import DBFReaderOptions
from dbf_reader import DBFReader
from dbf_fixtures import build_people_table, build_table, char, write_file


class TestAsyncReader(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmpdir, ignore_errors=True)
        self.path = write_file(self.tmpdir, 'people.dbf', build_people_table())

    async def test_open_async(self):
        reader = await DBFReader.open_async(self.path)
        with reader:
            self.assertEqual(reader.table_name, 'people')
            self.assertEqual([r['NAME'] for r in reader.records], ['Alice', 'Bob'])

    async def test_open_async_missing(self):
        with self.assertRaises(DBFNotFoundError):
            await DBFReader.open_async(os.path.join(self.tmpdir, 'absent.dbf'))

    async def test_load_async(self):
        with DBFReader.open(self.path) as reader:
            result = await reader.load_async()

            self.assertIs(result, reader)
            self.assertTrue(reader.is_loaded)
            self.assertEqual(reader[1]['NAME'], 'Bob')
            self.assertEqual(reader.deleted_count, 1)

    async def test_cancelled_load_async_stays_streaming(self):
        """Test that cancelling load_async stops between records and publishes nothing."""
        def slow_parser(field, data, memo_file, encoding, options):
            time.sleep(0.001)
            return bytes(data)

        records = [[char(str(i), 6)] for i in range(2000)]
        path = write_file(self.tmpdir, 'big.dbf', build_table([('CODE', 'C', 6, 0)], records))

        with DBFReader.open(path, DBFReaderOptions(field_parser=slow_parser)) as reader:
            with anyio.move_on_after(0.05) as scope:
                await reader.load_async()

            self.assertTrue(scope.cancelled_caught)
            self.assertFalse(reader.is_loaded)
            with self.assertRaises(DBFStateError):
                reader[0]


class TestCancelledLoad(unittest.TestCase):

    def test_cancel_check_aborts_load(self):
        """Test that raising from cancel_check leaves the reader streaming."""
        calls = []

        def cancel_check():
            calls.append(None)
            if len(calls) == 2:
                raise RuntimeError("cancelled")

        tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmpdir, ignore_errors=True)
        path = write_file(tmpdir, 'people.dbf', build_people_table())

        with DBFReader.open(path) as reader:
            with self.assertRaises(RuntimeError):
                reader.load(cancel_check)
            self.assertFalse(reader.is_loaded)
            self.assertEqual(reader.count, 2)


if __name__ == '__main__':
    unittest.main()
