import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch, AsyncMock

import pandas as pd

# Make sure Python can find the package for imports
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from pandasai_mcp import exceptions
from pandasai_mcp.loaders import _load_table_sync, detect_extension, frame_to_records, load_table


class TestLoaders(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def write(self, name: str, text: str) -> Path:
        path = self.tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path

    async def test_loads_two_row_csv(self):
        path = self.write("people.csv", "name,age\nAlice,30\nBob,25\n")

        dataset = await load_table(path)

        self.assertEqual(dataset.source_name, "people.csv")
        self.assertEqual(dataset.row_count, 2)
        self.assertEqual(dataset.column_count, 2)
        self.assertEqual(dataset.rows[0], {"name": "Alice", "age": 30})

    async def test_source_name_decides_format_and_display_name(self):
        path = self.write("0b1c-staged.csv", "a,b\n1,2\n")
        dataset = await load_table(path, source_name="report.csv")
        self.assertEqual(dataset.source_name, "report.csv")

    async def test_missing_values_become_none(self):
        path = self.write("gaps.csv", "a,b\n1,\n,x\n")
        dataset = await load_table(path)
        self.assertIsNone(dataset.rows[0]["b"])
        self.assertIsNone(dataset.rows[1]["a"])

    async def test_header_only_csv_is_empty_dataset(self):
        path = self.write("header.csv", "a,b\n")
        dataset = await load_table(path)
        self.assertEqual(dataset.row_count, 0)
        self.assertEqual(dataset.column_count, 0)

    async def test_loads_first_sheet_of_xlsx(self):
        path = self.tmp_path / "book.xlsx"
        with pd.ExcelWriter(path) as writer:
            pd.DataFrame({"city": ["Oslo", "Lima", "Pune"], "pop": [1, 2, 3]}).to_excel(writer, sheet_name="first", index=False)
            pd.DataFrame({"ignored": [1]}).to_excel(writer, sheet_name="second", index=False)

        dataset = await load_table(path)

        self.assertEqual(dataset.row_count, 3)
        self.assertEqual(dataset.columns, ["city", "pop"])

    async def test_unsupported_extension(self):
        path = self.write("notes.txt", "hello")
        with self.assertRaises(exceptions.UnsupportedFormatError) as ctx:
            await load_table(path)
        self.assertIn("notes.txt", ctx.exception.message)

    async def test_parse_failure_is_prefixed(self):
        path = self.write("broken.xlsx", "this is not a workbook")
        with self.assertRaises(exceptions.DatasetLoadError) as ctx:
            await load_table(path)
        self.assertTrue(ctx.exception.message.startswith("Failed to load file: "))

    async def test_load_uses_to_thread(self):
        path = self.tmp_path / "people.csv"
        with patch('pandasai_mcp.loaders.asyncio.to_thread', new_callable=AsyncMock) as mock_to_thread:
            await load_table(path)
            mock_to_thread.assert_called_once_with(_load_table_sync, path, '.csv', 'people.csv')

    def test_detect_extension_respects_allowed_set(self):
        self.assertEqual(detect_extension("DATA.CSV", {".csv"}), ".csv")
        with self.assertRaises(exceptions.UnsupportedFormatError):
            detect_extension("data.xls", {".csv"})
        with self.assertRaises(exceptions.UnsupportedFormatError):
            detect_extension("data.json", {".json"})

    def test_frame_to_records_keeps_row_order(self):
        df = pd.DataFrame({"n": [3, 1, 2]})
        self.assertEqual([row["n"] for row in frame_to_records(df)], [3, 1, 2])


if __name__ == '__main__':
    unittest.main()
