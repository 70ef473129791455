"""
Tests for reading and writing recorded position fixes.
"""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from visit_proof.csv_io import iter_position_fixes, load_position_fixes, write_position_fixes

from .test_common import T0, make_fix


class TestCsvIo(unittest.TestCase):

    def _write(self, tmp: str, text: str) -> Path:
        path = Path(tmp) / "fixes.csv"
        path.write_text(text, encoding="utf-8")
        return path

    def test_load_sorts_and_skips_bad_rows(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = self._write(
                tmp,
                "geoTime,latitude,longitude,horizontalAccuracy\n"
                f"{T0 + 2000},51.1822,8.4872,5.0\n"
                f"{T0},51.1800,8.4800,-1.0\n"
                "oops,51.0,8.0,5.0\n"
                f"{T0 + 1000},51.1810,8.4810,\n",
            )
            with self.assertLogs("visit_proof.csv_io", level="WARNING"):
                fixes, summary = load_position_fixes(path)
        self.assertEqual([f.timestamp_ms for f in fixes], [T0, T0 + 1000, T0 + 2000])
        self.assertEqual((summary.rows_total, summary.rows_parsed, summary.rows_skipped), (4, 3, 1))
        self.assertIsNone(fixes[0].accuracy_m)
        self.assertIsNone(fixes[1].accuracy_m)
        self.assertEqual(fixes[2].accuracy_m, 5.0)

    def test_missing_column_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = self._write(tmp, "geoTime,latitude\n1,51.0\n")
            with self.assertRaises(KeyError):
                list(iter_position_fixes(path))

    def test_write_then_load(self):
        fixes = [make_fix(ts=T0), make_fix(lat=51.19, accuracy_m=None, ts=T0 + 1000)]
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "out" / "fixes.csv"
            write_position_fixes(fixes, path)
            loaded, summary = load_position_fixes(path)
        self.assertEqual(loaded, fixes)
        self.assertEqual(summary.rows_skipped, 0)


if __name__ == "__main__":
    unittest.main()
