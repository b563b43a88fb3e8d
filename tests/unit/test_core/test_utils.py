# SPDX-License-Identifier: LGPL-3.0-or-later
import tempfile
import unittest
from pathlib import Path

from snap2vm.core.utils import U


class TestArraySafeName(unittest.TestCase):
    def test_keeps_valid_name(self):
        self.assertEqual(U.array_safe_name("dr-vol-sql01-20260215-020000"), "dr-vol-sql01-20260215-020000")

    def test_replaces_invalid_characters(self):
        self.assertEqual(U.array_safe_name("dr-vol_sql01:2026.02"), "dr-vol-sql01-2026-02")

    def test_collapses_and_strips_dashes(self):
        self.assertEqual(U.array_safe_name("--a//b--"), "a-b")

    def test_empty_falls_back(self):
        self.assertEqual(U.array_safe_name("///"), "vol")

    def test_truncates(self):
        name = U.array_safe_name("x" * 100)
        self.assertEqual(len(name), 63)


class TestUtilsMisc(unittest.TestCase):
    def test_ensure_dir_creates_directory(self):
        with tempfile.TemporaryDirectory() as td:
            new_dir = Path(td) / "reports" / "nested"

            U.ensure_dir(new_dir)

            self.assertTrue(new_dir.is_dir())

    def test_human_bytes(self):
        self.assertEqual(U.human_bytes(None), "unknown")
        self.assertEqual(U.human_bytes(512), "512 B")
        self.assertEqual(U.human_bytes(50 * 1024 ** 3), "50.00 GiB")

    def test_json_dump_sorted(self):
        self.assertEqual(U.json_dump({"b": 1, "a": 2}), '{\n  "a": 2,\n  "b": 1\n}')


if __name__ == "__main__":
    unittest.main()
