#!/usr/bin/env python3
# Copyright (C) 2026  Lesco Design & Mfg. Co., Inc.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""
Test suite for export_config.py
===============================
Run with:
    py -m pytest test_export_config.py -v
"""

import contextlib
import io
import os
import tempfile
import unittest

from export_config import (ExportError, HoleSettings, NoLabelsError,
                           NothingGeneratedError, OutputSettings, SheetConfig,
                           TextSettings, TraceError, TraceSettings, load_config)


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def _load(self, content=None):
        path = os.path.join(self.tmp, 'label_export.conf')
        if content is not None:
            with open(path, 'w', encoding='utf-8') as f:
                f.write(content)
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            cfg = load_config(path)
        return cfg, out.getvalue()

    def test_missing_file_uses_defaults(self):
        cfg, printed = self._load()
        self.assertIn("not found", printed)
        self.assertEqual(SheetConfig.from_config(cfg), SheetConfig())
        self.assertEqual(TextSettings.from_config(cfg), TextSettings())
        self.assertEqual(HoleSettings.from_config(cfg), HoleSettings())
        self.assertEqual(TraceSettings.from_config(cfg), TraceSettings())
        self.assertEqual(OutputSettings.from_config(cfg), OutputSettings())

    def test_all_sections_present(self):
        cfg, _ = self._load()
        for section in ('sheet', 'text', 'holes', 'trace', 'output', 'font'):
            self.assertTrue(cfg.has_section(section))
        self.assertEqual(cfg.get('font', 'path'), '')

    def test_file_overrides_defaults(self):
        cfg, printed = self._load(
            "[sheet]\nwidth = 300\nmargin = 5\n"
            "[trace]\nthreshold = 90\nopticurve = no\n"
            "[output]\nprefix = LBL\nmerge_break_lines = yes\n")
        self.assertIn("Loaded config", printed)
        sheet = SheetConfig.from_config(cfg)
        self.assertEqual((sheet.width, sheet.height, sheet.margin), (300, 300, 5))
        trace = TraceSettings.from_config(cfg)
        self.assertEqual(trace.threshold, 90)
        self.assertFalse(trace.opticurve)
        self.assertEqual(trace.curve_segments, 12)
        self.assertEqual(OutputSettings.from_config(cfg),
                         OutputSettings(prefix="LBL", merge_break_lines=True))

    def test_glyph_ratio_override(self):
        cfg, _ = self._load("[text]\nglyph_ratio = 0.5\n")
        self.assertEqual(TextSettings.from_config(cfg).glyph_ratio, 0.5)
        self.assertEqual(TextSettings.from_config(cfg, glyph_ratio=0.61).glyph_ratio,
                         0.61)


class TestSettings(unittest.TestCase):

    def test_usable_area(self):
        sheet = SheetConfig(100, 50, margin=5)
        self.assertEqual((sheet.usable_width, sheet.usable_height), (90, 40))

    def test_defaults(self):
        self.assertEqual((SheetConfig().width, SheetConfig().height), (600, 300))
        self.assertEqual(TextSettings().glyph_ratio, 0.55)
        self.assertEqual(HoleSettings().default_distance, 5)
        self.assertEqual(OutputSettings().prefix, "MLA")

    def test_settings_are_immutable(self):
        with self.assertRaises(AttributeError):
            SheetConfig().width = 10


class TestErrors(unittest.TestCase):

    def test_hierarchy(self):
        for cls in (NoLabelsError, NothingGeneratedError, TraceError):
            self.assertTrue(issubclass(cls, ExportError))


if __name__ == '__main__':
    unittest.main(verbosity=2)
