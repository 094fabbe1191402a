"""
Configuration and error types shared by the label exporter and the tracer.

Settings are read from an INI file (``label_export.conf`` by default) with
``configparser`` and turned into small frozen value objects that are passed
explicitly into every packing, layout and tracing call.  Nothing here is
mutated after start-up.

Config file sections
--------------------
    [sheet]   width, height, margin, gap          (mm)
    [text]    glyph_ratio, padding, line_spacing, min_height, default_size
    [holes]   default_distance, default_square    (mm)
    [trace]   threshold, curve_segments, turdsize, alphamax, opticurve,
              opttolerance
    [output]  prefix, merge_break_lines
    [font]    path  (optional TrueType file used to calibrate glyph_ratio)
"""

import configparser
import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_CONFIG_FILE = "label_export.conf"

_DEFAULTS = {
    # sheet
    'width': '600', 'height': '300', 'margin': '0', 'gap': '0',
    # text
    'glyph_ratio': '0.55', 'padding': '2', 'line_spacing': '1',
    'min_height': '0.5', 'default_size': '2',
    # holes
    'default_distance': '5', 'default_square': '3',
    # trace
    'threshold': '128', 'curve_segments': '12', 'turdsize': '2',
    'alphamax': '1.0', 'opticurve': 'yes', 'opttolerance': '0.2',
    # output
    'prefix': 'MLA', 'merge_break_lines': 'no',
    # font
    'path': '',
}

_SECTIONS = ('sheet', 'text', 'holes', 'trace', 'output', 'font')


# ============================================================================
# ERRORS
# ============================================================================

class ExportError(Exception):
    """Base class for every failure surfaced to a caller of an export."""


class NoLabelsError(ExportError):
    """The request carried no label setups at all."""


class NothingGeneratedError(ExportError):
    """Packing/tracing finished but produced no output files."""


class TraceError(ExportError):
    """The bitmap tracer failed or returned output that could not be parsed."""


# ============================================================================
# CONFIG FILE
# ============================================================================

def load_config(path: str = DEFAULT_CONFIG_FILE) -> configparser.ConfigParser:
    """
    Load *path* on top of the built-in defaults.

    A missing file is not an error: a notice is printed and the defaults
    are returned.  All known sections exist in the result so that callers
    can use ``cfg.get(section, key)`` without guarding.
    """
    cfg = configparser.ConfigParser(defaults=_DEFAULTS)
    if os.path.exists(path):
        cfg.read(path, encoding='utf-8')
        print(f"  → Loaded config: {path}")
    else:
        print(f"  → Config file {path!r} not found, using built-in defaults")
    for section in _SECTIONS:
        if not cfg.has_section(section):
            cfg.add_section(section)
    return cfg


@dataclass(frozen=True)
class SheetConfig:
    """Fixed material sheet size in mm, with outer margin and label gap."""

    width: float = 600.0
    height: float = 300.0
    margin: float = 0.0
    gap: float = 0.0

    @property
    def usable_width(self) -> float:
        return self.width - 2 * self.margin

    @property
    def usable_height(self) -> float:
        return self.height - 2 * self.margin

    @classmethod
    def from_config(cls, cfg: configparser.ConfigParser) -> "SheetConfig":
        return cls(width=cfg.getfloat('sheet', 'width'),
                   height=cfg.getfloat('sheet', 'height'),
                   margin=cfg.getfloat('sheet', 'margin'),
                   gap=cfg.getfloat('sheet', 'gap'))


@dataclass(frozen=True)
class TextSettings:
    """
    Parameters of the text-fit heuristic.

    glyph_ratio  : Average glyph advance as a fraction of text height.
    padding      : Horizontal clearance kept on each side of a line (mm).
    line_spacing : Vertical gap between stacked lines (mm).
    min_height   : Smallest height a line may be shrunk to (mm).
    default_size : Height used for lines that do not request one (mm).
    """

    glyph_ratio: float = 0.55
    padding: float = 2.0
    line_spacing: float = 1.0
    min_height: float = 0.5
    default_size: float = 2.0

    @classmethod
    def from_config(cls, cfg: configparser.ConfigParser,
                    glyph_ratio: Optional[float] = None) -> "TextSettings":
        return cls(glyph_ratio=(glyph_ratio if glyph_ratio is not None
                                else cfg.getfloat('text', 'glyph_ratio')),
                   padding=cfg.getfloat('text', 'padding'),
                   line_spacing=cfg.getfloat('text', 'line_spacing'),
                   min_height=cfg.getfloat('text', 'min_height'),
                   default_size=cfg.getfloat('text', 'default_size'))


@dataclass(frozen=True)
class HoleSettings:
    default_distance: float = 5.0
    default_square: float = 3.0

    @classmethod
    def from_config(cls, cfg: configparser.ConfigParser) -> "HoleSettings":
        return cls(default_distance=cfg.getfloat('holes', 'default_distance'),
                   default_square=cfg.getfloat('holes', 'default_square'))


@dataclass(frozen=True)
class TraceSettings:
    """
    Tracer parameters.  Only *threshold* is exposed per request; the rest
    are passed through to potrace unchanged.
    """

    threshold: int = 128
    curve_segments: int = 12
    turdsize: int = 2
    alphamax: float = 1.0
    opticurve: bool = True
    opttolerance: float = 0.2

    @classmethod
    def from_config(cls, cfg: configparser.ConfigParser) -> "TraceSettings":
        return cls(threshold=cfg.getint('trace', 'threshold'),
                   curve_segments=cfg.getint('trace', 'curve_segments'),
                   turdsize=cfg.getint('trace', 'turdsize'),
                   alphamax=cfg.getfloat('trace', 'alphamax'),
                   opticurve=cfg.getboolean('trace', 'opticurve'),
                   opttolerance=cfg.getfloat('trace', 'opttolerance'))


@dataclass(frozen=True)
class OutputSettings:
    prefix: str = "MLA"
    merge_break_lines: bool = False

    @classmethod
    def from_config(cls, cfg: configparser.ConfigParser) -> "OutputSettings":
        return cls(prefix=cfg.get('output', 'prefix'),
                   merge_break_lines=cfg.getboolean('output', 'merge_break_lines'))


DEFAULT_SHEET = SheetConfig()
DEFAULT_TEXT = TextSettings()
DEFAULT_HOLES = HoleSettings()
DEFAULT_TRACE = TraceSettings()
DEFAULT_OUTPUT = OutputSettings()
