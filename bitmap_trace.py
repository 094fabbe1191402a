#!/usr/bin/env python3
"""
Bitmap Tracer — Raster Image → Outline SVG → DXF Polylines
==========================================================
Converts a logo or artwork bitmap into vector outlines that can be cut or
engraved next to the label sheets.

Pipeline
--------
  trace_to_svg()       Threshold the image (Pillow + numpy) and trace it with
                         potrace; the curves are written as an SVG path
                         (svgwrite).
  parse_path()         Tokenise SVG path data into typed commands.
  flatten_cubic()      Sample a cubic Bézier at a fixed number of steps.
  to_outline()         Walk the commands into polylines, flipping Y from
                         raster (top-down) to sheet (bottom-up) space.
  svg_to_dxf()         Extract every <path>, flatten it, write LWPOLYLINEs.

The asynchronous entry points (trace_image_to_svg / trace_image_to_dxf)
run the whole trace, including the DXF conversion, in the default
executor and await a single result.
Cancellation is not supported: cancelling the awaiting task does not stop
a trace that has already started, and no timeout is applied here.

Usage
-----
    python bitmap_trace.py logo.png
    python bitmap_trace.py logo.png --threshold 100 --format both -o out
"""

import asyncio
import dataclasses
import io
import os
import re
import sys
import zipfile
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import potrace
import svgwrite
from defusedxml.ElementTree import ParseError, fromstring
from PIL import Image

from drawing_model import DrawingModel, Point, Polyline, PolylineEntity, flip_y, render_dxf
from export_config import (DEFAULT_CONFIG_FILE, DEFAULT_TRACE, ExportError,
                           NothingGeneratedError, TraceError, TraceSettings,
                           load_config)


SUPPORTED_FORMATS = ("PNG", "JPEG", "BMP", "GIF")
TRACE_LAYER = "Trace"
FILL_COLOUR = "#000000"
FALLBACK_CANVAS = 100.0


# ============================================================================
# PATH COMMANDS
# ============================================================================

@dataclass(frozen=True)
class MoveTo:
    x: float
    y: float
    relative: bool = False


@dataclass(frozen=True)
class LineTo:
    x: float
    y: float
    relative: bool = False


@dataclass(frozen=True)
class HorizontalTo:
    x: float
    relative: bool = False


@dataclass(frozen=True)
class VerticalTo:
    y: float
    relative: bool = False


@dataclass(frozen=True)
class CurveTo:
    x1: float
    y1: float
    x2: float
    y2: float
    x: float
    y: float
    relative: bool = False


@dataclass(frozen=True)
class ClosePath:
    pass


PathCommand = Union[MoveTo, LineTo, HorizontalTo, VerticalTo, CurveTo, ClosePath]

# 'e'/'E' are excluded so exponents stay inside the numeric run
_COMMAND_RE = re.compile(r'([A-DF-Za-df-z])([^A-DF-Za-df-z]*)')
_NUMBER_RE = re.compile(r'[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?')

_COMMAND_TYPES = {
    'M': (MoveTo, 2),
    'L': (LineTo, 2),
    'H': (HorizontalTo, 1),
    'V': (VerticalTo, 1),
    'C': (CurveTo, 6),
}


def parse_path(d: str) -> List[PathCommand]:
    """
    Parse SVG path data into a list of commands.

    Upper-case letters are absolute, lower-case relative to the pen.  A
    letter followed by several argument groups yields one command per
    group; an incomplete trailing group is dropped.  Letters other than
    M L H V C Z are ignored.
    """
    commands: List[PathCommand] = []
    for letter, arg_text in _COMMAND_RE.findall(d):
        kind = letter.upper()
        if kind == 'Z':
            commands.append(ClosePath())
            continue
        if kind not in _COMMAND_TYPES:
            continue

        command_type, arity = _COMMAND_TYPES[kind]
        relative = letter.islower()
        args = [float(n) for n in _NUMBER_RE.findall(arg_text)]
        for i in range(0, len(args) - arity + 1, arity):
            commands.append(command_type(*args[i:i + arity], relative=relative))
    return commands


# ============================================================================
# CURVE FLATTENING
# ============================================================================

def flatten_cubic(p0: Point, p1: Point, p2: Point, p3: Point,
                  segments: int = DEFAULT_TRACE.curve_segments) -> List[Point]:
    """
    Sample the cubic Bézier p0→p3 at t = 1/segments, 2/segments, ..., 1.

    p0 itself is not returned; the last point is exactly p3.
    """
    if segments < 1:
        raise ValueError(f"segments must be >= 1, got {segments}")

    points = []
    for i in range(1, segments + 1):
        t = i / segments
        mt = 1 - t
        a = mt * mt * mt
        b = 3 * mt * mt * t
        c = 3 * mt * t * t
        d = t * t * t
        points.append(Point(a * p0.x + b * p1.x + c * p2.x + d * p3.x,
                            a * p0.y + b * p1.y + c * p2.y + d * p3.y))
    return points


# ============================================================================
# OUTLINE ASSEMBLY
# ============================================================================

def to_outline(commands: Sequence[PathCommand], flip: bool = True,
               canvas_height: float = 0.0,
               segments: int = DEFAULT_TRACE.curve_segments) -> List[Polyline]:
    """
    Walk *commands* and return the polylines they draw.

    A move starts a new polyline (the previous one is kept if non-empty);
    close appends the polyline's start point but does not end it.  Curves
    are flattened in place.  With *flip* every emitted point becomes
    ``(x, canvas_height - y)``.
    """
    polylines: List[Polyline] = []
    current: Polyline = []
    pen = Point(0.0, 0.0)
    start = pen

    def emit(pt: Point) -> None:
        current.append(flip_y(pt, canvas_height) if flip else pt)

    for cmd in commands:
        if isinstance(cmd, MoveTo):
            if current:
                polylines.append(current)
                current = []
            pen = pen.offset(cmd.x, cmd.y) if cmd.relative else Point(cmd.x, cmd.y)
            start = pen
            emit(pen)
        elif isinstance(cmd, LineTo):
            pen = pen.offset(cmd.x, cmd.y) if cmd.relative else Point(cmd.x, cmd.y)
            emit(pen)
        elif isinstance(cmd, HorizontalTo):
            pen = Point(pen.x + cmd.x if cmd.relative else cmd.x, pen.y)
            emit(pen)
        elif isinstance(cmd, VerticalTo):
            pen = Point(pen.x, pen.y + cmd.y if cmd.relative else cmd.y)
            emit(pen)
        elif isinstance(cmd, CurveTo):
            if cmd.relative:
                c1 = pen.offset(cmd.x1, cmd.y1)
                c2 = pen.offset(cmd.x2, cmd.y2)
                end = pen.offset(cmd.x, cmd.y)
            else:
                c1, c2, end = Point(cmd.x1, cmd.y1), Point(cmd.x2, cmd.y2), Point(cmd.x, cmd.y)
            for pt in flatten_cubic(pen, c1, c2, end, segments):
                emit(pt)
            pen = end
        elif isinstance(cmd, ClosePath):
            pen = start
            emit(start)

    if current:
        polylines.append(current)
    return polylines


# ============================================================================
# SVG ⇄ OUTLINES
# ============================================================================

def _leading_number(value: Optional[str]) -> Optional[float]:
    match = _NUMBER_RE.match(value.strip()) if value else None
    return float(match.group()) if match else None


def extract_paths_from_svg(svg: str) -> Tuple[List[str], float, float]:
    """
    Return the ``d`` attribute of every <path> plus the canvas size.

    The size comes from viewBox, else width/height, else 100 × 100.
    """
    try:
        root = fromstring(svg)
    except ParseError as e:
        raise TraceError(f"Could not parse SVG: {e}") from e

    paths = [elem.get('d') for elem in root.iter()
             if isinstance(elem.tag, str) and elem.tag.rsplit('}', 1)[-1] == 'path'
             and elem.get('d')]

    width = height = FALLBACK_CANVAS
    view_box = root.get('viewBox')
    if view_box:
        try:
            values = [float(v) for v in re.split(r'[\s,]+', view_box.strip()) if v]
        except ValueError as e:
            raise TraceError(f"Invalid viewBox {view_box!r}: {e}") from e
        if len(values) == 4:
            width = values[2] or FALLBACK_CANVAS
            height = values[3] or FALLBACK_CANVAS
    else:
        width = _leading_number(root.get('width')) or width
        height = _leading_number(root.get('height')) or height

    return paths, width, height


def svg_to_polylines(svg: str,
                     segments: int = DEFAULT_TRACE.curve_segments) -> Dict[str, Polyline]:
    """Flattened, Y-flipped outlines keyed "polyline_<i>" in document order."""
    paths, _, height = extract_paths_from_svg(svg)
    outlines: Dict[str, Polyline] = {}
    for d in paths:
        for points in to_outline(parse_path(d), True, height, segments):
            outlines[f"polyline_{len(outlines)}"] = points
    return outlines


def svg_to_model(svg: str,
                 segments: int = DEFAULT_TRACE.curve_segments) -> DrawingModel:
    _, width, height = extract_paths_from_svg(svg)
    model = DrawingModel(width, height)
    model.add_layer(TRACE_LAYER, "white")
    for points in svg_to_polylines(svg, segments).values():
        model.add(TRACE_LAYER, PolylineEntity(points))
    return model


def svg_to_dxf(svg: str, segments: int = DEFAULT_TRACE.curve_segments) -> str:
    """Convert the paths of *svg* to a DXF of polylines."""
    model = svg_to_model(svg, segments)
    if not model.entities(TRACE_LAYER):
        raise NothingGeneratedError("No outlines found in traced image")
    return render_dxf(model)


# ============================================================================
# TRACER
# ============================================================================

def _xy(pt) -> Tuple[float, float]:
    # potrace bindings hand back either point objects or (x, y) tuples
    if hasattr(pt, 'x'):
        return float(pt.x), float(pt.y)
    return float(pt[0]), float(pt[1])


def _fmt(pt) -> str:
    x, y = _xy(pt)
    return f"{x:.3f},{y:.3f}"


def curves_to_path_data(curves) -> str:
    """Serialise potrace curves as one SVG path (M … L/C … Z per curve)."""
    parts = []
    for curve in curves:
        parts.append(f"M{_fmt(curve.start_point)}")
        for segment in curve.segments:
            if segment.is_corner:
                parts.append(f"L{_fmt(segment.c)} {_fmt(segment.end_point)}")
            else:
                parts.append(f"C{_fmt(segment.c1)} {_fmt(segment.c2)} "
                             f"{_fmt(segment.end_point)}")
        parts.append("Z")
    return " ".join(parts)


def load_bitmap(image_bytes: bytes, threshold: int) -> np.ndarray:
    """
    Decode *image_bytes* and return a boolean mask, True where darker than
    *threshold*.

    Transparent pixels are composited onto white first.
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except OSError as e:
        raise TraceError(f"Could not decode image: {e}") from e

    if image.format not in SUPPORTED_FORMATS:
        raise TraceError(f"Invalid file type: {image.format}. "
                         f"Allowed: {', '.join(SUPPORTED_FORMATS)}")

    if image.mode in ('RGBA', 'LA', 'PA') or 'transparency' in image.info:
        rgba = image.convert('RGBA')
        background = Image.new('RGBA', rgba.size, (255, 255, 255, 255))
        background.alpha_composite(rgba)
        image = background

    gray = np.asarray(image.convert('L'))
    return gray < threshold


def trace_to_svg(image_bytes: bytes, settings: TraceSettings = DEFAULT_TRACE) -> str:
    """Trace *image_bytes* and return an SVG document with one filled path."""
    binary = load_bitmap(image_bytes, settings.threshold)
    height, width = binary.shape

    try:
        traced = potrace.Bitmap(binary).trace(
            turdsize=settings.turdsize,
            turnpolicy=potrace.POTRACE_TURNPOLICY_MINORITY,
            alphamax=settings.alphamax,
            opticurve=settings.opticurve,
            opttolerance=settings.opttolerance,
        )
        path_data = curves_to_path_data(traced.curves)
    except Exception as e:
        raise TraceError(f"Bitmap tracing failed: {e}") from e

    dwg = svgwrite.Drawing(size=(width, height), viewBox=f"0 0 {width} {height}",
                           debug=False)
    if path_data:
        dwg.add(dwg.path(d=path_data, fill=FILL_COLOUR, stroke='none',
                         fill_rule='evenodd'))
    return dwg.tostring()


def _settings_for(threshold: Optional[int], settings: TraceSettings) -> TraceSettings:
    if threshold is None:
        return settings
    return dataclasses.replace(settings, threshold=threshold)


async def trace_image_to_svg(image_bytes: bytes, threshold: Optional[int] = None,
                             settings: TraceSettings = DEFAULT_TRACE) -> str:
    """Trace in the default executor; resolves to the SVG text."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, trace_to_svg, image_bytes,
                                      _settings_for(threshold, settings))


def trace_to_dxf(image_bytes: bytes,
                 settings: TraceSettings = DEFAULT_TRACE) -> Tuple[str, str]:
    """Trace *image_bytes* and convert the outlines; returns ``(dxf, svg)``."""
    svg = trace_to_svg(image_bytes, settings)
    return svg_to_dxf(svg, settings.curve_segments), svg


async def trace_image_to_dxf(image_bytes: bytes, threshold: Optional[int] = None,
                             settings: TraceSettings = DEFAULT_TRACE) -> Tuple[str, str]:
    """Trace and convert in the default executor; resolves to ``(dxf, svg)``."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, trace_to_dxf, image_bytes,
                                      _settings_for(threshold, settings))


# ============================================================================
# CLI INTERFACE
# ============================================================================

def trace_file(image_path: str, output_dir: str = "output",
               fmt: str = "dxf", threshold: Optional[int] = None,
               config_file: str = DEFAULT_CONFIG_FILE) -> str:
    """Trace *image_path* and write .dxf, .svg or a <name>_traced.zip."""
    settings = _settings_for(threshold, TraceSettings.from_config(load_config(config_file)))
    with open(image_path, 'rb') as f:
        image_bytes = f.read()

    base_name = os.path.splitext(os.path.basename(image_path))[0]
    os.makedirs(output_dir, exist_ok=True)
    print(f"  → Tracing {image_path} (threshold {settings.threshold})")

    if fmt == "svg":
        svg = asyncio.run(trace_image_to_svg(image_bytes, settings=settings))
        path = os.path.join(output_dir, f"{base_name}.svg")
        with open(path, 'w', encoding='utf-8') as f:
            f.write(svg)
        return path

    dxf, svg = asyncio.run(trace_image_to_dxf(image_bytes, settings=settings))
    if fmt == "both":
        path = os.path.join(output_dir, f"{base_name}_traced.zip")
        with zipfile.ZipFile(path, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(f"{base_name}.dxf", dxf)
            zf.writestr(f"{base_name}.svg", svg)
        return path

    path = os.path.join(output_dir, f"{base_name}.dxf")
    with open(path, 'w', encoding='utf-8') as f:
        f.write(dxf)
    return path


def main(argv: Optional[Sequence[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        description="Trace a bitmap (PNG/JPEG/BMP/GIF) into DXF or SVG outlines")
    parser.add_argument("image", help="Input image file")
    parser.add_argument("-o", "--output", default="output",
                        help="Output directory (default: output)")
    parser.add_argument("--threshold", type=int,
                        help="Grayscale threshold 0-255 (default from config: 128)")
    parser.add_argument("--format", choices=["dxf", "svg", "both"], default="dxf",
                        help="dxf (default), svg, or both in a ZIP")
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE,
                        help=f"Config file (default: {DEFAULT_CONFIG_FILE})")
    args = parser.parse_args(argv)

    try:
        path = trace_file(args.image, args.output, args.format,
                          args.threshold, args.config)
    except FileNotFoundError:
        print(f"\n❌ Error: File '{args.image}' not found")
        return 1
    except ExportError as e:
        print(f"\n❌ Error: {e}")
        return 1

    print(f"\n📄 {path}")
    print("✅ SUCCESS: Traced image")
    return 0


if __name__ == "__main__":
    sys.exit(main())
