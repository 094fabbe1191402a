#!/usr/bin/env python3
"""
Label Sheet Exporter — Shelf Packing + DXF / PDF Output
=======================================================
Generates cut/engrave DXF files and print-ready PDF proofs for batches of
engraved plastic labels.

Architecture
------------
  load_label_setups()  Read label setups from a JSON request document.
  parse_csv()          Read label setups from a delimited CSV file.
  ShelfPacker          Deterministic shelf packing onto fixed-size sheets,
                         one sheet run per material group.
  fit_text_height()    Heuristic text-fit sizing (no font metrics).
  plan_holes()         Perforation placement rules for 0/1/2/4/N holes.
  SheetDrawing         Convert a packed Sheet into a layered DrawingModel:
                         Cutting — red   sheet border
                         Break   — cyan  outline of every label
                         Holes   — red   circle / square perforations
                         TEXT    — blue  fitted, centred text lines
  PDFGenerator         Render a DrawingModel as a one-page PDF proof.
  export_labels()      Pack once, emit DXF and/or PDF files per sheet
                         (pack_labels() then render_runs()).

Usage
-----
    python label_export.py labels.json
    python label_export.py labels.csv -o output --format dxf
    python label_export.py labels.json --width 300 --height 200 --zip

Output filenames
----------------
    "MLA <text> on <background> <thickness>mm[ Non AD] <NN>.dxf|.pdf"

Dependencies
------------
    ezdxf, reportlab, fonttools (optional glyph-ratio calibration)
"""

import csv
import io
import json
import os
import string
import sys
import zipfile
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from fontTools.ttLib import TTFont
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from drawing_model import (Circle, DrawingModel, LineSegment, Point,
                           PolylineEntity, Rect, TextRun,
                           merge_collinear_lines, render_dxf)
from export_config import (DEFAULT_CONFIG_FILE, DEFAULT_HOLES, DEFAULT_OUTPUT,
                           DEFAULT_SHEET, DEFAULT_TEXT, ExportError, HoleSettings,
                           NoLabelsError, NothingGeneratedError, OutputSettings,
                           SheetConfig, TextSettings, load_config)


NON_ADHESIVE_STYLE = "Non Adhesive"
NON_ADHESIVE_SUFFIX = " Non AD"

SIZE_CAPTION_HEIGHT = 1.5   # mm
SIZE_CAPTION_OFFSET = 1.0   # mm above the label bottom edge

COLOUR_TABLE: Dict[str, Tuple[float, float, float]] = {
    'white': (1, 1, 1),
    'black': (0, 0, 0),
    'red': (1, 0, 0),
    'green': (0, 0.5, 0),
    'blue': (0, 0, 1),
    'yellow': (1, 1, 0),
    'orange': (1, 0.65, 0),
    'purple': (0.5, 0, 0.5),
    'pink': (1, 0.75, 0.8),
    'brown': (0.6, 0.3, 0),
    'gray': (0.5, 0.5, 0.5),
    'grey': (0.5, 0.5, 0.5),
    'cyan': (0, 1, 1),
    'magenta': (1, 0, 1),
    'silver': (0.75, 0.75, 0.75),
    'gold': (1, 0.84, 0),
    'navy': (0, 0, 0.5),
    'maroon': (0.5, 0, 0),
    'olive': (0.5, 0.5, 0),
    'teal': (0, 0.5, 0.5),
    'lime': (0, 1, 0),
    'aqua': (0, 1, 1),
    'fuchsia': (1, 0, 1),
}


def colour_to_rgb(name: str) -> Tuple[float, float, float]:
    """Look up a colour name (case-insensitive); unknown names are black."""
    return COLOUR_TABLE.get((name or '').strip().lower(), (0, 0, 0))


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class TextLine:
    content: str
    size: float = 0.0   # desired height in mm; 0 = use the default size


class MaterialGroupKey(NamedTuple):
    """Physical sheet attributes shared by every label on one sheet run."""

    text_colour: str
    background_colour: str
    thickness: float
    style: str

    @property
    def description(self) -> str:
        return (f"{self.text_colour} on {self.background_colour} "
                f"{self.thickness:g}mm {self.style}")


@dataclass(frozen=True)
class LabelSpec:
    """
    Immutable specification for one label type.

    Attributes
    ----------
    length            : Label length (horizontal extent) in mm.
    height            : Label height in mm.
    thickness         : Material thickness in mm (0 = 0.8 mm stock).
    background_colour : Colour name of the label face.
    text_colour       : Colour name of the engraved text.
    quantity          : Number of identical copies; 0 contributes nothing.
    style             : Adhesive style, e.g. "Adhesive" / "Non Adhesive".
    hole_count        : Number of perforations (0 = none).
    hole_size         : Circle diameter / default square side in mm.
    hole_distance     : Inset of the outer holes from the label edges (mm).
    hole_shape        : "circle" or "square".
    hole_length       : Square hole width in mm (optional).
    hole_height       : Square hole height in mm (optional).
    lines             : Text lines, top to bottom.
    name              : Optional human-readable identifier.
    """

    length: float
    height: float
    thickness: float = 0.8
    background_colour: str = "White"
    text_colour: str = "Black"
    quantity: int = 1
    style: str = "Adhesive"
    hole_count: int = 0
    hole_size: float = 0.0
    hole_distance: float = 0.0
    hole_shape: str = "circle"
    hole_length: Optional[float] = None
    hole_height: Optional[float] = None
    lines: Tuple[TextLine, ...] = ()
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if self.quantity < 0:
            raise ValueError(f"quantity must be >= 0, got {self.quantity}")
        # accept lists from callers but keep the spec hashable
        object.__setattr__(self, 'lines', tuple(self.lines))

    @property
    def area(self) -> float:
        """Bounding-box area in mm²."""
        return self.length * self.height

    @property
    def group_key(self) -> MaterialGroupKey:
        return MaterialGroupKey(self.text_colour or "Black",
                                self.background_colour or "White",
                                float(self.thickness or 0.8),
                                self.style or "Adhesive")

    @classmethod
    def from_dict(cls, data: dict) -> "LabelSpec":
        """Build a spec from an export request entry (camelCase field names)."""
        lines = tuple(TextLine(str(line.get('text', '')),
                               float(line.get('textSizeMm') or 0))
                      for line in data.get('lines', []))
        quantity = data.get('labelQuantity')
        return cls(
            length=float(data['labelLengthMm']),
            height=float(data['labelHeightMm']),
            thickness=float(data.get('labelThicknessMm') or 0.8),
            background_colour=data.get('labelColourBackground') or "White",
            text_colour=data.get('textColour') or "Black",
            quantity=1 if quantity is None else int(quantity),
            style=data.get('style') or "Adhesive",
            hole_count=int(data.get('noOfHoles') or 0),
            hole_size=float(data.get('holeSizeMm') or 0),
            hole_distance=float(data.get('holeDistanceMm') or 0),
            hole_shape=data.get('holeType') or "circle",
            hole_length=data.get('holeLengthMm'),
            hole_height=data.get('holeHeightMm'),
            lines=lines,
            name=data.get('name'),
        )


@dataclass(frozen=True)
class PlacedLabel:
    """A label instance at its lower-left corner (x, y) in sheet space."""

    spec: LabelSpec
    x: float
    y: float

    @property
    def footprint(self) -> Rect:
        return Rect(self.x, self.y, self.spec.length, self.spec.height)


@dataclass
class Sheet:
    """
    One physical sheet and the labels placed on it.

    Attributes
    ----------
    page_number : 1-based page number within its material group.
    config      : Sheet size, margin and gap used to pack it.
    placements  : Labels in placement order.
    key         : Material group the sheet belongs to (None if ungrouped).
    """

    page_number: int
    config: SheetConfig
    placements: List[PlacedLabel] = field(default_factory=list)
    key: Optional[MaterialGroupKey] = None

    @property
    def efficiency(self) -> float:
        """Placed label area as a percentage of the sheet area."""
        total_area = self.config.width * self.config.height
        used_area = sum(p.spec.area for p in self.placements)
        return (used_area / total_area * 100) if total_area > 0 else 0

    def hole_centres(self, settings: HoleSettings = DEFAULT_HOLES) -> List[List[Point]]:
        """Sheet-space hole centres, one list per placement."""
        return [[h.center for h in label_holes(p.spec, p.x, p.y, settings)]
                for p in self.placements]


@dataclass
class MaterialRun:
    key: MaterialGroupKey
    sheets: List[Sheet]


class ExportFile(NamedTuple):
    filename: str
    content: bytes


@dataclass
class ExportRequest:
    specs: List[LabelSpec]
    project_name: str = "Labels"
    sheet_width: Optional[float] = None
    sheet_height: Optional[float] = None


# ============================================================================
# TEXT FIT
# ============================================================================

def estimate_text_width(text: str, height: float,
                        glyph_ratio: float = DEFAULT_TEXT.glyph_ratio) -> float:
    """Approximate rendered width: every glyph is glyph_ratio × height wide."""
    return len(text) * height * glyph_ratio


def fit_text_height(text: str, max_width: float, desired_height: float,
                    padding: float = DEFAULT_TEXT.padding,
                    glyph_ratio: float = DEFAULT_TEXT.glyph_ratio,
                    min_height: float = DEFAULT_TEXT.min_height) -> float:
    """
    Return the text height that keeps *text* inside *max_width*.

    The desired height is kept when the estimated width fits within
    ``max_width - 2 * padding``; otherwise it is scaled down proportionally
    and floored at *min_height*.  With no room left for the text, or
    nothing to measure, the floor is returned.
    """
    available = max_width - 2 * padding
    estimated = estimate_text_width(text, desired_height, glyph_ratio)
    if estimated <= available:
        return desired_height
    if estimated <= 0:
        return min_height
    return max(min_height, desired_height * available / estimated)


def layout_text(spec: LabelSpec, x: float, y: float,
                settings: TextSettings = DEFAULT_TEXT) -> List[TextRun]:
    """
    Fit and stack the non-blank text lines of *spec* on a label at (x, y).

    Each line is fitted independently against the label length; the whole
    block, including ``line_spacing`` between lines, is centred vertically.
    Runs are anchored at their middle-centre point.
    """
    lines = [line for line in spec.lines if line.content and line.content.strip()]
    if not lines:
        return []

    fitted = [(line.content,
               fit_text_height(line.content, spec.length,
                               line.size or settings.default_size,
                               settings.padding, settings.glyph_ratio,
                               settings.min_height))
              for line in lines]

    total_height = (sum(h for _, h in fitted)
                    + (len(fitted) - 1) * settings.line_spacing)
    centre_x = x + spec.length / 2
    current_y = y + (spec.height + total_height) / 2

    runs = []
    for text, height in fitted:
        current_y -= height
        runs.append(TextRun(insert=Point(centre_x, current_y + height / 2),
                            height=height,
                            text=text,
                            width=spec.length - 2 * settings.padding,
                            colour=spec.text_colour or "Black"))
        current_y -= settings.line_spacing
    return runs


def measure_glyph_ratio(font_path: str,
                        sample: str = string.ascii_letters + string.digits) -> float:
    """
    Average advance width of *sample* glyphs as a fraction of the em size.

    Used to calibrate ``TextSettings.glyph_ratio`` for a particular font.
    Raises ValueError when the font maps none of the sample characters.
    """
    font = TTFont(font_path)
    units_per_em = font['head'].unitsPerEm
    cmap = font.getBestCmap() or {}
    glyph_set = font.getGlyphSet()

    advances = [glyph_set[cmap[ord(ch)]].width
                for ch in sample if ord(ch) in cmap]
    if not advances:
        raise ValueError(f"Font {font_path} has no glyphs for the sample text")
    return sum(advances) / len(advances) / units_per_em


# ============================================================================
# HOLE PATTERNS
# ============================================================================

@dataclass(frozen=True)
class Hole:
    """A perforation; circles use width as their diameter."""

    center: Point
    shape: str
    width: float
    height: float

    @property
    def radius(self) -> float:
        return self.width / 2

    @property
    def bounds(self) -> Rect:
        return Rect(self.center.x - self.width / 2, self.center.y - self.height / 2,
                    self.width, self.height)


def plan_holes(count: int, width: float, height: float,
               distance: float) -> List[Point]:
    """
    Hole centres relative to the label's lower-left corner.

    count 1 → left middle; 2 → left and right middle; 4 → corners inset by
    *distance*; any other positive count → evenly spaced along the
    horizontal midline from ``distance`` to ``width - distance``.
    """
    mid = height / 2
    if count <= 0:
        return []
    if count == 1:
        return [Point(distance, mid)]
    if count == 2:
        return [Point(distance, mid), Point(width - distance, mid)]
    if count == 4:
        return [Point(distance, distance),
                Point(width - distance, distance),
                Point(distance, height - distance),
                Point(width - distance, height - distance)]
    spacing = (width - 2 * distance) / (count - 1)
    return [Point(distance + i * spacing, mid) for i in range(count)]


def label_holes(spec: LabelSpec, x: float = 0.0, y: float = 0.0,
                settings: HoleSettings = DEFAULT_HOLES) -> List[Hole]:
    """
    Holes of *spec* placed at (x, y).

    Nothing is planned unless the spec gives a hole size or both square
    dimensions, even when hole_count is positive.
    """
    if spec.hole_count <= 0:
        return []
    if not (spec.hole_size > 0 or (spec.hole_length and spec.hole_height)):
        return []

    distance = spec.hole_distance or settings.default_distance
    if spec.hole_shape == "square":
        shape = "square"
        hole_w = spec.hole_length or spec.hole_size or settings.default_square
        hole_h = spec.hole_height or spec.hole_size or settings.default_square
    else:
        shape = "circle"
        hole_w = hole_h = spec.hole_size

    return [Hole(c.offset(x, y), shape, hole_w, hole_h)
            for c in plan_holes(spec.hole_count, spec.length, spec.height, distance)]


# ============================================================================
# SHELF PACKER
# ============================================================================

def group_by_material(specs: Sequence[LabelSpec]) -> "OrderedDict[MaterialGroupKey, List[LabelSpec]]":
    """Stable partition of *specs* by material group, in first-seen order."""
    groups: "OrderedDict[MaterialGroupKey, List[LabelSpec]]" = OrderedDict()
    for spec in specs:
        groups.setdefault(spec.group_key, []).append(spec)
    return groups


class ShelfPacker:
    """
    Deterministic shelf packer for rectangular labels.

    Algorithm overview
    ------------------
    1. Expand every spec into ``quantity`` placement requests, in input order.
    2. Fill shelves left to right starting at the top-left corner inside the
       margin; a label that would cross the right margin wraps to a new
       shelf below the tallest label of the current one.
    3. A shelf that would cross the bottom margin opens a new sheet.

    Labels larger than the usable sheet area are still placed; a warning
    is printed once per offending spec.  Labels are never rotated.
    """

    def __init__(self, config: SheetConfig = DEFAULT_SHEET) -> None:
        self.config = config

    def pack(self, specs: Sequence[LabelSpec],
             key: Optional[MaterialGroupKey] = None) -> List[Sheet]:
        """
        Pack *specs* onto as many sheets as needed.

        Parameters
        ----------
        specs : Label specs in priority order.  Specs are only read.
        key   : Material group stamped on every produced sheet.

        Returns
        -------
        Sheets in page order; empty when no spec has a positive quantity.
        """
        cfg = self.config
        sheets: List[Sheet] = []
        current = Sheet(page_number=1, config=cfg, key=key)
        x = cfg.margin
        y = cfg.height - cfg.margin
        row_height = 0.0
        warned = set()

        for spec in specs:
            for _ in range(spec.quantity):
                width, height = spec.length, spec.height

                if row_height == 0:
                    row_height = height

                if x + width > cfg.width - cfg.margin:
                    x = cfg.margin
                    y -= row_height + cfg.gap
                    row_height = height

                if y - height < cfg.margin:
                    if current.placements:
                        sheets.append(current)
                    current = Sheet(page_number=len(sheets) + 1, config=cfg, key=key)
                    x = cfg.margin
                    y = cfg.height - cfg.margin
                    row_height = height

                if ((width > cfg.usable_width or height > cfg.usable_height)
                        and id(spec) not in warned):
                    warned.add(id(spec))
                    print(f"  ⚠️  Warning: Label {spec.name or 'unnamed'} "
                          f"({width:g}x{height:g}mm) is too large for sheet "
                          f"({cfg.usable_width:g}x{cfg.usable_height:g}mm)")

                current.placements.append(PlacedLabel(spec, x, y - height))
                row_height = max(row_height, height)
                x += width + cfg.gap

        if current.placements:
            sheets.append(current)
        return sheets

    def pack_groups(self, specs: Sequence[LabelSpec]) -> List[MaterialRun]:
        """Pack each material group independently; pages restart at 1."""
        return [MaterialRun(key, self.pack(group, key))
                for key, group in group_by_material(specs).items()]


def summarize_runs(runs: Sequence[MaterialRun]) -> dict:
    """Sheet and label counts of already packed material runs."""
    sheets = [s for run in runs for s in run.sheets]
    per_sheet = [len(s.placements) for s in sheets]
    return {'total_sheets': len(sheets),
            'labels_per_sheet': per_sheet,
            'total_labels': sum(per_sheet)}


def sheet_summary(specs: Sequence[LabelSpec],
                  config: SheetConfig = DEFAULT_SHEET) -> dict:
    """Sheet and label counts across all material groups."""
    return summarize_runs(ShelfPacker(config).pack_groups(specs))


# ============================================================================
# VECTOR ASSEMBLY
# ============================================================================

class SheetDrawing:
    """
    Convert a packed Sheet into a DrawingModel.

    Layers (draw order)
    -------------------
    Background  filled label faces          (document output only)
    Cutting     red   sheet border
    Break       cyan  label outlines
    Holes       red   perforations
    TEXT        blue  fitted text lines
    Size        label size captions         (document output only)
    """

    LAYERS = (("Cutting", "red"), ("Break", "cyan"),
              ("Holes", "red"), ("TEXT", "blue"))

    def __init__(self, sheet: Sheet,
                 text: TextSettings = DEFAULT_TEXT,
                 holes: HoleSettings = DEFAULT_HOLES,
                 merge_break_lines: bool = False) -> None:
        self.sheet = sheet
        self.text = text
        self.holes = holes
        self.merge_break_lines = merge_break_lines

    def build(self, document: bool = False) -> DrawingModel:
        cfg = self.sheet.config
        model = DrawingModel(cfg.width, cfg.height)
        if document:
            model.add_layer("Background", "white")
        for name, colour in self.LAYERS:
            model.add_layer(name, colour)
        if document:
            model.add_layer("Size", "black")

        model.add_rectangle("Cutting", Rect(0, 0, cfg.width, cfg.height))

        for placed in self.sheet.placements:
            self._add_label(model, placed, document)

        if self.merge_break_lines:
            model.layers["Break"] = merge_collinear_lines(model.layers["Break"])
        return model

    def _add_label(self, model: DrawingModel, placed: PlacedLabel,
                   document: bool) -> None:
        spec = placed.spec
        rect = placed.footprint

        if document:
            model.add("Background", PolylineEntity(rect.corners(), closed=True,
                                                   fill=spec.background_colour))
        model.add_rectangle("Break", rect)

        for hole in label_holes(spec, placed.x, placed.y, self.holes):
            if hole.shape == "square":
                model.add_rectangle("Holes", hole.bounds)
            else:
                model.add("Holes", Circle(hole.center, hole.radius))

        for run in layout_text(spec, placed.x, placed.y, self.text):
            model.add("TEXT", run)

        if document:
            caption = f"{spec.length:g}x{spec.height:g}mm"
            model.add("Size", TextRun(
                insert=Point(rect.center.x,
                             rect.y + SIZE_CAPTION_OFFSET + SIZE_CAPTION_HEIGHT / 2),
                height=SIZE_CAPTION_HEIGHT,
                text=caption,
                colour=spec.text_colour or "Black"))


class PDFGenerator:
    """Render a DrawingModel onto a single PDF page the size of the sheet."""

    FONT = "Helvetica"
    SHEET_LINE_WIDTH = 1.0   # pt
    LINE_WIDTH = 0.5         # pt

    def __init__(self, model: DrawingModel) -> None:
        self.model = model

    def generate(self) -> bytes:
        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=(self.model.width * mm,
                                              self.model.height * mm))
        pdf.setStrokeColorRGB(0, 0, 0)

        for layer, entities in self.model.layers.items():
            pdf.setLineWidth(self.SHEET_LINE_WIDTH if layer == "Cutting"
                             else self.LINE_WIDTH)
            for entity in entities:
                self._draw(pdf, entity)

        pdf.showPage()
        pdf.save()
        return buffer.getvalue()

    def _draw(self, pdf: canvas.Canvas, entity) -> None:
        if isinstance(entity, LineSegment):
            pdf.line(entity.start.x * mm, entity.start.y * mm,
                     entity.end.x * mm, entity.end.y * mm)
        elif isinstance(entity, Circle):
            pdf.circle(entity.center.x * mm, entity.center.y * mm,
                       entity.radius * mm, stroke=1, fill=0)
        elif isinstance(entity, PolylineEntity):
            if len(entity.points) < 2:
                return
            path = pdf.beginPath()
            first, *rest = entity.points
            path.moveTo(first.x * mm, first.y * mm)
            for pt in rest:
                path.lineTo(pt.x * mm, pt.y * mm)
            if entity.closed:
                path.close()
            if entity.fill:
                pdf.setFillColorRGB(*colour_to_rgb(entity.fill))
            pdf.drawPath(path, stroke=1, fill=1 if entity.fill else 0)
        elif isinstance(entity, TextRun):
            size = entity.height * mm
            pdf.setFillColorRGB(*colour_to_rgb(entity.colour))
            pdf.setFont(self.FONT, size)
            # runs are middle-centre anchored; drawCentredString wants the baseline
            pdf.drawCentredString(entity.insert.x * mm,
                                  (entity.insert.y - entity.height / 2) * mm,
                                  entity.text)


# ============================================================================
# EXPORT PIPELINE
# ============================================================================

def sheet_filename(key: MaterialGroupKey, page_number: int, extension: str,
                   prefix: str = DEFAULT_OUTPUT.prefix) -> str:
    """
    "<prefix> <text> on <bg> <thickness>mm[ Non AD] <NN>.<extension>"
    """
    suffix = NON_ADHESIVE_SUFFIX if key.style == NON_ADHESIVE_STYLE else ""
    name = (f"{key.text_colour} on {key.background_colour} "
            f"{key.thickness:g}mm{suffix} {page_number:02d}.{extension}")
    return f"{prefix} {name}" if prefix else name


def export_labels(specs: Sequence[LabelSpec],
                  sheet: SheetConfig = DEFAULT_SHEET,
                  formats: Sequence[str] = ("dxf", "pdf"),
                  text: TextSettings = DEFAULT_TEXT,
                  holes: HoleSettings = DEFAULT_HOLES,
                  output: OutputSettings = DEFAULT_OUTPUT) -> List[ExportFile]:
    """
    Pack *specs* once and render every sheet in each requested format.

    Returns all DXF files first, then all PDF files, each in group/page
    order.  Raises NoLabelsError for an empty request and
    NothingGeneratedError when no file could be produced.
    """
    return render_runs(pack_labels(specs, sheet), formats, text, holes, output)


def pack_labels(specs: Sequence[LabelSpec],
                sheet: SheetConfig = DEFAULT_SHEET) -> List[MaterialRun]:
    """Pack a request into material runs; an empty request is an error."""
    if not specs:
        raise NoLabelsError("No label setups provided")
    return ShelfPacker(sheet).pack_groups(specs)


def render_runs(runs: Sequence[MaterialRun],
                formats: Sequence[str] = ("dxf", "pdf"),
                text: TextSettings = DEFAULT_TEXT,
                holes: HoleSettings = DEFAULT_HOLES,
                output: OutputSettings = DEFAULT_OUTPUT) -> List[ExportFile]:
    """Render already packed *runs*, DXF files first, then PDF files."""
    unknown = set(formats) - {"dxf", "pdf"}
    if unknown:
        raise ValueError(f"Unsupported output format(s): {sorted(unknown)}")

    files: List[ExportFile] = []

    for fmt in formats:
        for run in runs:
            for packed in run.sheets:
                drawing = SheetDrawing(packed, text, holes, output.merge_break_lines)
                filename = sheet_filename(run.key, packed.page_number, fmt, output.prefix)
                if fmt == "dxf":
                    content = render_dxf(drawing.build()).encode('utf-8')
                else:
                    content = PDFGenerator(drawing.build(document=True)).generate()
                files.append(ExportFile(filename, content))

    if not files:
        raise NothingGeneratedError("No files generated")
    return files


def write_files(files: Sequence[ExportFile], output_dir: str) -> List[str]:
    """Write *files* into *output_dir* (created if needed); return the paths."""
    os.makedirs(output_dir, exist_ok=True)
    paths = []
    for export in files:
        path = os.path.join(output_dir, export.filename)
        with open(path, 'wb') as f:
            f.write(export.content)
        paths.append(path)
    return paths


def write_zip(files: Sequence[ExportFile], zip_path: str) -> str:
    """Bundle *files* into a single ZIP archive at *zip_path*."""
    out_dir = os.path.dirname(zip_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    with zipfile.ZipFile(zip_path, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
        for export in files:
            zf.writestr(export.filename, export.content)
    return zip_path


# ============================================================================
# INPUT LOADERS
# ============================================================================

def load_label_setups(filename: str) -> ExportRequest:
    """
    Read an export request from a JSON file.

    The document is either a bare list of label setups or an object with
    ``labelSetups`` and optional ``projectName``, ``sheetWidth`` and
    ``sheetHeight``.  Setups that cannot be converted are skipped with a
    warning.
    """
    with open(filename, 'r', encoding='utf-8') as f:
        document = json.load(f)

    if isinstance(document, list):
        document = {'labelSetups': document}

    specs = []
    for index, setup in enumerate(document.get('labelSetups') or [], start=1):
        try:
            specs.append(LabelSpec.from_dict(setup))
        except (KeyError, TypeError, ValueError) as e:
            print(f"  ⚠️  Warning: Skipping invalid label setup {index}: {e}")

    return ExportRequest(specs=specs,
                         project_name=document.get('projectName') or "Labels",
                         sheet_width=document.get('sheetWidth'),
                         sheet_height=document.get('sheetHeight'))


def parse_csv(filename: str) -> List[LabelSpec]:
    """
    Parse a CSV file into LabelSpec objects.

    The delimiter and quote character are detected with ``csv.Sniffer``,
    falling back to semicolons with double quotes.

    Required columns (aliases accepted, case-insensitive):

    ============  ==============================================
    Column        Aliases
    ============  ==============================================
    QUANTITY      QTY, COUNT
    LENGTH        LABEL LENGTH(MM), LENGTH(MM), WIDTH(MM), WIDTH
    HEIGHT        LABEL HEIGHT(MM), HEIGHT(MM)
    TEXTDATA      TEXT, LABEL TEXT, CONTENT
    TEXT HEIGHT   TEXT HEIGHT(MM), TEXT SIZE(MM), FONT SIZE
    ============  ==============================================

    Optional columns: THICKNESS, BACKGROUND, TEXT COLOUR, STYLE, HOLES,
    HOLE SIZE, HOLE DISTANCE, HOLE TYPE.

    Text may hold embedded or escaped (\\n) newlines; each line becomes a
    TextLine with the row's text height.  Rows that cannot be parsed are
    skipped with a warning.
    """
    specs = []

    with open(filename, 'r', encoding='utf-8', newline='') as f:
        sample = f.read(4096)
        f.seek(0)
        delimiter = ';'
        quotechar = '"'
        try:
            detected = csv.Sniffer().sniff(sample, delimiters=',;\t|')
            delimiter = detected.delimiter
            quotechar = detected.quotechar or '"'
        except csv.Error:
            print(f"  ⚠️  Warning: CSV dialect detection failed, "
                  f"using delimiter={delimiter!r} quotechar={quotechar!r}")

        reader = csv.reader(f, delimiter=delimiter, quotechar=quotechar,
                            doublequote=True, skipinitialspace=True)

        header = next(reader, None)
        if not header:
            print("Error: Empty CSV file")
            return []

        header = [h.strip().strip('"').upper() for h in header]
        field_map = {name: i for i, name in enumerate(header)}

        required_fields = {
            'QUANTITY': ['QUANTITY', 'QTY', 'COUNT'],
            'LENGTH': ['LABEL LENGTH(MM)', 'LENGTH(MM)', 'LENGTH', 'LABEL LENGTH',
                       'LABEL WIDTH(MM)', 'WIDTH(MM)', 'WIDTH'],
            'HEIGHT': ['LABEL HEIGHT(MM)', 'HEIGHT(MM)', 'HEIGHT', 'LABEL HEIGHT'],
            'TEXTDATA': ['TEXTDATA', 'TEXT', 'LABEL TEXT', 'CONTENT'],
            'TEXT_HEIGHT': ['TEXT HEIGHT(MM)', 'TEXT SIZE(MM)', 'TEXT HEIGHT',
                            'FONT SIZE(MM)', 'FONT SIZE'],
        }
        optional_fields = {
            'THICKNESS': ['THICKNESS(MM)', 'THICKNESS', 'LABEL THICKNESS(MM)'],
            'BACKGROUND': ['BACKGROUND', 'BACKGROUND COLOUR', 'BACKGROUND COLOR'],
            'TEXT_COLOUR': ['TEXT COLOUR', 'TEXT COLOR'],
            'STYLE': ['STYLE'],
            'HOLES': ['HOLES', 'NO OF HOLES'],
            'HOLE_SIZE': ['HOLE SIZE(MM)', 'HOLE SIZE'],
            'HOLE_DISTANCE': ['HOLE DISTANCE(MM)', 'HOLE DISTANCE'],
            'HOLE_TYPE': ['HOLE TYPE'],
        }

        def find(possible_names):
            for name in possible_names:
                if name in field_map:
                    return field_map[name]
            return None

        indices = {}
        for key, possible_names in required_fields.items():
            indices[key] = find(possible_names)
            if indices[key] is None:
                print(f"Error: Required field not found. Looking for one of: {possible_names}")
                print(f"Available fields: {header}")
                return []
        for key, possible_names in optional_fields.items():
            indices[key] = find(possible_names)

        def cell(row, key, default=''):
            index = indices[key]
            if index is None or index >= len(row):
                return default
            return row[index].strip() or default

        row_num = 1
        for row in reader:
            row_num += 1

            if not row or all(not c.strip() for c in row):
                continue

            try:
                text = cell(row, 'TEXTDATA')
                text = text.replace('\r\n', '\n').replace('\r', '\n')
                text = text.replace('\\n', '\n')
                text_height = float(cell(row, 'TEXT_HEIGHT'))

                spec = LabelSpec(
                    length=float(cell(row, 'LENGTH')),
                    height=float(cell(row, 'HEIGHT')),
                    thickness=float(cell(row, 'THICKNESS', '0.8')),
                    background_colour=cell(row, 'BACKGROUND', 'White'),
                    text_colour=cell(row, 'TEXT_COLOUR', 'Black'),
                    quantity=int(cell(row, 'QUANTITY')),
                    style=cell(row, 'STYLE', 'Adhesive'),
                    hole_count=int(cell(row, 'HOLES', '0')),
                    hole_size=float(cell(row, 'HOLE_SIZE', '0')),
                    hole_distance=float(cell(row, 'HOLE_DISTANCE', '0')),
                    hole_shape=cell(row, 'HOLE_TYPE', 'circle').lower(),
                    lines=tuple(TextLine(line, text_height)
                                for line in text.split('\n')),
                )
                specs.append(spec)

            except (ValueError, IndexError) as e:
                print(f"  ⚠️  Warning: Skipping invalid row {row_num}: {e}")
                continue

    return specs


def load_input(filename: str) -> ExportRequest:
    """Dispatch on extension: .json → load_label_setups, otherwise CSV."""
    if filename.lower().endswith('.json'):
        return load_label_setups(filename)
    return ExportRequest(specs=parse_csv(filename))


# ============================================================================
# MAIN FUNCTION
# ============================================================================

def generate_label_sheets(input_file: str,
                          output_dir: str = "output",
                          sheet: Optional[SheetConfig] = None,
                          formats: Sequence[str] = ("dxf", "pdf"),
                          config_file: str = DEFAULT_CONFIG_FILE,
                          as_zip: bool = False) -> List[str]:
    """
    Full pipeline: load setups → pack per material → write DXF/PDF files.

    Parameters
    ----------
    input_file  : JSON request or CSV file with label setups.
    output_dir  : Directory receiving the generated files.
    sheet       : Sheet override; otherwise the config file (and the
                  request's sheetWidth/sheetHeight) decide.
    formats     : Any of "dxf", "pdf".
    config_file : INI file with layout settings.
    as_zip      : Write one "<project>.zip" instead of loose files.

    Returns
    -------
    Paths written.
    """
    print("=" * 70)
    print("LABEL SHEET EXPORTER")
    print("=" * 70)

    cfg = load_config(config_file)
    glyph_ratio = None
    font_path = cfg.get('font', 'path')
    if font_path:
        glyph_ratio = measure_glyph_ratio(font_path)
        print(f"  → Calibrated glyph ratio from {font_path}: {glyph_ratio:.3f}")

    print(f"\nReading label setups from: {input_file}")
    request = load_input(input_file)

    if sheet is None:
        sheet = SheetConfig.from_config(cfg)
        if request.sheet_width or request.sheet_height:
            sheet = SheetConfig(width=request.sheet_width or sheet.width,
                                height=request.sheet_height or sheet.height,
                                margin=sheet.margin, gap=sheet.gap)

    print(f"Sheet size: {sheet.width:g} x {sheet.height:g} mm "
          f"(margin {sheet.margin:g}, gap {sheet.gap:g})")
    print(f"\n✅ Found {len(request.specs)} label setup(s)")
    print(f"✅ Total labels: {sum(s.quantity for s in request.specs)}")

    runs = pack_labels(request.specs, sheet)
    files = render_runs(runs, formats,
                        text=TextSettings.from_config(cfg, glyph_ratio),
                        holes=HoleSettings.from_config(cfg),
                        output=OutputSettings.from_config(cfg))

    summary = summarize_runs(runs)
    print(f"✅ Packed onto {summary['total_sheets']} sheet(s): "
          f"{summary['labels_per_sheet']}")

    if as_zip:
        paths = [write_zip(files, os.path.join(output_dir, f"{request.project_name}.zip"))]
    else:
        paths = write_files(files, output_dir)

    for path in paths:
        print(f"\n📄 {path}")
    print(f"\n{'═' * 70}")
    print(f"✅ SUCCESS: Generated {len(files)} file(s)")
    print(f"{'═' * 70}")
    return paths


# ============================================================================
# CLI INTERFACE
# ============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        description="Pack labels onto material sheets and export DXF/PDF files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python label_export.py labels.json
  python label_export.py labels.csv -o output --format dxf
  python label_export.py labels.json --width 300 --height 200 --zip

Output DXF layers:
  Cutting — red  sheet border
  Break   — cyan label outlines
  Holes   — red  perforations
  TEXT    — blue label text
        """
    )
    parser.add_argument("input_file", help="JSON request or CSV file")
    parser.add_argument("-o", "--output", default="output",
                        help="Output directory (default: output)")
    parser.add_argument("--width", type=float, help="Sheet width in mm")
    parser.add_argument("--height", type=float, help="Sheet height in mm")
    parser.add_argument("--margin", type=float, help="Sheet margin in mm")
    parser.add_argument("--gap", type=float, help="Gap between labels in mm")
    parser.add_argument("--format", choices=["dxf", "pdf", "both"], default="both",
                        help="Files to generate (default: both)")
    parser.add_argument("--zip", action="store_true",
                        help="Bundle the output into <project>.zip")
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE,
                        help=f"Config file (default: {DEFAULT_CONFIG_FILE})")

    args = parser.parse_args(argv)

    sheet = None
    if any(v is not None for v in (args.width, args.height, args.margin, args.gap)):
        base = SheetConfig.from_config(load_config(args.config))
        sheet = SheetConfig(
            width=args.width if args.width is not None else base.width,
            height=args.height if args.height is not None else base.height,
            margin=args.margin if args.margin is not None else base.margin,
            gap=args.gap if args.gap is not None else base.gap)

    formats = ("dxf", "pdf") if args.format == "both" else (args.format,)

    try:
        generate_label_sheets(args.input_file, args.output, sheet, formats,
                              args.config, args.zip)
    except FileNotFoundError:
        print(f"\n❌ Error: File '{args.input_file}' not found")
        return 1
    except (ExportError, ValueError) as e:
        print(f"\n❌ Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
