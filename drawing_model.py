"""
Geometry primitives and the output-agnostic drawing model.

Sheet space is Cartesian millimetres with the origin at the lower-left
corner of the sheet and Y pointing up.  Raster/trace space has Y pointing
down; ``flip_y`` converts between the two.

A DrawingModel is an ordered mapping ``layer name -> [entity, ...]`` built
once per output file.  Writers consume it:

    render_dxf(model)          -> DXF text via ezdxf
    label_export.PDFGenerator  -> PDF bytes via reportlab

Entity types
------------
    LineSegment     start → end
    Circle          centre + radius
    PolylineEntity  ordered points, optionally closed / filled
    TextRun         middle-centre anchored text of a given height
"""

import io
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Sequence, Union

import ezdxf
from ezdxf import colors, units
from ezdxf.enums import MTextEntityAlignment


# ============================================================================
# GEOMETRY PRIMITIVES
# ============================================================================

class Point(NamedTuple):
    x: float
    y: float

    def offset(self, dx: float, dy: float) -> "Point":
        return Point(self.x + dx, self.y + dy)


Polyline = List[Point]


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle given by its lower-left corner and size (mm)."""

    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def top(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> Point:
        return Point(self.x + self.width / 2, self.y + self.height / 2)

    def corners(self) -> List[Point]:
        """Counter-clockwise from the lower-left corner."""
        return [Point(self.x, self.y), Point(self.right, self.y),
                Point(self.right, self.top), Point(self.x, self.top)]

    def overlaps(self, other: "Rect", tolerance: float = 1e-9) -> bool:
        """True if the interiors intersect; shared edges do not count."""
        return not (self.right <= other.x + tolerance or
                    other.right <= self.x + tolerance or
                    self.top <= other.y + tolerance or
                    other.top <= self.y + tolerance)


def flip_y(point: Point, canvas_height: float) -> Point:
    """Mirror *point* between top-down raster and bottom-up sheet space."""
    return Point(point.x, canvas_height - point.y)


# ============================================================================
# DRAWING MODEL
# ============================================================================

@dataclass(frozen=True)
class LineSegment:
    start: Point
    end: Point


@dataclass(frozen=True)
class Circle:
    center: Point
    radius: float


@dataclass(frozen=True)
class PolylineEntity:
    points: Sequence[Point]
    closed: bool = False
    fill: Optional[str] = None   # colour name, document writers only


@dataclass(frozen=True)
class TextRun:
    """
    One line of text anchored at its middle-centre point.

    width is the wrap width handed to writers that support it (DXF MTEXT);
    colour is a colour name resolved by the document writer.
    """

    insert: Point
    height: float
    text: str
    width: Optional[float] = None
    colour: str = "black"


Entity = Union[LineSegment, Circle, PolylineEntity, TextRun]


@dataclass
class DrawingModel:
    """Layered vector entities for one output file, in insertion order."""

    width: float
    height: float
    layers: Dict[str, List[Entity]] = field(default_factory=dict)
    layer_colours: Dict[str, str] = field(default_factory=dict)

    def add_layer(self, name: str, colour: str = "white") -> None:
        self.layers.setdefault(name, [])
        self.layer_colours[name] = colour

    def add(self, layer: str, entity: Entity) -> None:
        if layer not in self.layers:
            self.add_layer(layer)
        self.layers[layer].append(entity)

    def add_rectangle(self, layer: str, rect: Rect) -> None:
        """Add *rect* as four separate line segments."""
        pts = rect.corners()
        for i, start in enumerate(pts):
            self.add(layer, LineSegment(start, pts[(i + 1) % 4]))

    def entities(self, layer: str) -> List[Entity]:
        return self.layers.get(layer, [])

    def count(self, kind: Optional[type] = None) -> int:
        return sum(1 for items in self.layers.values() for e in items
                   if kind is None or isinstance(e, kind))


# ============================================================================
# LINE MERGING
# ============================================================================

def merge_collinear_lines(lines: List[LineSegment],
                          tolerance: float = 0.01) -> List[LineSegment]:
    """
    Merge axis-aligned segments that lie on the same line and touch or overlap.

    Labels packed without a gap share their edges; merging keeps the laser
    from cutting the same edge twice.  Diagonal segments are passed through
    unchanged.  The pass repeats until no further merge happens.
    """
    def orientation(seg: LineSegment) -> Optional[str]:
        if abs(seg.start.y - seg.end.y) <= tolerance:
            return 'horizontal'
        if abs(seg.start.x - seg.end.x) <= tolerance:
            return 'vertical'
        return None

    segments = list(lines)
    merged_any = True

    while merged_any:
        merged_any = False
        result: List[LineSegment] = []
        used = set()

        for i, a in enumerate(segments):
            if i in used:
                continue
            used.add(i)
            kind = orientation(a)
            if kind is None:
                result.append(a)
                continue

            for j in range(i + 1, len(segments)):
                if j in used:
                    continue
                b = segments[j]
                if orientation(b) != kind:
                    continue
                if kind == 'horizontal':
                    if abs(a.start.y - b.start.y) > tolerance:
                        continue
                    a_min, a_max = sorted((a.start.x, a.end.x))
                    b_min, b_max = sorted((b.start.x, b.end.x))
                    if b_min <= a_max + tolerance and b_max >= a_min - tolerance:
                        y = a.start.y
                        a = LineSegment(Point(min(a_min, b_min), y),
                                        Point(max(a_max, b_max), y))
                        used.add(j)
                        merged_any = True
                else:
                    if abs(a.start.x - b.start.x) > tolerance:
                        continue
                    a_min, a_max = sorted((a.start.y, a.end.y))
                    b_min, b_max = sorted((b.start.y, b.end.y))
                    if b_min <= a_max + tolerance and b_max >= a_min - tolerance:
                        x = a.start.x
                        a = LineSegment(Point(x, min(a_min, b_min)),
                                        Point(x, max(a_max, b_max)))
                        used.add(j)
                        merged_any = True
            result.append(a)

        segments = result

    return segments


# ============================================================================
# DXF WRITER
# ============================================================================

TEXT_STYLE = "CALIBRI"
TEXT_FONT_FILE = "calibri.ttf"

_ACI = {
    'red': colors.RED,
    'yellow': colors.YELLOW,
    'green': colors.GREEN,
    'cyan': colors.CYAN,
    'blue': colors.BLUE,
    'magenta': colors.MAGENTA,
    'white': colors.WHITE,
    'black': colors.BLACK,
    'gray': colors.GRAY,
    'grey': colors.GRAY,
}


def render_dxf(model: DrawingModel) -> str:
    """
    Serialise *model* to a DXF document (millimetre units) and return it.

    Layers keep the model's order and colours.  Polylines with fewer than
    two points carry no geometry and are skipped.
    """
    doc = ezdxf.new("R2010")
    doc.units = units.MM
    doc.styles.add(TEXT_STYLE, font=TEXT_FONT_FILE)

    for name in model.layers:
        colour = model.layer_colours.get(name, 'white')
        doc.layers.add(name, color=_ACI.get(colour.lower(), colors.WHITE))

    msp = doc.modelspace()
    for name, entities in model.layers.items():
        attribs = {'layer': name}
        for entity in entities:
            if isinstance(entity, LineSegment):
                msp.add_line(tuple(entity.start), tuple(entity.end),
                             dxfattribs=attribs)
            elif isinstance(entity, Circle):
                msp.add_circle(tuple(entity.center), entity.radius,
                               dxfattribs=attribs)
            elif isinstance(entity, PolylineEntity):
                if len(entity.points) < 2:
                    continue
                msp.add_lwpolyline([tuple(p) for p in entity.points],
                                   close=entity.closed, dxfattribs=attribs)
            elif isinstance(entity, TextRun):
                mtext_attribs = {'layer': name, 'style': TEXT_STYLE,
                                 'char_height': entity.height}
                if entity.width is not None:
                    mtext_attribs['width'] = entity.width
                mtext = msp.add_mtext(entity.text, dxfattribs=mtext_attribs)
                mtext.set_location(
                    insert=tuple(entity.insert),
                    attachment_point=MTextEntityAlignment.MIDDLE_CENTER)

    stream = io.StringIO()
    doc.write(stream)
    return stream.getvalue()
