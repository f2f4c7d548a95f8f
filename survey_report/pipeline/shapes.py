"""
Revives saved annotation shape descriptors into drawables for compositing.

Descriptors are dicts tagged by "type" (rect, circle, arrow, dimensionLine, ...).
SHAPE_FACTORIES maps each kind to a factory; a descriptor whose kind is unknown
or whose fields are malformed is skipped instead of failing the whole image.
"""

from __future__ import annotations

import io
import logging
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from PIL import ImageColor, ImageDraw, ImageFont

from .. import config
from ..errors import FontRegistrationError
from .fonts import decode_font_payload, read_font_payload

logger = logging.getLogger(__name__)

Point = Tuple[float, float]
RGBA = Tuple[int, int, int, int]

_RGBA_RE = re.compile(
    r"rgba\(\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)\s*,\s*([0-9]*\.?[0-9]+)\s*\)$",
    re.IGNORECASE,
)


def parse_color(value: Any, opacity: float = 1.0) -> Optional[RGBA]:
    """CSS-ish color to RGBA; None means "do not paint"."""
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("transparent", "none"):
        return None
    m = _RGBA_RE.match(text)
    if m:
        r, g, b = (int(m.group(i)) for i in (1, 2, 3))
        alpha = float(m.group(4))
        return r, g, b, int(round(255 * max(0.0, min(1.0, alpha * opacity))))
    rgb = ImageColor.getrgb(text)
    alpha = rgb[3] if len(rgb) == 4 else 255
    return rgb[0], rgb[1], rgb[2], int(round(alpha * max(0.0, min(1.0, opacity))))


@lru_cache(maxsize=4)
def _payload_font_bytes(path: Path) -> Optional[bytes]:
    try:
        return decode_font_payload(read_font_payload(path))
    except FontRegistrationError as exc:
        logger.debug("Annotation text falls back to the default font: %s", exc)
        return None


def load_annotation_font(size: float) -> ImageFont.ImageFont:
    """
    Font for text and dimension labels drawn onto photos.

    An explicit ANNOTATION_FONT_PATH wins, then the subset payload the PDF
    uses. Pillow's default font (no CJK coverage) is the last resort.
    """
    size = max(1, int(round(size)))
    if config.ANNOTATION_FONT_PATH is not None:
        return ImageFont.truetype(str(config.ANNOTATION_FONT_PATH), size)
    data = _payload_font_bytes(config.FONT_PAYLOAD_PATH)
    if data is not None:
        return ImageFont.truetype(io.BytesIO(data), size)
    return ImageFont.load_default(size=size)


class Drawable(Protocol):
    def draw(self, draw: ImageDraw.ImageDraw) -> None:
        ...


# -------------------- drawables --------------------
@dataclass(frozen=True)
class RectShape:
    box: Tuple[float, float, float, float]
    stroke: Optional[RGBA]
    fill: Optional[RGBA]
    width: int

    def draw(self, draw: ImageDraw.ImageDraw) -> None:
        draw.rectangle(self.box, outline=self.stroke, fill=self.fill, width=self.width)


@dataclass(frozen=True)
class EllipseShape:
    box: Tuple[float, float, float, float]
    stroke: Optional[RGBA]
    fill: Optional[RGBA]
    width: int

    def draw(self, draw: ImageDraw.ImageDraw) -> None:
        draw.ellipse(self.box, outline=self.stroke, fill=self.fill, width=self.width)


@dataclass(frozen=True)
class PolylineShape:
    points: Tuple[Point, ...]
    stroke: Optional[RGBA]
    fill: Optional[RGBA]
    width: int
    closed: bool = False

    def draw(self, draw: ImageDraw.ImageDraw) -> None:
        if self.closed and len(self.points) >= 3:
            draw.polygon(list(self.points), outline=self.stroke, fill=self.fill, width=self.width)
            return
        if self.stroke is not None and len(self.points) >= 2:
            draw.line(list(self.points), fill=self.stroke, width=self.width, joint="curve")


@dataclass(frozen=True)
class ArrowShape:
    start: Point
    end: Point
    stroke: RGBA
    width: int
    head_size: float

    def draw(self, draw: ImageDraw.ImageDraw) -> None:
        draw.line([self.start, self.end], fill=self.stroke, width=self.width)
        angle = math.atan2(self.end[1] - self.start[1], self.end[0] - self.start[0])
        spread = math.pi / 6
        left = (
            self.end[0] - self.head_size * math.cos(angle - spread),
            self.end[1] - self.head_size * math.sin(angle - spread),
        )
        right = (
            self.end[0] - self.head_size * math.cos(angle + spread),
            self.end[1] - self.head_size * math.sin(angle + spread),
        )
        draw.polygon([self.end, left, right], fill=self.stroke, outline=self.stroke)


@dataclass(frozen=True)
class DimensionShape:
    start: Point
    end: Point
    stroke: RGBA
    width: int
    cap_length: float
    label: str
    label_size: float
    label_color: RGBA
    label_background: Optional[RGBA]

    def draw(self, draw: ImageDraw.ImageDraw) -> None:
        draw.line([self.start, self.end], fill=self.stroke, width=self.width)
        dx = self.end[0] - self.start[0]
        dy = self.end[1] - self.start[1]
        length = math.hypot(dx, dy) or 1.0
        # unit normal to the measured segment
        nx, ny = -dy / length, dx / length
        half = self.cap_length / 2
        for px, py in (self.start, self.end):
            draw.line(
                [(px - nx * half, py - ny * half), (px + nx * half, py + ny * half)],
                fill=self.stroke,
                width=self.width,
            )
        if not self.label:
            return
        font = load_annotation_font(self.label_size)
        mid = ((self.start[0] + self.end[0]) / 2, (self.start[1] + self.end[1]) / 2)
        left, top, right, bottom = draw.textbbox(mid, self.label, font=font, anchor="mm")
        if self.label_background is not None:
            draw.rectangle((left - 2, top - 2, right + 2, bottom + 2), fill=self.label_background)
        draw.text(mid, self.label, fill=self.label_color, font=font, anchor="mm")


@dataclass(frozen=True)
class TextShape:
    origin: Point
    text: str
    size: float
    fill: RGBA
    background: Optional[RGBA]

    def draw(self, draw: ImageDraw.ImageDraw) -> None:
        font = load_annotation_font(self.size)
        if self.background is not None:
            draw.rectangle(draw.multiline_textbbox(self.origin, self.text, font=font), fill=self.background)
        draw.multiline_text(self.origin, self.text, fill=self.fill, font=font)


# -------------------- descriptor helpers --------------------
def _num(desc: Dict[str, Any], key: str, default: Optional[float] = None) -> float:
    value = desc.get(key, default)
    if value is None:
        raise KeyError(key)
    return float(value)


def _point(value: Any) -> Point:
    if isinstance(value, dict):
        return float(value["x"]), float(value["y"])
    x, y = value
    return float(x), float(y)


def _stroke_width(desc: Dict[str, Any]) -> int:
    return max(1, int(round(float(desc.get("strokeWidth", 2) or 1))))


def _scale(desc: Dict[str, Any]) -> Tuple[float, float]:
    return float(desc.get("scaleX", 1) or 1), float(desc.get("scaleY", 1) or 1)


def _paint(desc: Dict[str, Any]) -> Tuple[Optional[RGBA], Optional[RGBA]]:
    opacity = desc.get("opacity")
    opacity = 1.0 if opacity is None else float(opacity)
    return parse_color(desc.get("stroke"), opacity), parse_color(desc.get("fill"), opacity)


def _box(x0: float, y0: float, x1: float, y1: float) -> Tuple[float, float, float, float]:
    return min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1)


def _rect(desc: Dict[str, Any]) -> Drawable:
    sx, sy = _scale(desc)
    left, top = _num(desc, "left", 0), _num(desc, "top", 0)
    box = _box(left, top, left + _num(desc, "width") * sx, top + _num(desc, "height") * sy)
    stroke, fill = _paint(desc)
    return RectShape(box=box, stroke=stroke, fill=fill, width=_stroke_width(desc))


def _circle(desc: Dict[str, Any]) -> Drawable:
    sx, sy = _scale(desc)
    left, top = _num(desc, "left", 0), _num(desc, "top", 0)
    radius = _num(desc, "radius")
    stroke, fill = _paint(desc)
    box = _box(left, top, left + 2 * radius * sx, top + 2 * radius * sy)
    return EllipseShape(box=box, stroke=stroke, fill=fill, width=_stroke_width(desc))


def _ellipse(desc: Dict[str, Any]) -> Drawable:
    sx, sy = _scale(desc)
    left, top = _num(desc, "left", 0), _num(desc, "top", 0)
    stroke, fill = _paint(desc)
    box = _box(left, top, left + 2 * _num(desc, "rx") * sx, top + 2 * _num(desc, "ry") * sy)
    return EllipseShape(box=box, stroke=stroke, fill=fill, width=_stroke_width(desc))


def _line(desc: Dict[str, Any]) -> Drawable:
    x1, y1, x2, y2 = (_num(desc, k) for k in ("x1", "y1", "x2", "y2"))
    if "left" in desc and "top" in desc:
        # fabric stores line ends relative to the object's bounding box
        ox = _num(desc, "left") - min(x1, x2)
        oy = _num(desc, "top") - min(y1, y2)
        x1, x2, y1, y2 = x1 + ox, x2 + ox, y1 + oy, y2 + oy
    stroke, _ = _paint(desc)
    return PolylineShape(points=((x1, y1), (x2, y2)), stroke=stroke, fill=None, width=_stroke_width(desc))


def _polyline(desc: Dict[str, Any]) -> Drawable:
    points = tuple(_point(p) for p in desc["points"])
    if len(points) < 2:
        raise ValueError("polyline needs at least two points")
    stroke, fill = _paint(desc)
    return PolylineShape(points=points, stroke=stroke, fill=fill, width=_stroke_width(desc))


def _polygon(desc: Dict[str, Any]) -> Drawable:
    points = tuple(_point(p) for p in desc["points"])
    if len(points) < 3:
        raise ValueError("polygon needs at least three points")
    stroke, fill = _paint(desc)
    return PolylineShape(points=points, stroke=stroke, fill=fill, width=_stroke_width(desc), closed=True)


_PATH_TOKEN_RE = re.compile(r"[MLQCZmlqcz]|-?\d*\.?\d+(?:e-?\d+)?")
_PATH_ARITY = {"M": 2, "L": 2, "Q": 4, "C": 6, "Z": 0}


def _path_commands(value: Any) -> List[List[Any]]:
    if isinstance(value, (list, tuple)):
        return [list(cmd) for cmd in value]
    tokens = _PATH_TOKEN_RE.findall(str(value))
    commands: List[List[Any]] = []
    i = 0
    while i < len(tokens):
        op = tokens[i].upper()
        if op not in _PATH_ARITY:
            raise ValueError(f"Unsupported path token: {tokens[i]}")
        arity = _PATH_ARITY[op]
        args = [float(t) for t in tokens[i + 1 : i + 1 + arity]]
        if len(args) != arity:
            raise ValueError("Truncated path data")
        commands.append([op] + args)
        i += 1 + arity
    return commands


def _bezier(points: Sequence[Point], steps: int = 8) -> List[Point]:
    out: List[Point] = []
    n = len(points) - 1
    for s in range(1, steps + 1):
        t = s / steps
        x = y = 0.0
        for k, (px, py) in enumerate(points):
            coeff = math.comb(n, k) * (1 - t) ** (n - k) * t**k
            x += coeff * px
            y += coeff * py
        out.append((x, y))
    return out


def flatten_path(value: Any) -> List[List[Point]]:
    """Turn SVG-like path data into polylines (one per subpath)."""
    subpaths: List[List[Point]] = []
    current: List[Point] = []
    for cmd in _path_commands(value):
        op, args = str(cmd[0]).upper(), [float(a) for a in cmd[1:]]
        if op == "M":
            if len(current) >= 2:
                subpaths.append(current)
            current = [(args[0], args[1])]
        elif op == "L":
            current.append((args[0], args[1]))
        elif op in ("Q", "C"):
            if not current:
                raise ValueError("Curve without start point")
            ctrl = [(args[i], args[i + 1]) for i in range(0, len(args), 2)]
            current.extend(_bezier([current[-1]] + ctrl))
        elif op == "Z" and current:
            current.append(current[0])
    if len(current) >= 2:
        subpaths.append(current)
    return subpaths


@dataclass(frozen=True)
class PathShape:
    subpaths: Tuple[Tuple[Point, ...], ...]
    stroke: RGBA
    width: int

    def draw(self, draw: ImageDraw.ImageDraw) -> None:
        for points in self.subpaths:
            draw.line(list(points), fill=self.stroke, width=self.width, joint="curve")


def _path(desc: Dict[str, Any]) -> Drawable:
    data = desc.get("pathData", desc.get("path"))
    if data is None:
        raise KeyError("path")
    subpaths = tuple(tuple(p) for p in flatten_path(data))
    if not subpaths:
        raise ValueError("empty path")
    stroke, _ = _paint(desc)
    if stroke is None:
        raise ValueError("path without stroke")
    return PathShape(subpaths=subpaths, stroke=stroke, width=_stroke_width(desc))


def _arrow(desc: Dict[str, Any]) -> Drawable:
    stroke, _ = _paint(desc)
    return ArrowShape(
        start=_point(desc["startPoint"]),
        end=_point(desc["endPoint"]),
        stroke=stroke or (0, 0, 0, 255),
        width=_stroke_width(desc),
        head_size=float(desc.get("arrowheadSize", 10)),
    )


def _dimension(desc: Dict[str, Any]) -> Drawable:
    stroke, _ = _paint(desc)
    custom = desc.get("customData") or {}
    label_style = desc.get("labelStyle") or {}
    value = str(custom.get("dimensionValue") or "").strip()
    unit = str(custom.get("dimensionUnit") or "").strip()
    return DimensionShape(
        start=_point(desc["startPoint"]),
        end=_point(desc["endPoint"]),
        stroke=stroke or (0, 0, 0, 255),
        width=_stroke_width(desc),
        cap_length=float(desc.get("capLength", 10)),
        label=f"{value}{unit}" if value else "",
        label_size=float(label_style.get("fontSize", 14)),
        label_color=parse_color(label_style.get("fontColor", "#000000")) or (0, 0, 0, 255),
        label_background=parse_color(label_style.get("backgroundColor", "#FFFFFF")),
    )


def _text(desc: Dict[str, Any]) -> Drawable:
    text = str(desc["text"])
    sx, _ = _scale(desc)
    return TextShape(
        origin=(_num(desc, "left", 0), _num(desc, "top", 0)),
        text=text,
        size=float(desc.get("fontSize", 16)) * sx,
        fill=parse_color(desc.get("fill") or "#000000") or (0, 0, 0, 255),
        background=parse_color(desc.get("backgroundColor") or desc.get("textBackgroundColor")),
    )


ShapeFactory = Callable[[Dict[str, Any]], Drawable]

SHAPE_FACTORIES: Dict[str, ShapeFactory] = {
    "rect": _rect,
    "circle": _circle,
    "ellipse": _ellipse,
    "line": _line,
    "polyline": _polyline,
    "polylineShape": _polyline,
    "polygon": _polygon,
    "path": _path,
    "freehand": _path,
    "arrow": _arrow,
    "dimensionLine": _dimension,
    "textbox": _text,
    "i-text": _text,
    "text": _text,
}


class ShapeRegistry:
    def __init__(self, factories: Optional[Dict[str, ShapeFactory]] = None) -> None:
        self._factories: Dict[str, ShapeFactory] = dict(SHAPE_FACTORIES if factories is None else factories)

    def register(self, kind: str, factory: ShapeFactory) -> None:
        self._factories[kind] = factory

    def kinds(self) -> List[str]:
        return sorted(self._factories)

    def revive(self, descriptor: Any) -> Optional[Drawable]:
        if not isinstance(descriptor, dict):
            logger.debug("Skipping non-object shape descriptor: %r", descriptor)
            return None
        kind = str(descriptor.get("type", ""))
        factory = self._factories.get(kind)
        if factory is None:
            logger.debug("Skipping unknown shape kind %r", kind)
            return None
        try:
            return factory(descriptor)
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            logger.debug("Skipping malformed %s descriptor: %s", kind, exc)
            return None

    def revive_all(self, graph: Iterable[Any]) -> List[Drawable]:
        drawables: List[Drawable] = []
        for descriptor in graph:
            drawable = self.revive(descriptor)
            if drawable is not None:
                drawables.append(drawable)
        return drawables
