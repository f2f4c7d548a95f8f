"""
Document engine used by the report layout.

ReportCanvas is a reportlab canvas that keeps every finished page in memory
until save(), so page decorators (page numbers) can run over the complete
document once the total page count is known.
"""

from __future__ import annotations

import base64
import binascii
import io
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas

PageDecorator = Callable[["ReportCanvas", int, int], None]


def _hex(value: str, default=colors.black) -> colors.Color:
    if not value:
        return default
    try:
        return colors.HexColor("#" + str(value).lstrip("#"))
    except Exception:
        return default


@dataclass(frozen=True)
class DrawStyle:
    font_name: str = "Helvetica"
    font_size: float = 10.0
    fill_color: str = "#1E1E1E"
    stroke_color: str = "#1E1E1E"
    line_width: float = 1.0
    dash: Optional[Tuple[float, float]] = None


def decode_data_url(data_url: str) -> bytes:
    """Return the binary payload of a base64 ``data:`` URL."""
    if not data_url or not data_url.startswith("data:"):
        raise ValueError("Not a data URL")
    header, sep, payload = data_url.partition(",")
    if not sep or ";base64" not in header:
        raise ValueError("Only base64 data URLs are supported")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc


class ReportCanvas(canvas.Canvas):
    def __init__(self, *args, **kwargs):
        canvas.Canvas.__init__(self, *args, **kwargs)
        self._saved_page_states: List[dict] = []
        self._font_assets: Dict[str, bytes] = {}
        self.page_decorators: List[PageDecorator] = []
        self.font_family: Optional[str] = None

    @classmethod
    def create(cls, page_size: Tuple[float, float] = A4) -> "ReportCanvas":
        buffer = io.BytesIO()
        canv = cls(buffer, pagesize=page_size)
        canv._buffer = buffer
        return canv

    # -------------------- virtual asset store --------------------
    def has_font_asset(self, file_name: str) -> bool:
        return file_name in self._font_assets

    def add_font_asset(self, file_name: str, data: bytes) -> None:
        self._font_assets[file_name] = data

    def register_font(self, file_name: str, family: str) -> None:
        if family in pdfmetrics.getRegisteredFontNames():
            return
        data = self._font_assets.get(file_name)
        if data is None:
            raise KeyError(f"Font asset not loaded: {file_name}")
        pdfmetrics.registerFont(TTFont(family, io.BytesIO(data)))

    def activate_font(self, family: str, size: Optional[float] = None) -> None:
        self.setFont(family, self._fontsize if size is None else size)
        self.font_family = family

    # -------------------- pages --------------------
    @property
    def page_size(self) -> Tuple[float, float]:
        return self._pagesize

    @property
    def page_count(self) -> int:
        return len(self._saved_page_states)

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        total = len(self._saved_page_states)
        for number, state in enumerate(self._saved_page_states, start=1):
            self.__dict__.update(state)
            for decorate in self.page_decorators:
                decorate(self, number, total)
            canvas.Canvas.showPage(self)
        canvas.Canvas.save(self)

    def output(self) -> bytes:
        self.save()
        return self._buffer.getvalue()

    # -------------------- styled drawing --------------------
    def apply_style(self, style: DrawStyle) -> None:
        self.setFont(style.font_name, style.font_size)
        self.setFillColor(_hex(style.fill_color))
        self.setStrokeColor(_hex(style.stroke_color))
        self.setLineWidth(style.line_width)
        if style.dash:
            self.setDash(list(style.dash), 0)
        else:
            self.setDash([], 0)

    def draw_text(self, x: float, y: float, text: str, style: DrawStyle, align: str = "left") -> None:
        self.saveState()
        self.apply_style(style)
        if align == "center":
            self.drawCentredString(x, y, text)
        elif align == "right":
            self.drawRightString(x, y, text)
        else:
            self.drawString(x, y, text)
        self.restoreState()

    def draw_line(self, x1: float, y1: float, x2: float, y2: float, style: DrawStyle) -> None:
        self.saveState()
        self.apply_style(style)
        self.line(x1, y1, x2, y2)
        self.restoreState()

    def draw_box(self, x: float, y: float, w: float, h: float, style: DrawStyle, fill: bool = True) -> None:
        self.saveState()
        self.apply_style(style)
        self.rect(x, y, w, h, stroke=1, fill=1 if fill else 0)
        self.restoreState()

    def draw_data_url(self, data_url: str, x: float, y: float, w: float, h: float) -> None:
        """Draw a base64 raster data URL; raises if the engine refuses the image."""
        reader = ImageReader(io.BytesIO(decode_data_url(data_url)))
        self.drawImage(reader, x, y, width=w, height=h)

    def text_width(self, text: str, style: DrawStyle) -> float:
        return pdfmetrics.stringWidth(text, style.font_name, style.font_size)
