from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont

from .. import config
from ..errors import InvalidArgument
from ..models import CompositedImage, CompositedImageWithComment, SurveyRecord
from .engine import DrawStyle, ReportCanvas
from .fonts import GlyphAssetService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LayoutConstants:
    # lengths in mm, font sizes in pt
    page_margin: float = 15.0
    title_font_size: float = 24.0
    subtitle_font_size: float = 14.0
    header_font_size: float = 12.0
    body_font_size: float = 10.0
    small_font_size: float = 8.0
    section_margin: float = 10.0
    image_margin: float = 5.0
    image_max_width_ratio: float = 0.9
    image_max_height_ratio: float = 0.6
    # grid rows
    header_height: float = 5.0
    images_per_page: int = 3
    row_height: float = 75.0
    row_gap: float = 5.0
    image_width_ratio: float = 0.45
    image_max_height: float = 70.0
    comment_width_ratio: float = 0.45
    comment_font_size: float = 10.0
    comment_max_lines: int = 5
    guide_line_count: int = 8
    guide_line_spacing: float = 6.5
    cover_memo_max_lines: int = 5

    @property
    def effective_images_per_page(self) -> int:
        return max(1, int(self.images_per_page))


DEFAULT_CONSTANTS = LayoutConstants()

REPORT_LABELS = {
    "title": "現場調査報告書",
    "project": "工事名：",
    "survey_date": "調査日：",
    "image_count": "画像数：",
    "created": "作成日：",
    "memo": "メモ：",
    "no_memo_cover": "（なし）",
    "no_memo": "（メモなし）",
    "info_section": "基本情報",
    "images_section": "画像一覧",
    "placeholder": "画像を読み込めませんでした",
}

_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")


@dataclass(frozen=True)
class ReportOptions:
    include_cover_page: bool = True
    include_info_section: bool = True
    include_images: bool = True
    include_page_numbers: bool = True


def fit_within_box(width: float, height: float, max_width: float, max_height: float) -> Tuple[float, float]:
    """
    Scale (width, height) to fill max_width, then shrink to max_height if needed.
    Aspect ratio is preserved; a non-positive source size returns the box itself.
    """
    if width <= 0 or height <= 0:
        return max_width, max_height
    ratio = width / height
    out_w = max_width
    out_h = max_width / ratio
    if out_h > max_height:
        out_h = max_height
        out_w = max_height * ratio
    return out_w, out_h


def truncate_lines(lines: Sequence[str], max_lines: int) -> List[str]:
    if not lines:
        return []
    if len(lines) <= max_lines:
        return list(lines)
    kept = list(lines[:max_lines])
    if kept:
        kept[-1] = kept[-1] + "..."
    return kept


def split_text_to_size(text: str, font_name: str, font_size: float, max_width: float) -> List[str]:
    """
    Wrap text to max_width (points) using font metrics.

    Explicit newlines are kept; words break on whitespace and a token wider
    than the line (e.g. a Japanese sentence without spaces) breaks per character.
    """
    if not text:
        return []

    def width(s: str) -> float:
        return pdfmetrics.stringWidth(s, font_name, font_size)

    lines: List[str] = []
    for paragraph in text.replace("\r\n", "\n").split("\n"):
        words = paragraph.split()
        if not words:
            lines.append("")
            continue
        cur = ""
        for w in words:
            test = f"{cur} {w}" if cur else w
            if width(test) <= max_width:
                cur = test
                continue
            if cur:
                lines.append(cur)
                cur = ""
            if width(w) <= max_width:
                cur = w
                continue
            for ch in w:
                if cur and width(cur + ch) > max_width:
                    lines.append(cur)
                    cur = ch
                else:
                    cur += ch
        if cur:
            lines.append(cur)
    return lines


def format_date_for_pdf(value: str) -> str:
    """'2025-12-15' -> '2025年12月15日'; anything else is returned unchanged."""
    if not value:
        return ""
    m = _DATE_RE.match(value.strip())
    if not m:
        return value
    y, mo, d = m.groups()
    return f"{y}年{int(mo)}月{int(d)}日"


def _comment_of(image: CompositedImage) -> Optional[str]:
    if isinstance(image, CompositedImageWithComment) and image.comment is not None:
        return image.comment
    return image.source_image.comment


class _PageWriter:
    """Draws on a ReportCanvas with mm coordinates measured from the page top."""

    def __init__(self, canv: ReportCanvas, font_name: str) -> None:
        self.canv = canv
        self.font_name = font_name
        page_w, page_h = canv.page_size
        self.page_w = page_w / mm
        self.page_h = page_h / mm

    def _y(self, top: float) -> float:
        return (self.page_h - top) * mm

    def text(self, x: float, y: float, text: str, size: float, color: str, align: str = "left") -> None:
        style = DrawStyle(font_name=self.font_name, font_size=size, fill_color=color, stroke_color=color)
        self.canv.draw_text(x * mm, self._y(y), text, style, align=align)

    def line(self, x1: float, y1: float, x2: float, y2: float, color: str, width: float,
             dash: Optional[Tuple[float, float]] = None) -> None:
        style = DrawStyle(
            font_name=self.font_name,
            stroke_color=color,
            line_width=width * mm,
            dash=(dash[0] * mm, dash[1] * mm) if dash else None,
        )
        self.canv.draw_line(x1 * mm, self._y(y1), x2 * mm, self._y(y2), style)

    def box(self, x: float, y: float, w: float, h: float, fill: str, stroke: str) -> None:
        style = DrawStyle(font_name=self.font_name, fill_color=fill, stroke_color=stroke, line_width=0.2 * mm)
        self.canv.draw_box(x * mm, self._y(y + h), w * mm, h * mm, style)

    def image(self, data_url: str, x: float, y: float, w: float, h: float) -> None:
        self.canv.draw_data_url(data_url, x * mm, self._y(y + h), w * mm, h * mm)

    def text_width(self, text: str, size: float) -> float:
        return self.canv.text_width(text, DrawStyle(font_name=self.font_name, font_size=size)) / mm

    def split(self, text: str, size: float, max_width: float) -> List[str]:
        return split_text_to_size(text, self.font_name, size, max_width * mm)

    def new_page(self) -> None:
        self.canv.showPage()


class ReportLayoutEngine:
    """
    Lays out a survey report on a ReportCanvas.

    generate_report() is the sectioned layout (cover, basic info, one image per
    slot); generate_survey_report() is the 3-rows-per-page photo sheet with a
    comment area next to every image.
    """

    def __init__(
        self,
        glyphs: Optional[GlyphAssetService] = None,
        constants: LayoutConstants = DEFAULT_CONSTANTS,
        style: Optional[dict] = None,
    ) -> None:
        self.glyphs = glyphs or GlyphAssetService()
        self.constants = constants
        self.style = style if style is not None else config.load_style_preset()

    def _c(self, key: str, default: str = "#1E1E1E") -> str:
        return str(self.style.get(key, default))

    # -------------------- fonts --------------------
    def _setup_font(self, canv: ReportCanvas) -> str:
        try:
            self.glyphs.initialize(canv)
            return self.glyphs.get_family_name()
        except Exception as exc:
            logger.warning("Embedded font unavailable, falling back to %s: %s", config.FALLBACK_CID_FONT, exc)
        try:
            if config.FALLBACK_CID_FONT not in pdfmetrics.getRegisteredFontNames():
                pdfmetrics.registerFont(UnicodeCIDFont(config.FALLBACK_CID_FONT))
            canv.activate_font(config.FALLBACK_CID_FONT)
            return config.FALLBACK_CID_FONT
        except Exception as exc:
            logger.warning("CID font unavailable, using %s: %s", config.FALLBACK_FONT, exc)
        canv.activate_font(config.FALLBACK_FONT)
        return config.FALLBACK_FONT

    @staticmethod
    def _validate(canv: ReportCanvas, survey: SurveyRecord) -> None:
        if canv is None:
            raise InvalidArgument("Document engine is required")
        if survey is None:
            raise InvalidArgument("Survey detail is required")

    # -------------------- shared pieces --------------------
    def _draw_image(self, pen: _PageWriter, image: CompositedImage, x: float, y: float, w: float, h: float) -> None:
        try:
            pen.image(image.raster_data_url, x, y, w, h)
        except Exception as exc:
            logger.warning("Image %s rejected by PDF engine, drawing placeholder: %s", image.source_image.id, exc)
            pen.box(x, y, w, h, self._c("placeholder_fill", "#F0F0F0"), self._c("placeholder_stroke", "#C8C8C8"))
            pen.text(
                x + w / 2,
                y + h / 2,
                REPORT_LABELS["placeholder"],
                self.constants.body_font_size,
                self._c("placeholder_text", "#969696"),
                align="center",
            )

    def _add_page_numbers(self, canv: ReportCanvas, font_name: str) -> None:
        size = self.constants.small_font_size
        color = self._c("page_number_color", "#787878")

        def stamp(target: ReportCanvas, number: int, total: int) -> None:
            pen = _PageWriter(target, font_name)
            pen.text(pen.page_w / 2, pen.page_h - 10, f"{number} / {total}", size, color, align="center")

        canv.page_decorators.append(stamp)

    def render_cover_page(self, pen: _PageWriter, survey: SurveyRecord, image_count: Optional[int] = None) -> None:
        k = self.constants
        center = pen.page_w / 2
        text_color = self._c("title_color")
        label_color = self._c("label_color", "#505050")
        value_color = self._c("text_color")

        pen.text(center, 55, REPORT_LABELS["title"], k.title_font_size, text_color, align="center")
        pen.text(center, 85, survey.name, k.subtitle_font_size + 4, text_color, align="center")
        pen.line(k.page_margin + 30, 105, pen.page_w - k.page_margin - 30, 105, self._c("rule_color", "#505050"), 0.5)

        info_y = 135.0
        label_x = k.page_margin + 25
        size = k.header_font_size
        value_x = label_x + pen.text_width(REPORT_LABELS["project"], size) + 3
        count = survey.image_count if image_count is None else image_count
        created = (survey.created_at or "").split("T")[0]

        rows = [
            (REPORT_LABELS["project"], survey.project.name),
            (REPORT_LABELS["survey_date"], format_date_for_pdf(survey.survey_date)),
            (REPORT_LABELS["image_count"], f"{count}枚"),
            (REPORT_LABELS["created"], format_date_for_pdf(created)),
        ]
        for i, (label, value) in enumerate(rows):
            y = info_y + 15 * i
            pen.text(label_x, y, label, size, label_color)
            pen.text(value_x, y, value, size, value_color)

        memo_y = info_y + 15 * len(rows)
        pen.text(label_x, memo_y, REPORT_LABELS["memo"], size, label_color)
        if survey.memo and survey.memo.strip():
            lines = pen.split(survey.memo, size, pen.page_w - value_x - k.page_margin)
            for line in truncate_lines(lines, k.cover_memo_max_lines):
                pen.text(value_x, memo_y, line, size, value_color)
                memo_y += 6
        else:
            pen.text(value_x, memo_y, REPORT_LABELS["no_memo_cover"], size, self._c("muted_color", "#787878"))

    def render_info_section(self, pen: _PageWriter, survey: SurveyRecord, start_y: float) -> float:
        k = self.constants
        y = start_y
        pen.text(k.page_margin, y, REPORT_LABELS["info_section"], k.header_font_size, self._c("title_color"))
        y += 8
        pen.line(k.page_margin, y, pen.page_w - k.page_margin, y, self._c("rule_color", "#505050"), 0.3)
        y += 8

        pen.text(k.page_margin, y, REPORT_LABELS["memo"], k.body_font_size, self._c("label_color", "#505050"))
        y += 6
        content_w = pen.page_w - k.page_margin * 2
        if survey.memo:
            for line in pen.split(survey.memo, k.body_font_size, content_w - 5):
                pen.text(k.page_margin + 5, y, line, k.body_font_size, self._c("text_color"))
                y += 5
        else:
            pen.text(k.page_margin + 5, y, REPORT_LABELS["no_memo"], k.body_font_size, self._c("muted_color", "#787878"))
            y += 5
        return y + k.section_margin

    def render_images_section(self, pen: _PageWriter, images: Sequence[CompositedImage], start_y: float) -> float:
        if not images:
            return start_y
        k = self.constants
        content_w = pen.page_w - k.page_margin * 2
        max_w = content_w * k.image_max_width_ratio
        max_h = (pen.page_h - k.page_margin * 2) * k.image_max_height_ratio

        y = start_y
        pen.text(k.page_margin, y, REPORT_LABELS["images_section"], k.header_font_size, self._c("title_color"))
        y += 8
        pen.line(k.page_margin, y, pen.page_w - k.page_margin, y, self._c("rule_color", "#505050"), 0.3)
        y += 10

        for index, image in enumerate(images):
            src = image.source_image
            w, h = fit_within_box(src.width, src.height, max_w, max_h)
            if y + h + 20 > pen.page_h - k.page_margin - 20:
                pen.new_page()
                y = k.page_margin + 10
            x = k.page_margin + (content_w - w) / 2
            self._draw_image(pen, image, x, y, w, h)
            y += h + 5
            pen.text(
                pen.page_w / 2,
                y,
                f"図{index + 1}: {src.file_name}",
                k.small_font_size,
                self._c("label_color", "#505050"),
                align="center",
            )
            y += k.image_margin + 10
        return y

    def render_images_grid(self, pen: _PageWriter, images: Sequence[CompositedImage], start_y: float) -> float:
        if not images:
            return start_y
        k = self.constants
        per_page = k.effective_images_per_page
        content_w = pen.page_w - k.page_margin * 2
        image_box_w = content_w * k.image_width_ratio
        comment_w = content_w * k.comment_width_ratio
        text_color = self._c("text_color")

        y = start_y
        for index, image in enumerate(images):
            if index > 0 and index % per_page == 0:
                pen.new_page()
                y = k.page_margin + k.header_height

            src = image.source_image
            x = k.page_margin
            w, h = fit_within_box(src.width, src.height, image_box_w, k.image_max_height)
            self._draw_image(pen, image, x, y, w, h)

            comment_x = x + image_box_w + 10
            comment_right = comment_x + comment_w - 10
            pen.text(comment_x, y + 4, f"No.{index + 1}", 11, text_color)
            guide_y = y + 6
            pen.line(comment_x, guide_y, comment_right, guide_y, text_color, 0.5)
            guide_y += 10

            comment = _comment_of(image)
            lines: List[str] = []
            if comment and comment.strip():
                lines = truncate_lines(pen.split(comment, k.comment_font_size, comment_w - 15), k.comment_max_lines)
            for i in range(k.guide_line_count):
                line_y = guide_y + i * k.guide_line_spacing
                if i < len(lines) and lines[i]:
                    pen.text(comment_x, line_y - 1, lines[i], k.comment_font_size, text_color)
                pen.line(comment_x, line_y, comment_right, line_y, self._c("guide_color", "#646464"), 0.2,
                         dash=(0.5, 1.5))

            y += k.row_height + k.row_gap
        return y

    # -------------------- entry points --------------------
    def generate_report(
        self,
        canv: ReportCanvas,
        survey: SurveyRecord,
        images: Sequence[CompositedImage],
        options: Optional[ReportOptions] = None,
    ) -> ReportCanvas:
        self._validate(canv, survey)
        opts = options or ReportOptions()
        k = self.constants
        font_name = self._setup_font(canv)
        pen = _PageWriter(canv, font_name)

        y = k.page_margin
        if opts.include_cover_page:
            self.render_cover_page(pen, survey)
            pen.new_page()
            y = k.page_margin + 10
        if opts.include_info_section:
            y = self.render_info_section(pen, survey, y)
        if opts.include_images:
            self.render_images_section(pen, images, y)

        # an untouched trailing page after the cover is dropped
        if opts.include_info_section or (opts.include_images and images) or canv.page_count == 0:
            pen.new_page()
        if opts.include_page_numbers:
            self._add_page_numbers(canv, font_name)
        return canv

    def generate_survey_report(
        self,
        canv: ReportCanvas,
        survey: SurveyRecord,
        images: Sequence[CompositedImage],
        options: Optional[ReportOptions] = None,
    ) -> ReportCanvas:
        self._validate(canv, survey)
        opts = options or ReportOptions()
        k = self.constants
        font_name = self._setup_font(canv)
        pen = _PageWriter(canv, font_name)

        if opts.include_cover_page:
            self.render_cover_page(pen, survey, image_count=len(images))
            pen.new_page()
        if opts.include_images and images:
            self.render_images_grid(pen, images, k.page_margin + k.header_height)
            pen.new_page()
        if canv.page_count == 0:
            pen.new_page()
        if opts.include_page_numbers:
            self._add_page_numbers(canv, font_name)
        return canv
