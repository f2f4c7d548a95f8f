from __future__ import annotations

from pathlib import Path
from typing import List

import fitz
import pytest
from PIL import Image

from conftest import make_survey
from survey_report.errors import InvalidArgument
from survey_report.models import CompositedImageWithComment, FontRegistrationState, SurveyImage
from survey_report.pipeline.engine import ReportCanvas
from survey_report.pipeline.fonts import GlyphAssetService
from survey_report.pipeline.images import encode_data_url
from survey_report.pipeline.layout import ReportLayoutEngine, ReportOptions


class RecordingCanvas(ReportCanvas):
    def __init__(self, *args, **kwargs):
        ReportCanvas.__init__(self, *args, **kwargs)
        self.texts: List[str] = []

    def draw_text(self, x, y, text, style, align="left"):
        self.texts.append(text)
        ReportCanvas.draw_text(self, x, y, text, style, align=align)


DATA_URL = encode_data_url(Image.new("RGB", (40, 30), "gray"))


def _composited(count: int, comment=None, data_url: str = DATA_URL) -> List[CompositedImageWithComment]:
    items = []
    for i in range(1, count + 1):
        src = SurveyImage(id=f"img-{i}", original_url=f"/p{i}.png", width=400, height=300, file_name=f"photo{i}.jpg")
        items.append(CompositedImageWithComment(source_image=src, raster_data_url=data_url, comment=comment))
    return items


def _layout() -> ReportLayoutEngine:
    return ReportLayoutEngine(glyphs=GlyphAssetService())


def test_grid_report_paginates_three_rows_per_page(tmp_path: Path) -> None:
    canv = RecordingCanvas.create()
    _layout().generate_survey_report(canv, make_survey(), _composited(7, comment="北側外壁"))
    assert canv.page_count == 4

    pdf = tmp_path / "grid.pdf"
    pdf.write_bytes(canv.output())
    with fitz.open(pdf) as doc:
        assert doc.page_count == 4

    assert [t for t in canv.texts if t.startswith("No.")] == [f"No.{i}" for i in range(1, 8)]
    assert ["1 / 4", "2 / 4", "3 / 4", "4 / 4"] == [t for t in canv.texts if " / " in t]


def test_grid_cover_shows_survey_metadata() -> None:
    canv = RecordingCanvas.create()
    survey = make_survey(memo="足場の状態を確認")
    _layout().generate_survey_report(canv, survey, _composited(2))
    for expected in (
        "現場調査報告書",
        "第一工区現場調査",
        "駅前再開発工事",
        "2025年12月15日",
        "2枚",
        "2025年12月16日",
        "足場の状態を確認",
    ):
        assert expected in canv.texts


def test_cover_without_memo_prints_placeholder() -> None:
    canv = RecordingCanvas.create()
    _layout().generate_survey_report(canv, make_survey(), _composited(1))
    assert "（なし）" in canv.texts


def test_grid_comment_is_truncated_to_five_lines() -> None:
    canv = RecordingCanvas.create()
    long_comment = "外壁にひび割れが多数見られるため補修範囲の確認が必要" * 20
    _layout().generate_survey_report(canv, make_survey(), _composited(1, comment=long_comment))
    drawn = [t for t in canv.texts if t.rstrip(".") and t.rstrip(".") in long_comment]
    assert len(drawn) == 5
    assert drawn[-1].endswith("...")


def test_refused_image_becomes_placeholder() -> None:
    canv = RecordingCanvas.create()
    _layout().generate_survey_report(canv, make_survey(), _composited(2, data_url="not-a-data-url"))
    assert canv.texts.count("画像を読み込めませんでした") == 2
    assert canv.output().startswith(b"%PDF")


def test_simple_report_sections_and_overflow() -> None:
    canv = RecordingCanvas.create()
    _layout().generate_report(canv, make_survey(), _composited(4))
    # cover, info + first image, then one image per page
    assert canv.page_count == 5
    assert "基本情報" in canv.texts
    assert "（メモなし）" in canv.texts
    assert "画像一覧" in canv.texts
    assert [t for t in canv.texts if t.startswith("図")] == [f"図{i}: photo{i}.jpg" for i in range(1, 5)]


def test_options_disable_sections() -> None:
    canv = RecordingCanvas.create()
    options = ReportOptions(include_cover_page=False, include_info_section=False, include_page_numbers=False)
    _layout().generate_report(canv, make_survey(), _composited(1), options)
    canv.output()
    assert canv.page_count == 1
    assert "現場調査報告書" not in canv.texts
    assert not [t for t in canv.texts if " / " in t]


def test_font_failure_falls_back_to_cid_font() -> None:
    glyphs = GlyphAssetService()
    canv = RecordingCanvas.create()
    ReportLayoutEngine(glyphs=glyphs).generate_survey_report(canv, make_survey(), _composited(1))
    assert glyphs.state == FontRegistrationState.FAILED
    assert canv.font_family == "HeiseiKakuGo-W5"


def test_requires_engine_and_survey() -> None:
    with pytest.raises(InvalidArgument):
        _layout().generate_survey_report(None, make_survey(), [])
    with pytest.raises(InvalidArgument):
        _layout().generate_report(ReportCanvas.create(), None, [])
