from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import pytest
from PIL import Image

from survey_report import config
from survey_report.models import ProjectSummary, SurveyImage, SurveyRecord, reset_engine


@pytest.fixture(autouse=True)
def isolated_out_dir(tmp_path: Path):
    previous_out = config.OUT_DIR
    previous_font = config.FONT_PAYLOAD_PATH
    previous_annotation_font = config.ANNOTATION_FONT_PATH
    config.set_out_dir(tmp_path / "out")
    # no bundled payload in the test tree; layout falls back to the CID font
    config.set_font_payload_path(tmp_path / "missing-font.b64")
    reset_engine()
    yield tmp_path / "out"
    config.set_out_dir(previous_out)
    config.set_font_payload_path(previous_font)
    config.set_annotation_font_path(previous_annotation_font)
    reset_engine()


def write_photo(path: Path, size=(80, 60), color="white") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, format="PNG")
    return path


def make_images(directory: Path, count: int, comment: Optional[str] = None, **overrides) -> List[SurveyImage]:
    images = []
    for i in range(1, count + 1):
        photo = write_photo(directory / f"photo{i}.png")
        fields = dict(
            id=f"img-{i}",
            original_url=str(photo),
            width=80,
            height=60,
            file_name=f"photo{i}.png",
            comment=comment,
            include_in_report=True,
            display_order=i,
        )
        fields.update(overrides)
        images.append(SurveyImage(**fields))
    return images


def make_survey(images=(), memo: Optional[str] = None, name: str = "第一工区現場調査") -> SurveyRecord:
    return SurveyRecord(
        id="survey-1",
        name=name,
        survey_date="2025-12-15",
        project=ProjectSummary(id="project-1", name="駅前再開発工事"),
        image_count=len(images),
        created_at="2025-12-16T09:30:00Z",
        updated_at="2025-12-16T09:30:00Z",
        memo=memo,
        images=tuple(images),
    )
