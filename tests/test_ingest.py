from __future__ import annotations

import json
from pathlib import Path

import pytest

from survey_report.errors import SurveyFormatError
from survey_report.pipeline.ingest import load_survey, survey_from_dict


API_PAYLOAD = {
    "data": {
        "id": "s-1",
        "name": "第一工区現場調査",
        "surveyDate": "2025-12-15",
        "memo": None,
        "project": {"id": "p-1", "name": "駅前再開発工事"},
        "imageCount": 2,
        "createdAt": "2025-12-16T09:30:00.000Z",
        "updatedAt": "2025-12-16T09:30:00.000Z",
        "images": [
            {
                "id": "i-2",
                "originalUrl": "https://cdn.example/i-2.jpg",
                "width": 4000,
                "height": 3000,
                "fileName": "IMG_0002.jpg",
                "comment": "北側外壁",
                "includeInReport": False,
                "displayOrder": 2,
            },
            {
                "id": "i-1",
                "originalUrl": "https://cdn.example/i-1.jpg",
                "width": 4000,
                "height": 3000,
                "fileName": "IMG_0001.jpg",
            },
        ],
    }
}


def test_camel_case_api_payload() -> None:
    survey = survey_from_dict(API_PAYLOAD)
    assert survey.name == "第一工区現場調査"
    assert survey.survey_date == "2025-12-15"
    assert survey.project.name == "駅前再開発工事"
    assert survey.image_count == 2
    first, second = survey.images
    assert first.file_name == "IMG_0002.jpg"
    assert first.include_in_report is False
    assert first.comment == "北側外壁"
    assert second.include_in_report is True
    assert second.display_order == 1
    assert second.original_url == "https://cdn.example/i-1.jpg"


def test_snake_case_file(tmp_path: Path) -> None:
    path = tmp_path / "survey.json"
    path.write_text(
        json.dumps(
            {
                "id": "s-2",
                "name": "屋上防水調査",
                "survey_date": "2025-11-01",
                "project": {"id": "p-2", "name": "北棟改修"},
                "images": [],
            },
            ensure_ascii=False,
        ),
        encoding="utf-8",
    )
    survey = load_survey(path)
    assert survey.images == ()
    assert survey.memo is None


def test_missing_fields_are_reported() -> None:
    with pytest.raises(SurveyFormatError, match="survey_date"):
        survey_from_dict({"id": "s", "name": "x", "project": {"name": "p"}})
    with pytest.raises(SurveyFormatError, match="project"):
        survey_from_dict({"id": "s", "name": "x", "surveyDate": "2025-01-01", "project": {}})
    with pytest.raises(SurveyFormatError, match="file_name"):
        survey_from_dict(
            {
                "id": "s",
                "name": "x",
                "surveyDate": "2025-01-01",
                "project": {"name": "p"},
                "images": [{"id": "i", "width": 1, "height": 1}],
            }
        )


def test_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{", encoding="utf-8")
    with pytest.raises(SurveyFormatError):
        load_survey(path)
    with pytest.raises(FileNotFoundError):
        load_survey(tmp_path / "absent.json")
