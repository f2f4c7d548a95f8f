from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List

from ..errors import SurveyFormatError
from ..models import ProjectSummary, SurveyImage, SurveyRecord


REQUIRED_FIELDS = {"id", "name", "survey_date", "project"}
REQUIRED_IMAGE_FIELDS = {"id", "width", "height", "file_name"}


def _get(data: dict, key: str, default: Any = None) -> Any:
    """Read snake_case keys, falling back to the camelCase names the API returns."""
    if key in data:
        return data[key]
    head, *rest = key.split("_")
    camel = head + "".join(part.capitalize() for part in rest)
    return data.get(camel, default)


def _missing(data: dict, fields: set) -> List[str]:
    return sorted(field for field in fields if _get(data, field) is None)


def image_from_dict(data: dict, index: int = 0) -> SurveyImage:
    if not isinstance(data, dict):
        raise SurveyFormatError(f"Image #{index} must be an object")
    missing = _missing(data, REQUIRED_IMAGE_FIELDS)
    if missing:
        raise SurveyFormatError(f"Image #{index} missing fields: {', '.join(missing)}")
    try:
        width = int(_get(data, "width"))
        height = int(_get(data, "height"))
        display_order = int(_get(data, "display_order", index))
    except (TypeError, ValueError) as exc:
        raise SurveyFormatError(f"Image #{index} has a non-numeric size or order") from exc
    return SurveyImage(
        id=str(_get(data, "id")),
        original_url=_get(data, "original_url"),
        width=width,
        height=height,
        file_name=str(_get(data, "file_name")),
        comment=_get(data, "comment"),
        include_in_report=bool(_get(data, "include_in_report", True)),
        display_order=display_order,
    )


def survey_from_dict(payload: dict) -> SurveyRecord:
    data = payload.get("data", payload) if isinstance(payload, dict) else payload
    if not isinstance(data, dict):
        raise SurveyFormatError("Survey document must be a JSON object")
    missing = _missing(data, REQUIRED_FIELDS)
    if missing:
        raise SurveyFormatError(f"Survey missing fields: {', '.join(missing)}")

    project = _get(data, "project")
    if not isinstance(project, dict) or not project.get("name"):
        raise SurveyFormatError("Survey project must include a name")

    raw_images = _get(data, "images", []) or []
    if not isinstance(raw_images, list):
        raise SurveyFormatError("Survey images must be a list")
    images = tuple(image_from_dict(item, i) for i, item in enumerate(raw_images))

    return SurveyRecord(
        id=str(_get(data, "id")),
        name=str(_get(data, "name")),
        survey_date=str(_get(data, "survey_date")),
        project=ProjectSummary(id=str(project.get("id", "")), name=str(project["name"])),
        image_count=int(_get(data, "image_count", len(images)) or 0),
        created_at=str(_get(data, "created_at", "") or ""),
        updated_at=str(_get(data, "updated_at", "") or ""),
        memo=_get(data, "memo"),
        images=images,
    )


def load_survey(path: Path) -> SurveyRecord:
    if not path.exists():
        raise FileNotFoundError(f"Survey JSON not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SurveyFormatError(f"Survey JSON is invalid: {exc}") from exc
    return survey_from_dict(payload)
