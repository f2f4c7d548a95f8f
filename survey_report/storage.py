from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import List

from slugify import slugify
from sqlmodel import select

from . import config
from .models import ExportRecord, ExportStatus, SurveyRecord, get_session, init_db


def survey_slug(survey: SurveyRecord) -> str:
    slug = slugify(survey.name or "")
    slug = re.sub(r"[^a-z0-9-]+", "-", slug.lower()).strip("-")
    if not slug:
        slug = hashlib.md5(f"{survey.id}:{survey.name}".encode("utf-8")).hexdigest()[:12]
    if ".." in slug or "/" in slug or "\\" in slug:
        raise ValueError("Invalid slug generated from survey name")
    return slug


def export_dir(survey: SurveyRecord, base_dir: Path | None = None, create: bool = True) -> Path:
    root = base_dir or config.OUT_DIR
    path = root / survey_slug(survey)
    if create:
        path.mkdir(parents=True, exist_ok=True)
    return path


def record_export(
    survey: SurveyRecord,
    status: ExportStatus,
    path: Path | None = None,
    image_count: int = 0,
    fail_code: str | None = None,
    fail_detail: str | None = None,
) -> ExportRecord:
    init_db()
    record = ExportRecord(
        survey_id=survey.id,
        survey_name=survey.name,
        status=status,
        filename=path.name if path is not None else None,
        path=str(path) if path is not None else None,
        image_count=image_count,
        fail_code=fail_code,
        fail_detail=fail_detail,
    )
    with get_session() as session:
        session.add(record)
        session.commit()
        session.refresh(record)
    return record


def list_exports(survey_id: str | None = None, limit: int = 50) -> List[ExportRecord]:
    init_db()
    with get_session() as session:
        statement = select(ExportRecord)
        if survey_id:
            statement = statement.where(ExportRecord.survey_id == survey_id)
        statement = statement.order_by(ExportRecord.id.desc()).limit(limit)
        return list(session.exec(statement))
