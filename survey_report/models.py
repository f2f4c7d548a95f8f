from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from sqlmodel import Field, SQLModel, create_engine, Session

from . import config


class ExportPhase(str, Enum):
    INITIALIZING = "initializing"
    GENERATING = "generating"
    FINALIZING = "finalizing"
    COMPLETE = "complete"


class FontRegistrationState(str, Enum):
    NOT_LOADED = "not_loaded"
    LOADED = "loaded"
    FAILED = "failed"


class ExportStatus(str, Enum):
    READY = "READY"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ProjectSummary:
    id: str
    name: str


@dataclass(frozen=True)
class SurveyImage:
    id: str
    original_url: Optional[str]
    width: int
    height: int
    file_name: str
    comment: Optional[str] = None
    include_in_report: bool = True
    display_order: int = 0


@dataclass(frozen=True)
class SurveyRecord:
    id: str
    name: str
    survey_date: str                 # YYYY-MM-DD
    project: ProjectSummary
    image_count: int = 0
    created_at: str = ""             # ISO8601
    updated_at: str = ""
    memo: Optional[str] = None
    images: Tuple[SurveyImage, ...] = ()


# Ordered shape descriptors, each tagged by its "type" key
AnnotationGraph = Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class CompositedImage:
    source_image: SurveyImage
    raster_data_url: str


@dataclass(frozen=True)
class CompositedImageWithComment(CompositedImage):
    comment: Optional[str] = None


@dataclass(frozen=True)
class ProgressEvent:
    phase: ExportPhase
    current: int
    total: int
    percent: int
    message: Optional[str] = None


@dataclass(frozen=True)
class PdfBlob:
    data: bytes
    mime_type: str = "application/pdf"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ExportResult:
    ok: bool
    path: Optional[Path] = None
    filename: Optional[str] = None
    page_count: Optional[int] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class ExportRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    survey_id: str = Field(index=True)
    survey_name: str
    status: ExportStatus = Field(default=ExportStatus.READY)
    filename: Optional[str] = None
    path: Optional[str] = None
    image_count: int = 0
    fail_code: Optional[str] = None
    fail_detail: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


engine = create_engine(f"sqlite:///{config.DB_PATH}")


def reset_engine() -> None:
    global engine
    engine = create_engine(f"sqlite:///{config.DB_PATH}")


def init_db() -> None:
    config.OUT_DIR.mkdir(parents=True, exist_ok=True)
    SQLModel.metadata.create_all(engine)


def get_session() -> Session:
    return Session(engine, expire_on_commit=False)
