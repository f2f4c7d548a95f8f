from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from .. import config
from ..errors import DocumentAssemblyError, InvalidArgument, NoExportTargets, ReportError
from ..models import (
    CompositedImage,
    CompositedImageWithComment,
    ExportPhase,
    ExportResult,
    PdfBlob,
    ProgressEvent,
    SurveyImage,
    SurveyRecord,
)
from .annotations import DirectoryAnnotationSource, NullAnnotationSource
from .composite import CompositeRenderer
from .engine import ReportCanvas
from .layout import ReportLayoutEngine, ReportOptions

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
SleepFn = Callable[[float], Awaitable[None]]

_INVALID_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f\x7f]')
_WHITESPACE = re.compile(r"\s+")


def sanitize_filename(name: str) -> str:
    cleaned = _INVALID_CHARS.sub("_", name or "")
    return _WHITESPACE.sub("_", cleaned)


def generate_default_filename(survey: SurveyRecord, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d")
    return f"{sanitize_filename(survey.name)}_{stamp}.pdf"


def report_filename(survey: SurveyRecord) -> str:
    return f"{sanitize_filename(survey.name)}_{(survey.survey_date or '').replace('-', '')}.pdf"


# -------------------- cooperative yielding --------------------
class YieldPolicy(Protocol):
    def should_yield(self, done: int, total: int) -> bool:
        ...


@dataclass(frozen=True)
class ThresholdYield:
    """Yield between images only for runs larger than the threshold."""

    threshold: int = config.YIELD_THRESHOLD

    def should_yield(self, done: int, total: int) -> bool:
        return total > self.threshold and done < total


@dataclass(frozen=True)
class EveryNYield:
    n: int = 1

    def should_yield(self, done: int, total: int) -> bool:
        return done < total and done % max(1, self.n) == 0


class NoYield:
    def should_yield(self, done: int, total: int) -> bool:
        return False


class ProgressReporter:
    """Forwards ProgressEvents to a callback, never letting percent or current go backwards."""

    def __init__(self, callback: Optional[ProgressCallback] = None) -> None:
        self._callback = callback
        self._percent = 0
        self._current = 0
        self.events: List[ProgressEvent] = []

    def emit(self, phase: ExportPhase, current: int, total: int, percent: int, message: Optional[str] = None) -> None:
        self._percent = max(self._percent, min(100, max(0, int(percent))))
        self._current = max(self._current, current)
        event = ProgressEvent(phase=phase, current=self._current, total=total, percent=self._percent, message=message)
        self.events.append(event)
        if self._callback is not None:
            self._callback(event)


@dataclass
class ExportOptions:
    filename: Optional[str] = None
    mode: str = "grid"  # grid | simple
    on_progress: Optional[ProgressCallback] = None
    report: Optional[ReportOptions] = None
    image_format: str = config.DEFAULT_IMAGE_FORMAT
    quality: float = config.DEFAULT_IMAGE_QUALITY
    output_dir: Optional[Path] = None


def select_report_images(survey: SurveyRecord, images: Optional[Sequence[SurveyImage]] = None) -> List[SurveyImage]:
    source = survey.images if images is None else images
    selected = [img for img in source if img.include_in_report]
    return sorted(selected, key=lambda img: img.display_order)


class ExportOrchestrator:
    def __init__(
        self,
        renderer: CompositeRenderer,
        layout: ReportLayoutEngine,
        engine_factory: Callable[[], ReportCanvas] = ReportCanvas.create,
        yield_policy: Optional[YieldPolicy] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.renderer = renderer
        self.layout = layout
        self.engine_factory = engine_factory
        self.yield_policy = yield_policy or ThresholdYield()
        self.clock = clock
        self._sleep = sleep

    async def _build(
        self,
        survey: SurveyRecord,
        images: Optional[Sequence[SurveyImage]],
        opts: ExportOptions,
        progress: ProgressReporter,
    ) -> tuple[PdfBlob, int]:
        if survey is None:
            raise InvalidArgument("Survey detail is required")
        targets = select_report_images(survey, images)
        total = len(targets)
        progress.emit(ExportPhase.INITIALIZING, 0, total, 0, "PDF生成を準備しています")

        composited: List[CompositedImage] = []
        for done, image in enumerate(targets, start=1):
            result = await self.renderer.render(image, opts.image_format, opts.quality)
            if result is not None:
                composited.append(
                    CompositedImageWithComment(
                        source_image=result.source_image,
                        raster_data_url=result.raster_data_url,
                        comment=image.comment,
                    )
                )
            progress.emit(ExportPhase.GENERATING, done, total, (90 * done) // total, f"画像を処理中 ({done}/{total})")
            if self.yield_policy.should_yield(done, total):
                await self._sleep(0)

        progress.emit(ExportPhase.FINALIZING, total, total, 95, "PDFを生成しています")
        try:
            canv = self.engine_factory()
            if opts.mode == "simple":
                self.layout.generate_report(canv, survey, composited, opts.report)
            else:
                self.layout.generate_survey_report(canv, survey, composited, opts.report)
            page_count = canv.page_count
            data = canv.output()
        except ReportError:
            raise
        except Exception as exc:
            logger.exception("PDF assembly failed for survey %s", survey.id)
            raise DocumentAssemblyError(f"PDF assembly failed: {exc}") from exc
        logger.info("Report for %s assembled: %d pages, %d bytes", survey.id, page_count, len(data))
        return PdfBlob(data=data), page_count

    async def export_pdf(
        self,
        survey: SurveyRecord,
        images: Optional[Sequence[SurveyImage]] = None,
        options: Optional[ExportOptions] = None,
    ) -> PdfBlob:
        opts = options or ExportOptions()
        progress = ProgressReporter(opts.on_progress)
        blob, _ = await self._build(survey, images, opts, progress)
        progress.emit(ExportPhase.COMPLETE, progress.events[-1].total, progress.events[-1].total, 100, "完了")
        return blob

    def download_blob(self, blob: PdfBlob, filename: Optional[str] = None, directory: Optional[Path] = None) -> Path:
        target_dir = Path(directory) if directory is not None else config.OUT_DIR
        target_dir.mkdir(parents=True, exist_ok=True)
        name = sanitize_filename(filename) if filename else f"report_{self.clock():%Y%m%d}.pdf"
        final_path = target_dir / name

        fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", suffix=".part", dir=target_dir)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(blob.data)
            tmp_path.replace(final_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.info("Report saved to %s", final_path)
        return final_path

    async def export_and_download_pdf(
        self,
        survey: SurveyRecord,
        images: Optional[Sequence[SurveyImage]] = None,
        options: Optional[ExportOptions] = None,
    ) -> ExportResult:
        opts = options or ExportOptions()
        if survey is None:
            raise InvalidArgument("Survey detail is required")
        if not select_report_images(survey, images):
            exc = NoExportTargets(f"No images selected for report: {survey.name}")
            logger.warning("%s", exc)
            return ExportResult(ok=False, error_code=exc.code, error=str(exc))

        progress = ProgressReporter(opts.on_progress)
        blob, page_count = await self._build(survey, images, opts, progress)

        if opts.filename:
            filename = opts.filename
        elif opts.mode == "simple":
            filename = report_filename(survey)
        else:
            filename = generate_default_filename(survey, self.clock())
        path = self.download_blob(blob, filename, opts.output_dir)
        total = progress.events[-1].total
        progress.emit(ExportPhase.COMPLETE, total, total, 100, "完了")
        return ExportResult(ok=True, path=path, filename=path.name, page_count=page_count)


# -------------------- module-level convenience --------------------
def default_orchestrator(annotations=None) -> ExportOrchestrator:
    source = annotations if annotations is not None else NullAnnotationSource()
    if isinstance(source, (str, Path)):
        source = DirectoryAnnotationSource(Path(source))
    return ExportOrchestrator(CompositeRenderer(source), ReportLayoutEngine())


async def export_pdf(
    survey: SurveyRecord,
    images: Optional[Sequence[SurveyImage]] = None,
    options: Optional[ExportOptions] = None,
) -> PdfBlob:
    orchestrator = default_orchestrator()
    try:
        return await orchestrator.export_pdf(survey, images, options)
    finally:
        await orchestrator.renderer.aclose()


def download_blob(blob: PdfBlob, filename: Optional[str] = None, directory: Optional[Path] = None) -> Path:
    return default_orchestrator().download_blob(blob, filename, directory)


async def export_and_download_pdf(
    survey: SurveyRecord,
    images: Optional[Sequence[SurveyImage]] = None,
    options: Optional[ExportOptions] = None,
) -> ExportResult:
    orchestrator = default_orchestrator()
    try:
        return await orchestrator.export_and_download_pdf(survey, images, options)
    finally:
        await orchestrator.renderer.aclose()
