from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from . import config
from .errors import ReportError
from .models import ExportResult, ExportStatus, ProgressEvent, SurveyRecord, reset_engine
from .pipeline.annotations import DirectoryAnnotationSource, HttpAnnotationSource, NullAnnotationSource
from .pipeline.composite import CompositeRenderer
from .pipeline.export import ExportOptions, ExportOrchestrator, select_report_images
from .pipeline.ingest import load_survey
from .pipeline.layout import ReportLayoutEngine
from .pipeline.preview import render_previews
from .storage import export_dir, list_exports, record_export

app = typer.Typer(help="Site survey PDF report pipeline")
logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _log_progress(event: ProgressEvent) -> None:
    logger.debug("%s %d/%d %d%%", event.phase.value, event.current, event.total, event.percent)


async def _run_export(
    survey: SurveyRecord,
    annotations: Optional[Path],
    api_url: Optional[str],
    options: ExportOptions,
) -> ExportResult:
    if api_url:
        source = HttpAnnotationSource(api_url)
    elif annotations:
        source = DirectoryAnnotationSource(annotations)
    else:
        source = NullAnnotationSource()
    renderer = CompositeRenderer(source, image_format=options.image_format, quality=options.quality)
    orchestrator = ExportOrchestrator(renderer, ReportLayoutEngine())
    try:
        return await orchestrator.export_and_download_pdf(survey, options=options)
    finally:
        await renderer.aclose()


@app.command()
def export(
    survey_json: Path = typer.Argument(..., help="Survey JSON document"),
    annotations: Optional[Path] = typer.Option(None, "--annotations", help="Directory of {image_id}.json annotation files"),
    api_url: Optional[str] = typer.Option(None, "--api-url", help="Base URL of the annotation API"),
    annotation_font: Optional[Path] = typer.Option(None, "--annotation-font", help="TTF for text drawn onto photos"),
    out: Optional[Path] = typer.Option(None, "--out", help="Output directory"),
    mode: str = typer.Option("grid", "--mode", help="grid | simple"),
    filename: Optional[str] = typer.Option(None, "--filename", help="Output file name"),
    preview: bool = typer.Option(False, "--preview", help="Render PNG previews of the report"),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging"),
) -> None:
    _configure_logging(verbose)
    if mode not in ("grid", "simple"):
        raise typer.BadParameter("mode must be 'grid' or 'simple'", param_hint="--mode")
    if out:
        config.set_out_dir(out)
        reset_engine()
    if annotation_font:
        config.set_annotation_font_path(annotation_font)

    try:
        survey = load_survey(survey_json)
    except (FileNotFoundError, ReportError) as exc:
        typer.echo(f"FAILED: {exc}")
        raise typer.Exit(code=1)

    image_count = len(select_report_images(survey))
    options = ExportOptions(
        filename=filename,
        mode=mode,
        on_progress=_log_progress,
        output_dir=export_dir(survey, create=False),
    )
    failure: Optional[Exception] = None
    result: Optional[ExportResult] = None
    try:
        result = asyncio.run(_run_export(survey, annotations, api_url, options))
    except Exception as exc:
        logger.exception("Export failed for %s", survey.id)
        failure = exc

    if failure is not None:
        record_export(
            survey,
            ExportStatus.FAILED,
            image_count=image_count,
            fail_code=getattr(failure, "code", type(failure).__name__),
            fail_detail=str(failure),
        )
        typer.echo(f"FAILED: {failure}")
        raise typer.Exit(code=1)

    if not result.ok:
        record_export(
            survey,
            ExportStatus.FAILED,
            image_count=image_count,
            fail_code=result.error_code,
            fail_detail=result.error,
        )
        typer.echo(f"FAILED: {result.error_code}: {result.error}")
        raise typer.Exit(code=1)

    record_export(survey, ExportStatus.READY, path=result.path, image_count=image_count)
    typer.echo(f"READY: {result.path} ({result.page_count} pages)")
    if preview:
        for png in render_previews(result.path):
            typer.echo(f"Preview: {png}")


@app.command()
def history(
    out: Optional[Path] = typer.Option(None, "--out", help="Output directory"),
    survey_id: Optional[str] = typer.Option(None, "--survey", help="Filter by survey id"),
    limit: int = typer.Option(20, "--limit", help="Number of records"),
) -> None:
    if out:
        config.set_out_dir(out)
        reset_engine()
    records = list_exports(survey_id=survey_id, limit=limit)
    if not records:
        typer.echo("No exports recorded")
        return
    for record in records:
        line = f"{record.created_at:%Y-%m-%d %H:%M} {record.status.value} {record.survey_name}"
        if record.status == ExportStatus.READY:
            line += f" -> {record.path}"
        else:
            line += f" ({record.fail_code}: {record.fail_detail})"
        typer.echo(line)


if __name__ == "__main__":
    app()
