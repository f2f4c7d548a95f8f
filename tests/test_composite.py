from __future__ import annotations

import asyncio
import io
from pathlib import Path
from typing import List

from PIL import Image

from conftest import make_images, write_photo
from survey_report.errors import AnnotationFetchError
from survey_report.models import SurveyImage
from survey_report.pipeline.composite import CompositeRenderer, CompositingSurface
from survey_report.pipeline.engine import decode_data_url
from survey_report.pipeline.images import ImageLoader
from survey_report.pipeline.shapes import ShapeRegistry


class DictAnnotationSource:
    def __init__(self, graphs: dict, failing: tuple = ()) -> None:
        self.graphs = graphs
        self.failing = failing
        self.calls: List[str] = []

    async def fetch_annotation_graph(self, image_id: str):
        self.calls.append(image_id)
        if image_id in self.failing:
            raise AnnotationFetchError(f"annotation service down for {image_id}")
        return self.graphs.get(image_id)


def _decode(data_url: str) -> Image.Image:
    return Image.open(io.BytesIO(decode_data_url(data_url)))


def test_image_without_url_is_skipped() -> None:
    source = DictAnnotationSource({})
    renderer = CompositeRenderer(source)
    image = SurveyImage(id="img-1", original_url=None, width=10, height=10, file_name="a.png")
    assert asyncio.run(renderer.render(image)) is None
    assert source.calls == []


def test_raw_image_when_no_annotations(tmp_path: Path) -> None:
    [image] = make_images(tmp_path, 1)
    renderer = CompositeRenderer(DictAnnotationSource({}))
    result = asyncio.run(renderer.render(image))
    assert result.source_image == image
    assert result.raster_data_url.startswith("data:image/jpeg;base64,")
    assert _decode(result.raster_data_url).size == (80, 60)


def test_overlay_is_flattened_onto_photo(tmp_path: Path) -> None:
    [image] = make_images(tmp_path, 1)
    graph = ({"type": "rect", "left": 10, "top": 10, "width": 20, "height": 20, "fill": "#ff0000"},)
    renderer = CompositeRenderer(DictAnnotationSource({"img-1": graph}), image_format="PNG")
    result = asyncio.run(renderer.render(image))
    flat = _decode(result.raster_data_url).convert("RGB")
    assert flat.getpixel((20, 20)) == (255, 0, 0)
    assert flat.getpixel((60, 50)) == (255, 255, 255)


def test_unrevivable_shapes_leave_raw_pixels(tmp_path: Path) -> None:
    [image] = make_images(tmp_path, 1)
    graph = ({"type": "sticker"}, {"type": "rect", "left": 0})
    renderer = CompositeRenderer(DictAnnotationSource({"img-1": graph}), image_format="PNG")
    result = asyncio.run(renderer.render(image))
    assert _decode(result.raster_data_url).convert("RGB").getpixel((5, 5)) == (255, 255, 255)


def test_annotation_fetch_failure_falls_back_to_raw_image(tmp_path: Path) -> None:
    images = make_images(tmp_path, 3)
    source = DictAnnotationSource({}, failing=("img-2",))
    renderer = CompositeRenderer(source)
    results = asyncio.run(renderer.render_many(images))
    assert [r.source_image.id for r in results] == ["img-1", "img-2", "img-3"]


def test_load_failure_is_skipped_and_order_kept(tmp_path: Path) -> None:
    images = make_images(tmp_path, 3)
    broken = SurveyImage(
        id="img-broken",
        original_url=str(tmp_path / "nope.png"),
        width=10,
        height=10,
        file_name="nope.png",
    )
    source = DictAnnotationSource({})
    renderer = CompositeRenderer(source)
    results = asyncio.run(renderer.render_many([images[0], broken, images[1], images[2]]))
    assert [r.source_image.id for r in results] == ["img-1", "img-2", "img-3"]
    assert "img-broken" not in source.calls


def test_compositing_surface_releases_layers(tmp_path: Path) -> None:
    photo = Image.open(write_photo(tmp_path / "p.png"))
    registry = ShapeRegistry()
    with CompositingSurface(photo) as surface:
        surface.add(registry.revive({"type": "circle", "left": 0, "top": 0, "radius": 5, "fill": "#00f"}))
        assert surface.to_data_url("PNG", 1.0).startswith("data:image/png;base64,")
    assert surface.closed is True


def test_bad_shape_skips_only_that_object(tmp_path: Path) -> None:
    images = make_images(tmp_path, 3)
    graph = (
        {"type": "rect", "left": 0, "top": 0, "width": 5, "height": 5, "stroke": "#000", "strokeWidth": float("inf")},
        {"type": "textbox", "left": 0, "top": 0, "text": "巨大", "fontSize": 1e9, "fill": "#000"},
        {"type": "rect", "left": 40, "top": 30, "width": 10, "height": 10, "fill": "#ff0000"},
    )
    renderer = CompositeRenderer(DictAnnotationSource({"img-2": graph}), image_format="PNG")
    results = asyncio.run(renderer.render_many(images))
    assert [r.source_image.id for r in results] == ["img-1", "img-2", "img-3"]
    flat = _decode(results[1].raster_data_url).convert("RGB")
    assert flat.getpixel((45, 35)) == (255, 0, 0)
    assert flat.getpixel((2, 2)) == (255, 255, 255)


class ExplodingShape:
    def draw(self, draw) -> None:  # noqa: ANN001 - test helper
        raise OSError("invalid pixel size")


def test_surface_skips_drawable_that_fails(tmp_path: Path) -> None:
    photo = Image.open(write_photo(tmp_path / "p.png"))
    registry = ShapeRegistry()
    with CompositingSurface(photo) as surface:
        surface.add(ExplodingShape())
        surface.add(registry.revive({"type": "rect", "left": 0, "top": 0, "width": 10, "height": 10, "fill": "#00f"}))
        rendered = surface.render()
        assert rendered.getpixel((5, 5)) == (0, 0, 255, 255)


def test_no_overlay_never_opens_a_surface(tmp_path: Path, monkeypatch) -> None:
    images = make_images(tmp_path, 2)

    def no_surface(*args, **kwargs):
        raise AssertionError("compositing surface must not be created")

    monkeypatch.setattr("survey_report.pipeline.composite.CompositingSurface", no_surface)
    renderer = CompositeRenderer(DictAnnotationSource({"img-1": ()}))
    results = asyncio.run(renderer.render_many(images))
    assert [r.source_image.id for r in results] == ["img-1", "img-2"]
    assert all(r.raster_data_url.startswith("data:image/jpeg;base64,") for r in results)


def test_local_reads_run_in_a_worker_thread(tmp_path: Path, monkeypatch) -> None:
    [image] = make_images(tmp_path, 1)
    offloaded = []
    real_to_thread = asyncio.to_thread

    async def recording_to_thread(func, *args, **kwargs):
        offloaded.append(func)
        return await real_to_thread(func, *args, **kwargs)

    monkeypatch.setattr("survey_report.pipeline.images.asyncio.to_thread", recording_to_thread)
    bitmap = asyncio.run(ImageLoader().load(image))
    assert bitmap.size == (80, 60)
    assert len(offloaded) == 1
