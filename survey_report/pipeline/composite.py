from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from PIL import Image, ImageDraw

from .. import config
from ..errors import ImageLoadError
from ..models import AnnotationGraph, CompositedImage, SurveyImage
from .annotations import AnnotationSource
from .images import ImageLoader, encode_data_url
from .shapes import Drawable, ShapeRegistry

logger = logging.getLogger(__name__)


class CompositingSurface:
    """
    Offscreen RGBA surface: background bitmap plus a vector overlay layer.

    Use as a context manager; both layers are closed on exit so pixel buffers
    are released before the next image is processed.
    """

    def __init__(self, background: Image.Image) -> None:
        self._background = background.convert("RGBA")
        self._overlay = Image.new("RGBA", self._background.size, (0, 0, 0, 0))
        self._objects: List[Drawable] = []
        self._rendered: Optional[Image.Image] = None
        self.closed = False

    def __enter__(self) -> "CompositingSurface":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.dispose()

    def add(self, drawable: Drawable) -> None:
        self._objects.append(drawable)

    def render(self) -> Image.Image:
        draw = ImageDraw.Draw(self._overlay)
        for drawable in self._objects:
            try:
                drawable.draw(draw)
            except (OSError, ValueError, ArithmeticError) as exc:
                logger.debug("Skipping undrawable %s: %s", type(drawable).__name__, exc)
        self._rendered = Image.alpha_composite(self._background, self._overlay)
        return self._rendered

    def to_data_url(self, image_format: str, quality: float) -> str:
        rendered = self._rendered if self._rendered is not None else self.render()
        return encode_data_url(rendered, image_format, quality)

    def dispose(self) -> None:
        if self.closed:
            return
        for image in (self._rendered, self._overlay, self._background):
            if image is not None:
                image.close()
        self._objects.clear()
        self.closed = True


class CompositeRenderer:
    def __init__(
        self,
        annotations: AnnotationSource,
        loader: Optional[ImageLoader] = None,
        registry: Optional[ShapeRegistry] = None,
        image_format: str = config.DEFAULT_IMAGE_FORMAT,
        quality: float = config.DEFAULT_IMAGE_QUALITY,
    ) -> None:
        self._annotations = annotations
        self._loader = loader or ImageLoader()
        self._registry = registry or ShapeRegistry()
        self._format = image_format
        self._quality = quality

    async def _fetch_graph(self, image: SurveyImage) -> Optional[AnnotationGraph]:
        try:
            return await self._annotations.fetch_annotation_graph(image.id)
        except Exception as exc:
            logger.warning("Annotation fetch failed for %s, using raw image: %s", image.id, exc)
            return None

    async def render(
        self,
        image: SurveyImage,
        image_format: Optional[str] = None,
        quality: Optional[float] = None,
    ) -> Optional[CompositedImage]:
        if not image.original_url:
            logger.warning("Image %s has no source URL, skipping", image.id)
            return None
        fmt = image_format or self._format
        q = self._quality if quality is None else quality

        try:
            bitmap = await self._loader.load(image)
        except ImageLoadError as exc:
            logger.warning("Skipping image %s: %s", image.id, exc)
            return None

        try:
            graph = await self._fetch_graph(image)
            if not graph:
                return CompositedImage(source_image=image, raster_data_url=encode_data_url(bitmap, fmt, q))

            with CompositingSurface(bitmap) as surface:
                drawables = self._registry.revive_all(graph)
                if len(drawables) < len(graph):
                    logger.info(
                        "Image %s: %d of %d annotation objects skipped",
                        image.id,
                        len(graph) - len(drawables),
                        len(graph),
                    )
                for drawable in drawables:
                    surface.add(drawable)
                surface.render()
                data_url = surface.to_data_url(fmt, q)
            return CompositedImage(source_image=image, raster_data_url=data_url)
        finally:
            bitmap.close()

    async def render_many(self, images: Iterable[SurveyImage]) -> List[CompositedImage]:
        results: List[CompositedImage] = []
        # one image at a time to bound peak memory
        for image in images:
            composited = await self.render(image)
            if composited is not None:
                results.append(composited)
        return results

    async def aclose(self) -> None:
        await self._loader.aclose()
        closer = getattr(self._annotations, "aclose", None)
        if closer is not None:
            await closer()
