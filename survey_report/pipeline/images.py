from __future__ import annotations

import asyncio
import base64
import io
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError

from .. import config
from ..errors import ImageLoadError
from ..models import SurveyImage

logger = logging.getLogger(__name__)


def encode_data_url(image: Image.Image, image_format: str = "JPEG", quality: float = 0.9) -> str:
    """Encode a bitmap as a base64 data URL (quality is 0..1 as in canvas exports)."""
    fmt = image_format.upper()
    if fmt == "JPG":
        fmt = "JPEG"
    buffer = io.BytesIO()
    if fmt == "JPEG":
        rgb = image if image.mode == "RGB" else image.convert("RGB")
        rgb.save(buffer, format="JPEG", quality=int(round(max(0.0, min(1.0, quality)) * 100)))
        mime = "image/jpeg"
    elif fmt == "PNG":
        image.save(buffer, format="PNG")
        mime = "image/png"
    else:
        raise ValueError(f"Unsupported image format: {image_format}")
    return f"data:{mime};base64,{base64.b64encode(buffer.getvalue()).decode('ascii')}"


class ImageLoader:
    """Fetches survey photos (http(s), file:// or local paths) and decodes them with Pillow."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = config.HTTP_TIMEOUT_SEC) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    async def fetch_bytes(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https"):
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
            response = await self._client.get(url)
            response.raise_for_status()
            return response.content
        if parsed.scheme == "file":
            return await asyncio.to_thread(Path(unquote(parsed.path)).read_bytes)
        return await asyncio.to_thread(Path(url).read_bytes)

    async def load(self, image: SurveyImage) -> Image.Image:
        if not image.original_url:
            raise ImageLoadError(f"Image {image.id} has no source URL")
        try:
            data = await self.fetch_bytes(image.original_url)
            bitmap = Image.open(io.BytesIO(data))
            bitmap.load()
        except (httpx.HTTPError, OSError, UnidentifiedImageError) as exc:
            raise ImageLoadError(f"Cannot load image {image.id}: {exc}") from exc
        bitmap = ImageOps.exif_transpose(bitmap)
        if bitmap.mode not in ("RGB", "RGBA"):
            bitmap = bitmap.convert("RGB")
        size = (int(image.width), int(image.height))
        # annotation coordinates are stored in the declared pixel space
        if size[0] > 0 and size[1] > 0 and bitmap.size != size:
            logger.debug("Resizing %s from %s to declared %s", image.id, bitmap.size, size)
            bitmap = bitmap.resize(size, Image.Resampling.LANCZOS)
        return bitmap

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
