from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx

from .. import config
from ..errors import AnnotationFetchError
from ..models import AnnotationGraph

logger = logging.getLogger(__name__)


class AnnotationSource(Protocol):
    async def fetch_annotation_graph(self, image_id: str) -> Optional[AnnotationGraph]:
        ...


class NullAnnotationSource:
    """No saved annotations; every image is reported as photographed."""

    async def fetch_annotation_graph(self, image_id: str) -> Optional[AnnotationGraph]:
        return None


def graph_from_payload(payload: Any) -> Optional[AnnotationGraph]:
    """
    Normalize a stored annotation payload to an ordered shape tuple.

    Accepted shapes:
      - {"data": null}                      -> None
      - {"data": {"objects": [...]}}        (API response)
      - {"objects": [...]}                  (bare canvas JSON)
      - [...]                               (bare object list)
    """
    if payload is None:
        return None
    if isinstance(payload, list):
        objects = payload
    elif isinstance(payload, dict):
        body = payload["data"] if "data" in payload else payload
        if body is None:
            return None
        if not isinstance(body, dict):
            raise AnnotationFetchError("Annotation data must be an object")
        objects = body.get("objects") or []
    else:
        raise AnnotationFetchError(f"Unexpected annotation payload: {type(payload).__name__}")
    if not isinstance(objects, list):
        raise AnnotationFetchError("Annotation objects must be a list")
    return tuple(objects) if objects else None


class DirectoryAnnotationSource:
    """Reads {image_id}.json files exported from the annotation API."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    async def fetch_annotation_graph(self, image_id: str) -> Optional[AnnotationGraph]:
        path = self.directory / f"{image_id}.json"
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise AnnotationFetchError(f"Cannot read annotations for {image_id}: {exc}") from exc
        return graph_from_payload(payload)


class HttpAnnotationSource:
    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        endpoint: str = config.ANNOTATION_ENDPOINT,
        headers: Optional[dict] = None,
        timeout: float = config.HTTP_TIMEOUT_SEC,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)
        self._endpoint = endpoint

    async def fetch_annotation_graph(self, image_id: str) -> Optional[AnnotationGraph]:
        url = self._endpoint.format(image_id=image_id)
        try:
            response = await self._client.get(url)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AnnotationFetchError(f"Annotation request failed for {image_id}: {exc}") from exc
        return graph_from_payload(payload)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
