from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

import fitz  # PyMuPDF


def pick_preview_pages(page_count: int) -> List[int]:
    # cover + first photo page
    if page_count <= 0:
        return []
    return [0, 1] if page_count > 1 else [0]


def _render_page_to_png(doc: fitz.Document, page_index: int, out_path: Path, min_px: int = 1200) -> None:
    page = doc.load_page(page_index)

    # scale so the short side reaches at least min_px
    rect = page.rect
    short_side = min(rect.width, rect.height)
    zoom = max(1.0, min_px / float(short_side))
    mat = fitz.Matrix(zoom, zoom)

    pix = page.get_pixmap(matrix=mat, alpha=False)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    pix.save(str(out_path))


def render_previews(
    pdf_path: Path,
    out_dir: Optional[Path] = None,
    pages: Optional[Sequence[int]] = None,
    min_px: int = 1200,
) -> List[Path]:
    target = out_dir or pdf_path.parent
    outputs: List[Path] = []
    with fitz.open(pdf_path) as doc:
        indexes = list(pages) if pages is not None else pick_preview_pages(doc.page_count)
        for index in indexes:
            if index < 0 or index >= doc.page_count:
                continue
            out_path = target / f"{pdf_path.stem}_p{index + 1}.png"
            _render_page_to_png(doc, index, out_path, min_px=min_px)
            outputs.append(out_path)
    return outputs
