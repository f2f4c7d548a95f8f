from __future__ import annotations

from pathlib import Path
import json


BASE_DIR = Path(__file__).resolve().parents[1]
OUT_DIR = BASE_DIR / "out"
DB_PATH = OUT_DIR / "exports.db"
STYLE_PRESET_PATH = BASE_DIR / "assets" / "report" / "style.json"

# Subset font shipped as a base64 text payload (see scripts/build_font_payload.py)
FONT_PAYLOAD_PATH = BASE_DIR / "assets" / "fonts" / "NotoSansJP-subset.ttf.b64"
PDF_FONT_FAMILY = "NotoSansJP"
PDF_FONT_FILE = "NotoSansJP-subset.ttf"
FALLBACK_CID_FONT = "HeiseiKakuGo-W5"
FALLBACK_FONT = "Helvetica"

# Optional TTF for text annotations; the font payload is used when unset
ANNOTATION_FONT_PATH: Path | None = None

DEFAULT_IMAGE_FORMAT = "JPEG"
DEFAULT_IMAGE_QUALITY = 0.9

# Yield to the event loop between images only above this many images
YIELD_THRESHOLD = 5

ANNOTATION_ENDPOINT = "/api/site-surveys/images/{image_id}/annotations"
HTTP_TIMEOUT_SEC = 30.0


def load_style_preset() -> dict:
    with STYLE_PRESET_PATH.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def set_out_dir(path: Path) -> None:
    global OUT_DIR, DB_PATH
    OUT_DIR = path
    DB_PATH = OUT_DIR / "exports.db"


def set_font_payload_path(path: Path) -> None:
    global FONT_PAYLOAD_PATH
    FONT_PAYLOAD_PATH = path


def set_annotation_font_path(path: Path | None) -> None:
    global ANNOTATION_FONT_PATH
    ANNOTATION_FONT_PATH = path
