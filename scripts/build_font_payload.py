from __future__ import annotations

import argparse
import base64
import io
import sys
from pathlib import Path
from typing import List, Set

from fontTools import subset
from fontTools.ttLib import TTFont

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from survey_report import config  # noqa: E402
from survey_report.pipeline.layout import REPORT_LABELS  # noqa: E402

# ASCII, CJK punctuation, hiragana, katakana, CJK unified ideographs, fullwidth forms
BASE_RANGES = [
    (0x0020, 0x007E),
    (0x3000, 0x303F),
    (0x3040, 0x309F),
    (0x30A0, 0x30FF),
    (0x4E00, 0x9FFF),
    (0xFF00, 0xFFEF),
]


def _collect_codepoints(extra_text: str) -> List[int]:
    points: Set[int] = set()
    for start, end in BASE_RANGES:
        points.update(range(start, end + 1))
    for label in REPORT_LABELS.values():
        points.update(ord(ch) for ch in label)
    points.update(ord(ch) for ch in "年月日枚図No.0123456789/")
    points.update(ord(ch) for ch in extra_text if not ch.isspace())
    return sorted(points)


def build_payload(font_path: Path, extra_text: str = "") -> str:
    """Subset the TTF/OTF to the report's character set and return base64 text."""
    font = TTFont(str(font_path))
    options = subset.Options()
    options.layout_features = ["*"]
    options.name_IDs = ["*"]
    options.notdef_outline = True
    subsetter = subset.Subsetter(options=options)
    subsetter.populate(unicodes=_collect_codepoints(extra_text))
    subsetter.subset(font)

    buffer = io.BytesIO()
    font.save(buffer)
    font.close()
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def main() -> int:
    parser = argparse.ArgumentParser(description="Build the embedded report font payload")
    parser.add_argument("font", type=Path, help="Source TrueType font (e.g. NotoSansJP-Regular.ttf)")
    parser.add_argument("--out", type=Path, default=config.FONT_PAYLOAD_PATH, help="Output .b64 file")
    parser.add_argument("--text-file", type=Path, default=None, help="Extra characters to keep (UTF-8 text)")
    args = parser.parse_args()

    if not args.font.exists():
        raise SystemExit(f"Font not found: {args.font}")
    extra = args.text_file.read_text(encoding="utf-8") if args.text_file else ""

    payload = build_payload(args.font, extra)
    args.out.parent.mkdir(parents=True, exist_ok=True)
    args.out.write_text(payload, encoding="ascii")
    print(f"OK: wrote {args.out} ({len(payload)} base64 chars)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
