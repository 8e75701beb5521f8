import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path

DATA_DIR = Path(os.environ.get("COMICSHELF_DATA_DIR", "data")).resolve()
UPLOADS_DIR = DATA_DIR / "uploads"
THUMBNAILS_DIR = DATA_DIR / "thumbnails"
CONFIG_DIR = Path("config").resolve()
READER_JSON = CONFIG_DIR / "reader.json"

GALLERY_PAGE_SIZE = 32
MAX_UPLOAD_BYTES = 100 * 1024 * 1024
THUMBNAIL_DPI = 60
MAX_OPEN_VIEWERS = 32


@dataclass(frozen=True)
class ReaderConfig:
    max_pixels: int = 2_000_000
    single_page_max_width: int = 768
    swipe_threshold: int = 50


def ensure_config() -> None:
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    THUMBNAILS_DIR.mkdir(parents=True, exist_ok=True)


def load_reader_config() -> ReaderConfig:
    defaults = ReaderConfig()
    if not READER_JSON.exists():
        return defaults
    raw = READER_JSON.read_text(encoding="utf-8").strip()
    if not raw:
        return defaults
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError("reader.json must be valid JSON") from exc
    if not isinstance(data, dict):
        raise RuntimeError("reader.json must be a JSON object of reader settings")

    known = {f.name for f in fields(ReaderConfig)}
    overrides = {}
    for key, value in data.items():
        if key not in known:
            raise RuntimeError(f"Unknown reader setting: {key}")
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise RuntimeError(f"Reader setting {key} must be a positive integer")
        overrides[key] = value
    return replace(defaults, **overrides)
