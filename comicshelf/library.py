import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import fitz
from pypdf import PdfReader, PdfWriter

from . import config
from .db import db

logger = logging.getLogger(__name__)

PDF_EXTS = {".pdf"}
ROLES = ("public", "member", "admin")

_COMIC_COLUMNS = "id, title, filename, thumbnail, role, page_count, has_blank_page, uploaded_at"


class UploadError(ValueError):
    pass


@dataclass(frozen=True)
class Comic:
    id: int
    title: str
    filename: str
    thumbnail: str | None
    role: str
    page_count: int
    has_blank_page: bool
    uploaded_at: str

    @property
    def path(self) -> Path:
        return config.UPLOADS_DIR / self.filename

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "thumbnail": self.thumbnail,
            "role": self.role,
            "page_count": self.page_count,
            "has_blank_page": self.has_blank_page,
            "uploaded_at": self.uploaded_at,
        }


def _row_to_comic(r) -> Comic:
    return Comic(
        int(r["id"]),
        r["title"],
        r["filename"],
        r["thumbnail"],
        r["role"],
        int(r["page_count"]),
        bool(r["has_blank_page"]),
        r["uploaded_at"],
    )


def slugify(s: str) -> str:
    s = s.strip().lower()
    s = re.sub(r"[^\w\s-]", "", s)
    s = re.sub(r"[\s_-]+", "-", s)
    return s.strip("-") or "untitled"


def is_pdf_name(name: str) -> bool:
    return Path(name).suffix.lower() in PDF_EXTS


def get_pdf_page_count(pdf_path: Path) -> int:
    try:
        with fitz.open(pdf_path) as doc:
            return doc.page_count
    except Exception as exc:
        logger.warning("Failed to read page count from %s: %s", pdf_path, exc)
        return 0


def render_pdf_page(pdf_path: Path, page: int, dpi: int) -> bytes | None:
    if page < 1:
        return None
    try:
        with fitz.open(pdf_path) as doc:
            if page > doc.page_count:
                return None
            p = doc.load_page(page - 1)
            zoom = dpi / 72.0
            mat = fitz.Matrix(zoom, zoom)
            pix = p.get_pixmap(matrix=mat, alpha=False)
            return pix.tobytes("png")
    except Exception as exc:
        logger.warning("Failed to render page %s of %s: %s", page, pdf_path, exc)
        return None


def _write_pdf(writer: PdfWriter, pdf_path: Path) -> None:
    # Written beside the target, then swapped in.
    tmp_path = pdf_path.with_name(pdf_path.name + ".tmp")
    with open(tmp_path, "wb") as fh:
        writer.write(fh)
    os.replace(tmp_path, pdf_path)


def add_blank_page(pdf_path: Path) -> int:
    """Insert a blank page sized like page 1 at the front. Returns the new page count."""
    reader = PdfReader(str(pdf_path))
    if not reader.pages:
        raise ValueError(f"{pdf_path.name} has no pages")
    first = reader.pages[0]
    writer = PdfWriter()
    writer.add_blank_page(width=float(first.mediabox.width), height=float(first.mediabox.height))
    for page in reader.pages:
        writer.add_page(page)
    _write_pdf(writer, pdf_path)
    return len(writer.pages)


def remove_blank_page(pdf_path: Path) -> int:
    """Drop the first page unless it is the only one. Returns the new page count."""
    reader = PdfReader(str(pdf_path))
    if len(reader.pages) <= 1:
        return len(reader.pages)
    writer = PdfWriter()
    for page in reader.pages[1:]:
        writer.add_page(page)
    _write_pdf(writer, pdf_path)
    return len(writer.pages)


def normalize_page_sizes(pdf_path: Path) -> int:
    """Scale every page to the size of page 1. Returns the number of pages resized."""
    reader = PdfReader(str(pdf_path))
    if not reader.pages:
        return 0
    first = reader.pages[0]
    width = float(first.mediabox.width)
    height = float(first.mediabox.height)
    writer = PdfWriter()
    resized = 0
    for page in reader.pages:
        if (float(page.mediabox.width), float(page.mediabox.height)) != (width, height):
            page.scale_to(width, height)
            resized += 1
        writer.add_page(page)
    if resized:
        _write_pdf(writer, pdf_path)
    return resized


def _write_thumbnail(pdf_path: Path) -> str | None:
    data = render_pdf_page(pdf_path, 1, config.THUMBNAIL_DPI)
    if data is None:
        return None
    name = f"{pdf_path.stem}.png"
    (config.THUMBNAILS_DIR / name).write_bytes(data)
    return name


def save_upload(
    title: str,
    filename: str,
    data: bytes,
    role: str = "public",
    normalize: bool = False,
) -> Comic:
    title = title.strip()
    if not title:
        raise UploadError("Title is required")
    if not is_pdf_name(filename):
        raise UploadError("Only PDF files are accepted")
    if role not in ROLES:
        raise UploadError(f"Unknown role: {role}")
    if not data:
        raise UploadError("Uploaded file is empty")
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise UploadError("Uploaded file is too large")

    config.ensure_config()
    stored = f"{int(time.time())}-{secrets.token_hex(4)}-{slugify(Path(filename).stem)}.pdf"
    pdf_path = config.UPLOADS_DIR / stored
    pdf_path.write_bytes(data)

    page_count = get_pdf_page_count(pdf_path)
    if page_count < 1:
        pdf_path.unlink(missing_ok=True)
        raise UploadError("File is not a readable PDF")
    if normalize:
        try:
            normalize_page_sizes(pdf_path)
        except Exception as exc:
            pdf_path.unlink(missing_ok=True)
            raise UploadError("PDF pages could not be resized") from exc

    thumbnail = _write_thumbnail(pdf_path)
    with db() as conn:
        cur = conn.execute(
            "INSERT INTO comics(title, filename, thumbnail, role, page_count) VALUES(?,?,?,?,?)",
            (title, stored, thumbnail, role, page_count),
        )
        comic_id = int(cur.lastrowid)
    logger.info("Stored upload %s as comic %s (%s pages)", filename, comic_id, page_count)
    return get_comic(comic_id)


def _filters(query: str | None, role: str | None) -> tuple[str, list]:
    clauses = []
    params: list = []
    if query:
        escaped = query.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        clauses.append("title LIKE ? ESCAPE '\\'")
        params.append(f"%{escaped}%")
    if role:
        clauses.append("role = ?")
        params.append(role)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def list_comics(
    page: int = 1,
    limit: int = config.GALLERY_PAGE_SIZE,
    query: str | None = None,
    role: str | None = None,
) -> list[Comic]:
    page = max(1, page)
    limit = max(1, min(100, limit))
    where, params = _filters(query, role)
    with db() as conn:
        rows = conn.execute(
            f"""
            SELECT {_COMIC_COLUMNS}
            FROM comics
            {where}
            ORDER BY uploaded_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, (page - 1) * limit),
        ).fetchall()
        return [_row_to_comic(r) for r in rows]


def count_comics(query: str | None = None, role: str | None = None) -> int:
    where, params = _filters(query, role)
    with db() as conn:
        row = conn.execute(f"SELECT COUNT(*) AS n FROM comics {where}", params).fetchone()
        return int(row["n"])


def get_comic(comic_id: int) -> Comic | None:
    with db() as conn:
        r = conn.execute(
            f"SELECT {_COMIC_COLUMNS} FROM comics WHERE id=?", (comic_id,)
        ).fetchone()
        return _row_to_comic(r) if r else None


def delete_comics(comic_ids: Iterable[int]) -> int:
    ids = sorted({int(i) for i in comic_ids})
    if not ids:
        return 0
    placeholders = ",".join(["?"] * len(ids))
    with db() as conn:
        rows = conn.execute(
            f"SELECT filename, thumbnail FROM comics WHERE id IN ({placeholders})",
            ids,
        ).fetchall()
        cur = conn.execute(f"DELETE FROM comics WHERE id IN ({placeholders})", ids)
        deleted = cur.rowcount

    for r in rows:
        targets = [config.UPLOADS_DIR / r["filename"]]
        if r["thumbnail"]:
            targets.append(config.THUMBNAILS_DIR / r["thumbnail"])
        for target in targets:
            try:
                target.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Failed to remove %s: %s", target, exc)
    return deleted


def update_comic_role(comic_id: int, role: str) -> bool:
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    with db() as conn:
        cur = conn.execute("UPDATE comics SET role=? WHERE id=?", (role, comic_id))
        return cur.rowcount > 0


def set_blank_page(comic_id: int, enabled: bool) -> Comic | None:
    """Insert or remove the stored blank first page so the file matches `enabled`."""
    comic = get_comic(comic_id)
    if comic is None:
        return None
    if comic.has_blank_page == enabled:
        return comic
    if enabled:
        page_count = add_blank_page(comic.path)
    else:
        page_count = remove_blank_page(comic.path)
    with db() as conn:
        conn.execute(
            "UPDATE comics SET has_blank_page=?, page_count=? WHERE id=?",
            (int(enabled), page_count, comic_id),
        )
    return get_comic(comic_id)
