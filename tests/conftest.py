"""Shared fixtures: isolated data directories, fixture PDFs and a fake document."""
import asyncio
from pathlib import Path

import fitz
import pytest

from comicshelf import config, db
from comicshelf.render import PageSize, Raster, RenderError


def make_pdf(path: Path, sizes) -> Path:
    doc = fitz.open()
    for width, height in sizes:
        doc.new_page(width=width, height=height)
    doc.save(str(path))
    doc.close()
    return path


def pdf_bytes(sizes) -> bytes:
    doc = fitz.open()
    for width, height in sizes:
        doc.new_page(width=width, height=height)
    data = doc.tobytes()
    doc.close()
    return data


class FakeDocument:
    """Stands in for a PDF; pages listed in `gates` block until their event is set."""

    def __init__(self, page_count, size=(100, 150), fail_pages=()):
        self.page_count = page_count
        self.size = PageSize(*size)
        self.fail_pages = set(fail_pages)
        self.gates: dict[int, asyncio.Event] = {}
        self.rasterized: list[int] = []
        self.closed = False

    def page_size(self, index):
        if self.closed:
            raise ValueError("document closed")
        if not 1 <= index <= self.page_count:
            raise ValueError(f"page {index} out of range")
        return self.size

    async def rasterize(self, index, scale):
        gate = self.gates.get(index)
        if gate is not None:
            await gate.wait()
        if index in self.fail_pages:
            raise RenderError(f"page {index} is broken")
        self.rasterized.append(index)
        width, height = self.size.pixel_dims(scale)
        return Raster(width, height, f"page-{index}".encode())

    def close(self):
        self.closed = True


@pytest.fixture
def data_dirs(tmp_path, monkeypatch):
    data_dir = tmp_path / "data"
    monkeypatch.setattr(db, "DB_PATH", data_dir / "test.db")
    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "UPLOADS_DIR", data_dir / "uploads")
    monkeypatch.setattr(config, "THUMBNAILS_DIR", data_dir / "thumbnails")
    monkeypatch.setattr(config, "CONFIG_DIR", tmp_path / "config")
    monkeypatch.setattr(config, "READER_JSON", tmp_path / "config" / "reader.json")
    db.init_db()
    config.ensure_config()
    return data_dir
