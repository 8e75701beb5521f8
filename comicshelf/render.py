"""Page rendering for the comic reader.

A `Document` wraps an open PDF, a `Surface` is one of the two slots the reader
paints into, and `PageRenderer` moves rasterised pages from the former into the
latter. Rendering is asynchronous: rasterising runs in a worker thread and the
awaiting coroutine is the render task for its surface. Only the most recent
task issued against a surface may paint it.
"""
import asyncio
import enum
import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path

import fitz

logger = logging.getLogger(__name__)

BASE_SCALE = 6.0
SCALE_STEP = 0.9
BLANK_FILL = (0x34, 0x35, 0x37)


class LoadError(Exception):
    pass


class RenderError(Exception):
    pass


class RenderOutcome(enum.Enum):
    RENDERED = "rendered"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class PageSize:
    width: float
    height: float

    def scaled(self, scale: float) -> "PageSize":
        return PageSize(self.width * scale, self.height * scale)

    def pixel_dims(self, scale: float) -> tuple[int, int]:
        return (math.ceil(self.width * scale), math.ceil(self.height * scale))


@dataclass(frozen=True)
class Raster:
    width: int
    height: int
    png: bytes


def compute_scale(page_size: PageSize, max_pixels: int, base_scale: float = BASE_SCALE) -> float:
    """Largest scale in base_scale * 0.9**n keeping the page area within max_pixels."""
    scale = base_scale
    while page_size.width * scale * page_size.height * scale > max_pixels:
        scale *= SCALE_STEP
    return scale


class Document:
    """An open PDF. Page indexes are 1-based."""

    def __init__(self, doc: fitz.Document, name: str = "document"):
        self._doc = doc
        self.name = name
        # PyMuPDF documents must not be touched by two threads at once.
        self._lock = threading.Lock()

    @property
    def page_count(self) -> int:
        return self._doc.page_count

    def page_size(self, index: int) -> PageSize:
        with self._lock:
            rect = self._doc.load_page(index - 1).rect
        return PageSize(rect.width, rect.height)

    def _rasterize(self, index: int, scale: float) -> Raster:
        try:
            with self._lock:
                page = self._doc.load_page(index - 1)
                pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
            return Raster(pix.width, pix.height, pix.tobytes("png"))
        except Exception as exc:
            raise RenderError(f"page {index} of {self.name}: {exc}") from exc

    async def rasterize(self, index: int, scale: float) -> Raster:
        return await asyncio.to_thread(self._rasterize, index, scale)

    def close(self) -> None:
        with self._lock:
            self._doc.close()


async def load_document(source: str | Path | bytes) -> Document:
    def _open() -> fitz.Document:
        if isinstance(source, bytes):
            return fitz.open(stream=source, filetype="pdf")
        return fitz.open(source)

    name = "stream" if isinstance(source, bytes) else Path(source).name
    try:
        doc = await asyncio.to_thread(_open)
    except Exception as exc:
        raise LoadError(f"Failed to load {name}: {exc}") from exc
    if doc.page_count < 1:
        doc.close()
        raise LoadError(f"{name} has no pages")
    return Document(doc, name)


class Surface:
    """One visual slot of the reader, `left` or `right`."""

    def __init__(self, name: str):
        self.name = name
        self.width = 0
        self.height = 0
        self.visible = True
        self.page: int | None = None
        self.blank = False
        self.png: bytes | None = None
        self.version = 0
        self.task: asyncio.Task | None = None

    @property
    def is_empty(self) -> bool:
        return self.png is None

    def resize(self, width: int, height: int) -> None:
        self.width = width
        self.height = height

    def paint(self, page: int | None, png: bytes | None, blank: bool = False) -> None:
        self.page = page
        self.png = png
        self.blank = blank
        self.version += 1

    def clear(self) -> None:
        self.paint(None, None)

    def cancel_pending(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.task = None


class PageRenderer:
    def __init__(self, document: Document):
        self.document = document

    async def render(self, page_index: int, surface: Surface, scale: float) -> RenderOutcome:
        surface.cancel_pending()
        try:
            width, height = self.document.page_size(page_index).pixel_dims(scale)
        except Exception as exc:
            logger.error("Error measuring page %s for %s: %s", page_index, surface.name, exc)
            surface.clear()
            return RenderOutcome.FAILED
        surface.resize(width, height)

        task = asyncio.ensure_future(self.document.rasterize(page_index, scale))
        surface.task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise

        if surface.task is not task or task.cancelled():
            logger.debug("Render of page %s on %s cancelled", page_index, surface.name)
            return RenderOutcome.CANCELLED
        surface.task = None

        exc = task.exception()
        if exc is not None:
            logger.error("Error rendering page %s on %s: %s", page_index, surface.name, exc)
            surface.clear()
            return RenderOutcome.FAILED

        surface.paint(page_index, task.result().png)
        return RenderOutcome.RENDERED

    def render_blank(self, surface: Surface) -> None:
        surface.cancel_pending()
        if surface.width <= 0 or surface.height <= 0:
            surface.paint(None, None, blank=True)
            return
        pix = fitz.Pixmap(fitz.csRGB, fitz.IRect(0, 0, surface.width, surface.height), False)
        pix.set_rect(pix.irect, BLANK_FILL)
        surface.paint(None, pix.tobytes("png"), blank=True)

    def clear(self, surface: Surface) -> None:
        surface.cancel_pending()
        surface.clear()
