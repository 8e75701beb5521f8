"""Two-page comic reader: session state, layout planning and navigation.

The right surface is the primary one. Without padding, pages read right to left
and the page after the primary one sits on the left; with padding on, spreads
read left to right, the primary page following the one on the left.

Every transition recomputes the scale, plans the layout, paints both surfaces
and then refreshes the control states.
"""
import logging
from dataclasses import dataclass, field

from .config import ReaderConfig
from .render import (
    BASE_SCALE,
    Document,
    PageRenderer,
    Surface,
    compute_scale,
)

logger = logging.getLogger(__name__)

PAGE = "page"
BLANK = "blank"
EMPTY = "empty"
HIDDEN = "hidden"


@dataclass(frozen=True)
class Slot:
    kind: str
    page: int | None = None


BLANK_SLOT = Slot(BLANK)
EMPTY_SLOT = Slot(EMPTY)
HIDDEN_SLOT = Slot(HIDDEN)


def page_slot(page: int) -> Slot:
    return Slot(PAGE, page)


@dataclass(frozen=True)
class Layout:
    left: Slot
    right: Slot


PADDING_PAGES = 1


@dataclass
class ViewerSession:
    page_count: int
    current_page: int = 1
    total_page_count: int = 0
    is_single_page_view: bool = False
    show_blank_page: bool = False
    scale: float = BASE_SCALE

    def __post_init__(self):
        if self.page_count < 1:
            raise ValueError("a viewer session needs at least one page")
        if not self.total_page_count:
            self.total_page_count = self.page_count

    @property
    def can_pad(self) -> bool:
        return self.page_count > 1


def plan_layout(session: ViewerSession) -> Layout:
    current = session.current_page
    total = session.total_page_count
    real = session.page_count

    if session.is_single_page_view:
        # The trailing padding page has no real counterpart.
        right = page_slot(current) if current <= real else BLANK_SLOT
        return Layout(left=EMPTY_SLOT, right=right)

    if session.show_blank_page:
        if current == 1:
            return Layout(left=BLANK_SLOT, right=page_slot(1))
        if current == total and real % 2 == 0:
            return Layout(left=page_slot(current - 1), right=BLANK_SLOT)
        left = page_slot(current - 1) if 1 <= current - 1 <= real else EMPTY_SLOT
        right = page_slot(current) if current <= real else EMPTY_SLOT
        return Layout(left=left, right=right)

    if current == total and total % 2 == 1:
        return Layout(left=HIDDEN_SLOT, right=page_slot(current))
    left = page_slot(current + 1) if current + 1 <= total else EMPTY_SLOT
    return Layout(left=left, right=page_slot(current))


@dataclass
class Control:
    disabled: bool = False


@dataclass
class Toggle(Control):
    on: bool = False


@dataclass
class ReaderControls:
    prev: Control = field(default_factory=Control)
    next: Control = field(default_factory=Control)
    blank_toggle: Toggle = field(default_factory=Toggle)
    fullscreen_toggle: Toggle = field(default_factory=Toggle)


class ReaderController:
    """Owns one `ViewerSession` and drives the surfaces and controls it was given."""

    def __init__(
        self,
        document: Document,
        left: Surface,
        right: Surface,
        controls: ReaderControls,
        config: ReaderConfig | None = None,
        viewport_width: int = 1024,
        renderer: PageRenderer | None = None,
    ):
        self.document = document
        self.left = left
        self.right = right
        self.controls = controls
        self.config = config or ReaderConfig()
        self.renderer = renderer or PageRenderer(document)
        self.session = ViewerSession(
            page_count=document.page_count,
            is_single_page_view=viewport_width <= self.config.single_page_max_width,
        )
        self.layout: Layout | None = None
        self.relayouts = 0
        self.closed = False
        self._generation = 0

    async def start(self) -> None:
        await self.relayout()

    async def advance(self) -> bool:
        s = self.session
        if s.is_single_page_view:
            if s.current_page >= s.total_page_count:
                return False
            s.current_page += 1
        elif s.current_page + 1 < s.total_page_count:
            s.current_page += 2
        elif s.current_page < s.total_page_count:
            s.current_page += 1
        else:
            return False
        await self.relayout()
        return True

    async def retreat(self) -> bool:
        s = self.session
        if s.is_single_page_view:
            if s.current_page <= 1:
                return False
            s.current_page -= 1
        elif s.current_page > 2:
            s.current_page -= 2
        else:
            return False
        await self.relayout()
        return True

    async def toggle_blank_padding(self) -> bool:
        s = self.session
        if not s.can_pad:
            return False
        s.show_blank_page = not s.show_blank_page
        if s.show_blank_page:
            s.total_page_count = s.page_count + PADDING_PAGES
        else:
            s.total_page_count = s.page_count
            s.current_page = min(s.current_page, s.total_page_count)
        await self.relayout()
        return True

    async def on_viewport_resize(self, width: int) -> None:
        # current_page is kept as is, even off the usual dual page boundary.
        self.session.is_single_page_view = width <= self.config.single_page_max_width
        await self.relayout()

    def toggle_fullscreen(self) -> bool:
        toggle = self.controls.fullscreen_toggle
        toggle.on = not toggle.on
        return toggle.on

    async def relayout(self) -> Layout | None:
        if self.closed:
            return self.layout
        self._generation += 1
        generation = self._generation
        self.relayouts += 1

        s = self.session
        s.scale = compute_scale(self.document.page_size(1), self.config.max_pixels)
        layout = plan_layout(s)
        self.layout = layout
        logger.debug(
            "Layout page=%s/%s single=%s blank=%s scale=%.3f -> %s",
            s.current_page,
            s.total_page_count,
            s.is_single_page_view,
            s.show_blank_page,
            s.scale,
            layout,
        )

        # Left first; a newer relayout takes over as soon as it starts.
        for surface, slot in ((self.left, layout.left), (self.right, layout.right)):
            if self.closed or generation != self._generation:
                break
            await self._fill(surface, slot, s.scale)

        self._refresh_controls()
        return layout

    async def _fill(self, surface: Surface, slot: Slot, scale: float) -> None:
        surface.visible = slot.kind != HIDDEN
        if slot.kind == PAGE:
            await self.renderer.render(slot.page, surface, scale)
        elif slot.kind == BLANK:
            surface.resize(*self.document.page_size(1).pixel_dims(scale))
            self.renderer.render_blank(surface)
        else:
            self.renderer.clear(surface)

    def _refresh_controls(self) -> None:
        s = self.session
        lower = 1 if s.is_single_page_view else 2
        self.controls.prev.disabled = s.current_page <= lower
        self.controls.next.disabled = s.current_page >= s.total_page_count
        self.controls.blank_toggle.disabled = not s.can_pad
        self.controls.blank_toggle.on = s.show_blank_page

    def snapshot(self) -> dict:
        s = self.session
        c = self.controls
        return {
            "current_page": s.current_page,
            "total_page_count": s.total_page_count,
            "page_count": s.page_count,
            "single_page": s.is_single_page_view,
            "show_blank_page": s.show_blank_page,
            "scale": s.scale,
            "surfaces": {
                surface.name: {
                    "page": surface.page,
                    "blank": surface.blank,
                    "visible": surface.visible,
                    "width": surface.width,
                    "height": surface.height,
                    "version": surface.version,
                }
                for surface in (self.left, self.right)
            },
            "controls": {
                "prev_disabled": c.prev.disabled,
                "next_disabled": c.next.disabled,
                "blank_toggle_disabled": c.blank_toggle.disabled,
                "blank_toggle_on": c.blank_toggle.on,
                "fullscreen": c.fullscreen_toggle.on,
            },
        }

    def close(self) -> None:
        self.closed = True
        self.left.cancel_pending()
        self.right.cancel_pending()
        self.document.close()


class GestureAdapter:
    """Turns keys and horizontal drags into advance/retreat."""

    def __init__(self, controller: ReaderController, swipe_threshold: int | None = None):
        self.controller = controller
        if swipe_threshold is None:
            swipe_threshold = controller.config.swipe_threshold
        self.swipe_threshold = swipe_threshold
        self._start_x: float | None = None

    async def key(self, key: str) -> bool:
        if key == "ArrowLeft":
            return await self.controller.advance()
        if key == "ArrowRight":
            return await self.controller.retreat()
        return False

    def press(self, x: float) -> None:
        self._start_x = x

    async def release(self, x: float) -> bool:
        start, self._start_x = self._start_x, None
        if start is None:
            return False
        return await self.swipe(start, x)

    async def swipe(self, start_x: float, end_x: float) -> bool:
        if start_x - end_x > self.swipe_threshold:
            return await self.controller.retreat()
        if end_x - start_x > self.swipe_threshold:
            return await self.controller.advance()
        return False


async def open_reader(
    document: Document,
    config: ReaderConfig | None = None,
    viewport_width: int = 1024,
) -> tuple[ReaderController, GestureAdapter]:
    controller = ReaderController(
        document,
        left=Surface("left"),
        right=Surface("right"),
        controls=ReaderControls(),
        config=config,
        viewport_width=viewport_width,
    )
    await controller.start()
    return controller, GestureAdapter(controller)
