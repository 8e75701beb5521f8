import logging
import secrets
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote_plus

from fastapi import FastAPI, Request, HTTPException, Form, UploadFile, File
from fastapi.responses import HTMLResponse, RedirectResponse, FileResponse, JSONResponse, Response
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

from . import config
from .config import ensure_config, load_reader_config
from .db import init_db
from .library import (
    ROLES,
    Comic,
    UploadError,
    count_comics,
    delete_comics,
    get_comic,
    list_comics,
    save_upload,
    set_blank_page,
    update_comic_role,
)
from .render import LoadError, load_document
from .viewer import GestureAdapter, ReaderController, open_reader

APP_ROOT = Path(__file__).resolve().parent
TEMPLATES = Jinja2Templates(directory=str(APP_ROOT / "templates"))
VIEWER_COOKIE = "viewer"

app = FastAPI(title="ComicShelf")
app.state.viewers = OrderedDict()
app.state.reader_config = config.ReaderConfig()
logger = logging.getLogger(__name__)


@dataclass
class ViewerHandle:
    comic_id: int
    controller: ReaderController
    gestures: GestureAdapter


class DeleteComicsRequest(BaseModel):
    comicIds: list[int]


class UpdateRoleRequest(BaseModel):
    comicId: int
    newRole: str


@app.get("/health")
def health():
    return {"status": "ok"}


@app.on_event("startup")
def _startup():
    init_db()
    ensure_config()
    app.state.reader_config = load_reader_config()


@app.on_event("shutdown")
def _shutdown():
    for token in list(app.state.viewers):
        _close_viewer(token)


def _render(request: Request, template_name: str, context: dict):
    context = dict(context)
    context["request"] = request
    context["active_path"] = request.url.path
    context["roles"] = ROLES
    return TEMPLATES.TemplateResponse(request, template_name, context)


def _thumbnail_url(comic: Comic) -> str | None:
    return f"/thumbnails/{comic.thumbnail}" if comic.thumbnail else None


def _comic_json(comic: Comic) -> dict:
    data = comic.to_dict()
    data["thumbnail_url"] = _thumbnail_url(comic)
    data["viewer_url"] = f"/viewer/{comic.id}"
    return data


def _check_role(role: str | None) -> str | None:
    if role is None or role == "":
        return None
    if role not in ROLES:
        raise HTTPException(status_code=400, detail="Unknown role")
    return role


def _require_comic(comic_id: int) -> Comic:
    comic = get_comic(comic_id)
    if not comic:
        raise HTTPException(status_code=404, detail="Comic not found")
    return comic


@app.get("/", response_class=HTMLResponse)
def gallery(
    request: Request,
    q: str | None = None,
    role: str | None = None,
    error: str | None = None,
    success: str | None = None,
):
    role = _check_role(role)
    comics = list_comics(1, config.GALLERY_PAGE_SIZE, q, role)
    rows = [{"comic": c, "thumbnail_url": _thumbnail_url(c)} for c in comics]
    return _render(
        request,
        "gallery.html",
        {
            "comics": rows,
            "total": count_comics(q, role),
            "page_size": config.GALLERY_PAGE_SIZE,
            "q": q or "",
            "role": role or "",
            "error": error,
            "success": success,
        },
    )


@app.get("/comics")
def comics_page(
    page: int = 1,
    limit: int = config.GALLERY_PAGE_SIZE,
    q: str | None = None,
    role: str | None = None,
):
    role = _check_role(role)
    return [_comic_json(c) for c in list_comics(page, limit, q, role)]


@app.post("/upload")
def upload(
    title: str = Form(...),
    file: UploadFile = File(...),
    role: str = Form("public"),
    blank_page: str | None = Form(None),
    normalize: str | None = Form(None),
):
    data = file.file.read(config.MAX_UPLOAD_BYTES + 1)
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Uploaded file is too large")
    try:
        comic = save_upload(title, file.filename or "", data, role, bool(normalize))
    except UploadError as exc:
        return RedirectResponse(url=f"/?error={quote_plus(str(exc))}", status_code=303)
    if blank_page:
        set_blank_page(comic.id, True)
    return RedirectResponse(url="/?success=Comic+uploaded", status_code=303)


@app.post("/delete-comic")
async def delete_comic(payload: DeleteComicsRequest):
    for token, handle in list(app.state.viewers.items()):
        if handle.comic_id in payload.comicIds:
            _close_viewer(token)
    deleted = delete_comics(payload.comicIds)
    logger.info("Deleted %s comics", deleted)
    return {"message": "success", "deleted": deleted}


@app.post("/update-comic-role")
def update_role(payload: UpdateRoleRequest):
    if payload.newRole not in ROLES:
        return JSONResponse({"message": "Unknown role"}, status_code=400)
    if not update_comic_role(payload.comicId, payload.newRole):
        return JSONResponse({"message": "Comic not found"}, status_code=404)
    return {"message": "success"}


@app.post("/comics/{comic_id}/blank-page")
async def update_blank_page(comic_id: int, enabled: str | None = Form(None)):
    _require_comic(comic_id)
    for token, handle in list(app.state.viewers.items()):
        if handle.comic_id == comic_id:
            _close_viewer(token)
    try:
        set_blank_page(comic_id, bool(enabled))
    except Exception as exc:
        logger.exception("Blank page update failed for comic %s", comic_id)
        return RedirectResponse(url=f"/?error={quote_plus(str(exc))}", status_code=303)
    return RedirectResponse(url="/?success=Blank+page+updated", status_code=303)


@app.get("/pdf/{comic_id}")
def pdf_asset(comic_id: int):
    comic = _require_comic(comic_id)
    file_path = comic.path.resolve()
    if not file_path.exists() or not file_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(str(file_path), media_type="application/pdf")


@app.get("/thumbnails/{filename}")
def thumbnail_asset(filename: str):
    thumbs_dir = config.THUMBNAILS_DIR.resolve()
    file_path = (thumbs_dir / filename).resolve()
    if thumbs_dir not in file_path.parents:
        raise HTTPException(status_code=400, detail="Invalid path")
    if not file_path.exists() or not file_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(str(file_path), media_type="image/png")


def _close_viewer(token: str) -> None:
    handle = app.state.viewers.pop(token, None)
    if handle is not None:
        handle.controller.close()


def _evict_idle_viewers() -> None:
    # Least recently used first.
    while len(app.state.viewers) > config.MAX_OPEN_VIEWERS:
        token = next(iter(app.state.viewers))
        logger.info("Evicting idle viewer session")
        _close_viewer(token)


def _get_viewer(request: Request, comic_id: int) -> ViewerHandle:
    token = request.cookies.get(VIEWER_COOKIE)
    handle = app.state.viewers.get(token) if token else None
    if handle is None or handle.comic_id != comic_id:
        raise HTTPException(status_code=404, detail="Viewer not open")
    app.state.viewers.move_to_end(token)
    return handle


def _viewer_response(request: Request, handle: ViewerHandle):
    if "application/json" in request.headers.get("accept", ""):
        return handle.controller.snapshot()
    return RedirectResponse(url=f"/viewer/{handle.comic_id}", status_code=303)


@app.get("/viewer/{comic_id}", response_class=HTMLResponse)
async def viewer_page(request: Request, comic_id: int, width: int = 1024):
    comic = _require_comic(comic_id)
    token = request.cookies.get(VIEWER_COOKIE) or secrets.token_urlsafe(16)
    handle = app.state.viewers.get(token)
    if handle is None or handle.comic_id != comic.id:
        _close_viewer(token)
        try:
            document = await load_document(comic.path)
        except LoadError:
            logger.exception("Failed to load comic %s", comic.id)
            raise HTTPException(status_code=500, detail="Comic could not be loaded")
        controller, gestures = await open_reader(document, app.state.reader_config, width)
        handle = ViewerHandle(comic.id, controller, gestures)
        app.state.viewers[token] = handle
        _evict_idle_viewers()
    else:
        app.state.viewers.move_to_end(token)

    response = _render(
        request,
        "viewer.html",
        {
            "comic": comic,
            "pdf_url": f"/pdf/{comic.id}",
            "state": handle.controller.snapshot(),
            "swipe_threshold": handle.controller.config.swipe_threshold,
            "single_page_max_width": handle.controller.config.single_page_max_width,
        },
    )
    response.set_cookie(VIEWER_COOKIE, token, httponly=True, samesite="lax")
    return response


@app.get("/viewer/{comic_id}/state")
def viewer_state(request: Request, comic_id: int):
    return _get_viewer(request, comic_id).controller.snapshot()


@app.get("/viewer/{comic_id}/surface/{side}")
def viewer_surface(request: Request, comic_id: int, side: str):
    controller = _get_viewer(request, comic_id).controller
    surfaces = {"left": controller.left, "right": controller.right}
    surface = surfaces.get(side)
    if surface is None or surface.png is None or not surface.visible:
        raise HTTPException(status_code=404, detail="Surface is empty")
    return Response(
        content=surface.png,
        media_type="image/png",
        headers={"Cache-Control": "no-store"},
    )


@app.post("/viewer/{comic_id}/next")
async def viewer_next(request: Request, comic_id: int):
    handle = _get_viewer(request, comic_id)
    await handle.controller.advance()
    return _viewer_response(request, handle)


@app.post("/viewer/{comic_id}/prev")
async def viewer_prev(request: Request, comic_id: int):
    handle = _get_viewer(request, comic_id)
    await handle.controller.retreat()
    return _viewer_response(request, handle)


@app.post("/viewer/{comic_id}/toggle-blank")
async def viewer_toggle_blank(request: Request, comic_id: int):
    handle = _get_viewer(request, comic_id)
    await handle.controller.toggle_blank_padding()
    return _viewer_response(request, handle)


@app.post("/viewer/{comic_id}/fullscreen")
async def viewer_fullscreen(request: Request, comic_id: int):
    handle = _get_viewer(request, comic_id)
    handle.controller.toggle_fullscreen()
    return _viewer_response(request, handle)


@app.post("/viewer/{comic_id}/resize")
async def viewer_resize(request: Request, comic_id: int, width: int = Form(...)):
    handle = _get_viewer(request, comic_id)
    await handle.controller.on_viewport_resize(width)
    return _viewer_response(request, handle)


@app.post("/viewer/{comic_id}/key")
async def viewer_key(request: Request, comic_id: int, key: str = Form(...)):
    handle = _get_viewer(request, comic_id)
    await handle.gestures.key(key)
    return _viewer_response(request, handle)


@app.post("/viewer/{comic_id}/swipe")
async def viewer_swipe(
    request: Request,
    comic_id: int,
    start_x: float = Form(...),
    end_x: float = Form(...),
):
    handle = _get_viewer(request, comic_id)
    await handle.gestures.swipe(start_x, end_x)
    return _viewer_response(request, handle)


@app.post("/viewer/{comic_id}/close")
async def viewer_close(request: Request, comic_id: int):
    _get_viewer(request, comic_id)
    _close_viewer(request.cookies[VIEWER_COOKIE])
    return RedirectResponse(url="/", status_code=303)
