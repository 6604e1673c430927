"""HTTP interface for the reading client."""

import asyncio
import logging
import re
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse

from feedviewer.config import Settings
from feedviewer.database import Database, StorageError
from feedviewer.fetcher import start_polling
from feedviewer.models import Item
from feedviewer.tracker import DEFAULT_SESSION, BatchTracker

logger = logging.getLogger(__name__)

SESSION_COOKIE = "feedviewer_session"
PAGE_TEMPLATE = "viewer.html"

FALLBACK_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Feed Viewer</title></head>
<body><div id="articles"></div><script src="/viewer.js"></script></body>
</html>
"""

_img_src_pat = re.compile(r"""<img[^>]*src=["']([^"']+)["'][^>]*>""", re.IGNORECASE)


def extract_first_image_url(html: str | None) -> str | None:
    """Return the src of the first <img> tag, if any."""
    if not html:
        return None
    m = _img_src_pat.search(html)
    return m[1] if m else None


def item_to_dict(item: Item, include_body: bool = False) -> dict:
    data = {
        "id": item.id,
        "title": item.title,
        "source_url": item.source_url,
        "preview": item.preview,
        "published_at": item.published_at.isoformat() if item.published_at else None,
        "read": item.read,
        "summary": item.summary,
        "unavailable": item.unavailable,
        "image_url": extract_first_image_url(item.preview),
    }
    if include_body:
        data["cached_body"] = item.cached_body
    return data


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_tracker(request: Request) -> BatchTracker:
    return request.app.state.tracker


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session(request: Request) -> str:
    """Session key from the cookie set on page load, or the default reader."""
    return request.cookies.get(SESSION_COOKIE) or DEFAULT_SESSION


def load_page(settings: Settings) -> str:
    if settings.static_dir:
        path = Path(settings.static_dir) / PAGE_TEMPLATE
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            logger.error("Error loading page template %s: %s", path, e)
    return FALLBACK_PAGE


def create_app(db: Database, settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI app around an already connected database."""
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        poller_task = None
        if settings.feed_url and settings.poll_interval > 0:
            poller_task = asyncio.create_task(
                start_polling(db, settings.feed_url, settings.poll_interval, settings.healthcheck_url)
            )
        try:
            yield
        finally:
            if poller_task is not None:
                poller_task.cancel()
                try:
                    await poller_task
                except asyncio.CancelledError:
                    pass

    app = FastAPI(title="Feed Viewer", lifespan=lifespan)
    app.state.db = db
    app.state.tracker = BatchTracker(db)
    app.state.settings = settings

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "Storage operation failed"})

    @app.get("/", response_class=HTMLResponse)
    def index(
        request: Request,
        tracker: BatchTracker = Depends(get_tracker),
        settings: Settings = Depends(get_settings),
    ) -> HTMLResponse:
        """Fresh load of the reading page: start the session over."""
        session = request.cookies.get(SESSION_COOKIE)
        new_session = session is None
        if new_session:
            session = uuid.uuid4().hex
        logger.info(
            "[PAGE_LOAD] session=%s client=%s user-agent=%s",
            session,
            request.client.host if request.client else "unknown",
            request.headers.get("user-agent", "unknown"),
        )
        tracker.reset(session)

        response = HTMLResponse(load_page(settings))
        if new_session:
            response.set_cookie(SESSION_COOKIE, session, httponly=True, samesite="lax")
        return response

    @app.get("/api/articles")
    def list_articles(
        offset: int = Query(0, ge=0),
        limit: int | None = Query(None, ge=1),
        tracker: BatchTracker = Depends(get_tracker),
        settings: Settings = Depends(get_settings),
        session: str = Depends(get_session),
    ) -> list[dict]:
        page = tracker.request_page(offset, limit or settings.batch_size, session)
        return [item_to_dict(item) for item in page.items]

    @app.post("/api/mark-final-batch")
    def mark_final_batch(
        tracker: BatchTracker = Depends(get_tracker),
        session: str = Depends(get_session),
    ) -> dict:
        marked = tracker.commit_final(session)
        return {"success": True, "marked": marked}

    @app.post("/api/session/reset")
    def reset_session(
        tracker: BatchTracker = Depends(get_tracker),
        session: str = Depends(get_session),
    ) -> dict:
        discarded = tracker.reset(session)
        return {"success": True, "discarded": discarded}

    @app.get("/api/articles/{item_id:path}")
    def get_article(item_id: str, db: Database = Depends(get_db)) -> dict:
        item = db.get_by_id(item_id)
        if item is None:
            raise HTTPException(status_code=404, detail="Article not found")
        return item_to_dict(item, include_body=True)

    @app.get("/api/status")
    def status(
        db: Database = Depends(get_db),
        tracker: BatchTracker = Depends(get_tracker),
        session: str = Depends(get_session),
    ) -> dict:
        return {
            "unread": db.count_unread(),
            "pending": list(tracker.pending(session)),
        }

    return app
