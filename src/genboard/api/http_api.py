# src/genboard/api/http_api.py

"""
HTTP surface for the dashboard.

Every route lives under /api/backend and requires an access token
(see api.auth). Documents are returned in their stored camelCase form.

Error mapping:
- NotFoundError          -> 404 {"error": "Not Found"}
- HTTPException / input  -> its status, {"error": <detail>}
- other GenboardError    -> 500 {"error": <message>}, logged

Long-lived `GET /stream` emits `retry: 2000`, an initial `state` event, then
whatever the EventBus broadcasts (`state`, `task`), with comment keepalives.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..core.models import (
    Task,
    UploadedImage,
    collection_image_keys,
    image_url_for_key,
    key_basename,
    normalize_collection,
    normalize_concurrency,
    removed_image_keys,
)
from ..core.state import AppState
from ..errors import GenboardError, NotFoundError
from ..events import SSE_RETRY_MS, EventBus, Subscription, format_sse
from ..storage.image_store import mime_for
from ..storage.task_store import TaskStore
from .auth import require_token

logger = logging.getLogger(__name__)

API_PREFIX = "/api/backend"
KEEPALIVE_SECONDS = 15.0


# ---- request bodies ----


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RetryRequest(_Body):
    sub_task_id: str | None = Field(default=None, alias="subTaskId")


class StopRequest(_Body):
    sub_task_id: str | None = Field(default=None, alias="subTaskId")
    mode: str | None = None


class CleanupRequest(_Body):
    keys: list[Any] = Field(default_factory=list)


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON") from e


def _as_dict(payload: Any) -> dict[str, Any]:
    return payload if isinstance(payload, dict) else {}


# ---- live updates ----


async def event_stream(
    bus: EventBus,
    store: TaskStore,
    sub: Subscription,
    is_disconnected: Callable[[], Awaitable[bool]],
    *,
    keepalive_seconds: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """SSE frames for one client; the subscription is dropped when the client goes away."""
    try:
        yield f"retry: {SSE_RETRY_MS}\n\n"
        try:
            yield format_sse("state", store.load_state().to_dict())
        except GenboardError:
            logger.warning("Failed to load initial stream state", exc_info=True)
        while not sub.closed:
            if await is_disconnected():
                break
            try:
                message = await asyncio.wait_for(sub.next_message(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield message
    finally:
        bus.unsubscribe(sub)


# ---- error handlers ----


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def _not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
        logger.debug("Not found: %s", exc)
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": "Not Found"})

    @app.exception_handler(GenboardError)
    async def _genboard_error(request: Request, exc: GenboardError) -> JSONResponse:
        logger.error("Request failed %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.debug("Invalid request body: %s", exc.errors())
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid Request"})


# ---- routes ----


def _build_router(state: AppState) -> APIRouter:
    router = APIRouter(prefix=API_PREFIX, dependencies=[Depends(require_token)])
    store = state.store
    images = state.images
    janitor = state.janitor
    scheduler = state.scheduler
    bus = state.bus

    # -- live updates --

    @router.get("/stream")
    async def stream(request: Request) -> StreamingResponse:
        return StreamingResponse(
            event_stream(bus, store, bus.subscribe(), request.is_disconnected),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # -- global state --

    @router.get("/state")
    async def get_state() -> dict[str, Any]:
        return store.load_state().to_dict()

    @router.patch("/state")
    async def patch_state(request: Request) -> dict[str, Any]:
        body = _as_dict(await _json_body(request))
        nxt = store.load_state().apply_patch(body)
        store.save_state(nxt)
        return nxt.to_dict()

    # -- collection --

    @router.get("/collection")
    async def get_collection() -> list[dict[str, Any]]:
        return [item.to_dict() for item in store.load_collection()]

    @router.put("/collection")
    async def put_collection(request: Request) -> list[dict[str, Any]]:
        previous = store.load_collection()
        items = normalize_collection(await _json_body(request))
        store.save_collection(items)
        removed = collection_image_keys(previous) - collection_image_keys(items)
        janitor.cleanup(sorted(removed))
        janitor.schedule_sweep()
        return [item.to_dict() for item in items]

    # -- tasks --

    @router.get("/task/{task_id}")
    async def get_task(task_id: str) -> dict[str, Any]:
        task = store.load_task(task_id)
        if task is None:
            if task_id not in store.load_state().tasks_order:
                raise NotFoundError(f"Unknown task: {task_id}")
            task = store.save_task(task_id, Task())
        return task.to_dict()

    @router.put("/task/{task_id}")
    async def put_task(task_id: str, request: Request) -> dict[str, Any]:
        previous = store.load_task(task_id)
        nxt = Task.from_dict(_as_dict(await _json_body(request)))
        store.save_task(task_id, nxt)
        if previous is not None:
            janitor.cleanup(removed_image_keys(previous, nxt))
        janitor.schedule_sweep()
        return nxt.to_dict()

    @router.patch("/task/{task_id}")
    async def patch_task(task_id: str, request: Request) -> dict[str, Any]:
        body = _as_dict(await _json_body(request))
        current = store.load_task(task_id) or Task()
        nxt = Task.from_dict(current.to_dict())
        if isinstance(body.get("prompt"), str):
            nxt.prompt = body["prompt"]
        nxt.concurrency = normalize_concurrency(body.get("concurrency"), current.concurrency)
        if isinstance(body.get("enableSound"), bool):
            nxt.enable_sound = body["enableSound"]
        if isinstance(body.get("uploads"), list):
            nxt.uploads = [UploadedImage.from_dict(u) for u in body["uploads"] if isinstance(u, dict)]
        store.save_task(task_id, nxt)
        janitor.cleanup(removed_image_keys(current, nxt))
        janitor.schedule_sweep()
        return nxt.to_dict()

    @router.delete("/task/{task_id}")
    async def delete_task(task_id: str) -> dict[str, Any]:
        scheduler.delete_task(task_id)
        return {"ok": True}

    @router.post("/task/{task_id}/generate")
    async def generate(task_id: str) -> dict[str, Any]:
        return scheduler.generate(task_id).to_dict()

    @router.post("/task/{task_id}/retry")
    async def retry(task_id: str, body: RetryRequest) -> dict[str, Any]:
        if not body.sub_task_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing subTaskId")
        return scheduler.retry_subtask(task_id, body.sub_task_id).to_dict()

    @router.post("/task/{task_id}/stop")
    async def stop(task_id: str, body: StopRequest | None = None) -> dict[str, Any]:
        body = body or StopRequest()
        return scheduler.stop_subtask(task_id, body.sub_task_id, body.mode).to_dict()

    # -- images --

    @router.post("/upload")
    async def upload(request: Request) -> dict[str, Any]:
        data = await request.body()
        if not data:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty Body")
        content_type = request.headers.get("content-type") or "application/octet-stream"
        saved = images.save(data, content_type)
        return {"key": saved.key, "url": image_url_for_key(saved.key)}

    @router.get("/image/{key}")
    async def get_image(key: str) -> FileResponse:
        path = images.path_for(key)
        if not path.is_file():
            raise NotFoundError(f"Image not found: {key}")
        return FileResponse(path, media_type=mime_for(path.name))

    @router.delete("/image/{key}")
    async def delete_image(key: str) -> dict[str, Any]:
        if not key_basename(key):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Key")
        images.delete(key)
        return {"ok": True}

    @router.post("/images/cleanup")
    async def cleanup_images(body: CleanupRequest) -> dict[str, Any]:
        keys = [k for k in (key_basename(key) for key in body.keys) if k]
        janitor.cleanup(keys)
        janitor.schedule_sweep()
        return {"ok": True}

    return router


# ---- app ----


def create_app(state: AppState) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if not len(state.tokens):
            logger.warning("No access tokens configured; backend routes will reject every request")
        try:
            state.janitor.sweep_orphans()
        except GenboardError:
            logger.exception("Startup orphan sweep failed")
        logger.info("%s backend ready", state.settings.app_name)
        try:
            yield
        finally:
            state.janitor.cancel_pending()
            await state.scheduler.shutdown()
            await state.provider.aclose()
            logger.info("%s backend stopped", state.settings.app_name)

    app = FastAPI(title=state.settings.app_name, lifespan=lifespan)
    app.state.genboard = state
    _install_error_handlers(app)

    if state.settings.log_requests:

        @app.middleware("http")
        async def log_requests(request: Request, call_next):
            started = time.monotonic()
            response = await call_next(request)
            logger.info(
                "http %s %s status=%d ms=%d",
                request.method,
                request.url.path,
                response.status_code,
                int((time.monotonic() - started) * 1000),
            )
            return response

    app.include_router(_build_router(state))
    return app
