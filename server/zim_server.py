"""
ZIM Cache Server Routes
Upload, progress, article, search, browse and cache maintenance endpoints
"""

import json
import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.requests import ClientDisconnect

from archive_tools import zim_utils
from archive_tools.storage import StorageError
from archive_tools.zim_utils import ArchiveOpenError, QueryError
from server.dispatcher import BlockingDispatcher
from server.ingestion import IngestionPipeline
from server.local_config import LocalConfig
from server.maintenance import CacheMaintenanceError, clean_cache
from server.state import ProgressCounter, ServerState
from server.uploads import MalformedUpload, MultipartUpload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["zim"])


class SearchRequest(BaseModel):
    query: str
    file_path: Optional[str] = None


class BrowseRequest(BaseModel):
    file_path: Optional[str] = None


# Dependencies - everything lives on app.state, set up in the app lifespan

def get_server_state(request: Request) -> ServerState:
    return request.app.state.server_state


def get_dispatcher(request: Request) -> BlockingDispatcher:
    return request.app.state.dispatcher


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


def get_config(request: Request) -> LocalConfig:
    return request.app.state.config


async def _resolve_dataset(file_path: Optional[str], state: ServerState) -> Path:
    """Explicit path if given, otherwise the active dataset"""
    if file_path:
        return Path(file_path)
    active = await state.active_dataset.current()
    if active is None:
        raise HTTPException(status_code=400, detail="No ZIM loaded")
    return active


async def progress_events(counter: ProgressCounter, interval: float,
                          is_disconnected: Callable[[], Awaitable[bool]]) -> AsyncIterator[str]:
    """
    Server-sent events reporting the shared progress counter.

    Runs until the client goes away. Only reads the counter, so a new
    upload resetting it simply shows up as a drop in the reported value.
    """
    while True:
        payload = json.dumps({"processed_bytes": counter.value})
        yield f"data: {payload}\n\n"
        await asyncio.sleep(interval)
        if await is_disconnected():
            break


@router.post("/upload")
async def upload_archive(request: Request, pipeline: IngestionPipeline = Depends(get_pipeline)):
    """
    Stream a multipart upload into the cache.

    The first part of the body is the file; its filename is optional.
    """
    try:
        upload = await MultipartUpload.from_request(request)
        result = await pipeline.ingest(upload.iter_chunks(), upload.filename)
    except MalformedUpload as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ClientDisconnect:
        logger.warning("[upload] Client disconnected mid-upload")
        raise HTTPException(status_code=400, detail="Client disconnected during upload")
    except StorageError as e:
        logger.error("[upload] Storage failure: %s", e)
        raise HTTPException(status_code=500, detail=str(e))

    return result.to_dict()


@router.get("/progress")
async def progress(request: Request, state: ServerState = Depends(get_server_state),
                   config: LocalConfig = Depends(get_config)):
    events = progress_events(state.progress, config.get_progress_interval(), request.is_disconnected)
    return StreamingResponse(events, media_type="text/event-stream", headers={"Cache-Control": "no-cache"})


@router.get("/article/{title:path}")
async def article(title: str, state: ServerState = Depends(get_server_state),
                  dispatcher: BlockingDispatcher = Depends(get_dispatcher)):
    """Serve one article body from the active dataset, by title"""
    zim_path = await state.active_dataset.current()
    if zim_path is None:
        raise HTTPException(status_code=400, detail="No ZIM loaded")

    try:
        lookup = await dispatcher.run(zim_utils.get_article, zim_path, title)
    except ArchiveOpenError as e:
        logger.error("[article] %s", e)
        raise HTTPException(status_code=500, detail="Failed to open ZIM archive")

    if not lookup.ok:
        raise HTTPException(status_code=404, detail=lookup.error)

    return HTMLResponse(content=lookup.content)


@router.post("/search")
async def search_articles(body: SearchRequest, state: ServerState = Depends(get_server_state),
                          dispatcher: BlockingDispatcher = Depends(get_dispatcher),
                          config: LocalConfig = Depends(get_config)):
    """
    Full-text search of one archive.

    Returns [{title}] in ranking order, at most search_result_limit entries
    and never more than 50.
    Entries that could not be read are left out and counted in the
    X-Unreadable-Entries header.
    """
    zim_path = await _resolve_dataset(body.file_path, state)
    limit = int(config.get("search_result_limit", zim_utils.SEARCH_RESULT_LIMIT))

    try:
        result = await dispatcher.run(zim_utils.search_archive, zim_path, body.query, limit)
    except ArchiveOpenError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except QueryError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return JSONResponse(
        content=result.titles(),
        headers={"X-Unreadable-Entries": str(result.unreadable_count)},
    )


@router.post("/browse")
async def browse_articles(body: BrowseRequest, state: ServerState = Depends(get_server_state),
                          dispatcher: BlockingDispatcher = Depends(get_dispatcher)):
    """Every HTML article in the archive as [{title}], in archive order"""
    zim_path = await _resolve_dataset(body.file_path, state)

    try:
        lookups = await dispatcher.run(zim_utils.list_articles, zim_path)
    except ArchiveOpenError as e:
        raise HTTPException(status_code=500, detail=str(e))

    unreadable = sum(1 for entry in lookups if not entry.ok)
    if unreadable:
        logger.warning("[browse] %d unreadable entries in %s", unreadable, zim_path.name)

    return JSONResponse(
        content=[entry.to_dict() for entry in lookups if entry.ok],
        headers={"X-Unreadable-Entries": str(unreadable)},
    )


@router.post("/clean_cache")
async def clean_cache_endpoint(state: ServerState = Depends(get_server_state),
                               dispatcher: BlockingDispatcher = Depends(get_dispatcher)):
    """Delete every stored archive and reset all indexes"""
    try:
        removed = await clean_cache(state, dispatcher)
    except CacheMaintenanceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"message": "Cache cleaned successfully", "removed": removed}


@router.get("/api/cache")
async def cache_status(state: ServerState = Depends(get_server_state)):
    """Read-only view of the cache index, uploaded files and active dataset"""
    return await state.snapshot()
