"""
ZIM Cache Server - Upload, cache and browse ZIM archives
FastAPI backend with content-addressed storage and live upload progress
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse
from fastapi.staticfiles import StaticFiles

from server import router as zim_router
from server.dispatcher import BlockingDispatcher
from server.ingestion import IngestionPipeline
from server.local_config import LocalConfig, get_local_config
from server.state import ServerState

logger = logging.getLogger(__name__)


INDEX_FALLBACK = """<!DOCTYPE html>
<html>
<head><title>ZIM Cache Server</title></head>
<body>
    <h1>ZIM Cache Server</h1>
    <p>POST a ZIM file to <code>/upload</code>, then use <code>/search</code>,
    <code>/browse</code> and <code>/article/{title}</code>.</p>
</body>
</html>
"""


def configure_logging(config: LocalConfig) -> None:
    logging.basicConfig(
        level=str(config.get("log_level", "INFO")).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(config: Optional[LocalConfig] = None) -> FastAPI:
    """Build the application. Shared state is created at startup, not import."""
    config = config or get_local_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(config)
        # Fatal if storage cannot be created - nothing works without it
        state = ServerState.create(config.get_storage_folder())
        dispatcher = BlockingDispatcher(max_workers=config.get_blocking_workers())

        app.state.server_state = state
        app.state.dispatcher = dispatcher
        app.state.pipeline = IngestionPipeline(state, dispatcher, config.get("default_file_name"))
        logger.info("Storage at %s, %d cached archive(s)", state.storage_root, len(state.cache_index))
        try:
            yield
        finally:
            dispatcher.shutdown(wait=False)

    app = FastAPI(
        title="ZIM Cache Server",
        description="Content-addressed ZIM archive cache with search and browsing",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(zim_router)

    static_dir = config.get_static_folder()
    if static_dir.is_dir():
        app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")

    @app.get("/", response_class=HTMLResponse)
    async def index():
        index_file = static_dir / "index.html"
        if index_file.is_file():
            return FileResponse(str(index_file))
        return HTMLResponse(content=INDEX_FALLBACK)

    return app


app = create_app()


# Run with: uvicorn app:app
if __name__ == "__main__":
    import uvicorn

    config = get_local_config()
    configure_logging(config)
    print(f"Server running on http://{config.get('host')}:{config.get('port')}")
    uvicorn.run(app, host=config.get("host"), port=int(config.get("port")))
