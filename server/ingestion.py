"""
Ingestion Pipeline

Turns an uploaded byte stream into a stored, deduplicated archive and makes
it the active dataset.

Each chunk is written to a temp file, folded into the content hash and
counted in the progress counter as it arrives. Once the stream ends the hash
decides whether the bytes are new (linked into storage as <hash>.zim) or
already cached (temp file dropped). Cache index, uploaded-files registry and
active dataset are then updated one at a time, each under its own lock, and
only after the stored file is confirmed on disk.
"""

import os
import logging
from pathlib import Path
from typing import Any, AsyncIterable, Dict, Optional, Tuple
from dataclasses import dataclass

from fastapi.concurrency import run_in_threadpool

from archive_tools import zim_utils
from archive_tools.hashing import ContentHasher
from archive_tools.storage import (
    StorageError,
    archive_path_for,
    commit_archive,
    discard_incoming,
    open_incoming_file,
)
from server.dispatcher import BlockingDispatcher
from server.state import ServerState

logger = logging.getLogger(__name__)


UPLOADED = "uploaded"
FOUND_IN_CACHE = "found_in_cache"

MESSAGES = {
    UPLOADED: "File uploaded successfully",
    FOUND_IN_CACHE: "File found in cache, no re-upload needed.",
}

DEFAULT_FILE_NAME = "unknown.zim"


@dataclass
class IngestionResult:
    status: str
    content_hash: str
    original_file_name: str
    persisted_file_path: Path
    bytes_received: int
    article_count: int = 0
    activated: bool = False

    @property
    def message(self) -> str:
        return MESSAGES[self.status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "file_metadata": {
                "original_file_name": self.original_file_name,
                "persisted_file_path": str(self.persisted_file_path),
                "article_count": self.article_count,
            },
        }


def _write_chunk(handle, chunk: bytes) -> None:
    try:
        handle.write(chunk)
    except OSError as e:
        raise StorageError(f"Failed to write upload data: {e}") from e


def _finish_file(handle) -> None:
    """Flush to disk before the file can be linked into storage"""
    try:
        handle.flush()
        os.fsync(handle.fileno())
    except OSError as e:
        raise StorageError(f"Failed to flush upload data: {e}") from e
    finally:
        handle.close()


class IngestionPipeline:

    def __init__(self, state: ServerState, dispatcher: BlockingDispatcher,
                 default_file_name: str = DEFAULT_FILE_NAME):
        self.state = state
        self.dispatcher = dispatcher
        self.default_file_name = default_file_name

    async def ingest(self, chunks: AsyncIterable[bytes],
                     original_file_name: Optional[str] = None) -> IngestionResult:
        """
        Consume chunks and store their concatenation at most once.

        Any failure while receiving or storing (client disconnect, malformed
        body, disk full) propagates to the caller, with the temp file removed
        and no cache or registry entry added.
        """
        state = self.state
        state.progress.reset()

        temp_path, handle = await run_in_threadpool(open_incoming_file, state.storage_root)
        hasher = ContentHasher()
        committed = False
        try:
            try:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    await run_in_threadpool(_write_chunk, handle, chunk)
                    hasher.update(chunk)
                    state.progress.add(len(chunk))
            finally:
                await run_in_threadpool(_finish_file, handle)

            content_hash = hasher.hexdigest()
            status, stored_path = await self._commit(content_hash, temp_path)
            committed = True
        finally:
            if not committed:
                await run_in_threadpool(discard_incoming, temp_path)

        file_name = original_file_name or self.default_file_name
        logger.info("[upload] %s (%d bytes, %s): %s", file_name, hasher.bytes_hashed, content_hash[:12], status)

        if status == UPLOADED:
            async with state.uploaded_files.lock:
                state.uploaded_files.register(file_name, stored_path)

        async with state.active_dataset.lock:
            activated = state.active_dataset.activate(stored_path)
        if not activated:
            logger.warning("[upload] %s stored as %s but not activated: file is gone", file_name, stored_path.name)

        return IngestionResult(
            status=status,
            content_hash=content_hash,
            original_file_name=file_name,
            persisted_file_path=stored_path,
            bytes_received=hasher.bytes_hashed,
            article_count=await self._article_count(stored_path),
            activated=activated,
        )

    async def _commit(self, content_hash: str, temp_path: Path) -> Tuple[str, Path]:
        """Dedup against the cache index; store the temp file only on a miss"""
        cache = self.state.cache_index
        async with cache.lock:
            existing = cache.get(content_hash)
            if existing is not None:
                await run_in_threadpool(discard_incoming, temp_path)
                return FOUND_IN_CACHE, existing

            final_path = archive_path_for(self.state.storage_root, content_hash)
            created = await run_in_threadpool(commit_archive, temp_path, final_path)
            if not created:
                logger.info("[cache] %s already on disk but not indexed; treating as cached", final_path.name)
            cache.insert(content_hash, final_path)
            return (UPLOADED if created else FOUND_IN_CACHE), final_path

    async def _article_count(self, path: Path) -> int:
        """Article count for the response; 0 if the archive cannot be read"""
        try:
            return await self.dispatcher.run(zim_utils.get_article_count, path)
        except Exception as e:
            logger.warning("[upload] Could not read article count from %s: %s", path.name, e)
            return 0
