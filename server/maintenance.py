"""
Cache Maintenance
Bulk invalidation of every stored archive and all in-memory indexes.
"""

import logging
from pathlib import Path
from typing import List, Tuple

from archive_tools.storage import remove_stored_archives
from server.dispatcher import BlockingDispatcher
from server.state import ServerState

logger = logging.getLogger(__name__)


class CacheMaintenanceError(Exception):
    """Some stored archives could not be deleted"""

    def __init__(self, failures: List[Tuple[Path, str]]):
        self.failures = failures
        details = "; ".join(f"{p.name}: {err}" for p, err in failures)
        super().__init__(f"Failed to clean cache: {len(failures)} file(s) could not be removed ({details})")


async def clean_cache(state: ServerState, dispatcher: BlockingDispatcher) -> int:
    """
    Delete every stored archive, then forget them all.

    Holds the cache index, uploaded-files and active-dataset locks (in that
    order) for the whole operation, so no ingestion or lookup sees a half
    cleaned cache. On success the state matches a freshly started, empty
    server. Returns the number of cache entries dropped.

    If some deletes fail, CacheMaintenanceError is raised. Indexes are not
    cleared in that case; only entries whose files are already gone are
    dropped, so a retry can finish the job.
    """
    cache_lock, files_lock, active_lock = state.lock_order()
    async with cache_lock:
        async with files_lock:
            async with active_lock:
                failures = await dispatcher.run(remove_stored_archives, state.storage_root)

                if failures:
                    pruned = state.cache_index.prune_missing()
                    state.uploaded_files.prune_missing()
                    state.active_dataset.clear_if_missing()
                    logger.error("[cache] Clean incomplete: %d file(s) left, %d entries pruned",
                                 len(failures), pruned)
                    raise CacheMaintenanceError(failures)

                removed = len(state.cache_index)
                state.cache_index.clear()
                state.uploaded_files.clear()
                state.active_dataset.clear()

    logger.info("[cache] Cache cleaned: %d archive(s) removed", removed)
    return removed
