"""
Shared Server State

Process-wide state every request handler works against. Each unit owns its
own lock; nothing here updates two units under one critical section.
Cache maintenance is the only caller that holds several locks at once, and
it takes them in the order given by ServerState.lock_order().
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from archive_tools.storage import CacheIndex, ensure_storage_root

logger = logging.getLogger(__name__)


class ProgressCounter:
    """
    Bytes processed by the current (or most recent) ingestion.

    Only the event loop thread mutates it; readers never lock. Concurrent
    ingestions share this one counter, so their progress interleaves.
    """

    def __init__(self):
        self._value = 0

    def reset(self) -> None:
        self._value = 0

    def add(self, count: int) -> int:
        self._value += count
        return self._value

    @property
    def value(self) -> int:
        return self._value


class UploadedFilesRegistry:
    """
    Original client filename -> stored archive paths. Informational only.

    Entries are (name, path) pairs: the same name uploaded with different
    content adds a second entry rather than replacing the first.
    """

    def __init__(self):
        self.lock = asyncio.Lock()
        self._files: Dict[str, List[Path]] = {}

    def register(self, original_file_name: str, path: Path) -> bool:
        if not path.is_file():
            logger.warning("[registry] Not registering %s: %s is gone", original_file_name, path)
            return False
        paths = self._files.setdefault(original_file_name, [])
        if path not in paths:
            paths.append(path)
        return True

    def get(self, original_file_name: str) -> List[Path]:
        return list(self._files.get(original_file_name, []))

    def clear(self) -> None:
        self._files = {}

    def prune_missing(self) -> None:
        remaining = {}
        for name, paths in self._files.items():
            kept = [p for p in paths if p.is_file()]
            if kept:
                remaining[name] = kept
        self._files = remaining

    def snapshot(self) -> Dict[str, List[str]]:
        return {name: [str(p) for p in paths] for name, paths in self._files.items()}

    def __len__(self) -> int:
        return sum(len(paths) for paths in self._files.values())


class ActiveDataset:
    """The archive that article lookups use when no path is given"""

    def __init__(self):
        self.lock = asyncio.Lock()
        self._path: Optional[Path] = None

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def activate(self, path: Path) -> bool:
        """Select path, unless the file has vanished (e.g. cache cleaned meanwhile)"""
        if not path.is_file():
            logger.warning("[active] Refusing to activate missing archive %s", path)
            return False
        self._path = path
        return True

    async def current(self) -> Optional[Path]:
        async with self.lock:
            return self._path

    def clear(self) -> None:
        self._path = None

    def clear_if_missing(self) -> None:
        if self._path is not None and not self._path.is_file():
            self._path = None


class ServerState:
    """Everything one server instance shares between requests"""

    def __init__(self, storage_root: Union[str, Path], cache_index: CacheIndex):
        self.storage_root = Path(storage_root)
        self.cache_index = cache_index
        self.uploaded_files = UploadedFilesRegistry()
        self.active_dataset = ActiveDataset()
        self.progress = ProgressCounter()

    @classmethod
    def create(cls, storage_root: Union[str, Path]) -> "ServerState":
        """Create storage if needed and recover the cache index from it"""
        root = ensure_storage_root(storage_root)
        return cls(root, CacheIndex.load(root))

    def lock_order(self):
        """Locks in the one global order any multi-lock path must use"""
        return (self.cache_index.lock, self.uploaded_files.lock, self.active_dataset.lock)

    async def snapshot(self) -> Dict:
        async with self.cache_index.lock:
            entries = self.cache_index.snapshot()
        async with self.uploaded_files.lock:
            uploaded = self.uploaded_files.snapshot()
        active = await self.active_dataset.current()
        return {
            "storage_folder": str(self.storage_root),
            "cache_entries": entries,
            "uploaded_files": uploaded,
            "active_dataset": str(active) if active else None,
            "processed_bytes": self.progress.value,
        }
