"""
Content-Addressed Archive Storage

Stored archives live directly under the storage root, named <content_hash>.zim.
Uploads in flight are written to <storage_root>/.incoming/ and linked into place
only once complete, so a regular file under the root is always a whole archive.
"""

import os
import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


ARCHIVE_SUFFIX = ".zim"
INCOMING_DIR = ".incoming"


class StorageError(Exception):
    """Raised when a stored archive cannot be written or registered"""
    pass


def ensure_storage_root(storage_root: Union[str, Path]) -> Path:
    """
    Create the storage root (and its incoming folder) if missing.

    Failure here is not recoverable - the server cannot run without storage.
    """
    root = Path(storage_root)
    root.mkdir(parents=True, exist_ok=True)
    (root / INCOMING_DIR).mkdir(exist_ok=True)
    return root


def archive_path_for(storage_root: Union[str, Path], content_hash: str) -> Path:
    return Path(storage_root) / f"{content_hash}{ARCHIVE_SUFFIX}"


def open_incoming_file(storage_root: Union[str, Path]):
    """Open a fresh temp file for an upload. Returns (path, binary file object)."""
    incoming = Path(storage_root) / INCOMING_DIR
    try:
        incoming.mkdir(parents=True, exist_ok=True)
        handle = tempfile.NamedTemporaryFile(
            mode='wb', dir=str(incoming), prefix="upload-", suffix=".part", delete=False
        )
    except OSError as e:
        raise StorageError(f"Failed to create upload file in {incoming}: {e}") from e
    return Path(handle.name), handle


def commit_archive(temp_path: Path, final_path: Path) -> bool:
    """
    Move a completed upload into its content-addressed name.

    Never overwrites: if final_path already exists the upload is discarded
    and False is returned. The temp file is always gone afterwards.
    """
    try:
        os.link(temp_path, final_path)
        return True
    except FileExistsError:
        return False
    except OSError as e:
        raise StorageError(f"Failed to store archive {final_path.name}: {e}") from e
    finally:
        discard_incoming(temp_path)


def discard_incoming(temp_path: Path) -> None:
    try:
        temp_path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("[storage] Could not remove temp file %s: %s", temp_path, e)


def iter_stored_archives(storage_root: Union[str, Path]) -> List[Path]:
    """Regular files directly under the storage root"""
    root = Path(storage_root)
    if not root.exists():
        return []
    return sorted(p for p in root.iterdir() if p.is_file())


def remove_stored_archives(storage_root: Union[str, Path]) -> List[Tuple[Path, str]]:
    """
    Delete every stored archive under the root.

    Returns a list of (path, error) for files that could not be removed.
    The incoming folder is left alone so in-flight uploads are not broken.
    """
    failures = []
    for path in iter_stored_archives(storage_root):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            failures.append((path, str(e)))
    return failures


class CacheIndex:
    """
    Maps content hash -> stored archive path.

    Source of truth for dedup decisions. Callers hold `lock` around any
    check-then-insert sequence.
    """

    def __init__(self, storage_root: Union[str, Path]):
        self.storage_root = Path(storage_root)
        self.lock = asyncio.Lock()
        self._entries: Dict[str, Path] = {}

    @classmethod
    def load(cls, storage_root: Union[str, Path]) -> "CacheIndex":
        """
        Rebuild the index from the files already in storage.

        The filename stem is trusted as the content hash; files are not re-read.
        """
        index = cls(storage_root)
        for path in iter_stored_archives(storage_root):
            content_hash = path.stem
            if content_hash:
                index._entries[content_hash] = path
        logger.info("[cache] Recovered %d stored archive(s) from %s", len(index._entries), index.storage_root)
        return index

    def get(self, content_hash: str) -> Optional[Path]:
        return self._entries.get(content_hash)

    def insert(self, content_hash: str, path: Path) -> None:
        if not path.is_file():
            raise StorageError(f"Refusing to index missing file: {path}")
        self._entries.setdefault(content_hash, path)

    def clear(self) -> None:
        self._entries = {}

    def prune_missing(self) -> int:
        """Drop entries whose file no longer exists. Returns how many were dropped."""
        missing = [h for h, p in self._entries.items() if not p.is_file()]
        for content_hash in missing:
            del self._entries[content_hash]
        return len(missing)

    def snapshot(self) -> Dict[str, str]:
        return {h: str(p) for h, p in self._entries.items()}

    def __contains__(self, content_hash: str) -> bool:
        return content_hash in self._entries

    def __len__(self) -> int:
        return len(self._entries)
