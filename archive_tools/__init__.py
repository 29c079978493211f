"""
Archive Tools Module

Content hashing, content-addressed storage, and ZIM archive access.

Submodules:
- hashing    : Incremental SHA-256 content hashes
- storage    : Stored archive layout and the in-memory cache index
- zim_utils  : libzim wrappers (open, count, browse, search, read)
"""

from .hashing import ContentHasher, hash_chunks, hash_file
from .storage import CacheIndex, StorageError, ensure_storage_root, archive_path_for
from .zim_utils import (
    ArchiveError,
    ArchiveOpenError,
    QueryError,
    EntryLookup,
    LookupStatus,
    SearchResult,
)

__all__ = [
    'ContentHasher',
    'hash_chunks',
    'hash_file',
    'CacheIndex',
    'StorageError',
    'ensure_storage_root',
    'archive_path_for',
    # Archive errors and results
    'ArchiveError',
    'ArchiveOpenError',
    'QueryError',
    'EntryLookup',
    'LookupStatus',
    'SearchResult',
]
