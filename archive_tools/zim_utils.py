"""
ZIM Archive Utilities
Open, count, enumerate, search and read ZIM archives through libzim.

Every function here is blocking and opens its own Archive handle, so callers
run them on a worker thread (see server.dispatcher). Failures surface as
distinct ArchiveError subclasses; per-entry results are tagged EntryLookups
so "no matches" and "some entries unreadable" stay distinguishable.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass, field

from libzim.reader import Archive
from libzim.search import Query, Searcher

logger = logging.getLogger(__name__)


SEARCH_RESULT_LIMIT = 50
HTML_MIMETYPE = "text/html"


class ArchiveError(Exception):
    """Base class for failures reported by the archive library"""
    pass


class ArchiveOpenError(ArchiveError):
    """The archive file is missing or could not be opened"""
    pass


class QueryError(ArchiveError):
    """The query was rejected or the archive cannot be searched"""
    pass


class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass
class EntryLookup:
    """Outcome of resolving one entry in an archive"""
    status: LookupStatus
    key: str
    title: Optional[str] = None
    content: Optional[str] = None
    mimetype: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def found(cls, key: str, title: str, content: str = None, mimetype: str = None) -> "EntryLookup":
        return cls(LookupStatus.FOUND, key, title=title, content=content, mimetype=mimetype)

    @classmethod
    def not_found(cls, key: str, reason: str = "Entry not found") -> "EntryLookup":
        return cls(LookupStatus.NOT_FOUND, key, error=reason)

    @classmethod
    def failed(cls, key: str, error: Exception) -> "EntryLookup":
        return cls(LookupStatus.ERROR, key, error=str(error))

    @property
    def ok(self) -> bool:
        return self.status == LookupStatus.FOUND

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title}


@dataclass
class SearchResult:
    query: str
    effective_query: str
    retried_lowercase: bool = False
    entries: List[EntryLookup] = field(default_factory=list)

    def titles(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.entries if e.ok]

    @property
    def unreadable_count(self) -> int:
        return sum(1 for e in self.entries if not e.ok)


@dataclass
class ArchiveSummary:
    """Header-level facts about an archive, without scanning its content"""
    file_path: str
    file_size_mb: float = 0
    article_count: int = 0
    entry_count: int = 0
    has_fulltext_index: bool = False
    title: Optional[str] = None
    language: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_path": self.file_path,
            "file_size_mb": self.file_size_mb,
            "article_count": self.article_count,
            "entry_count": self.entry_count,
            "has_fulltext_index": self.has_fulltext_index,
            "metadata": {
                "title": self.title,
                "language": self.language,
            },
            "error": self.error,
        }


def open_archive(zim_path: Union[str, Path]):
    """Open a ZIM archive, raising ArchiveOpenError on any failure"""
    zim_path = Path(zim_path)
    if not zim_path.is_file():
        raise ArchiveOpenError(f"File not found: {zim_path}")
    try:
        return Archive(str(zim_path))
    except Exception as e:
        raise ArchiveOpenError(f"Failed to open archive {zim_path.name}: {e}") from e


def query_archive(archive, query: str, limit: int = SEARCH_RESULT_LIMIT) -> List[str]:
    """Run one full-text query. Returns entry paths in ranking order."""
    try:
        searcher = Searcher(archive)
        search = searcher.search(Query().set_query(query))
        return list(search.getResults(0, limit))[:limit]
    except Exception as e:
        raise QueryError(f"Search failed for '{query}': {e}") from e


def _resolve_entry(entry):
    if entry.is_redirect:
        return entry.get_redirect_entry()
    return entry


def _lookup_path(archive, path: str) -> EntryLookup:
    try:
        entry = archive.get_entry_by_path(path)
        return EntryLookup.found(path, entry.title)
    except KeyError:
        return EntryLookup.not_found(path)
    except Exception as e:
        logger.warning("[search] Entry error for %s: %s", path, e)
        return EntryLookup.failed(path, e)


def get_article_count(zim_path: Union[str, Path]) -> int:
    archive = open_archive(zim_path)
    return int(archive.article_count)


def search_archive(zim_path: Union[str, Path], query: str, limit: int = SEARCH_RESULT_LIMIT) -> SearchResult:
    """
    Full-text search of one archive.

    If the query matches nothing it is retried once in lower case.
    Never returns more than `limit` entries, and `limit` itself is capped
    at SEARCH_RESULT_LIMIT.
    """
    limit = min(int(limit), SEARCH_RESULT_LIMIT)
    logger.info("[search] Searching %s for '%s'", Path(zim_path).name, query)
    archive = open_archive(zim_path)

    result = SearchResult(query=query, effective_query=query)
    paths = query_archive(archive, query, limit)

    if not paths:
        lower_query = query.lower()
        logger.info("[search] No results for '%s', trying lowercase search", query)
        result.effective_query = lower_query
        result.retried_lowercase = True
        paths = query_archive(archive, lower_query, limit)

    result.entries = [_lookup_path(archive, p) for p in paths[:limit]]
    logger.info("[search] Returned %d results (%d unreadable)", len(result.entries), result.unreadable_count)
    return result


def list_articles(zim_path: Union[str, Path]) -> List[EntryLookup]:
    """
    Every HTML article in the archive, in archive order.

    Archive order is entry id order, which libzim keeps sorted by path, so
    titles are not alphabetical. Redirects are skipped. Entries that cannot be read are returned as ERROR lookups.
    """
    archive = open_archive(zim_path)
    articles = []
    for idx in range(archive.entry_count):
        key = str(idx)
        try:
            entry = archive._get_entry_by_id(idx)
            if entry.is_redirect:
                continue
            mimetype = entry.get_item().mimetype
            if mimetype.startswith(HTML_MIMETYPE):
                articles.append(EntryLookup.found(entry.path, entry.title, mimetype=mimetype))
        except Exception as e:
            articles.append(EntryLookup.failed(key, e))
    return articles


def get_article(zim_path: Union[str, Path], title: str) -> EntryLookup:
    """
    Fetch one article body by title.

    Raises ArchiveOpenError if the archive cannot be opened; a missing or
    unreadable article comes back as NOT_FOUND.
    """
    archive = open_archive(zim_path)
    try:
        entry = archive.get_entry_by_title(title)
    except KeyError:
        return EntryLookup.not_found(title, "Article not found")

    try:
        entry = _resolve_entry(entry)
        item = entry.get_item()
        content = bytes(item.content).decode('utf-8', errors='replace')
        return EntryLookup.found(title, entry.title, content=content, mimetype=item.mimetype)
    except Exception as e:
        logger.warning("[article] Failed to read '%s': %s", title, e)
        return EntryLookup.not_found(title, "Article found but failed to read content")


def summarize_archive(zim_path: Union[str, Path]) -> ArchiveSummary:
    zim_path = Path(zim_path)
    summary = ArchiveSummary(file_path=str(zim_path))

    try:
        archive = open_archive(zim_path)
    except ArchiveOpenError as e:
        summary.error = str(e)
        return summary

    summary.file_size_mb = round(zim_path.stat().st_size / (1024 * 1024), 2)
    summary.article_count = int(archive.article_count)
    summary.entry_count = int(archive.entry_count)
    summary.has_fulltext_index = bool(archive.has_fulltext_index)

    keys = set(archive.metadata_keys)
    if "Title" in keys:
        summary.title = archive.get_metadata("Title").decode('utf-8', errors='replace')
    if "Language" in keys:
        summary.language = archive.get_metadata("Language").decode('utf-8', errors='replace')

    return summary
