"""
Shared fixtures: a temp storage folder, an in-memory stand-in for a libzim
Archive, and an app client wired to both.
"""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from archive_tools import zim_utils
from archive_tools.zim_utils import ArchiveOpenError, QueryError
from server.dispatcher import BlockingDispatcher
from server.ingestion import IngestionPipeline
from server.local_config import LocalConfig
from server.state import ServerState


class FakeItem:
    def __init__(self, content: bytes, mimetype: str):
        self.content = memoryview(content)
        self.mimetype = mimetype
        self.size = len(content)


class FakeEntry:
    def __init__(self, path: str, title: str, content: bytes = b"", mimetype: str = "text/html",
                 redirect_to: "FakeEntry" = None, broken: bool = False):
        self.path = path
        self.title = title
        self._item = FakeItem(content, mimetype)
        self._redirect = redirect_to
        self._broken = broken

    @property
    def is_redirect(self) -> bool:
        return self._redirect is not None

    def get_redirect_entry(self) -> "FakeEntry":
        return self._redirect

    def get_item(self) -> FakeItem:
        if self._broken:
            raise RuntimeError("corrupt cluster")
        return self._item


class FakeArchive:
    """Just enough of libzim.reader.Archive for archive_tools.zim_utils"""

    def __init__(self, entries: List[FakeEntry], search_results: Optional[Dict[str, List[str]]] = None):
        self.entries = entries
        self.search_results = search_results or {}
        self.queries: List[str] = []
        self.has_fulltext_index = True
        self.metadata_keys = ["Title", "Language"]

    @property
    def entry_count(self) -> int:
        return len(self.entries)

    @property
    def article_count(self) -> int:
        return sum(1 for e in self.entries if not e.is_redirect and e._item.mimetype.startswith("text/html"))

    def _get_entry_by_id(self, idx: int) -> FakeEntry:
        return self.entries[idx]

    def get_entry_by_path(self, path: str) -> FakeEntry:
        for entry in self.entries:
            if entry.path == path:
                return entry
        raise KeyError(path)

    def get_entry_by_title(self, title: str) -> FakeEntry:
        for entry in self.entries:
            if entry.title == title:
                return entry
        raise KeyError(title)

    def get_metadata(self, name: str) -> bytes:
        return {"Title": b"Test Wiki", "Language": b"eng"}[name]

    def search(self, query: str) -> List[str]:
        self.queries.append(query)
        if query in self.search_results and self.search_results[query] is None:
            raise QueryError(f"Search failed for '{query}': syntax error")
        return list(self.search_results.get(query, []))


def build_archive() -> FakeArchive:
    water = FakeEntry("A/Water", "Water", b"<html><body>Water is wet</body></html>")
    entries = [
        water,
        FakeEntry("A/Solar_Panel", "Solar Panel", b"<html><body>Sunlight</body></html>"),
        FakeEntry("A/H2O", "H2O", redirect_to=water),
        FakeEntry("I/logo.png", "logo.png", b"\x89PNG", mimetype="image/png"),
        FakeEntry("A/Broken", "Broken", broken=True),
    ]
    return FakeArchive(entries, search_results={
        "water": ["A/Water"],
        "Solar": ["A/Solar_Panel", "A/Missing"],
        "bad(": None,
    })


@pytest.fixture
def fake_zim(monkeypatch) -> FakeArchive:
    """Route every archive open to one FakeArchive (for files that exist)"""
    archive = build_archive()

    def fake_open(zim_path):
        if not Path(zim_path).is_file():
            raise ArchiveOpenError(f"File not found: {zim_path}")
        return archive

    def fake_query(arch, query, limit=zim_utils.SEARCH_RESULT_LIMIT):
        return arch.search(query)[:limit]

    monkeypatch.setattr(zim_utils, "open_archive", fake_open)
    monkeypatch.setattr(zim_utils, "query_archive", fake_query)
    return archive


@pytest.fixture
def storage_root(tmp_path) -> Path:
    return tmp_path / "uploads"


@pytest.fixture
def config(tmp_path, storage_root) -> LocalConfig:
    return LocalConfig(
        config_path=str(tmp_path / "no_settings.json"),
        overrides={
            "storage_folder": str(storage_root),
            "static_folder": str(tmp_path / "static"),
            "progress_interval_ms": 1,
            "blocking_workers": 2,
        },
        use_env=False,
    )


@pytest.fixture
def state(storage_root) -> ServerState:
    return ServerState.create(storage_root)


@pytest.fixture
def dispatcher():
    dispatcher = BlockingDispatcher(max_workers=2)
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def pipeline(state, dispatcher) -> IngestionPipeline:
    return IngestionPipeline(state, dispatcher)


@pytest.fixture
def client(config, fake_zim):
    from app import create_app

    with TestClient(create_app(config)) as test_client:
        yield test_client


async def iter_chunks(chunks):
    for chunk in chunks:
        yield chunk


def run(coro):
    return asyncio.run(coro)


def stored_files(root: Path) -> List[Path]:
    return sorted(p for p in root.iterdir() if p.is_file())
