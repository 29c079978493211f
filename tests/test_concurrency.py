import asyncio
import time
from pathlib import Path

import pytest

from archive_tools.hashing import hash_chunks
from archive_tools.storage import INCOMING_DIR
from server import ingestion
from server.ingestion import UPLOADED
from server.maintenance import clean_cache
from server.state import ActiveDataset, UploadedFilesRegistry
from conftest import iter_chunks, run, stored_files


async def wait_for(predicate, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def assert_state_consistent(state):
    active = state.active_dataset.path
    assert active is None or active.is_file()
    for path in state.cache_index.snapshot().values():
        assert Path(path).is_file()
    for paths in state.uploaded_files.snapshot().values():
        assert all(Path(p).is_file() for p in paths)


def test_activation_refused_for_missing_file(tmp_path):
    active = ActiveDataset()
    assert active.activate(tmp_path / "gone.zim") is False
    assert active.path is None

    present = tmp_path / "here.zim"
    present.write_bytes(b"zim")
    assert active.activate(present) is True
    assert active.activate(tmp_path / "gone.zim") is False
    assert active.path == present


def test_registry_refuses_missing_file(tmp_path):
    registry = UploadedFilesRegistry()
    assert registry.register("gone.zim", tmp_path / "gone.zim") is False
    assert registry.get("gone.zim") == []
    assert len(registry) == 0


def test_file_vanishing_before_activation(pipeline, state, fake_zim):
    digest = hash_chunks([b"short lived"])

    async def scenario():
        # park the ingestion between cache commit and registry update
        await state.uploaded_files.lock.acquire()
        task = asyncio.create_task(pipeline.ingest(iter_chunks([b"short lived"]), "gone.zim"))
        await wait_for(lambda: digest in state.cache_index)

        state.cache_index.get(digest).unlink()
        state.uploaded_files.lock.release()
        return await task

    result = run(scenario())

    assert result.status == UPLOADED
    assert result.activated is False
    assert result.article_count == 0
    assert state.active_dataset.path is None
    assert state.uploaded_files.get("gone.zim") == []


def test_clean_during_streaming_upload(pipeline, state, dispatcher, storage_root, fake_zim):
    gate = asyncio.Event()

    async def gated():
        yield b"part one "
        await gate.wait()
        yield b"part two"

    async def scenario():
        task = asyncio.create_task(pipeline.ingest(gated(), "mid.zim"))
        await wait_for(lambda: state.progress.value > 0)

        removed = await clean_cache(state, dispatcher)
        in_flight = list((storage_root / INCOMING_DIR).iterdir())

        gate.set()
        return removed, in_flight, await task

    removed, in_flight, result = run(scenario())

    assert removed == 0
    assert len(in_flight) == 1
    assert result.status == UPLOADED
    assert result.persisted_file_path.read_bytes() == b"part one part two"
    assert state.active_dataset.path == result.persisted_file_path
    assert result.activated is True
    assert_state_consistent(state)


def test_clean_racing_commit(pipeline, state, dispatcher, storage_root, fake_zim, monkeypatch):
    real_commit = ingestion.commit_archive
    hooks = {}

    def commit_then_signal(temp_path, final_path):
        created = real_commit(temp_path, final_path)
        hooks["loop"].call_soon_threadsafe(hooks["committed"].set)
        return created

    monkeypatch.setattr(ingestion, "commit_archive", commit_then_signal)

    async def scenario():
        hooks["loop"] = asyncio.get_running_loop()
        hooks["committed"] = asyncio.Event()

        ingest_task = asyncio.create_task(pipeline.ingest(iter_chunks([b"racing"]), "race.zim"))
        await hooks["committed"].wait()
        clean_task = asyncio.create_task(clean_cache(state, dispatcher))
        return await asyncio.gather(ingest_task, clean_task)

    result, removed = run(scenario())

    assert result.status == UPLOADED
    assert removed == 1
    assert stored_files(storage_root) == []
    assert len(state.cache_index) == 0
    assert_state_consistent(state)


def test_slow_blocking_call_leaves_loop_free(dispatcher):
    async def scenario():
        ticks = []

        async def ticker():
            while True:
                ticks.append(time.monotonic())
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        await asyncio.sleep(0)
        await dispatcher.run(time.sleep, 0.3)
        task.cancel()
        return ticks

    ticks = run(scenario())
    assert len(ticks) >= 5


def test_dispatcher_propagates_exceptions(dispatcher):
    def explode():
        raise KeyError("missing entry")

    with pytest.raises(KeyError):
        run(dispatcher.run(explode))
