import json
import sys

import pytest

from archive_tools.hashing import hash_chunks
from cli import zim_inspect


@pytest.fixture
def populated_storage(tmp_path):
    root = tmp_path / "uploads"
    root.mkdir()
    good = root / f"{hash_chunks([b'good'])}.zim"
    good.write_bytes(b"good")
    renamed = root / f"{hash_chunks([b'expected'])}.zim"
    renamed.write_bytes(b"tampered")
    (root / "notes.zim").write_bytes(b"x")
    return root, good, renamed


def test_inspect_storage_without_verify(populated_storage):
    root, good, renamed = populated_storage
    report = zim_inspect.inspect_storage(str(root))

    assert {e["path"] for e in report["entries"]} == {str(good), str(renamed), str(root / "notes.zim")}
    assert report["mismatched"] == []
    names = {e["hash"]: e["valid_name"] for e in report["entries"]}
    assert names["notes"] is False


def test_inspect_storage_verify_finds_mismatch(populated_storage):
    root, good, renamed = populated_storage
    report = zim_inspect.inspect_storage(str(root), verify=True)
    assert str(renamed) in report["mismatched"]
    assert str(good) not in report["mismatched"]


def test_storage_command_exit_code(populated_storage, monkeypatch, capsys):
    root, _, _ = populated_storage
    monkeypatch.setattr(sys, "argv", ["zim-inspect", "storage", str(root), "--verify", "--json"])

    with pytest.raises(SystemExit) as excinfo:
        zim_inspect.main()

    assert excinfo.value.code == 1
    report = json.loads(capsys.readouterr().out)
    assert len(report["entries"]) == 3


def test_archive_search_command(fake_zim, tmp_path, monkeypatch, capsys):
    zim_file = tmp_path / "wiki.zim"
    zim_file.write_bytes(b"ZIM")
    monkeypatch.setattr(sys, "argv", ["zim-inspect", "archive", str(zim_file), "--search", "WATER"])

    with pytest.raises(SystemExit) as excinfo:
        zim_inspect.main()

    assert excinfo.value.code == 0
    out = capsys.readouterr().out
    assert "used 'water'" in out
    assert "[OK] Water" in out


def test_archive_summary_of_missing_file(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["zim-inspect", "archive", str(tmp_path / "gone.zim")])

    with pytest.raises(SystemExit) as excinfo:
        zim_inspect.main()

    assert excinfo.value.code == 1
    assert "ERROR" in capsys.readouterr().out
