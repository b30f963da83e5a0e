import json
from pathlib import Path

import gallery_backend
from gallery_backend import ObjectStore, PosterTable


def test_table_writes_are_readable_json(tmp_path):
    table = PosterTable(str(tmp_path / "posters.json"))
    table.insert({"title": "Teej", "category": "Festival"})
    saved = json.loads((tmp_path / "posters.json").read_text(encoding="utf-8"))
    assert saved["rows"][0]["title"] == "Teej"
    assert saved["next_id"] == 2


def test_atomic_write_cleans_temp_file_on_replace_error(tmp_path, monkeypatch):
    table = PosterTable(str(tmp_path / "posters.json"))

    def boom(*_args, **_kwargs):
        raise OSError("replace failed")

    monkeypatch.setattr(gallery_backend.os, "replace", boom)

    try:
        table.insert({"title": "Teej", "category": "Festival"})
    except OSError:
        pass
    else:
        raise AssertionError("expected OSError")

    assert list(tmp_path.glob(".tmp_*")) == []
    assert not (tmp_path / "posters.json").exists()


def test_failed_object_write_keeps_previous_version(tmp_path, monkeypatch):
    store = ObjectStore(str(tmp_path / "bucket"))
    store.upload("thumbnails/a.png", b"v1")

    def boom(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(gallery_backend.os, "replace", boom)
    try:
        store.upload("thumbnails/a.png", b"v2")
    except OSError:
        pass
    else:
        raise AssertionError("expected OSError")

    folder = Path(store.root) / "thumbnails"
    assert store.read("thumbnails/a.png") == b"v1"
    assert list(folder.glob(".tmp_*")) == []
