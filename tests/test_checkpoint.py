"""
断点记录测试
"""

import json

from tilecrawler.downloader.checkpoint import CheckpointStore
from tilecrawler.tile_math import TileAddress


def test_missing_file_is_fresh_state(tmp_path):
    store = CheckpointStore(tmp_path / "progress.json")
    store.load()
    assert store.cursor is None
    assert store.failed == []


def test_save_and_load(tmp_path):
    path = tmp_path / "out" / "progress.json"
    CheckpointStore(path).save(TileAddress(3, 1, 2), [TileAddress(2, 0, 0), TileAddress(2, 3, 1)])

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {
        "cursor": {"z": 3, "x": 1, "y": 2},
        "failed": [{"z": 2, "x": 0, "y": 0}, {"z": 2, "x": 3, "y": 1}],
    }

    store = CheckpointStore(path)
    store.load()
    assert store.cursor == TileAddress(3, 1, 2)
    assert store.failed == [TileAddress(2, 0, 0), TileAddress(2, 3, 1)]


def test_malformed_record_falls_back_to_fresh_state(tmp_path):
    path = tmp_path / "progress.json"
    for content in ["{not json", "[1, 2]", '{"cursor": {"z": 1}}', '{"cursor": {"z": 1, "x": 5, "y": 0}}']:
        path.write_text(content, encoding="utf-8")
        store = CheckpointStore(path)
        store.load()
        assert store.cursor is None
        assert store.failed == []


def test_clear(tmp_path):
    path = tmp_path / "progress.json"
    store = CheckpointStore(path)
    store.save(TileAddress(1, 0, 0), [TileAddress(1, 1, 1)])
    store.clear()
    assert json.loads(path.read_text(encoding="utf-8")) == {"cursor": None, "failed": []}
    assert store.cursor is None and store.failed == []
