"""
完整性检查、缺失瓦片修复、断点回退
"""

import threading

import pytest

from conftest import LEVELS_Z2, PNG, count_rows, delete_row, tile_url
from tilecrawler.downloader.checkpoint import CheckpointStore
from tilecrawler.downloader.sinks import MBTilesSink
from tilecrawler.exceptions import SinkModeError
from tilecrawler.tile_math import Level, TileAddress, TileMath

LEVELS = [Level(0), Level(1)]


@pytest.fixture
def complete_db(fake_session, make_crawler, tmp_path):
    assert make_crawler(LEVELS).run(LEVELS, listen_for_interrupt=False) is True
    return tmp_path / "tiles.mbtiles"


def test_complete_database_passes(complete_db, make_crawler):
    crawler = make_crawler(LEVELS)
    try:
        assert crawler.check_integrity_by_levels(LEVELS) is False
    finally:
        crawler.close()
    assert [(r.z, r.actual, r.expected) for r in crawler.integrity_report] == [(0, 1, 1), (1, 4, 4)]


def test_deleted_row_is_reported_and_repaired(complete_db, fake_session, make_crawler):
    # XYZ (1, 0, 0) 对应 TMS 行号 1
    delete_row(complete_db, 1, 0, 1)

    crawler = make_crawler(LEVELS)
    try:
        assert crawler.check_integrity_by_levels(LEVELS) is True
    finally:
        crawler.close()
    missing = [r for r in crawler.integrity_report if not r.complete]
    assert [(r.z, r.missing) for r in missing] == [(1, 1)]

    calls = sum(fake_session.calls.values())
    crawler = make_crawler(LEVELS)
    crawler.open_sink()
    assert crawler.collect_missing_tiles(LEVELS) == [TileAddress(1, 0, 0)]
    assert crawler.repair_missing_tiles(LEVELS) == 1

    assert not crawler.sink.is_open
    assert count_rows(complete_db) == 5
    assert sum(fake_session.calls.values()) == calls + 1
    assert fake_session.calls[tile_url(1, 0, 0)] == 2


def test_repair_inserts_exactly_the_missing_tiles(fake_session, make_crawler, tmp_path):
    levels = [Level(0), Level(1), Level(2)]
    assert make_crawler(levels).run(levels, listen_for_interrupt=False) is True
    db = tmp_path / "tiles.mbtiles"
    assert count_rows(db) == 21

    # (z, x, TMS 行号)
    deleted = [(0, 0, 0), (1, 0, 1), (1, 1, 0), (2, 3, 0), (2, 0, 3), (2, 2, 1)]
    for z, x, row in deleted:
        delete_row(db, z, x, row)
    assert count_rows(db) == 21 - len(deleted)

    calls = sum(fake_session.calls.values())
    crawler = make_crawler(levels, repair_workers=3)
    crawler.open_sink()
    assert len(crawler.collect_missing_tiles(levels)) == len(deleted)
    assert crawler.repair_missing_tiles(levels) == len(deleted)

    assert count_rows(db) == 21
    assert sum(fake_session.calls.values()) == calls + len(deleted)
    for z, x, row in deleted:
        assert fake_session.calls[tile_url(z, x, TileMath.tms_row_flip(row, z))] == 2


def test_repair_failure_is_not_retried(complete_db, fake_session, make_crawler):
    delete_row(complete_db, 1, 1, 0)
    fake_session.failures[tile_url(1, 1, 1)] = 5

    crawler = make_crawler(LEVELS)
    crawler.open_sink()
    assert crawler.repair_missing_tiles(LEVELS, workers=2) == 0
    assert count_rows(complete_db, z=1) == 3
    assert fake_session.failures[tile_url(1, 1, 1)] == 4


def test_interrupted_repair_flushes_and_closes(complete_db, fake_session, make_crawler):
    delete_row(complete_db, 0, 0, 0)
    stop = threading.Event()
    stop.set()

    crawler = make_crawler(LEVELS)
    crawler.open_sink()
    assert crawler.repair_missing_tiles(LEVELS, stop_event=stop) == 0
    assert not crawler.sink.is_open
    assert count_rows(complete_db) == 4


def test_repair_requires_open_database(make_crawler):
    crawler = make_crawler(LEVELS)
    with pytest.raises(SinkModeError):
        crawler.repair_missing_tiles(LEVELS)


def test_directory_mode_rejects_integrity_operations(make_crawler):
    crawler = make_crawler(LEVELS, mode="dir")
    with pytest.raises(SinkModeError):
        crawler.check_integrity_by_levels(LEVELS)
    with pytest.raises(SinkModeError):
        crawler.repair_missing_tiles(LEVELS)
    with pytest.raises(SinkModeError):
        crawler.collect_missing_tiles(LEVELS)


def _write_tiles(path, addresses):
    sink = MBTilesSink(path)
    sink.open()
    for address in addresses:
        sink.write(address, PNG)
    sink.close()


def test_rollback_cursor_to_tile_before_first_missing(make_crawler, tmp_path):
    tiles = list(TileMath.iter_tiles(LEVELS_Z2))
    _write_tiles(tmp_path / "tiles.mbtiles", tiles[:5])

    crawler = make_crawler(LEVELS_Z2)
    try:
        assert crawler.find_first_missing_tile(LEVELS_Z2) == tiles[5]
        assert crawler.rollback_cursor(LEVELS_Z2) is True
    finally:
        crawler.close()

    store = CheckpointStore(tmp_path / "progress.json")
    store.load()
    assert store.cursor == tiles[4]


def test_rollback_cursor_when_first_tile_missing(make_crawler, tmp_path):
    crawler = make_crawler(LEVELS_Z2)
    try:
        assert crawler.rollback_cursor(LEVELS_Z2) is True
    finally:
        crawler.close()

    store = CheckpointStore(tmp_path / "progress.json")
    store.load()
    assert store.cursor is None


def test_rollback_cursor_keeps_existing_checkpoint(make_crawler, tmp_path):
    CheckpointStore(tmp_path / "progress.json").save(TileAddress(2, 0, 3), [])
    crawler = make_crawler(LEVELS_Z2)
    assert crawler.rollback_cursor(LEVELS_Z2) is True

    store = CheckpointStore(tmp_path / "progress.json")
    store.load()
    assert store.cursor == TileAddress(2, 0, 3)


def test_rollback_cursor_nothing_missing(make_crawler, tmp_path):
    _write_tiles(tmp_path / "tiles.mbtiles", TileMath.iter_tiles(LEVELS_Z2))
    crawler = make_crawler(LEVELS_Z2)
    try:
        assert crawler.find_first_missing_tile(LEVELS_Z2) is None
        assert crawler.rollback_cursor(LEVELS_Z2) is False
    finally:
        crawler.close()


def test_rollback_works_for_directory_sink(fake_session, make_crawler, tmp_path):
    levels = [Level(1)]
    assert make_crawler(levels, mode="dir").run(levels, listen_for_interrupt=False) is True

    crawler = make_crawler(levels, mode="dir")
    try:
        assert crawler.rollback_cursor(levels) is False
    finally:
        crawler.close()


def test_prev_tile(make_crawler):
    crawler = make_crawler(LEVELS)
    assert crawler.prev_tile(TileAddress(1, 1, 1), LEVELS) == TileAddress(1, 1, 0)
    assert crawler.prev_tile(TileAddress(1, 0, 0), LEVELS) == TileAddress(0, 0, 0)
    assert crawler.prev_tile(TileAddress(0, 0, 0), LEVELS) is None
