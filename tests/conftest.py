"""
测试公共工具：假的 requests 会话、测试用策略和下载参数
"""

import sqlite3
import threading
from collections import Counter

import pytest

from tilecrawler.downloader import TileCrawler
from tilecrawler.policies import CustomPolicy, DownloaderOptions
from tilecrawler.tile_math import Level

PNG = b"\x89PNG\r\n\x1a\n"
URL_TEMPLATE = "https://tiles.test/{z}/{x}/{y}.png"


def tile_url(z, x, y):
    return URL_TEMPLATE.format(z=z, x=x, y=y)


def tile_bytes(url):
    return PNG + url.encode()


class FakeResponse:
    def __init__(self, status_code, content):
        self.status_code = status_code
        self.content = content


class FakeSession:
    """
    按 URL 返回 PNG 内容；failures 指定某些 URL 前 N 次返回 500
    """

    def __init__(self, failures=None, payload=None):
        self.calls = Counter()
        self.failures = dict(failures or {})
        self.payload = payload
        self.lock = threading.Lock()

    def get(self, url, timeout=None, headers=None):
        with self.lock:
            self.calls[url] += 1
            remaining = self.failures.get(url, 0)
            if remaining:
                self.failures[url] = remaining - 1
                return FakeResponse(500, b"")
        if self.payload is not None:
            return FakeResponse(200, self.payload)
        return FakeResponse(200, tile_bytes(url))

    def close(self):
        pass


@pytest.fixture
def fake_session(monkeypatch):
    session = FakeSession()
    monkeypatch.setattr(TileCrawler, "_create_request_session", lambda self: session)
    return session


@pytest.fixture
def make_options(tmp_path):
    def factory(**overrides):
        values = dict(
            mode="mbtiles",
            out_dir=str(tmp_path / "tiles"),
            mbtiles_file=str(tmp_path / "tiles.mbtiles"),
            progress_file=str(tmp_path / "progress.json"),
            concurrency=4,
            max_retry=1,
            delay=0,
            min_delay=0,
            max_delay=0,
            timeout=1,
            checkpoint_interval=3600,
        )
        values.update(overrides)
        return DownloaderOptions(**values)

    return factory


@pytest.fixture
def make_crawler(make_options):
    def factory(levels, policy_cls=CustomPolicy, **overrides):
        options = make_options(**overrides)
        policy = policy_cls("test", URL_TEMPLATE, levels, options=options, require_png=True)
        return TileCrawler(policy, options)

    return factory


def count_rows(path, z=None):
    conn = sqlite3.connect(str(path))
    try:
        if z is None:
            return conn.execute("SELECT COUNT(*) FROM tiles").fetchone()[0]
        return conn.execute("SELECT COUNT(*) FROM tiles WHERE zoom_level = ?", (z,)).fetchone()[0]
    finally:
        conn.close()


def all_rows(path):
    conn = sqlite3.connect(str(path))
    try:
        return set(conn.execute("SELECT zoom_level, tile_column, tile_row, tile_data FROM tiles").fetchall())
    finally:
        conn.close()


def delete_row(path, z, x, tms_row):
    conn = sqlite3.connect(str(path))
    with conn:
        conn.execute(
            "DELETE FROM tiles WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?",
            (z, x, tms_row),
        )
    conn.close()


LEVELS_Z2 = [Level(2)]
