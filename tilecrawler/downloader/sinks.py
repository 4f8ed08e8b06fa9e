# tilecrawler/downloader/sinks.py

import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from loguru import logger

from ..exceptions import ConfigurationError
from ..tile_math import TileAddress, TileMath
from .bitmap import ProgressBitmap
from .utils import atomic_write_bytes, ensure_directory


class TileSink:
    """
    瓦片落地的抽象基类，具体的目录 / MBTiles 继承它

    写入必须是幂等的：同一瓦片重复写入不产生重复数据。
    实例本身不加锁，由调用方（TileCrawler）串行化访问。
    """

    mode = ""

    def open(self):
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def has(self, address: TileAddress) -> bool:
        """瓦片是否已存在（包括尚未落盘的缓冲数据）"""
        raise NotImplementedError

    def stage(self, address: TileAddress, data: bytes):
        """
        可在调用方锁外执行的写入准备，之后仍需调用 write；默认不做任何事
        """

    def write(self, address: TileAddress, data: bytes):
        raise NotImplementedError

    def commit(self):
        """
        定期保存断点前调用，把已缓冲的数据落盘
        """

    def flush(self):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError


class DirectorySink(TileSink):
    """
    目录模式：<out_dir>/<z>/<x>/<y>.<ext>，进度位图保存在 <out_dir>/.progress
    """

    mode = "dir"

    def __init__(self, out_dir: Union[str, Path], extension: str = "png"):
        self.out_dir = Path(out_dir)
        self.extension = extension.lower().lstrip(".")
        self.bitmap = ProgressBitmap(self.out_dir / ".progress")
        self.staged: Set[TileAddress] = set()
        self._opened = False

    def open(self):
        ensure_directory(self.out_dir)
        self._opened = True
        logger.info(f"瓦片输出目录: {self.out_dir}")

    @property
    def is_open(self) -> bool:
        return self._opened

    def tile_path(self, address: TileAddress) -> Path:
        return self.out_dir / str(address.z) / str(address.x) / f"{address.y}.{self.extension}"

    def has(self, address: TileAddress) -> bool:
        return self.bitmap.has(*address)

    def stage(self, address: TileAddress, data: bytes):
        # 每个瓦片路径唯一，文件可以在锁外写入
        atomic_write_bytes(self.tile_path(address), data, fsync=False)
        self.staged.add(address)

    def write(self, address: TileAddress, data: bytes):
        if address in self.staged:
            self.staged.discard(address)
        else:
            atomic_write_bytes(self.tile_path(address), data, fsync=False)
        self.bitmap.set(*address)

    def flush(self):
        self.bitmap.flush()

    def close(self):
        if self._opened:
            self.bitmap.flush()
            self._opened = False


class MBTilesSink(TileSink):
    """
    MBTiles 模式：tiles 表以 (zoom_level, tile_column, tile_row) 为主键，tile_row 为 TMS 行号

    写入先进入内存缓冲，攒够 batch_size 条后在一个事务里 INSERT OR IGNORE。
    进程崩溃时最多丢失一个批次，由断点续传和修复补回。
    """

    mode = "mbtiles"

    def __init__(self, path: Union[str, Path], batch_size: int = 200):
        self.path = Path(path)
        self.batch_size = max(1, int(batch_size))
        self.conn: Optional[sqlite3.Connection] = None
        self.buffer: List[Tuple[int, int, int, bytes]] = []
        self.pending: Set[TileAddress] = set()

    def open(self):
        """
        打开（或创建）MBTiles 文件并建表
        """
        if self.conn is not None:
            return

        ensure_directory(self.path.parent)
        # 同一连接会被多个工作线程使用，访问由调用方串行化
        self.conn = sqlite3.connect(str(self.path), check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=30000;")
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tiles (
                zoom_level INTEGER,
                tile_column INTEGER,
                tile_row INTEGER,
                tile_data BLOB,
                PRIMARY KEY (zoom_level, tile_column, tile_row)
            )
            """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS metadata (
                name TEXT,
                value TEXT,
                PRIMARY KEY (name)
            )
            """
        )
        self.conn.commit()
        logger.info(f"MBTiles 数据库已打开: {self.path}")

    @property
    def is_open(self) -> bool:
        return self.conn is not None

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise sqlite3.ProgrammingError(f"MBTiles 数据库未打开: {self.path}")
        return self.conn

    def has(self, address: TileAddress) -> bool:
        if address in self.pending:
            return True
        row = self._require_conn().execute(
            "SELECT 1 FROM tiles WHERE zoom_level = ? AND tile_column = ? AND tile_row = ? LIMIT 1",
            (address.z, address.x, TileMath.tms_row_flip(address.y, address.z)),
        ).fetchone()
        return row is not None

    def write(self, address: TileAddress, data: bytes):
        if address in self.pending:
            return
        self.buffer.append((address.z, address.x, TileMath.tms_row_flip(address.y, address.z), data))
        self.pending.add(address)
        if len(self.buffer) >= self.batch_size:
            self.flush()

    def insert_rows(self, rows: Iterable[Tuple[int, int, int, bytes]]) -> int:
        """
        在一个事务里批量插入（已是 TMS 行号的）瓦片，已存在的忽略

        Returns:
            int: 实际插入的行数
        """
        conn = self._require_conn()
        before = conn.total_changes
        with conn:
            conn.executemany(
                "INSERT OR IGNORE INTO tiles (zoom_level, tile_column, tile_row, tile_data) VALUES (?, ?, ?, ?)",
                rows,
            )
        return conn.total_changes - before

    def flush(self):
        if not self.buffer:
            return
        rows = self.buffer
        inserted = self.insert_rows(rows)
        self.buffer = []
        self.pending.clear()
        logger.debug(f"批量写入 {len(rows)} 个瓦片，新增 {inserted} 行")

    commit = flush

    def count_tiles(self, z: int, min_x: int, max_x: int, min_row: int, max_row: int) -> int:
        """统计一个层级在列 / TMS 行范围内已存储的瓦片数"""
        row = self._require_conn().execute(
            """
            SELECT COUNT(*) FROM tiles
            WHERE zoom_level = ?
              AND tile_column BETWEEN ? AND ?
              AND tile_row BETWEEN ? AND ?
            """,
            (z, min_x, max_x, min_row, max_row),
        ).fetchone()
        return row[0]

    def total_tiles(self) -> int:
        return self._require_conn().execute("SELECT COUNT(*) FROM tiles").fetchone()[0]

    def write_metadata(self, metadata: Dict[str, object]):
        """
        覆盖写入 metadata 表
        """
        conn = self._require_conn()
        with conn:
            conn.execute("DELETE FROM metadata")
            conn.executemany(
                "INSERT INTO metadata (name, value) VALUES (?, ?)",
                [(str(k), str(v)) for k, v in metadata.items()],
            )
        logger.info(f"已写入 metadata: {', '.join(metadata)}")

    def read_metadata(self) -> Dict[str, str]:
        return dict(self._require_conn().execute("SELECT name, value FROM metadata").fetchall())

    def close(self):
        if self.conn is None:
            return
        try:
            self.flush()
        finally:
            self.conn.close()
            self.conn = None
            logger.info(f"MBTiles 数据库已关闭: {self.path}")


def create_sink(options) -> TileSink:
    """
    根据下载参数创建瓦片落地对象

    Args:
        options: DownloaderOptions

    Returns:
        TileSink: DirectorySink 或 MBTilesSink

    Raises:
        ConfigurationError: 未知的 mode
    """
    if options.mode == "dir":
        return DirectorySink(options.out_dir, options.extension)
    if options.mode == "mbtiles":
        return MBTilesSink(options.mbtiles_file, options.mb_batch_size)
    raise ConfigurationError(f"未知的保存模式: {options.mode}（可选 dir / mbtiles）")
