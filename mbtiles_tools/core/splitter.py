#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
MBTiles 拆分

按层级计划从一个大的 MBTiles 中提取瓦片，写入新的 MBTiles
"""

import itertools
import os
import sqlite3
from typing import Dict, Iterator, Optional, Sequence, Tuple

from loguru import logger

from tilecrawler.downloader.sinks import MBTilesSink
from tilecrawler.policies.base import build_level_metadata
from tilecrawler.tile_math import Level, TileMath

Row = Tuple[int, int, int, bytes]


class MBTilesSplitter:
    """
    MBTiles 拆分工具类
    """

    batch_size = 1000

    @staticmethod
    def _read_metadata(conn: sqlite3.Connection) -> Dict[str, str]:
        try:
            return dict(conn.execute("SELECT name, value FROM metadata").fetchall())
        except sqlite3.OperationalError:
            logger.warning("源文件没有 metadata 表，按层级生成")
            return {}

    def _level_rows(self, conn: sqlite3.Connection, level: Level) -> Iterator[Row]:
        """
        读取一个层级的瓦片，带 bbox 时按列和 TMS 行范围裁剪
        """
        if level.bbox is None:
            cursor = conn.execute(
                "SELECT zoom_level, tile_column, tile_row, tile_data FROM tiles WHERE zoom_level = ?",
                (level.z,),
            )
        else:
            r = TileMath.compute_tile_range(level)
            cursor = conn.execute(
                """
                SELECT zoom_level, tile_column, tile_row, tile_data FROM tiles
                WHERE zoom_level = ?
                  AND tile_column BETWEEN ? AND ?
                  AND tile_row BETWEEN ? AND ?
                """,
                (
                    level.z,
                    r.min_x,
                    r.max_x,
                    TileMath.tms_row_flip(r.max_y, level.z),
                    TileMath.tms_row_flip(r.min_y, level.z),
                ),
            )

        copied = 0
        while True:
            rows = cursor.fetchmany(self.batch_size)
            if not rows:
                break
            copied += len(rows)
            yield from rows
        logger.info(f"z{level.z}: 读取 {copied} 个瓦片")

    def split(
        self,
        mbtiles_path: str,
        output_path: str,
        levels: Sequence[Level],
        metadata_overrides: Optional[Dict[str, str]] = None,
    ) -> int:
        """
        按层级计划拆分 MBTiles 文件

        所有层级在一个事务里 INSERT OR IGNORE 到目标库，目标库已有的瓦片保持不变。

        Args:
            mbtiles_path: 输入 MBTiles 文件路径
            output_path: 输出 MBTiles 文件路径
            levels: 要提取的层级（可带 bbox）
            metadata_overrides: 覆盖自动生成的 metadata

        Returns:
            int: 新写入的瓦片数

        Raises:
            FileNotFoundError: 输入文件不存在
            ValueError: 层级为空，或输入与输出是同一个文件
        """
        if not os.path.exists(mbtiles_path):
            raise FileNotFoundError(f"MBTiles文件不存在: {mbtiles_path}")
        if not levels:
            raise ValueError("没有要拆分的缩放级别")
        if os.path.abspath(mbtiles_path) == os.path.abspath(output_path):
            raise ValueError("输入和输出不能是同一个文件")

        src = sqlite3.connect(mbtiles_path)
        dst = MBTilesSink(output_path)
        try:
            source_metadata = self._read_metadata(src)
            dst.open()

            rows = itertools.chain.from_iterable(self._level_rows(src, level) for level in levels)
            inserted = dst.insert_rows(rows)

            metadata = build_level_metadata(
                levels,
                name=source_metadata.get("name") or os.path.splitext(os.path.basename(output_path))[0],
                tile_format=source_metadata.get("format", "png"),
                tile_type=source_metadata.get("type", "baselayer"),
                attribution=source_metadata.get("attribution", ""),
            )
            metadata.update(metadata_overrides or {})
            dst.write_metadata(metadata)
        finally:
            dst.close()
            src.close()

        logger.info(f"拆分完成: {mbtiles_path} -> {output_path}, 新写入 {inserted} 个瓦片")
        return inserted
