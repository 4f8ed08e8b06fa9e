# tilecrawler/downloader/checkpoint.py

import json
from pathlib import Path
from typing import List, Optional, Sequence, Union

from loguru import logger

from ..tile_math import TileAddress
from .utils import atomic_write_bytes


def _to_address(data: dict) -> TileAddress:
    address = TileAddress(int(data["z"]), int(data["x"]), int(data["y"]))
    if not address.is_valid():
        raise ValueError(f"瓦片地址越界: {address}")
    return address


def _to_dict(address: TileAddress) -> dict:
    return {"z": address.z, "x": address.x, "y": address.y}


class CheckpointStore:
    """
    断点记录：最后处理的瓦片（cursor）和彻底失败的瓦片列表

    文件格式:
        {"cursor": {"z": 3, "x": 1, "y": 2} | null, "failed": [{"z": .., "x": .., "y": ..}, ...]}

    cursor 非空表示生成顺序中 cursor 及之前的瓦片都已处理。
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.cursor: Optional[TileAddress] = None
        self.failed: List[TileAddress] = []

    def load(self):
        """
        读取断点文件；文件不存在时为初始状态，文件损坏时记录警告并按初始状态处理
        """
        self.cursor = None
        self.failed = []

        if not self.path.exists():
            logger.info(f"未找到进度文件: {self.path}")
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cursor = data.get("cursor")
            failed = [_to_address(t) for t in data.get("failed") or []]
            self.cursor = _to_address(cursor) if cursor else None
            self.failed = failed
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(f"进度文件解析失败，忽略: {self.path} - {e}")
            self.cursor = None
            self.failed = []
            return

        logger.info(f"已恢复进度: cursor={self.cursor}, 失败瓦片={len(self.failed)}")

    def save(self, cursor: Optional[TileAddress], failed: Sequence[TileAddress]):
        """
        覆盖写入断点文件（临时文件 + 替换）

        Args:
            cursor: 当前处理到的瓦片，None 表示从头开始 / 已全部完成
            failed: 彻底失败的瓦片列表
        """
        self.cursor = cursor
        self.failed = list(failed)
        payload = {
            "cursor": _to_dict(cursor) if cursor is not None else None,
            "failed": [_to_dict(t) for t in self.failed],
        }
        atomic_write_bytes(self.path, json.dumps(payload, indent=2).encode("utf-8"))
        logger.debug(f"进度已保存: cursor={cursor}, 失败瓦片={len(self.failed)}")

    def clear(self):
        """写入空断点，表示本次任务已完整结束"""
        self.save(None, [])
