# tilecrawler/downloader/bitmap.py

from pathlib import Path
from typing import Dict, Union

from loguru import logger

from .utils import atomic_write_bytes, ensure_directory


class ProgressBitmap:
    """
    目录模式的下载进度位图

    每个缩放级别一个位数组，保存在 <root>/z<Z>.bit，大小为 ceil((2^Z)^2 / 8) 字节，
    第 y * 2^Z + x 位表示瓦片 (x, y) 已写入。数百万个文件逐个 stat 太慢，
    位图可以 O(1) 判断是否已下载。位只会被置 1，不会被清除。
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.maps: Dict[int, bytearray] = {}

    @staticmethod
    def bitmap_size(z: int) -> int:
        """层级 z 的位图字节数"""
        n = 1 << z
        return (n * n + 7) // 8

    @staticmethod
    def bit_index(z: int, x: int, y: int) -> int:
        return (y << z) + x

    def _file(self, z: int) -> Path:
        return self.root / f"z{z}.bit"

    def load(self, z: int) -> bytearray:
        """
        加载层级 z 的位图，首次访问时从文件读取，文件不存在则创建全 0 位图

        Args:
            z: 缩放级别

        Returns:
            bytearray: 该层级的位图（进程内缓存）
        """
        bits = self.maps.get(z)
        if bits is not None:
            return bits

        size = self.bitmap_size(z)
        path = self._file(z)
        if path.exists():
            bits = bytearray(path.read_bytes())
            if len(bits) != size:
                logger.warning(f"位图文件大小异常: {path} ({len(bits)} 字节，应为 {size} 字节)，已按预期大小修正")
                if len(bits) < size:
                    bits.extend(bytes(size - len(bits)))
                else:
                    del bits[size:]
            logger.debug(f"已加载位图: {path}")
        else:
            bits = bytearray(size)

        self.maps[z] = bits
        return bits

    def has(self, z: int, x: int, y: int) -> bool:
        idx = self.bit_index(z, x, y)
        return (self.load(z)[idx >> 3] & (1 << (idx & 7))) != 0

    def set(self, z: int, x: int, y: int):
        idx = self.bit_index(z, x, y)
        self.load(z)[idx >> 3] |= 1 << (idx & 7)

    def flush(self):
        """
        把内存中的所有位图写回文件
        """
        ensure_directory(self.root)
        for z, bits in self.maps.items():
            atomic_write_bytes(self._file(z), bytes(bits))
        logger.debug(f"位图已保存: {self.root} ({len(self.maps)} 个层级)")
