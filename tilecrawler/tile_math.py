# tilecrawler/tile_math.py
import math
from typing import Iterator, List, NamedTuple, Optional, Sequence, Tuple

# Web Mercator 可表示的纬度上限
MAX_LATITUDE = 85.0511287798

BBox = Tuple[float, float, float, float]


class TileAddress(NamedTuple):
    """
    瓦片地址，y 使用 XYZ 行号（自上而下）
    """
    z: int
    x: int
    y: int

    def __str__(self):
        return f"{self.z}/{self.x}/{self.y}"

    def is_valid(self) -> bool:
        n = 1 << self.z
        return self.z >= 0 and 0 <= self.x < n and 0 <= self.y < n


class TileRange(NamedTuple):
    """
    单个层级的瓦片行列范围（闭区间）
    """
    min_x: int
    max_x: int
    min_y: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1

    @property
    def count(self) -> int:
        return self.width * self.height

    def contains(self, x: int, y: int) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y


class Level(NamedTuple):
    """
    下载计划中的一个层级

    bbox 为 [minLon, minLat, maxLon, maxLat]，为空表示整个层级。
    层级列表的顺序决定瓦片的生成顺序，断点续传依赖这个顺序保持不变。
    """
    z: int
    bbox: Optional[BBox] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Level":
        """
        从 {"z": 13, "bbox": [73, 3, 135, 54]} 形式的配置创建层级

        Raises:
            ValueError: 缩放级别或 bbox 非法
        """
        z = int(data["z"])
        if z < 0:
            raise ValueError(f"缩放级别不能为负数: {z}")
        bbox = data.get("bbox")
        if bbox is None:
            return cls(z)
        if len(bbox) != 4:
            raise ValueError(f"bbox 必须包含 4 个数值: {bbox}")
        return cls(z, tuple(float(v) for v in bbox))

    def to_dict(self) -> dict:
        if self.bbox is None:
            return {"z": self.z}
        return {"z": self.z, "bbox": list(self.bbox)}


class TileMath:
    """
    瓦片坐标计算工具类（Web Mercator / XYZ）
    """

    @staticmethod
    def lonlat_to_tile(lon: float, lat: float, zoom: int) -> Tuple[int, int]:
        """
        经纬度 -> 瓦片坐标 (x, y)

        纬度限制在 Web Mercator 范围内，结果截断到 [0, 2^zoom) 之内，
        因此经度 180 或纬度 -85.05 也会落在最后一行/列。

        Args:
            lon: 经度
            lat: 纬度
            zoom: 缩放级别

        Returns:
            Tuple[int, int]: (x, y)
        """
        lat = max(min(lat, MAX_LATITUDE), -MAX_LATITUDE)
        n = 1 << zoom

        lat_rad = math.radians(lat)
        x_tile = int(math.floor((lon + 180.0) / 360.0 * n))
        y_tile = int(math.floor((1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n))

        return min(max(x_tile, 0), n - 1), min(max(y_tile, 0), n - 1)

    @staticmethod
    def bbox_to_tile_range(bbox: Sequence[float], zoom: int) -> TileRange:
        """
        bbox -> 瓦片范围，按西北角和东南角投影后逐轴取最小/最大值

        Args:
            bbox: [minLon, minLat, maxLon, maxLat]，角点顺序写反也可以
            zoom: 缩放级别

        Returns:
            TileRange: 瓦片范围
        """
        min_lon, min_lat, max_lon, max_lat = bbox
        x1, y1 = TileMath.lonlat_to_tile(min_lon, max_lat, zoom)
        x2, y2 = TileMath.lonlat_to_tile(max_lon, min_lat, zoom)
        return TileRange(min(x1, x2), max(x1, x2), min(y1, y2), max(y1, y2))

    @staticmethod
    def tms_row_flip(y: int, zoom: int) -> int:
        """XYZ 行号与 TMS 行号互转，两次调用得到原值"""
        return (1 << zoom) - 1 - y

    @staticmethod
    def quadkey(x: int, y: int, zoom: int) -> str:
        """
        瓦片坐标 -> Bing QuadKey，高位在前，长度等于 zoom
        """
        digits = []
        for i in range(zoom - 1, -1, -1):
            digits.append(str((((y >> i) & 1) << 1) | ((x >> i) & 1)))
        return "".join(digits)

    @staticmethod
    def compute_tile_range(level: Level) -> TileRange:
        """层级 -> 瓦片范围，没有 bbox 时为整个层级"""
        if level.bbox is None:
            n = (1 << level.z) - 1
            return TileRange(0, n, 0, n)
        return TileMath.bbox_to_tile_range(level.bbox, level.z)

    @staticmethod
    def count_tiles(levels: Sequence[Level]) -> int:
        return sum(TileMath.compute_tile_range(level).count for level in levels)

    @staticmethod
    def iter_tiles(levels: Sequence[Level], after: Optional[TileAddress] = None) -> Iterator[TileAddress]:
        """
        按生成顺序遍历瓦片：层级按配置顺序，层级内 x 递增、同一 x 下 y 递增

        Args:
            levels: 层级列表
            after: 断点地址。给定时从它的下一个瓦片开始，断点本身视为已处理；
                断点不在计划内时不产生任何瓦片

        Yields:
            TileAddress: 瓦片地址
        """
        pending = after is not None
        for level in levels:
            r = TileMath.compute_tile_range(level)
            start_x, start_y = r.min_x, r.min_y

            if pending:
                if level.z != after.z or not r.contains(after.x, after.y):
                    continue
                pending = False
                if after.y < r.max_y:
                    start_x, start_y = after.x, after.y + 1
                else:
                    start_x, start_y = after.x + 1, r.min_y

            for x in range(start_x, r.max_x + 1):
                first_y = start_y if x == start_x else r.min_y
                for y in range(first_y, r.max_y + 1):
                    yield TileAddress(level.z, x, y)

    @staticmethod
    def tile_index(target: TileAddress, levels: Sequence[Level]) -> Optional[int]:
        """
        瓦片在生成顺序中的位置（从 0 开始），不在计划内返回 None
        """
        offset = 0
        for level in levels:
            r = TileMath.compute_tile_range(level)
            if level.z == target.z and r.contains(target.x, target.y):
                return offset + (target.x - r.min_x) * r.height + (target.y - r.min_y)
            offset += r.count
        return None

    @staticmethod
    def prev_tile(target: TileAddress, levels: Sequence[Level]) -> Optional[TileAddress]:
        """
        生成顺序中 target 的前一个瓦片

        Returns:
            Optional[TileAddress]: target 是第一个瓦片或不在计划内时返回 None
        """
        previous_last = None
        for level in levels:
            r = TileMath.compute_tile_range(level)
            if level.z == target.z and r.contains(target.x, target.y):
                if target.y > r.min_y:
                    return TileAddress(level.z, target.x, target.y - 1)
                if target.x > r.min_x:
                    return TileAddress(level.z, target.x - 1, r.max_y)
                return previous_last
            previous_last = TileAddress(level.z, r.max_x, r.max_y)
        return None

    @staticmethod
    def levels_bounds(levels: Sequence[Level]) -> BBox:
        """
        所有层级 bbox 的并集，任一层级不带 bbox 时返回全球范围
        """
        if not levels or any(level.bbox is None for level in levels):
            return (-180.0, -MAX_LATITUDE, 180.0, MAX_LATITUDE)
        return (
            min(level.bbox[0] for level in levels),
            min(level.bbox[1] for level in levels),
            max(level.bbox[2] for level in levels),
            max(level.bbox[3] for level in levels),
        )


def parse_levels(zoom_arg: str, bbox: Optional[Sequence[float]] = None) -> List[Level]:
    """
    解析缩放级别参数

    Args:
        zoom_arg: 单个值或范围，可用逗号分隔，如 "14"、"8-15"、"0-5,7"
        bbox: 应用到每个层级的 bbox

    Returns:
        List[Level]: 按书写顺序排列的层级列表（去重）

    Raises:
        ValueError: 参数格式错误
    """
    zooms: List[int] = []
    for part in zoom_arg.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start, end = (int(v) for v in part.split("-", 1))
            if start > end:
                raise ValueError(f"缩放级别范围非法: {part}")
            zooms.extend(range(start, end + 1))
        else:
            zooms.append(int(part))

    if not zooms:
        raise ValueError(f"未解析到缩放级别: {zoom_arg!r}")

    seen = set()
    box = tuple(float(v) for v in bbox) if bbox else None
    levels = []
    for z in zooms:
        if z in seen:
            continue
        if z < 0:
            raise ValueError(f"缩放级别不能为负数: {z}")
        seen.add(z)
        levels.append(Level(z, box))
    return levels
