# tilecrawler/policies/base.py

import dataclasses
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..exceptions import ConfigurationError
from ..tile_math import Level, TileMath

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

# 配置文件里常见的驼峰写法 -> 字段名
CAMEL_CASE_KEYS = {
    "outDir": "out_dir",
    "mbtilesFile": "mbtiles_file",
    "sinkPath": "mbtiles_file",
    "progressFile": "progress_file",
    "maxRetry": "max_retry",
    "mbBatchSize": "mb_batch_size",
    "minDelay": "min_delay",
    "maxDelay": "max_delay",
    "statsWindow": "stats_window",
    "checkpointEvery": "checkpoint_every",
    "checkpointInterval": "checkpoint_interval",
    "repairWorkers": "repair_workers",
}

SINK_MODES = ("mbtiles", "dir")


def is_png(data: Optional[bytes]) -> bool:
    """内容是否以 PNG 文件头开始"""
    return bool(data) and len(data) > 8 and data[:8] == PNG_SIGNATURE


def _fmt(value: float) -> str:
    return f"{value:g}"


def build_level_metadata(
    levels: Sequence[Level],
    name: str,
    tile_format: str = "png",
    tile_type: str = "baselayer",
    attribution: str = "",
) -> Dict[str, str]:
    """
    根据层级计划生成 MBTiles metadata

    Args:
        levels: 层级列表
        name: 图层名称
        tile_format: 瓦片格式
        tile_type: baselayer 或 overlay
        attribution: 版权信息

    Returns:
        Dict[str, str]: name / format / minzoom / maxzoom / bounds / center / type / attribution
    """
    zooms = [level.z for level in levels] or [0]
    min_zoom, max_zoom = min(zooms), max(zooms)
    west, south, east, north = TileMath.levels_bounds(levels)
    center_zoom = min_zoom + (max_zoom - min_zoom) // 2

    return {
        "name": name,
        "format": tile_format,
        "minzoom": str(min_zoom),
        "maxzoom": str(max_zoom),
        "bounds": ",".join(_fmt(v) for v in (west, south, east, north)),
        "center": f"{_fmt((west + east) / 2)},{_fmt((south + north) / 2)},{center_zoom}",
        "type": tile_type,
        "attribution": attribution,
    }


@dataclass
class DownloaderOptions:
    """
    下载参数，时间单位均为秒
    """

    mode: str = "mbtiles"
    out_dir: str = "./tiles"
    mbtiles_file: str = "./tiles/tiles.mbtiles"
    progress_file: str = "./tiles/progress.json"
    concurrency: int = 128
    max_retry: int = 5
    mb_batch_size: int = 200
    delay: float = 0.05
    min_delay: float = 0.05
    max_delay: float = 2.0
    window: int = 100
    stats_window: int = 500
    timeout: float = 10
    checkpoint_every: int = 1000
    checkpoint_interval: float = 30.0
    repair_workers: int = 10
    extension: str = "png"

    @classmethod
    def from_dict(cls, data: Dict) -> "DownloaderOptions":
        """
        从配置字典创建，支持 snake_case 和驼峰两种键名

        Raises:
            ConfigurationError: 存在未知的键或参数非法
        """
        names = {f.name for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in data.items():
            field_name = CAMEL_CASE_KEYS.get(key, key)
            if field_name not in names:
                raise ConfigurationError(f"未知的下载参数: {key}")
            kwargs[field_name] = value
        options = cls(**kwargs)
        options.validate()
        return options

    def replace(self, **overrides) -> "DownloaderOptions":
        """
        返回覆盖了部分参数的副本，值为 None 的参数忽略
        """
        changes = {k: v for k, v in overrides.items() if v is not None}
        try:
            options = dataclasses.replace(self, **changes)
        except TypeError as e:
            raise ConfigurationError(f"未知的下载参数: {e}") from e
        options.validate()
        return options

    def validate(self):
        if self.mode not in SINK_MODES:
            raise ConfigurationError(f"未知的保存模式: {self.mode}（可选 {' / '.join(SINK_MODES)}）")
        if self.concurrency < 1:
            raise ConfigurationError(f"concurrency 必须大于 0: {self.concurrency}")
        if self.max_retry < 0:
            raise ConfigurationError(f"max_retry 不能为负数: {self.max_retry}")
        if self.min_delay > self.max_delay:
            raise ConfigurationError(f"min_delay ({self.min_delay}) 不能大于 max_delay ({self.max_delay})")
        if self.mb_batch_size < 1 or self.window < 1 or self.stats_window < 1 or self.repair_workers < 1:
            raise ConfigurationError("mb_batch_size / window / stats_window / repair_workers 必须大于 0")


class TilePolicy:
    """
    瓦片源策略基类：层级计划 + URL 构造 + 校验 + metadata

    具体的 MSN / 天地图 / 自定义模板继承它，注入 TileCrawler 使用。
    """

    def __init__(
        self,
        name: str,
        levels: Sequence[Level],
        title: str = "",
        subdomains: Optional[List[str]] = None,
        options: Optional[DownloaderOptions] = None,
        request_headers: Optional[Dict[str, str]] = None,
        tile_format: str = "png",
        tile_type: str = "baselayer",
        attribution: str = "",
        metadata: Optional[Dict[str, str]] = None,
    ):
        """
        初始化策略

        Args:
            name: 注册名，如 msn_street_world
            levels: 层级计划，顺序即生成顺序
            title: 显示名称，写入 metadata 的 name
            subdomains: 子域名列表，按请求序号轮询
            options: 下载参数
            request_headers: 请求头
            tile_format: 瓦片格式
            tile_type: baselayer 或 overlay
            attribution: 版权信息
            metadata: 固定的 metadata 值，覆盖按层级推导的结果
        """
        self.name = name
        self.levels = list(levels)
        self.title = title or name
        self.subdomains = list(subdomains or [])
        self.options = options or DownloaderOptions(extension=tile_format)
        self.request_headers = dict(request_headers or {})
        self.tile_format = tile_format
        self.tile_type = tile_type
        self.attribution = attribution
        self.metadata = dict(metadata or {})

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"

    def subdomain(self, counter: int) -> str:
        if not self.subdomains:
            return ""
        return self.subdomains[counter % len(self.subdomains)]

    def get_tile_url(self, z: int, x: int, y: int, counter: int = 0) -> str:
        """
        获取瓦片URL

        Args:
            z: 缩放级别
            x: 瓦片x坐标
            y: 瓦片y坐标（XYZ）
            counter: 请求序号，用于轮询子域名

        Returns:
            str: 瓦片URL
        """
        raise NotImplementedError

    def validate_tile(self, data: bytes) -> bool:
        return bool(data)

    def validate_config(self):
        """
        抓取开始前检查配置，不满足时抛出 ConfigurationError
        """

    def build_metadata(self) -> Dict[str, str]:
        meta = build_level_metadata(
            self.levels,
            name=self.title,
            tile_format=self.tile_format,
            tile_type=self.tile_type,
            attribution=self.attribution,
        )
        meta.update(self.metadata)
        return meta

    def generate_metadata(self, sink):
        """
        把 metadata 写入 MBTiles
        """
        sink.write_metadata(self.build_metadata())

    def zoom_range(self) -> str:
        zooms = [level.z for level in self.levels]
        if not zooms:
            return "-"
        return f"{min(zooms)}-{max(zooms)}"
