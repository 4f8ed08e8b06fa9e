# tilecrawler/policies/custom.py

from typing import List, Optional, Sequence

from ..tile_math import Level, TileMath
from .base import DownloaderOptions, TilePolicy, is_png


class CustomPolicy(TilePolicy):
    """
    自定义 URL 模板

    支持的占位符: {z} {x} {y} {s}（子域名）{q}（QuadKey）{-y}（TMS 行号）
    """

    def __init__(
        self,
        name: str,
        url_template: str,
        levels: Sequence[Level],
        subdomains: Optional[List[str]] = None,
        options: Optional[DownloaderOptions] = None,
        tile_format: str = "png",
        require_png: bool = False,
        attribution: str = "Custom Policy",
    ):
        """
        初始化自定义策略

        Args:
            name: 策略名称
            url_template: URL模板
            levels: 层级计划
            subdomains: 子域名列表
            options: 下载参数
            tile_format: 瓦片格式
            require_png: 是否要求内容为 PNG
            attribution: 版权信息
        """
        if "{s}" in url_template and not subdomains:
            raise ValueError(f"URL 模板包含 {{s}}，但未提供子域名: {url_template}")
        super().__init__(
            name=name,
            levels=levels,
            subdomains=subdomains,
            options=options or DownloaderOptions(extension=tile_format),
            tile_format=tile_format,
            attribution=attribution,
        )
        self.url_template = url_template
        self.require_png = require_png

    def get_tile_url(self, z: int, x: int, y: int, counter: int = 0) -> str:
        url = self.url_template

        if "{q}" in url:
            url = url.replace("{q}", TileMath.quadkey(x, y, z))
        if "{-y}" in url:
            url = url.replace("{-y}", str(TileMath.tms_row_flip(y, z)))

        url = url.replace("{z}", str(z))
        url = url.replace("{x}", str(x))
        url = url.replace("{y}", str(y))

        if "{s}" in url:
            url = url.replace("{s}", self.subdomain(counter))

        return url

    def validate_tile(self, data: bytes) -> bool:
        if self.require_png:
            return is_png(data)
        return bool(data)
