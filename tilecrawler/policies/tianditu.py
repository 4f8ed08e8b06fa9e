# tilecrawler/policies/tianditu.py

import os
from typing import List, Optional, Sequence

from ..exceptions import ConfigurationError
from ..tile_math import Level
from .base import DownloaderOptions, TilePolicy, is_png
from .msn import CHINA_BBOX, GUANGXI_BBOX

TOKEN_ENV = "TIANDITU_TK"

WMTS_URL = (
    "https://{s}.tianditu.gov.cn/vec_w/wmts"
    "?SERVICE=WMTS&REQUEST=GetTile&VERSION=1.0.0&LAYER=vec&STYLE=default&TILEMATRIXSET=w"
    "&TILEMATRIX={z}&TILEROW={y}&TILECOL={x}&FORMAT=tiles&tk={tk}"
)

# 天地图会拒绝没有浏览器请求头的请求
BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120",
    "Referer": "https://www.tianditu.gov.cn/",
    "Accept": "image/png,image/*;q=0.8,*/*;q=0.5",
}


class TiandituPolicy(TilePolicy):
    """
    天地图矢量底图（vec_w，WMTS）

    需要 API token，默认从环境变量 TIANDITU_TK 读取。
    天地图对并发很敏感，预设均为单线程、小批量写入。
    """

    def __init__(
        self,
        name: str,
        levels: Sequence[Level],
        title: str = "",
        options: Optional[DownloaderOptions] = None,
        token: Optional[str] = None,
        center: Optional[str] = None,
    ):
        super().__init__(
            name=name,
            levels=levels,
            title=title,
            subdomains=[f"t{i}" for i in range(8)],
            options=options,
            request_headers=BROWSER_HEADERS,
            tile_format="png",
            tile_type="baselayer",
            attribution="© 天地图",
            metadata={"center": center} if center else None,
        )
        self._token = token

    @property
    def token(self) -> str:
        return self._token or os.environ.get(TOKEN_ENV, "")

    def validate_config(self):
        if not self.token:
            raise ConfigurationError(f"缺少天地图 token，请设置环境变量 {TOKEN_ENV}")

    def get_tile_url(self, z: int, x: int, y: int, counter: int = 0) -> str:
        self.validate_config()
        return WMTS_URL.format(s=self.subdomain(counter), z=z, x=x, y=y, tk=self.token)

    def validate_tile(self, data: bytes) -> bool:
        return is_png(data)


def _options(stem: str) -> DownloaderOptions:
    return DownloaderOptions(
        mode="mbtiles",
        mbtiles_file=f"./output/{stem}.mbtiles",
        progress_file=f"./output/{stem}.progress.json",
        concurrency=1,
        delay=0.1,
        max_retry=3,
        mb_batch_size=50,
    )


def tianditu_presets() -> List[TiandituPolicy]:
    return [
        TiandituPolicy(
            "tianditu_vec_w_world",
            [Level(z) for z in range(0, 13)],
            title="Tianditu Street Map World (0-12)",
            options=_options("tianditu_vec_w_world_0_12"),
            center="104,30,5",
        ),
        TiandituPolicy(
            "tianditu_vec_w_china",
            [Level(z, CHINA_BBOX) for z in range(13, 17)],
            title="Tianditu Street Map China (13-16)",
            options=_options("tianditu_vec_w_china_13_16"),
            center="104,30,13",
        ),
        TiandituPolicy(
            "tianditu_vec_w_province",
            [Level(z, GUANGXI_BBOX) for z in range(17, 19)],
            title="Tianditu Street Map Guangxi (17-18)",
            options=_options("tianditu_vec_w_guangxi_17_18"),
            center="108.3664,22.8177,17",
        ),
    ]
