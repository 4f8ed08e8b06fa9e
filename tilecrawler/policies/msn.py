# tilecrawler/policies/msn.py

from typing import List, Optional, Sequence

from ..tile_math import Level, TileMath
from .base import DownloaderOptions, TilePolicy, is_png

MSN_URL = "https://dynamic.{s}.tiles.ditu.live.com/comp/ch/{q}"

# 两种样式的查询串，原样拼接在 quadkey 之后
STYLE_QUERIES = {
    "street": (
        "?mkt=zh-cn,en-us&ur=CN&it=G,BX,L&cstl=wr&og=925&n=z&rs=1&dpi=d1&o=webp"
        "&st=me|lv:1_vg|v:0_nh|lv:1_pp|v:1_cp|v:1_trs|v:1;strokeWidthScale:0.2_wt|fc:B3E5FC_cst|v:0_ar|v:0"
        "&jp=0&sv=9.43"
    ),
    "shadow": (
        "?mkt=zh-cn,en-us&ur=CN&it=Z,GF,L&cstl=wr&og=925&n=z&rs=1&dpi=d1&o=PNG"
        "&st=me|lv:0_nh|lv:0_pp|v:0_cp|v:0_trs|v:0;lv:0;sc:FF6B6B6B;lbc:FA233333;loc:40FFFFFF;"
        "fc:FF6B6B6B;strokeWidthScale:0.2_cst|v:0;fc:FFFF0000;strokeWidthScale:1_cr|bv:0;bsc:ff0000;"
        "borderWidthScale:0_ar|v:1_rd|labelScale:1.4;lbc:FF000000;loc:08FFFFFF"
        "&shdw=1&shading=t&jp=0&sv=9.43"
    ),
}

CHINA_BBOX = (73.0, 3.0, 135.0, 54.0)
GUANGXI_BBOX = (104.0, 20.0, 112.5, 26.5)


class MsnPolicy(TilePolicy):
    """
    微软 MSN 天气地图瓦片（Bing QuadKey）

    street 为街道底图，shadow 为山影叠加图层。
    """

    def __init__(
        self,
        name: str,
        levels: Sequence[Level],
        style: str = "street",
        title: str = "",
        options: Optional[DownloaderOptions] = None,
        center: Optional[str] = None,
    ):
        if style not in STYLE_QUERIES:
            raise ValueError(f"未知的 MSN 样式: {style}（可选 {' / '.join(STYLE_QUERIES)}）")
        metadata = {"center": center} if center else None
        super().__init__(
            name=name,
            levels=levels,
            title=title,
            subdomains=["t0", "t1", "t2", "t3"],
            options=options,
            tile_format="png",
            tile_type="overlay" if style == "shadow" else "baselayer",
            attribution="© Bing Maps",
            metadata=metadata,
        )
        self.style = style

    def get_tile_url(self, z: int, x: int, y: int, counter: int = 0) -> str:
        q = TileMath.quadkey(x, y, z)
        return MSN_URL.format(s=self.subdomain(counter), q=q) + STYLE_QUERIES[self.style]

    def validate_tile(self, data: bytes) -> bool:
        return is_png(data)


def _options(stem: str) -> DownloaderOptions:
    return DownloaderOptions(
        mode="mbtiles",
        out_dir="./output",
        mbtiles_file=f"./output/{stem}.mbtiles",
        progress_file=f"./output/{stem}.progress.json",
        concurrency=512,
        max_retry=5,
        mb_batch_size=250,
        delay=0.05,
    )


def _world() -> List[Level]:
    return [Level(z) for z in range(0, 13)]


def _bounded(zooms, bbox) -> List[Level]:
    return [Level(z, bbox) for z in zooms]


def msn_presets() -> List[MsnPolicy]:
    """
    内置的 MSN 下载计划：全球 0-12、全国重点、省级重点（广西）
    """
    return [
        MsnPolicy(
            "msn_street_world", _world(), "street",
            title="MSN Street Map World (0-12)",
            options=_options("msn_street_world_0_12"), center="104,30,5",
        ),
        MsnPolicy(
            "msn_street_china", _bounded(range(13, 17), CHINA_BBOX), "street",
            title="MSN Street Map China (13-16)",
            options=_options("msn_street_china_13_16"), center="104,30,13",
        ),
        MsnPolicy(
            "msn_street_province", _bounded(range(17, 19), GUANGXI_BBOX), "street",
            title="MSN Street Map Guangxi (17-18)",
            options=_options("msn_street_guangxi_17_18"), center="108.3664,22.8177,17",
        ),
        MsnPolicy(
            "msn_shadow_world", _world(), "shadow",
            title="MSN Shadow Map World (0-12)",
            options=_options("msn_shadow_world_0_12"), center="104,30,5",
        ),
        MsnPolicy(
            "msn_shadow_china", _bounded(range(13, 15), CHINA_BBOX), "shadow",
            title="MSN Shadow Map China (13-14)",
            options=_options("msn_shadow_china_13_14"), center="104,30,13",
        ),
        MsnPolicy(
            "msn_shadow_province", _bounded(range(15, 17), GUANGXI_BBOX), "shadow",
            title="MSN Shadow Map Guangxi (15-16)",
            options=_options("msn_shadow_guangxi_15_16"), center="108.3664,22.8177,15",
        ),
    ]
