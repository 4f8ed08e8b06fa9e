"""
瓦片源策略、下载参数和策略注册表
"""

import pytest

from conftest import PNG
from tilecrawler.exceptions import ConfigurationError, PolicyNotFoundError
from tilecrawler.policies import (
    CustomPolicy,
    DownloaderOptions,
    MsnPolicy,
    PolicyManager,
    TiandituPolicy,
    build_level_metadata,
    is_png,
)
from tilecrawler.policies.tianditu import TOKEN_ENV
from tilecrawler.tile_math import Level


class TestDownloaderOptions:
    def test_defaults(self):
        options = DownloaderOptions()
        assert options.mode == "mbtiles"
        assert options.concurrency == 128
        assert options.max_retry == 5
        assert options.mb_batch_size == 200

    def test_from_dict_accepts_camel_case(self):
        options = DownloaderOptions.from_dict({
            "mode": "dir",
            "outDir": "/data/tiles",
            "sinkPath": "/data/tiles.mbtiles",
            "maxRetry": 2,
            "mbBatchSize": 10,
            "concurrency": 8,
        })
        assert options.mode == "dir"
        assert options.out_dir == "/data/tiles"
        assert options.mbtiles_file == "/data/tiles.mbtiles"
        assert options.max_retry == 2
        assert options.mb_batch_size == 10
        assert options.concurrency == 8

    def test_from_dict_rejects_unknown_key(self):
        with pytest.raises(ConfigurationError):
            DownloaderOptions.from_dict({"threads": 4})

    @pytest.mark.parametrize("values", [
        {"mode": "zip"},
        {"concurrency": 0},
        {"max_retry": -1},
        {"min_delay": 3.0, "max_delay": 1.0},
        {"mb_batch_size": 0},
    ])
    def test_invalid_values(self, values):
        with pytest.raises(ConfigurationError):
            DownloaderOptions.from_dict(values)

    def test_replace_ignores_none(self):
        options = DownloaderOptions(concurrency=16)
        updated = options.replace(concurrency=None, delay=0.5)
        assert updated.concurrency == 16
        assert updated.delay == 0.5
        assert options.delay == 0.05

    def test_replace_unknown_field(self):
        with pytest.raises(ConfigurationError):
            DownloaderOptions().replace(threads=4)


class TestMsnPolicy:
    def test_url_uses_quadkey_and_rotates_subdomains(self):
        policy = MsnPolicy("m", [Level(3)], "street")
        url0 = policy.get_tile_url(3, 5, 3, counter=0)
        url1 = policy.get_tile_url(3, 5, 3, counter=1)
        url4 = policy.get_tile_url(3, 5, 3, counter=4)

        assert url0.startswith("https://dynamic.t0.tiles.ditu.live.com/comp/ch/123?")
        assert "dynamic.t1." in url1
        assert url4 == url0
        assert "it=G,BX,L" in url0

    def test_shadow_style(self):
        policy = MsnPolicy("m", [Level(3)], "shadow")
        assert "shdw=1" in policy.get_tile_url(3, 0, 0)
        assert policy.tile_type == "overlay"

    def test_unknown_style(self):
        with pytest.raises(ValueError):
            MsnPolicy("m", [Level(3)], "satellite")

    def test_only_png_is_accepted(self):
        policy = MsnPolicy("m", [Level(3)])
        assert policy.validate_tile(PNG + b"data")
        assert not policy.validate_tile(b"RIFF....WEBPVP8 ")
        assert not policy.validate_tile(b"")
        assert not policy.validate_tile(None)


def test_is_png_requires_more_than_signature():
    assert not is_png(PNG)
    assert is_png(PNG + b"\x00")


class TestTiandituPolicy:
    def test_missing_token(self, monkeypatch):
        monkeypatch.delenv(TOKEN_ENV, raising=False)
        policy = TiandituPolicy("t", [Level(1)])
        with pytest.raises(ConfigurationError):
            policy.validate_config()
        with pytest.raises(ConfigurationError):
            policy.get_tile_url(1, 0, 0)

    def test_token_from_environment(self, monkeypatch):
        monkeypatch.setenv(TOKEN_ENV, "abc123")
        policy = TiandituPolicy("t", [Level(1)])
        url = policy.get_tile_url(4, 3, 7, counter=9)
        assert url.startswith("https://t1.tianditu.gov.cn/vec_w/wmts?")
        assert "TILEMATRIX=4&TILEROW=7&TILECOL=3" in url
        assert url.endswith("tk=abc123")

    def test_explicit_token_wins(self, monkeypatch):
        monkeypatch.setenv(TOKEN_ENV, "env")
        policy = TiandituPolicy("t", [Level(1)], token="explicit")
        assert policy.get_tile_url(1, 0, 0).endswith("tk=explicit")

    def test_browser_headers(self):
        policy = TiandituPolicy("t", [Level(1)], token="x")
        assert "Referer" in policy.request_headers


class TestCustomPolicy:
    def test_placeholders(self):
        policy = CustomPolicy(
            "c", "https://{s}.example.com/{z}/{x}/{y}/{-y}/{q}.png", [Level(3)], subdomains=["a", "b"]
        )
        assert policy.get_tile_url(3, 5, 3, counter=1) == "https://b.example.com/3/5/3/4/123.png"

    def test_subdomain_placeholder_requires_subdomains(self):
        with pytest.raises(ValueError):
            CustomPolicy("c", "https://{s}.example.com/{z}/{x}/{y}.png", [Level(1)])

    def test_validation(self):
        loose = CustomPolicy("c", "https://example.com/{z}/{x}/{y}", [Level(1)])
        strict = CustomPolicy("c", "https://example.com/{z}/{x}/{y}", [Level(1)], require_png=True)
        assert loose.validate_tile(b"jpeg bytes")
        assert not loose.validate_tile(b"")
        assert not strict.validate_tile(b"jpeg bytes")


class TestPolicyManager:
    def test_presets_are_registered(self):
        names = PolicyManager.list_policies()
        for name in (
            "msn_street_world", "msn_street_china", "msn_street_province",
            "msn_shadow_world", "msn_shadow_china", "msn_shadow_province",
            "tianditu_vec_w_world", "tianditu_vec_w_china", "tianditu_vec_w_province",
        ):
            assert name in names

    def test_lookup_is_case_insensitive(self):
        assert PolicyManager.get_policy("MSN_Street_World").name == "msn_street_world"

    def test_unknown_policy(self):
        with pytest.raises(PolicyNotFoundError):
            PolicyManager.get_policy("nope")
        with pytest.raises(KeyError):
            PolicyManager.get_policy("nope")

    def test_create_custom_policy_registers_it(self):
        policy = PolicyManager.create_custom_policy("my_tiles", "https://example.com/{z}/{x}/{y}.png", [Level(2)])
        assert PolicyManager.get_policy("my_tiles") is policy

    def test_preset_options(self):
        street = PolicyManager.get_policy("msn_street_china")
        assert street.options.concurrency == 512
        assert street.options.mbtiles_file == "./output/msn_street_china_13_16.mbtiles"
        assert street.zoom_range() == "13-16"
        assert PolicyManager.get_policy("tianditu_vec_w_world").options.concurrency == 1


class TestMetadata:
    def test_world_levels(self):
        meta = build_level_metadata([Level(z) for z in range(0, 13)], name="World")
        assert meta["bounds"] == "-180,-85.0511,180,85.0511"
        assert meta["minzoom"] == "0"
        assert meta["maxzoom"] == "12"
        assert meta["center"] == "0,0,6"

    def test_preset_metadata(self):
        meta = PolicyManager.get_policy("msn_street_china").build_metadata()
        assert meta["bounds"] == "73,3,135,54"
        assert meta["minzoom"] == "13"
        assert meta["maxzoom"] == "16"
        assert meta["center"] == "104,30,13"
        assert meta["type"] == "baselayer"

        shadow = PolicyManager.get_policy("msn_shadow_province").build_metadata()
        assert shadow["type"] == "overlay"
        assert shadow["minzoom"] == "15"
        assert shadow["bounds"] == "104,20,112.5,26.5"
