#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
命令行接口模块

mbtiles-tools split -i big.mbtiles -o china_13_16.mbtiles -z 13-16 --bbox 73 3 135 54
"""

import argparse
import sqlite3
import sys

from rich.console import Console

from tilecrawler.log import setup_logging
from tilecrawler.tile_math import parse_levels
from mbtiles_tools.core import MBTilesSplitter

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mbtiles-tools", description="MBTiles工具")
    subparsers = parser.add_subparsers(dest="command", required=True, help="命令类型")

    split_parser = subparsers.add_parser("split", help="按层级（可带bbox）从MBTiles中提取瓦片")
    split_parser.add_argument("-i", "--input", required=True, help="输入MBTiles文件路径")
    split_parser.add_argument("-o", "--output", required=True, help="输出MBTiles文件路径")
    split_parser.add_argument("-z", "--zoom", required=True, help="缩放级别，如 14、8-15、0-5,7")
    split_parser.add_argument(
        "--bbox", type=float, nargs=4, metavar=("MIN_LON", "MIN_LAT", "MAX_LON", "MAX_LAT"),
        help="裁剪范围，应用到每个层级",
    )
    split_parser.add_argument("--name", help="metadata 中的 name")
    split_parser.add_argument("--type", choices=["baselayer", "overlay"], help="metadata 中的 type")
    split_parser.add_argument("--attribution", help="metadata 中的 attribution")
    split_parser.add_argument("--log-level", default="INFO", help="日志级别")
    return parser


def main(argv=None) -> int:
    """
    主函数，处理命令行参数
    """
    args = build_parser().parse_args(argv)
    setup_logging(log_dir=None, level=args.log_level)

    if args.command == "split":
        try:
            levels = parse_levels(args.zoom, args.bbox)
        except ValueError as e:
            console.print(f"[red]✗ 缩放级别参数错误: {e}[/red]")
            return 2

        overrides = {
            k: v for k, v in (("name", args.name), ("type", args.type), ("attribution", args.attribution)) if v
        }
        try:
            inserted = MBTilesSplitter().split(args.input, args.output, levels, overrides)
        except (FileNotFoundError, ValueError, sqlite3.Error) as e:
            console.print(f"[red]✗ 拆分失败: {e}[/red]")
            return 1

        console.print(f"[green]✓ 拆分完成[/green] 新写入 {inserted} 个瓦片 -> {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
