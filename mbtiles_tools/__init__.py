#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
mbtiles_tools包

按层级计划（可带bbox）从 MBTiles 中拆分提取瓦片，输出新的 MBTiles 并生成 metadata。
"""

from .core import MBTilesSplitter
from .cli import main

__all__ = ['MBTilesSplitter', 'main']
__version__ = '1.0'
