#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
MBTiles工具核心模块
"""

from mbtiles_tools.core.splitter import MBTilesSplitter

__all__ = [
    'MBTilesSplitter'
]
