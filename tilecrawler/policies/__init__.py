# tilecrawler/policies/__init__.py

from .base import DownloaderOptions, TilePolicy, build_level_metadata, is_png
from .msn import MsnPolicy
from .tianditu import TiandituPolicy
from .custom import CustomPolicy
from .manager import PolicyManager

__all__ = [
    'DownloaderOptions',
    'TilePolicy',
    'build_level_metadata',
    'is_png',
    'MsnPolicy',
    'TiandituPolicy',
    'CustomPolicy',
    'PolicyManager'
]
