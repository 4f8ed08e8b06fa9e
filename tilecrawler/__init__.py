# tilecrawler/__init__.py

__version__ = "1.0.0"

from .exceptions import TileCrawlerError, ConfigurationError, SinkModeError, PolicyNotFoundError
from .tile_math import TileAddress, TileRange, Level, TileMath, parse_levels
from .downloader import TileCrawler, CrawlerState
from .policies import DownloaderOptions, TilePolicy, PolicyManager

__all__ = [
    'TileCrawlerError',
    'ConfigurationError',
    'SinkModeError',
    'PolicyNotFoundError',
    'TileAddress',
    'TileRange',
    'Level',
    'TileMath',
    'parse_levels',
    'TileCrawler',
    'CrawlerState',
    'DownloaderOptions',
    'TilePolicy',
    'PolicyManager'
]
