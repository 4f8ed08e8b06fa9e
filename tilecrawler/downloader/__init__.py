# tilecrawler/downloader/__init__.py

from .base import TileCrawler, CrawlerState, WorkItem, LevelReport
from .bitmap import ProgressBitmap
from .checkpoint import CheckpointStore
from .sinks import TileSink, DirectorySink, MBTilesSink, create_sink
from .stats import RuntimeStats, RateController

__all__ = [
    'TileCrawler',
    'CrawlerState',
    'WorkItem',
    'LevelReport',
    'ProgressBitmap',
    'CheckpointStore',
    'TileSink',
    'DirectorySink',
    'MBTilesSink',
    'create_sink',
    'RuntimeStats',
    'RateController'
]
