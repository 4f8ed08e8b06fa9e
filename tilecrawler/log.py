# tilecrawler/log.py

import logging
import os
import sys
from pathlib import Path
from typing import Optional

from loguru import logger


def setup_logging(log_dir: Optional[str] = "log", level: str = "INFO", verbose: bool = False):
    """
    配置 loguru 日志输出：控制台 + 按大小滚动的日志文件

    只由命令行入口调用，库代码本身不添加任何 sink。

    Args:
        log_dir: 日志目录，为空时不写日志文件
        level: 控制台日志级别
        verbose: 为 True 时控制台输出 DEBUG 日志
    """
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else level.upper())

    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        logger.add(os.path.join(log_dir, "tilecrawler.log"), rotation="10 MB", level="DEBUG")

    # requests 底层的连接池日志太吵
    logging.getLogger("urllib3").setLevel(logging.WARNING)
