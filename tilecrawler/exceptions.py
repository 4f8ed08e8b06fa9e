# tilecrawler/exceptions.py


class TileCrawlerError(Exception):
    """瓦片抓取器异常基类"""
    pass


class ConfigurationError(TileCrawlerError):
    """配置错误：下载参数非法、策略缺少必要配置等"""
    pass


class SinkModeError(TileCrawlerError):
    """存储模式错误：完整性检查 / 修复只支持 MBTiles，且需要已打开的数据库"""
    pass


class PolicyNotFoundError(TileCrawlerError, KeyError):
    """未注册的瓦片源策略"""

    def __str__(self):
        return str(self.args[0]) if self.args else "未知瓦片源"
