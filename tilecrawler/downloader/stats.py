# tilecrawler/downloader/stats.py

import time
from collections import deque
from typing import Deque, Dict

from loguru import logger

OUTCOMES = ("ok", "fail", "skip")


class RuntimeStats:
    """
    运行统计：固定长度的结果窗口（ok / fail / skip）

    进入和移出窗口时增量调整计数，不做全量重算。
    """

    def __init__(self, window_size: int = 500):
        self.start_time = time.time()
        self.window_size = window_size
        self.window: Deque[str] = deque()
        self.counts: Dict[str, int] = {outcome: 0 for outcome in OUTCOMES}
        self.req_total = 0

    def mark(self, outcome: str):
        """
        记录一次结果

        Args:
            outcome: 'ok'、'fail' 或 'skip'
        """
        if outcome not in self.counts:
            raise ValueError(f"未知的结果类型: {outcome}")

        self.req_total += 1
        self.counts[outcome] += 1
        self.window.append(outcome)
        if len(self.window) > self.window_size:
            self.counts[self.window.popleft()] -= 1

    @property
    def ok(self) -> int:
        return self.counts["ok"]

    @property
    def fail(self) -> int:
        return self.counts["fail"]

    @property
    def skip(self) -> int:
        return self.counts["skip"]

    @property
    def fail_rate(self) -> float:
        """窗口内失败率（百分比），分母为 ok + fail"""
        n = self.ok + self.fail
        return self.fail / n * 100 if n else 0.0

    @property
    def skip_rate(self) -> float:
        """窗口内跳过率（百分比），分母为 ok + skip"""
        n = self.ok + self.skip
        return self.skip / n * 100 if n else 0.0

    def speed(self, done: int) -> float:
        """每秒完成的瓦片数"""
        elapsed = time.time() - self.start_time
        return done / elapsed if elapsed > 0 else 0.0

    def get_statistics(self) -> Dict:
        return {
            "total": self.req_total,
            "ok": self.ok,
            "fail": self.fail,
            "skip": self.skip,
            "fail_rate": self.fail_rate,
            "skip_rate": self.skip_rate,
        }

    def log_statistics(self):
        stats = self.get_statistics()
        logger.info(
            f"运行统计: 请求={stats['total']}, 窗口内 成功={stats['ok']} 失败={stats['fail']} 跳过={stats['skip']}, "
            f"失败率={stats['fail_rate']:.2f}%, 跳过率={stats['skip_rate']:.1f}%"
        )


class RateController:
    """
    自适应请求间隔

    保留最近 window 次请求的成功标记，每次请求结束后按近期失败率调整间隔：
    失败多时乘性退避，持续成功时逐步放宽，其余情况回到基础间隔。
    间隔始终在 [min_delay, max_delay] 之内（单位：秒）。
    """

    def __init__(self, delay: float = 0.05, min_delay: float = 0.05, max_delay: float = 2.0, window: int = 100):
        if min_delay > max_delay:
            raise ValueError(f"min_delay ({min_delay}) 不能大于 max_delay ({max_delay})")
        if window < 1:
            raise ValueError(f"window 必须大于 0: {window}")

        self.base_delay = delay
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.window = window
        self.results: Deque[bool] = deque()
        self.fails = 0
        self.delay = self._clamp(delay)

    def _clamp(self, value: float) -> float:
        return min(max(value, self.min_delay), self.max_delay)

    def record(self, success: bool):
        success = bool(success)
        self.results.append(success)
        if not success:
            self.fails += 1
        if len(self.results) > self.window and not self.results.popleft():
            self.fails -= 1

    def recent_fail_rate(self) -> float:
        if not self.results:
            return 0.0
        return self.fails / len(self.results)

    def adjust(self) -> float:
        """
        根据近期失败率重新计算间隔

        Returns:
            float: 调整后的间隔（秒）
        """
        rate = self.recent_fail_rate()
        if rate > 0.3:
            delay = min(self.delay * 1.5, self.max_delay)
        elif rate > 0.1:
            delay = min(self.delay * 1.2, self.max_delay)
        elif rate < 0.01:
            delay = max(self.delay * 0.7, self.min_delay)
        elif rate < 0.05:
            delay = max(self.delay * 0.9, self.min_delay)
        else:
            delay = self.base_delay

        self.delay = self._clamp(delay)
        return self.delay

    def observe(self, success: bool) -> float:
        """记录一次结果并调整间隔"""
        self.record(success)
        return self.adjust()
