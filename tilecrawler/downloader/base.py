# tilecrawler/downloader/base.py

import itertools
import signal
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, Iterator, List, Optional, Sequence

import psutil
import requests
from loguru import logger

from ..exceptions import SinkModeError
from ..tile_math import Level, TileAddress, TileMath
from .checkpoint import CheckpointStore
from .sinks import TileSink, create_sink
from .stats import RateController, RuntimeStats


class CrawlerState(Enum):
    """
    抓取器状态
    """
    INIT = "init"
    RUNNING = "running"
    DRAINING_RETRIES = "draining_retries"
    INTEGRITY_CHECK = "integrity_check"
    REPAIRING = "repairing"
    SHUTTING_DOWN = "shutting_down"
    DONE = "done"


@dataclass
class WorkItem:
    address: TileAddress
    retry: int = 0


@dataclass
class LevelReport:
    """单个层级的完整性检查结果"""
    z: int
    expected: int
    actual: int

    @property
    def missing(self) -> int:
        return max(0, self.expected - self.actual)

    @property
    def complete(self) -> bool:
        return self.actual >= self.expected


class TileCrawler:
    """
    核心抓取器：多个工作线程共享一个瓦片生成器和一个重试队列，并发下载并写入 sink

    共享状态（生成器、重试队列、统计、速率控制、计数器、sink）全部由 self.lock 保护，
    网络请求和请求间隔等待在锁外进行。
    """

    def __init__(
        self,
        policy,
        options=None,
        progress_callback: Optional[Callable[[Dict], None]] = None,
        sink: Optional[TileSink] = None,
    ):
        """
        初始化抓取器

        Args:
            policy: 瓦片源策略（TilePolicy）
            options: 下载参数，默认使用策略自带的参数
            progress_callback: 进度回调，参数为进度快照字典
            sink: 瓦片落地对象，默认按 options.mode 创建
        """
        self.policy = policy
        self.options = options or policy.options
        self.options.validate()
        self.progress_callback = progress_callback
        self.sink = sink or create_sink(self.options)
        self.checkpoint = CheckpointStore(self.options.progress_file)

        self.lock = threading.Lock()
        self.stop_event = threading.Event()
        self.state = CrawlerState.INIT

        self.stats = RuntimeStats(self.options.stats_window)
        self.rate = self._create_rate_controller()

        self.retry_queue: Deque[WorkItem] = deque()
        self.failed_tiles: List[TileAddress] = []
        self.cursor: Optional[TileAddress] = None
        self.integrity_report: List[LevelReport] = []

        self.total = 0
        self.done = 0
        self.attempts = 0
        self.downloaded_count = 0
        self.failed_count = 0
        self.skipped_count = 0

        self._generator: Optional[Iterator[TileAddress]] = None
        self._counter = itertools.count()
        self._local = threading.local()
        self._sessions: List = []
        self._process = psutil.Process()
        self._error: Optional[BaseException] = None
        self._done_at_start = 0
        self._start_time = time.time()
        self._last_save_attempts = 0
        self._last_save_time = time.time()

        logger.info(
            f"初始化抓取器: policy={policy.name}, mode={self.sink.mode}, concurrency={self.options.concurrency}, "
            f"max_retry={self.options.max_retry}, delay={self.options.delay}s"
        )

    def _create_rate_controller(self) -> RateController:
        return RateController(
            self.options.delay, self.options.min_delay, self.options.max_delay, self.options.window
        )

    # ------------------------------------------------------------------
    # 网络
    # ------------------------------------------------------------------

    def _create_request_session(self):
        """
        创建并配置请求会话，连接池大小与并发数一致，重试由抓取器自己负责
        """
        session = requests.Session()
        session.headers.update({
            'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36',
            'Accept': 'image/*',
            'Connection': 'keep-alive'
        })
        session.headers.update(self.policy.request_headers)

        pool_size = max(self.options.concurrency, self.options.repair_workers)
        adapter = requests.adapters.HTTPAdapter(
            pool_connections=pool_size,
            pool_maxsize=pool_size,
            pool_block=False,
            max_retries=0,
        )
        session.mount('http://', adapter)
        session.mount('https://', adapter)

        logger.debug("创建新的请求会话")
        return session

    @property
    def _session(self):
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._create_request_session()
            self._local.session = session
            with self.lock:
                self._sessions.append(session)
        return session

    def download_tile(self, address: TileAddress) -> Optional[bytes]:
        """
        下载单个瓦片

        非 2xx 状态码、网络异常、内容校验失败都返回 None，不抛出异常。

        Args:
            address: 瓦片地址

        Returns:
            Optional[bytes]: 瓦片内容
        """
        url = self.policy.get_tile_url(address.z, address.x, address.y, next(self._counter))
        try:
            response = self._session.get(url, timeout=self.options.timeout)
        except requests.RequestException as e:
            logger.debug(f"[失败] {address} 请求异常: {e}")
            return None

        if not 200 <= response.status_code < 300:
            logger.debug(f"[失败] {address} HTTP {response.status_code}")
            return None

        data = response.content
        if not self.policy.validate_tile(data):
            logger.debug(f"[失败] {address} 内容校验未通过 ({len(data or b'')} 字节)")
            return None

        return data

    # ------------------------------------------------------------------
    # 主循环
    # ------------------------------------------------------------------

    def tile_generator(self, levels: Sequence[Level], cursor: Optional[TileAddress] = None) -> Iterator[TileAddress]:
        """
        按生成顺序产生瓦片地址，给定 cursor 时从它的下一个瓦片开始
        """
        if cursor is not None and TileMath.tile_index(cursor, levels) is None:
            logger.warning(f"断点 {cursor} 不在当前层级计划内，没有可处理的瓦片；如需重新下载请删除进度文件")
            return
        yield from TileMath.iter_tiles(levels, after=cursor)

    def _next_job(self) -> Optional[WorkItem]:
        # 调用方持有 self.lock
        if self.retry_queue:
            return self.retry_queue.popleft()
        if self._generator is None:
            return None
        try:
            address = next(self._generator)
        except StopIteration:
            self._generator = None
            if self.state == CrawlerState.RUNNING:
                self.state = CrawlerState.DRAINING_RETRIES
                logger.info(f"瓦片生成完毕，等待剩余任务 (重试队列 {len(self.retry_queue)})")
            return None
        self.cursor = address
        return WorkItem(address)

    def _worker(self):
        """
        工作线程：取任务 -> 检查是否已存在 -> 下载 -> 写入 / 重新入队 -> 等待间隔
        """
        try:
            while not self.stop_event.is_set():
                with self.lock:
                    item = self._next_job()
                    if item is None:
                        break
                    address = item.address
                    if self.sink.has(address):
                        logger.debug(f"[跳过] 已存在: {address}")
                        self.stats.mark("skip")
                        self.done += 1
                        self.skipped_count += 1
                        self._after_attempt()
                        continue

                data = self.download_tile(address)
                if data is not None:
                    self.sink.stage(address, data)

                with self.lock:
                    self.rate.observe(data is not None)
                    if data is not None:
                        self.sink.write(address, data)
                        self.stats.mark("ok")
                        self.done += 1
                        self.downloaded_count += 1
                    else:
                        self.stats.mark("fail")
                        self.failed_count += 1
                        item.retry += 1
                        if item.retry <= self.options.max_retry:
                            self.retry_queue.append(item)
                            logger.debug(f"[重试] {address} 第 {item.retry} 次失败，重新入队")
                        else:
                            self.failed_tiles.append(address)
                            logger.debug(f"[放弃] {address} 超过最大重试次数 {self.options.max_retry}")
                    self._after_attempt()
                    delay = self.rate.delay

                self.stop_event.wait(delay)
        except Exception as e:
            logger.exception(f"{threading.current_thread().name} 异常退出: {e}")
            with self.lock:
                if self._error is None:
                    self._error = e
            self.stop_event.set()

    def _after_attempt(self):
        # 调用方持有 self.lock
        self.attempts += 1
        if self.attempts % max(1, self.options.concurrency // 10) == 0:
            self._report_progress()

        now = time.time()
        if (
            self.attempts - self._last_save_attempts >= self.options.checkpoint_every
            or now - self._last_save_time >= self.options.checkpoint_interval
        ):
            self.sink.commit()
            self._save_checkpoint()

    def _pending_failures(self) -> List[TileAddress]:
        """彻底失败的瓦片加上仍在重试队列里的瓦片（去重，保持顺序）"""
        seen = set()
        result = []
        for address in itertools.chain(self.failed_tiles, (item.address for item in self.retry_queue)):
            if address not in seen:
                seen.add(address)
                result.append(address)
        return result

    def _save_checkpoint(self):
        # 调用方持有 self.lock
        self.checkpoint.save(self.cursor, self._pending_failures())
        self._last_save_attempts = self.attempts
        self._last_save_time = time.time()

    @contextmanager
    def _interrupt_handler(self, stop_event: threading.Event, listen: bool = True):
        """
        在调用期间把 SIGINT / SIGTERM 转为设置 stop_event，结束后恢复原来的处理函数

        只有主线程可以注册信号处理，其他线程调用时不做任何处理。
        """
        if not listen or threading.current_thread() is not threading.main_thread():
            yield
            return

        def handler(signum, frame):
            logger.warning(f"收到信号 {signum}，正在安全退出...")
            stop_event.set()

        previous = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                previous[sig] = signal.signal(sig, handler)
            except (ValueError, OSError) as e:
                logger.warning(f"注册信号处理失败: {e}")
        try:
            yield
        finally:
            for sig, old in previous.items():
                signal.signal(sig, old)

    def _reset(self, levels: Sequence[Level]):
        self.retry_queue.clear()
        self.failed_tiles = []
        self.cursor = None
        self.integrity_report = []
        self.stats = RuntimeStats(self.options.stats_window)
        self.rate = self._create_rate_controller()
        self.total = TileMath.count_tiles(levels)
        self.done = 0
        self.attempts = 0
        self.downloaded_count = 0
        self.failed_count = 0
        self.skipped_count = 0
        self._error = None
        self._start_time = time.time()
        self._last_save_attempts = 0
        self._last_save_time = time.time()

    def run(
        self,
        levels: Sequence[Level],
        stop_event: Optional[threading.Event] = None,
        listen_for_interrupt: bool = True,
    ) -> bool:
        """
        执行一次完整的抓取

        流程：并发抓取 -> 失败瓦片顺序重试一遍 -> (MBTiles) 写 metadata、完整性检查、必要时修复
        -> 清空断点。收到中断时保存断点、刷新缓冲并关闭 sink 后返回。

        Args:
            levels: 层级计划
            stop_event: 外部传入的停止信号
            listen_for_interrupt: 是否在调用期间监听 SIGINT / SIGTERM

        Returns:
            bool: 正常完成返回 True，被中断返回 False
        """
        levels = list(levels)
        self.policy.validate_config()
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self._reset(levels)

        self.open_sink()
        self.checkpoint.load()
        cursor = self.checkpoint.cursor
        self.cursor = cursor
        if cursor is not None:
            index = TileMath.tile_index(cursor, levels)
            self.done = index + 1 if index is not None else self.total
        self._done_at_start = self.done
        self.retry_queue.extend(WorkItem(address) for address in self.checkpoint.failed)
        self._generator = self.tile_generator(levels, cursor)

        self.state = CrawlerState.RUNNING
        logger.info(
            f"开始抓取 {self.policy.name}: 共 {self.total} 个瓦片, 已完成 {self.done}, "
            f"待重试 {len(self.retry_queue)}, 线程数 {self.options.concurrency}"
        )

        threads: List[threading.Thread] = []
        with self._interrupt_handler(self.stop_event, listen_for_interrupt):
            try:
                threads = [
                    threading.Thread(target=self._worker, name=f"TileWorker-{i}", daemon=True)
                    for i in range(self.options.concurrency)
                ]
                for t in threads:
                    t.start()
                self._join(threads)
            except KeyboardInterrupt:
                logger.warning("收到中断，正在安全退出...")
                self.stop_event.set()
                self._join(threads)
                self._shutdown()
                raise

            if self._error is not None:
                self._shutdown()
                raise self._error

            if self.stop_event.is_set():
                self._shutdown()
                return False

            self._report_progress()
            self.retry_failed()
            if self.stop_event.is_set():
                self._shutdown()
                return False

            return self._finish(levels)

    @staticmethod
    def _join(threads: List[threading.Thread]):
        # 带超时地 join，主线程才能及时处理信号
        for t in threads:
            while t.is_alive():
                t.join(0.2)

    def retry_failed(self):
        """
        主循环结束后，对彻底失败的瓦片顺序各尝试一次，不再入队
        """
        if not self.failed_tiles:
            return

        pending, self.failed_tiles = self.failed_tiles, []
        logger.info(f"重试失败瓦片: {len(pending)}")
        for i, address in enumerate(pending):
            if self.stop_event.is_set():
                with self.lock:
                    self.failed_tiles.extend(pending[i:])
                return
            data = self.download_tile(address)
            if data is not None:
                self.sink.stage(address, data)
            with self.lock:
                if data is not None:
                    self.sink.write(address, data)
                    self.stats.mark("ok")
                    self.done += 1
                    self.downloaded_count += 1
                else:
                    self.stats.mark("fail")
                    self.failed_count += 1
                    self.failed_tiles.append(address)

        recovered = len(pending) - len(self.failed_tiles)
        logger.info(f"失败瓦片重试完成: 恢复 {recovered}, 仍失败 {len(self.failed_tiles)}")

    def _finish(self, levels: Sequence[Level]) -> bool:
        if self.sink.mode == "mbtiles":
            with self.lock:
                self.sink.flush()
            self.policy.generate_metadata(self.sink)
            if self.check_integrity_by_levels(levels):
                self.repair_missing_tiles(levels, stop_event=self.stop_event)
            else:
                self.sink.close()
        else:
            self.sink.close()
            if self.failed_tiles:
                logger.warning(f"仍有 {len(self.failed_tiles)} 个瓦片下载失败，重新运行时会重新检查")

        self.checkpoint.clear()
        self._close_sessions()

        if self.stop_event.is_set():
            self.state = CrawlerState.SHUTTING_DOWN
            logger.warning("抓取已完成，修复过程被中断，可稍后重新执行修复")
            return False

        self.state = CrawlerState.DONE
        stats = self.get_statistics()
        logger.info(
            f"全部完成: 下载 {stats['downloaded']}, 跳过 {stats['skipped']}, "
            f"失败 {stats['failed']}, 共 {stats['total']}"
        )
        return True

    def _shutdown(self):
        """
        中断 / 异常退出：保存断点 -> 刷新缓冲 -> 关闭 sink
        """
        self.state = CrawlerState.SHUTTING_DOWN
        with self.lock:
            failed = self._pending_failures()
            try:
                self.checkpoint.save(self.cursor, failed)
                logger.info(f"断点已保存: cursor={self.cursor}, 失败瓦片={len(failed)}")
                self.sink.flush()
            finally:
                self.sink.close()
        self._close_sessions()

    # ------------------------------------------------------------------
    # 完整性检查 / 修复
    # ------------------------------------------------------------------

    def _require_mbtiles(self, operation: str):
        if self.sink.mode != "mbtiles":
            logger.error(f"{operation}只支持 mbtiles 模式，当前为 {self.sink.mode}")
            raise SinkModeError(f"{operation}只支持 mbtiles 模式")

    def check_integrity_by_levels(self, levels: Sequence[Level]) -> bool:
        """
        按层级统计 MBTiles 中的瓦片数量，与预期数量比较

        Args:
            levels: 层级计划

        Returns:
            bool: 存在缺失返回 True，完整返回 False

        Raises:
            SinkModeError: 非 MBTiles 模式
        """
        self._require_mbtiles("完整性检查")
        self.open_sink()
        with self.lock:
            self.sink.flush()

        self.state = CrawlerState.INTEGRITY_CHECK
        logger.info("检查 MBTiles 完整性...")

        reports = []
        for level in levels:
            r = TileMath.compute_tile_range(level)
            actual = self.sink.count_tiles(
                level.z,
                r.min_x,
                r.max_x,
                TileMath.tms_row_flip(r.max_y, level.z),
                TileMath.tms_row_flip(r.min_y, level.z),
            )
            report = LevelReport(level.z, r.count, actual)
            reports.append(report)
            if report.complete:
                logger.info(f"z{level.z}: {actual}/{r.count} 完整")
            else:
                logger.warning(f"z{level.z}: {actual}/{r.count} 缺失 {report.missing}")

        self.integrity_report = reports
        has_missing = any(not r.complete for r in reports)
        expected = sum(r.expected for r in reports)
        actual = sum(r.actual for r in reports)
        logger.info(
            f"完整性检查: 预期 {expected}, 实际 {actual}, "
            + ("MBTiles 不完整" if has_missing else "MBTiles 完整")
        )
        return has_missing

    def find_first_missing_tile(self, levels: Sequence[Level]) -> Optional[TileAddress]:
        """
        按生成顺序找到第一个未写入的瓦片，全部存在时返回 None
        """
        self.open_sink()
        logger.info("扫描第一个缺失瓦片...")
        with self.lock:
            self.sink.flush()
            for address in TileMath.iter_tiles(levels):
                if not self.sink.has(address):
                    logger.info(f"第一个缺失瓦片: {address}")
                    return address
        return None

    def prev_tile(self, target: TileAddress, levels: Sequence[Level]) -> Optional[TileAddress]:
        """生成顺序中 target 的前一个瓦片，target 为第一个瓦片时返回 None"""
        return TileMath.prev_tile(target, levels)

    def collect_missing_tiles(self, levels: Sequence[Level]) -> List[TileAddress]:
        """
        逐个瓦片探测，收集所有缺失瓦片

        Raises:
            SinkModeError: 非 MBTiles 模式
        """
        self._require_mbtiles("修复")
        logger.info("按层级扫描缺失瓦片...")

        missing: List[TileAddress] = []
        with self.lock:
            for level in levels:
                before = len(missing)
                r = TileMath.compute_tile_range(level)
                for x in range(r.min_x, r.max_x + 1):
                    for y in range(r.min_y, r.max_y + 1):
                        address = TileAddress(level.z, x, y)
                        if not self.sink.has(address):
                            missing.append(address)
                logger.info(f"z{level.z} 扫描完成，缺失 {len(missing) - before}")

        logger.info(f"缺失瓦片合计: {len(missing)}")
        return missing

    def repair_missing_tiles(
        self,
        levels: Sequence[Level],
        listen_for_interrupt: bool = False,
        stop_event: Optional[threading.Event] = None,
        workers: Optional[int] = None,
    ) -> int:
        """
        修复缺失瓦片：独立的小线程池，每个线程完成一个瓦片后立即领取下一个，失败不重试

        结束（或被中断）时刷新缓冲；未被中断时重新生成 metadata；最后关闭 sink。

        Args:
            levels: 层级计划
            listen_for_interrupt: 是否在修复期间监听 SIGINT / SIGTERM
            stop_event: 外部传入的停止信号
            workers: 线程数，默认 options.repair_workers

        Returns:
            int: 成功补回的瓦片数

        Raises:
            SinkModeError: 非 MBTiles 模式，或数据库未打开
        """
        self._require_mbtiles("修复")
        if not self.sink.is_open:
            logger.error("修复前需要先打开 MBTiles 数据库")
            raise SinkModeError("修复前需要先打开 MBTiles 数据库")
        self.policy.validate_config()

        stop_event = stop_event if stop_event is not None else threading.Event()
        workers = workers or self.options.repair_workers
        self.state = CrawlerState.REPAIRING
        repaired = 0
        completed = False

        with self._interrupt_handler(stop_event, listen_for_interrupt):
            try:
                with self.lock:
                    self.sink.flush()
                missing = self.collect_missing_tiles(levels)

                if not missing:
                    logger.info("没有缺失瓦片")
                else:
                    logger.info(f"修复 {len(missing)} 个瓦片，线程数 {workers}")
                    pending = iter(missing)
                    progress = {"done": 0, "repaired": 0}

                    def repair_loop():
                        try:
                            while not stop_event.is_set():
                                with self.lock:
                                    address = next(pending, None)
                                if address is None:
                                    return
                                data = self.download_tile(address)
                                if data is not None:
                                    self.sink.stage(address, data)
                                with self.lock:
                                    if data is not None:
                                        self.sink.write(address, data)
                                        progress["repaired"] += 1
                                    progress["done"] += 1
                                    if progress["done"] % 50 == 0:
                                        logger.info(f"已修复 {progress['repaired']}/{progress['done']}/{len(missing)}")
                        except Exception:
                            stop_event.set()
                            raise

                    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="TileRepair") as pool:
                        futures = [pool.submit(repair_loop) for _ in range(min(workers, len(missing)))]
                        not_done = set(futures)
                        while not_done:
                            _, not_done = wait(not_done, timeout=0.2)
                        for future in futures:
                            future.result()

                    repaired = progress["repaired"]
                    logger.info(f"修复结束: 补回 {repaired}/{len(missing)}")
                completed = True
            finally:
                try:
                    with self.lock:
                        self.sink.flush()
                    if completed and not stop_event.is_set():
                        self.policy.generate_metadata(self.sink)
                    elif stop_event.is_set():
                        logger.warning("修复被中断，缓冲已写入")
                finally:
                    self.sink.close()

        return repaired

    def rollback_cursor(self, levels: Sequence[Level]) -> bool:
        """
        没有断点时，把断点回退到第一个缺失瓦片的前一个瓦片

        Returns:
            bool: 还有需要下载的瓦片返回 True，全部已存在返回 False
        """
        self.checkpoint.load()
        if self.checkpoint.cursor is not None:
            return True

        first_missing = self.find_first_missing_tile(levels)
        if first_missing is None:
            logger.info("所有瓦片均已下载，无需处理")
            return False

        cursor = self.prev_tile(first_missing, levels)
        logger.info(f"断点回退到: {cursor if cursor is not None else '起点'}")
        self.checkpoint.save(cursor, self.checkpoint.failed)
        return True

    # ------------------------------------------------------------------
    # 资源 / 统计
    # ------------------------------------------------------------------

    def open_sink(self):
        if not self.sink.is_open:
            self.sink.open()

    def _close_sessions(self):
        with self.lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        self._local = threading.local()

    def close(self):
        """关闭 sink 和请求会话"""
        with self.lock:
            self.sink.close()
        self._close_sessions()

    def get_statistics(self) -> Dict[str, int]:
        """
        获取下载统计信息

        Returns:
            Dict[str, int]: 下载统计信息
        """
        return {
            "downloaded": self.downloaded_count,
            "failed": self.failed_count,
            "skipped": self.skipped_count,
            "total": self.total,
            "remaining": max(0, self.total - self.done),
            "permanent_failures": len(self.failed_tiles),
        }

    def _snapshot(self) -> Dict:
        elapsed = time.time() - self._start_time
        done_this_run = self.done - self._done_at_start
        avg_speed = done_this_run / elapsed if elapsed > 0 else 0.0
        remaining = max(0, self.total - self.done)
        return {
            "done": self.done,
            "total": self.total,
            "speed": self.stats.speed(done_this_run),
            "avg_speed": avg_speed,
            "eta": remaining / avg_speed if avg_speed > 0 else 0.0,
            "fail_rate": self.stats.fail_rate,
            "skip_rate": self.stats.skip_rate,
            "retry": len(self.retry_queue),
            "delay": self.rate.delay,
            "cursor": str(self.cursor) if self.cursor is not None else None,
            "memory_mb": self._process.memory_info().rss / 1024 / 1024,
        }

    def _report_progress(self):
        snapshot = self._snapshot()
        if self.progress_callback:
            self.progress_callback(snapshot)
        else:
            logger.debug(
                f"进度 {snapshot['done']}/{snapshot['total']} | {snapshot['speed']:.1f} t/s "
                f"(avg {snapshot['avg_speed']:.1f}) | ETA {snapshot['eta'] / 60:.2f} m | "
                f"失败 {snapshot['fail_rate']:.2f}% | 跳过 {snapshot['skip_rate']:.1f}% | "
                f"重试 {snapshot['retry']} | 间隔 {snapshot['delay']:.3f}s | {snapshot['cursor']}"
            )
