# tilecrawler/cli.py
import argparse
import sys

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from .downloader import TileCrawler
from .exceptions import TileCrawlerError
from .log import setup_logging
from .policies import PolicyManager
from .tile_math import parse_levels

console = Console()

# 命令行参数 -> DownloaderOptions 字段
OPTION_FLAGS = {
    "concurrency": "concurrency",
    "delay": "delay",
    "max_retry": "max_retry",
    "mode": "mode",
    "out_dir": "out_dir",
    "mbtiles_file": "mbtiles_file",
    "progress_file": "progress_file",
    "batch_size": "mb_batch_size",
}


def _options_for(policy, args):
    overrides = {field: getattr(args, flag, None) for flag, field in OPTION_FLAGS.items()}
    return policy.options.replace(**overrides)


def _resolve_policies(names):
    return [PolicyManager.get_policy(name) for name in names]


def cmd_list_policies():
    table = Table(title="可用瓦片源")
    table.add_column("name", style="cyan")
    table.add_column("title")
    table.add_column("zoom_range")
    table.add_column("mode")
    table.add_column("concurrency", justify="right")
    table.add_column("output")
    for name in PolicyManager.list_policies():
        p = PolicyManager.get_policy(name)
        output = p.options.mbtiles_file if p.options.mode == "mbtiles" else p.options.out_dir
        table.add_row(name, p.title, p.zoom_range(), p.options.mode, str(p.options.concurrency), output)
    console.print(table)


def print_stats(stats: dict):
    table = Table(title="统计")
    for k in ["downloaded", "failed", "skipped", "total", "remaining", "permanent_failures"]:
        table.add_row(k, str(stats.get(k, 0)))
    console.print(table)


def print_integrity(crawler: TileCrawler):
    table = Table(title="完整性检查")
    table.add_column("z", justify="right")
    table.add_column("actual", justify="right")
    table.add_column("expected", justify="right")
    table.add_column("missing", justify="right")
    for r in crawler.integrity_report:
        style = "green" if r.complete else "red"
        table.add_row(str(r.z), str(r.actual), str(r.expected), f"[{style}]{r.missing}[/{style}]")
    console.print(table)


def crawl(policy, args) -> bool:
    """
    执行一个策略：断点回退 -> 抓取，返回是否正常完成
    """
    options = _options_for(policy, args)
    console.print(f"[bold blue]当前任务: {policy.title}[/bold blue] ({policy.name}, {options.mode})")

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=False,
    ) as progress:
        task = progress.add_task(policy.name, total=None)

        def on_progress(snapshot):
            progress.update(
                task,
                completed=snapshot["done"],
                total=snapshot["total"],
                description=(
                    f"{policy.name} {snapshot['speed']:.1f} t/s | 失败 {snapshot['fail_rate']:.1f}% | "
                    f"重试 {snapshot['retry']} | {snapshot['delay']:.2f}s | {snapshot['memory_mb']:.0f} MB"
                ),
            )

        crawler = TileCrawler(policy, options, progress_callback=on_progress)
        try:
            if not crawler.rollback_cursor(policy.levels):
                console.print("[green]所有瓦片均已下载，无需处理[/green]")
                return True
            completed = crawler.run(policy.levels)
        finally:
            crawler.close()

    print_stats(crawler.get_statistics())
    if crawler.integrity_report:
        print_integrity(crawler)
    return completed


def cmd_run(args) -> int:
    for policy in _resolve_policies(args.type):
        if not crawl(policy, args):
            console.print("[yellow]任务已中断，进度已保存[/yellow]")
            return 130
    return 0


def cmd_check(args) -> int:
    incomplete = False
    for policy in _resolve_policies(args.type):
        crawler = TileCrawler(policy, _options_for(policy, args))
        try:
            incomplete = crawler.check_integrity_by_levels(policy.levels) or incomplete
        finally:
            crawler.close()
        print_integrity(crawler)
    return 1 if incomplete else 0


def cmd_repair(args) -> int:
    for policy in _resolve_policies(args.type):
        crawler = TileCrawler(policy, _options_for(policy, args))
        try:
            crawler.open_sink()
            repaired = crawler.repair_missing_tiles(policy.levels, listen_for_interrupt=True)
        finally:
            crawler.close()
        console.print(f"[green]{policy.name}: 补回 {repaired} 个瓦片[/green]")
    return 0


def cmd_custom(args) -> int:
    levels = parse_levels(args.levels, args.bbox)
    policy = PolicyManager.create_custom_policy(
        name=args.name,
        url_template=args.url,
        levels=levels,
        subdomains=args.subdomains,
        tile_format=args.format,
        require_png=args.require_png,
    )
    policy.options = policy.options.replace(
        mbtiles_file=f"./tiles/{args.name}.mbtiles",
        progress_file=f"./tiles/{args.name}.progress.json",
        out_dir=f"./tiles/{args.name}",
    )
    return 0 if crawl(policy, args) else 130


def _add_option_flags(p):
    p.add_argument("--mode", choices=["mbtiles", "dir"], help="保存模式")
    p.add_argument("--concurrency", type=int, help="并发线程数")
    p.add_argument("--delay", type=float, help="基础请求间隔（秒）")
    p.add_argument("--max-retry", type=int, help="最大重试次数")
    p.add_argument("--out-dir", help="目录模式的输出目录")
    p.add_argument("--mbtiles-file", help="MBTiles 文件路径")
    p.add_argument("--progress-file", help="进度文件路径")
    p.add_argument("--batch-size", type=int, help="MBTiles 批量写入条数")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tilecrawler", description="地图瓦片抓取器（断点续传 / 完整性检查 / 修复）")
    parser.add_argument("--log-dir", default="log", help="日志目录")
    parser.add_argument("--log-level", default="INFO", help="控制台日志级别")
    parser.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")
    subparsers = parser.add_subparsers(dest="cmd")

    subparsers.add_parser("list", help="列出内置瓦片源")

    for cmd, help_text in (
        ("run", "抓取瓦片"),
        ("check", "只做完整性检查（mbtiles）"),
        ("repair", "只做缺失瓦片修复（mbtiles）"),
    ):
        p = subparsers.add_parser(cmd, help=help_text)
        p.add_argument("--type", required=True, nargs="+", help="瓦片源名称，可指定多个，按顺序执行")
        _add_option_flags(p)

    p_custom = subparsers.add_parser("custom", help="使用自定义 URL 模板抓取")
    p_custom.add_argument("--url", required=True, help="URL 模板，支持 {z} {x} {y} {s} {q} {-y}")
    p_custom.add_argument("--levels", required=True, help="缩放级别，如 14、8-15、0-5,7")
    p_custom.add_argument(
        "--bbox", type=float, nargs=4, metavar=("MIN_LON", "MIN_LAT", "MAX_LON", "MAX_LAT"),
        help="范围，应用到每个层级",
    )
    p_custom.add_argument("--name", default="custom", help="任务名称")
    p_custom.add_argument("--subdomains", nargs="*", help="子域名列表")
    p_custom.add_argument("--format", default="png", help="瓦片格式")
    p_custom.add_argument("--require-png", action="store_true", help="只接受 PNG 内容")
    _add_option_flags(p_custom)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_dir, args.log_level, args.verbose)

    try:
        if args.cmd == "list":
            cmd_list_policies()
            return 0
        if args.cmd == "run":
            return cmd_run(args)
        if args.cmd == "check":
            return cmd_check(args)
        if args.cmd == "repair":
            return cmd_repair(args)
        if args.cmd == "custom":
            return cmd_custom(args)
    except (TileCrawlerError, ValueError) as e:
        console.print(f"[red]✗ {e}[/red]")
        return 2
    except KeyboardInterrupt:
        console.print("[yellow]已中断[/yellow]")
        return 130

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
