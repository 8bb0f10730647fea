from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Awaitable, Callable

from agent_substrate.config import YamlConfigLoader
from agent_substrate.config.models import AppConfig, ConfigLoadRequest
from agent_substrate.formatters import format_cache_stats, format_symbol_matches, format_task_summary
from agent_substrate.logging import init_logging
from agent_substrate.runtime import AgentRuntime

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent-substrate", description="Agent substrate maintenance commands")
    parser.add_argument(
        "--config",
        default="data/config/config.yaml",
        help="Path to config.yaml (default: data/config/config.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    # Symbol cache
    subparsers.add_parser("cache-stats", help="Show symbol cache statistics")

    search_parser = subparsers.add_parser("search-symbols", help="Search cached symbols by name")
    search_parser.add_argument("query", help="Case-insensitive name or name fragment")
    search_parser.add_argument("--kind", default=None, help="Only return symbols of this kind (e.g. Class)")
    search_parser.add_argument("--exact", action="store_true", help="Match the whole name instead of a substring")

    index_parser = subparsers.add_parser("index-files", help="Fetch and cache symbols for files")
    index_parser.add_argument("paths", nargs="+", help="File paths relative to the project path")
    index_parser.add_argument("--depth", type=int, default=None, help="Symbol tree depth to request")

    invalidate_parser = subparsers.add_parser("invalidate", help="Drop cached symbols for files")
    invalidate_parser.add_argument("paths", nargs="+", help="File paths relative to the project path")

    subparsers.add_parser("clear-cache", help="Drop every cached symbol entry")

    # Tasks
    subparsers.add_parser("show-tasks", help="Show the current plan and task progress")
    subparsers.add_parser("reset-tasks", help="Discard the current plan and all tasks")

    return parser


async def _load_config(args: argparse.Namespace) -> AppConfig:
    loader = YamlConfigLoader()
    request = ConfigLoadRequest(
        yaml_path=args.config,
    )
    return await loader.load(request)


async def _cache_stats(runtime: AgentRuntime, args: argparse.Namespace) -> None:
    print(format_cache_stats(await runtime.cache_stats()))


async def _search_symbols(runtime: AgentRuntime, args: argparse.Namespace) -> None:
    matches = await runtime.search_symbols(args.query, kind=args.kind, exact_match=args.exact)
    print(format_symbol_matches(matches))


async def _index_files(runtime: AgentRuntime, args: argparse.Namespace) -> None:
    report = await runtime.index_files(args.paths, depth=args.depth)
    print(f"Indexed: {len(report.indexed)}  Up to date: {len(report.skipped)}  Failed: {len(report.failed)}")
    for key, error in sorted(report.failed.items()):
        print(f"  {key}: {error}")
    if report.stats is not None:
        print(format_cache_stats(report.stats))


async def _invalidate(runtime: AgentRuntime, args: argparse.Namespace) -> None:
    removed = await runtime.invalidate(args.paths)
    print(f"Invalidated {removed} of {len(args.paths)} entries.")


async def _clear_cache(runtime: AgentRuntime, args: argparse.Namespace) -> None:
    await runtime.clear_cache()
    print("Symbol cache cleared.")


async def _show_tasks(runtime: AgentRuntime, args: argparse.Namespace) -> None:
    await runtime.load_tasks()
    stall = runtime.tasks.check_stall() if len(runtime.tasks) else None
    print(format_task_summary(runtime.tasks.summary(), stall))


async def _reset_tasks(runtime: AgentRuntime, args: argparse.Namespace) -> None:
    await runtime.reset_tasks()
    print("Task state reset.")


_COMMANDS: dict[str, Callable[[AgentRuntime, argparse.Namespace], Awaitable[None]]] = {
    "cache-stats": _cache_stats,
    "search-symbols": _search_symbols,
    "index-files": _index_files,
    "invalidate": _invalidate,
    "clear-cache": _clear_cache,
    "show-tasks": _show_tasks,
    "reset-tasks": _reset_tasks,
}


async def _main_async() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    config = await _load_config(args)
    init_logging(config.logging)
    logger.info("Running command. command=%s", args.command)

    runtime = AgentRuntime.from_config(config)
    try:
        await _COMMANDS[args.command](runtime, args)
    finally:
        await runtime.stop()


def main() -> None:
    try:
        asyncio.run(_main_async())
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")


if __name__ == "__main__":
    main()
