"""Command-line entry point for the WeChat article crawler."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Iterable, Sequence

from .config import BatchOptions, CrawlConfig, CrawlOptions, OutputFormat
from .crawler import ArticleCrawler
from .models import BatchResult

logger = logging.getLogger("wx_mdx.cli")


def _ensure_command_prefix(argv: Sequence[str], commands: Iterable[str]) -> Sequence[str]:
    if not argv:
        return argv
    first = argv[0]
    if first in commands or first.startswith("-"):
        return argv
    return ("crawl", *argv)


def _add_crawl_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("urls", nargs="+", help="One or more article URLs to crawl")
    parser.add_argument(
        "--output",
        default=None,
        type=Path,
        help="Directory where documents and assets should be written (default: $CRAWL_OUTPUT_DIR or crawled_articles)",
    )
    parser.add_argument(
        "--format",
        dest="output_format",
        choices=[fmt.value for fmt in OutputFormat],
        default=OutputFormat.MARKDOWN.value,
        help="Document format to write",
    )
    parser.add_argument(
        "--no-images",
        action="store_true",
        help="Do not download article images",
    )
    parser.add_argument(
        "--no-clean",
        action="store_true",
        help="Keep promotional blocks and share widgets in the article body",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Navigation timeout in seconds",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=None,
        help="Attempts per retryable step",
    )
    parser.add_argument(
        "--step-delay",
        type=float,
        default=None,
        help="Seconds to pause between steps",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=2,
        help="Articles crawled at the same time when several URLs are given (1-5)",
    )
    parser.add_argument(
        "--batch-delay",
        type=float,
        default=5.0,
        help="Seconds to wait between groups of concurrent crawls",
    )
    parser.add_argument(
        "--stop-on-error",
        action="store_true",
        help="Stop a batch after the first group with a failed crawl",
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Show the browser window",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Crawl WeChat public-account articles into Markdown or JSON documents.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    crawl_parser = subparsers.add_parser(
        "crawl", help="Crawl articles and save them to disk"
    )
    _add_crawl_arguments(crawl_parser)

    subparsers.add_parser("mcp", help="Run the MCP server over stdio")

    argv = list(sys.argv[1:] if argv is None else argv)
    argv = list(_ensure_command_prefix(argv, subparsers.choices.keys()))
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> CrawlConfig:
    """Layer command-line flags over the environment-derived config."""
    config = CrawlConfig.from_env()
    defaults = config.default_options
    options = CrawlOptions(
        output_format=args.output_format,
        save_images=not args.no_images,
        clean_content=not args.no_clean,
        timeout_ms=int(args.timeout * 1000) if args.timeout is not None else defaults.timeout_ms,
        retry_attempts=args.retries if args.retries is not None else defaults.retry_attempts,
        delay_between_steps_ms=(
            int(args.step_delay * 1000)
            if args.step_delay is not None
            else defaults.delay_between_steps_ms
        ),
        retry_base_delay_ms=defaults.retry_base_delay_ms,
    ).validate()
    changes = {"default_options": options}
    if args.output is not None:
        changes["output_root"] = Path(args.output).expanduser().resolve()
    if args.headed:
        changes["headless"] = False
    return dataclasses.replace(config, **changes)


def build_batch_options(args: argparse.Namespace) -> BatchOptions:
    return BatchOptions(
        concurrent_limit=args.concurrency,
        delay_seconds=args.batch_delay,
        stop_on_error=args.stop_on_error,
        create_summary=len(args.urls) > 1,
    ).validate()


async def _crawl_all(urls: Sequence[str], config: CrawlConfig, batch: BatchOptions) -> BatchResult:
    async with ArticleCrawler(config) as crawler:
        return await crawler.crawl_batch(urls, config.default_options, batch)


def _run_crawl(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    try:
        config = build_config(args)
        batch = build_batch_options(args)
    except ValueError as exc:
        logger.error("%s", exc)
        return 2

    outcome = asyncio.run(_crawl_all(args.urls, config, batch))
    for result in outcome.results:
        if result.success:
            logger.info("%s -> %s", result.url, result.file_path or "(not saved)")
        else:
            logger.error("%s failed: %s", result.url, result.error)
    logger.info(
        "Finished in %.2fs (%d/%d succeeded, %d failed)",
        outcome.duration_ms / 1000,
        outcome.success_count,
        outcome.total_count,
        outcome.failed_count,
    )
    if outcome.summary_path:
        logger.info("Batch summary: %s", outcome.summary_path)
    return 0 if outcome.failed_count == 0 else 1


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    if args.command == "mcp":
        from .mcp_server import main as run_server

        run_server()
        return
    sys.exit(_run_crawl(args))


if __name__ == "__main__":
    main()
