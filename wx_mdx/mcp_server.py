"""MCP server exposing wx-mdx crawl tools."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from .config import BatchOptions, CrawlConfig, CrawlOptions
from .crawler import ArticleCrawler
from .utils import validate_article_url

logger = logging.getLogger("wx_mdx.mcp")
logger.setLevel(logging.ERROR)

mcp = FastMCP(name="wx-mdx")

_crawler: Optional[ArticleCrawler] = None
_crawler_lock = asyncio.Lock()


async def get_crawler() -> ArticleCrawler:
    """Start the shared crawler on first use."""
    global _crawler
    async with _crawler_lock:
        if _crawler is None:
            crawler = ArticleCrawler(CrawlConfig.from_env())
            await crawler.start()
            _crawler = crawler
    return _crawler


def _dump(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2)


def _options(
    crawler: ArticleCrawler,
    output_format: str,
    save_images: bool,
    clean_content: bool,
    timeout_ms: Optional[int],
    retry_attempts: Optional[int],
) -> CrawlOptions:
    defaults = crawler.config.default_options
    return CrawlOptions(
        output_format=output_format,
        save_images=save_images,
        clean_content=clean_content,
        timeout_ms=timeout_ms or defaults.timeout_ms,
        retry_attempts=retry_attempts or defaults.retry_attempts,
        delay_between_steps_ms=defaults.delay_between_steps_ms,
        retry_base_delay_ms=defaults.retry_base_delay_ms,
    ).validate()


@mcp.tool()
async def crawl_article(
    url: str,
    output_format: str = "markdown",
    save_images: bool = True,
    clean_content: bool = True,
    timeout_ms: Optional[int] = None,
    retry_attempts: Optional[int] = None,
) -> str:
    """Crawl a WeChat article and return the result, including its Markdown body, as JSON."""

    crawler = await get_crawler()
    validate_article_url(url, crawler.config.allowed_hosts)
    options = _options(crawler, output_format, save_images, clean_content, timeout_ms, retry_attempts)
    result = await crawler.crawl(url, options)
    return _dump(result.to_dict(include_content=True))


@mcp.tool()
async def crawl_batch(
    urls: List[str],
    concurrent_limit: int = 2,
    delay_seconds: float = 5.0,
    stop_on_error: bool = False,
    create_summary: bool = True,
    output_format: str = "markdown",
    save_images: bool = True,
    clean_content: bool = True,
) -> str:
    """Crawl several WeChat articles in concurrency-limited groups and return a JSON summary."""

    if not urls:
        raise ValueError("urls must contain at least one URL")
    crawler = await get_crawler()
    for url in urls:
        validate_article_url(url, crawler.config.allowed_hosts)
    options = _options(crawler, output_format, save_images, clean_content, None, None)
    batch = BatchOptions(
        concurrent_limit=concurrent_limit,
        delay_seconds=delay_seconds,
        stop_on_error=stop_on_error,
        create_summary=create_summary,
    )
    result = await crawler.crawl_batch(urls, options, batch)
    return _dump(result.to_dict(include_content=False))


@mcp.tool()
async def crawl_status(session_id: Optional[str] = None) -> str:
    """Report the progress of one crawl session, or of every known session."""

    crawler = await get_crawler()
    if session_id:
        status = crawler.orchestrator.get_status(session_id)
        if status is None:
            return _dump({"session_id": session_id, "found": False})
        return _dump({"found": True, **status.to_dict()})
    return _dump(
        {
            "statistics": crawler.store.statistics(),
            "sessions": [status.to_dict() for status in crawler.orchestrator.list_statuses()],
        }
    )


@mcp.tool()
async def cancel_crawl(session_id: str) -> str:
    """Cancel a running crawl session."""

    crawler = await get_crawler()
    cancelled = crawler.orchestrator.cancel(session_id)
    return _dump({"session_id": session_id, "cancelled": cancelled})


def main() -> None:
    """Entry point for running the MCP server."""
    logging.basicConfig(level=logging.ERROR)
    mcp.run()


if __name__ == "__main__":
    main()
