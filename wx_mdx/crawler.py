"""High-level service: crawl one article or a batch and persist the output."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from .backend import BackendFactory, PlaywrightBackendFactory
from .config import BatchOptions, CrawlConfig, CrawlOptions, OutputFormat
from .content import extract_article
from .errors import ContentError
from .extract import Extractor
from .images import download_images
from .markdown import compose_markdown, html_to_markdown, render_json, replace_image_links
from .models import BatchError, BatchResult, CrawlResult, ImageInfo
from .orchestrator import Orchestrator
from .output import build_output_dir, write_batch_summary, write_document
from .state import SessionStateStore
from .utils import elapsed_ms, utc_now

logger = logging.getLogger("wx_mdx.crawler")

SKIPPED_AFTER_FAILURE = "skipped after an earlier failure in the batch"


class ArticleCrawler:
    """Runs crawl sessions and turns their snapshots into documents on disk.

    Use as an async context manager so the browser and the session sweeper
    are started and stopped together::

        async with ArticleCrawler(CrawlConfig.from_env()) as crawler:
            result = await crawler.crawl(url)
    """

    def __init__(
        self,
        config: Optional[CrawlConfig] = None,
        backend_factory: Optional[BackendFactory] = None,
        store: Optional[SessionStateStore] = None,
        extractor: Optional[Extractor] = None,
    ) -> None:
        self.config = config or CrawlConfig()
        self._browser_factory: Optional[PlaywrightBackendFactory] = None
        if backend_factory is None:
            self._browser_factory = PlaywrightBackendFactory(self.config)
            backend_factory = self._browser_factory
        self.orchestrator = Orchestrator(
            backend_factory,
            store=store,
            config=self.config,
            extractor=extractor,
        )
        self._slots = asyncio.Semaphore(max(1, self.config.max_concurrent))

    @property
    def store(self) -> SessionStateStore:
        return self.orchestrator.store

    async def start(self) -> None:
        if self._browser_factory is not None:
            await self._browser_factory.start()
        self.store.start()

    async def aclose(self) -> None:
        self.orchestrator.close()
        if self._browser_factory is not None:
            await self._browser_factory.aclose()

    async def __aenter__(self) -> "ArticleCrawler":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def crawl(self, url: str, options: Optional[CrawlOptions] = None) -> CrawlResult:
        """Crawl one article and write it to the output directory."""
        options = options or self.config.default_options
        async with self._slots:
            result = await self.orchestrator.run(url, options)
        if result.success:
            await self.publish(result, options)
        logger.info(
            "Crawl of %s %s in %dms",
            url,
            "succeeded" if result.success else f"failed ({result.error})",
            result.duration_ms,
        )
        return result

    async def publish(self, result: CrawlResult, options: CrawlOptions) -> CrawlResult:
        """Convert the captured page and save it; failures leave the result usable."""
        try:
            article = extract_article(result.content, result.url, clean=options.clean_content)
        except ContentError as exc:
            logger.warning("Could not extract article body from %s: %s", result.url, exc)
            return result

        body = html_to_markdown(article.content_html)
        images: List[ImageInfo] = []
        try:
            output_dir = build_output_dir(self.config.output_root, result)
            if options.save_images and article.images:
                images = await asyncio.to_thread(
                    download_images,
                    article.images,
                    output_dir,
                    user_agent=self.config.user_agent,
                )
                body = replace_image_links(body, images)
            if options.output_format is OutputFormat.JSON:
                document = render_json(result, body, article.plain_text, images)
            else:
                document = compose_markdown(result, body, images)
            path = write_document(output_dir, document, options.output_format)
        except OSError as exc:
            logger.error("Failed to save %s: %s", result.url, exc)
            result.content = body
            return result

        result.content = body
        result.images = images
        result.file_path = str(path)
        return result

    async def crawl_batch(
        self,
        urls: Sequence[str],
        options: Optional[CrawlOptions] = None,
        batch: Optional[BatchOptions] = None,
    ) -> BatchResult:
        """Crawl URLs in groups of ``concurrent_limit`` with a pause between groups."""
        batch = (batch or BatchOptions()).validate()
        urls = list(urls)
        started = utc_now()
        results: List[CrawlResult] = []
        errors: List[BatchError] = []
        groups = [
            urls[index : index + batch.concurrent_limit]
            for index in range(0, len(urls), batch.concurrent_limit)
        ]
        logger.info("Starting batch of %d URL(s) in %d group(s)", len(urls), len(groups))

        for number, group in enumerate(groups, start=1):
            group_results = await asyncio.gather(*(self.crawl(url, options) for url in group))
            results.extend(group_results)
            failures = [result for result in group_results if not result.success]
            errors.extend(
                BatchError(result.url, result.error or "unknown error", result.crawl_time or utc_now())
                for result in failures
            )
            if failures and batch.stop_on_error:
                skipped = urls[len(results) :]
                logger.warning("Stopping batch after group %d; %d URL(s) skipped", number, len(skipped))
                errors.extend(BatchError(url, SKIPPED_AFTER_FAILURE, utc_now()) for url in skipped)
                break
            if number < len(groups) and batch.delay_seconds:
                await asyncio.sleep(batch.delay_seconds)

        finished = utc_now()
        success_count = sum(1 for result in results if result.success)
        outcome = BatchResult(
            success=success_count > 0,
            total_count=len(urls),
            success_count=success_count,
            failed_count=len(urls) - success_count,
            results=results,
            start_time=started,
            end_time=finished,
            duration_ms=elapsed_ms(started, finished),
            errors=errors,
        )
        if batch.create_summary and results:
            try:
                outcome.summary_path = str(write_batch_summary(self.config.output_root, outcome))
            except OSError as exc:
                logger.error("Failed to write batch summary: %s", exc)
        logger.info(
            "Batch finished: %d/%d succeeded in %dms",
            success_count,
            len(urls),
            outcome.duration_ms,
        )
        return outcome
