from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List

from fakes import ARTICLE_HTML, ARTICLE_URL, FakeBackend, fast_options

from wx_mdx.config import BatchOptions, CrawlConfig, OutputFormat
from wx_mdx.crawler import SKIPPED_AFTER_FAILURE, ArticleCrawler


def _crawler(tmp_path: Path, backends: List[FakeBackend], max_concurrent: int = 3) -> ArticleCrawler:
    config = CrawlConfig(output_root=tmp_path, max_concurrent=max_concurrent)

    def factory() -> FakeBackend:
        backend = FakeBackend(snapshots=[ARTICLE_HTML])
        backends.append(backend)
        return backend

    return ArticleCrawler(config, backend_factory=factory)


def test_crawl_writes_markdown_document(tmp_path: Path) -> None:
    crawler = _crawler(tmp_path, [])

    result = asyncio.run(crawler.crawl(ARTICLE_URL, fast_options()))

    assert result.success
    path = Path(result.file_path)
    assert path.name == "index.md"
    assert path.parent.parent.parent == tmp_path
    document = path.read_text(encoding="utf-8")
    assert document.startswith("---\n")
    assert "title: 微信文章标题" in document
    assert "第一段内容" in document
    assert "扫码" not in document
    assert "第一段内容" in result.content
    assert "<html>" not in result.content
    assert result.images == []


def test_crawl_writes_json_document(tmp_path: Path) -> None:
    crawler = _crawler(tmp_path, [])

    result = asyncio.run(crawler.crawl(ARTICLE_URL, fast_options(output_format="json")))

    path = Path(result.file_path)
    assert path.name == "article.json"
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["author"] == "测试公众号"
    assert "第二段继续展开讨论" in payload["plain_text"]


def test_failed_crawl_writes_nothing(tmp_path: Path) -> None:
    crawler = _crawler(tmp_path, [])

    result = asyncio.run(crawler.crawl("https://mp.weixin.qq.com/profile", fast_options()))

    assert not result.success
    assert result.file_path == ""
    assert list(tmp_path.iterdir()) == []


def test_batch_counts_and_summary(tmp_path: Path) -> None:
    crawler = _crawler(tmp_path, [])
    urls = [
        "https://mp.weixin.qq.com/s/one",
        "https://example.com/s/two",
        "https://mp.weixin.qq.com/s/three",
    ]

    outcome = asyncio.run(
        crawler.crawl_batch(urls, fast_options(), BatchOptions(concurrent_limit=2, delay_seconds=0))
    )

    assert outcome.success
    assert outcome.total_count == 3
    assert outcome.success_count == 2
    assert outcome.failed_count == 1
    assert [error.url for error in outcome.errors] == ["https://example.com/s/two"]
    assert [result.url for result in outcome.results] == urls
    summary = Path(outcome.summary_path).read_text(encoding="utf-8")
    assert "Succeeded: 2" in summary
    assert "https://example.com/s/two" in summary


def test_batch_stops_on_error(tmp_path: Path) -> None:
    crawler = _crawler(tmp_path, [])
    urls = [
        "https://example.com/s/bad",
        "https://mp.weixin.qq.com/s/never",
    ]

    outcome = asyncio.run(
        crawler.crawl_batch(
            urls,
            fast_options(),
            BatchOptions(concurrent_limit=1, delay_seconds=0, stop_on_error=True, create_summary=False),
        )
    )

    assert not outcome.success
    assert len(outcome.results) == 1
    assert outcome.failed_count == 2
    assert outcome.errors[-1].error == SKIPPED_AFTER_FAILURE
    assert outcome.summary_path is None


def test_concurrency_limit_of_one_runs_sessions_back_to_back(tmp_path: Path) -> None:
    backends: List[FakeBackend] = []
    crawler = _crawler(tmp_path, backends, max_concurrent=1)

    async def run_two():
        return await asyncio.gather(
            crawler.crawl("https://mp.weixin.qq.com/s/first", fast_options()),
            crawler.crawl("https://mp.weixin.qq.com/s/second", fast_options()),
        )

    results = asyncio.run(run_two())

    assert all(result.success for result in results)
    assert len(backends) == 2
    assert backends[0].closed and backends[1].closed
    first_end = crawler.store.get_status(results[0].session_id).end_time
    second_start = crawler.store.get_status(results[1].session_id).start_time
    assert second_start >= first_end


def test_context_manager_starts_and_stops_store(tmp_path: Path) -> None:
    crawler = _crawler(tmp_path, [])

    async def scenario() -> int:
        async with crawler:
            await crawler.crawl(ARTICLE_URL, fast_options())
            return crawler.store.statistics()["completed_sessions"]

    assert asyncio.run(scenario()) == 1
    assert crawler.store.statistics()["total_sessions"] == 0


def test_output_format_is_coerced() -> None:
    assert fast_options(output_format="json").output_format is OutputFormat.JSON
