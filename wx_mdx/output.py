"""Output directory layout and document persistence."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from .config import OutputFormat
from .models import UNKNOWN_AUTHOR, UNKNOWN_TITLE, BatchResult, CrawlResult
from .utils import isoformat_z, slugify

logger = logging.getLogger("wx_mdx.output")

DOCUMENT_NAMES = {
    OutputFormat.MARKDOWN: "index.md",
    OutputFormat.JSON: "article.json",
}


def build_output_dir(output_root: Path, result: CrawlResult) -> Path:
    """Create ``<root>/<author>/<title>`` for a crawled article."""
    author = result.author if result.author and result.author != UNKNOWN_AUTHOR else ""
    title = result.title if result.title and result.title != UNKNOWN_TITLE else ""
    author_slug = slugify(author, fallback="unknown-author")[:40]
    title_slug = slugify(title, fallback="")[:80]
    if not title_slug:
        title_slug = f"article-{(result.session_id or 'unknown')[:8]}"
    output_dir = output_root / author_slug / title_slug
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def write_document(output_dir: Path, text: str, fmt: OutputFormat) -> Path:
    output_path = output_dir / DOCUMENT_NAMES[OutputFormat(fmt)]
    output_path.write_text(text, encoding="utf-8")
    logger.info("Saved %s to %s", OutputFormat(fmt).value, output_path)
    return output_path


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} GB"


def render_batch_summary(batch: BatchResult) -> str:
    """Markdown report listing every URL of a batch and how it went."""
    succeeded: List[CrawlResult] = [r for r in batch.results if r.success]
    total_images = sum(len(r.images) for r in succeeded)
    total_size = sum(image.size for r in succeeded for image in r.images)
    average_ms = (
        round(sum(r.duration_ms for r in succeeded) / len(succeeded)) if succeeded else 0
    )
    rate = round(batch.success_count / batch.total_count * 100) if batch.total_count else 0

    lines = [
        "# Batch crawl summary",
        "",
        f"- Generated: {isoformat_z(batch.end_time)}",
        f"- Articles: {batch.total_count}",
        f"- Succeeded: {batch.success_count}",
        f"- Failed: {batch.failed_count}",
        f"- Success rate: {rate}%",
        f"- Images: {total_images} ({_format_bytes(total_size)})",
        f"- Average duration: {average_ms}ms",
        f"- Total duration: {batch.duration_ms}ms",
        "",
        "## Results",
        "",
    ]
    for index, result in enumerate(batch.results, start=1):
        lines.append(f"### {index}. {result.title or result.url}")
        lines.append("")
        lines.append(f"- Status: {'ok' if result.success else 'failed'}")
        lines.append(f"- URL: {result.url}")
        if result.author:
            lines.append(f"- Author: {result.author}")
        if result.publish_time:
            lines.append(f"- Published: {result.publish_time}")
        lines.append(f"- Images: {len(result.images)}")
        lines.append(f"- Duration: {result.duration_ms}ms")
        if result.file_path:
            lines.append(f"- Saved to: `{result.file_path}`")
        if result.error:
            lines.append(f"- Error: {result.error}")
        lines.append("")
    return "\n".join(lines)


def write_batch_summary(output_root: Path, batch: BatchResult) -> Path:
    output_root.mkdir(parents=True, exist_ok=True)
    stamp = batch.end_time.strftime("%Y%m%dT%H%M%SZ")
    path = output_root / f"batch_summary_{stamp}.md"
    path.write_text(render_batch_summary(batch), encoding="utf-8")
    logger.info("Saved batch summary to %s", path)
    return path
