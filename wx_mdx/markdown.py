"""Markdown and JSON rendering of crawled articles."""

from __future__ import annotations

import json
import logging
import re
from typing import List

from markdownify import markdownify

from .models import CrawlResult, ImageInfo
from .utils import isoformat_z, utc_now

logger = logging.getLogger("wx_mdx.markdown")

_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")
_TRAILING_SPACES = re.compile(r"[ \t]+\n")


def html_to_markdown(content_html: str) -> str:
    """Convert cleaned article HTML into a Markdown body."""
    markdown = markdownify(
        content_html,
        heading_style="ATX",
        bullets="-",
        strip=["script", "style"],
    )
    markdown = _TRAILING_SPACES.sub("\n", markdown)
    markdown = _EXCESS_BLANK_LINES.sub("\n\n", markdown).strip()
    logger.debug("Converted %d chars of HTML into %d chars of Markdown", len(content_html), len(markdown))
    return markdown


def replace_image_links(markdown: str, images: List[ImageInfo]) -> str:
    """Point image references at their downloaded copies."""
    updated = markdown
    for image in images:
        updated = updated.replace(image.original_url, image.local_path)
    return updated


def _yaml_scalar(value: str) -> str:
    if not value or re.search(r"[:#\[\]{}\"'\n]", value) or value != value.strip():
        return json.dumps(value, ensure_ascii=False)
    return value


def compose_markdown(result: CrawlResult, body: str, images: List[ImageInfo]) -> str:
    """Generate the final Markdown document including front matter."""
    retrieved = result.crawl_time or utc_now()
    front_matter_lines = ["---"]
    front_matter_lines.append(f"title: {_yaml_scalar(result.title)}")
    front_matter_lines.append(f"author: {_yaml_scalar(result.author)}")
    if result.publish_time:
        front_matter_lines.append(f"publish_time: {_yaml_scalar(result.publish_time)}")
    front_matter_lines.append(f"source_url: {result.url}")
    front_matter_lines.append(f"retrieved_at: {isoformat_z(retrieved)}")
    if result.session_id:
        front_matter_lines.append(f"session_id: {result.session_id}")
    if images:
        files_str = "[" + ", ".join(image.local_path for image in images) + "]"
        front_matter_lines.append(f"images: {files_str}")
    front_matter_lines.append("---\n")

    heading = f"# {result.title}\n\n" if result.title and not body.lstrip().startswith("#") else ""
    return "\n".join(front_matter_lines) + heading + body.strip() + "\n"


def render_json(result: CrawlResult, body: str, plain_text: str, images: List[ImageInfo]) -> str:
    """Serialize the article as a JSON document."""
    payload = result.to_dict(include_content=False)
    payload["content"] = body
    payload["plain_text"] = plain_text
    payload["images"] = [
        {
            "original_url": image.original_url,
            "local_path": image.local_path,
            "filename": image.filename,
            "size": image.size,
            "mime_type": image.mime_type,
        }
        for image in images
    ]
    return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
